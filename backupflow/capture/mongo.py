# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
MongoDB Oplog Capture - Read oplog ranges from a replica set member.

Positions are oplog `ts` values (bson.Timestamp). A range is dumped with
mongodump from local.oplog.rs using a ts window, which yields a BSON file
mongorestore can replay with --oplogReplay.

The source must be a replica set member; standalone servers have no oplog.
"""

import json
import shutil
from pathlib import Path
from typing import Any, Dict

import aiofiles
import structlog
from bson import Timestamp

from backupflow.exceptions import CaptureError
from backupflow.models import LogRange
from backupflow.process import mask_secrets, run_tool

logger = structlog.get_logger()

OPLOG_DB = "local"
OPLOG_COLLECTION = "oplog.rs"


def timestamp_query(since: Timestamp | None, until: Timestamp) -> Dict[str, Any]:
    """
    Oplog ts window (since, until] as MongoDB extended JSON.

    Args:
        since: Exclusive lower bound (None for the start of the oplog)
        until: Inclusive upper bound
    """
    window: Dict[str, Any] = {"$lte": {"$timestamp": {"t": until.time, "i": until.inc}}}
    if since is not None:
        window["$gt"] = {"$timestamp": {"t": since.time, "i": since.inc}}
    return {"ts": window}


class MongoOplogReader:
    """
    Log range reader for MongoDB.

    Uses pymongo's async client for positions and counts, and mongodump
    for the BSON payload.
    """

    def __init__(
        self,
        connection_url: str,
        work_dir: Path,
        mongodump_path: str = "mongodump",
        timeout_ms: int = 10000,
    ):
        self.connection_url = connection_url
        self.work_dir = work_dir
        self.mongodump_path = mongodump_path
        self.timeout_ms = timeout_ms

    def _client(self):
        from pymongo import AsyncMongoClient

        return AsyncMongoClient(
            self.connection_url,
            serverSelectionTimeoutMS=self.timeout_ms,
        )

    async def current_position(self) -> Timestamp | None:
        """Timestamp of the newest oplog entry (None if the oplog is empty)."""
        client = self._client()
        try:
            oplog = client[OPLOG_DB][OPLOG_COLLECTION]
            latest = await oplog.find_one({}, {"ts": 1}, sort=[("$natural", -1)])
        except Exception as e:
            raise CaptureError(
                f"Failed to read oplog position: {e}",
                details={"connection_url": mask_secrets(self.connection_url)},
            )
        finally:
            await client.close()

        return latest["ts"] if latest else None

    async def _count_entries(self, since: Timestamp | None, until: Timestamp) -> int:
        window: Dict[str, Any] = {"$lte": until}
        if since is not None:
            window["$gt"] = since

        client = self._client()
        try:
            oplog = client[OPLOG_DB][OPLOG_COLLECTION]
            return await oplog.count_documents({"ts": window})
        finally:
            await client.close()

    async def read_range(self, since: Timestamp | None) -> LogRange:
        """
        Dump oplog entries after `since` up to the newest entry.

        Returns:
            LogRange whose data is the raw oplog BSON
        """
        latest = await self.current_position()
        if latest is None or (since is not None and latest <= since):
            return LogRange(data=b"", cursor=since, entry_count=0)

        query = timestamp_query(since, latest)
        out_dir = self.work_dir / f"range_{latest.time}_{latest.inc}"
        shutil.rmtree(out_dir, ignore_errors=True)
        out_dir.mkdir(parents=True, exist_ok=True)

        try:
            await run_tool(
                [
                    self.mongodump_path,
                    f"--uri={self.connection_url}",
                    f"--db={OPLOG_DB}",
                    f"--collection={OPLOG_COLLECTION}",
                    f"--query={json.dumps(query)}",
                    f"--out={out_dir}",
                ]
            )

            bson_path = out_dir / OPLOG_DB / f"{OPLOG_COLLECTION}.bson"
            if not bson_path.exists():
                raise CaptureError(
                    "mongodump produced no oplog file",
                    details={"expected": str(bson_path)},
                )

            async with aiofiles.open(bson_path, "rb") as f:
                data = await f.read()

            entry_count = await self._count_entries(since, latest)
        finally:
            shutil.rmtree(out_dir, ignore_errors=True)

        logger.debug(
            "oplog_range_read",
            since=str(since),
            until=str(latest),
            entries=entry_count,
            size=len(data),
        )
        return LogRange(data=data, cursor=latest, entry_count=entry_count)
