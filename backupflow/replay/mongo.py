# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
MongoDB Restorer - mongorestore driven replay of snapshots and oplog segments.
"""

import tempfile
from datetime import datetime, UTC
from pathlib import Path
from typing import List, Sequence

import structlog

from backupflow.process import run_tool

logger = structlog.get_logger()


def oplog_limit(target_time: datetime) -> str:
    """
    --oplogLimit value that keeps every entry up to and including the
    target second.

    mongorestore applies entries strictly before the limit.
    """
    if target_time.tzinfo is None:
        target_time = target_time.replace(tzinfo=UTC)
    return f"{int(target_time.timestamp()) + 1}:0"


class MongoRestorer:
    """Restores mongodump archives and replays oplog segments."""

    def __init__(
        self,
        connection_url: str,
        drop: bool = True,
        mongorestore_path: str = "mongorestore",
    ):
        self.connection_url = connection_url
        self.drop = drop
        self.mongorestore_path = mongorestore_path

    async def restore_base(self, archive_path: Path, databases: Sequence[str]) -> None:
        """
        Restore a snapshot archive, optionally limited to some databases.
        """
        args: List[str] = [
            self.mongorestore_path,
            f"--uri={self.connection_url}",
            f"--archive={archive_path}",
        ]
        if archive_path.name.endswith(".gz"):
            args.append("--gzip")
        if self.drop:
            args.append("--drop")
        for name in databases:
            args.append(f"--nsInclude={name}.*")

        await run_tool(args)
        logger.info("mongo_snapshot_restored", archive=archive_path.name, databases=list(databases))

    async def apply_segment(self, segment_path: Path, target_time: datetime) -> None:
        """Replay one oplog BSON file up to the target time."""
        # mongorestore wants a dump directory even when only replaying an oplog file
        with tempfile.TemporaryDirectory(prefix="backupflow_oplog_") as empty_dir:
            await run_tool(
                [
                    self.mongorestore_path,
                    f"--uri={self.connection_url}",
                    "--oplogReplay",
                    f"--oplogFile={segment_path}",
                    f"--oplogLimit={oplog_limit(target_time)}",
                    "--noIndexRestore",
                    f"--dir={empty_dir}",
                ]
            )
        logger.info("oplog_segment_applied", segment=segment_path.name)

    async def finalize(self, target_time: datetime) -> None:
        logger.info("mongo_restore_finalized", target_time=target_time.isoformat())
