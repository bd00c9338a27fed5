# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
backupflow Snapshots - Create, upload and list base snapshots.

A base snapshot is one archive per run, stored directly under the
prefix. Its file name carries the snapshot time, which is the point log
replay starts from.
"""

import asyncio
import shutil
import tarfile
from datetime import datetime, UTC
from pathlib import Path
from typing import Any, List, Sequence, Tuple

import structlog

from backupflow.backup.manager import compute_sha256, read_staging_file
from backupflow.config import LOG_SUBFOLDERS, Engine
from backupflow.exceptions import SnapshotError, SnapshotNotFoundError, ToolError
from backupflow.keys import (
    build_snapshot_key,
    extract_embedded_timestamp,
    format_timestamp,
    is_in_reserved_folder,
    normalize_prefix,
)
from backupflow.models import BaseSnapshot
from backupflow.process import run_tool
from backupflow.storage import SegmentStore

logger = structlog.get_logger()

RESERVED_FOLDERS = tuple(LOG_SUBFOLDERS.values())


def snapshot_file_name(engine: Engine, at: datetime) -> str:
    """Archive file name for a snapshot taken at `at`."""
    if engine == Engine.MONGODB:
        return f"mongodb_backup_{format_timestamp(at)}.archive.gz"
    return f"postgres_backup_{format_timestamp(at)}.tar.gz"


async def create_mongo_snapshot(
    connection_url: str,
    output_dir: Path,
    databases: Sequence[str] = (),
    include_oplog: bool = False,
    at: datetime | None = None,
    mongodump_path: str = "mongodump",
) -> Tuple[Path, datetime]:
    """
    Dump MongoDB into a gzipped archive.

    Args:
        connection_url: MongoDB connection URL
        output_dir: Directory the archive is written to
        databases: Databases to include (empty for all)
        include_oplog: Capture oplog entries written during the dump
        at: Snapshot time (default: now)
        mongodump_path: mongodump executable

    Returns:
        Tuple of (archive path, snapshot time)
    """
    at = (at or datetime.now(UTC)).replace(microsecond=0)
    output_dir.mkdir(parents=True, exist_ok=True)
    archive = output_dir / snapshot_file_name(Engine.MONGODB, at)

    args: List[str] = [
        mongodump_path,
        f"--uri={connection_url}",
        f"--archive={archive}",
        "--gzip",
    ]
    if include_oplog:
        # --oplog only works for full-instance dumps
        if databases:
            logger.warning("snapshot_oplog_ignored", reason="database subset requested")
        else:
            args.append("--oplog")
    if len(databases) == 1:
        args.append(f"--db={databases[0]}")
    else:
        args.extend(f"--nsInclude={name}.*" for name in databases)

    try:
        await run_tool(args)
    except ToolError as e:
        archive.unlink(missing_ok=True)
        raise SnapshotError(
            f"MongoDB snapshot failed: {e.message}",
            details={"stderr": e.stderr, "returncode": e.returncode},
        )

    logger.info("mongo_snapshot_created", archive=archive.name, size=archive.stat().st_size)
    return archive, at


def _make_tarball(source_dir: Path, archive: Path) -> None:
    with tarfile.open(archive, "w:gz") as tar:
        tar.add(source_dir, arcname=source_dir.name)


async def create_postgres_snapshot(
    connection_url: str,
    output_dir: Path,
    at: datetime | None = None,
    pg_basebackup_path: str = "pg_basebackup",
) -> Tuple[Path, datetime]:
    """
    Take a physical base backup with pg_basebackup and pack it as tar.gz.

    The backup uses tar format with fetched WAL so it is self-contained.

    Returns:
        Tuple of (archive path, snapshot time)
    """
    at = (at or datetime.now(UTC)).replace(microsecond=0)
    name = snapshot_file_name(Engine.POSTGRESQL, at)
    backup_dir = output_dir / name[: -len(".tar.gz")]
    archive = output_dir / name

    shutil.rmtree(backup_dir, ignore_errors=True)
    backup_dir.mkdir(parents=True, exist_ok=True)

    try:
        await run_tool(
            [
                pg_basebackup_path,
                f"--dbname={connection_url}",
                "--format=tar",
                "--wal-method=fetch",
                f"--pgdata={backup_dir}",
            ]
        )
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, _make_tarball, backup_dir, archive)
    except ToolError as e:
        archive.unlink(missing_ok=True)
        raise SnapshotError(
            f"PostgreSQL snapshot failed: {e.message}",
            details={"stderr": e.stderr, "returncode": e.returncode},
        )
    finally:
        shutil.rmtree(backup_dir, ignore_errors=True)

    logger.info("postgres_snapshot_created", archive=archive.name, size=archive.stat().st_size)
    return archive, at


async def create_snapshot(
    config: Any,
    include_oplog: bool = False,
    at: datetime | None = None,
) -> Tuple[Path, datetime]:
    """Create a snapshot archive for the configured engine in the staging area."""
    output_dir = config.staging_path / "snapshots"
    if config.engine == Engine.MONGODB:
        return await create_mongo_snapshot(
            config.connection_url,
            output_dir,
            databases=config.databases,
            include_oplog=include_oplog,
            at=at,
        )
    return await create_postgres_snapshot(config.connection_url, output_dir, at=at)


async def upload_snapshot(
    store: SegmentStore,
    bucket: str,
    prefix: str,
    archive_path: Path,
    timestamp: datetime,
    delete_local: bool = True,
) -> BaseSnapshot:
    """
    Upload a snapshot archive to <prefix>/<archiveFileName>.

    Args:
        store: Segment store
        bucket: Bucket to ensure before uploading
        prefix: Backup set prefix
        archive_path: Local archive
        timestamp: Snapshot time
        delete_local: Remove the local archive after upload

    Returns:
        The stored BaseSnapshot
    """
    key = build_snapshot_key(prefix, archive_path.name)
    size = archive_path.stat().st_size
    checksum = await compute_sha256(archive_path)

    await store.ensure_bucket(bucket)
    data = await read_staging_file(archive_path)
    await store.put(key, data)

    if delete_local:
        archive_path.unlink(missing_ok=True)

    logger.info("snapshot_uploaded", key=key, size=size, sha256=checksum)
    return BaseSnapshot(key=key, timestamp=timestamp, last_modified=datetime.now(UTC), size_bytes=size)


async def list_snapshots(
    store: SegmentStore,
    prefix: str,
    latest_only: bool = False,
) -> List[BaseSnapshot]:
    """
    List base snapshots under a prefix, newest first.

    Objects in the reserved log folders are never snapshots.

    Args:
        store: Segment store
        prefix: Backup set prefix
        latest_only: Return at most the newest snapshot
    """
    root = normalize_prefix(prefix)
    objects = await store.list(f"{root}/" if root else "")

    snapshots: List[BaseSnapshot] = []
    for obj in objects:
        if obj.key.endswith("/") or is_in_reserved_folder(obj.key, root, RESERVED_FOLDERS):
            continue
        timestamp = extract_embedded_timestamp(obj.key) or obj.last_modified
        snapshots.append(
            BaseSnapshot(
                key=obj.key,
                timestamp=timestamp,
                last_modified=obj.last_modified,
                size_bytes=obj.size_bytes,
            )
        )

    snapshots.sort(key=lambda s: (s.timestamp, s.key), reverse=True)
    return snapshots[:1] if latest_only else snapshots


async def find_snapshot(store: SegmentStore, prefix: str, key: str) -> BaseSnapshot:
    """
    Look up one snapshot by key.

    Raises:
        SnapshotNotFoundError: If the key is not a snapshot under the prefix
    """
    for snapshot in await list_snapshots(store, prefix):
        if snapshot.key == key:
            return snapshot
    raise SnapshotNotFoundError(f"Snapshot not found: {key}", details={"prefix": prefix})
