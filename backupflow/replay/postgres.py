# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
PostgreSQL Restorer - Rebuild a data directory for point-in-time recovery.

The base backup is unpacked into the data directory, shipped WAL files
are unpacked into a restore directory, and finalize writes the recovery
settings. PostgreSQL itself replays the WAL up to the target time on its
next start.
"""

import asyncio
import shutil
import tarfile
from datetime import datetime, UTC
from pathlib import Path
from typing import Sequence

import structlog

from backupflow.exceptions import ConfigurationError, SnapshotError

logger = structlog.get_logger()

RECOVERY_SIGNAL = "recovery.signal"
AUTO_CONF = "postgresql.auto.conf"
WAL_RESTORE_DIRNAME = "backupflow_wal"


def _check_members(tar: tarfile.TarFile, source: Path) -> None:
    # Reject absolute paths and parent traversal
    for member in tar.getmembers():
        if member.name.startswith("/") or ".." in Path(member.name).parts:
            raise SnapshotError(
                f"Unsafe path in archive: {member.name}",
                details={"archive": str(source)},
            )


def _extract(archive: Path, destination: Path) -> None:
    destination.mkdir(parents=True, exist_ok=True)
    with tarfile.open(archive, "r:*") as tar:
        _check_members(tar, archive)
        tar.extractall(destination)


def _extract_base_backup(archive: Path, data_dir: Path) -> None:
    """
    Unpack a base backup into data_dir.

    Accepts the tar.gz produced at snapshot time, which wraps
    pg_basebackup's base.tar (and pg_wal.tar when present), or a plain
    base.tar.
    """
    staging = data_dir.parent / f".{data_dir.name}.unpack"
    _extract(archive, staging)

    base_tar = next(staging.rglob("base.tar"), None)
    if base_tar is None:
        # Archive already holds the data directory contents
        for child in staging.iterdir():
            child.rename(data_dir / child.name)
    else:
        _extract(base_tar, data_dir)
        wal_tar = next(staging.rglob("pg_wal.tar"), None)
        if wal_tar is not None:
            _extract(wal_tar, data_dir / "pg_wal")

    shutil.rmtree(staging, ignore_errors=True)


class PostgresRestorer:
    """
    Restores a pg_basebackup snapshot and stages WAL for recovery.

    Args:
        data_dir: Target data directory (must be empty or absent)
        wal_restore_dir: Where shipped WAL files are unpacked
    """

    def __init__(self, data_dir: Path, wal_restore_dir: Path | None = None):
        self.data_dir = Path(data_dir)
        self.wal_restore_dir = (
            Path(wal_restore_dir) if wal_restore_dir else self.data_dir / WAL_RESTORE_DIRNAME
        )

    async def restore_base(self, archive_path: Path, databases: Sequence[str]) -> None:
        if databases:
            raise ConfigurationError(
                "PostgreSQL restores the whole cluster; a database subset is not supported",
                details={"databases": list(databases)},
            )

        if self.data_dir.exists() and any(self.data_dir.iterdir()):
            raise SnapshotError(
                f"Data directory is not empty: {self.data_dir}",
                details={"data_dir": str(self.data_dir)},
            )
        self.data_dir.mkdir(parents=True, exist_ok=True)

        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, _extract_base_backup, archive_path, self.data_dir)
        logger.info("postgres_base_restored", archive=archive_path.name, data_dir=str(self.data_dir))

    async def apply_segment(self, segment_path: Path, target_time: datetime) -> None:
        """Unpack a WAL segment tar into the restore directory."""
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, _extract, segment_path, self.wal_restore_dir)
        logger.info("wal_segment_staged", segment=segment_path.name)

    async def finalize(self, target_time: datetime) -> None:
        """Write recovery settings so the next server start replays to target_time."""
        if target_time.tzinfo is None:
            target_time = target_time.replace(tzinfo=UTC)
        self.data_dir.mkdir(parents=True, exist_ok=True)

        (self.data_dir / RECOVERY_SIGNAL).touch()

        restore_dir = str(self.wal_restore_dir).replace("'", "''")
        target = target_time.astimezone(UTC).strftime("%Y-%m-%d %H:%M:%S+00")
        settings = (
            "\n# backupflow point-in-time recovery\n"
            f"restore_command = 'cp {restore_dir}/%f %p'\n"
            f"recovery_target_time = '{target}'\n"
            "recovery_target_action = 'promote'\n"
        )
        with open(self.data_dir / AUTO_CONF, "a") as f:
            f.write(settings)

        logger.info(
            "postgres_recovery_configured",
            data_dir=str(self.data_dir),
            target_time=target,
            note="start PostgreSQL to replay WAL up to the target time",
        )
