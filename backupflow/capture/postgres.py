# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
PostgreSQL WAL Capture - Ship WAL files from the archive directory.

The server's archive_command copies completed WAL files into a local
directory. Positions are WAL file names: 24 hex characters that sort in
log order. A range is every archived file newer than the cursor, packed
into one tar.

For production use, PostgreSQL must be configured with:
- wal_level = replica (or logical)
- archive_mode = on
- archive_command copying into the archive directory
"""

import asyncio
import io
import re
import tarfile
from pathlib import Path
from typing import List

import structlog

from backupflow.exceptions import CaptureError
from backupflow.models import LogRange
from backupflow.process import mask_secrets

logger = structlog.get_logger()

WAL_FILE_PATTERN = re.compile(r"^[0-9A-F]{24}$")

DEFAULT_ARCHIVE_TIMEOUT = 60
DEFAULT_MAX_WAL_SENDERS = 3


def is_wal_file_name(name: str) -> bool:
    """Check for a WAL segment file name (timeline + log + segment)."""
    return bool(WAL_FILE_PATTERN.match(name))


def list_wal_files(archive_dir: Path, after: str | None = None) -> List[str]:
    """
    List archived WAL file names in log order.

    Args:
        archive_dir: Directory archive_command writes to
        after: Exclusive lower bound

    Returns:
        Sorted WAL file names
    """
    if not archive_dir.exists():
        return []
    names = sorted(
        p.name for p in archive_dir.iterdir() if p.is_file() and is_wal_file_name(p.name)
    )
    if after is not None:
        names = [n for n in names if n > after]
    return names


def _pack_wal_files(archive_dir: Path, names: List[str]) -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as tar:
        for name in names:
            tar.add(archive_dir / name, arcname=name)
    return buffer.getvalue()


class PostgresWalReader:
    """
    Log range reader for PostgreSQL.

    With a connection URL, each read first asks the server to switch to
    a new WAL file so recent transactions reach the archive.
    """

    def __init__(
        self,
        archive_dir: Path,
        connection_url: str | None = None,
        force_switch: bool = True,
        delete_after_ship: bool = True,
    ):
        self.archive_dir = Path(archive_dir)
        self.connection_url = connection_url
        self.force_switch = force_switch
        self.delete_after_ship = delete_after_ship

    async def current_position(self) -> str | None:
        """Newest archived WAL file name."""
        names = list_wal_files(self.archive_dir)
        return names[-1] if names else None

    async def _switch_wal(self) -> None:
        import asyncpg

        try:
            conn = await asyncpg.connect(self.connection_url)
            try:
                await conn.execute("SELECT pg_switch_wal()")
            finally:
                await conn.close()
        except Exception as e:
            # Archiving still proceeds on archive_timeout
            logger.warning(
                "wal_switch_failed",
                connection_url=mask_secrets(self.connection_url or ""),
                error=str(e),
            )

    async def read_range(self, since: str | None) -> LogRange:
        """
        Pack archived WAL files newer than `since` into a tar.
        """
        if self.connection_url and self.force_switch:
            await self._switch_wal()
            # archive_command runs asynchronously after the switch
            await asyncio.sleep(0.5)

        names = list_wal_files(self.archive_dir, after=since)
        if not names:
            return LogRange(data=b"", cursor=since, entry_count=0)

        try:
            loop = asyncio.get_running_loop()
            data = await loop.run_in_executor(None, _pack_wal_files, self.archive_dir, names)
        except Exception as e:
            raise CaptureError(
                f"Failed to pack WAL files: {e}",
                details={"archive_dir": str(self.archive_dir), "files": len(names)},
            )

        logger.debug("wal_range_read", first=names[0], last=names[-1], files=len(names))
        return LogRange(data=data, cursor=names[-1], entry_count=len(names))

    async def acknowledge(self, cursor: str | None) -> None:
        """Delete archived WAL files up to the shipped cursor."""
        if not self.delete_after_ship or cursor is None:
            return
        for name in list_wal_files(self.archive_dir):
            if name > cursor:
                break
            (self.archive_dir / name).unlink(missing_ok=True)
            logger.debug("wal_file_removed", name=name)


async def configure_wal_archiving(
    connection_url: str,
    archive_dir: Path,
    archive_timeout: int = DEFAULT_ARCHIVE_TIMEOUT,
    max_wal_senders: int = DEFAULT_MAX_WAL_SENDERS,
) -> None:
    """
    Configure the server to archive WAL files into archive_dir.

    wal_level and archive_mode only take effect after a server restart.

    Args:
        connection_url: PostgreSQL superuser connection URL
        archive_dir: Directory on the database host for archived WAL
        archive_timeout: Seconds before a partially filled WAL file is archived
        max_wal_senders: Replication connections allowed
    """
    import asyncpg

    archive_path = str(archive_dir).replace("'", "''")
    archive_command = f"test ! -f {archive_path}/%f && cp %p {archive_path}/%f"

    statements = [
        "ALTER SYSTEM SET wal_level = 'replica'",
        "ALTER SYSTEM SET archive_mode = 'on'",
        f"ALTER SYSTEM SET archive_command = '{archive_command}'",
        f"ALTER SYSTEM SET archive_timeout = {int(archive_timeout)}",
        f"ALTER SYSTEM SET max_wal_senders = {int(max_wal_senders)}",
        "SELECT pg_reload_conf()",
    ]

    try:
        conn = await asyncpg.connect(connection_url)
        try:
            for statement in statements:
                await conn.execute(statement)
        finally:
            await conn.close()
    except Exception as e:
        raise CaptureError(
            f"Failed to configure WAL archiving: {e}",
            details={"connection_url": mask_secrets(connection_url)},
        )

    logger.warning(
        "wal_archiving_configured",
        archive_dir=str(archive_dir),
        note="restart PostgreSQL for wal_level and archive_mode to take effect",
    )
