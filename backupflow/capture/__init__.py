# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Log Capture Layer - Turn engine log ranges into staged segments.

The capture unit owns the lower bound of the next range. It is an engine
cursor (oplog timestamp, WAL file name), never wall-clock time, so no
entry falls between two segments.
"""

from datetime import datetime, timedelta, UTC
from pathlib import Path
from typing import Any, Callable, Protocol

import structlog

from backupflow.backup.manager import write_staging_file
from backupflow.compression import DEFAULT_ZSTD_LEVEL, compress_payload
from backupflow.config import Engine
from backupflow.exceptions import CaptureError, ConfigurationError
from backupflow.keys import segment_file_name
from backupflow.models import LogRange, Segment

logger = structlog.get_logger()

SEGMENT_EXTENSIONS = {
    Engine.MONGODB: "bson.zst",
    Engine.POSTGRESQL: "tar.zst",
}


class LogRangeReader(Protocol):
    """Engine collaborator that reads raw log entries."""

    async def current_position(self) -> Any:
        """Latest log position; the cursor starts here."""
        ...

    async def read_range(self, since: Any) -> LogRange:
        """
        Read entries strictly after `since` up to the current position.

        Args:
            since: Cursor returned by a previous call (or current_position)
        """
        ...


def _utc_now() -> datetime:
    return datetime.now(UTC)


class LogCaptureUnit:
    """
    Captures log ranges into zstd-compressed staging files.

    Each successful capture advances the cursor. captured_at is strictly
    increasing at second resolution so segment keys never collide.
    """

    def __init__(
        self,
        reader: LogRangeReader,
        staging_dir: Path,
        source_tag: str,
        ext: str,
        zstd_level: int = DEFAULT_ZSTD_LEVEL,
        clock: Callable[[], datetime] = _utc_now,
    ):
        self.reader = reader
        self.staging_dir = staging_dir
        self.source_tag = source_tag
        self.ext = ext
        self.zstd_level = zstd_level
        self.clock = clock
        self.cursor: Any = None
        self.last_captured_at: datetime | None = None
        self._initialized = False

    async def initialize(self, cursor: Any = None) -> Any:
        """
        Fix the starting cursor.

        Called before the base snapshot is taken, so the first segment
        overlaps the snapshot instead of leaving a gap.
        """
        if cursor is None:
            try:
                cursor = await self.reader.current_position()
            except Exception as e:
                raise CaptureError(f"Failed to read current log position: {e}")
        self.cursor = cursor
        self._initialized = True
        logger.info("capture_cursor_initialized", source_tag=self.source_tag, cursor=str(cursor))
        return cursor

    def _next_captured_at(self, last_captured_at: datetime | None) -> datetime:
        now = self.clock().astimezone(UTC).replace(microsecond=0)
        floor = max(
            (t for t in (last_captured_at, self.last_captured_at) if t is not None),
            default=None,
        )
        if floor is not None and now <= floor:
            now = floor + timedelta(seconds=1)
        return now

    async def capture_since(self, last_captured_at: datetime | None = None) -> Segment:
        """
        Capture everything after the current cursor into one segment.

        An empty range still yields a Segment with entry_count 0 and an
        empty staging file.

        Args:
            last_captured_at: captured_at of the previous segment, if known

        Returns:
            The staged Segment

        Raises:
            CaptureError: If reading, compressing or staging fails
        """
        if not self._initialized:
            await self.initialize()

        try:
            log_range = await self.reader.read_range(self.cursor)
        except CaptureError:
            raise
        except Exception as e:
            raise CaptureError(
                f"Failed to read log range: {e}",
                details={"source_tag": self.source_tag, "cursor": str(self.cursor)},
            )

        captured_at = self._next_captured_at(last_captured_at)
        name = segment_file_name(self.source_tag, captured_at, self.ext)

        if log_range.entry_count > 0:
            payload = await compress_payload(name, log_range.data, self.zstd_level)
        else:
            payload = b""

        path = await write_staging_file(self.staging_dir, name, payload)

        # Advance only once the range is safely staged
        self.cursor = log_range.cursor
        self.last_captured_at = captured_at

        logger.info(
            "segment_captured",
            name=name,
            entries=log_range.entry_count,
            size=len(payload),
        )

        return Segment(
            captured_at=captured_at,
            source_tag=self.source_tag,
            payload_path=path,
            size_bytes=len(payload),
            entry_count=log_range.entry_count,
            cursor=log_range.cursor,
        )

    async def acknowledge(self, segment: Segment) -> None:
        """Tell the reader a segment is durably stored."""
        ack = getattr(self.reader, "acknowledge", None)
        if ack is None:
            return
        try:
            await ack(segment.cursor)
        except Exception as e:
            # Source-side cleanup only; the segment is already stored
            logger.warning("capture_acknowledge_failed", error=str(e))


def create_log_reader(config: Any) -> LogRangeReader:
    """
    Create the log range reader for the configured engine.

    Raises:
        ConfigurationError: If the engine cannot ship logs with this config
    """
    if config.engine == Engine.MONGODB:
        from backupflow.capture.mongo import MongoOplogReader

        return MongoOplogReader(
            config.connection_url,
            work_dir=config.staging_path / "oplog_work",
        )
    elif config.engine == Engine.POSTGRESQL:
        from backupflow.capture.postgres import PostgresWalReader

        if config.wal_archive_dir is None:
            from backupflow.errors import explain_missing_wal_archive_dir

            raise ConfigurationError(explain_missing_wal_archive_dir())

        return PostgresWalReader(config.wal_archive_dir, connection_url=config.connection_url)
    else:
        raise ConfigurationError(f"Unsupported engine: {config.engine}")


def create_capture_unit(config: Any, reader: LogRangeReader | None = None) -> LogCaptureUnit:
    """Build a LogCaptureUnit staging into the configured staging path."""
    return LogCaptureUnit(
        reader=reader or create_log_reader(config),
        staging_dir=config.staging_path / "segments",
        source_tag=config.effective_source_tag,
        ext=SEGMENT_EXTENSIONS[config.engine],
        zstd_level=config.zstd_level,
    )


__all__ = [
    "LogRangeReader",
    "LogCaptureUnit",
    "SEGMENT_EXTENSIONS",
    "create_log_reader",
    "create_capture_unit",
]
