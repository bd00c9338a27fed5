# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
backupflow Models - Value types shared by capture, shipping and restore.

All timestamps are timezone-aware UTC datetimes.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Tuple, TypedDict


class ShipperState(str, Enum):
    """States of the continuous shipper loop."""

    CAPTURING = "capturing"
    UPLOADING = "uploading"
    WAITING_INTERVAL = "waiting_interval"
    RETRY_BACKOFF = "retry_backoff"
    STOPPED = "stopped"


@dataclass(frozen=True)
class LogRange:
    """Raw log entries read from an engine between two cursors."""

    data: bytes
    cursor: Any
    entry_count: int


@dataclass(frozen=True)
class Segment:
    """A contiguous range of log entries staged locally for upload."""

    captured_at: datetime
    source_tag: str
    payload_path: Path
    size_bytes: int
    entry_count: int
    cursor: Any = None

    @property
    def is_empty(self) -> bool:
        return self.entry_count == 0


@dataclass(frozen=True)
class StoredSegmentRef:
    """A segment that exists in the object store."""

    key: str
    captured_at: datetime
    last_modified: datetime | None = None
    size_bytes: int = 0


@dataclass(frozen=True)
class StoredObject:
    """Listing entry returned by the segment store."""

    key: str
    last_modified: datetime
    size_bytes: int


@dataclass(frozen=True)
class BaseSnapshot:
    """A full backup archive; its timestamp is the consistency point."""

    key: str
    timestamp: datetime
    last_modified: datetime | None = None
    size_bytes: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "timestamp": self.timestamp.isoformat(),
            "last_modified": self.last_modified.isoformat() if self.last_modified else None,
            "size_bytes": self.size_bytes,
        }


@dataclass(frozen=True)
class RestorePlan:
    """
    Ordered restore recipe.

    Position 0 is the base snapshot, positions 1..n are the segments in
    replay order.
    """

    snapshot: BaseSnapshot
    segments: Tuple[StoredSegmentRef, ...]
    target_time: datetime

    def __len__(self) -> int:
        return len(self.segments) + 1

    def keys(self) -> List[str]:
        """Object keys in replay order, snapshot first."""
        return [self.snapshot.key] + [s.key for s in self.segments]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "snapshot": {
                "key": self.snapshot.key,
                "timestamp": self.snapshot.timestamp.isoformat(),
            },
            "segments": [
                {"key": s.key, "captured_at": s.captured_at.isoformat()}
                for s in self.segments
            ],
            "target_time": self.target_time.isoformat(),
        }


@dataclass
class ReplayResult:
    """Outcome of a fully applied restore plan."""

    restore_id: str
    last_applied_position: int
    last_applied_at: datetime | None
    segments_applied: int
    skipped_positions: int = 0
    applied_keys: List[str] = field(default_factory=list)


class ShipperStats(TypedDict):
    """Counters exposed by a running shipper."""

    state: str
    cycles: int
    segments_uploaded: int
    segments_skipped_empty: int
    bytes_uploaded: int
    capture_failures: int
    upload_failures: int
    cleanup_failures: int
    pending_segments: int
    last_uploaded_key: str | None
    last_error: str | None
