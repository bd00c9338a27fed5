# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
backupflow Planner - Select the snapshot and segments for a restore.

Planning is pure: the same catalog, snapshot and target always yield the
same plan. Segments are ordered by (captured_at, key) so equal timestamps
from different source tags still replay in a stable order.
"""

from datetime import datetime, UTC
from typing import Iterable, List, Sequence

import structlog

from backupflow.exceptions import (
    EmptyCatalogError,
    InvalidTargetError,
    SnapshotNotFoundError,
)
from backupflow.keys import parse_segment_name
from backupflow.models import BaseSnapshot, RestorePlan, StoredObject, StoredSegmentRef

logger = structlog.get_logger()


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC)


def build_catalog(objects: Iterable[StoredObject]) -> List[StoredSegmentRef]:
    """
    Turn a listing of the log folder into segment references.

    Keys that do not follow the segment naming scheme are skipped with a
    warning.
    """
    catalog: List[StoredSegmentRef] = []
    for obj in objects:
        parsed = parse_segment_name(obj.key)
        if parsed is None:
            logger.warning("unrecognized_segment_key", key=obj.key)
            continue
        catalog.append(
            StoredSegmentRef(
                key=obj.key,
                captured_at=parsed[1],
                last_modified=obj.last_modified,
                size_bytes=obj.size_bytes,
            )
        )
    return catalog


def select_snapshot(
    snapshots: Sequence[BaseSnapshot],
    target_time: datetime,
) -> BaseSnapshot:
    """
    Pick the most recent snapshot taken at or before the target.

    Raises:
        SnapshotNotFoundError: If every snapshot is newer than the target
    """
    target = _as_utc(target_time)
    eligible = [s for s in snapshots if _as_utc(s.timestamp) <= target]
    if not eligible:
        raise SnapshotNotFoundError(
            f"No base snapshot at or before {target.isoformat()}",
            details={"snapshots": len(snapshots), "target_time": target.isoformat()},
        )
    return max(eligible, key=lambda s: (_as_utc(s.timestamp), s.key))


def plan_restore(
    catalog: Iterable[StoredSegmentRef],
    snapshot: BaseSnapshot,
    target_time: datetime,
    require_segments: bool = False,
) -> RestorePlan:
    """
    Compute the restore plan for a point in time.

    Keeps segments with snapshot.timestamp < captured_at <= target_time.

    Args:
        catalog: Segments stored under the session's log prefix
        snapshot: Chosen base snapshot
        target_time: Point in time to restore to
        require_segments: Fail instead of returning a snapshot-only plan

    Returns:
        RestorePlan with segments in replay order

    Raises:
        InvalidTargetError: If target_time is before the snapshot
        EmptyCatalogError: If require_segments is set and no segment qualifies
    """
    target = _as_utc(target_time)
    base_time = _as_utc(snapshot.timestamp)

    if target < base_time:
        raise InvalidTargetError(
            f"Target time {target.isoformat()} is before snapshot {snapshot.key}",
            details={
                "target_time": target.isoformat(),
                "snapshot_time": base_time.isoformat(),
            },
        )

    segments = sorted(
        (s for s in catalog if base_time < _as_utc(s.captured_at) <= target),
        key=lambda s: (_as_utc(s.captured_at), s.key),
    )

    if not segments and require_segments:
        raise EmptyCatalogError(
            "No log segments between the snapshot and the target time",
            details={
                "snapshot": snapshot.key,
                "target_time": target.isoformat(),
            },
        )

    logger.info(
        "restore_planned",
        snapshot=snapshot.key,
        target_time=target.isoformat(),
        segments=len(segments),
    )
    return RestorePlan(snapshot=snapshot, segments=tuple(segments), target_time=target)
