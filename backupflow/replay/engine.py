# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
backupflow Replay Engine - Apply a restore plan in strict order.

The base snapshot is restored first (position 0), then every segment one
at a time (positions 1..n), then the restorer finalizes at the target
time. The first failure stops the restore; nothing is retried
automatically. The raised ReplayError tells the caller exactly how far
the restore got.
"""

import asyncio
import shutil
from datetime import datetime
from pathlib import Path
from typing import Any, List, Protocol, Sequence

import aiofiles
import aiosqlite
import structlog
from ulid import ULID

from backupflow.compression import decompress_payload
from backupflow.exceptions import ReplayError
from backupflow.journal import (
    complete_restore,
    record_position_applied,
    record_restore,
    reopen_restore,
)
from backupflow.models import ReplayResult, RestorePlan
from backupflow.observer import FlowEvent, Observer, logging_observer, notify
from backupflow.storage import SegmentStore

logger = structlog.get_logger()

SEGMENT_COMPRESSION_SUFFIX = ".zst"


class Restorer(Protocol):
    """Engine collaborator that applies downloaded artifacts."""

    async def restore_base(self, archive_path: Path, databases: Sequence[str]) -> None:
        """Restore the base snapshot archive."""
        ...

    async def apply_segment(self, segment_path: Path, target_time: datetime) -> None:
        """Apply one decompressed log segment, stopping at target_time."""
        ...

    async def finalize(self, target_time: datetime) -> None:
        """Complete recovery once every segment has been applied."""
        ...


async def fetch_artifact(
    store: SegmentStore,
    key: str,
    work_dir: Path,
    is_segment: bool,
) -> Path:
    """
    Download one plan artifact into the work directory.

    Segments are stored zstd-compressed and are written decompressed;
    snapshot archives are written as stored.
    """
    data = await store.get(key)
    name = key.rsplit("/", 1)[-1]

    if is_segment and name.endswith(SEGMENT_COMPRESSION_SUFFIX):
        data = await decompress_payload(key, data)
        name = name[: -len(SEGMENT_COMPRESSION_SUFFIX)]

    path = work_dir / name
    async with aiofiles.open(path, "wb") as f:
        await f.write(data)
    return path


def _applied_at(plan: RestorePlan, position: int) -> datetime | None:
    if position < 0:
        return None
    if position == 0:
        return plan.snapshot.timestamp
    return plan.segments[position - 1].captured_at


async def apply_plan(
    plan: RestorePlan,
    store: SegmentStore,
    restorer: Restorer,
    work_dir: Path,
    databases: Sequence[str] = (),
    start_position: int = 0,
    observer: Observer | None = logging_observer,
    journal_path: Path | None = None,
    restore_id: str | None = None,
) -> ReplayResult:
    """
    Apply a restore plan.

    Args:
        plan: Plan from plan_restore
        store: Segment store to download artifacts from
        restorer: Engine collaborator applying artifacts
        work_dir: Scratch directory for downloads
        databases: Database subset for the base restore (empty for all)
        start_position: First position to apply; earlier ones are skipped
        observer: Progress callback
        journal_path: SQLite journal to record progress in
        restore_id: ID of the restore (new ULID if omitted)

    Returns:
        ReplayResult once every position and finalize succeeded

    Raises:
        ReplayError: On the first failure, with the last applied position
    """
    restore_id = restore_id or str(ULID())
    keys = plan.keys()

    if not 0 <= start_position <= len(keys):
        raise ReplayError(
            f"start_position {start_position} outside plan of {len(keys)} positions",
            last_applied_position=-1,
            details={"restore_id": restore_id},
        )

    last_position = start_position - 1
    last_at = _applied_at(plan, last_position)
    applied_keys: List[str] = []
    segments_applied = 0

    run_dir = work_dir / restore_id
    run_dir.mkdir(parents=True, exist_ok=True)

    logger.info(
        "replay_started",
        restore_id=restore_id,
        snapshot=plan.snapshot.key,
        segments=len(plan.segments),
        start_position=start_position,
        target_time=plan.target_time.isoformat(),
    )

    db: Any = None
    try:
        if journal_path is not None:
            db = await aiosqlite.connect(journal_path)
            if start_position == 0:
                await record_restore(db, restore_id, plan, list(databases))
            else:
                await reopen_restore(db, restore_id)

        for position, key in enumerate(keys):
            if position < start_position:
                continue

            local_path: Path | None = None
            try:
                local_path = await fetch_artifact(store, key, run_dir, is_segment=position > 0)
                if position == 0:
                    await restorer.restore_base(local_path, list(databases))
                else:
                    await restorer.apply_segment(local_path, plan.target_time)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                error = ReplayError(
                    f"Replay failed at position {position} ({key}): {e}",
                    last_applied_position=last_position,
                    last_applied_at=last_at,
                    failed_key=key,
                    details={"restore_id": restore_id, "failed_position": position},
                )
                await _fail(db, restore_id, observer, error)
                raise error from e
            finally:
                if local_path is not None:
                    local_path.unlink(missing_ok=True)

            last_position = position
            last_at = _applied_at(plan, position)
            applied_keys.append(key)
            if position > 0:
                segments_applied += 1

            if db is not None:
                await record_position_applied(
                    db,
                    restore_id,
                    position,
                    key,
                    plan.segments[position - 1].captured_at if position > 0 else None,
                )

            notify(
                observer,
                FlowEvent(
                    kind="position_applied",
                    key=key,
                    position=position,
                    data={"restore_id": restore_id, "total": len(keys)},
                ),
            )

        try:
            await restorer.finalize(plan.target_time)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            error = ReplayError(
                f"Finalizing restore failed: {e}",
                last_applied_position=last_position,
                last_applied_at=last_at,
                details={"restore_id": restore_id, "stage": "finalize"},
            )
            await _fail(db, restore_id, observer, error)
            raise error from e

        if db is not None:
            await complete_restore(db, restore_id)

    finally:
        if db is not None:
            await db.close()
        shutil.rmtree(run_dir, ignore_errors=True)

    logger.info(
        "replay_completed",
        restore_id=restore_id,
        last_applied_position=last_position,
        segments_applied=segments_applied,
    )
    notify(
        observer,
        FlowEvent(
            kind="replay_completed",
            position=last_position,
            data={"restore_id": restore_id, "segments_applied": segments_applied},
        ),
    )

    return ReplayResult(
        restore_id=restore_id,
        last_applied_position=last_position,
        last_applied_at=last_at,
        segments_applied=segments_applied,
        skipped_positions=start_position,
        applied_keys=applied_keys,
    )


async def _fail(db: Any, restore_id: str, observer: Observer | None, error: ReplayError) -> None:
    logger.error(
        "replay_failed",
        restore_id=restore_id,
        failed_key=error.failed_key,
        last_applied_position=error.last_applied_position,
        error=error.message,
    )
    notify(
        observer,
        FlowEvent(
            kind="replay_failed",
            key=error.failed_key,
            position=error.last_applied_position,
            error=error.message,
        ),
    )
    if db is not None:
        await complete_restore(db, restore_id, error=error.message)
