# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
backupflow Session - Main orchestrator functions for backup and restore.

This module coordinates all the components: eligibility gate, log
capture, continuous shipper, snapshots, planner, replay engine and the
restore journal.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, UTC
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Sequence, Tuple, TypedDict

import aiosqlite
import structlog
from aiobotocore.session import get_session

from backupflow.backup.manager import get_staging_stats, prune_staging
from backupflow.backup.snapshots import (
    create_snapshot,
    find_snapshot,
    list_snapshots,
    upload_snapshot,
)
from backupflow.capture import LogCaptureUnit, create_capture_unit
from backupflow.config import BackupFlowConfig, ConflictPolicy, Engine
from backupflow.errors import explain_subset_with_incremental
from backupflow.exceptions import (
    ConfigurationError,
    EligibilityError,
    JournalError,
    SnapshotNotFoundError,
)
from backupflow.gate import Probe, is_log_shipping_eligible, probe_for
from backupflow.journal import STATUS_COMPLETED, get_restore, init_journal_db
from backupflow.keys import build_log_prefix
from backupflow.models import BaseSnapshot, ReplayResult, RestorePlan, ShipperStats
from backupflow.observer import FlowEvent, Observer, logging_observer, notify
from backupflow.planner import build_catalog, plan_restore, select_snapshot
from backupflow.replay import Restorer, apply_plan, create_restorer
from backupflow.shipper import ContinuousShipper
from backupflow.storage import S3SegmentStore, SegmentStore

logger = structlog.get_logger()

SnapshotFactory = Callable[[], Awaitable[Tuple[Path, datetime]]]

# Archives kept after a failed upload
STALE_SNAPSHOT_DAYS = 7


@dataclass
class BackupResult:
    """Result of a backup run."""

    snapshot: BaseSnapshot
    incremental: bool
    segments_uploaded: int = 0
    stopped_cleanly: bool = True
    duration_seconds: float = 0.0
    uploaded_keys: List[str] = field(default_factory=list)


@dataclass
class SessionStatus:
    """Status snapshot of a session."""

    engine: str
    bucket: str
    prefix: str
    incremental: bool
    shipper: ShipperStats | None
    last_snapshot_key: str | None
    last_backup_at: datetime | None
    total_backups: int
    total_restores: int
    staging: dict
    last_error: str | None


class SessionState(TypedDict):
    """Runtime state for a backup/restore session."""

    journal_db_path: Path
    staging_path: Path
    s3_session: Any  # aiobotocore session
    store: SegmentStore
    observer: Observer | None
    shipper: ContinuousShipper | None
    cancel_event: asyncio.Event | None
    last_snapshot: BaseSnapshot | None
    last_backup_at: datetime | None
    total_backups: int
    total_restores: int
    last_error: str | None


async def initialize_session(
    config: BackupFlowConfig,
    store: SegmentStore | None = None,
    observer: Observer | None = logging_observer,
) -> SessionState:
    """
    Initialize runtime state for a session.

    Creates the staging directory and the restore journal, prunes stale
    snapshot archives, and sets up the segment store.

    Args:
        config: backupflow configuration
        store: Segment store (default: S3 store built from config)
        observer: Progress callback for shipper and replay events

    Returns:
        Initialized SessionState dictionary
    """
    config.staging_path.mkdir(parents=True, exist_ok=True)
    await prune_staging(config.staging_path / "snapshots", STALE_SNAPSHOT_DAYS)
    journal_path = config.effective_journal_path
    await init_journal_db(journal_path)

    session = get_session()
    if store is None:
        store = S3SegmentStore.from_config(config, session=session)

    logger.info(
        "session_initialized",
        engine=config.engine.value,
        bucket=config.bucket,
        prefix=config.prefix,
        incremental=config.incremental,
    )

    return SessionState(
        journal_db_path=journal_path,
        staging_path=config.staging_path,
        s3_session=session,
        store=store,
        observer=observer,
        shipper=None,
        cancel_event=None,
        last_snapshot=None,
        last_backup_at=None,
        total_backups=0,
        total_restores=0,
        last_error=None,
    )


async def take_snapshot(
    config: BackupFlowConfig,
    state: SessionState,
    snapshot_factory: SnapshotFactory | None = None,
    include_oplog: bool = False,
) -> BaseSnapshot:
    """
    Create and upload one base snapshot without touching log shipping.

    Used by run_backup and by scheduled snapshots, which shorten the
    segment chain later restores have to replay.

    Raises:
        SnapshotError: If the snapshot cannot be created
        UploadError: If the archive cannot be stored
    """
    if snapshot_factory is not None:
        archive, taken_at = await snapshot_factory()
    else:
        archive, taken_at = await create_snapshot(config, include_oplog=include_oplog)

    snapshot = await upload_snapshot(
        state["store"], config.bucket, config.prefix, archive, taken_at
    )

    state["last_snapshot"] = snapshot
    state["last_backup_at"] = datetime.now(UTC)
    state["total_backups"] += 1
    return snapshot


async def run_backup(
    config: BackupFlowConfig,
    state: SessionState,
    cancel_event: asyncio.Event | None = None,
    capture_unit: LogCaptureUnit | None = None,
    probe: Probe | None = None,
    snapshot_factory: SnapshotFactory | None = None,
    include_oplog: bool = False,
) -> BackupResult:
    """
    Take a base snapshot and, for incremental sessions, ship logs until cancelled.

    Order matters: eligibility is checked and the log cursor is fixed
    before the snapshot, so the first segment overlaps the snapshot.

    Args:
        config: backupflow configuration
        state: Runtime state
        cancel_event: Stops continuous shipping when set
        capture_unit: Override of the engine capture unit
        probe: Override of the engine eligibility probe
        snapshot_factory: Override of snapshot creation
        include_oplog: Pass --oplog to mongodump

    Returns:
        BackupResult once the snapshot is stored and shipping has stopped

    Raises:
        EligibilityError: If incremental shipping is requested for a standalone source
        SnapshotError: If the snapshot cannot be created
    """
    start_time = datetime.now(UTC)
    shipper: ContinuousShipper | None = None

    try:
        if config.incremental:
            cancel_event = cancel_event or asyncio.Event()
            shipper = ContinuousShipper.from_config(
                config,
                capture_unit=capture_unit or create_capture_unit(config),
                store=state["store"],
                cancel_event=cancel_event,
                observer=state["observer"],
                probe=probe or probe_for(config),
            )
            await shipper.prepare()

        snapshot = await take_snapshot(
            config, state, snapshot_factory=snapshot_factory, include_oplog=include_oplog
        )
    except Exception as e:
        state["last_error"] = str(e)
        logger.error("backup_failed", error=str(e))
        raise

    if shipper is None:
        logger.info("backup_completed", snapshot=snapshot.key, incremental=False)
        return BackupResult(
            snapshot=snapshot,
            incremental=False,
            duration_seconds=(datetime.now(UTC) - start_time).total_seconds(),
        )

    state["shipper"] = shipper
    state["cancel_event"] = cancel_event
    await shipper.start()

    # Main flow idles here until the caller cancels
    await cancel_event.wait()
    stopped_cleanly = await shipper.stop()

    stats = shipper.get_stats()
    logger.info(
        "backup_completed",
        snapshot=snapshot.key,
        incremental=True,
        segments_uploaded=stats["segments_uploaded"],
        pending=stats["pending_segments"],
    )
    return BackupResult(
        snapshot=snapshot,
        incremental=True,
        segments_uploaded=stats["segments_uploaded"],
        stopped_cleanly=stopped_cleanly,
        duration_seconds=(datetime.now(UTC) - start_time).total_seconds(),
        uploaded_keys=list(shipper.uploaded_keys),
    )


def resolve_conflict_policy(
    config: BackupFlowConfig,
    databases: Sequence[str],
    incremental: bool,
    observer: Observer | None = None,
) -> bool:
    """
    Decide whether log replay runs for a restore.

    A MongoDB database subset cannot be combined with oplog replay, which
    applies to the whole replica set.

    Returns:
        True if log segments should be replayed

    Raises:
        ConfigurationError: Under the reject policy
    """
    if not incremental:
        return False
    if not databases or config.engine != Engine.MONGODB:
        return True

    if config.conflict_policy == ConflictPolicy.REJECT:
        raise ConfigurationError(
            explain_subset_with_incremental(list(databases)),
            details={"databases": list(databases), "conflict_policy": config.conflict_policy.value},
        )

    logger.warning(
        "incremental_replay_disabled",
        reason="database subset requested",
        databases=list(databases),
    )
    notify(
        observer,
        FlowEvent(
            kind="incremental_replay_disabled",
            message="database subset restore skips log replay",
            data={"databases": list(databases)},
        ),
    )
    return False


async def build_restore_plan(
    config: BackupFlowConfig,
    store: SegmentStore,
    target_time: datetime,
    snapshot_key: str | None = None,
    replay_logs: bool = True,
    require_segments: bool = False,
) -> RestorePlan:
    """
    Select the snapshot and compute the plan for a target time.

    Args:
        config: backupflow configuration
        store: Segment store
        target_time: Point in time to restore to
        snapshot_key: Use this snapshot instead of the latest eligible one
        replay_logs: Include log segments
        require_segments: Fail when no segment falls in range
    """
    if snapshot_key:
        snapshot = await find_snapshot(store, config.prefix, snapshot_key)
    else:
        snapshots = await list_snapshots(store, config.prefix)
        if not snapshots:
            raise SnapshotNotFoundError(
                "No base snapshots found",
                details={"bucket": config.bucket, "prefix": config.prefix},
            )
        snapshot = select_snapshot(snapshots, target_time)

    catalog = []
    if replay_logs:
        objects = await store.list(build_log_prefix(config.prefix, config.log_subfolder))
        catalog = build_catalog(objects)

    return plan_restore(catalog, snapshot, target_time, require_segments=require_segments)


async def run_restore(
    config: BackupFlowConfig,
    state: SessionState,
    target_time: datetime | None = None,
    snapshot_key: str | None = None,
    databases: Sequence[str] | None = None,
    incremental: bool = False,
    resume_id: str | None = None,
    restorer: Restorer | None = None,
    probe: Probe | None = None,
    require_segments: bool = False,
) -> ReplayResult:
    """
    Restore a snapshot and, when incremental, replay logs up to target_time.

    Args:
        config: backupflow configuration
        state: Runtime state
        target_time: Point in time (default: now, or the journaled target on resume)
        snapshot_key: Snapshot to restore (default: latest at or before target)
        databases: Database subset (default: config.databases)
        incremental: Replay log segments after the snapshot
        resume_id: Journaled restore to resume after its last applied position
        restorer: Override of the engine restorer
        probe: Override of the eligibility probe used before oplog replay
        require_segments: Fail when no segment falls in range

    Returns:
        ReplayResult

    Raises:
        ConfigurationError: For a rejected subset/incremental combination
        PlanningError: If no valid plan exists
        ReplayError: If applying the plan fails
        JournalError: If resume_id is unknown or its plan no longer matches
    """
    selected = list(config.databases if databases is None else databases)
    replay_logs = resolve_conflict_policy(config, selected, incremental, state["observer"])

    resume_record = None
    if resume_id is not None:
        async with aiosqlite.connect(state["journal_db_path"]) as db:
            resume_record = await get_restore(db, resume_id)
        if resume_record is None:
            raise JournalError(f"Unknown restore: {resume_id}", details={"restore_id": resume_id})
        if resume_record["status"] == STATUS_COMPLETED:
            raise JournalError(
                f"Restore already completed: {resume_id}",
                details={"restore_id": resume_id},
            )
        if target_time is None:
            target_time = datetime.fromisoformat(resume_record["target_time"])
        if snapshot_key is None:
            snapshot_key = resume_record["snapshot_key"]

    target = target_time or datetime.now(UTC)

    if replay_logs and config.engine == Engine.MONGODB:
        if not await is_log_shipping_eligible(probe or probe_for(config)):
            raise EligibilityError(
                "Oplog replay needs a replica set member as the restore target",
                details={"engine": config.engine.value},
            )

    plan = await build_restore_plan(
        config,
        state["store"],
        target,
        snapshot_key=snapshot_key,
        replay_logs=replay_logs,
        require_segments=require_segments,
    )

    start_position = 0
    if resume_record is not None:
        if resume_record["plan_keys"] != plan.keys():
            raise JournalError(
                "Restore plan changed since the journaled run; start a new restore",
                details={"restore_id": resume_id},
            )
        start_position = resume_record["last_applied_position"] + 1

    try:
        result = await apply_plan(
            plan,
            state["store"],
            restorer or create_restorer(config),
            work_dir=config.staging_path / "restore",
            databases=selected,
            start_position=start_position,
            observer=state["observer"],
            journal_path=state["journal_db_path"],
            restore_id=resume_id,
        )
    except Exception as e:
        state["last_error"] = str(e)
        raise

    state["total_restores"] += 1
    return result


def get_status(config: BackupFlowConfig, state: SessionState) -> SessionStatus:
    """Current session status."""
    shipper = state["shipper"]
    snapshot = state["last_snapshot"]

    return SessionStatus(
        engine=config.engine.value,
        bucket=config.bucket,
        prefix=config.prefix,
        incremental=config.incremental,
        shipper=shipper.get_stats() if shipper is not None else None,
        last_snapshot_key=snapshot.key if snapshot else None,
        last_backup_at=state["last_backup_at"],
        total_backups=state["total_backups"],
        total_restores=state["total_restores"],
        staging=get_staging_stats(config.staging_path / "segments"),
        last_error=state["last_error"],
    )


async def shutdown_session(state: SessionState) -> None:
    """Stop continuous shipping if it is running."""
    shipper = state["shipper"]
    if shipper is not None:
        try:
            await shipper.stop()
        except Exception as e:
            logger.warning("shipper_stop_failed", error=str(e))

    logger.info("session_shutdown_complete")


def status_to_dict(status: SessionStatus) -> Dict[str, Any]:
    """JSON-friendly view of a SessionStatus."""
    return {
        "engine": status.engine,
        "bucket": status.bucket,
        "prefix": status.prefix,
        "incremental": status.incremental,
        "shipper": dict(status.shipper) if status.shipper is not None else None,
        "last_snapshot_key": status.last_snapshot_key,
        "last_backup_at": status.last_backup_at.isoformat() if status.last_backup_at else None,
        "total_backups": status.total_backups,
        "total_restores": status.total_restores,
        "staging": status.staging,
        "last_error": status.last_error,
    }
