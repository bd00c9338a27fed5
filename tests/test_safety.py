# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Critical Safety Tests for backupflow.

These tests verify the core recovery guarantees:
1. Ordered shipping - Segment timestamps never go backwards
2. Idempotent retries - A failed upload is retried under the same key
3. Plan bounds - Segments after the target time are never replayed
4. Target validation - Targets before the snapshot are refused
5. Snapshot-only plans - A restore without segments is still valid
6. Fail-stop replay - The first failure stops the restore and reports progress
7. Clean shutdown - Cancellation stops the loop without losing segments
8. Eligibility - Only replica set members ship logs

These tests MUST pass before any production deployment.
"""

import asyncio
from datetime import datetime, timedelta
from pathlib import Path

import aiosqlite
import pytest
import zstandard as zstd

from backupflow.capture import LogCaptureUnit
from backupflow.exceptions import (
    EligibilityError,
    EmptyCatalogError,
    InvalidTargetError,
    ReplayError,
    SnapshotNotFoundError,
)
from backupflow.gate import evaluate_probe_response, is_log_shipping_eligible
from backupflow.journal import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    get_applied_positions,
    get_restore,
    init_journal_db,
    last_applied_position,
)
from backupflow.keys import parse_segment_name
from backupflow.models import BaseSnapshot, ShipperState, StoredSegmentRef
from backupflow.observer import RecordingObserver
from backupflow.planner import plan_restore, select_snapshot
from backupflow.replay import apply_plan
from backupflow.session import build_restore_plan, initialize_session, run_backup
from backupflow.shipper import ContinuousShipper

from conftest import (
    T0,
    BlockingSegmentStore,
    FakeLogReader,
    FakePostgresConnection,
    FakeRestorer,
    InMemorySegmentStore,
    LostAckSegmentStore,
    fixed_clock,
    minutes,
    replica_set_probe,
    seed_segment,
    seed_snapshot,
    standalone_probe,
    wait_for_condition,
)


def make_unit(reader: FakeLogReader, staging_dir: Path) -> LogCaptureUnit:
    return LogCaptureUnit(
        reader=reader,
        staging_dir=staging_dir,
        source_tag="oplog_backup",
        ext="bson.zst",
        zstd_level=3,
        clock=fixed_clock(T0),
    )


def make_shipper(
    unit: LogCaptureUnit,
    store,
    cancel_event: asyncio.Event,
    interval: float = 0.01,
    retry: float = 0.01,
    grace: float = 1.0,
    observer=None,
    probe=None,
) -> ContinuousShipper:
    return ContinuousShipper(
        capture_unit=unit,
        store=store,
        prefix="prod/orders",
        log_subfolder="oplogs",
        cancel_event=cancel_event,
        capture_interval_seconds=interval,
        retry_delay_seconds=retry,
        shutdown_grace_seconds=grace,
        observer=observer,
        probe=probe,
    )


def cancel_after_uploads(cancel_event: asyncio.Event, count: int) -> RecordingObserver:
    """Observer that requests cancellation once `count` segments are uploaded."""
    recorder = RecordingObserver()

    def on_event(event):
        if event.kind == "segment_uploaded" and recorder.kinds().count("segment_uploaded") >= count:
            cancel_event.set()

    recorder.forward = on_event
    return recorder


def snapshot_at(at: datetime, key: str = "prod/orders/mongodb_backup.archive.gz") -> BaseSnapshot:
    return BaseSnapshot(key=key, timestamp=at)


def segment_at(at: datetime) -> StoredSegmentRef:
    name = f"oplog_backup_{at.strftime('%Y%m%d_%H%M%S')}.bson.zst"
    return StoredSegmentRef(key=f"prod/orders/oplogs/{name}", captured_at=at)


# ============================================================================
# Test 1: ORDERED SHIPPING
# ============================================================================

@pytest.mark.asyncio
async def test_uploaded_segment_timestamps_strictly_increase(temp_dir: Path):
    """
    CRITICAL: Segment keys must sort in capture order.

    The clock is frozen, so every capture happens "at the same second";
    captured_at must still move forward and empty ranges must not be
    uploaded.
    """
    reader = FakeLogReader([[b"a"], [b"b", b"c"], [], [b"d"]])
    store = InMemorySegmentStore()
    cancel = asyncio.Event()
    observer = cancel_after_uploads(cancel, 3)
    shipper = make_shipper(make_unit(reader, temp_dir / "segments"), store, cancel, observer=observer)

    await shipper.start()
    await asyncio.wait_for(shipper.wait(), timeout=5)

    keys = shipper.uploaded_keys
    assert len(keys) == 3
    times = [parse_segment_name(k)[1] for k in keys]
    assert times == sorted(times)
    assert len(set(times)) == 3, "captured_at must never repeat"
    assert keys == sorted(keys), "key order must match capture order"
    assert times[0] == T0

    stats = shipper.get_stats()
    assert stats["segments_uploaded"] == 3
    assert stats["segments_skipped_empty"] == 1
    assert reader.acknowledged == [1, 3, 4]

    payload = zstd.ZstdDecompressor().decompress(store.objects[keys[1]])
    assert payload == b"bc"


@pytest.mark.asyncio
async def test_capture_failure_does_not_advance_cursor(temp_dir: Path):
    """
    A failed capture is retried from the same cursor, so no entry is lost.
    """
    reader = FakeLogReader([[b"a", b"b"]], fail_reads=1)
    store = InMemorySegmentStore()
    cancel = asyncio.Event()
    observer = cancel_after_uploads(cancel, 1)
    shipper = make_shipper(make_unit(reader, temp_dir / "segments"), store, cancel, observer=observer)

    await shipper.start()
    await asyncio.wait_for(shipper.wait(), timeout=5)

    stats = shipper.get_stats()
    assert stats["capture_failures"] == 1
    assert stats["segments_uploaded"] == 1
    assert "capture_failed" in observer.kinds()
    assert reader.acknowledged == [2]


@pytest.mark.asyncio
async def test_captured_at_continues_after_stored_segments(temp_dir: Path):
    """
    CRITICAL: A restarted shipper whose clock is behind the newest stored
    segment still ships keys that sort after it.
    """
    store = InMemorySegmentStore()
    stored_key = seed_segment(store, "prod/orders", T0 + timedelta(seconds=10))
    seed_segment(store, "prod/orders", T0 + timedelta(hours=1), source_tag="other_source")

    reader = FakeLogReader([[b"a"]])
    cancel = asyncio.Event()
    observer = cancel_after_uploads(cancel, 1)
    shipper = make_shipper(make_unit(reader, temp_dir / "segments"), store, cancel, observer=observer)

    await shipper.start()
    await asyncio.wait_for(shipper.wait(), timeout=5)

    [new_key] = shipper.uploaded_keys
    assert parse_segment_name(new_key)[1] == T0 + timedelta(seconds=11)
    assert new_key > stored_key
    assert store.objects[stored_key] != store.objects[new_key]


@pytest.mark.asyncio
async def test_staging_cleanup_failure_keeps_loop_running(temp_dir: Path, monkeypatch):
    """
    CRITICAL: A staging file that cannot be removed after upload is
    reported, and shipping carries on with the next segments.
    """
    import backupflow.shipper as shipper_module

    real_remove = shipper_module.remove_staging_file
    failures = [PermissionError(13, "Permission denied")]

    def flaky_remove(path):
        if failures:
            raise failures.pop()
        real_remove(path)

    monkeypatch.setattr(shipper_module, "remove_staging_file", flaky_remove)

    reader = FakeLogReader([[b"a"], [b"b"], [b"c"]])
    store = InMemorySegmentStore()
    cancel = asyncio.Event()
    observer = cancel_after_uploads(cancel, 3)
    shipper = make_shipper(make_unit(reader, temp_dir / "segments"), store, cancel, observer=observer)

    task = await shipper.start()
    await asyncio.wait_for(shipper.wait(), timeout=5)

    assert task.exception() is None
    assert cancel.is_set()
    stats = shipper.get_stats()
    assert stats["segments_uploaded"] == 3
    assert stats["cleanup_failures"] == 1
    assert "cleanup_failed" in observer.kinds()
    assert shipper.state == ShipperState.STOPPED


@pytest.mark.asyncio
async def test_unexpected_cycle_error_backs_off_and_retries(temp_dir: Path):
    """
    CRITICAL: Any error inside a cycle leads to retry_backoff, never to the
    end of the loop.
    """
    reader = FakeLogReader([[b"a"]])
    store = InMemorySegmentStore()
    cancel = asyncio.Event()
    observer = cancel_after_uploads(cancel, 1)
    shipper = make_shipper(make_unit(reader, temp_dir / "segments"), store, cancel, observer=observer)

    real_segment_key = shipper.segment_key
    failures = [ValueError("bad key")]

    def flaky_segment_key(segment):
        if failures:
            raise failures.pop()
        return real_segment_key(segment)

    shipper.segment_key = flaky_segment_key

    task = await shipper.start()
    await asyncio.wait_for(shipper.wait(), timeout=5)

    assert task.exception() is None
    assert len(store.objects) == 1
    assert "cycle_failed" in observer.kinds()
    assert "retry_backoff" in [e.state for e in observer.events if e.kind == "state_changed"]
    assert shipper.get_stats()["last_error"] == "bad key"


# ============================================================================
# Test 2: IDEMPOTENT RETRIES
# ============================================================================

@pytest.mark.asyncio
async def test_failed_upload_is_retried_under_same_key(temp_dir: Path):
    """
    CRITICAL: A failed upload keeps its segment and retries the same key.

    Re-uploading overwrites, so retries never create duplicates.
    """
    reader = FakeLogReader([[b"x"]])
    store = InMemorySegmentStore()
    store.fail_puts = 1
    cancel = asyncio.Event()
    observer = cancel_after_uploads(cancel, 1)
    staging = temp_dir / "segments"
    shipper = make_shipper(make_unit(reader, staging), store, cancel, observer=observer)

    await shipper.start()
    await asyncio.wait_for(shipper.wait(), timeout=5)

    assert len(store.put_calls) == 2
    assert store.put_calls[0] == store.put_calls[1]
    assert list(store.objects) == [store.put_calls[0]]

    stats = shipper.get_stats()
    assert stats["upload_failures"] == 1
    assert stats["pending_segments"] == 0
    assert "upload_failed" in observer.kinds()
    assert "retry_backoff" in [e.state for e in observer.events if e.kind == "state_changed"]

    # Uploaded segment no longer occupies staging
    assert list(staging.iterdir()) == []


@pytest.mark.asyncio
async def test_upload_reported_failed_after_write_is_overwritten(temp_dir: Path):
    """
    CRITICAL: An upload that reached the store but was reported as failed
    is retried under the same key and leaves exactly one object.
    """
    reader = FakeLogReader([[b"x", b"y"]])
    store = LostAckSegmentStore(lost_acks=1)
    cancel = asyncio.Event()
    observer = cancel_after_uploads(cancel, 1)
    shipper = make_shipper(make_unit(reader, temp_dir / "segments"), store, cancel, observer=observer)

    await shipper.start()
    await asyncio.wait_for(shipper.wait(), timeout=5)

    assert len(store.put_calls) == 2
    assert store.put_calls[0] == store.put_calls[1]
    [key] = list(store.objects)
    assert key == store.put_calls[1]
    assert store.objects[key] == store.put_payloads[1]
    assert zstd.ZstdDecompressor().decompress(store.objects[key]) == b"xy"
    assert shipper.uploaded_keys == [key]
    assert shipper.get_stats()["upload_failures"] == 1


# ============================================================================
# Test 3: PLAN BOUNDS
# ============================================================================

@pytest.mark.asyncio
async def test_plan_excludes_segments_after_target():
    """
    CRITICAL: Only segments in (snapshot, target] are replayed, in order.
    """
    snapshot = snapshot_at(T0)
    first, second, late = segment_at(T0 + minutes(1)), segment_at(T0 + minutes(3)), segment_at(T0 + minutes(7))
    before = segment_at(T0 - minutes(2))

    plan = plan_restore([late, second, before, first], snapshot, T0 + minutes(5))

    assert [s.key for s in plan.segments] == [first.key, second.key]
    assert plan.keys() == [snapshot.key, first.key, second.key]
    assert len(plan) == 3


@pytest.mark.asyncio
async def test_plan_includes_segment_at_exact_target():
    """The target bound is inclusive; the snapshot bound is exclusive."""
    snapshot = snapshot_at(T0)
    at_snapshot = segment_at(T0)
    at_target = segment_at(T0 + minutes(5))

    plan = plan_restore([at_snapshot, at_target], snapshot, T0 + minutes(5))

    assert [s.key for s in plan.segments] == [at_target.key]


@pytest.mark.asyncio
async def test_planning_is_deterministic():
    """The same inputs always yield the same plan."""
    snapshot = snapshot_at(T0)
    catalog = [segment_at(T0 + minutes(i)) for i in (4, 1, 3, 2)]

    first = plan_restore(catalog, snapshot, T0 + minutes(10))
    second = plan_restore(list(reversed(catalog)), snapshot, T0 + minutes(10))

    assert first == second


# ============================================================================
# Test 4: TARGET VALIDATION
# ============================================================================

@pytest.mark.asyncio
async def test_target_before_snapshot_is_rejected():
    """
    CRITICAL: A target earlier than the snapshot can never be reached.
    """
    with pytest.raises(InvalidTargetError):
        plan_restore([segment_at(T0 + minutes(1))], snapshot_at(T0), T0 - minutes(1))


@pytest.mark.asyncio
async def test_no_snapshot_before_target():
    """Snapshot selection refuses when every snapshot is newer than the target."""
    snapshots = [snapshot_at(T0, "a.archive.gz"), snapshot_at(T0 + minutes(5), "b.archive.gz")]

    assert select_snapshot(snapshots, T0 + minutes(6)).key == "b.archive.gz"
    assert select_snapshot(snapshots, T0 + minutes(4)).key == "a.archive.gz"
    with pytest.raises(SnapshotNotFoundError):
        select_snapshot(snapshots, T0 - minutes(1))


# ============================================================================
# Test 5: SNAPSHOT-ONLY PLANS
# ============================================================================

@pytest.mark.asyncio
async def test_snapshot_only_plan_restores_and_finalizes(temp_dir: Path):
    """
    A plan without segments restores the snapshot and finalizes.
    """
    store = InMemorySegmentStore()
    key = seed_snapshot(store, "prod/orders", T0)

    plan = plan_restore([], BaseSnapshot(key=key, timestamp=T0), T0 + minutes(5))
    assert plan.keys() == [key]
    assert len(plan) == 1

    restorer = FakeRestorer()
    result = await apply_plan(plan, store, restorer, work_dir=temp_dir / "work", observer=None)

    assert [kind for kind, _ in restorer.calls] == ["base", "finalize"]
    assert result.last_applied_position == 0
    assert result.last_applied_at == T0
    assert result.segments_applied == 0


@pytest.mark.asyncio
async def test_require_segments_rejects_empty_plan():
    """Callers may insist on log replay."""
    with pytest.raises(EmptyCatalogError):
        plan_restore([], snapshot_at(T0), T0 + minutes(5), require_segments=True)


# ============================================================================
# Test 6: FAIL-STOP REPLAY
# ============================================================================

@pytest.mark.asyncio
async def test_replay_stops_at_first_failure_and_reports_position(mongo_config, temp_dir: Path):
    """
    CRITICAL: When segment 2 of 3 fails, segment 3 is never applied and
    the error reports position 1 as the last applied one.
    """
    store = InMemorySegmentStore()
    seed_snapshot(store, mongo_config.prefix, T0)
    seg1 = seed_segment(store, mongo_config.prefix, T0 + minutes(1))
    seg2 = seed_segment(store, mongo_config.prefix, T0 + minutes(2))
    seg3 = seed_segment(store, mongo_config.prefix, T0 + minutes(3))

    plan = await build_restore_plan(mongo_config, store, T0 + minutes(10))
    assert plan.keys()[1:] == [seg1, seg2, seg3]

    journal_path = temp_dir / "journal.db"
    await init_journal_db(journal_path)

    restorer = FakeRestorer(fail_on="20240101_120200")
    with pytest.raises(ReplayError) as exc_info:
        await apply_plan(
            plan,
            store,
            restorer,
            work_dir=temp_dir / "work",
            journal_path=journal_path,
            restore_id="restore-failstop",
            observer=None,
        )

    error = exc_info.value
    assert error.last_applied_position == 1
    assert error.last_applied_at == T0 + minutes(1)
    assert error.failed_key == seg2
    assert restorer.applied_segments() == [
        "oplog_backup_20240101_120100.bson",
        "oplog_backup_20240101_120200.bson",
    ]
    assert "finalize" not in [kind for kind, _ in restorer.calls]

    async with aiosqlite.connect(journal_path) as db:
        record = await get_restore(db, "restore-failstop")
        assert record["status"] == STATUS_FAILED
        assert record["last_applied_position"] == 1
        assert await last_applied_position(db, "restore-failstop") == 1

    # Resume after the last applied position
    resumed = FakeRestorer()
    result = await apply_plan(
        plan,
        store,
        resumed,
        work_dir=temp_dir / "work",
        start_position=2,
        journal_path=journal_path,
        restore_id="restore-failstop",
        observer=None,
    )

    assert resumed.applied_segments() == [
        "oplog_backup_20240101_120200.bson",
        "oplog_backup_20240101_120300.bson",
    ]
    assert ("base", plan.snapshot.key.rsplit("/", 1)[-1]) not in resumed.calls
    assert result.last_applied_position == 3
    assert result.skipped_positions == 2
    assert result.segments_applied == 2

    async with aiosqlite.connect(journal_path) as db:
        record = await get_restore(db, "restore-failstop")
        assert record["status"] == STATUS_COMPLETED
        positions = [p["position"] for p in await get_applied_positions(db, "restore-failstop")]
        assert positions == [0, 1, 2, 3]


@pytest.mark.asyncio
async def test_finalize_failure_reports_last_segment(mongo_config, temp_dir: Path):
    """A finalize failure is a replay failure after every segment applied."""
    store = InMemorySegmentStore()
    seed_snapshot(store, mongo_config.prefix, T0)
    seed_segment(store, mongo_config.prefix, T0 + minutes(1))

    plan = await build_restore_plan(mongo_config, store, T0 + minutes(2))
    with pytest.raises(ReplayError) as exc_info:
        await apply_plan(
            plan, store, FakeRestorer(fail_finalize=True), work_dir=temp_dir / "work", observer=None
        )

    assert exc_info.value.last_applied_position == 1
    assert exc_info.value.details["stage"] == "finalize"


@pytest.mark.asyncio
async def test_snapshot_failure_reports_nothing_applied(mongo_config, temp_dir: Path):
    """A base restore failure leaves last_applied_position at -1."""
    store = InMemorySegmentStore()
    seed_snapshot(store, mongo_config.prefix, T0)

    plan = await build_restore_plan(mongo_config, store, T0 + minutes(2))
    with pytest.raises(ReplayError) as exc_info:
        await apply_plan(
            plan, store, FakeRestorer(fail_on="mongodb_backup"), work_dir=temp_dir / "work", observer=None
        )

    assert exc_info.value.last_applied_position == -1
    assert exc_info.value.last_applied_at is None


# ============================================================================
# Test 7: CLEAN SHUTDOWN
# ============================================================================

@pytest.mark.asyncio
async def test_cancel_during_wait_stops_promptly(temp_dir: Path):
    """
    CRITICAL: Cancellation interrupts the capture interval immediately.
    """
    reader = FakeLogReader([[b"a"]])
    store = InMemorySegmentStore()
    cancel = asyncio.Event()
    shipper = make_shipper(make_unit(reader, temp_dir / "segments"), store, cancel, interval=3600)

    await shipper.start()
    await wait_for_condition(lambda: shipper.state == ShipperState.WAITING_INTERVAL)

    loop = asyncio.get_running_loop()
    started = loop.time()
    stopped_cleanly = await shipper.stop()
    elapsed = loop.time() - started

    assert stopped_cleanly
    assert elapsed < 1.0
    assert shipper.state == ShipperState.STOPPED
    assert not shipper.is_running
    assert len(store.objects) == 1


@pytest.mark.asyncio
async def test_in_flight_upload_gets_grace_then_segment_survives(temp_dir: Path):
    """
    CRITICAL: An upload that outlives the grace period is abandoned, but
    its segment stays staged and is shipped by the next run under the
    same key.
    """
    staging = temp_dir / "segments"
    blocking_store = BlockingSegmentStore()
    cancel = asyncio.Event()
    shipper = make_shipper(
        make_unit(FakeLogReader([[b"a"]]), staging), blocking_store, cancel, grace=0.2
    )

    await shipper.start()
    await asyncio.wait_for(blocking_store.put_started.wait(), timeout=5)

    loop = asyncio.get_running_loop()
    started = loop.time()
    assert await shipper.stop(timeout=5)
    assert loop.time() - started < 2.0

    assert blocking_store.objects == {}
    assert len(shipper.pending) == 1
    expected_key = shipper.segment_key(shipper.pending[0])
    assert len(list(staging.iterdir())) == 1

    # Next run recovers the staged segment
    store = InMemorySegmentStore()
    cancel_again = asyncio.Event()
    observer = cancel_after_uploads(cancel_again, 1)
    next_shipper = make_shipper(
        make_unit(FakeLogReader(), staging), store, cancel_again, observer=observer
    )
    await next_shipper.start()
    await asyncio.wait_for(next_shipper.wait(), timeout=5)

    assert list(store.objects) == [expected_key]
    assert "segments_recovered" in observer.kinds()
    assert list(staging.iterdir()) == []


# ============================================================================
# Test 8: ELIGIBILITY
# ============================================================================

@pytest.mark.asyncio
async def test_members_only_probe_is_eligible():
    """A response listing replica set hosts is enough."""
    assert evaluate_probe_response({"hosts": ["db0:27017"]})
    assert evaluate_probe_response({"setName": "rs0"})
    assert evaluate_probe_response({"isreplicaset": True})


@pytest.mark.asyncio
async def test_standalone_responses_are_not_eligible():
    """Standalone servers and empty answers never ship logs."""
    assert not evaluate_probe_response({"isWritablePrimary": True})
    assert not evaluate_probe_response({"setName": "", "hosts": []})
    assert not evaluate_probe_response({"isreplicaset": "yes"})
    assert not evaluate_probe_response(None)


@pytest.mark.asyncio
async def test_probe_errors_fail_closed():
    """A probe that cannot reach the server counts as not eligible."""

    async def unreachable():
        raise ConnectionError("connection refused")

    assert not await is_log_shipping_eligible(unreachable)
    assert await is_log_shipping_eligible(replica_set_probe)


@pytest.mark.asyncio
async def test_postgres_without_archiving_is_not_eligible(monkeypatch):
    """
    CRITICAL: A packaged cluster name alone never makes PostgreSQL eligible;
    WAL archiving must be on.
    """
    import asyncpg

    from backupflow.gate import postgres_probe

    connections = []

    def serve(settings, standbys=()):
        async def fake_connect(url, timeout=None):
            conn = FakePostgresConnection(settings, standbys)
            connections.append(conn)
            return conn

        monkeypatch.setattr(asyncpg, "connect", fake_connect)

    probe = postgres_probe("postgresql://postgres:pw@db/app")

    serve({"cluster_name": "16/main", "wal_level": "replica", "archive_mode": "off"})
    assert not await is_log_shipping_eligible(probe)

    serve({"cluster_name": "16/main", "wal_level": "replica", "archive_mode": "off"}, ["10.0.0.2"])
    assert not await is_log_shipping_eligible(probe)

    serve({"cluster_name": "", "wal_level": "minimal", "archive_mode": "on"})
    assert not await is_log_shipping_eligible(probe)

    serve({"cluster_name": "16/main", "wal_level": "replica", "archive_mode": "on"})
    assert await is_log_shipping_eligible(probe)

    assert all(conn.closed for conn in connections)


@pytest.mark.asyncio
async def test_malformed_probe_response_fails_closed():
    """A probe answering with something other than a document is not eligible."""

    async def list_answer():
        return ["setName", "rs0"]

    async def text_answer():
        return "rs0"

    assert not await is_log_shipping_eligible(list_answer)
    assert not await is_log_shipping_eligible(text_answer)


@pytest.mark.asyncio
async def test_ineligible_source_never_starts_capture(temp_dir: Path):
    """
    CRITICAL: The gate runs before the cursor is fixed and before any capture.
    """
    reader = FakeLogReader([[b"a"]])
    cancel = asyncio.Event()
    shipper = make_shipper(
        make_unit(reader, temp_dir / "segments"),
        InMemorySegmentStore(),
        cancel,
        probe=standalone_probe,
    )

    with pytest.raises(EligibilityError):
        await shipper.start()

    assert reader.position_calls == 0
    assert reader.read_calls == 0
    assert not shipper.is_running


@pytest.mark.asyncio
async def test_incremental_backup_of_standalone_takes_no_snapshot(mongo_config, temp_dir: Path):
    """An ineligible incremental backup fails before the snapshot is taken."""
    config = mongo_config.with_updates(incremental=True)
    store = InMemorySegmentStore()
    state = await initialize_session(config, store=store, observer=None)

    snapshot_calls = []

    async def snapshot_factory():
        snapshot_calls.append(True)
        raise AssertionError("snapshot must not be taken")

    with pytest.raises(EligibilityError):
        await run_backup(
            config,
            state,
            capture_unit=make_unit(FakeLogReader(), temp_dir / "segments"),
            probe=standalone_probe,
            snapshot_factory=snapshot_factory,
        )

    assert snapshot_calls == []
    assert store.objects == {}
    assert state["last_error"] is not None
