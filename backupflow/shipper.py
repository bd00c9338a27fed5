# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
backupflow Shipper - Continuous log shipping loop.

One asyncio task per session cycles through:

    capturing -> uploading -> waiting_interval -> capturing ...
         \\            \\
          +-> retry_backoff -> capturing

Capture and upload failures are logged, reported to the observer and
retried after the backoff delay; they never end the loop. Setting the
cancellation event stops the loop from any state. An in-flight capture
or upload gets a grace period to finish, after which it is cancelled and
its segment stays in staging for the next run.
"""

import asyncio
from collections import deque
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Deque, List

import structlog

from backupflow.backup.manager import (
    find_staged_segments,
    read_staging_file,
    remove_staging_file,
)
from backupflow.capture import LogCaptureUnit
from backupflow.exceptions import EligibilityError
from backupflow.gate import Probe, is_log_shipping_eligible
from backupflow.keys import build_log_prefix, build_segment_key, parse_segment_name
from backupflow.models import Segment, ShipperState, ShipperStats
from backupflow.observer import FlowEvent, Observer, logging_observer, notify
from backupflow.storage import SegmentStore

logger = structlog.get_logger()

# Marker for segments recovered from staging; their entry count is unknown
UNKNOWN_ENTRY_COUNT = -1


class _Interrupted(Exception):
    """The in-flight step was abandoned after the grace period."""


class ContinuousShipper:
    """
    Background loop that captures log segments and uploads them.

    The shipper is bound to a single cancellation event at construction.
    Only one capture/upload cycle is ever in flight.
    """

    def __init__(
        self,
        capture_unit: LogCaptureUnit,
        store: SegmentStore,
        prefix: str,
        log_subfolder: str,
        cancel_event: asyncio.Event,
        capture_interval_seconds: float = 600.0,
        retry_delay_seconds: float = 30.0,
        shutdown_grace_seconds: float = 30.0,
        observer: Observer | None = logging_observer,
        probe: Probe | None = None,
    ):
        self.capture_unit = capture_unit
        self.store = store
        self.prefix = prefix
        self.log_subfolder = log_subfolder
        self.cancel_event = cancel_event
        self.capture_interval_seconds = capture_interval_seconds
        self.retry_delay_seconds = retry_delay_seconds
        self.shutdown_grace_seconds = shutdown_grace_seconds
        self.observer = observer
        self.probe = probe

        self.state = ShipperState.STOPPED
        self.pending: Deque[Segment] = deque()
        self.uploaded_keys: List[str] = []
        self.last_captured_at: datetime | None = None
        self._task: asyncio.Task | None = None
        self._prepared = False
        self._stats = {
            "cycles": 0,
            "segments_uploaded": 0,
            "segments_skipped_empty": 0,
            "bytes_uploaded": 0,
            "capture_failures": 0,
            "upload_failures": 0,
            "cleanup_failures": 0,
        }
        self._last_error: str | None = None

    @classmethod
    def from_config(
        cls,
        config: Any,
        capture_unit: LogCaptureUnit,
        store: SegmentStore,
        cancel_event: asyncio.Event,
        observer: Observer | None = logging_observer,
        probe: Probe | None = None,
    ) -> "ContinuousShipper":
        """Create a shipper using the cadence of a BackupFlowConfig."""
        return cls(
            capture_unit=capture_unit,
            store=store,
            prefix=config.prefix,
            log_subfolder=config.log_subfolder,
            cancel_event=cancel_event,
            capture_interval_seconds=config.capture_interval_seconds,
            retry_delay_seconds=float(config.retry_delay_seconds),
            shutdown_grace_seconds=float(config.shutdown_grace_seconds),
            observer=observer,
            probe=probe,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def prepare(self) -> None:
        """
        Check eligibility and fix the capture cursor.

        Call this before taking the base snapshot so the first segment
        starts at or before the snapshot's consistency point.

        captured_at is floored by the newest segment already stored for
        this source tag, so keys keep sorting in capture order across
        restarts even when the clock is behind.

        Raises:
            EligibilityError: If the source cannot support log shipping
            StorageError: If existing segments cannot be listed
        """
        if self._prepared:
            return

        if self.probe is not None and not await is_log_shipping_eligible(self.probe):
            raise EligibilityError(
                "Source is not eligible for log shipping: a replica set member "
                "(or WAL archiving) is required",
                details={"log_subfolder": self.log_subfolder},
            )

        latest = await self._latest_stored_captured_at()
        if latest is not None and (self.last_captured_at is None or latest > self.last_captured_at):
            self.last_captured_at = latest

        await self.capture_unit.initialize()
        self._prepared = True

    async def start(self) -> asyncio.Task:
        """
        Start the loop as a background task.

        Segments left in staging by a previous run are queued first.

        Returns:
            The shipper task
        """
        if self._task is not None and not self._task.done():
            return self._task

        await self.prepare()
        self._recover_staged_segments()

        self._task = asyncio.create_task(self._run(), name="backupflow-shipper")
        logger.info(
            "shipper_started",
            prefix=self.prefix,
            log_subfolder=self.log_subfolder,
            interval_seconds=self.capture_interval_seconds,
            pending=len(self.pending),
        )
        return self._task

    async def stop(self, timeout: float | None = None) -> bool:
        """
        Request cancellation and wait for the loop to finish.

        Args:
            timeout: Upper bound on the wait (default: grace period + 5s)

        Returns:
            True if the loop stopped on its own within the timeout
        """
        self.cancel_event.set()
        if self._task is None:
            self._set_state(ShipperState.STOPPED)
            return True

        limit = self.shutdown_grace_seconds + 5.0 if timeout is None else timeout
        done, _ = await asyncio.wait({self._task}, timeout=limit)
        if not done:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            logger.warning("shipper_stop_forced", timeout=limit)
            return False

        if not self._task.cancelled() and self._task.exception() is not None:
            logger.error("shipper_task_failed", error=str(self._task.exception()))
        return True

    async def wait(self) -> None:
        """Wait until the loop has stopped."""
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def get_stats(self) -> ShipperStats:
        """Current state and counters."""
        return ShipperStats(
            state=self.state.value,
            cycles=self._stats["cycles"],
            segments_uploaded=self._stats["segments_uploaded"],
            segments_skipped_empty=self._stats["segments_skipped_empty"],
            bytes_uploaded=self._stats["bytes_uploaded"],
            capture_failures=self._stats["capture_failures"],
            upload_failures=self._stats["upload_failures"],
            cleanup_failures=self._stats["cleanup_failures"],
            pending_segments=len(self.pending),
            last_uploaded_key=self.uploaded_keys[-1] if self.uploaded_keys else None,
            last_error=self._last_error,
        )

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def _run(self) -> None:
        try:
            while not self.cancel_event.is_set():
                self._stats["cycles"] += 1

                try:
                    self._set_state(ShipperState.CAPTURING)
                    ok = await self._run_step(self._capture_once())
                    if ok and not self.cancel_event.is_set():
                        self._set_state(ShipperState.UPLOADING)
                        ok = await self._run_step(self._upload_pending())
                except _Interrupted:
                    raise
                except Exception as e:
                    self._last_error = str(e)
                    logger.error("shipper_cycle_failed", state=self.state.value, error=str(e))
                    notify(
                        self.observer,
                        FlowEvent(kind="cycle_failed", state=self.state.value, error=str(e)),
                    )
                    ok = False

                if self.cancel_event.is_set():
                    break

                if ok:
                    self._set_state(ShipperState.WAITING_INTERVAL)
                    await self._sleep(self.capture_interval_seconds)
                else:
                    self._set_state(ShipperState.RETRY_BACKOFF)
                    await self._sleep(self.retry_delay_seconds)
        except _Interrupted:
            pass
        finally:
            self._set_state(ShipperState.STOPPED)
            logger.info(
                "shipper_stopped",
                uploaded=self._stats["segments_uploaded"],
                pending=len(self.pending),
            )

    async def _run_step(self, step: Awaitable[bool]) -> bool:
        """
        Run a capture or upload step, racing it against cancellation.

        Raises:
            _Interrupted: If cancellation arrived and the step missed the grace period
        """
        step_task = asyncio.ensure_future(step)
        cancel_wait = asyncio.ensure_future(self.cancel_event.wait())
        try:
            await asyncio.wait({step_task, cancel_wait}, return_when=asyncio.FIRST_COMPLETED)

            if not step_task.done():
                done, _ = await asyncio.wait({step_task}, timeout=self.shutdown_grace_seconds)
                if not done:
                    step_task.cancel()
                    await asyncio.gather(step_task, return_exceptions=True)
                    logger.warning(
                        "in_flight_step_cancelled",
                        state=self.state.value,
                        grace_seconds=self.shutdown_grace_seconds,
                    )
                    raise _Interrupted()
        except asyncio.CancelledError:
            step_task.cancel()
            await asyncio.gather(step_task, return_exceptions=True)
            raise
        finally:
            cancel_wait.cancel()

        return step_task.result()

    async def _sleep(self, seconds: float) -> bool:
        """Interruptible sleep; returns True when cancellation was requested."""
        try:
            await asyncio.wait_for(self.cancel_event.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

    async def _capture_once(self) -> bool:
        try:
            segment = await self.capture_unit.capture_since(self.last_captured_at)
        except Exception as e:
            self._stats["capture_failures"] += 1
            self._last_error = str(e)
            logger.error("segment_capture_failed", error=str(e))
            notify(
                self.observer,
                FlowEvent(kind="capture_failed", state=self.state.value, error=str(e)),
            )
            return False

        self.last_captured_at = segment.captured_at

        if segment.is_empty:
            # Nothing to ship for this interval
            self._discard_staged(segment.payload_path)
            self._stats["segments_skipped_empty"] += 1
            notify(
                self.observer,
                FlowEvent(kind="segment_empty", message="no new log entries"),
            )
            return True

        self.pending.append(segment)
        notify(
            self.observer,
            FlowEvent(
                kind="segment_captured",
                data={"entries": segment.entry_count, "size": segment.size_bytes},
            ),
        )
        return True

    async def _upload_pending(self) -> bool:
        while self.pending:
            segment = self.pending[0]
            key = self.segment_key(segment)
            try:
                data = await read_staging_file(segment.payload_path)
                await self.store.put(key, data)
            except Exception as e:
                self._stats["upload_failures"] += 1
                self._last_error = str(e)
                logger.error("segment_upload_failed", key=key, error=str(e))
                notify(
                    self.observer,
                    FlowEvent(kind="upload_failed", key=key, state=self.state.value, error=str(e)),
                )
                return False

            self.pending.popleft()
            self._discard_staged(segment.payload_path)
            self.uploaded_keys.append(key)
            self._stats["segments_uploaded"] += 1
            self._stats["bytes_uploaded"] += len(data)
            await self.capture_unit.acknowledge(segment)

            logger.info("segment_uploaded", key=key, size=len(data))
            notify(
                self.observer,
                FlowEvent(kind="segment_uploaded", key=key, data={"size": len(data)}),
            )
        return True

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def segment_key(self, segment: Segment) -> str:
        """Deterministic object key of a segment."""
        return build_segment_key(
            self.prefix,
            self.log_subfolder,
            segment.source_tag,
            segment.captured_at,
            self.capture_unit.ext,
        )

    async def _latest_stored_captured_at(self) -> datetime | None:
        objects = await self.store.list(build_log_prefix(self.prefix, self.log_subfolder))
        latest: datetime | None = None
        for obj in objects:
            parsed = parse_segment_name(obj.key)
            if parsed is None or parsed[0] != self.capture_unit.source_tag:
                continue
            if latest is None or parsed[1] > latest:
                latest = parsed[1]
        return latest

    def _recover_staged_segments(self) -> None:
        staged = find_staged_segments(self.capture_unit.staging_dir, self.capture_unit.source_tag)
        queued = {s.payload_path for s in self.pending}
        recovered: List[Segment] = []

        for path, captured_at in staged:
            if path in queued:
                continue
            size = path.stat().st_size
            if size == 0:
                self._discard_staged(path)
                continue
            recovered.append(
                Segment(
                    captured_at=captured_at,
                    source_tag=self.capture_unit.source_tag,
                    payload_path=path,
                    size_bytes=size,
                    entry_count=UNKNOWN_ENTRY_COUNT,
                )
            )

        if not recovered:
            return

        # Recovered segments predate anything captured by this run
        self.pending.extendleft(reversed(recovered))
        newest = recovered[-1].captured_at
        if self.last_captured_at is None or newest > self.last_captured_at:
            self.last_captured_at = newest

        logger.info("staged_segments_recovered", count=len(recovered))
        notify(
            self.observer,
            FlowEvent(kind="segments_recovered", data={"count": len(recovered)}),
        )

    def _discard_staged(self, path: Path) -> None:
        """Remove a staging file; failures are reported, never raised."""
        try:
            remove_staging_file(path)
        except OSError as e:
            self._stats["cleanup_failures"] += 1
            self._last_error = str(e)
            logger.warning("staging_cleanup_failed", path=str(path), error=str(e))
            notify(
                self.observer,
                FlowEvent(kind="cleanup_failed", state=self.state.value, error=str(e)),
            )

    def _set_state(self, state: ShipperState) -> None:
        if state == self.state:
            return
        self.state = state
        logger.debug("shipper_state_changed", state=state.value)
        notify(self.observer, FlowEvent(kind="state_changed", state=state.value))
