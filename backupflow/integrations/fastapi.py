# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
backupflow FastAPI Integration - Plugin for FastAPI applications.

This module provides a complete integration with FastAPI including:
- Lifespan management (continuous shipping in the background)
- Protected admin endpoints
- Scheduled base snapshots
- Health checks
"""

import asyncio
import os
from contextlib import asynccontextmanager
from datetime import datetime, UTC

import aiosqlite
import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from fastapi import Depends, FastAPI, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from backupflow.backup.snapshots import list_snapshots
from backupflow.config import BackupFlowConfig
from backupflow.exceptions import InvalidTargetError, PlanningError
from backupflow.journal import get_journal_stats, list_restores
from backupflow.session import (
    SessionState,
    build_restore_plan,
    get_status,
    initialize_session,
    run_backup,
    shutdown_session,
    status_to_dict,
    take_snapshot,
)

logger = structlog.get_logger()

SCHEDULED_SNAPSHOT_JOB_ID = "backupflow_snapshot"

# Security
security = HTTPBearer(auto_error=False)


async def verify_api_key(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> bool:
    """
    Verify API key from Authorization header.

    The API key is read from the BACKUPFLOW_ADMIN_API_KEY environment variable.
    Requests must include: Authorization: Bearer <api_key>

    Raises:
        HTTPException: If API key is missing or invalid
    """
    api_key = os.getenv("BACKUPFLOW_ADMIN_API_KEY")

    if not api_key:
        raise HTTPException(
            status_code=500,
            detail="BACKUPFLOW_ADMIN_API_KEY environment variable not set",
        )

    if not credentials:
        raise HTTPException(
            status_code=401,
            detail="Authorization header required",
        )

    if credentials.credentials != api_key:
        raise HTTPException(
            status_code=403,
            detail="Invalid API key",
        )

    return True


def register_backupflow_routes(
    app: FastAPI,
    config: BackupFlowConfig,
    state: SessionState,
    prefix: str = "/admin/backupflow",
) -> None:
    """
    Register backupflow admin endpoints on a FastAPI app.

    All endpoints require Bearer token authentication. Restores are not
    exposed over HTTP; they overwrite the target database and belong in
    an operator-driven process.

    Args:
        app: FastAPI application
        config: backupflow configuration
        state: Runtime state
        prefix: URL prefix for endpoints (default: /admin/backupflow)
    """

    @app.post(f"{prefix}/snapshot", dependencies=[Depends(verify_api_key)])
    async def trigger_snapshot() -> dict:
        """
        Take a base snapshot now.

        Continuous shipping, if running, is left alone.
        """
        snapshot = await take_snapshot(config, state)
        return snapshot.to_dict()

    @app.get(f"{prefix}/status", dependencies=[Depends(verify_api_key)])
    async def get_session_status() -> dict:
        """
        Get current session status, including shipper statistics.
        """
        return status_to_dict(get_status(config, state))

    @app.get(f"{prefix}/snapshots", dependencies=[Depends(verify_api_key)])
    async def get_snapshots(latest_only: bool = False) -> list:
        """
        List base snapshots, newest first.

        Args:
            latest_only: Return at most the newest snapshot
        """
        snapshots = await list_snapshots(state["store"], config.prefix, latest_only)
        return [snapshot.to_dict() for snapshot in snapshots]

    @app.get(f"{prefix}/plan", dependencies=[Depends(verify_api_key)])
    async def preview_restore_plan(
        target: datetime | None = None,
        snapshot_key: str | None = None,
        incremental: bool = True,
    ) -> dict:
        """
        Preview the restore plan for a point in time without applying it.

        Args:
            target: Target time (default: now)
            snapshot_key: Restore from this snapshot instead of the latest eligible one
            incremental: Include log segments in the plan
        """
        try:
            plan = await build_restore_plan(
                config,
                state["store"],
                target or datetime.now(UTC),
                snapshot_key=snapshot_key,
                replay_logs=incremental,
            )
        except InvalidTargetError as e:
            raise HTTPException(status_code=422, detail=e.message)
        except PlanningError as e:
            raise HTTPException(status_code=404, detail=e.message)
        return plan.to_dict()

    @app.get(f"{prefix}/restores", dependencies=[Depends(verify_api_key)])
    async def list_journaled_restores(
        limit: int = 50,
        offset: int = 0,
        status: str | None = None,
    ) -> list:
        """
        List journaled restores with pagination.

        Args:
            limit: Maximum number of restores to return
            offset: Number of restores to skip
            status: Filter by status (running, completed, failed)
        """
        async with aiosqlite.connect(state["journal_db_path"]) as db:
            return await list_restores(db, limit, offset, status)

    @app.get(f"{prefix}/journal-stats", dependencies=[Depends(verify_api_key)])
    async def get_journal_statistics() -> dict:
        """
        Get restore journal statistics.
        """
        async with aiosqlite.connect(state["journal_db_path"]) as db:
            return await get_journal_stats(db)

    @app.get(f"{prefix}/health", dependencies=[Depends(verify_api_key)])
    async def health_check() -> dict:
        """
        Health check endpoint.

        Verifies the journal, S3 connectivity and, for incremental
        sessions, that the shipper is running.
        """
        journal_ok = state["journal_db_path"].exists()

        s3_ok = False
        s3_error = None
        try:
            s3_ok = await state["store"].check_access()
        except Exception as e:
            s3_error = str(e)

        shipper = state["shipper"]
        shipping_ok = shipper is not None and shipper.is_running

        status = "healthy"
        if not journal_ok or not s3_ok:
            status = "degraded"
        if not journal_ok and not s3_ok:
            status = "unhealthy"
        if config.incremental and not shipping_ok and status == "healthy":
            status = "degraded"

        return {
            "status": status,
            "journal_accessible": journal_ok,
            "s3_reachable": s3_ok,
            "s3_error": s3_error,
            "shipping": shipping_ok if config.incremental else None,
            "shipper_state": shipper.state.value if shipper is not None else None,
            "timestamp": datetime.now(UTC).isoformat(),
        }

    @app.get(f"{prefix}/config", dependencies=[Depends(verify_api_key)])
    async def get_config() -> dict:
        """
        Get current configuration (connection URL and credentials redacted).
        """
        return {
            "engine": config.engine.value,
            "bucket": config.bucket,
            "region": config.region,
            "s3_endpoint": config.s3_endpoint,
            "prefix": config.prefix,
            "databases": list(config.databases),
            "incremental": config.incremental,
            "capture_interval_minutes": config.capture_interval_minutes,
            "retry_delay_seconds": config.retry_delay_seconds,
            "log_subfolder": config.log_subfolder,
            "source_tag": config.effective_source_tag,
            "conflict_policy": config.conflict_policy.value,
            "snapshot_schedule": config.snapshot_schedule,
        }


def _setup_scheduled_snapshots(config: BackupFlowConfig, state: SessionState) -> AsyncIOScheduler:
    """Set up APScheduler for daily base snapshots."""
    scheduler = AsyncIOScheduler(timezone="UTC")

    # Parse HH:MM format
    hour, minute = map(int, config.snapshot_schedule.split(":"))

    async def scheduled_snapshot():
        """Take a scheduled base snapshot."""
        logger.info("scheduled_snapshot_starting")
        try:
            snapshot = await take_snapshot(config, state)
            logger.info("scheduled_snapshot_completed", key=snapshot.key, size=snapshot.size_bytes)
        except Exception as e:
            state["last_error"] = str(e)
            logger.error("scheduled_snapshot_failed", error=str(e))

    scheduler.add_job(
        scheduled_snapshot,
        trigger=CronTrigger(hour=hour, minute=minute, timezone="UTC"),
        id=SCHEDULED_SNAPSHOT_JOB_ID,
        replace_existing=True,
    )
    scheduler.start()

    logger.info("scheduler_started", schedule=config.snapshot_schedule)
    return scheduler


def _log_backup_outcome(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.error("background_backup_failed", error=str(error))


@asynccontextmanager
async def backupflow_lifespan(
    app: FastAPI,
    config: BackupFlowConfig,
    prefix: str = "/admin/backupflow",
):
    """
    Lifespan context manager for FastAPI.

    Incremental configurations take a base snapshot at startup and ship
    logs in the background until the app shuts down:

        app = FastAPI(lifespan=lambda app: backupflow_lifespan(app, config))

    Args:
        app: FastAPI application
        config: backupflow configuration
        prefix: URL prefix for admin endpoints
    """
    logger.info("backupflow_lifespan_starting", engine=config.engine.value, bucket=config.bucket)

    state = await initialize_session(config)
    app.state.backupflow_state = state
    app.state.backupflow_config = config

    register_backupflow_routes(app, config, state, prefix)

    cancel_event = asyncio.Event()
    backup_task: asyncio.Task | None = None
    if config.incremental:
        backup_task = asyncio.create_task(run_backup(config, state, cancel_event))
        backup_task.add_done_callback(_log_backup_outcome)

    scheduler = None
    if config.snapshot_schedule:
        scheduler = _setup_scheduled_snapshots(config, state)

    logger.info("backupflow_lifespan_started")

    try:
        yield
    finally:
        logger.info("backupflow_lifespan_stopping")
        if scheduler is not None:
            scheduler.shutdown(wait=False)
        cancel_event.set()
        if backup_task is not None:
            await asyncio.gather(backup_task, return_exceptions=True)
        await shutdown_session(state)
        logger.info("backupflow_lifespan_stopped")


def get_backupflow_state(app: FastAPI) -> SessionState:
    """
    Get backupflow state from a FastAPI app.

    Useful for accessing state in custom endpoints.

    Raises:
        RuntimeError: If backupflow is not initialized
    """
    state = getattr(app.state, "backupflow_state", None)
    if not state:
        raise RuntimeError("backupflow not initialized. Use backupflow_lifespan first.")
    return state


def get_backupflow_config(app: FastAPI) -> BackupFlowConfig:
    """
    Get backupflow config from a FastAPI app.

    Raises:
        RuntimeError: If backupflow is not initialized
    """
    config = getattr(app.state, "backupflow_config", None)
    if not config:
        raise RuntimeError("backupflow not initialized. Use backupflow_lifespan first.")
    return config
