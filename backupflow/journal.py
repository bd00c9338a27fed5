# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
backupflow Restore Journal - Append-only record of restore runs.

Every restore gets a row in `restores` with the plan it executed, and
one row in `applied_positions` per plan position that was applied. A
failed restore can be resumed after its last journaled position as long
as the recomputed plan is identical.
"""

import json
from datetime import datetime, UTC
from pathlib import Path
from typing import List, TypedDict

import aiosqlite
import structlog

from backupflow.exceptions import JournalError
from backupflow.models import RestorePlan

logger = structlog.get_logger()

STATUS_RUNNING = "running"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"


class RestoreRecord(TypedDict):
    """Record of a restore run."""

    id: str  # ULID
    started_at: str  # ISO 8601
    snapshot_key: str
    target_time: str  # ISO 8601
    plan_keys: List[str]  # Snapshot key first, then segments
    databases: List[str]
    status: str  # running, completed, failed
    last_applied_position: int  # -1 when nothing was applied
    completed_at: str | None
    error: str | None


class AppliedPositionRecord(TypedDict):
    """One applied plan position."""

    restore_id: str
    position: int
    key: str
    captured_at: str | None
    applied_at: str


async def init_journal_db(db_path: Path) -> None:
    """
    Initialize the journal database schema.

    Creates tables if they don't exist. This is idempotent.

    Args:
        db_path: Path to the SQLite database file
    """
    try:
        db_path.parent.mkdir(parents=True, exist_ok=True)
        async with aiosqlite.connect(db_path) as db:
            await db.execute("""
                CREATE TABLE IF NOT EXISTS restores (
                    id TEXT PRIMARY KEY,
                    started_at TEXT NOT NULL,
                    snapshot_key TEXT NOT NULL,
                    target_time TEXT NOT NULL,
                    plan_keys TEXT NOT NULL,
                    databases TEXT NOT NULL,
                    status TEXT NOT NULL,
                    last_applied_position INTEGER NOT NULL DEFAULT -1,
                    completed_at TEXT,
                    error TEXT
                )
            """)

            await db.execute("""
                CREATE TABLE IF NOT EXISTS applied_positions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    restore_id TEXT NOT NULL,
                    position INTEGER NOT NULL,
                    key TEXT NOT NULL,
                    captured_at TEXT,
                    applied_at TEXT NOT NULL,
                    FOREIGN KEY (restore_id) REFERENCES restores(id)
                )
            """)

            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_applied_positions_restore_id
                ON applied_positions(restore_id)
            """)

            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_restores_started_at
                ON restores(started_at)
            """)

            await db.commit()

        logger.info("journal_db_initialized", db_path=str(db_path))

    except Exception as e:
        raise JournalError(
            f"Failed to initialize journal database: {e}",
            details={"db_path": str(db_path)},
        )


async def record_restore(
    db: aiosqlite.Connection,
    restore_id: str,
    plan: RestorePlan,
    databases: List[str] | None = None,
) -> None:
    """
    Record the start of a restore run.

    Args:
        db: SQLite database connection
        restore_id: Unique restore ID (ULID)
        plan: The plan being executed
        databases: Database subset restored (empty for all)
    """
    now = datetime.now(UTC).isoformat()

    await db.execute(
        """
        INSERT INTO restores
        (id, started_at, snapshot_key, target_time, plan_keys, databases, status)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (
            restore_id,
            now,
            plan.snapshot.key,
            plan.target_time.isoformat(),
            json.dumps(plan.keys()),
            json.dumps(list(databases or [])),
            STATUS_RUNNING,
        ),
    )
    await db.commit()

    logger.info("restore_recorded", restore_id=restore_id, positions=len(plan))


async def record_position_applied(
    db: aiosqlite.Connection,
    restore_id: str,
    position: int,
    key: str,
    captured_at: datetime | None = None,
) -> None:
    """
    Record that a plan position was applied.

    Args:
        db: SQLite database connection
        restore_id: Restore ID
        position: Plan position (0 is the base snapshot)
        key: Object key applied at this position
        captured_at: Segment capture time (None for the snapshot)
    """
    now = datetime.now(UTC).isoformat()

    await db.execute(
        """
        INSERT INTO applied_positions (restore_id, position, key, captured_at, applied_at)
        VALUES (?, ?, ?, ?, ?)
        """,
        (restore_id, position, key, captured_at.isoformat() if captured_at else None, now),
    )
    await db.execute(
        "UPDATE restores SET last_applied_position = ? WHERE id = ?",
        (position, restore_id),
    )
    await db.commit()

    logger.debug("position_recorded", restore_id=restore_id, position=position, key=key)


async def complete_restore(
    db: aiosqlite.Connection,
    restore_id: str,
    error: str | None = None,
) -> None:
    """
    Mark a restore as completed or failed.

    Args:
        db: SQLite database connection
        restore_id: Restore ID
        error: Error message if the restore failed
    """
    now = datetime.now(UTC).isoformat()
    status = STATUS_FAILED if error else STATUS_COMPLETED

    await db.execute(
        """
        UPDATE restores
        SET status = ?, completed_at = ?, error = ?
        WHERE id = ?
        """,
        (status, now, error, restore_id),
    )
    await db.commit()


async def reopen_restore(db: aiosqlite.Connection, restore_id: str) -> None:
    """Set a failed restore back to running before resuming it."""
    await db.execute(
        "UPDATE restores SET status = ?, completed_at = NULL, error = NULL WHERE id = ?",
        (STATUS_RUNNING, restore_id),
    )
    await db.commit()


def _row_to_record(row) -> RestoreRecord:
    return RestoreRecord(
        id=row[0],
        started_at=row[1],
        snapshot_key=row[2],
        target_time=row[3],
        plan_keys=json.loads(row[4]),
        databases=json.loads(row[5]),
        status=row[6],
        last_applied_position=row[7],
        completed_at=row[8],
        error=row[9],
    )


_RESTORE_COLUMNS = """
    id, started_at, snapshot_key, target_time, plan_keys, databases,
    status, last_applied_position, completed_at, error
"""


async def get_restore(
    db: aiosqlite.Connection,
    restore_id: str,
) -> RestoreRecord | None:
    """
    Get a restore record.

    Returns:
        Restore record or None if not found
    """
    async with db.execute(
        f"SELECT {_RESTORE_COLUMNS} FROM restores WHERE id = ?",
        (restore_id,),
    ) as cursor:
        row = await cursor.fetchone()

    return _row_to_record(row) if row else None


async def last_applied_position(db: aiosqlite.Connection, restore_id: str) -> int:
    """Highest applied plan position of a restore; -1 when none."""
    async with db.execute(
        "SELECT MAX(position) FROM applied_positions WHERE restore_id = ?",
        (restore_id,),
    ) as cursor:
        row = await cursor.fetchone()

    if row is None or row[0] is None:
        return -1
    return int(row[0])


async def get_applied_positions(
    db: aiosqlite.Connection,
    restore_id: str,
) -> List[AppliedPositionRecord]:
    """Applied positions of a restore in application order."""
    records: List[AppliedPositionRecord] = []

    async with db.execute(
        """
        SELECT restore_id, position, key, captured_at, applied_at
        FROM applied_positions
        WHERE restore_id = ?
        ORDER BY id
        """,
        (restore_id,),
    ) as cursor:
        async for row in cursor:
            records.append(
                AppliedPositionRecord(
                    restore_id=row[0],
                    position=row[1],
                    key=row[2],
                    captured_at=row[3],
                    applied_at=row[4],
                )
            )

    return records


async def list_restores(
    db: aiosqlite.Connection,
    limit: int = 50,
    offset: int = 0,
    status: str | None = None,
) -> List[RestoreRecord]:
    """
    List restore runs with pagination, newest first.

    Args:
        db: SQLite database connection
        limit: Maximum number of records to return
        offset: Number of records to skip
        status: Optional filter by status
    """
    query = f"SELECT {_RESTORE_COLUMNS} FROM restores"
    params: List = []

    if status:
        query += " WHERE status = ?"
        params.append(status)

    query += " ORDER BY started_at DESC LIMIT ? OFFSET ?"
    params.extend([limit, offset])

    records: List[RestoreRecord] = []

    async with db.execute(query, params) as cursor:
        async for row in cursor:
            records.append(_row_to_record(row))

    return records


async def get_journal_stats(db: aiosqlite.Connection) -> dict:
    """
    Get journal statistics.

    Returns:
        Dict with restore counts by status and applied position totals
    """
    stats = {}

    async with db.execute("SELECT COUNT(*) FROM restores") as cursor:
        row = await cursor.fetchone()
        stats["total_restores"] = row[0] if row else 0

    async with db.execute(
        "SELECT status, COUNT(*) FROM restores GROUP BY status"
    ) as cursor:
        stats["restores_by_status"] = {row[0]: row[1] async for row in cursor}

    async with db.execute("SELECT COUNT(*) FROM applied_positions") as cursor:
        row = await cursor.fetchone()
        stats["total_positions_applied"] = row[0] if row else 0

    return stats
