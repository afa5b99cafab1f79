# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
dbsnap Run Ledger - SQLite history of backup and restore runs.

The ledger is the only resource mutated by concurrent workers (scheduled
backups, on-demand restores, retention sweeps), so its invariants are
enforced by SQLite itself:

1. At most one in-progress backup per policy - a partial unique index
   turns the overlap check and the insert into one atomic statement.
2. Exactly one finalize per run - finalize statements only match rows that
   are still in progress.
3. checksum and artifact_ref are set if and only if status is success - a
   CHECK constraint on backup_runs.

Restore runs are an audit trail and are never deleted.
"""

import json
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, UTC
from pathlib import Path
from typing import Any, Dict, List

import aiosqlite
import structlog
from ulid import ULID

from dbsnap.config import RunStatus
from dbsnap.exceptions import LedgerError

logger = structlog.get_logger()


@dataclass
class BackupRun:
    """One execution of a backup policy."""

    id: str  # ULID
    policy_id: str
    kind: str  # full, incremental, differential
    status: RunStatus
    start_time: datetime
    end_time: datetime | None = None
    size_bytes: int = 0
    artifact_ref: str | None = None
    checksum: str | None = None  # SHA-256 of the stored bytes
    error: str | None = None  # Machine-checkable kind, e.g. "Timeout"
    error_message: str | None = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def table_row_counts(self) -> Dict[str, int]:
        return self.metadata.get("table_row_counts", {})

    @property
    def compression_ratio(self) -> float | None:
        return self.metadata.get("compression_ratio")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "policy_id": self.policy_id,
            "kind": self.kind,
            "status": self.status.value,
            "start_time": _iso(self.start_time),
            "end_time": _iso(self.end_time) if self.end_time else None,
            "size_bytes": self.size_bytes,
            "artifact_ref": self.artifact_ref,
            "checksum": self.checksum,
            "error": self.error,
            "error_message": self.error_message,
            "metadata": self.metadata,
        }


@dataclass
class RestoreRun:
    """One restore from a successful backup run."""

    id: str  # ULID
    backup_run_id: str
    status: RunStatus
    start_time: datetime
    end_time: datetime | None = None
    tables_restored: List[str] = field(default_factory=list)
    rows_restored_by_table: Dict[str, int] = field(default_factory=dict)
    error: str | None = None
    error_message: str | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "backup_run_id": self.backup_run_id,
            "status": self.status.value,
            "start_time": _iso(self.start_time),
            "end_time": _iso(self.end_time) if self.end_time else None,
            "tables_restored": list(self.tables_restored),
            "rows_restored_by_table": dict(self.rows_restored_by_table),
            "error": self.error,
            "error_message": self.error_message,
        }


_BACKUP_COLUMNS = """
    id, policy_id, kind, status, start_time, end_time, size_bytes,
    artifact_ref, checksum, error, error_message, metadata
"""

_RESTORE_COLUMNS = """
    id, backup_run_id, status, start_time, end_time, tables_restored,
    rows_restored, error, error_message
"""


def _iso(value: datetime) -> str:
    """Fixed-width ISO 8601 so that text ordering matches time ordering."""
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def _parse(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _now() -> datetime:
    return datetime.now(UTC)


def _row_to_backup_run(row: Any) -> BackupRun:
    return BackupRun(
        id=row[0],
        policy_id=row[1],
        kind=row[2],
        status=RunStatus(row[3]),
        start_time=_parse(row[4]),
        end_time=_parse(row[5]),
        size_bytes=row[6],
        artifact_ref=row[7],
        checksum=row[8],
        error=row[9],
        error_message=row[10],
        metadata=json.loads(row[11]) if row[11] else {},
    )


def _row_to_restore_run(row: Any) -> RestoreRun:
    return RestoreRun(
        id=row[0],
        backup_run_id=row[1],
        status=RunStatus(row[2]),
        start_time=_parse(row[3]),
        end_time=_parse(row[4]),
        tables_restored=json.loads(row[5]),
        rows_restored_by_table=json.loads(row[6]),
        error=row[7],
        error_message=row[8],
    )


async def init_ledger_db(db_path: Path) -> None:
    """
    Initialize the ledger database schema.

    Creates tables if they don't exist. This is idempotent.

    Args:
        db_path: Path to the SQLite database file
    """
    try:
        async with aiosqlite.connect(db_path) as db:
            # Backup runs - one row per backup attempt
            await db.execute("""
                CREATE TABLE IF NOT EXISTS backup_runs (
                    id TEXT PRIMARY KEY,
                    policy_id TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    status TEXT NOT NULL,
                    start_time TEXT NOT NULL,
                    end_time TEXT,
                    size_bytes INTEGER NOT NULL DEFAULT 0,
                    artifact_ref TEXT,
                    checksum TEXT,
                    error TEXT,
                    error_message TEXT,
                    metadata TEXT NOT NULL DEFAULT '{}',
                    CHECK (
                        (status = 'success')
                        = (checksum IS NOT NULL AND artifact_ref IS NOT NULL)
                    )
                )
            """)

            # Restore runs - audit trail, never deleted
            await db.execute("""
                CREATE TABLE IF NOT EXISTS restore_runs (
                    id TEXT PRIMARY KEY,
                    backup_run_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    start_time TEXT NOT NULL,
                    end_time TEXT,
                    tables_restored TEXT NOT NULL DEFAULT '[]',
                    rows_restored TEXT NOT NULL DEFAULT '{}',
                    error TEXT,
                    error_message TEXT
                )
            """)

            # At most one in-progress backup per policy
            await db.execute("""
                CREATE UNIQUE INDEX IF NOT EXISTS idx_backup_runs_one_in_progress
                ON backup_runs(policy_id) WHERE status = 'in_progress'
            """)

            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_backup_runs_policy_start
                ON backup_runs(policy_id, start_time)
            """)

            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_restore_runs_start
                ON restore_runs(start_time)
            """)

            await db.commit()

        logger.info("ledger_db_initialized", db_path=str(db_path))

    except Exception as e:
        raise LedgerError(
            f"Failed to initialize ledger database: {e}",
            details={"db_path": str(db_path)},
        )


# ============================================================================
# Backup runs
# ============================================================================

async def create_backup_run(
    db: aiosqlite.Connection,
    policy_id: str,
    kind: str,
    metadata: dict | None = None,
) -> BackupRun | None:
    """
    Record the start of a backup run.

    The insert fails atomically when the policy already has an in-progress
    run, in which case nothing is written.

    Returns:
        The new in-progress run, or None if another run is in progress
    """
    run = BackupRun(
        id=str(ULID()),
        policy_id=policy_id,
        kind=kind,
        status=RunStatus.IN_PROGRESS,
        start_time=_now(),
        metadata=metadata or {},
    )

    try:
        await db.execute(
            """
            INSERT INTO backup_runs (id, policy_id, kind, status, start_time, metadata)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                run.id,
                policy_id,
                kind,
                RunStatus.IN_PROGRESS.value,
                _iso(run.start_time),
                json.dumps(run.metadata),
            ),
        )
        await db.commit()
    except sqlite3.IntegrityError:
        await db.rollback()
        return None

    logger.info("backup_run_recorded", run_id=run.id, policy_id=policy_id, kind=kind)
    return run


async def complete_backup_run(
    db: aiosqlite.Connection,
    run_id: str,
    *,
    size_bytes: int,
    artifact_ref: str,
    checksum: str,
    metadata: dict,
) -> BackupRun | None:
    """
    Finalize a run as successful.

    Returns:
        The finalized run, or None if the run was not in progress
    """
    cursor = await db.execute(
        """
        UPDATE backup_runs
        SET status = ?, end_time = ?, size_bytes = ?, artifact_ref = ?,
            checksum = ?, metadata = ?
        WHERE id = ? AND status = ?
        """,
        (
            RunStatus.SUCCESS.value,
            _iso(_now()),
            size_bytes,
            artifact_ref,
            checksum,
            json.dumps(metadata),
            run_id,
            RunStatus.IN_PROGRESS.value,
        ),
    )
    await db.commit()

    if cursor.rowcount == 0:
        logger.warning("backup_run_already_finalized", run_id=run_id)
        return None
    return await get_backup_run(db, run_id)


async def fail_backup_run(
    db: aiosqlite.Connection,
    run_id: str,
    error: str,
    error_message: str,
    metadata: dict | None = None,
) -> bool:
    """
    Finalize a run as failed.

    Args:
        db: SQLite database connection
        run_id: Run ID
        error: Machine-checkable error kind
        error_message: Human-readable description
        metadata: Replacement metadata (None keeps the stored metadata)

    Returns:
        True if the run was in progress and is now failed
    """
    cursor = await db.execute(
        """
        UPDATE backup_runs
        SET status = ?, end_time = ?, error = ?, error_message = ?,
            metadata = COALESCE(?, metadata)
        WHERE id = ? AND status = ?
        """,
        (
            RunStatus.FAILED.value,
            _iso(_now()),
            error,
            error_message,
            json.dumps(metadata) if metadata is not None else None,
            run_id,
            RunStatus.IN_PROGRESS.value,
        ),
    )
    await db.commit()

    failed = cursor.rowcount > 0
    if failed:
        logger.info("backup_run_failed_recorded", run_id=run_id, error=error)
    return failed


async def get_backup_run(
    db: aiosqlite.Connection,
    run_id: str,
) -> BackupRun | None:
    """
    Get a backup run by id.

    Returns:
        Backup run or None if not found
    """
    async with db.execute(
        f"SELECT {_BACKUP_COLUMNS} FROM backup_runs WHERE id = ?",
        (run_id,),
    ) as cursor:
        row = await cursor.fetchone()
        return _row_to_backup_run(row) if row else None


async def list_backup_runs(
    db: aiosqlite.Connection,
    policy_id: str | None = None,
    status: RunStatus | None = None,
    limit: int | None = None,
) -> List[BackupRun]:
    """
    List backup runs, newest first.

    Args:
        db: SQLite database connection
        policy_id: Optional filter by policy
        status: Optional filter by status
        limit: Maximum number of runs to return
    """
    query = f"SELECT {_BACKUP_COLUMNS} FROM backup_runs"
    conditions: List[str] = []
    params: List = []

    if policy_id:
        conditions.append("policy_id = ?")
        params.append(policy_id)

    if status:
        conditions.append("status = ?")
        params.append(RunStatus(status).value)

    if conditions:
        query += " WHERE " + " AND ".join(conditions)

    query += " ORDER BY start_time DESC, id DESC"

    if limit is not None:
        query += " LIMIT ?"
        params.append(limit)

    runs: List[BackupRun] = []

    async with db.execute(query, params) as cursor:
        async for row in cursor:
            runs.append(_row_to_backup_run(row))

    return runs


async def get_latest_successful_run(
    db: aiosqlite.Connection,
    policy_id: str,
    full_only: bool = False,
) -> BackupRun | None:
    """
    Get the newest successful run of a policy.

    Args:
        db: SQLite database connection
        policy_id: Policy ID
        full_only: Only consider runs whose export scope was full

    Returns:
        Backup run or None if the policy has no matching successful run
    """
    for run in await list_backup_runs(db, policy_id, RunStatus.SUCCESS):
        if not full_only or run.metadata.get("export_scope") == "full":
            return run
    return None


async def delete_backup_run(
    db: aiosqlite.Connection,
    run_id: str,
) -> bool:
    """
    Delete a finalized backup run record.

    In-progress runs are never deleted.

    Returns:
        True if a record was deleted
    """
    cursor = await db.execute(
        "DELETE FROM backup_runs WHERE id = ? AND status != ?",
        (run_id, RunStatus.IN_PROGRESS.value),
    )
    await db.commit()

    deleted = cursor.rowcount > 0
    if deleted:
        logger.info("backup_run_record_deleted", run_id=run_id)
    return deleted


async def expire_stale_runs(
    db: aiosqlite.Connection,
    started_before: datetime,
    error: str = "Timeout",
    error_message: str = "Run exceeded its deadline and was force-failed",
) -> List[str]:
    """
    Force-fail in-progress runs that started before a cutoff.

    Used for crash recovery: a process that died mid-run leaves an
    in-progress record that would otherwise block the policy forever.

    Returns:
        IDs of the backup and restore runs that were failed
    """
    cutoff = _iso(started_before)
    expired: List[str] = []

    for table in ("backup_runs", "restore_runs"):
        async with db.execute(
            f"SELECT id FROM {table} WHERE status = ? AND start_time < ?",
            (RunStatus.IN_PROGRESS.value, cutoff),
        ) as cursor:
            ids = [row[0] async for row in cursor]

        for run_id in ids:
            cursor = await db.execute(
                f"""
                UPDATE {table}
                SET status = ?, end_time = ?, error = ?, error_message = ?
                WHERE id = ? AND status = ?
                """,
                (
                    RunStatus.FAILED.value,
                    _iso(_now()),
                    error,
                    error_message,
                    run_id,
                    RunStatus.IN_PROGRESS.value,
                ),
            )
            if cursor.rowcount > 0:
                expired.append(run_id)

    await db.commit()

    if expired:
        logger.warning("stale_runs_expired", run_ids=expired, error=error)
    return expired


# ============================================================================
# Restore runs
# ============================================================================

async def create_restore_run(
    db: aiosqlite.Connection,
    backup_run_id: str,
) -> RestoreRun:
    """Record the start of a restore run."""
    run = RestoreRun(
        id=str(ULID()),
        backup_run_id=backup_run_id,
        status=RunStatus.IN_PROGRESS,
        start_time=_now(),
    )

    await db.execute(
        """
        INSERT INTO restore_runs (id, backup_run_id, status, start_time)
        VALUES (?, ?, ?, ?)
        """,
        (run.id, backup_run_id, RunStatus.IN_PROGRESS.value, _iso(run.start_time)),
    )
    await db.commit()

    logger.info("restore_run_recorded", run_id=run.id, backup_run_id=backup_run_id)
    return run


async def finalize_restore_run(
    db: aiosqlite.Connection,
    run_id: str,
    status: RunStatus,
    tables_restored: List[str],
    rows_restored_by_table: Dict[str, int],
    error: str | None = None,
    error_message: str | None = None,
) -> RestoreRun | None:
    """
    Finalize a restore run exactly once.

    Returns:
        The finalized run, or None if the run was not in progress
    """
    if status == RunStatus.IN_PROGRESS:
        raise LedgerError("Restore runs cannot be finalized as in progress")

    cursor = await db.execute(
        """
        UPDATE restore_runs
        SET status = ?, end_time = ?, tables_restored = ?, rows_restored = ?,
            error = ?, error_message = ?
        WHERE id = ? AND status = ?
        """,
        (
            status.value,
            _iso(_now()),
            json.dumps(tables_restored),
            json.dumps(rows_restored_by_table),
            error,
            error_message,
            run_id,
            RunStatus.IN_PROGRESS.value,
        ),
    )
    await db.commit()

    if cursor.rowcount == 0:
        logger.warning("restore_run_already_finalized", run_id=run_id)
        return None
    return await get_restore_run(db, run_id)


async def get_restore_run(
    db: aiosqlite.Connection,
    run_id: str,
) -> RestoreRun | None:
    """Get a restore run by id."""
    async with db.execute(
        f"SELECT {_RESTORE_COLUMNS} FROM restore_runs WHERE id = ?",
        (run_id,),
    ) as cursor:
        row = await cursor.fetchone()
        return _row_to_restore_run(row) if row else None


async def list_restore_runs(
    db: aiosqlite.Connection,
    backup_run_id: str | None = None,
    limit: int | None = None,
) -> List[RestoreRun]:
    """List restore runs, newest first."""
    query = f"SELECT {_RESTORE_COLUMNS} FROM restore_runs"
    params: List = []

    if backup_run_id:
        query += " WHERE backup_run_id = ?"
        params.append(backup_run_id)

    query += " ORDER BY start_time DESC, id DESC"

    if limit is not None:
        query += " LIMIT ?"
        params.append(limit)

    runs: List[RestoreRun] = []

    async with db.execute(query, params) as cursor:
        async for row in cursor:
            runs.append(_row_to_restore_run(row))

    return runs


# ============================================================================
# Statistics
# ============================================================================

async def get_ledger_stats(db: aiosqlite.Connection) -> dict:
    """
    Get ledger statistics.

    Returns:
        Dict with run counts, byte totals and the average compression ratio
    """
    stats: Dict[str, Any] = {}

    async with db.execute(
        "SELECT status, COUNT(*) FROM backup_runs GROUP BY status"
    ) as cursor:
        by_status = {row[0]: row[1] async for row in cursor}

    stats["total_runs"] = sum(by_status.values())
    stats["success_count"] = by_status.get(RunStatus.SUCCESS.value, 0)
    stats["failure_count"] = by_status.get(RunStatus.FAILED.value, 0)
    stats["in_progress_count"] = by_status.get(RunStatus.IN_PROGRESS.value, 0)

    async with db.execute(
        "SELECT SUM(size_bytes) FROM backup_runs WHERE status = ?",
        (RunStatus.SUCCESS.value,),
    ) as cursor:
        row = await cursor.fetchone()
        stats["total_bytes"] = row[0] or 0

    stats["average_bytes"] = (
        stats["total_bytes"] / stats["success_count"] if stats["success_count"] else 0.0
    )

    async with db.execute("SELECT MAX(start_time) FROM backup_runs") as cursor:
        row = await cursor.fetchone()
        stats["last_run_at"] = _parse(row[0]) if row else None

    # Runs without compression carry no ratio and are left out of the average
    ratios: List[float] = []
    async with db.execute(
        "SELECT metadata FROM backup_runs WHERE status = ?",
        (RunStatus.SUCCESS.value,),
    ) as cursor:
        async for row in cursor:
            ratio = json.loads(row[0]).get("compression_ratio")
            if ratio:
                ratios.append(ratio)
    stats["average_compression_ratio"] = sum(ratios) / len(ratios) if ratios else 1.0

    async with db.execute("SELECT COUNT(*) FROM restore_runs") as cursor:
        row = await cursor.fetchone()
        stats["restore_count"] = row[0] if row else 0

    return stats
