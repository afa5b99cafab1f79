# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
dbsnap Restore Manager - Restores tables from a successful backup run.

Pipeline for one restore:

    fetch artifact -> verify checksum -> decrypt -> decompress
                   -> deserialize -> import per table -> record result

The checksum is verified before anything else touches the bytes, so a
corrupted or tampered artifact never reaches the importer. Tables are
imported one at a time and an import failure stops the restore; tables
imported before the failure stay imported and are listed on the run.
"""

import asyncio
from typing import Any, Dict, Iterable, List

import aiosqlite
import structlog

from dbsnap.backup.manager import deserialize_snapshot
from dbsnap.backup.runtime import caller_cancelled, error_kind, error_message, with_retries
from dbsnap.config import RunStatus
from dbsnap.core import EngineState
from dbsnap.env import resolve_encryption_key
from dbsnap.exceptions import (
    ArtifactMissing,
    BackupNotFound,
    BackupNotRestorable,
    DBSnapError,
    IntegrityCheckFailed,
    RunCancelled,
    RunTimeout,
)
from dbsnap.vault.ledger import (
    BackupRun,
    RestoreRun,
    create_restore_run,
    finalize_restore_run,
    get_backup_run,
    get_restore_run,
)

logger = structlog.get_logger()


def select_tables(available: List[str], requested: Iterable[str] | None) -> List[str]:
    """
    Effective table set of a restore.

    Requested tables are filtered to those present in the artifact, in the
    caller's order. Without a request, every table in the artifact is used.
    """
    if requested is None:
        return list(available)

    if isinstance(requested, str):
        requested = [requested]

    selected: List[str] = []
    for table in requested:
        if table in available and table not in selected:
            selected.append(table)
    return selected


async def _load_restorable_run(state: EngineState, backup_run_id: str) -> BackupRun:
    async with aiosqlite.connect(state["ledger_db_path"]) as ledger_db:
        backup = await get_backup_run(ledger_db, backup_run_id)

    if backup is None:
        raise BackupNotFound(
            f"Backup run not found: {backup_run_id}",
            details={"backup_run_id": backup_run_id},
        )
    if backup.status != RunStatus.SUCCESS:
        raise BackupNotRestorable(
            f"Backup run {backup_run_id} is {backup.status.value}, not success",
            details={"backup_run_id": backup_run_id, "status": backup.status.value},
        )
    return backup


async def run_restore(
    state: EngineState,
    backup_run_id: str,
    tables: Iterable[str] | None = None,
) -> RestoreRun:
    """
    Restore tables from a successful backup run.

    Args:
        state: Engine state
        backup_run_id: Backup run to restore from
        tables: Tables to restore (None = every table in the artifact)

    Returns:
        The finalized restore run. Failures after the restore record was
        created, cancellation through cancel_run included, are reported on
        the run (status failed, error kind set) rather than raised.

    Raises:
        BackupNotFound: If the backup run is unknown
        BackupNotRestorable: If the backup run did not succeed
    """
    backup = await _load_restorable_run(state, backup_run_id)

    async with aiosqlite.connect(state["ledger_db_path"]) as ledger_db:
        restore = await create_restore_run(ledger_db, backup.id)

    requested = list(tables) if tables is not None and not isinstance(tables, str) else tables
    task = asyncio.create_task(
        _execute_restore(state, backup, restore, requested),
        name=f"restore-run:{restore.id}",
    )
    state["active_runs"][restore.id] = task
    finalized = await task
    if caller_cancelled():
        raise asyncio.CancelledError()
    return finalized


async def _execute_restore(
    state: EngineState,
    backup: BackupRun,
    restore: RestoreRun,
    tables: Iterable[str] | None,
) -> RestoreRun:
    config = state["config"]
    progress: Dict[str, Any] = {"tables": [], "rows": {}}
    deadline = asyncio.timeout(config.run_timeout_seconds)

    logger.info(
        "restore_run_started",
        run_id=restore.id,
        backup_run_id=backup.id,
        policy_id=backup.policy_id,
    )

    status = RunStatus.SUCCESS
    kind: str | None = None
    message: str | None = None

    try:
        async with deadline:
            await _restore_pipeline(state, backup, restore, tables, progress)
    except asyncio.CancelledError:
        status = RunStatus.FAILED
        kind = RunCancelled.kind
        message = "Restore run was cancelled"
        logger.warning("restore_run_cancelled", run_id=restore.id, backup_run_id=backup.id)
    except Exception as e:
        status = RunStatus.FAILED
        if isinstance(e, TimeoutError) and deadline.expired():
            kind = RunTimeout.kind
            message = f"Restore run exceeded {config.run_timeout_seconds}s deadline"
        else:
            kind = error_kind(e)
            message = error_message(e)
            if not isinstance(e, DBSnapError):
                logger.exception("restore_run_unexpected_error", run_id=restore.id)
    finally:
        state["active_runs"].pop(restore.id, None)

    finalized = await _finalize(state, restore, status, progress, kind, message)

    if status == RunStatus.SUCCESS:
        logger.info(
            "restore_run_completed",
            run_id=restore.id,
            backup_run_id=backup.id,
            tables_restored=progress["tables"],
            rows_restored=progress["rows"],
        )
    else:
        logger.error(
            "restore_run_failed",
            run_id=restore.id,
            backup_run_id=backup.id,
            error=kind,
            message=message,
            tables_restored=progress["tables"],
        )
    return finalized


async def _restore_pipeline(
    state: EngineState,
    backup: BackupRun,
    restore: RestoreRun,
    tables: Iterable[str] | None,
    progress: Dict[str, Any],
) -> None:
    config = state["config"]
    codec = state["codec"]
    source = state["table_source"]
    store = state["store"]

    data = await with_retries(
        lambda: store.get(backup.artifact_ref),
        attempts=config.max_retries,
        backoff_seconds=config.retry_backoff_seconds,
        step="fetch",
        run_id=restore.id,
    )

    actual = codec.checksum(data)
    if actual != backup.checksum:
        raise IntegrityCheckFailed(
            "Artifact checksum does not match the recorded checksum",
            details={
                "backup_run_id": backup.id,
                "expected": backup.checksum,
                "actual": actual,
            },
        )

    # Codec flags come from the run, never from the policy's current settings
    if backup.metadata.get("encrypted", False):
        key = resolve_encryption_key(config, backup.policy_id)
        data = await codec.decrypt(data, key)

    if backup.metadata.get("compressed", False):
        data = await codec.decompress(data)

    table_order, rows_by_table = deserialize_snapshot(data)
    effective = select_tables(table_order, tables)
    if tables is not None and not effective:
        logger.warning(
            "restore_tables_not_in_artifact",
            run_id=restore.id,
            requested=list(tables),
            available=table_order,
        )

    for table in effective:
        rows = rows_by_table[table]
        count = await with_retries(
            lambda table=table, rows=rows: source.import_rows(table, rows),
            attempts=config.max_retries,
            backoff_seconds=config.retry_backoff_seconds,
            step="import",
            run_id=restore.id,
            table=table,
        )
        progress["tables"].append(table)
        progress["rows"][table] = count
        logger.debug("restore_table_imported", run_id=restore.id, table=table, rows=count)


async def _finalize(
    state: EngineState,
    restore: RestoreRun,
    status: RunStatus,
    progress: Dict[str, Any],
    kind: str | None,
    message: str | None,
) -> RestoreRun:
    async with aiosqlite.connect(state["ledger_db_path"]) as ledger_db:
        finalized = await finalize_restore_run(
            ledger_db,
            restore.id,
            status,
            list(progress["tables"]),
            dict(progress["rows"]),
            error=kind,
            error_message=message,
        )
        if finalized is None:
            # Force-failed by crash recovery while running; report what is stored
            finalized = await get_restore_run(ledger_db, restore.id)
    return finalized


async def verify_integrity(state: EngineState, backup_run_id: str) -> bool:
    """
    Re-fetch a run's artifact and compare its checksum without restoring.

    Returns:
        True only if the run succeeded and its artifact matches the
        recorded checksum
    """
    async with aiosqlite.connect(state["ledger_db_path"]) as ledger_db:
        backup = await get_backup_run(ledger_db, backup_run_id)

    if backup is None or backup.status != RunStatus.SUCCESS:
        return False

    try:
        data = await state["store"].get(backup.artifact_ref)
    except ArtifactMissing:
        logger.warning("integrity_artifact_missing", backup_run_id=backup_run_id)
        return False
    except Exception as e:
        logger.warning("integrity_fetch_failed", backup_run_id=backup_run_id, error=str(e))
        return False

    valid = state["codec"].checksum(data) == backup.checksum
    if not valid:
        logger.warning("integrity_check_failed", backup_run_id=backup_run_id)
    return valid
