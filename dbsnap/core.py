# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
dbsnap Core - Engine state and the administrative operations.

All state lives in an explicit EngineState mapping created by
initialize_engine_state() and passed to every operation. The registry and
the ledger are SQLite files; the artifact store, codec and table source
are injected objects, so each can be replaced by an in-memory fake.
"""

import asyncio
from dataclasses import asdict, dataclass
from datetime import datetime, UTC
from pathlib import Path
from typing import Any, Dict, Iterable, List, TypedDict

import aiosqlite
import structlog

from dbsnap.config import BackupPolicy, EngineConfig, RunStatus

logger = structlog.get_logger()


@dataclass
class EngineStatistics:
    """Aggregate view of the run ledger."""

    total_runs: int
    success_count: int
    failure_count: int
    in_progress_count: int
    total_bytes: int
    average_bytes: float
    last_run_at: datetime | None
    next_scheduled_at: datetime | None
    average_compression_ratio: float
    restore_count: int

    def to_dict(self) -> dict:
        result = asdict(self)
        for name in ("last_run_at", "next_scheduled_at"):
            if result[name] is not None:
                result[name] = result[name].isoformat()
        return result


class EngineState(TypedDict):
    """Runtime state shared by the scheduler and the orchestrators."""

    config: EngineConfig
    registry_db_path: Path
    ledger_db_path: Path
    store: Any  # ArtifactStore
    codec: Any  # IntegrityCodec
    table_source: Any  # TableSource
    scheduler: Any  # BackupScheduler
    active_runs: Dict[str, asyncio.Task]  # In-flight backup and restore runs by id


async def initialize_engine_state(
    config: EngineConfig,
    table_source: Any,
    *,
    store: Any = None,
    codec: Any = None,
    policies: Iterable[BackupPolicy] | None = None,
    start_scheduler: bool = True,
) -> EngineState:
    """
    Initialize runtime state for the engine.

    Creates directories, initializes databases, seeds policies that are not
    registered yet, fails runs left in progress by a previous process, and
    schedules every enabled policy.

    Args:
        config: Engine configuration
        table_source: External data store (TableSource)
        store: Artifact store (default: chosen by config.storage_backend)
        codec: Integrity codec (default: IntegrityCodec at config.zstd_level)
        policies: Policies to seed (default: the built-in default policies)
        start_scheduler: Start firing scheduled backups immediately

    Returns:
        Initialized EngineState dictionary
    """
    from dbsnap.builder import default_policies
    from dbsnap.registry import init_registry_db, list_policies, seed_policies
    from dbsnap.scheduler import BackupScheduler
    from dbsnap.storage import create_artifact_store
    from dbsnap.vault import IntegrityCodec, expire_stale_runs, init_ledger_db

    # Create directories
    config.data_path.mkdir(parents=True, exist_ok=True)

    # Initialize databases
    await init_registry_db(config.registry_db_path)
    await init_ledger_db(config.ledger_db_path)

    state = EngineState(
        config=config,
        registry_db_path=config.registry_db_path,
        ledger_db_path=config.ledger_db_path,
        store=store if store is not None else create_artifact_store(config),
        codec=codec if codec is not None else IntegrityCodec(config.zstd_level),
        table_source=table_source,
        scheduler=None,
        active_runs={},
    )

    async with aiosqlite.connect(state["registry_db_path"]) as reg_db:
        await seed_policies(reg_db, default_policies() if policies is None else policies)
        registered = await list_policies(reg_db)

    # No run of this process exists yet, so anything in progress is orphaned
    async with aiosqlite.connect(state["ledger_db_path"]) as ledger_db:
        await expire_stale_runs(
            ledger_db,
            datetime.now(UTC),
            error="Interrupted",
            error_message="Engine restarted while the run was in progress",
        )

    async def on_due(policy_id: str) -> None:
        await _on_policy_due(state, policy_id)

    scheduler = BackupScheduler(on_due, config.default_interval_seconds)
    for policy in registered:
        scheduler.start_policy(policy)
    state["scheduler"] = scheduler

    if start_scheduler:
        scheduler.start()

    logger.info(
        "engine_started",
        policies=len(registered),
        scheduled=scheduler.scheduled_policies(),
        storage_backend=config.storage_backend.value,
    )
    return state


async def shutdown_engine_state(state: EngineState) -> None:
    """Stop the scheduler and cancel in-flight runs."""
    if state["scheduler"] is not None:
        state["scheduler"].shutdown()

    for run_id in list(state["active_runs"]):
        try:
            await cancel_run(state, run_id)
        except Exception as e:
            logger.warning("run_cancel_failed", run_id=run_id, error=str(e))

    logger.info("engine_shutdown_complete")


async def _on_policy_due(state: EngineState, policy_id: str) -> None:
    """Scheduled firing: no-op for disabled policies, never raises."""
    from dbsnap.backup import run_backup
    from dbsnap.exceptions import OverlappingRunSkipped
    from dbsnap.registry import get_policy

    async with aiosqlite.connect(state["registry_db_path"]) as reg_db:
        policy = await get_policy(reg_db, policy_id)

    if policy is None or not policy.enabled:
        logger.info("scheduled_backup_skipped", policy_id=policy_id, reason="disabled_or_missing")
        return

    logger.info("scheduled_backup_starting", policy_id=policy_id)
    try:
        run = await run_backup(state, policy_id)
        logger.info("scheduled_backup_completed", policy_id=policy_id, run_id=run.id)
    except OverlappingRunSkipped:
        pass  # Logged by the orchestrator
    except Exception as e:
        logger.error("scheduled_backup_failed", policy_id=policy_id, error=str(e))


# ============================================================================
# Policies
# ============================================================================

async def list_policies(state: EngineState) -> List[BackupPolicy]:
    from dbsnap import registry

    async with aiosqlite.connect(state["registry_db_path"]) as reg_db:
        return await registry.list_policies(reg_db)


async def get_policy(state: EngineState, policy_id: str) -> BackupPolicy:
    """
    Raises:
        PolicyNotFound: If the id is unknown
    """
    from dbsnap import registry

    async with aiosqlite.connect(state["registry_db_path"]) as reg_db:
        return await registry.require_policy(reg_db, policy_id)


def _reschedule_if_needed(
    state: EngineState,
    previous: BackupPolicy | None,
    stored: BackupPolicy,
) -> None:
    if (
        previous is None
        or previous.schedule != stored.schedule
        or previous.enabled != stored.enabled
    ):
        state["scheduler"].reschedule(stored)


async def upsert_policy(state: EngineState, policy: BackupPolicy) -> BackupPolicy:
    """Register or replace a policy and reschedule it when its timer changed."""
    from dbsnap import registry

    async with aiosqlite.connect(state["registry_db_path"]) as reg_db:
        previous = await registry.get_policy(reg_db, policy.id)
        stored = await registry.upsert_policy(reg_db, policy)

    _reschedule_if_needed(state, previous, stored)
    return stored


async def update_policy(state: EngineState, policy_id: str, **changes) -> BackupPolicy:
    """
    Partially update a policy.

    Raises:
        PolicyNotFound: If the id is unknown
        InvalidPolicy: If the result violates policy invariants
    """
    from dbsnap import registry

    async with aiosqlite.connect(state["registry_db_path"]) as reg_db:
        previous = await registry.require_policy(reg_db, policy_id)
        stored = await registry.upsert_policy(reg_db, previous.with_updates(**changes))

    _reschedule_if_needed(state, previous, stored)
    return stored


async def set_policy_enabled(state: EngineState, policy_id: str, enabled: bool) -> BackupPolicy:
    return await update_policy(state, policy_id, enabled=enabled)


# ============================================================================
# Backup runs
# ============================================================================

async def trigger_backup(state: EngineState, policy_id: str, *, force: bool = False):
    """
    Run a backup now and return the finalized run.

    Args:
        state: Engine state
        policy_id: Policy to run
        force: Run even if the policy is disabled

    Raises:
        PolicyNotFound, OverlappingRunSkipped, or the step failure of a
        failed run (its ``details["run_id"]`` names the run)
    """
    from dbsnap.backup import run_backup

    return await run_backup(state, policy_id, allow_disabled=force)


async def get_backup_run(state: EngineState, run_id: str):
    from dbsnap.vault import ledger

    async with aiosqlite.connect(state["ledger_db_path"]) as ledger_db:
        return await ledger.get_backup_run(ledger_db, run_id)


async def list_backup_runs(
    state: EngineState,
    policy_id: str | None = None,
    status: RunStatus | None = None,
    limit: int | None = None,
) -> list:
    """List backup runs, newest first."""
    from dbsnap.vault import ledger

    async with aiosqlite.connect(state["ledger_db_path"]) as ledger_db:
        return await ledger.list_backup_runs(ledger_db, policy_id, status, limit)


async def delete_backup_run(state: EngineState, run_id: str) -> bool:
    """
    Delete a finalized run and its artifact, bypassing retention.

    Returns:
        False if the run is unknown or still in progress
    """
    from dbsnap.vault import ledger

    async with aiosqlite.connect(state["ledger_db_path"]) as ledger_db:
        run = await ledger.get_backup_run(ledger_db, run_id)
        if run is None:
            return False
        if run.status == RunStatus.IN_PROGRESS:
            logger.warning("delete_refused_in_progress", run_id=run_id)
            return False

        if run.artifact_ref:
            await state["store"].delete(run.artifact_ref)
        deleted = await ledger.delete_backup_run(ledger_db, run_id)

    if deleted:
        logger.info("backup_run_deleted", run_id=run_id, policy_id=run.policy_id)
    return deleted


async def cancel_run(state: EngineState, run_id: str) -> bool:
    """
    Cancel an in-flight backup or restore run started by this engine.

    The run is finalized as failed with error "Cancelled" before this
    returns. A backup caller then sees RunCancelled; a restore caller gets
    the failed restore run back.

    Returns:
        False if no such run is in flight
    """
    task = state["active_runs"].get(run_id)
    if task is None or task.done():
        return False

    task.cancel()
    await asyncio.gather(task, return_exceptions=True)
    logger.info("run_cancelled", run_id=run_id)
    return True


# ============================================================================
# Restore runs
# ============================================================================

async def trigger_restore(
    state: EngineState,
    backup_run_id: str,
    tables: Iterable[str] | None = None,
):
    """
    Restore from a successful backup run.

    Raises:
        BackupNotFound: If the backup run is unknown
        BackupNotRestorable: If the backup run did not succeed
    """
    from dbsnap.backup import run_restore

    return await run_restore(state, backup_run_id, tables)


async def get_restore_run(state: EngineState, run_id: str):
    from dbsnap.vault import ledger

    async with aiosqlite.connect(state["ledger_db_path"]) as ledger_db:
        return await ledger.get_restore_run(ledger_db, run_id)


async def list_restore_runs(
    state: EngineState,
    backup_run_id: str | None = None,
    limit: int | None = None,
) -> list:
    """List restore runs, newest first."""
    from dbsnap.vault import ledger

    async with aiosqlite.connect(state["ledger_db_path"]) as ledger_db:
        return await ledger.list_restore_runs(ledger_db, backup_run_id, limit)


async def verify_integrity(state: EngineState, backup_run_id: str) -> bool:
    """Re-fetch and re-checksum a run's artifact without restoring it."""
    from dbsnap.backup import verify_integrity as verify_artifact

    return await verify_artifact(state, backup_run_id)


# ============================================================================
# Statistics
# ============================================================================

async def get_statistics(state: EngineState) -> EngineStatistics:
    """Get current ledger statistics and the next scheduled firing."""
    from dbsnap.vault import get_ledger_stats

    async with aiosqlite.connect(state["ledger_db_path"]) as ledger_db:
        stats = await get_ledger_stats(ledger_db)

    scheduler = state["scheduler"]
    return EngineStatistics(
        total_runs=stats["total_runs"],
        success_count=stats["success_count"],
        failure_count=stats["failure_count"],
        in_progress_count=stats["in_progress_count"],
        total_bytes=stats["total_bytes"],
        average_bytes=stats["average_bytes"],
        last_run_at=stats["last_run_at"],
        next_scheduled_at=scheduler.next_run_time() if scheduler else None,
        average_compression_ratio=stats["average_compression_ratio"],
        restore_count=stats["restore_count"],
    )
