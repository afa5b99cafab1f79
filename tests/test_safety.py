# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Critical Safety Tests for dbsnap.

These tests verify the core safety guarantees:
1. Round-trip - restore(backup(D)) == D
2. Checksum sensitivity - a corrupted artifact is never imported
3. Idempotent restore - restoring twice reports the same row counts
4. Retention - the newest successful run is never deleted
5. Overlap prevention - at most one in-progress run per policy
6. Fail closed - encryption is never skipped, runs never stay in progress

These tests MUST pass before any production deployment.
"""

import asyncio
import copy
from decimal import Decimal

import aiosqlite
import pytest

from conftest import (
    GatedImportSource,
    GatedTableSource,
    artifact_path,
    make_engine,
    sample_tables,
    typed_rows,
)
from dbsnap.builder import create_policy
from dbsnap.config import RunStatus
from dbsnap.core import (
    cancel_run,
    get_backup_run,
    get_restore_run,
    list_backup_runs,
    shutdown_engine_state,
    trigger_backup,
    trigger_restore,
)
from dbsnap.exceptions import EncryptionKeyMissing, OverlappingRunSkipped, RunCancelled, RunTimeout
from dbsnap.tables.memory import MemoryTableSource
from dbsnap.vault.ledger import create_backup_run


# ============================================================================
# Test 1: ROUND-TRIP
# ============================================================================

@pytest.mark.asyncio
@pytest.mark.parametrize("policy_id", ["users_full", "all_encrypted"])
async def test_restore_of_backup_reproduces_every_table(engine, table_source, policy_id):
    """
    CRITICAL: restore(backup(D)) must equal D row for row, with and
    without encryption.
    """
    original = copy.deepcopy(table_source.tables)

    run = await trigger_backup(engine, policy_id)
    assert run.status == RunStatus.SUCCESS

    # Lose the live data
    table_source.tables = {}

    restore = await trigger_restore(engine, run.id)

    assert restore.status == RunStatus.SUCCESS, restore.error_message
    for table in run.table_row_counts:
        assert table_source.tables[table] == original[table]
    assert restore.tables_restored == list(run.table_row_counts)


@pytest.mark.asyncio
@pytest.mark.parametrize("encrypt", [False, True])
async def test_round_trip_keeps_value_types(test_config, encrypt):
    """
    CRITICAL: bytes, Decimal, UUID and temporal values come back as the
    same Python values, not as their text forms.
    """
    source = MemoryTableSource({"typed": typed_rows()})
    state = await make_engine(test_config, source, [create_policy("typed", ["typed"], encrypt=encrypt)])
    try:
        run = await trigger_backup(state, "typed")
        source.tables = {}

        restore = await trigger_restore(state, run.id)

        assert restore.status == RunStatus.SUCCESS, restore.error_message
        assert source.tables["typed"] == typed_rows()
        assert type(source.tables["typed"][0]["blob"]) is bytes
        assert type(source.tables["typed"][0]["price"]) is Decimal
    finally:
        await shutdown_engine_state(state)


@pytest.mark.asyncio
async def test_uncompressed_round_trip(test_config, table_source):
    """Policies without compression store the serialized snapshot as is."""
    policy = create_policy("plain", ["users", "posts"], compress=False)
    state = await make_engine(test_config, table_source, [policy])
    try:
        run = await trigger_backup(state, "plain")
        assert "compression_ratio" not in run.metadata
        assert run.size_bytes == run.metadata["raw_bytes"]

        table_source.tables = {}
        restore = await trigger_restore(state, run.id)

        assert restore.status == RunStatus.SUCCESS
        assert table_source.tables == sample_tables()
    finally:
        await shutdown_engine_state(state)


# ============================================================================
# Test 2: CHECKSUM SENSITIVITY
# ============================================================================

@pytest.mark.asyncio
async def test_any_flipped_byte_fails_integrity_and_never_imports(engine, test_config, table_source):
    """
    CRITICAL: flipping any single byte of a stored artifact must fail the
    restore with IntegrityCheckFailed before decryption or import.
    """
    run = await trigger_backup(engine, "all_encrypted")
    path = artifact_path(test_config, run)
    pristine = path.read_bytes()

    table_source.tables = {}

    positions = sorted({0, 1, len(pristine) // 3, len(pristine) // 2, len(pristine) - 1})
    for position in positions:
        corrupted = bytearray(pristine)
        corrupted[position] ^= 0xFF
        path.write_bytes(bytes(corrupted))

        restore = await trigger_restore(engine, run.id)

        assert restore.status == RunStatus.FAILED
        assert restore.error == "IntegrityCheckFailed"
        assert restore.tables_restored == []
        assert table_source.tables == {}, "Corrupted data must never reach the importer"

    # The untouched artifact still restores
    path.write_bytes(pristine)
    restore = await trigger_restore(engine, run.id)
    assert restore.status == RunStatus.SUCCESS


# ============================================================================
# Test 3: IDEMPOTENT RESTORE
# ============================================================================

@pytest.mark.asyncio
async def test_restoring_twice_reports_same_rows(engine, table_source):
    run = await trigger_backup(engine, "all_encrypted")

    first = await trigger_restore(engine, run.id)
    second = await trigger_restore(engine, run.id)

    assert first.status == second.status == RunStatus.SUCCESS
    assert first.rows_restored_by_table == second.rows_restored_by_table
    assert first.rows_restored_by_table == {"users": 3, "posts": 2}
    assert table_source.tables == sample_tables()


# ============================================================================
# Test 4: RETENTION
# ============================================================================

@pytest.mark.asyncio
async def test_zero_retention_keeps_only_newest_success(test_config, table_source):
    """
    CRITICAL: with retention_days=0 each sweep deletes superseded runs, but
    the newest successful run always survives.
    """
    policy = create_policy("hourly_users", ["users"], retention_days=0)
    state = await make_engine(test_config, table_source, [policy])
    try:
        runs = []
        for _ in range(3):
            runs.append(await trigger_backup(state, "hourly_users"))

        remaining = await list_backup_runs(state, "hourly_users", RunStatus.SUCCESS)

        assert [r.id for r in remaining] == [runs[-1].id]
        for old in runs[:-1]:
            assert await get_backup_run(state, old.id) is None
            assert not artifact_path(test_config, old).exists()
        assert artifact_path(test_config, runs[-1]).exists()
    finally:
        await shutdown_engine_state(state)


@pytest.mark.asyncio
async def test_single_success_survives_sweep_far_in_future(engine):
    from datetime import datetime, timedelta, UTC

    from dbsnap.backup import sweep_retention
    from dbsnap.core import get_policy

    run = await trigger_backup(engine, "users_full")
    policy = await get_policy(engine, "users_full")

    deleted = await sweep_retention(engine, policy, now=datetime.now(UTC) + timedelta(days=365))

    assert deleted == []
    assert await get_backup_run(engine, run.id) is not None


# ============================================================================
# Test 5: OVERLAP PREVENTION
# ============================================================================

@pytest.mark.asyncio
async def test_overlapping_backup_is_skipped(test_config):
    """
    CRITICAL: a backup requested while another run of the same policy is
    in progress must be skipped, never run concurrently.
    """
    source = GatedTableSource(sample_tables())
    state = await make_engine(test_config, source, [create_policy("slow", ["users"])])
    try:
        first = asyncio.create_task(trigger_backup(state, "slow"))
        await source.entered.wait()

        with pytest.raises(OverlappingRunSkipped):
            await trigger_backup(state, "slow")

        in_progress = await list_backup_runs(state, "slow", RunStatus.IN_PROGRESS)
        assert len(in_progress) == 1

        source.release.set()
        run = await first

        assert run.status == RunStatus.SUCCESS
        assert len(await list_backup_runs(state, "slow")) == 1
    finally:
        await shutdown_engine_state(state)


@pytest.mark.asyncio
async def test_concurrent_run_creation_is_atomic(engine):
    """Racing creators on separate connections produce exactly one run."""

    async def attempt():
        async with aiosqlite.connect(engine["ledger_db_path"]) as db:
            return await create_backup_run(db, "users_full", "full")

    results = await asyncio.gather(*[attempt() for _ in range(8)])

    assert sum(1 for r in results if r is not None) == 1


# ============================================================================
# Test 6: FAIL CLOSED
# ============================================================================

@pytest.mark.asyncio
async def test_encrypt_without_key_fails_and_writes_nothing(test_config, table_source):
    """
    CRITICAL: a policy that requests encryption must never produce an
    unencrypted artifact.
    """
    config = test_config.with_updates(encryption_key=None)
    state = await make_engine(config, table_source, [create_policy("secret", ["users"], encrypt=True)])
    try:
        with pytest.raises(EncryptionKeyMissing) as exc_info:
            await trigger_backup(state, "secret")

        run = await get_backup_run(state, exc_info.value.details["run_id"])
        assert run.status == RunStatus.FAILED
        assert run.error == "EncryptionKeyMissing"
        assert run.checksum is None and run.artifact_ref is None
        assert not config.artifact_root.exists() or not any(config.artifact_root.iterdir())
    finally:
        await shutdown_engine_state(state)


@pytest.mark.asyncio
async def test_cancelled_run_is_finalized_as_cancelled(test_config):
    source = GatedTableSource(sample_tables())
    state = await make_engine(test_config, source, [create_policy("slow", ["users"])])
    try:
        task = asyncio.create_task(trigger_backup(state, "slow"))
        await source.entered.wait()
        run_id = next(iter(state["active_runs"]))

        assert await cancel_run(state, run_id) is True

        with pytest.raises(RunCancelled) as exc_info:
            await task
        assert exc_info.value.details["run_id"] == run_id
        assert not task.cancelled()

        run = await get_backup_run(state, run_id)
        assert run.status == RunStatus.FAILED
        assert run.error == "Cancelled"
        assert run_id not in state["active_runs"]

        # The policy is free to run again
        source.release.set()
        again = await trigger_backup(state, "slow")
        assert again.status == RunStatus.SUCCESS
    finally:
        await shutdown_engine_state(state)


@pytest.mark.asyncio
async def test_cancelling_the_caller_still_finalizes_the_run(test_config):
    source = GatedTableSource(sample_tables())
    state = await make_engine(test_config, source, [create_policy("slow", ["users"])])
    try:
        task = asyncio.create_task(trigger_backup(state, "slow"))
        await source.entered.wait()
        run_id = next(iter(state["active_runs"]))

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        run = await get_backup_run(state, run_id)
        assert run.status == RunStatus.FAILED
        assert run.error == "Cancelled"
    finally:
        await shutdown_engine_state(state)


@pytest.mark.asyncio
async def test_cancelled_restore_returns_failed_run(test_config):
    source = GatedImportSource(sample_tables())
    state = await make_engine(test_config, source, [create_policy("both", ["users", "posts"])])
    try:
        run = await trigger_backup(state, "both")

        task = asyncio.create_task(trigger_restore(state, run.id))
        await source.entered.wait()
        restore_id = next(iter(state["active_runs"]))

        assert await cancel_run(state, restore_id) is True

        restore = await task
        assert not task.cancelled()
        assert restore.id == restore_id
        assert restore.status == RunStatus.FAILED
        assert restore.error == "Cancelled"
        assert restore.tables_restored == []
        assert await get_restore_run(state, restore_id) == restore
        assert restore_id not in state["active_runs"]
    finally:
        await shutdown_engine_state(state)


@pytest.mark.asyncio
async def test_run_past_deadline_is_finalized_as_timeout(test_config):
    source = GatedTableSource(sample_tables())
    config = test_config.with_updates(run_timeout_seconds=0.2)
    state = await make_engine(config, source, [create_policy("slow", ["users"])])
    try:
        with pytest.raises(RunTimeout) as exc_info:
            await trigger_backup(state, "slow")

        run = await get_backup_run(state, exc_info.value.details["run_id"])
        assert run.status == RunStatus.FAILED
        assert run.error == "Timeout"
        assert await list_backup_runs(state, "slow", RunStatus.IN_PROGRESS) == []
    finally:
        await shutdown_engine_state(state)


@pytest.mark.asyncio
async def test_restore_never_uses_current_policy_flags(engine, table_source):
    """Codec flags recorded on the run win over later policy edits."""
    from dbsnap.core import update_policy

    run = await trigger_backup(engine, "all_encrypted")
    await update_policy(engine, "all_encrypted", encrypt=False, compress=False)

    table_source.tables = {}
    restore = await trigger_restore(engine, run.id)

    assert restore.status == RunStatus.SUCCESS
    assert table_source.tables == sample_tables()
