# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
dbsnap Backup Manager - Executes backup runs end to end.

Pipeline for one run:

    export -> serialize -> compress -> encrypt -> checksum -> store
           -> record result -> retention sweep

The run record is persisted in progress before any export, and is always
finalized (success or failed) before this module returns or raises. The
retention sweep runs only after a successful finalize and never fails the
run that triggered it.
"""

import asyncio
import base64
import json
from datetime import date, datetime, time, timedelta, UTC
from decimal import Decimal
from typing import Any, Dict, List, Sequence, Tuple
from uuid import UUID

import aiosqlite
import structlog

from dbsnap.backup.runtime import caller_cancelled, error_kind, error_message, with_retries
from dbsnap.config import BackupKind, BackupPolicy, RunStatus
from dbsnap.core import EngineState
from dbsnap.env import resolve_encryption_key
from dbsnap.exceptions import (
    BackupError,
    DBSnapError,
    IntegrityError,
    LedgerError,
    OverlappingRunSkipped,
    PolicyNotFound,
    RunCancelled,
    RunTimeout,
)
from dbsnap.registry import get_policy
from dbsnap.storage import artifact_name
from dbsnap.vault.compressor import compression_ratio, get_compression_stats
from dbsnap.vault.ledger import (
    BackupRun,
    complete_backup_run,
    create_backup_run,
    delete_backup_run,
    expire_stale_runs,
    fail_backup_run,
    get_latest_successful_run,
    list_backup_runs,
)

logger = structlog.get_logger()

SNAPSHOT_FORMAT_VERSION = 2

# Version 1 snapshots carry untagged values and are still readable
_READABLE_FORMAT_VERSIONS = (1, 2)

_TYPE_TAG = "$type"


# ============================================================================
# Serialization
# ============================================================================

def _encode_value(value: Any) -> Any:
    """
    Make a row value JSON-safe without losing its type.

    Values JSON cannot carry become ``{"$type": name, "v": text}`` tags.
    A dict that already has a ``"$type"`` key is wrapped in an ``object``
    tag so decoding never mistakes it for one.
    """
    if value is None or isinstance(value, (str, bool, int, float)):
        return value
    if isinstance(value, dict):
        encoded = {key: _encode_value(item) for key, item in value.items()}
        if _TYPE_TAG in value:
            return {_TYPE_TAG: "object", "v": encoded}
        return encoded
    if isinstance(value, (list, tuple)):
        return [_encode_value(item) for item in value]
    if isinstance(value, (set, frozenset)):
        return [_encode_value(item) for item in sorted(value, key=str)]
    if isinstance(value, datetime):
        return {_TYPE_TAG: "datetime", "v": value.isoformat()}
    if isinstance(value, date):
        return {_TYPE_TAG: "date", "v": value.isoformat()}
    if isinstance(value, time):
        return {_TYPE_TAG: "time", "v": value.isoformat()}
    if isinstance(value, timedelta):
        return {_TYPE_TAG: "timedelta", "v": [value.days, value.seconds, value.microseconds]}
    if isinstance(value, Decimal):
        return {_TYPE_TAG: "decimal", "v": str(value)}
    if isinstance(value, UUID):
        return {_TYPE_TAG: "uuid", "v": str(value)}
    if isinstance(value, (bytes, bytearray, memoryview)):
        return {_TYPE_TAG: "bytes", "v": base64.b64encode(bytes(value)).decode("ascii")}
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


_DECODERS = {
    "datetime": datetime.fromisoformat,
    "date": date.fromisoformat,
    "time": time.fromisoformat,
    "timedelta": lambda v: timedelta(days=v[0], seconds=v[1], microseconds=v[2]),
    "decimal": Decimal,
    "uuid": UUID,
    "bytes": lambda v: base64.b64decode(v.encode("ascii"), validate=True),
}


def _decode_value(value: Any) -> Any:
    if isinstance(value, list):
        return [_decode_value(item) for item in value]
    if not isinstance(value, dict):
        return value
    if _TYPE_TAG not in value:
        return {key: _decode_value(item) for key, item in value.items()}

    tag = value[_TYPE_TAG]
    if tag == "object" and isinstance(value.get("v"), dict):
        return {key: _decode_value(item) for key, item in value["v"].items()}

    decoder = _DECODERS.get(tag)
    if decoder is None or "v" not in value:
        raise IntegrityError(
            f"Unknown value tag in snapshot: {tag!r}",
            details={"tag": tag},
        )
    try:
        return decoder(value["v"])
    except (ValueError, TypeError, ArithmeticError, IndexError, AttributeError) as e:
        raise IntegrityError(
            f"Malformed {tag} value in snapshot: {e}",
            details={"tag": tag},
        ) from e


def serialize_snapshot(
    table_order: Sequence[str],
    tables: Dict[str, List[Dict[str, Any]]],
) -> bytes:
    """
    Serialize exported tables deterministically.

    Keys are sorted and separators are fixed, so identical data always
    produces identical bytes (and identical checksums).
    """
    document = {
        "format_version": SNAPSHOT_FORMAT_VERSION,
        "table_order": list(table_order),
        "tables": {
            table: [_encode_value(row) for row in tables[table]]
            for table in table_order
        },
    }
    return json.dumps(
        document,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")


def deserialize_snapshot(payload: bytes) -> Tuple[List[str], Dict[str, List[Dict[str, Any]]]]:
    """
    Parse a snapshot produced by serialize_snapshot.

    Tagged values come back as the Python types they were exported as.

    Returns:
        Tuple of (table_order, rows by table)

    Raises:
        IntegrityError: If the payload is not a snapshot document
    """
    try:
        document = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        raise IntegrityError(
            f"Artifact payload is not a valid snapshot: {e}",
            details={"size": len(payload)},
        ) from e

    if (
        not isinstance(document, dict)
        or document.get("format_version") not in _READABLE_FORMAT_VERSIONS
        or not isinstance(document.get("tables"), dict)
        or not all(isinstance(rows, list) for rows in document["tables"].values())
    ):
        raise IntegrityError(
            "Artifact payload has an unsupported snapshot format",
            details={"format_version": document.get("format_version") if isinstance(document, dict) else None},
        )

    tables = document["tables"]
    if document["format_version"] >= 2:
        tables = {
            table: [_decode_value(row) for row in rows]
            for table, rows in tables.items()
        }

    table_order = [t for t in document.get("table_order", []) if t in tables]
    for table in tables:
        if table not in table_order:
            table_order.append(table)

    return table_order, tables


# ============================================================================
# Backup runs
# ============================================================================

async def run_backup(
    state: EngineState,
    policy_id: str,
    *,
    allow_disabled: bool = False,
) -> BackupRun:
    """
    Execute one backup run for a policy.

    Args:
        state: Engine state
        policy_id: Policy to run
        allow_disabled: Run even if the policy is disabled (on-demand override)

    Returns:
        The finalized, successful run

    Raises:
        PolicyNotFound: If the policy is unknown, or disabled without override
        OverlappingRunSkipped: If the policy already has a run in progress
        RunCancelled: If the run was cancelled through cancel_run
        RunTimeout: If the run exceeded run_timeout_seconds
        DBSnapError: Any step failure, after the run was finalized as failed.
            ``details["run_id"]`` names the failed run.
    """
    config = state["config"]

    async with aiosqlite.connect(state["registry_db_path"]) as reg_db:
        policy = await get_policy(reg_db, policy_id)

    if policy is None:
        raise PolicyNotFound(
            f"Backup policy not found: {policy_id}",
            details={"policy_id": policy_id},
        )
    if not policy.enabled and not allow_disabled:
        raise PolicyNotFound(
            f"Backup policy is disabled: {policy_id}",
            details={"policy_id": policy_id, "enabled": False},
        )

    async with aiosqlite.connect(state["ledger_db_path"]) as ledger_db:
        # Crash recovery: a run older than the deadline cannot still be alive
        await expire_stale_runs(
            ledger_db,
            datetime.now(UTC) - timedelta(seconds=config.run_timeout_seconds),
        )
        run = await create_backup_run(
            ledger_db,
            policy.id,
            policy.kind.value,
            metadata={
                "compressed": policy.compress,
                "encrypted": policy.encrypt,
                "table_row_counts": {},
            },
        )

    if run is None:
        logger.info("skipped_overlapping_run", policy_id=policy.id)
        raise OverlappingRunSkipped(
            f"A backup of {policy.id} is already in progress",
            details={"policy_id": policy.id},
        )

    task = asyncio.create_task(_execute_backup(state, policy, run), name=f"backup-run:{run.id}")
    state["active_runs"][run.id] = task
    try:
        completed = await task
    except RunCancelled:
        if caller_cancelled():
            raise asyncio.CancelledError() from None
        raise
    if caller_cancelled():
        raise asyncio.CancelledError()
    return completed


async def _execute_backup(state: EngineState, policy: BackupPolicy, run: BackupRun) -> BackupRun:
    config = state["config"]
    metadata = dict(run.metadata)
    deadline = asyncio.timeout(config.run_timeout_seconds)

    logger.info(
        "backup_run_started",
        run_id=run.id,
        policy_id=policy.id,
        kind=policy.kind.value,
        tables=list(policy.tables),
    )

    try:
        async with deadline:
            completed = await _backup_pipeline(state, policy, run, metadata)
    except asyncio.CancelledError as e:
        await _record_failure(state, run, RunCancelled.kind, "Backup run was cancelled", metadata)
        logger.warning("backup_run_cancelled", run_id=run.id, policy_id=policy.id)
        raise RunCancelled(
            "Backup run was cancelled",
            details={"run_id": run.id, "policy_id": policy.id},
        ) from e
    except Exception as e:
        if isinstance(e, TimeoutError) and deadline.expired():
            message = f"Backup run exceeded {config.run_timeout_seconds}s deadline"
            await _record_failure(state, run, RunTimeout.kind, message, metadata)
            logger.error("backup_run_timed_out", run_id=run.id, policy_id=policy.id)
            raise RunTimeout(message, details={"run_id": run.id, "policy_id": policy.id}) from e

        kind = error_kind(e)
        await _record_failure(state, run, kind, error_message(e), metadata)
        logger.error(
            "backup_run_failed",
            run_id=run.id,
            policy_id=policy.id,
            error=kind,
            message=error_message(e),
        )
        if isinstance(e, DBSnapError):
            e.details.setdefault("run_id", run.id)
            e.details.setdefault("policy_id", policy.id)
            raise
        raise BackupError(
            f"Backup run failed: {e}",
            details={"run_id": run.id, "policy_id": policy.id, "error": kind},
        ) from e
    finally:
        state["active_runs"].pop(run.id, None)

    try:
        await sweep_retention(state, policy)
    except Exception as e:
        logger.error("retention_sweep_failed", policy_id=policy.id, error=str(e))

    return completed


async def _backup_pipeline(
    state: EngineState,
    policy: BackupPolicy,
    run: BackupRun,
    metadata: Dict[str, Any],
) -> BackupRun:
    config = state["config"]
    codec = state["codec"]
    source = state["table_source"]
    store = state["store"]

    # Never degrade to an unencrypted artifact
    key = resolve_encryption_key(config, policy.id) if policy.encrypt else None

    scope, reference = await _resolve_export_scope(state, policy)
    since = reference.start_time if reference else None
    metadata["export_scope"] = scope
    metadata["degraded_to_full"] = policy.kind != BackupKind.FULL and reference is None
    if reference is not None:
        metadata["reference_run_id"] = reference.id
        metadata["since"] = since.isoformat()
    if metadata["degraded_to_full"]:
        logger.info(
            "backup_degraded_to_full",
            run_id=run.id,
            policy_id=policy.id,
            kind=policy.kind.value,
        )

    # Step 3: export every table, all or nothing
    snapshot: Dict[str, List[Dict[str, Any]]] = {}
    row_counts: Dict[str, int] = {}
    for table in policy.tables:
        rows = await with_retries(
            lambda table=table: source.export_rows(table, since),
            attempts=config.max_retries,
            backoff_seconds=config.retry_backoff_seconds,
            step="export",
            run_id=run.id,
            table=table,
        )
        snapshot[table] = rows
        row_counts[table] = len(rows)
        metadata["table_row_counts"] = dict(row_counts)
        logger.debug("backup_table_exported", run_id=run.id, table=table, rows=len(rows))

    # Steps 4-7: serialize, compress, encrypt, checksum what is stored
    payload = serialize_snapshot(policy.tables, snapshot)
    metadata["raw_bytes"] = len(payload)

    if policy.compress:
        compressed = await codec.compress(payload)
        metadata["compression_ratio"] = round(compression_ratio(len(payload), len(compressed)), 4)
        metadata["compression"] = get_compression_stats(len(payload), len(compressed))
        payload = compressed

    if key is not None:
        payload = await codec.encrypt(payload, key)

    digest = codec.checksum(payload)

    # Step 8: store
    name = artifact_name(policy.id, run.id)
    ref = await with_retries(
        lambda: store.put(name, payload),
        attempts=config.max_retries,
        backoff_seconds=config.retry_backoff_seconds,
        step="store",
        run_id=run.id,
    )

    # Step 9: finalize
    async with aiosqlite.connect(state["ledger_db_path"]) as ledger_db:
        completed = await complete_backup_run(
            ledger_db,
            run.id,
            size_bytes=len(payload),
            artifact_ref=ref,
            checksum=digest,
            metadata=metadata,
        )

    if completed is None:
        # Force-failed while we were running; the artifact belongs to no run
        await store.delete(ref)
        raise LedgerError(
            "Backup run was finalized by another worker before it completed",
            details={"run_id": run.id},
        )

    logger.info(
        "backup_run_completed",
        run_id=run.id,
        policy_id=policy.id,
        size_bytes=completed.size_bytes,
        table_row_counts=row_counts,
        compression_ratio=metadata.get("compression_ratio"),
    )
    return completed


async def _resolve_export_scope(
    state: EngineState,
    policy: BackupPolicy,
) -> Tuple[str, BackupRun | None]:
    """
    Pick the export scope and the reference run it is relative to.

    Incremental runs are relative to the last successful run of any kind,
    differential runs to the last successful full export. Without a
    reference run both export everything.
    """
    if policy.kind == BackupKind.FULL:
        return BackupKind.FULL.value, None

    async with aiosqlite.connect(state["ledger_db_path"]) as ledger_db:
        reference = await get_latest_successful_run(
            ledger_db,
            policy.id,
            full_only=policy.kind == BackupKind.DIFFERENTIAL,
        )

    if reference is None:
        return BackupKind.FULL.value, None
    return policy.kind.value, reference


async def _record_failure(
    state: EngineState,
    run: BackupRun,
    kind: str,
    message: str,
    metadata: Dict[str, Any],
) -> None:
    try:
        async with aiosqlite.connect(state["ledger_db_path"]) as ledger_db:
            await fail_backup_run(ledger_db, run.id, kind, message, metadata)
    except Exception as e:
        logger.error("backup_run_finalize_failed", run_id=run.id, error=str(e))


# ============================================================================
# Retention
# ============================================================================

async def sweep_retention(
    state: EngineState,
    policy: BackupPolicy,
    now: datetime | None = None,
) -> List[str]:
    """
    Delete aged, superseded successful runs of a policy and their artifacts.

    A run is deleted only if it started more than ``retention_days`` ago and
    a newer successful run exists, so the newest successful run is never a
    target. Failures are logged per run and the sweep moves on; a run whose
    artifact could not be deleted is kept for the next sweep.

    Returns:
        IDs of the deleted runs
    """
    now = now or datetime.now(UTC)
    max_age = timedelta(days=policy.retention_days)
    store = state["store"]
    deleted: List[str] = []

    async with aiosqlite.connect(state["ledger_db_path"]) as ledger_db:
        successes = await list_backup_runs(ledger_db, policy.id, RunStatus.SUCCESS)

        # Newest first: index 0 is the surviving recovery point
        for run in successes[1:]:
            if now - run.start_time <= max_age:
                continue

            try:
                if run.artifact_ref:
                    await store.delete(run.artifact_ref)
                await delete_backup_run(ledger_db, run.id)
            except Exception as e:
                logger.warning(
                    "retention_delete_failed",
                    run_id=run.id,
                    policy_id=policy.id,
                    error=str(e),
                )
                continue

            deleted.append(run.id)
            logger.info(
                "retention_run_deleted",
                run_id=run.id,
                policy_id=policy.id,
                age_days=(now - run.start_time).days,
            )

    if deleted:
        logger.info("retention_sweep_complete", policy_id=policy.id, deleted=len(deleted))
    return deleted
