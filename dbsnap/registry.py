# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
dbsnap Policy Registry - SQLite-based store of backup policies.

The registry exclusively owns BackupPolicy records. Policies are never
deleted, only disabled: historical runs reference policies by id and the
retention sweep needs the policy to exist to reason about them.

Every upsert bumps the policy's revision counter.
"""

import json
from datetime import datetime, UTC
from pathlib import Path
from typing import Iterable, List

import aiosqlite
import structlog

from dbsnap.config import BackupPolicy
from dbsnap.exceptions import PolicyNotFound, RegistryError

logger = structlog.get_logger()

_POLICY_COLUMNS = """
    id, name, tables, kind, schedule, retention_days, compress, encrypt,
    enabled, revision
"""


def _row_to_policy(row) -> BackupPolicy:
    return BackupPolicy(
        id=row[0],
        name=row[1],
        tables=tuple(json.loads(row[2])),
        kind=row[3],
        schedule=row[4],
        retention_days=row[5],
        compress=bool(row[6]),
        encrypt=bool(row[7]),
        enabled=bool(row[8]),
        revision=row[9],
    )


async def init_registry_db(db_path: Path) -> None:
    """
    Initialize the registry database schema.

    Creates the policies table if it doesn't exist. This is idempotent
    and safe to call multiple times.

    Args:
        db_path: Path to the SQLite database file
    """
    try:
        async with aiosqlite.connect(db_path) as db:
            await db.execute("""
                CREATE TABLE IF NOT EXISTS policies (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    tables TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    schedule TEXT NOT NULL,
                    retention_days INTEGER NOT NULL CHECK (retention_days >= 0),
                    compress INTEGER NOT NULL,
                    encrypt INTEGER NOT NULL,
                    enabled INTEGER NOT NULL,
                    revision INTEGER NOT NULL DEFAULT 1,
                    updated_at TEXT NOT NULL
                )
            """)
            await db.commit()
    except Exception as e:
        raise RegistryError(
            f"Failed to initialize registry database: {e}",
            details={"db_path": str(db_path)},
        )


async def get_policy(db: aiosqlite.Connection, policy_id: str) -> BackupPolicy | None:
    """
    Get a policy by id.

    Returns:
        The policy, or None if it is not registered
    """
    async with db.execute(
        f"SELECT {_POLICY_COLUMNS} FROM policies WHERE id = ?", (policy_id,)
    ) as cursor:
        row = await cursor.fetchone()
        return _row_to_policy(row) if row else None


async def require_policy(db: aiosqlite.Connection, policy_id: str) -> BackupPolicy:
    """
    Get a policy by id, failing if it is not registered.

    Raises:
        PolicyNotFound: If the id is unknown
    """
    policy = await get_policy(db, policy_id)
    if policy is None:
        raise PolicyNotFound(
            f"Backup policy not found: {policy_id}",
            details={"policy_id": policy_id},
        )
    return policy


async def list_policies(
    db: aiosqlite.Connection,
    enabled_only: bool = False,
) -> List[BackupPolicy]:
    """
    List registered policies ordered by id.

    Args:
        db: SQLite database connection
        enabled_only: Skip disabled policies
    """
    query = f"SELECT {_POLICY_COLUMNS} FROM policies"
    if enabled_only:
        query += " WHERE enabled = 1"
    query += " ORDER BY id"

    async with db.execute(query) as cursor:
        rows = await cursor.fetchall()
        return [_row_to_policy(row) for row in rows]


async def upsert_policy(db: aiosqlite.Connection, policy: BackupPolicy) -> BackupPolicy:
    """
    Insert or replace a policy.

    The policy is validated on construction, so an invalid policy never
    reaches this function. The stored revision is incremented.

    Returns:
        The stored policy with its new revision
    """
    now = datetime.now(UTC).isoformat()

    await db.execute(
        """
        INSERT INTO policies (
            id, name, tables, kind, schedule, retention_days, compress,
            encrypt, enabled, revision, updated_at
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 1, ?)
        ON CONFLICT(id) DO UPDATE SET
            name = excluded.name,
            tables = excluded.tables,
            kind = excluded.kind,
            schedule = excluded.schedule,
            retention_days = excluded.retention_days,
            compress = excluded.compress,
            encrypt = excluded.encrypt,
            enabled = excluded.enabled,
            revision = policies.revision + 1,
            updated_at = excluded.updated_at
        """,
        (
            policy.id,
            policy.name,
            json.dumps(list(policy.tables)),
            policy.kind.value,
            policy.schedule,
            policy.retention_days,
            int(policy.compress),
            int(policy.encrypt),
            int(policy.enabled),
            now,
        ),
    )
    await db.commit()

    stored = await require_policy(db, policy.id)
    logger.info("policy_upserted", policy_id=policy.id, revision=stored.revision)
    return stored


async def update_policy(
    db: aiosqlite.Connection,
    policy_id: str,
    **changes,
) -> BackupPolicy:
    """
    Apply a partial update to a registered policy.

    Raises:
        PolicyNotFound: If the id is unknown
        InvalidPolicy: If the updated policy violates its invariants
    """
    current = await require_policy(db, policy_id)
    return await upsert_policy(db, current.with_updates(**changes))


async def set_policy_enabled(
    db: aiosqlite.Connection,
    policy_id: str,
    enabled: bool,
) -> BackupPolicy:
    """Enable or disable a policy."""
    return await update_policy(db, policy_id, enabled=enabled)


async def seed_policies(
    db: aiosqlite.Connection,
    policies: Iterable[BackupPolicy],
) -> List[str]:
    """
    Register policies that are not yet in the registry.

    Existing policies are left untouched so administrative edits survive
    restarts.

    Returns:
        IDs of the policies that were inserted
    """
    inserted: List[str] = []
    for policy in policies:
        if await get_policy(db, policy.id) is None:
            await upsert_policy(db, policy)
            inserted.append(policy.id)

    if inserted:
        logger.info("policies_seeded", policy_ids=inserted)
    return inserted
