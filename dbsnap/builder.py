# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
dbsnap Builder - Functional builder pattern for backup policies.

This module provides pure functions for building BackupPolicy objects.
Each function takes a policy dict and returns a new dict with the
modification applied (immutable updates).
"""

from typing import Any, Callable, Dict, Iterable, List

from dbsnap.config import BackupKind, BackupPolicy


# Type alias for builder functions
PolicyDict = Dict[str, Any]
BuilderFunc = Callable[[PolicyDict], PolicyDict]


def create_empty_policy(policy_id: str = "", name: str = "") -> PolicyDict:
    """
    Create an initial policy dictionary.

    Returns:
        Dict with default values for all policy fields
    """
    return {
        "id": policy_id,
        "name": name or policy_id,
        "tables": [],
        "kind": BackupKind.FULL,
        "schedule": "daily",
        "retention_days": 7,
        "compress": True,
        "encrypt": False,
        "enabled": True,
    }


def backup_tables(policy: PolicyDict, tables: Iterable[str]) -> PolicyDict:
    """
    Add tables to the policy, keeping their order.

    Args:
        policy: Current policy dictionary
        tables: Table names to export

    Returns:
        New policy dictionary with the tables appended
    """
    new_tables: List[str] = list(policy["tables"])
    for table in tables:
        if table not in new_tables:
            new_tables.append(table)
    return {**policy, "tables": new_tables}


def full(policy: PolicyDict) -> PolicyDict:
    """Export every row on each run (the default)."""
    return {**policy, "kind": BackupKind.FULL}


def incremental(policy: PolicyDict) -> PolicyDict:
    """Export rows changed since the last successful run of any kind."""
    return {**policy, "kind": BackupKind.INCREMENTAL}


def differential(policy: PolicyDict) -> PolicyDict:
    """Export rows changed since the last full run."""
    return {**policy, "kind": BackupKind.DIFFERENTIAL}


def run_on(policy: PolicyDict, schedule: str) -> PolicyDict:
    """
    Set the cadence expression.

    Args:
        policy: Current policy dictionary
        schedule: "hourly", "daily", "weekly", "every <n> <unit>" or a cron expression

    Returns:
        New policy dictionary with schedule set
    """
    return {**policy, "schedule": schedule}


def retain_for_days(policy: PolicyDict, days: int) -> PolicyDict:
    """
    Set how long superseded successful runs are kept.

    A value of 0 deletes a run as soon as a newer successful run exists.
    """
    if days < 0:
        raise ValueError(f"retention days must be >= 0, got {days}")
    return {**policy, "retention_days": days}


def compressed(policy: PolicyDict, enabled: bool = True) -> PolicyDict:
    return {**policy, "compress": enabled}


def encrypted(policy: PolicyDict, enabled: bool = True) -> PolicyDict:
    return {**policy, "encrypt": enabled}


def disabled(policy: PolicyDict) -> PolicyDict:
    """Keep the policy registered but skip it in the scheduler."""
    return {**policy, "enabled": False}


def build_policy(policy: PolicyDict) -> BackupPolicy:
    """
    Build and validate a BackupPolicy from a policy dictionary.

    Raises:
        InvalidPolicy: If the policy violates its invariants
    """
    return BackupPolicy(**{**policy, "tables": tuple(policy["tables"])})


def compose(*builders: BuilderFunc) -> BuilderFunc:
    """
    Compose builder functions left to right.

    Example:
        make = compose(incremental, lambda p: run_on(p, "hourly"))
        policy = build_policy(make(backup_tables(create_empty_policy("p"), ["users"])))
    """

    def composed(policy: PolicyDict) -> PolicyDict:
        for builder in builders:
            policy = builder(policy)
        return policy

    return composed


def create_policy(
    policy_id: str,
    tables: Iterable[str],
    *,
    name: str | None = None,
    kind: BackupKind | str = BackupKind.FULL,
    schedule: str = "daily",
    retention_days: int = 7,
    compress: bool = True,
    encrypt: bool = False,
    enabled: bool = True,
) -> BackupPolicy:
    """
    Create a validated BackupPolicy in one call.

    Example:
        policy = create_policy("nightly", ["users", "orders"], retention_days=14)
    """
    policy = create_empty_policy(policy_id, name or policy_id)
    policy = backup_tables(policy, tables)
    policy = {
        **policy,
        "kind": BackupKind(kind),
        "schedule": schedule,
        "retention_days": retention_days,
        "compress": compress,
        "encrypt": encrypt,
        "enabled": enabled,
    }
    return build_policy(policy)


def default_policies() -> List[BackupPolicy]:
    """
    Static policies seeded into an empty registry at first start.
    """
    return [
        create_policy(
            "daily_full",
            ["users", "forums", "questions", "answers", "ai_providers", "ai_personas"],
            name="Daily Full Backup",
            kind=BackupKind.FULL,
            schedule="0 2 * * *",
            retention_days=14,
            encrypt=True,
        ),
        create_policy(
            "hourly_incremental",
            ["questions", "answers", "usage_logs"],
            name="Hourly Incremental Backup",
            kind=BackupKind.INCREMENTAL,
            schedule="0 * * * *",
            retention_days=7,
        ),
        create_policy(
            "weekly_differential",
            ["users", "forums", "questions", "answers"],
            name="Weekly Differential Backup",
            kind=BackupKind.DIFFERENTIAL,
            schedule="0 3 * * 0",
            retention_days=30,
            encrypt=True,
        ),
    ]
