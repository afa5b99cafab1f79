# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
dbsnap - Backup and recovery engine for relational tables.

Periodically snapshots configured tables, verifies every snapshot with a
checksum, optionally compresses and encrypts it, retains snapshots by
policy, and restores tables from a snapshot on demand. Package name: dbsnap.
"""

__version__ = "0.1.0"

# Configuration
from dbsnap.config import BackupKind, BackupPolicy, EngineConfig, RunStatus, StorageBackend

# Policy creation (user-facing API)
from dbsnap.builder import create_policy, default_policies

# Core functions
from dbsnap.core import (
    EngineState,
    EngineStatistics,
    initialize_engine_state,
    shutdown_engine_state,
    list_policies,
    get_policy,
    upsert_policy,
    update_policy,
    set_policy_enabled,
    trigger_backup,
    get_backup_run,
    list_backup_runs,
    delete_backup_run,
    cancel_run,
    trigger_restore,
    get_restore_run,
    list_restore_runs,
    verify_integrity,
    get_statistics,
)

# Environment-based configuration and profiles
from dbsnap.env import create_config_from_env, hardened, fast_local

__all__ = [
    # Version
    "__version__",
    # Configuration
    "BackupKind",
    "BackupPolicy",
    "EngineConfig",
    "RunStatus",
    "StorageBackend",
    "create_policy",
    "default_policies",
    "create_config_from_env",
    "hardened",
    "fast_local",
    # Engine
    "EngineState",
    "EngineStatistics",
    "initialize_engine_state",
    "shutdown_engine_state",
    # Policies
    "list_policies",
    "get_policy",
    "upsert_policy",
    "update_policy",
    "set_policy_enabled",
    # Runs
    "trigger_backup",
    "get_backup_run",
    "list_backup_runs",
    "delete_backup_run",
    "cancel_run",
    "trigger_restore",
    "get_restore_run",
    "list_restore_runs",
    "verify_integrity",
    "get_statistics",
]
