# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Backup Engine - Backup runs, retention and restore operations.
"""

from dbsnap.backup.manager import (
    run_backup,
    sweep_retention,
    serialize_snapshot,
    deserialize_snapshot,
)

from dbsnap.backup.restore import (
    run_restore,
    verify_integrity,
    select_tables,
)

__all__ = [
    # Manager
    "run_backup",
    "sweep_retention",
    "serialize_snapshot",
    "deserialize_snapshot",
    # Restore
    "run_restore",
    "verify_integrity",
    "select_tables",
]
