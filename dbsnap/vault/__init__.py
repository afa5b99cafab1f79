# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Vault - Run ledger and the integrity codec applied to every artifact.
"""

from dbsnap.vault.ledger import (
    init_ledger_db,
    create_backup_run,
    complete_backup_run,
    fail_backup_run,
    get_backup_run,
    list_backup_runs,
    get_latest_successful_run,
    delete_backup_run,
    expire_stale_runs,
    create_restore_run,
    finalize_restore_run,
    get_restore_run,
    list_restore_runs,
    get_ledger_stats,
    BackupRun,
    RestoreRun,
)

from dbsnap.vault.codec import IntegrityCodec, checksum

from dbsnap.vault.compressor import (
    compress_payload,
    decompress_payload,
    compression_ratio,
    get_compression_stats,
)

from dbsnap.vault.cipher import (
    encrypt_payload,
    decrypt_payload,
    generate_key,
)

__all__ = [
    # Ledger functions
    "init_ledger_db",
    "create_backup_run",
    "complete_backup_run",
    "fail_backup_run",
    "get_backup_run",
    "list_backup_runs",
    "get_latest_successful_run",
    "delete_backup_run",
    "expire_stale_runs",
    "create_restore_run",
    "finalize_restore_run",
    "get_restore_run",
    "list_restore_runs",
    "get_ledger_stats",
    # Types
    "BackupRun",
    "RestoreRun",
    # Codec
    "IntegrityCodec",
    "checksum",
    "compress_payload",
    "decompress_payload",
    "compression_ratio",
    "get_compression_stats",
    "encrypt_payload",
    "decrypt_payload",
    "generate_key",
]
