# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Example dbsnap engine with an in-memory table source.

This example demonstrates how to configure policies with the functional
builder, take an encrypted backup, lose a table, and restore it.

Run with:
    python examples/basic_engine.py

Environment variables:
    DBSNAP_DATA_PATH: Directory for registry.db, ledger.db and artifacts
    DBSNAP_ENCRYPTION_KEY: base64 or hex AES key (a random key is used if unset)
    DATABASE_URL: PostgreSQL connection URL (uses PostgresTableSource if set)
"""

import asyncio
import json
import os

from dbsnap import (
    get_statistics,
    initialize_engine_state,
    list_backup_runs,
    shutdown_engine_state,
    trigger_backup,
    trigger_restore,
)
from dbsnap.builder import (
    backup_tables,
    build_policy,
    create_empty_policy,
    encrypted,
    incremental,
    retain_for_days,
    run_on,
)
from dbsnap.env import create_config_from_env, fast_local
from dbsnap.tables.memory import MemoryTableSource
from dbsnap.vault import generate_key


def create_policies():
    """
    Two policies over the same tables.

    This uses the functional builder pattern for clean, composable configuration.
    """
    nightly = create_empty_policy("nightly", "Nightly Encrypted Backup")
    nightly = backup_tables(nightly, ["users", "orders"])
    nightly = run_on(nightly, "0 2 * * *")
    nightly = retain_for_days(nightly, 14)
    nightly = encrypted(nightly)

    hourly = create_empty_policy("hourly_orders", "Hourly Order Changes")
    hourly = backup_tables(hourly, ["orders"])
    hourly = incremental(hourly)
    hourly = run_on(hourly, "hourly")
    hourly = retain_for_days(hourly, 2)

    return [build_policy(nightly), build_policy(hourly)]


def create_table_source():
    database_url = os.getenv("DATABASE_URL")
    if database_url:
        from dbsnap.tables.postgres import PostgresTableSource

        return PostgresTableSource(database_url)

    return MemoryTableSource(
        {
            "users": [
                {"id": 1, "email": "ada@example.com", "updated_at": "2026-01-01T00:00:00+00:00"},
                {"id": 2, "email": "grace@example.com", "updated_at": "2026-01-02T00:00:00+00:00"},
            ],
            "orders": [
                {"id": 100, "user_id": 1, "total": "19.99", "updated_at": "2026-01-05T00:00:00+00:00"},
            ],
        }
    )


async def main():
    config = fast_local(create_config_from_env())
    if config.encryption_key is None:
        # Development only: artifacts sealed with this key die with the process
        config = config.with_updates(encryption_key=generate_key())

    source = create_table_source()
    state = await initialize_engine_state(config, source, policies=create_policies())

    try:
        run = await trigger_backup(state, "nightly")
        print(f"Backup {run.id}: {run.status.value}, {run.size_bytes} bytes, rows {run.table_row_counts}")

        if isinstance(source, MemoryTableSource):
            source.tables.pop("orders")
            print("Dropped 'orders'")

        restore = await trigger_restore(state, run.id, tables=["orders"])
        print(f"Restore {restore.id}: {restore.status.value}, rows {restore.rows_restored_by_table}")

        for backup in await list_backup_runs(state, limit=5):
            print(f"  {backup.start_time:%Y-%m-%d %H:%M:%S} {backup.policy_id:<15} {backup.status.value}")

        stats = await get_statistics(state)
        print(json.dumps(stats.to_dict(), indent=2))
    finally:
        await shutdown_engine_state(state)
        if hasattr(source, "close"):
            await source.close()


if __name__ == "__main__":
    asyncio.run(main())
