# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Test fixtures for dbsnap tests.

Provides temporary engine state, in-memory table sources, and table
sources that block, fail, or misbehave on demand.
"""

import asyncio
import tempfile
from datetime import date, datetime, time, timedelta, UTC
from decimal import Decimal
from pathlib import Path
from typing import Generator
from unittest.mock import AsyncMock, MagicMock
from uuid import UUID

import pytest
import pytest_asyncio

from dbsnap.exceptions import TableExportError, TableImportError
from dbsnap.tables.memory import MemoryTableSource

TEST_KEY = bytes(range(32))


def sample_tables() -> dict:
    """Small dataset with JSON-native values only."""
    return {
        "users": [
            {"id": 1, "name": "ada", "active": True, "updated_at": "2026-01-01T00:00:00+00:00"},
            {"id": 2, "name": "grace", "active": False, "updated_at": "2026-01-02T00:00:00+00:00"},
            {"id": 3, "name": "linus", "active": True, "updated_at": "2026-01-03T00:00:00+00:00"},
        ],
        "posts": [
            {"id": 10, "user_id": 1, "title": "hello", "tags": ["a", "b"], "updated_at": "2026-01-01T00:00:00+00:00"},
            {"id": 11, "user_id": 2, "title": "world", "tags": [], "updated_at": "2026-01-04T00:00:00+00:00"},
        ],
    }


def typed_rows() -> list:
    """Rows holding values JSON has no native type for."""
    return [
        {
            "id": 1,
            "blob": b"\x00\x01\xff",
            "price": Decimal("19.990"),
            "ref": UUID("12345678-1234-5678-1234-567812345678"),
            "born": date(1815, 12, 10),
            "opens_at": time(9, 30),
            "ttl": timedelta(days=2, seconds=5, microseconds=7),
            "updated_at": datetime(2026, 1, 1, tzinfo=UTC),
            "doc": {"$type": "bytes", "v": "not a tag", "nested": [b"\x02"]},
        },
        {"id": 2, "blob": b"", "price": None, "tags": ["x", Decimal("1E+2")]},
    ]


class GatedTableSource(MemoryTableSource):
    """Export blocks until ``release`` is set. ``entered`` is set on first export."""

    def __init__(self, tables=None, **kwargs):
        super().__init__(tables, **kwargs)
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def export_rows(self, table, since=None):
        self.entered.set()
        await self.release.wait()
        return await super().export_rows(table, since)


class GatedImportSource(MemoryTableSource):
    """Import blocks until ``release`` is set. ``entered`` is set on first import."""

    def __init__(self, tables=None, **kwargs):
        super().__init__(tables, **kwargs)
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def import_rows(self, table, rows):
        self.entered.set()
        await self.release.wait()
        return await super().import_rows(table, rows)


class TimingOutSource(MemoryTableSource):
    """Export or import raises TimeoutError while its flag is set, as a driver's statement timeout does."""

    def __init__(self, tables=None, **kwargs):
        super().__init__(tables, **kwargs)
        self.export_timeouts = False
        self.import_timeouts = False
        self.export_calls = 0

    async def export_rows(self, table, since=None):
        self.export_calls += 1
        if self.export_timeouts:
            raise TimeoutError("statement timeout")
        return await super().export_rows(table, since)

    async def import_rows(self, table, rows):
        if self.import_timeouts:
            raise TimeoutError("statement timeout")
        return await super().import_rows(table, rows)


class FlakyTableSource(MemoryTableSource):
    """Export fails ``failures`` times before succeeding."""

    def __init__(self, tables=None, failures: int = 1, **kwargs):
        super().__init__(tables, **kwargs)
        self.failures = failures
        self.export_calls = 0

    async def export_rows(self, table, since=None):
        self.export_calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise TableExportError("connection reset", details={"table": table})
        return await super().export_rows(table, since)


class FailingImportSource(MemoryTableSource):
    """Import into ``failing_table`` always fails."""

    def __init__(self, tables=None, failing_table: str = "posts", **kwargs):
        super().__init__(tables, **kwargs)
        self.failing_table = failing_table
        self.import_calls = []

    async def import_rows(self, table, rows):
        self.import_calls.append(table)
        if table == self.failing_table:
            raise TableImportError("disk full", details={"table": table})
        return await super().import_rows(table, rows)


def make_s3_session(client) -> MagicMock:
    """aiobotocore-style session whose create_client() yields ``client``."""
    session = MagicMock()
    context = MagicMock()
    context.__aenter__ = AsyncMock(return_value=client)
    context.__aexit__ = AsyncMock(return_value=False)
    session.create_client.return_value = context
    return session


def make_s3_body(data: bytes) -> MagicMock:
    """StreamingBody stand-in for get_object responses."""
    stream = MagicMock()
    stream.read = AsyncMock(return_value=data)
    body = MagicMock()
    body.__aenter__ = AsyncMock(return_value=stream)
    body.__aexit__ = AsyncMock(return_value=False)
    return body


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def test_config(temp_dir: Path):
    """Engine configuration with fast retries and an encryption key."""
    from dbsnap.config import EngineConfig

    return EngineConfig(
        data_path=temp_dir / "data",
        artifact_root=temp_dir / "artifacts",
        encryption_key=TEST_KEY,
        max_retries=2,
        retry_backoff_seconds=0.0,
        zstd_level=3,
    )


@pytest.fixture
def table_source() -> MemoryTableSource:
    return MemoryTableSource(sample_tables())


@pytest.fixture
def test_policies():
    """One policy per export scope plus an encrypted one."""
    from dbsnap.builder import create_policy

    return [
        create_policy("users_full", ["users"], retention_days=7),
        create_policy("all_encrypted", ["users", "posts"], encrypt=True, retention_days=7),
        create_policy("users_incremental", ["users"], kind="incremental", schedule="hourly"),
        create_policy("users_differential", ["users"], kind="differential", schedule="weekly"),
    ]


@pytest_asyncio.fixture
async def engine(test_config, table_source, test_policies):
    """Initialized engine state with the scheduler stopped."""
    from dbsnap.core import initialize_engine_state, shutdown_engine_state

    state = await initialize_engine_state(
        test_config,
        table_source,
        policies=test_policies,
        start_scheduler=False,
    )
    yield state
    await shutdown_engine_state(state)


async def make_engine(config, source, policies):
    """Engine state for tests that need a custom source or config."""
    from dbsnap.core import initialize_engine_state

    return await initialize_engine_state(
        config,
        source,
        policies=policies,
        start_scheduler=False,
    )


def artifact_path(config, run) -> Path:
    """Local file holding a run's artifact."""
    return config.artifact_root / run.artifact_ref
