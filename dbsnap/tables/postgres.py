# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
PostgreSQL table source.

Exports read whole tables (or rows changed since a timestamp) ordered by
key. Imports upsert through json_populate_recordset, so column types are
resolved by PostgreSQL from the table definition and the importer stays
schema-agnostic.
"""

import json
import re
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Any, List
from uuid import UUID

import structlog

from dbsnap.exceptions import ConfigurationError, TableExportError, TableImportError
from dbsnap.tables import Row

logger = structlog.get_logger()

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def quote_identifier(name: str) -> str:
    """
    Quote a table or column name, allowing one schema qualifier.

    Raises:
        ConfigurationError: If the name is not a plain SQL identifier
    """
    parts = name.split(".")
    if len(parts) > 2 or not all(_IDENTIFIER.match(part) for part in parts):
        raise ConfigurationError(
            f"Invalid SQL identifier: {name!r}",
            details={"identifier": name},
        )
    return ".".join(f'"{part}"' for part in parts)


def _populate_default(value: Any) -> Any:
    """Text forms json_populate_recordset casts back to the column type."""
    if isinstance(value, (bytes, bytearray, memoryview)):
        # bytea hex input format
        return "\\x" + bytes(value).hex()
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, timedelta):
        return f"{value.total_seconds()} seconds"
    if isinstance(value, (Decimal, UUID)):
        return str(value)
    if isinstance(value, (set, frozenset)):
        return sorted(value, key=str)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


class PostgresTableSource:
    """Table source over an asyncpg connection pool (created on first use)."""

    def __init__(
        self,
        connection_url: str,
        key: str = "id",
        updated_at_column: str = "updated_at",
        min_size: int = 1,
        max_size: int = 5,
    ):
        self.connection_url = connection_url
        self.key = key
        self.updated_at_column = updated_at_column
        self.min_size = min_size
        self.max_size = max_size
        self._pool: Any = None

    async def _get_pool(self) -> Any:
        if self._pool is None:
            import asyncpg

            self._pool = await asyncpg.create_pool(
                self.connection_url,
                min_size=self.min_size,
                max_size=self.max_size,
            )
        return self._pool

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def export_rows(self, table: str, since: datetime | None = None) -> List[Row]:
        import asyncpg

        query = f"SELECT * FROM {quote_identifier(table)}"
        params: List[Any] = []
        if since is not None:
            query += f" WHERE {quote_identifier(self.updated_at_column)} >= $1"
            params.append(since)
        query += f" ORDER BY {quote_identifier(self.key)}"

        try:
            pool = await self._get_pool()
            async with pool.acquire() as conn:
                records = await conn.fetch(query, *params)
        except (asyncpg.PostgresError, OSError) as e:
            raise TableExportError(
                f"Failed to export table {table}: {e}",
                details={"table": table},
            ) from e

        logger.debug("table_exported", table=table, rows=len(records))
        return [dict(record) for record in records]

    async def import_rows(self, table: str, rows: List[Row]) -> int:
        import asyncpg

        if not rows:
            return 0

        columns: List[str] = []
        for row in rows:
            for column in row:
                if column not in columns:
                    columns.append(column)
        if self.key not in columns:
            raise TableImportError(
                f"Rows for {table} have no {self.key!r} column",
                details={"table": table},
            )

        target = quote_identifier(table)
        column_list = ", ".join(quote_identifier(c) for c in columns)
        updates = [c for c in columns if c != self.key]
        if updates:
            conflict = "DO UPDATE SET " + ", ".join(
                f"{quote_identifier(c)} = EXCLUDED.{quote_identifier(c)}" for c in updates
            )
        else:
            conflict = "DO NOTHING"

        query = f"""
            INSERT INTO {target} ({column_list})
            SELECT {column_list} FROM json_populate_recordset(NULL::{target}, $1::json)
            ON CONFLICT ({quote_identifier(self.key)}) {conflict}
        """

        try:
            pool = await self._get_pool()
            async with pool.acquire() as conn:
                async with conn.transaction():
                    await conn.execute(query, json.dumps(rows, default=_populate_default))
        except (asyncpg.PostgresError, OSError) as e:
            raise TableImportError(
                f"Failed to import table {table}: {e}",
                details={"table": table, "rows": len(rows)},
            ) from e

        logger.debug("table_imported", table=table, rows=len(rows))
        return len(rows)
