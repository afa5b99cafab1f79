# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
In-memory table source.

Holds tables as lists of row dicts. Used by the examples and the test
suite, and handy for dry runs against fixtures.
"""

import copy
from datetime import datetime, UTC
from typing import Dict, List

from dbsnap.exceptions import TableExportError, TableImportError
from dbsnap.tables import Row


def _as_utc(value) -> datetime | None:
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value)
        except ValueError:
            return None
    if not isinstance(value, datetime):
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class MemoryTableSource:
    """
    Table source backed by plain Python lists.

    Rows are upserted by ``key`` on import. Incremental exports compare
    ``updated_at_column`` against ``since``; rows without a readable
    timestamp are always exported.
    """

    def __init__(
        self,
        tables: Dict[str, List[Row]] | None = None,
        key: str = "id",
        updated_at_column: str = "updated_at",
    ):
        self.tables: Dict[str, List[Row]] = {
            name: copy.deepcopy(rows) for name, rows in (tables or {}).items()
        }
        self.key = key
        self.updated_at_column = updated_at_column

    async def export_rows(self, table: str, since: datetime | None = None) -> List[Row]:
        if table not in self.tables:
            raise TableExportError(
                f"Table not found: {table}",
                details={"table": table},
            )

        rows = self.tables[table]
        if since is not None:
            cutoff = _as_utc(since)
            rows = [row for row in rows if self._changed_since(row, cutoff)]

        return copy.deepcopy(rows)

    async def import_rows(self, table: str, rows: List[Row]) -> int:
        existing = self.tables.setdefault(table, [])
        index = {row.get(self.key): i for i, row in enumerate(existing)}

        for row in rows:
            if self.key not in row:
                raise TableImportError(
                    f"Row in {table} has no {self.key!r} column",
                    details={"table": table},
                )
            row = copy.deepcopy(row)
            position = index.get(row[self.key])
            if position is None:
                index[row[self.key]] = len(existing)
                existing.append(row)
            else:
                existing[position] = row

        return len(rows)

    def _changed_since(self, row: Row, cutoff: datetime) -> bool:
        updated_at = _as_utc(row.get(self.updated_at_column))
        return updated_at is None or updated_at >= cutoff
