# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Table Exporter / Importer - Narrow contract to the external data store.
"""

from datetime import datetime
from typing import Any, Dict, List, Protocol, runtime_checkable

Row = Dict[str, Any]


@runtime_checkable
class TableSource(Protocol):
    """Protocol for reading rows out of, and writing rows back into, a table."""

    async def export_rows(self, table: str, since: datetime | None = None) -> List[Row]:
        """
        Read a table's rows.

        Args:
            table: Table name
            since: Only rows changed at or after this time (None = all rows)

        Raises:
            TableExportError: If the table cannot be read
        """
        ...

    async def import_rows(self, table: str, rows: List[Row]) -> int:
        """
        Upsert rows into a table.

        Returns:
            Number of rows written

        Raises:
            TableImportError: If the rows cannot be written
        """
        ...


__all__ = [
    "Row",
    "TableSource",
]
