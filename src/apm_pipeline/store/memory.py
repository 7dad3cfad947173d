"""Telemetry store contract and an in-memory implementation."""

import copy
from typing import Any, Protocol

from apm_pipeline.errors import StoreError

TABLES = ("sessions", "metrics", "errors", "alerts")

# Column identifying a row for update()
KEY_COLUMNS = {
    "sessions": "session_id",
    "metrics": "id",
    "errors": "id",
    "alerts": "id",
}


class TelemetryStore(Protocol):
    """Append-only sink for telemetry rows.

    Implementations may raise StoreError; the pipeline catches and logs it.
    Implementations that do blocking I/O set a true ``blocking`` attribute.
    """

    def insert(self, table: str, record: dict[str, Any]) -> None: ...

    def update(self, table: str, key: str, partial: dict[str, Any]) -> None: ...


def check_table(table: str) -> str:
    if table not in TABLES:
        raise StoreError(f"Unknown telemetry table: {table}")
    return KEY_COLUMNS[table]


class InMemoryStore:
    """Keeps rows in lists. Used by tests, the CLI replay and hosts without a DB."""

    def __init__(self) -> None:
        self.rows: dict[str, list[dict[str, Any]]] = {table: [] for table in TABLES}

    def insert(self, table: str, record: dict[str, Any]) -> None:
        check_table(table)
        self.rows[table].append(copy.deepcopy(record))

    def update(self, table: str, key: str, partial: dict[str, Any]) -> None:
        key_column = check_table(table)
        for row in self.rows[table]:
            if row.get(key_column) == key:
                row.update(copy.deepcopy(partial))
                return
        raise StoreError(f"No {table} row with {key_column}={key}")

    def get(self, table: str, key: str) -> dict[str, Any] | None:
        """Return the row with the given key, if any."""
        key_column = check_table(table)
        for row in self.rows[table]:
            if row.get(key_column) == key:
                return row
        return None

    def counts(self) -> dict[str, int]:
        return {table: len(rows) for table, rows in self.rows.items()}
