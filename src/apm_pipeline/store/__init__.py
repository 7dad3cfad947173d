"""Telemetry stores.

The pipeline only appends rows and updates them by key; it never reads
telemetry back.
"""

from .memory import KEY_COLUMNS, TABLES, InMemoryStore, TelemetryStore
from .postgres import APM_SCHEMA, PostgresStore
from .writer import StoreWriter

__all__ = [
    "TelemetryStore",
    "InMemoryStore",
    "PostgresStore",
    "StoreWriter",
    "APM_SCHEMA",
    "TABLES",
    "KEY_COLUMNS",
]
