"""PostgreSQL telemetry store."""

from typing import Any

import psycopg2
import psycopg2.extras
import structlog

from apm_pipeline.errors import StoreError
from apm_pipeline.store.memory import check_table

log = structlog.get_logger()

# Logical table -> physical table
TABLE_NAMES = {
    "sessions": "apm_sessions",
    "metrics": "apm_performance_metrics",
    "errors": "apm_error_logs",
    "alerts": "apm_alerts",
}

JSON_COLUMNS = {"tags"}

APM_SCHEMA = """
CREATE TABLE IF NOT EXISTS apm_sessions (
    session_id TEXT PRIMARY KEY,
    user_id TEXT,
    start_time TIMESTAMPTZ NOT NULL,
    end_time TIMESTAMPTZ,
    page_views INT NOT NULL DEFAULT 1,
    total_errors INT NOT NULL DEFAULT 0,
    avg_load_time DOUBLE PRECISION NOT NULL DEFAULT 0,
    bounce_rate DOUBLE PRECISION NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS apm_performance_metrics (
    id UUID PRIMARY KEY,
    user_id TEXT,
    session_id TEXT,
    metric_type TEXT NOT NULL,
    metric_name TEXT NOT NULL,
    metric_value DOUBLE PRECISION NOT NULL,
    tags JSONB NOT NULL DEFAULT '{}',
    timestamp TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS apm_error_logs (
    id UUID PRIMARY KEY,
    user_id TEXT,
    session_id TEXT,
    error_type TEXT NOT NULL,
    error_message TEXT NOT NULL,
    error_stack TEXT,
    component_name TEXT,
    severity TEXT NOT NULL,
    is_filtered BOOLEAN NOT NULL DEFAULT FALSE,
    tags JSONB NOT NULL DEFAULT '{}',
    url TEXT,
    user_agent TEXT,
    timestamp TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS apm_alerts (
    id UUID PRIMARY KEY,
    user_id TEXT,
    session_id TEXT,
    alert_type TEXT NOT NULL,
    title TEXT NOT NULL,
    description TEXT NOT NULL,
    severity TEXT NOT NULL,
    threshold_value DOUBLE PRECISION,
    current_value DOUBLE PRECISION,
    is_acknowledged BOOLEAN NOT NULL DEFAULT FALSE,
    is_resolved BOOLEAN NOT NULL DEFAULT FALSE,
    created_at TIMESTAMPTZ NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_apm_metrics_user_time
    ON apm_performance_metrics(user_id, timestamp DESC);
CREATE INDEX IF NOT EXISTS idx_apm_errors_user_time
    ON apm_error_logs(user_id, timestamp DESC);
CREATE INDEX IF NOT EXISTS idx_apm_alerts_open
    ON apm_alerts(user_id, is_acknowledged, created_at DESC);
"""


def _adapt(column: str, value: Any) -> Any:
    if column in JSON_COLUMNS:
        return psycopg2.extras.Json(value)
    return value


class PostgresStore:
    """Writes telemetry rows to PostgreSQL, one commit per call."""

    # Each call is a network round-trip; StoreWriter runs it off the loop
    blocking = True

    def __init__(self, conn: psycopg2.extensions.connection):
        self.conn = conn

    @classmethod
    def connect(cls, dsn: str) -> "PostgresStore":
        """Open a connection and make sure the tables exist."""
        store = cls(psycopg2.connect(dsn))
        store.ensure_tables()
        return store

    def close(self) -> None:
        self.conn.close()

    def ensure_tables(self) -> None:
        """Create the APM tables if they don't exist."""
        with self.conn.cursor() as cur:
            cur.execute(APM_SCHEMA)
        self.conn.commit()
        log.debug("Ensured APM tables exist")

    def insert(self, table: str, record: dict[str, Any]) -> None:
        check_table(table)
        columns = list(record)
        placeholders = ", ".join(["%s"] * len(columns))
        sql = (
            f"INSERT INTO {TABLE_NAMES[table]} ({', '.join(columns)}) "
            f"VALUES ({placeholders});"
        )
        self._execute(sql, [_adapt(col, record[col]) for col in columns])

    def update(self, table: str, key: str, partial: dict[str, Any]) -> None:
        key_column = check_table(table)
        if not partial:
            return
        assignments = ", ".join(f"{col} = %s" for col in partial)
        sql = f"UPDATE {TABLE_NAMES[table]} SET {assignments} WHERE {key_column} = %s;"
        params = [_adapt(col, value) for col, value in partial.items()]
        params.append(key)
        self._execute(sql, params)

    def _execute(self, sql: str, params: list[Any]) -> None:
        try:
            with self.conn.cursor() as cur:
                cur.execute(sql, params)
            self.conn.commit()
        except psycopg2.Error as e:
            self.conn.rollback()
            raise StoreError(str(e)) from e
