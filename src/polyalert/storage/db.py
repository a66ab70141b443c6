"""DuckDB connection and schema init."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

import duckdb

if TYPE_CHECKING:
    from duckdb import DuckDBPyConnection

MEMORY_DB = ":memory:"

SCHEMA_SQL = """
-- Alerts waiting for their trigger condition. Partitioned by market.
CREATE TABLE IF NOT EXISTS active_alerts (
    market_id       VARCHAR NOT NULL,
    id              VARCHAR NOT NULL,
    outcome_index   INTEGER NOT NULL,
    threshold       DOUBLE NOT NULL,
    direction       VARCHAR NOT NULL,
    recipient       VARCHAR,
    created_at      BIGINT NOT NULL,
    PRIMARY KEY (market_id, id)
);

-- Alerts whose condition fired, kept as history
CREATE TABLE IF NOT EXISTS completed_alerts (
    market_id       VARCHAR NOT NULL,
    id              VARCHAR NOT NULL,
    outcome_index   INTEGER NOT NULL,
    threshold       DOUBLE NOT NULL,
    direction       VARCHAR NOT NULL,
    recipient       VARCHAR,
    created_at      BIGINT NOT NULL,
    completed_at    BIGINT NOT NULL,
    completed_price DOUBLE NOT NULL,
    PRIMARY KEY (market_id, id)
);
"""


def get_connection(db_path: str | Path, read_only: bool = False) -> DuckDBPyConnection:
    """Return a DuckDB connection. Caller must close or use as context manager.
    ':memory:' gives a private in-process database."""
    if str(db_path) == MEMORY_DB:
        return duckdb.connect(MEMORY_DB)
    path = Path(db_path)
    if not read_only:
        path.parent.mkdir(parents=True, exist_ok=True)
    return duckdb.connect(str(path), read_only=read_only)


def init_schema(conn: DuckDBPyConnection) -> None:
    """Create tables if they do not exist."""
    for stmt in SCHEMA_SQL.split(";"):
        stmt = stmt.strip()
        if stmt:
            try:
                conn.execute(stmt)
            except duckdb.Error as e:
                if "already exists" not in str(e).lower():
                    raise
