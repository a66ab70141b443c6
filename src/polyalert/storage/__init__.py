"""Alert storage - DuckDB tables for active and completed alerts."""

from polyalert.storage.alerts import AlertStore, DuckDBAlertStore, InMemoryAlertStore
from polyalert.storage.db import get_connection, init_schema

__all__ = ["AlertStore", "DuckDBAlertStore", "InMemoryAlertStore", "get_connection", "init_schema"]
