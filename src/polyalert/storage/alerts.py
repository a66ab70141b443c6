"""Alert persistence - active and completed alerts, keyed by (market_id, id)."""

from __future__ import annotations

from pathlib import Path
from threading import Lock
from typing import TYPE_CHECKING, Any, Protocol

import duckdb
import structlog
from pydantic import ValidationError

from polyalert.errors import StoreFailure
from polyalert.models import Alert, AlertStatus
from polyalert.storage.db import get_connection, init_schema

if TYPE_CHECKING:
    from duckdb import DuckDBPyConnection

log = structlog.get_logger(__name__)

_TABLES: dict[str, str] = {"active": "active_alerts", "completed": "completed_alerts"}

_BASE_COLUMNS = ["market_id", "id", "outcome_index", "threshold", "direction", "recipient", "created_at"]
_COMPLETED_COLUMNS = _BASE_COLUMNS + ["completed_at", "completed_price"]


class AlertStore(Protocol):
    """Durable alert storage. No multi-record transactions are assumed."""

    def list(self, status: AlertStatus) -> list[Alert]: ...
    def upsert(self, alert: Alert) -> None: ...
    def delete(self, alert_id: str, market_id: str, status: AlertStatus = "active") -> None: ...
    def close(self) -> None: ...


def _table(status: str) -> str:
    try:
        return _TABLES[status]
    except KeyError:
        raise ValueError(f"unknown alert status {status!r}") from None


def _columns(status: str) -> list[str]:
    return _COMPLETED_COLUMNS if status == "completed" else _BASE_COLUMNS


def _row_values(alert: Alert) -> list[Any]:
    values: list[Any] = [
        alert.market_id,
        alert.id,
        alert.outcome_index,
        alert.threshold,
        alert.direction,
        alert.recipient,
        alert.created_at,
    ]
    if alert.status == "completed":
        values += [alert.completed_at, alert.completed_price]
    return values


class DuckDBAlertStore:
    """AlertStore on DuckDB: one table per status, partition key market_id first."""

    def __init__(
        self,
        db_path: str | Path,
        conn: DuckDBPyConnection | None = None,
        read_only: bool = False,
    ) -> None:
        self.db_path = db_path
        self.read_only = read_only
        self._conn = conn
        self._lock = Lock()

    def _get_conn(self) -> DuckDBPyConnection:
        if self._conn is None:
            self._conn = get_connection(self.db_path, read_only=self.read_only)
            if not self.read_only:
                init_schema(self._conn)
        return self._conn

    def list(self, status: AlertStatus) -> list[Alert]:
        columns = _columns(status)
        sql = f"SELECT {', '.join(columns)} FROM {_table(status)} ORDER BY created_at, id"
        try:
            with self._lock:
                rows = self._get_conn().execute(sql).fetchall()
        except duckdb.Error as e:
            raise StoreFailure(f"list {status} alerts: {e}") from e
        alerts: list[Alert] = []
        for row in rows:
            record = dict(zip(columns, row))
            try:
                alerts.append(Alert(status=status, **record))
            except ValidationError as e:
                log.warning("skip_unreadable_alert", alert_id=record.get("id"), status=status, error=str(e))
        return alerts

    def upsert(self, alert: Alert) -> None:
        """Insert or replace the alert in the table matching its status."""
        columns = _columns(alert.status)
        updates = ", ".join(f"{c} = excluded.{c}" for c in columns if c not in ("market_id", "id"))
        sql = f"""
            INSERT INTO {_table(alert.status)} ({', '.join(columns)})
            VALUES ({', '.join('?' for _ in columns)})
            ON CONFLICT (market_id, id) DO UPDATE SET {updates}
        """
        try:
            with self._lock:
                self._get_conn().execute(sql, _row_values(alert))
        except duckdb.Error as e:
            raise StoreFailure(f"upsert alert {alert.id}: {e}") from e

    def delete(self, alert_id: str, market_id: str, status: AlertStatus = "active") -> None:
        sql = f"DELETE FROM {_table(status)} WHERE market_id = ? AND id = ?"
        try:
            with self._lock:
                self._get_conn().execute(sql, [market_id, alert_id])
        except duckdb.Error as e:
            raise StoreFailure(f"delete alert {alert_id}: {e}") from e

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None


class InMemoryAlertStore:
    """AlertStore kept in process memory. Nothing survives a restart."""

    def __init__(self) -> None:
        self._tables: dict[str, dict[tuple[str, str], Alert]] = {status: {} for status in _TABLES}

    def _rows(self, status: str) -> dict[tuple[str, str], Alert]:
        _table(status)
        return self._tables[status]

    def list(self, status: AlertStatus) -> list[Alert]:
        return sorted(self._rows(status).values(), key=lambda a: (a.created_at, a.id))

    def upsert(self, alert: Alert) -> None:
        self._rows(alert.status)[(alert.market_id, alert.id)] = alert

    def delete(self, alert_id: str, market_id: str, status: AlertStatus = "active") -> None:
        self._rows(status).pop((market_id, alert_id), None)

    def close(self) -> None:
        pass
