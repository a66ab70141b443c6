"""Shared fixtures. Real DuckDB stores and real models; fakes only at the price source and dispatch boundary."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import httpx
import pytest

from polyalert.alerts.engine import AlertEngine
from polyalert.cache.markets import MarketCache
from polyalert.errors import PriceFetchFailure, StoreFailure
from polyalert.models import Alert, MarketDetail, MarketSummary, Outcome, TriggerEvent
from polyalert.storage.alerts import DuckDBAlertStore


class FakePriceSource:
    """In-memory Gamma stand-in. prices maps (market_id, outcome_index) to a float or an exception."""

    def __init__(self, markets: list[dict[str, Any]] | None = None) -> None:
        self.markets = list(markets or [])
        self.prices: dict[tuple[str, int], Any] = {}
        self.delays: dict[str, float] = {}
        self.fail_offsets: set[int] = set()
        self.page_calls: list[tuple[int, int]] = []
        self.price_calls: list[tuple[str, int]] = []

    async def list_active_page(self, limit: int, offset: int) -> list[dict[str, Any]]:
        self.page_calls.append((limit, offset))
        if offset in self.fail_offsets:
            raise httpx.ConnectError("gamma unreachable")
        return self.markets[offset : offset + limit]

    async def get_market_detail(self, market_id: str) -> MarketDetail:
        indexes = sorted(i for (m, i) in self.prices if m == market_id)
        outcomes = [
            Outcome(id=i, label=f"o{i}", price=self.prices[(market_id, i)])
            for i in indexes
            if isinstance(self.prices[(market_id, i)], float)
        ]
        return MarketDetail(id=market_id, question=f"question {market_id}", outcomes=outcomes)

    async def fetch_price(self, market_id: str, outcome_index: int) -> float:
        self.price_calls.append((market_id, outcome_index))
        delay = self.delays.get(market_id)
        if delay:
            await asyncio.sleep(delay)
        value = self.prices.get((market_id, outcome_index))
        if isinstance(value, Exception):
            raise value
        if value is None:
            raise PriceFetchFailure(f"no price at outcome {outcome_index} for market {market_id}")
        return value


class RecordingDispatcher:
    def __init__(self, fail: bool = False) -> None:
        self.events: list[TriggerEvent] = []
        self.fail = fail

    async def notify(self, event: TriggerEvent) -> None:
        self.events.append(event)
        if self.fail:
            raise RuntimeError("channel down")


class FlakyStore(DuckDBAlertStore):
    """DuckDB store that can be told to fail specific operations."""

    def __init__(self, db_path: str | Path) -> None:
        super().__init__(db_path)
        self.fail_upsert_status: str | None = None
        self.fail_delete = False
        self.fail_list = False
        self.calls: list[tuple[str, str, str]] = []

    def list(self, status):
        if self.fail_list:
            raise StoreFailure("store unreachable")
        return super().list(status)

    def upsert(self, alert: Alert) -> None:
        self.calls.append(("upsert", alert.status, alert.id))
        if self.fail_upsert_status == alert.status:
            raise StoreFailure(f"upsert {alert.status} failed")
        super().upsert(alert)

    def delete(self, alert_id: str, market_id: str, status="active") -> None:
        self.calls.append(("delete", status, alert_id))
        if self.fail_delete:
            raise StoreFailure("delete failed")
        super().delete(alert_id, market_id, status)


@pytest.fixture
def store(tmp_path: Path):
    s = FlakyStore(tmp_path / "alerts.duckdb")
    yield s
    s.close()


@pytest.fixture
def source() -> FakePriceSource:
    return FakePriceSource(
        markets=[
            {"id": "M1", "question": "Will X happen?"},
            {"id": "M2", "question": "Will Y happen by June?"},
        ]
    )


@pytest.fixture
def cache(source: FakePriceSource) -> MarketCache:
    c = MarketCache(source, page_size=500, max_pages=10)
    c.seed([MarketSummary(id=m["id"], question=m["question"]) for m in source.markets])
    return c


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def engine(store: FlakyStore, cache: MarketCache, source: FakePriceSource, dispatcher: RecordingDispatcher) -> AlertEngine:
    eng = AlertEngine(store, cache, source, dispatcher=dispatcher, fetch_timeout_sec=1.0)
    eng.load()
    return eng


@pytest.fixture
def failing_dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher(fail=True)
