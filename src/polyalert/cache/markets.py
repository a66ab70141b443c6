"""In-memory snapshot of active markets, refreshed on a fixed period."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

import structlog

from polyalert.errors import CacheRefreshFailure
from polyalert.models import MarketSummary
from polyalert.polymarket.base import PriceSource

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class MarketSnapshot:
    """Immutable once published. Replaced wholesale, never mutated."""

    markets: tuple[MarketSummary, ...] = ()
    by_id: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    refreshed_at: int | None = None  # ms epoch

    @classmethod
    def build(cls, markets: Iterable[MarketSummary], refreshed_at: int | None = None) -> MarketSnapshot:
        items = tuple(markets)
        return cls(
            markets=items,
            by_id=MappingProxyType({m.id: m.question for m in items}),
            refreshed_at=refreshed_at,
        )


def project_market(raw: dict[str, Any]) -> MarketSummary | None:
    """Reduce a raw Gamma market to {id, question}. None when it has no id."""
    market_id = raw.get("id")
    if market_id is None or market_id == "":
        return None
    return MarketSummary(id=str(market_id), question=raw.get("question") or "")


class MarketCache:
    """Holds the {market_id -> question} snapshot of all active markets."""

    def __init__(
        self,
        source: PriceSource,
        page_size: int = 500,
        max_pages: int = 10,
        refresh_interval_sec: float = 60.0,
    ) -> None:
        self.source = source
        self.page_size = page_size
        self.max_pages = max_pages
        self.refresh_interval_sec = refresh_interval_sec
        self._snapshot = MarketSnapshot()
        self._refresh_lock = asyncio.Lock()
        self._refresh_count = 0

    # --- readers: always see one whole snapshot ---

    def snapshot(self) -> Mapping[str, str]:
        return self._snapshot.by_id

    def exists(self, market_id: str) -> bool:
        return market_id in self._snapshot.by_id

    def question(self, market_id: str) -> str | None:
        return self._snapshot.by_id.get(market_id)

    def search(self, term: str | None) -> tuple[MarketSummary, ...]:
        """Case-insensitive substring match on question, in source order."""
        markets = self._snapshot.markets
        if not term:
            return markets
        needle = term.lower()
        return tuple(m for m in markets if needle in m.question.lower())

    @property
    def size(self) -> int:
        return len(self._snapshot.markets)

    @property
    def last_refreshed(self) -> int | None:
        return self._snapshot.refreshed_at

    @property
    def loaded(self) -> bool:
        return self._snapshot.refreshed_at is not None

    def seed(self, markets: Iterable[MarketSummary]) -> None:
        """Publish a snapshot directly (startup fixtures, tests)."""
        self._snapshot = MarketSnapshot.build(markets, refreshed_at=int(time.time() * 1000))

    # --- writer ---

    async def _fetch_all(self) -> list[MarketSummary]:
        collected: list[MarketSummary] = []
        for page in range(self.max_pages):
            batch = await self.source.list_active_page(self.page_size, page * self.page_size)
            for raw in batch:
                summary = project_market(raw)
                if summary is not None:
                    collected.append(summary)
            if len(batch) < self.page_size:
                break
        else:
            log.warning("market_cache_page_cap_reached", max_pages=self.max_pages, count=len(collected))
        return collected

    async def refresh(self) -> int:
        """Fetch every page and swap the snapshot. On failure the previous snapshot stays."""
        async with self._refresh_lock:
            try:
                markets = await self._fetch_all()
            except Exception as e:
                log.error("market_cache_refresh_failed", error=str(e), kept=self.size)
                raise CacheRefreshFailure(f"market cache refresh failed: {e}") from e
            self._snapshot = MarketSnapshot.build(markets, refreshed_at=int(time.time() * 1000))
            if self._refresh_count == 0:
                log.info("market_cache_loaded", count=len(markets))
            else:
                log.debug("market_cache_refreshed", count=len(markets))
            self._refresh_count += 1
            return len(markets)

    async def run(self, stop_event: asyncio.Event | None = None) -> None:
        """Refresh every refresh_interval_sec until stop_event is set."""
        stop = stop_event or asyncio.Event()
        while not stop.is_set():
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.refresh_interval_sec)
                break
            except asyncio.TimeoutError:
                pass
            try:
                await self.refresh()
            except CacheRefreshFailure:
                # already logged; retried next period
                continue
        log.info("market_cache_stopped")
