"""Price source protocol - what the cache and engine need from a market venue."""

from __future__ import annotations

from typing import Any, Protocol

from polyalert.models import MarketDetail


class PriceSource(Protocol):
    """Paginated active-market listing plus live per-market prices."""

    async def list_active_page(self, limit: int, offset: int) -> list[dict[str, Any]]:
        """Return one page of raw active, non-closed, non-archived markets."""
        ...

    async def get_market_detail(self, market_id: str) -> MarketDetail: ...

    async def fetch_price(self, market_id: str, outcome_index: int) -> float:
        """Current price of one outcome. Raises PriceFetchFailure."""
        ...
