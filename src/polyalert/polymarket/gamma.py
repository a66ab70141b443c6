"""Polymarket Gamma API client - active market pages and live outcome prices."""

from __future__ import annotations

import asyncio
import json
from typing import Any

import httpx
import structlog

from polyalert.errors import PriceFetchFailure
from polyalert.models import MarketDetail, Outcome
from polyalert.polymarket.rate_limit import TokenBucket, backoff_on_429

log = structlog.get_logger(__name__)

GAMMA_API_BASE = "https://gamma-api.polymarket.com"


def _json_list(value: str | list[Any] | None) -> list[Any]:
    """Gamma sends list fields either as lists or as JSON-encoded strings."""
    if isinstance(value, list):
        return value
    if not value:
        return []
    try:
        parsed = json.loads(value)
    except (json.JSONDecodeError, TypeError):
        return []
    return parsed if isinstance(parsed, list) else []


def _parse_price(value: Any) -> float | None:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _parse_outcomes(
    outcomes_str: str | list[str] | None,
    prices_str: str | list[str] | None,
) -> list[Outcome]:
    """Build Outcome list from Gamma outcome fields. Prices may be numeric strings."""
    labels = _json_list(outcomes_str)
    prices = [_parse_price(p) for p in _json_list(prices_str)]
    # Align lengths
    while len(prices) < len(labels):
        prices.append(None)
    return [Outcome(id=i, label=str(label), price=price) for i, (label, price) in enumerate(zip(labels, prices))]


def parse_market_detail(raw: dict[str, Any]) -> MarketDetail:
    """Convert a Gamma /markets/{id} object to MarketDetail."""
    return MarketDetail(
        id=str(raw.get("id", "")),
        question=raw.get("question") or "",
        outcomes=_parse_outcomes(raw.get("outcomes"), raw.get("outcomePrices")),
    )


class GammaClient:
    """Async Gamma REST client. Every request is bounded by the client timeout."""

    def __init__(
        self,
        base_url: str = GAMMA_API_BASE,
        timeout: float = 10.0,
        requests_per_sec: float = 10.0,
        max_retries: int = 2,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries
        self._bucket = TokenBucket(rate=requests_per_sec) if requests_per_sec > 0 else None
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def __aenter__(self) -> GammaClient:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        url = f"{self.base_url}{path}"
        retries = 0
        while True:
            if self._bucket is not None:
                await self._bucket.wait_for_token()
            resp = await self._client.get(url, params=params)
            if resp.status_code == 429 and retries < self.max_retries:
                delay = backoff_on_429(retries)
                log.warning("gamma_rate_limited", path=path, delay=delay)
                retries += 1
                await asyncio.sleep(delay)
                continue
            resp.raise_for_status()
            return resp.json()

    async def list_active_page(self, limit: int, offset: int) -> list[dict[str, Any]]:
        """One page of active, non-closed, non-archived markets."""
        params = {
            "active": "true",
            "closed": "false",
            "archived": "false",
            "limit": limit,
            "offset": offset,
        }
        data = await self._get("/markets", params=params)
        if not isinstance(data, list):
            data = data.get("data", []) if isinstance(data, dict) else []
        return [row for row in data if isinstance(row, dict)]

    async def get_market_detail(self, market_id: str) -> MarketDetail:
        """Live read of one market. Raises httpx.HTTPError on transport or status errors."""
        raw = await self._get(f"/markets/{market_id}")
        if not isinstance(raw, dict):
            raise ValueError(f"unexpected Gamma payload for market {market_id}")
        return parse_market_detail(raw)

    async def fetch_price(self, market_id: str, outcome_index: int) -> float:
        """Current price of one outcome as a float."""
        try:
            detail = await self.get_market_detail(market_id)
        except (httpx.HTTPError, ValueError) as e:
            raise PriceFetchFailure(f"Gamma /markets/{market_id}: {e}") from e
        price = detail.price_at(outcome_index)
        if price is None:
            raise PriceFetchFailure(
                f"no price at outcome {outcome_index} for market {market_id} ({len(detail.outcomes)} outcomes)"
            )
        return price
