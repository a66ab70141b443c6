"""Markets subcommand: search, show."""

from __future__ import annotations

import asyncio

import httpx
import typer

from polyalert.cache.markets import MarketCache
from polyalert.errors import CacheRefreshFailure
from polyalert.models import MarketDetail, MarketSummary
from polyalert.polymarket.gamma import GammaClient

app = typer.Typer(help="Search active markets and show live prices")


def _client(settings) -> GammaClient:
    return GammaClient(
        base_url=settings.gamma_api_base,
        timeout=settings.request_timeout_sec,
        requests_per_sec=settings.requests_per_sec,
    )


async def _search(settings, term: str) -> tuple[MarketSummary, ...]:
    async with _client(settings) as client:
        cache = MarketCache(client, page_size=settings.page_size, max_pages=settings.max_pages)
        await cache.refresh()
        return cache.search(term)


async def _detail(settings, market_id: str) -> MarketDetail:
    async with _client(settings) as client:
        return await client.get_market_detail(market_id)


@app.command("search")
def search(
    ctx: typer.Context,
    term: str = typer.Argument("", help="Case-insensitive substring of the question"),
    limit: int = typer.Option(None, "--limit", "-n", help="Max rows (default: api.search_limit)"),
) -> None:
    """Load all active markets and list those whose question matches."""
    settings = ctx.obj["settings"]
    try:
        found = asyncio.run(_search(settings, term))
    except CacheRefreshFailure as e:
        typer.echo(f"Could not load markets: {e}")
        raise typer.Exit(1)
    shown = found[: limit or settings.search_limit]
    for m in shown:
        typer.echo(f"  {m.id:>10}  {m.question[:80]}")
    typer.echo(f"Showing {len(shown)} of {len(found)} matching markets")


@app.command("show")
def show(ctx: typer.Context, market_id: str = typer.Argument(..., help="Gamma market id")) -> None:
    """Show live outcomes and prices for one market."""
    settings = ctx.obj["settings"]
    try:
        detail = asyncio.run(_detail(settings, market_id))
    except httpx.HTTPError as e:
        typer.echo(f"Gamma /markets/{market_id} failed: {e}")
        raise typer.Exit(1)
    typer.echo(detail.question)
    for o in detail.outcomes:
        price = "-" if o.price is None else f"{o.price:.4f}"
        typer.echo(f"  [{o.id}] {o.label:<30} {price}")
