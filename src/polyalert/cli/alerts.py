"""Alerts subcommand: list, watch."""

from __future__ import annotations

import asyncio
import json

import structlog
import typer
import websockets

from polyalert.errors import StoreFailure
from polyalert.storage.alerts import DuckDBAlertStore

log = structlog.get_logger(__name__)

app = typer.Typer(help="Inspect stored alerts and watch live triggers")


@app.command("list")
def list_alerts(
    ctx: typer.Context,
    completed: bool = typer.Option(False, "--completed", help="Show completed alerts instead of active"),
) -> None:
    """List alerts from the local store."""
    settings = ctx.obj["settings"]
    store = DuckDBAlertStore(settings.db_path, read_only=True)
    status = "completed" if completed else "active"
    try:
        rows = store.list(status)
    except StoreFailure as e:
        typer.echo(f"Store unavailable: {e}")
        raise typer.Exit(1)
    finally:
        store.close()
    for a in rows:
        line = f"  {a.id[:12]}  market={a.market_id:<10} outcome={a.outcome_index}  {a.direction:<5} {a.threshold:g}"
        if a.completed_price is not None:
            line += f"  fired at {a.completed_price:.4f}"
        typer.echo(line)
    typer.echo(f"Total: {len(rows)} {status} alerts")


async def _watch(url: str) -> None:
    async for ws in websockets.connect(url, ping_interval=20, ping_timeout=20, close_timeout=5):
        log.info("ws_connected", url=url)
        try:
            async for raw in ws:
                try:
                    evt = json.loads(raw)
                except json.JSONDecodeError:
                    continue
                typer.echo(
                    f"TRIGGERED market={evt.get('marketId')} outcome={evt.get('outcomeIndex')} "
                    f"price={evt.get('price')} ({evt.get('direction')} {evt.get('threshold')}) "
                    f"{evt.get('question') or ''}"
                )
        except websockets.ConnectionClosed:
            log.warning("ws_disconnected", url=url)
            continue


@app.command("watch")
def watch(
    recipient: str = typer.Argument(..., help="Recipient id used when creating alerts"),
    url: str = typer.Option("ws://127.0.0.1:8000", "--url", help="Base WebSocket URL of the API"),
) -> None:
    """Connect to the API's live channel and print triggers as they arrive (Ctrl+C to stop)."""
    endpoint = f"{url.rstrip('/')}/ws/{recipient}"
    typer.echo(f"Watching {endpoint} ...")
    try:
        asyncio.run(_watch(endpoint))
    except KeyboardInterrupt:
        pass
