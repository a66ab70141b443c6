"""Run command: market cache refresh and alert polling in the foreground, no HTTP."""

from __future__ import annotations

import asyncio
import signal
import sys

import typer

from polyalert.service import Service

app = typer.Typer(help="Run the alert engine in the foreground")


@app.callback(invoke_without_command=True)
def run(ctx: typer.Context) -> None:
    """Refresh markets and poll active alerts until Ctrl+C."""
    if ctx.invoked_subcommand is not None:
        return
    settings = ctx.obj["settings"]
    service = Service(settings)
    stop_event = asyncio.Event()

    def shutdown() -> None:
        stop_event.set()

    loop = asyncio.new_event_loop()
    if sys.platform != "win32":
        loop.add_signal_handler(signal.SIGINT, shutdown)
        loop.add_signal_handler(signal.SIGTERM, shutdown)
    try:
        typer.echo(
            f"Polling alerts every {settings.poll_interval_sec:g}s, "
            f"refreshing markets every {settings.refresh_interval_sec:g}s (Ctrl+C to stop)..."
        )
        loop.run_until_complete(service.run_forever(stop_event))
    except KeyboardInterrupt:
        pass
    finally:
        loop.close()
    typer.echo("Stopped.")
