"""Service - owns store, price source, market cache, engine and their loops."""

from __future__ import annotations

import asyncio
from typing import Any

import structlog

from polyalert.alerts.dispatch import (
    Dispatcher,
    FanoutDispatcher,
    LogDispatcher,
    TelegramDispatcher,
    WebSocketHub,
)
from polyalert.alerts.engine import AlertEngine
from polyalert.cache.markets import MarketCache
from polyalert.config.settings import Settings
from polyalert.errors import CacheRefreshFailure, StoreFailure
from polyalert.polymarket.base import PriceSource
from polyalert.polymarket.gamma import GammaClient
from polyalert.storage.alerts import AlertStore, DuckDBAlertStore

log = structlog.get_logger(__name__)


class Service:
    """Builds the components from Settings and runs the cache refresh and poll loops."""

    def __init__(
        self,
        settings: Settings,
        store: AlertStore | None = None,
        source: PriceSource | None = None,
        dispatchers: list[Dispatcher] | None = None,
    ) -> None:
        self.settings = settings
        self.store = store or DuckDBAlertStore(settings.db_path)
        self.source = source or GammaClient(
            base_url=settings.gamma_api_base,
            timeout=settings.request_timeout_sec,
            requests_per_sec=settings.requests_per_sec,
        )
        self.hub = WebSocketHub()
        self._telegram: TelegramDispatcher | None = None
        if dispatchers is None:
            dispatchers = [LogDispatcher(), self.hub]
            if settings.telegram_bot_token:
                self._telegram = TelegramDispatcher(
                    settings.telegram_bot_token,
                    default_chat_id=settings.telegram_chat_id,
                )
                dispatchers.append(self._telegram)
                log.info("telegram_enabled")
        self.cache = MarketCache(
            self.source,
            page_size=settings.page_size,
            max_pages=settings.max_pages,
            refresh_interval_sec=settings.refresh_interval_sec,
        )
        self.engine = AlertEngine(
            self.store,
            self.cache,
            self.source,
            dispatcher=FanoutDispatcher(dispatchers),
            poll_interval_sec=settings.poll_interval_sec,
            max_concurrent_fetches=settings.max_concurrent_fetches,
            fetch_timeout_sec=settings.fetch_timeout_sec,
        )
        self._stop: asyncio.Event | None = None
        self._tasks: list[asyncio.Task[Any]] = []

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    async def start(self) -> None:
        """Initial cache load and recovery, then spawn the refresh and poll loops."""
        try:
            await self.cache.refresh()
        except CacheRefreshFailure:
            log.warning("initial_market_load_failed")
        try:
            self.engine.load()
        except StoreFailure as e:
            # engine retries load on its first tick
            log.error("alert_store_unavailable", error=str(e))
        self._stop = asyncio.Event()
        self._tasks = [
            asyncio.create_task(self.cache.run(stop_event=self._stop), name="market-cache"),
            asyncio.create_task(self.engine.run(stop_event=self._stop), name="alert-engine"),
        ]
        log.info("service_started", markets=self.cache.size, active_alerts=len(self.engine.active_alerts()))

    async def stop(self) -> None:
        """Signal loops, let the in-flight tick finish, then release clients and the store."""
        if self._stop is not None:
            self._stop.set()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
            self._tasks = []
        await self.close()
        log.info("service_stopped")

    async def close(self) -> None:
        if self._telegram is not None:
            await self._telegram.aclose()
        aclose = getattr(self.source, "aclose", None)
        if aclose is not None:
            await aclose()
        self.store.close()

    async def run_forever(self, stop_event: asyncio.Event) -> None:
        """Start, wait for stop_event, stop."""
        await self.start()
        try:
            await stop_event.wait()
        finally:
            await self.stop()
