"""Alert lifecycle engine - creation, dedup, the poll tick and the active -> completed transition."""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

import structlog

from polyalert.alerts.dispatch import Dispatcher
from polyalert.alerts.validator import ensure_valid, validate
from polyalert.cache.markets import MarketCache
from polyalert.errors import DuplicateAlert, PriceFetchFailure, StoreFailure, UnknownMarket
from polyalert.models import Alert, TriggerEvent, is_hit, now_ms
from polyalert.polymarket.base import PriceSource
from polyalert.storage.alerts import AlertStore

log = structlog.get_logger(__name__)

DedupKey = tuple[str, int, float, str]


def new_alert_id() -> str:
    return uuid.uuid4().hex


@dataclass
class TickResult:
    """Counters for one poll tick."""

    checked: int = 0
    triggered: int = 0
    skipped: int = 0
    failed: int = 0
    triggered_ids: list[str] = field(default_factory=list)
    duration_sec: float = 0.0


class AlertEngine:
    """Owns the active working set and moves alerts from active to completed exactly once.

    The store is the source of truth; the working set mirrors it write-through.
    Creation is serialized per (market, outcome, threshold, direction) key and
    transitions per alert id. Ticks never overlap.
    """

    def __init__(
        self,
        store: AlertStore,
        cache: MarketCache,
        source: PriceSource,
        dispatcher: Dispatcher | None = None,
        poll_interval_sec: float = 10.0,
        max_concurrent_fetches: int = 8,
        fetch_timeout_sec: float = 15.0,
        id_factory: Callable[[], str] = new_alert_id,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.store = store
        self.cache = cache
        self.source = source
        self.dispatcher = dispatcher
        self.poll_interval_sec = poll_interval_sec
        self.max_concurrent_fetches = max(1, max_concurrent_fetches)
        self.fetch_timeout_sec = fetch_timeout_sec
        self._id_factory = id_factory
        self._clock = clock
        self._working: dict[str, Alert] = {}
        # completed record written but active record not yet deleted
        self._pending_delete: dict[str, Alert] = {}
        # lock plus the number of creators holding or waiting on it
        self._key_locks: dict[DedupKey, tuple[asyncio.Lock, int]] = {}
        self._id_locks: dict[str, asyncio.Lock] = {}
        self._tick_lock = asyncio.Lock()
        self._loaded = False
        self._tick_count = 0

    # --- read side ---

    def active_alerts(self) -> list[Alert]:
        """Copy of the working set, oldest first. Alerts already written as completed are left out."""
        live = (a for a in self._working.values() if a.id not in self._pending_delete)
        return sorted(live, key=lambda a: (a.created_at, a.id))

    def valid_active_alerts(self) -> list[Alert]:
        """Active alerts that pass validation and whose market is still listed."""
        return [a for a in self.active_alerts() if validate(a).ok and self.cache.exists(a.market_id)]

    def completed_alerts(self) -> list[Alert]:
        return self.store.list("completed")

    def get_active(self, alert_id: str) -> Alert | None:
        if alert_id in self._pending_delete:
            return None
        return self._working.get(alert_id)

    @property
    def loaded(self) -> bool:
        return self._loaded

    @property
    def tick_in_flight(self) -> bool:
        return self._tick_lock.locked()

    # --- startup / recovery ---

    def load(self) -> int:
        """Rebuild the working set from the store.

        An alert found in both tables was interrupted mid-transition; its
        completed record is already durable, so the active copy is deleted.
        Raises StoreFailure when the store cannot be read.
        """
        active = self.store.list("active")
        completed_ids = {a.id for a in self.store.list("completed")}
        working: dict[str, Alert] = {}
        for alert in active:
            if alert.id in completed_ids:
                try:
                    self.store.delete(alert.id, alert.market_id, "active")
                    log.info("alert_recovered_completed", alert_id=alert.id, market_id=alert.market_id)
                except StoreFailure as e:
                    log.error("alert_recovery_failed", alert_id=alert.id, error=str(e))
                continue
            working[alert.id] = alert
        self._working = working
        self._loaded = True
        log.info("alerts_loaded", active=len(working), completed=len(completed_ids))
        return len(working)

    # --- creation ---

    def _key_lock(self, key: DedupKey) -> asyncio.Lock:
        lock, users = self._key_locks.get(key, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._key_locks[key] = (lock, users + 1)
        return lock

    def _release_key_lock(self, key: DedupKey) -> None:
        lock, users = self._key_locks[key]
        if users <= 1:
            del self._key_locks[key]
        else:
            self._key_locks[key] = (lock, users - 1)

    def _find_duplicate(self, key: DedupKey) -> Alert | None:
        for alert in self._working.values():
            if alert.dedup_key == key and alert.id not in self._pending_delete:
                return alert
        for alert in self.store.list("active"):
            if alert.dedup_key == key and alert.id not in self._pending_delete:
                return alert
        return None

    async def create_alert(
        self,
        market_id: str,
        outcome_index: int,
        threshold: float,
        direction: str,
        recipient: str | None = None,
    ) -> Alert:
        """Validate, check the market, suppress duplicates, then persist and add to the working set."""
        alert_id = self._id_factory()
        ensure_valid(
            {
                "id": alert_id,
                "market_id": market_id,
                "outcome_index": outcome_index,
                "threshold": threshold,
                "direction": direction,
            }
        )
        if not self.cache.exists(market_id):
            raise UnknownMarket(market_id)

        key: DedupKey = (market_id, outcome_index, float(threshold), direction)
        lock = self._key_lock(key)
        try:
            async with lock:
                existing = self._find_duplicate(key)
                if existing is not None:
                    log.info("alert_duplicate", existing_id=existing.id, market_id=market_id)
                    raise DuplicateAlert(existing.id)
                alert = Alert(
                    id=alert_id,
                    market_id=market_id,
                    outcome_index=outcome_index,
                    threshold=float(threshold),
                    direction=direction,
                    recipient=recipient,
                    created_at=self._clock(),
                )
                self.store.upsert(alert)
                self._working[alert.id] = alert
        finally:
            self._release_key_lock(key)
        log.info(
            "alert_created",
            alert_id=alert.id,
            market_id=market_id,
            outcome_index=outcome_index,
            threshold=alert.threshold,
            direction=direction,
        )
        return alert

    async def create_from_payload(self, payload: Mapping[str, Any]) -> Alert:
        """Create from a wire payload ({marketId, outcomeIndex, threshold, direction, recipient?})."""
        return await self.create_alert(
            market_id=payload.get("marketId", payload.get("market_id")),
            outcome_index=payload.get("outcomeIndex", payload.get("outcome_index")),
            threshold=payload.get("threshold"),
            direction=payload.get("direction"),
            recipient=payload.get("recipient"),
        )

    # --- poll tick ---

    async def tick(self) -> TickResult | None:
        """Evaluate every alert in the working set once. Returns None if a tick is already running."""
        if self._tick_lock.locked():
            log.warning("tick_skipped_in_flight")
            return None
        async with self._tick_lock:
            started = time.monotonic()
            result = TickResult()
            if not self._loaded:
                try:
                    self.load()
                except StoreFailure as e:
                    log.error("tick_store_unavailable", error=str(e))
                    return result
            self._retry_pending_deletes()
            batch = [a for a in self._working.values() if a.id not in self._pending_delete]
            sem = asyncio.Semaphore(self.max_concurrent_fetches)
            await asyncio.gather(*(self._check_one(alert, sem, result) for alert in batch))
            result.duration_sec = round(time.monotonic() - started, 3)
            self._tick_count += 1
            log.info(
                "tick_done",
                tick=self._tick_count,
                active=len(batch),
                checked=result.checked,
                triggered=result.triggered,
                skipped=result.skipped,
                failed=result.failed,
                duration_sec=result.duration_sec,
            )
            return result

    async def _check_one(self, alert: Alert, sem: asyncio.Semaphore, result: TickResult) -> None:
        check = validate(alert)
        if not check.ok:
            log.warning("skip_invalid_alert", alert_id=alert.id, reason=check.reason)
            result.skipped += 1
            return
        if not self.cache.exists(alert.market_id):
            log.warning("skip_unknown_market", alert_id=alert.id, market_id=alert.market_id)
            result.skipped += 1
            return
        try:
            async with sem:
                price = await self._fetch_price(alert)
            result.checked += 1
            if not is_hit(alert.direction, price, alert.threshold):
                return
            if await self._complete(alert, price):
                result.triggered += 1
                result.triggered_ids.append(alert.id)
        except PriceFetchFailure as e:
            log.warning("price_fetch_failed", alert_id=alert.id, market_id=alert.market_id, error=e.message)
            result.failed += 1
        except StoreFailure as e:
            log.error("alert_transition_failed", alert_id=alert.id, error=e.message)
            result.failed += 1
        except Exception:
            log.exception("alert_check_error", alert_id=alert.id)
            result.failed += 1

    async def _fetch_price(self, alert: Alert) -> float:
        try:
            return await asyncio.wait_for(
                self.source.fetch_price(alert.market_id, alert.outcome_index),
                timeout=self.fetch_timeout_sec,
            )
        except asyncio.TimeoutError as e:
            raise PriceFetchFailure(f"price fetch timed out after {self.fetch_timeout_sec}s") from e

    def _id_lock(self, alert_id: str) -> asyncio.Lock:
        lock = self._id_locks.get(alert_id)
        if lock is None:
            lock = self._id_locks[alert_id] = asyncio.Lock()
        return lock

    async def _complete(self, alert: Alert, price: float) -> bool:
        """Write completed, delete active, drop from working set, then notify.

        The completed record is durable before the active one is removed, so a
        crash in between leaves a duplicate that load() resolves, never a loss.
        A failed active delete does not undo the transition: the alert counts as
        triggered and is notified now, and the delete is retried by later ticks.
        """
        try:
            async with self._id_lock(alert.id):
                if alert.id not in self._working or alert.id in self._pending_delete:
                    return False
                completed = alert.complete(price, at=self._clock())
                self.store.upsert(completed)
                self._pending_delete[alert.id] = completed
                try:
                    self._finish_transition(completed)
                except StoreFailure as e:
                    # completed is durable; the active copy is removed on a later tick
                    log.error("alert_active_delete_failed", alert_id=alert.id, error=e.message)
        finally:
            self._id_locks.pop(alert.id, None)
        log.info(
            "alert_triggered",
            alert_id=alert.id,
            market_id=alert.market_id,
            outcome_index=alert.outcome_index,
            price=price,
            threshold=alert.threshold,
            direction=alert.direction,
        )
        await self._dispatch(completed)
        return True

    def _finish_transition(self, completed: Alert) -> None:
        self.store.delete(completed.id, completed.market_id, "active")
        self._pending_delete.pop(completed.id, None)
        self._working.pop(completed.id, None)

    def _retry_pending_deletes(self) -> None:
        for completed in list(self._pending_delete.values()):
            try:
                self._finish_transition(completed)
            except StoreFailure as e:
                log.error("alert_transition_failed", alert_id=completed.id, error=e.message)
                continue
            log.info("alert_transition_resumed", alert_id=completed.id)

    async def _dispatch(self, completed: Alert) -> None:
        if self.dispatcher is None:
            return
        event = TriggerEvent.from_alert(
            completed,
            price=completed.completed_price if completed.completed_price is not None else 0.0,
            question=self.cache.question(completed.market_id),
        )
        try:
            await self.dispatcher.notify(event)
        except Exception as e:
            log.warning("notify_failed", alert_id=completed.id, error=str(e))

    # --- loop ---

    async def run(self, stop_event: asyncio.Event | None = None) -> None:
        """Tick every poll_interval_sec until stop_event is set. The current tick always finishes."""
        stop = stop_event or asyncio.Event()
        while not stop.is_set():
            try:
                await self.tick()
            except Exception:
                log.exception("tick_failed")
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.poll_interval_sec)
            except asyncio.TimeoutError:
                pass
        log.info("engine_stopped", ticks=self._tick_count)
