"""Notification dispatch for triggered alerts.

Delivery is best-effort and at-most-once. The engine commits the
active -> completed transition before calling a dispatcher, and a failed or
undeliverable notification is logged and dropped, never queued or retried.
Recipients are durable ids stored on the alert and resolved to a live
channel only at dispatch time.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import TYPE_CHECKING, Protocol, Sequence

import httpx
import structlog

from polyalert.models import TriggerEvent

if TYPE_CHECKING:
    from fastapi import WebSocket

log = structlog.get_logger(__name__)

TELEGRAM_API_BASE = "https://api.telegram.org"
TELEGRAM_PREFIX = "tg:"


class Dispatcher(Protocol):
    async def notify(self, event: TriggerEvent) -> None: ...


def format_trigger(event: TriggerEvent) -> str:
    """One-line human text for a trigger."""
    subject = event.question or f"market {event.market_id}"
    sign = "<=" if event.direction == "below" else ">="
    return (
        f"Alert triggered: {subject} (outcome {event.outcome_index}) "
        f"at {event.price:.4f} ({sign} {event.threshold:g})"
    )


class LogDispatcher:
    """Writes one structured log line per trigger."""

    async def notify(self, event: TriggerEvent) -> None:
        log.info(
            "alert_notification",
            alert_id=event.alert_id,
            market_id=event.market_id,
            outcome_index=event.outcome_index,
            price=event.price,
            recipient=event.recipient,
        )


class TelegramDispatcher:
    """Sends trigger text through the Telegram Bot API.

    A recipient of the form ``tg:<chat_id>`` is sent to that chat; other
    recipients fall back to the configured default chat, if any.
    """

    def __init__(
        self,
        bot_token: str,
        default_chat_id: str | None = None,
        timeout: float = 8.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.bot_token = bot_token
        self.default_chat_id = default_chat_id
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    def chat_for(self, recipient: str | None) -> str | None:
        if recipient and recipient.startswith(TELEGRAM_PREFIX):
            return recipient[len(TELEGRAM_PREFIX):] or None
        return self.default_chat_id

    async def notify(self, event: TriggerEvent) -> None:
        chat_id = self.chat_for(event.recipient)
        if not chat_id:
            log.debug("telegram_no_chat", alert_id=event.alert_id, recipient=event.recipient)
            return
        url = f"{TELEGRAM_API_BASE}/bot{self.bot_token}/sendMessage"
        resp = await self._client.post(url, json={"chat_id": chat_id, "text": format_trigger(event)})
        if resp.status_code != 200:
            log.warning("telegram_send_failed", status=resp.status_code, body=resp.text[:200], alert_id=event.alert_id)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class WebSocketHub:
    """Live WebSocket channels per recipient id. Nothing connected means nothing delivered."""

    def __init__(self) -> None:
        self._channels: dict[str, set[WebSocket]] = defaultdict(set)

    def register(self, recipient: str, ws: WebSocket) -> None:
        self._channels[recipient].add(ws)
        log.info("ws_recipient_connected", recipient=recipient, channels=len(self._channels[recipient]))

    def unregister(self, recipient: str, ws: WebSocket) -> None:
        channels = self._channels.get(recipient)
        if not channels:
            return
        channels.discard(ws)
        if not channels:
            del self._channels[recipient]
        log.info("ws_recipient_disconnected", recipient=recipient)

    def connected(self, recipient: str) -> int:
        return len(self._channels.get(recipient, ()))

    async def notify(self, event: TriggerEvent) -> None:
        if not event.recipient:
            return
        channels = list(self._channels.get(event.recipient, ()))
        if not channels:
            log.debug("ws_no_live_channel", alert_id=event.alert_id, recipient=event.recipient)
            return
        payload = {"type": "alertTriggered", **event.model_dump(mode="json", by_alias=True)}
        for ws in channels:
            try:
                await ws.send_json(payload)
            except Exception as e:
                log.warning("ws_send_failed", recipient=event.recipient, error=str(e))
                self.unregister(event.recipient, ws)


class FanoutDispatcher:
    """Calls every dispatcher; one failing does not stop the others."""

    def __init__(self, dispatchers: Sequence[Dispatcher]) -> None:
        self.dispatchers = list(dispatchers)

    async def notify(self, event: TriggerEvent) -> None:
        results = await asyncio.gather(*(d.notify(event) for d in self.dispatchers), return_exceptions=True)
        for dispatcher, result in zip(self.dispatchers, results):
            if isinstance(result, Exception):
                log.warning(
                    "dispatcher_failed",
                    dispatcher=type(dispatcher).__name__,
                    alert_id=event.alert_id,
                    error=str(result),
                )
