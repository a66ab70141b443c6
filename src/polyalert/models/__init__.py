"""Canonical schema (Pydantic) - Alert, TriggerEvent, MarketSummary, MarketDetail."""

from polyalert.models.alert import DIRECTIONS, Alert, AlertStatus, Direction, TriggerEvent, is_hit, now_ms
from polyalert.models.market import MarketDetail, MarketSummary, Outcome

__all__ = [
    "Alert",
    "AlertStatus",
    "Direction",
    "DIRECTIONS",
    "TriggerEvent",
    "is_hit",
    "now_ms",
    "MarketSummary",
    "MarketDetail",
    "Outcome",
]
