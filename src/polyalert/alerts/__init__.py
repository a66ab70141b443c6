"""Alert lifecycle - validation, engine and notification dispatch."""

from polyalert.alerts.dispatch import (
    Dispatcher,
    FanoutDispatcher,
    LogDispatcher,
    TelegramDispatcher,
    WebSocketHub,
)
from polyalert.alerts.engine import AlertEngine, TickResult
from polyalert.alerts.validator import ValidationResult, ensure_valid, validate

__all__ = [
    "AlertEngine",
    "TickResult",
    "Dispatcher",
    "FanoutDispatcher",
    "LogDispatcher",
    "TelegramDispatcher",
    "WebSocketHub",
    "ValidationResult",
    "ensure_valid",
    "validate",
]
