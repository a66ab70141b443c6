"""Error taxonomy. Each error carries a machine-readable code for the API."""

from __future__ import annotations


class AlertError(Exception):
    """Base class for alert service errors."""

    code = "alert_error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message or self.__class__.__name__


class InvalidAlert(AlertError):
    """Schema or domain violation on a candidate alert. Never retried."""

    code = "invalid_alert"


class UnknownMarket(AlertError):
    """Market absent from the current market cache at creation time."""

    code = "unknown_market"

    def __init__(self, market_id: str) -> None:
        super().__init__(f"Market {market_id} not found.")
        self.market_id = market_id


class DuplicateAlert(AlertError):
    """An active alert with the same (market, outcome, threshold, direction) exists."""

    code = "duplicate_alert"

    def __init__(self, existing_id: str) -> None:
        super().__init__("Duplicate alert")
        self.existing_id = existing_id


class PriceFetchFailure(AlertError):
    """Transient failure reading a price for one alert."""

    code = "price_fetch_failure"


class CacheRefreshFailure(AlertError):
    """Transient failure refreshing the market cache."""

    code = "cache_refresh_failure"


class StoreFailure(AlertError):
    """Failure reading or writing the alert store."""

    code = "store_failure"
