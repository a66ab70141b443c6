"""Market cache - active market snapshot for existence checks and search."""

from polyalert.cache.markets import MarketCache, MarketSnapshot

__all__ = ["MarketCache", "MarketSnapshot"]
