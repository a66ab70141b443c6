"""Polymarket Gamma API access."""

from polyalert.polymarket.base import PriceSource
from polyalert.polymarket.gamma import GammaClient, parse_market_detail

__all__ = ["GammaClient", "PriceSource", "parse_market_detail"]
