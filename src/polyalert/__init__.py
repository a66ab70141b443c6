"""polyalert - price threshold alerts on Polymarket outcomes."""

__version__ = "0.1.0"
