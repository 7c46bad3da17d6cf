"""Glaskugel: YouTube summaries and the forecasts hidden inside them."""

__version__ = "0.1.0"
