"""Signal Trader - AI signal driven trading loop with risk limits and failure recovery."""

__version__ = "0.2.0"
