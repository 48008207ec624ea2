"""Trading session orchestration."""

from signal_trader.session.orchestrator import TradingSession

__all__ = ["TradingSession"]
