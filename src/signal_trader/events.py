"""Typed notification channel between components."""

from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, TypeVar

from signal_trader.schemas import TradeExecution, TradingPosition, utcnow
from signal_trader.types import TradingDecision
from signal_trader.utils.logging import get_logger


@dataclass(frozen=True, slots=True, kw_only=True)
class EngineEvent:
    timestamp: datetime = field(default_factory=utcnow)


@dataclass(frozen=True, slots=True, kw_only=True)
class TradingStarted(EngineEvent):
    trading_pairs: tuple[str, ...]


@dataclass(frozen=True, slots=True, kw_only=True)
class TradingStopped(EngineEvent):
    session_seconds: float
    total_trades: int
    active_positions: int


@dataclass(frozen=True, slots=True, kw_only=True)
class MarketSampleRejected(EngineEvent):
    symbol: str
    error: str


@dataclass(frozen=True, slots=True, kw_only=True)
class DecisionIssued(EngineEvent):
    decision: TradingDecision


@dataclass(frozen=True, slots=True, kw_only=True)
class RebalanceRecommended(EngineEvent):
    decision: TradingDecision
    portfolio_share: float


@dataclass(frozen=True, slots=True, kw_only=True)
class TradeExecuted(EngineEvent):
    decision: TradingDecision
    execution: TradeExecution


@dataclass(frozen=True, slots=True, kw_only=True)
class TradeFailed(EngineEvent):
    decision: TradingDecision
    error: str


@dataclass(frozen=True, slots=True, kw_only=True)
class StopLossTriggered(EngineEvent):
    position: TradingPosition
    execution: TradeExecution | None


@dataclass(frozen=True, slots=True, kw_only=True)
class PositionsReconciled(EngineEvent):
    active: int
    removed: tuple[str, ...]


@dataclass(frozen=True, slots=True, kw_only=True)
class EmergencyStopActivated(EngineEvent):
    reason: str
    daily_loss: float


@dataclass(frozen=True, slots=True, kw_only=True)
class EmergencyStopReset(EngineEvent):
    pass


@dataclass(frozen=True, slots=True, kw_only=True)
class CircuitBreakerOpened(EngineEvent):
    service: str
    failure_count: int
    next_retry_time: datetime


@dataclass(frozen=True, slots=True, kw_only=True)
class AuthenticationFailed(EngineEvent):
    service: str
    error: str


@dataclass(frozen=True, slots=True, kw_only=True)
class RateLimited(EngineEvent):
    service: str
    error: str
    cooldown_seconds: float


@dataclass(frozen=True, slots=True, kw_only=True)
class NetworkErrorDetected(EngineEvent):
    error: str
    retryable: bool


@dataclass(frozen=True, slots=True, kw_only=True)
class NetworkLost(EngineEvent):
    pass


@dataclass(frozen=True, slots=True, kw_only=True)
class NetworkRestored(EngineEvent):
    pass


@dataclass(frozen=True, slots=True, kw_only=True)
class RecoverySucceeded(EngineEvent):
    service: str


@dataclass(frozen=True, slots=True, kw_only=True)
class RecoveryFailed(EngineEvent):
    service: str


@dataclass(frozen=True, slots=True, kw_only=True)
class RecoveryAbandoned(EngineEvent):
    service: str
    attempts: int


@dataclass(frozen=True, slots=True, kw_only=True)
class ErrorLogged(EngineEvent):
    context: str
    error_type: str
    code: str
    message: str


@dataclass(frozen=True, slots=True, kw_only=True)
class StateRestored(EngineEvent):
    positions: int
    pending_signals: int


E = TypeVar("E", bound=EngineEvent)
Handler = Callable[[Any], Awaitable[None] | None]


class EventBus:
    """Explicit publish/subscribe channel, one instance per engine.

    Handlers are matched with ``isinstance`` so subscribing to ``EngineEvent``
    receives everything. Handlers run in subscription order; a failing handler
    is logged and the remaining handlers still run.
    """

    def __init__(self) -> None:
        self._handlers: list[tuple[type[EngineEvent], Handler]] = []
        self._logger = get_logger("signal_trader.events")

    def subscribe(self, event_type: type[E], handler: Callable[[E], Any]) -> None:
        self._handlers.append((event_type, handler))

    def unsubscribe(self, event_type: type[E], handler: Callable[[E], Any]) -> None:
        self._handlers = [
            (registered_type, registered)
            for registered_type, registered in self._handlers
            if not (registered_type is event_type and registered == handler)
        ]

    async def publish(self, event: EngineEvent) -> None:
        for event_type, handler in list(self._handlers):
            if not isinstance(event, event_type):
                continue
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:  # noqa: BLE001 - one subscriber must not starve the rest.
                self._logger.exception(
                    "event_handler_failed",
                    event_type=type(event).__name__,
                    error=str(exc),
                )
