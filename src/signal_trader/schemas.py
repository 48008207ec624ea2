"""Validated boundary models exchanged with collaborators and persisted in snapshots."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

SignalAction = Literal["buy", "sell", "hold"]
PositionSide = Literal["buy", "sell"]
PositionStatus = Literal["open", "closed"]
ExecutionStatus = Literal["pending", "filled", "cancelled", "failed"]
ServiceStatus = Literal["connected", "disconnected", "recovering"]
NetworkStatus = Literal["online", "offline", "unstable"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _CamelModel(BaseModel):
    """Snake_case in Python, camelCase on the wire and on disk."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        allow_inf_nan=False,
        extra="ignore",
    )


class MarketSample(_CamelModel):
    """One market observation for a symbol. ``timestamp`` is epoch milliseconds."""

    symbol: str = Field(min_length=1)
    price: float = Field(gt=0)
    volume: float = Field(gt=0)
    timestamp: int = Field(gt=0)
    bid: float | None = Field(default=None, gt=0)
    ask: float | None = Field(default=None, gt=0)
    change_24h: float | None = None


class TradingSignal(_CamelModel):
    """Advisory signal from the AI provider. Untrusted, immutable."""

    model_config = ConfigDict(frozen=True)

    symbol: str = Field(min_length=1)
    action: SignalAction
    confidence: float = Field(ge=0.0, le=1.0)
    target_price: float = Field(gt=0)
    stop_loss: float | None = Field(default=None, ge=0)
    reasoning: str = ""
    timestamp: datetime = Field(default_factory=utcnow)


class TradingPosition(_CamelModel):
    """Open exposure as reported by the exchange."""

    id: str
    symbol: str
    side: PositionSide
    amount: float = Field(ge=0)
    entry_price: float = Field(gt=0)
    current_price: float = Field(default=0.0, ge=0)
    unrealized_pnl: float = Field(default=0.0, alias="unrealizedPnL")
    status: PositionStatus = "open"
    timestamp: datetime = Field(default_factory=utcnow)


class TradeExecution(_CamelModel):
    """Exchange response to a placed order."""

    id: str
    order_id: str
    symbol: str
    side: PositionSide
    amount: float = Field(ge=0)
    price: float = Field(ge=0)
    fee: float = Field(default=0.0, ge=0)
    status: ExecutionStatus
    timestamp: datetime = Field(default_factory=utcnow)


class Balance(_CamelModel):
    available: float = Field(default=0.0, ge=0)
    locked: float = Field(default=0.0, ge=0)


class CircuitBreakerState(_CamelModel):
    """Per-dependency breaker. Opens only once ``failure_count`` reaches the threshold."""

    is_open: bool = False
    failure_count: int = Field(default=0, ge=0)
    last_failure: datetime | None = None
    next_retry_time: datetime | None = None


class ConnectionStatus(_CamelModel):
    ai: ServiceStatus = "disconnected"
    exchange: ServiceStatus = "disconnected"
    network: NetworkStatus = "offline"
    last_check: datetime = Field(default_factory=utcnow)


class SystemState(_CamelModel):
    """Resilience snapshot written on a timer and on shutdown.

    Serialized with ``by_alias=True`` so the file keeps the camelCase layout
    (``isRunning``, ``activePositions``, ``errorCounts`` ...).
    """

    is_running: bool = False
    start_time: datetime | None = None
    active_positions: list[TradingPosition] = Field(default_factory=list)
    pending_signals: list[TradingSignal] = Field(default_factory=list)
    market_data_cache: dict[str, MarketSample] = Field(default_factory=dict)
    error_counts: dict[str, int] = Field(default_factory=dict)
    last_errors: dict[str, datetime] = Field(default_factory=dict)
    recovery_attempts: dict[str, int] = Field(default_factory=dict)
    last_save_time: datetime = Field(default_factory=utcnow)
    connection_status: ConnectionStatus = Field(default_factory=ConnectionStatus)
    circuit_breakers: dict[str, CircuitBreakerState] = Field(default_factory=dict)
