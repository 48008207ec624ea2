"""Shared domain types for the trading loop."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Literal

from signal_trader.schemas import (
    ConnectionStatus,
    MarketSample,
    PositionSide,
    SystemState,
    TradingPosition,
    TradingSignal,
    utcnow,
)

DecisionAction = Literal["buy", "sell", "hold", "rebalance"]


class EngineStatus(str, Enum):
    """Session lifecycle: stopped -> starting -> running -> stopping -> stopped."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass(slots=True, frozen=True)
class TradingDecision:
    """One decision produced by the decision engine, dispatched at most once."""

    action: DecisionAction
    symbol: str
    amount: float
    price: float
    confidence: float
    reasoning: str
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def is_actionable(self) -> bool:
        return self.action in ("buy", "sell") and self.amount > 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "action": self.action,
            "symbol": self.symbol,
            "amount": self.amount,
            "price": self.price,
            "confidence": self.confidence,
            "reasoning": self.reasoning,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(slots=True)
class TradeRequest:
    """Trade submitted to the risk engine for validation."""

    symbol: str
    side: PositionSide
    amount: float
    price: float
    market_price: float | None = None
    available_balance: float | None = None
    signal: TradingSignal | None = None

    @property
    def notional(self) -> float:
        return self.amount * self.price


@dataclass(slots=True)
class RiskVerdict:
    """Result of trade validation."""

    valid: bool
    reason: str | None = None
    adjusted_amount: float | None = None


@dataclass(slots=True)
class RiskStatus:
    emergency_stop_active: bool
    daily_loss: float
    open_positions: int
    daily_loss_limit: float
    max_positions: int


@dataclass(slots=True)
class EngineState:
    """Engine-wide counters exposed to the control surface."""

    status: EngineStatus = EngineStatus.STOPPED
    start_time: datetime | None = None
    total_trades: int = 0
    active_positions: int = 0
    last_market_update: datetime | None = None
    last_signal_processed: datetime | None = None

    @property
    def is_running(self) -> bool:
        return self.status == EngineStatus.RUNNING


@dataclass(slots=True)
class ErrorStatistics:
    total_errors: int
    errors_by_service: dict[str, int]
    recent_errors: int
    recovery_attempts: dict[str, int]


@dataclass(slots=True)
class RecoveryStatus:
    connection_status: ConnectionStatus
    error_statistics: ErrorStatistics
    is_in_recovery_mode: bool
    system_state: SystemState


def pnl_percentage(position: TradingPosition, price: float) -> float:
    """Unrealized return in percent at ``price``; sign inverted for short positions."""
    if position.entry_price <= 0:
        return 0.0
    pct = (price - position.entry_price) / position.entry_price * 100
    return pct if position.side == "buy" else -pct


def mark_to_market(position: TradingPosition, price: float) -> TradingPosition:
    """Return a copy of ``position`` valued at ``price``."""
    direction = 1.0 if position.side == "buy" else -1.0
    pnl = (price - position.entry_price) * position.amount * direction
    return position.model_copy(update={"current_price": price, "unrealized_pnl": pnl})


def is_valid_sample(sample: MarketSample) -> bool:
    """Integrity check for samples that may have bypassed model validation."""
    if not sample.symbol or not isinstance(sample.symbol, str):
        return False
    if not isinstance(sample.timestamp, int) or sample.timestamp <= 0:
        return False
    for value in (sample.price, sample.volume):
        if not isinstance(value, (int, float)) or not math.isfinite(value) or value <= 0:
            return False
    return True
