"""Hard risk control rules: sizing, trade validation, stop-loss and the emergency stop."""

from __future__ import annotations

import math
from collections.abc import Callable
from datetime import date, datetime
from typing import Any

from signal_trader.config import Settings
from signal_trader.events import EmergencyStopActivated, EmergencyStopReset, EventBus
from signal_trader.schemas import TradingPosition, TradingSignal, utcnow
from signal_trader.types import RiskStatus, RiskVerdict, TradeRequest
from signal_trader.utils.logging import get_logger, log_risk_event

EMERGENCY_STOP_REASON = "Emergency stop is active"

_CONFIG_FIELDS = {
    "max_daily_loss",
    "max_position_size",
    "stop_loss_percentage",
    "max_open_positions",
    "emergency_stop_enabled",
    "min_trade_value",
    "position_size_fraction",
    "max_balance_fraction",
    "max_slippage_pct",
    "max_price_deviation_pct",
    "fee_buffer_pct",
}


class RiskEngine:
    """Rule-based risk controls.

    Owns the tracked open positions, the day's realized loss and the
    emergency-stop flag. Other components only read verdicts.
    """

    def __init__(
        self,
        settings: Settings,
        bus: EventBus | None = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._settings = settings
        self._bus = bus or EventBus()
        self._clock = clock
        self._logger = get_logger("signal_trader.risk.rules")
        self._positions: dict[str, TradingPosition] = {}
        self._emergency_stop_active = False
        self._loss_day: date = clock().date()
        self._realized_loss = 0.0

    @property
    def emergency_stop_active(self) -> bool:
        return self._emergency_stop_active

    # ---------------------------------------------------------------- sizing

    def size_position(self, signal: TradingSignal, available_balance: float) -> float:
        """Quantity to buy for ``signal``, or 0.0 when the balance cannot fund a minimum trade."""
        min_value = self._settings.min_trade_value
        if available_balance < min_value or signal.target_price <= 0:
            return 0.0
        value = available_balance * self._settings.position_size_fraction * signal.confidence
        cap = min(
            self._settings.max_position_size,
            available_balance * self._settings.max_balance_fraction,
        )
        value = max(min(value, cap), min_value)
        return value / signal.target_price

    # ------------------------------------------------------------ validation

    async def validate(self, request: TradeRequest) -> RiskVerdict:
        """Check one trade against every configured limit, first failure wins."""
        if self._emergency_stop_active:
            return self._reject(request, EMERGENCY_STOP_REASON)

        if (
            request.amount <= 0
            or request.price <= 0
            or not math.isfinite(request.amount)
            or not math.isfinite(request.price)
        ):
            return self._reject(request, "Invalid trade amount or price")

        if request.market_price is not None and request.market_price > 0:
            band = self._check_price_band(request)
            if band is not None:
                return self._reject(request, band)

        # Sells only reduce exposure.
        if request.side == "sell":
            return RiskVerdict(valid=True)

        daily_loss = self.daily_loss()
        if daily_loss >= self._settings.max_daily_loss:
            return self._reject(
                request, f"Daily loss limit of ${self._settings.max_daily_loss:g} reached"
            )

        holds_symbol = any(p.symbol == request.symbol for p in self._positions.values())
        if not holds_symbol and len(self._positions) >= self._settings.max_open_positions:
            return self._reject(
                request,
                f"Maximum open positions limit of {self._settings.max_open_positions} reached",
            )

        existing = self._symbol_exposure(request.symbol)
        if existing + request.notional > self._settings.max_position_size:
            headroom = max(0.0, self._settings.max_position_size - existing)
            return self._reject(
                request,
                "Trade size exceeds maximum position size of "
                f"${self._settings.max_position_size:g}",
                adjusted_amount=headroom / request.price,
            )

        if request.notional < self._settings.min_trade_value:
            return self._reject(
                request, f"Trade value below minimum of ${self._settings.min_trade_value:g}"
            )

        if request.available_balance is not None:
            required = request.notional * (1 + self._settings.fee_buffer_pct / 100)
            if request.available_balance < required:
                return self._reject(
                    request,
                    f"Insufficient balance: required ${required:.2f}, "
                    f"available ${request.available_balance:.2f}",
                )

        return RiskVerdict(valid=True)

    def _check_price_band(self, request: TradeRequest) -> str | None:
        market = request.market_price or 0.0
        deviation_pct = abs(request.price - market) / market * 100
        if deviation_pct > self._settings.max_price_deviation_pct:
            return (
                f"Price deviates {deviation_pct:.2f}% from market "
                f"(max {self._settings.max_price_deviation_pct:g}%)"
            )
        slippage = self._settings.max_slippage_pct / 100
        if request.side == "buy" and request.price > market * (1 + slippage):
            return f"Buy price exceeds market by more than {self._settings.max_slippage_pct:g}%"
        if request.side == "sell" and request.price < market * (1 - slippage):
            return f"Sell price below market by more than {self._settings.max_slippage_pct:g}%"
        return None

    def _reject(
        self,
        request: TradeRequest,
        reason: str,
        *,
        adjusted_amount: float | None = None,
    ) -> RiskVerdict:
        self._logger.info(
            "trade_rejected",
            symbol=request.symbol,
            side=request.side,
            amount=request.amount,
            price=request.price,
            reason=reason,
        )
        return RiskVerdict(valid=False, reason=reason, adjusted_amount=adjusted_amount)

    def _symbol_exposure(self, symbol: str) -> float:
        total = 0.0
        for position in self._positions.values():
            if position.symbol != symbol:
                continue
            price = position.current_price or position.entry_price
            total += position.amount * price
        return total

    # ------------------------------------------------------------- stop-loss

    def check_stop_loss(self, position: TradingPosition) -> bool:
        """True when the position's unrealized loss reaches ``stop_loss_percentage``."""
        cost = position.entry_price * position.amount
        if cost <= 0 or position.unrealized_pnl >= 0:
            return False
        loss_pct = -position.unrealized_pnl / cost * 100
        return loss_pct >= self._settings.stop_loss_percentage

    # ---------------------------------------------------- position tracking

    def track_position(self, position: TradingPosition) -> None:
        if position.status != "open" or position.amount <= 0:
            self.untrack_position(position.id)
            return
        self._positions[position.id] = position

    def untrack_position(self, position_id: str) -> None:
        self._positions.pop(position_id, None)

    def tracked_positions(self) -> list[TradingPosition]:
        return list(self._positions.values())

    def record_realized_pnl(self, pnl: float) -> None:
        """Count a closed trade's result toward the day's loss."""
        self._roll_day()
        if pnl < 0:
            self._realized_loss += -pnl

    def daily_loss(self) -> float:
        """Realized losses today plus open unrealized losses."""
        self._roll_day()
        unrealized = sum(max(0.0, -p.unrealized_pnl) for p in self._positions.values())
        return self._realized_loss + unrealized

    def _roll_day(self) -> None:
        today = self._clock().date()
        if today != self._loss_day:
            self._logger.info("daily_loss_reset", previous_day=self._loss_day.isoformat())
            self._loss_day = today
            self._realized_loss = 0.0

    # ----------------------------------------------------------- enforcement

    async def enforce_limits(self) -> RiskStatus:
        """Recompute the daily loss and trip the emergency stop when it exceeds the limit."""
        daily_loss = self.daily_loss()
        if daily_loss > self._settings.max_daily_loss and not self._emergency_stop_active:
            log_risk_event(
                self._logger,
                event_type="daily_loss_limit",
                action="emergency_stop",
                daily_loss=round(daily_loss, 2),
                limit=self._settings.max_daily_loss,
            )
            await self.emergency_stop(
                f"Daily loss {daily_loss:.2f} exceeded limit {self._settings.max_daily_loss:g}"
            )
        if len(self._positions) >= self._settings.max_open_positions:
            self._logger.warning(
                "max_open_positions_reached",
                open_positions=len(self._positions),
                limit=self._settings.max_open_positions,
            )
        return self.get_risk_status()

    async def emergency_stop(self, reason: str = "manual") -> bool:
        """Block all new trades. No effect when the safety switch is disabled."""
        if not self._settings.emergency_stop_enabled:
            self._logger.warning("emergency_stop_disabled", reason=reason)
            return False
        if self._emergency_stop_active:
            return True
        self._emergency_stop_active = True
        daily_loss = self.daily_loss()
        log_risk_event(
            self._logger,
            event_type="emergency_stop",
            action="activated",
            reason=reason,
            daily_loss=round(daily_loss, 2),
        )
        await self._bus.publish(EmergencyStopActivated(reason=reason, daily_loss=daily_loss))
        return True

    async def reset_emergency_stop(self) -> None:
        was_active = self._emergency_stop_active
        self._emergency_stop_active = False
        self._logger.info("emergency_stop_reset", was_active=was_active)
        if was_active:
            await self._bus.publish(EmergencyStopReset())

    # ---------------------------------------------------------------- status

    def get_risk_status(self) -> RiskStatus:
        return RiskStatus(
            emergency_stop_active=self._emergency_stop_active,
            daily_loss=self.daily_loss(),
            open_positions=len(self._positions),
            daily_loss_limit=self._settings.max_daily_loss,
            max_positions=self._settings.max_open_positions,
        )

    def update_config(self, **changes: Any) -> None:
        """Apply risk limit changes at runtime."""
        unknown = set(changes) - _CONFIG_FIELDS
        if unknown:
            raise ValueError(f"unknown_risk_settings: {sorted(unknown)}")
        self._settings = self._settings.with_changes(**changes)
        self._logger.info("risk_config_updated", **changes)
