"""Signal-to-decision logic and the continuous position sweep."""

from __future__ import annotations

from collections import deque
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any

from signal_trader.config import Settings
from signal_trader.errors import TradingError
from signal_trader.events import DecisionIssued, EventBus, RebalanceRecommended
from signal_trader.risk.rules import RiskEngine
from signal_trader.schemas import MarketSample, TradingPosition, TradingSignal, utcnow
from signal_trader.types import TradeRequest, TradingDecision, mark_to_market, pnl_percentage
from signal_trader.utils.logging import get_logger, log_trade_signal
from signal_trader.utils.scheduling import PeriodicTask

BalanceProvider = Callable[[], Awaitable[float]]

_RECENT_SIGNALS_PER_SYMBOL = 10

# Sell rules, in percent of entry value unless noted.
_PROFIT_CONFIDENCE = 0.8
_PROFIT_MIN_PNL = 1.0
_LARGE_GAIN_PNL = 15.0
_CUT_LOSS_PNL = -5.0
_CUT_LOSS_CONFIDENCE = 0.7
_FULL_EXIT_LOSS_PNL = -10.0
_PARTIAL_EXIT_GAIN_PNL = 10.0
_PARTIAL_EXIT_SHARE = 0.6
_FULL_EXIT_CONFIDENCE = 0.9
_DEFAULT_EXIT_SHARE = 0.5

# Position increase rules.
_INCREASE_MIN_PNL = 2.0
_INCREASE_CONFIDENCE = 0.8
_INCREASE_NORMAL_SHARE = 0.5
_INCREASE_POSITION_SHARE = 0.3

# Sweep rules.
_STOP_LOSS_FILL_BIAS = 0.01
_TAKE_PROFIT_SHARE = 0.5
_TAKE_PROFIT_CONFIDENCE = 0.8
_REBALANCE_SHARE = 0.3
_REBALANCE_CONFIDENCE = 0.7


def close_side(position: TradingPosition) -> str:
    """Order side that reduces ``position``."""
    return "sell" if position.side == "buy" else "buy"


class DecisionEngine:
    """Turns (signal, sample) pairs into decisions and sweeps open positions on a timer.

    Positions and samples held here are copies fed by the session; the engine
    never mutates exchange state itself.
    """

    def __init__(
        self,
        settings: Settings,
        risk: RiskEngine,
        bus: EventBus,
        balance_provider: BalanceProvider,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._settings = settings
        self._risk = risk
        self._bus = bus
        self._balance_provider = balance_provider
        self._clock = clock
        self._logger = get_logger("signal_trader.decision.engine")
        self._positions: dict[str, TradingPosition] = {}
        self._samples: dict[str, MarketSample] = {}
        self._recent_signals: dict[str, deque[TradingSignal]] = {}
        self._last_decision: dict[str, datetime] = {}
        self._monitor = PeriodicTask(
            "continuous_sweep", settings.monitoring_interval, self.continuous_sweep
        )

    # ------------------------------------------------------------ inputs

    def update_settings(self, settings: Settings) -> None:
        self._settings = settings

    def update_position(self, position: TradingPosition) -> None:
        if position.status == "open" and position.amount > 0:
            self._positions[position.id] = position
        else:
            self._positions.pop(position.id, None)

    def remove_position(self, position_id: str) -> None:
        self._positions.pop(position_id, None)

    def update_market_data(self, sample: MarketSample) -> None:
        self._samples[sample.symbol] = sample

    def add_signal(self, signal: TradingSignal) -> None:
        history = self._recent_signals.setdefault(
            signal.symbol, deque(maxlen=_RECENT_SIGNALS_PER_SYMBOL)
        )
        history.append(signal)

    def recent_signals(self, symbol: str) -> list[TradingSignal]:
        return list(self._recent_signals.get(symbol, ()))

    # ------------------------------------------------------------ routing

    def is_stale(self, signal: TradingSignal) -> bool:
        age = (self._clock() - signal.timestamp).total_seconds()
        return age > self._settings.signal_max_age

    def is_throttled(self, symbol: str) -> bool:
        last = self._last_decision.get(symbol)
        if last is None:
            return False
        return (self._clock() - last).total_seconds() < self._settings.decision_cooldown

    async def evaluate_signal(
        self, signal: TradingSignal, sample: MarketSample
    ) -> TradingDecision | None:
        """Route one signal. Returns None while the symbol is throttled.

        Stale signals and disabled signal types resolve to ``hold``.
        """
        if self.is_stale(signal):
            self._logger.info("signal_stale", symbol=signal.symbol, timestamp=signal.timestamp)
            return self._hold(signal.symbol, sample.price, signal.confidence, "Signal is stale")
        if self.is_throttled(signal.symbol):
            self._logger.debug("decision_throttled", symbol=signal.symbol)
            return None

        log_trade_signal(self._logger, signal)
        if signal.action == "buy":
            decision = await self.evaluate_buy(signal, sample)
        elif signal.action == "sell":
            decision = await self.evaluate_sell(signal, sample)
        else:
            decision = self._hold(signal.symbol, sample.price, signal.confidence, "Hold signal")

        if decision is None:
            decision = self._hold(
                signal.symbol, sample.price, signal.confidence, f"{signal.action} signals disabled"
            )
        if decision.is_actionable:
            self._last_decision[signal.symbol] = self._clock()
        self._logger.info(
            "decision_made",
            symbol=decision.symbol,
            action=decision.action,
            amount=decision.amount,
            price=decision.price,
            reasoning=decision.reasoning,
        )
        return decision

    # ---------------------------------------------------------------- buy

    async def evaluate_buy(
        self, signal: TradingSignal, sample: MarketSample
    ) -> TradingDecision | None:
        if not self._settings.enable_buy_signals:
            return None
        if signal.confidence < self._settings.min_confidence_threshold:
            return self._below_threshold(signal, sample)

        existing = self._open_position(signal.symbol, side="buy")
        if existing is not None:
            return await self.evaluate_position_increase(existing, signal, sample)

        if len(self._symbol_positions(signal.symbol)) >= self._settings.max_positions_per_symbol:
            return self._hold(
                signal.symbol,
                sample.price,
                signal.confidence,
                f"Maximum positions ({self._settings.max_positions_per_symbol}) "
                f"reached for {signal.symbol}",
            )

        balance = await self._balance_provider()
        if balance < self._settings.min_trade_value:
            return self._hold(
                signal.symbol,
                sample.price,
                signal.confidence,
                "Insufficient balance for new position",
            )

        amount = self._risk.size_position(signal, balance)
        verdict = await self._risk.validate(
            TradeRequest(
                symbol=signal.symbol,
                side="buy",
                amount=amount,
                price=signal.target_price,
                market_price=sample.price,
                available_balance=balance,
                signal=signal,
            )
        )
        if not verdict.valid:
            return self._hold(
                signal.symbol,
                sample.price,
                signal.confidence,
                verdict.reason or "Trade validation failed",
            )

        return TradingDecision(
            action="buy",
            symbol=signal.symbol,
            amount=amount,
            price=signal.target_price,
            confidence=signal.confidence,
            reasoning=f"Buy signal with {signal.confidence * 100:.1f}% confidence. "
            f"{signal.reasoning}".strip(),
            timestamp=self._clock(),
        )

    async def evaluate_position_increase(
        self,
        position: TradingPosition,
        signal: TradingSignal,
        sample: MarketSample,
    ) -> TradingDecision:
        """Add to a winning position on a very confident signal."""
        pnl = pnl_percentage(position, sample.price)
        if pnl <= _INCREASE_MIN_PNL or signal.confidence <= _INCREASE_CONFIDENCE:
            return self._hold(
                signal.symbol,
                sample.price,
                signal.confidence,
                "Existing position - conditions not met for increase",
            )

        balance = await self._balance_provider()
        if balance <= self._settings.min_increase_balance:
            return self._hold(
                signal.symbol,
                sample.price,
                signal.confidence,
                "Insufficient balance for position increase",
            )

        normal = self._risk.size_position(signal, balance)
        amount = min(normal * _INCREASE_NORMAL_SHARE, position.amount * _INCREASE_POSITION_SHARE)
        verdict = await self._risk.validate(
            TradeRequest(
                symbol=signal.symbol,
                side="buy",
                amount=amount,
                price=signal.target_price,
                market_price=sample.price,
                available_balance=balance,
                signal=signal,
            )
        )
        if not verdict.valid:
            adjusted = verdict.adjusted_amount or 0.0
            if adjusted * signal.target_price < self._settings.min_trade_value:
                return self._hold(
                    signal.symbol,
                    sample.price,
                    signal.confidence,
                    verdict.reason or "Trade validation failed",
                )
            amount = adjusted

        return TradingDecision(
            action="buy",
            symbol=signal.symbol,
            amount=amount,
            price=signal.target_price,
            confidence=signal.confidence,
            reasoning=f"Increase position - current P&L: {pnl:.2f}%, high confidence signal",
            timestamp=self._clock(),
        )

    # --------------------------------------------------------------- sell

    async def evaluate_sell(
        self, signal: TradingSignal, sample: MarketSample
    ) -> TradingDecision | None:
        if not self._settings.enable_sell_signals:
            return None
        if signal.confidence < self._settings.min_confidence_threshold:
            return self._below_threshold(signal, sample)

        position = self._open_position(signal.symbol, side="buy")
        if position is None:
            return self._hold(
                signal.symbol, sample.price, signal.confidence, "No open buy position to sell"
            )

        marked = mark_to_market(position, sample.price)
        pnl = pnl_percentage(position, sample.price)
        stop_loss = self._risk.check_stop_loss(marked)
        reason = self._sell_reason(signal, pnl, stop_loss=stop_loss)
        if reason is None:
            return self._hold(
                signal.symbol,
                sample.price,
                signal.confidence,
                "Conditions not met for sell execution",
            )

        return TradingDecision(
            action="sell",
            symbol=signal.symbol,
            amount=self._sell_amount(position, signal, pnl, stop_loss=stop_loss),
            price=signal.target_price,
            confidence=signal.confidence,
            reasoning=f"Sell signal: {reason}. P&L: {pnl:.2f}%",
            timestamp=self._clock(),
        )

    @staticmethod
    def _sell_reason(signal: TradingSignal, pnl: float, *, stop_loss: bool) -> str | None:
        if stop_loss:
            return "Stop-loss triggered"
        if signal.confidence > _PROFIT_CONFIDENCE and pnl > _PROFIT_MIN_PNL:
            return "High confidence sell signal with profit"
        if pnl > _LARGE_GAIN_PNL:
            return "Taking profits at significant gain"
        if pnl < _CUT_LOSS_PNL and signal.confidence > _CUT_LOSS_CONFIDENCE:
            return "Cutting losses with confident sell signal"
        return None

    @staticmethod
    def _sell_amount(
        position: TradingPosition, signal: TradingSignal, pnl: float, *, stop_loss: bool
    ) -> float:
        if stop_loss or pnl < _FULL_EXIT_LOSS_PNL:
            return position.amount
        if pnl > _PARTIAL_EXIT_GAIN_PNL:
            return position.amount * _PARTIAL_EXIT_SHARE
        if signal.confidence > _FULL_EXIT_CONFIDENCE:
            return position.amount
        return position.amount * _DEFAULT_EXIT_SHARE

    # -------------------------------------------------------------- sweep

    async def continuous_sweep(self) -> list[TradingDecision]:
        """Force stop-loss exits, take profits and flag concentrated positions.

        Issued decisions are published as ``DecisionIssued``. One symbol's
        failure never stops the others.
        """
        issued: list[TradingDecision] = []
        for position in list(self._positions.values()):
            try:
                decision = self._manage_position(position)
            except Exception as exc:  # noqa: BLE001 - isolate per-symbol failures.
                self._logger.exception(
                    "sweep_position_failed", symbol=position.symbol, error=str(exc)
                )
                continue
            if decision is None:
                continue
            self._last_decision[position.symbol] = self._clock()
            issued.append(decision)
            self._logger.info(
                "sweep_decision",
                symbol=decision.symbol,
                action=decision.action,
                amount=decision.amount,
                reasoning=decision.reasoning,
            )
            await self._bus.publish(DecisionIssued(decision=decision))

        await self._check_rebalancing()
        return issued

    def _manage_position(self, position: TradingPosition) -> TradingDecision | None:
        sample = self._samples.get(position.symbol)
        if sample is None:
            return None
        marked = mark_to_market(position, sample.price)
        self._positions[position.id] = marked
        side = close_side(position)

        # Stop-loss ignores the per-symbol throttle.
        if self._risk.check_stop_loss(marked):
            bias = -_STOP_LOSS_FILL_BIAS if side == "sell" else _STOP_LOSS_FILL_BIAS
            return TradingDecision(
                action=side,
                symbol=position.symbol,
                amount=position.amount,
                price=sample.price * (1 + bias),
                confidence=1.0,
                reasoning="Stop-loss triggered",
                timestamp=self._clock(),
            )

        if self.is_throttled(position.symbol):
            return None

        pnl = pnl_percentage(position, sample.price)
        if pnl > self._settings.take_profit_pct:
            return TradingDecision(
                action=side,
                symbol=position.symbol,
                amount=position.amount * _TAKE_PROFIT_SHARE,
                price=sample.price,
                confidence=_TAKE_PROFIT_CONFIDENCE,
                reasoning=f"Take profit at {pnl:.2f}% gain",
                timestamp=self._clock(),
            )
        return None

    async def _check_rebalancing(self) -> None:
        if not self._positions:
            return
        try:
            balance = await self._balance_provider()
        except TradingError as exc:
            self._logger.warning("rebalance_check_skipped", error=str(exc))
            return

        values: dict[str, tuple[TradingPosition, float, float]] = {}
        for position in self._positions.values():
            sample = self._samples.get(position.symbol)
            if sample is None:
                continue
            values[position.id] = (position, sample.price, position.amount * sample.price)
        total = balance + sum(value for _, _, value in values.values())
        if total <= 0:
            return

        for position, price, value in values.values():
            share = value / total
            if share <= self._settings.rebalance_threshold:
                continue
            decision = TradingDecision(
                action="rebalance",
                symbol=position.symbol,
                amount=position.amount * _REBALANCE_SHARE,
                price=price,
                confidence=_REBALANCE_CONFIDENCE,
                reasoning=f"Position is {share * 100:.1f}% of portfolio - rebalancing",
                timestamp=self._clock(),
            )
            self._logger.info("rebalance_recommended", symbol=position.symbol, share=share)
            await self._bus.publish(RebalanceRecommended(decision=decision, portfolio_share=share))

    # ----------------------------------------------------------- lifecycle

    @property
    def monitoring_active(self) -> bool:
        return self._monitor.running

    def start_monitoring(self) -> None:
        if not self._settings.enable_continuous_monitoring:
            self._logger.info("continuous_monitoring_disabled")
            return
        self._monitor = PeriodicTask(
            "continuous_sweep", self._settings.monitoring_interval, self.continuous_sweep
        )
        self._monitor.start()
        self._logger.info(
            "continuous_monitoring_started", interval=self._settings.monitoring_interval
        )

    async def stop_monitoring(self) -> None:
        if not self._monitor.running:
            return
        await self._monitor.stop()
        self._logger.info("continuous_monitoring_stopped")

    def get_trading_stats(self) -> dict[str, Any]:
        return {
            "active_positions": len(self._positions),
            "total_symbols": len(self._recent_signals),
            "monitoring_active": self.monitoring_active,
            "last_decisions": dict(self._last_decision),
        }

    # ------------------------------------------------------------ helpers

    def _symbol_positions(self, symbol: str) -> list[TradingPosition]:
        return [p for p in self._positions.values() if p.symbol == symbol and p.status == "open"]

    def _open_position(self, symbol: str, *, side: str) -> TradingPosition | None:
        for position in self._symbol_positions(symbol):
            if position.side == side:
                return position
        return None

    def _below_threshold(self, signal: TradingSignal, sample: MarketSample) -> TradingDecision:
        return self._hold(
            signal.symbol,
            sample.price,
            signal.confidence,
            f"Signal confidence {signal.confidence} below threshold "
            f"{self._settings.min_confidence_threshold}",
        )

    def _hold(self, symbol: str, price: float, confidence: float, reason: str) -> TradingDecision:
        return TradingDecision(
            action="hold",
            symbol=symbol,
            amount=0.0,
            price=price,
            confidence=confidence,
            reasoning=reason,
            timestamp=self._clock(),
        )
