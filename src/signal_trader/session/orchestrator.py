"""Trading session: lifecycle, sample ingestion, reconciliation and order dispatch."""

from __future__ import annotations

import dataclasses
import uuid
from collections.abc import Callable, Mapping
from datetime import datetime
from time import perf_counter
from typing import Any

from pydantic import ValidationError

from signal_trader.config import Settings
from signal_trader.decision.engine import DecisionEngine, close_side
from signal_trader.errors import (
    AuthenticationError,
    PersistenceError,
    SessionStartError,
    TradingError,
)
from signal_trader.events import (
    DecisionIssued,
    EmergencyStopActivated,
    EventBus,
    MarketSampleRejected,
    PositionsReconciled,
    RebalanceRecommended,
    StateRestored,
    StopLossTriggered,
    TradeExecuted,
    TradeFailed,
    TradingStarted,
    TradingStopped,
)
from signal_trader.interfaces import ExchangeClient, MarketDataFeed, SignalProvider, StateStore
from signal_trader.journal.store import JournalStore
from signal_trader.resilience.recovery import AI_SERVICE, EXCHANGE_SERVICE, RecoverySystem
from signal_trader.resilience.state_store import InMemoryStateStore
from signal_trader.risk.rules import RiskEngine
from signal_trader.schemas import (
    Balance,
    MarketSample,
    TradeExecution,
    TradingPosition,
    TradingSignal,
    utcnow,
)
from signal_trader.types import (
    EngineState,
    EngineStatus,
    RecoveryStatus,
    TradingDecision,
    is_valid_sample,
    mark_to_market,
)
from signal_trader.utils.logging import (
    bind_session_context,
    clear_session_context,
    get_logger,
    log_order_execution,
    log_slow_sample,
)
from signal_trader.utils.scheduling import PeriodicTask

_STOP_LOSS_FILL_BIAS = 0.01
_DUST = 1e-12

_SESSION_FIELDS = (
    "trading_pairs",
    "signal_processing_interval",
    "position_update_interval",
    "risk_enforcement_interval",
    "enable_auto_trading",
    "monitoring_interval",
    "min_confidence_threshold",
    "max_positions_per_symbol",
    "enable_buy_signals",
    "enable_sell_signals",
    "enable_continuous_monitoring",
    "decision_cooldown",
    "signal_max_age",
)
_RISK_FIELDS = (
    "max_daily_loss",
    "max_position_size",
    "stop_loss_percentage",
    "max_open_positions",
    "emergency_stop_enabled",
)


class TradingSession:
    """Owns the active positions, pending signals and sample cache.

    Decision and risk engines only ever see copies. Every exchange and AI call
    goes through the recovery system so failures are counted per dependency.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        exchange: ExchangeClient,
        signals: SignalProvider,
        bus: EventBus | None = None,
        feed: MarketDataFeed | None = None,
        store: StateStore | None = None,
        journal: JournalStore | None = None,
        recovery: RecoverySystem | None = None,
        risk: RiskEngine | None = None,
        decision: DecisionEngine | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._settings = settings
        self._exchange = exchange
        self._signals = signals
        self._bus = bus or EventBus()
        self._feed = feed
        self._journal = journal
        self._clock = clock
        self._logger = get_logger("signal_trader.session.orchestrator")

        self._recovery = recovery or RecoverySystem(
            settings,
            self._bus,
            store=store or InMemoryStateStore(),
            journal=journal,
            clock=clock,
        )
        self._risk = risk or RiskEngine(settings, self._bus, clock=clock)
        self._decision = decision or DecisionEngine(
            settings, self._risk, self._bus, self.available_balance, clock=clock
        )

        self._state = EngineState()
        self._session_id: str | None = None
        self._positions: dict[str, TradingPosition] = {}
        self._samples: dict[str, MarketSample] = {}
        self._pending: dict[str, TradingSignal] = {}
        self._in_flight: set[str] = set()
        self._timers: list[PeriodicTask] = []

        self._bus.subscribe(DecisionIssued, self._on_decision_issued)
        self._bus.subscribe(RebalanceRecommended, self._on_rebalance)
        self._bus.subscribe(EmergencyStopActivated, self._on_emergency_stop)
        if feed is not None:
            feed.subscribe(self.process_market_data)

    # ------------------------------------------------------------ lifecycle

    @property
    def status(self) -> EngineStatus:
        return self._state.status

    @property
    def bus(self) -> EventBus:
        return self._bus

    @property
    def recovery(self) -> RecoverySystem:
        return self._recovery

    @property
    def risk(self) -> RiskEngine:
        return self._risk

    @property
    def decision(self) -> DecisionEngine:
        return self._decision

    async def start(self) -> None:
        """Authenticate collaborators and start every timer.

        Raises ``SessionStartError`` when startup fails; the session is then
        back in ``stopped``.
        """
        if self._state.status != EngineStatus.STOPPED:
            self._logger.warning("session_already_active", status=self._state.status.value)
            return

        self._state.status = EngineStatus.STARTING
        self._session_id = uuid.uuid4().hex[:12]
        bind_session_context(self._session_id, mode=self._settings.mode.value)
        self._logger.info("session_starting", trading_pairs=self._settings.trading_pairs)

        await self._restore_state()
        try:
            await self._authenticate(EXCHANGE_SERVICE, self._exchange.authenticate)
            await self._authenticate(AI_SERVICE, self._signals.authenticate)
            if self._feed is not None:
                await self._feed.start()
        except Exception as exc:  # noqa: BLE001 - any startup failure aborts the start.
            self._state.status = EngineStatus.ERROR
            self._logger.error(
                "session_start_failed", error=str(exc), code=getattr(exc, "code", None)
            )
            self._state.status = EngineStatus.STOPPED
            clear_session_context()
            raise SessionStartError(f"Failed to start trading: {exc}") from exc

        self._recovery.register_probe(EXCHANGE_SERVICE, self._exchange.authenticate)
        self._recovery.register_probe(AI_SERVICE, self._signals.authenticate)

        self._state.status = EngineStatus.RUNNING
        self._state.start_time = self._clock()
        self._start_timers()
        self._decision.start_monitoring()
        self._recovery.start_monitoring()
        await self.update_positions()
        self._sync_system_state()

        self._journal_append(
            "session_start",
            {
                "session_id": self._session_id,
                "mode": self._settings.mode.value,
                "trading_pairs": self._settings.trading_pairs,
            },
        )
        self._logger.info("session_started")
        await self._bus.publish(TradingStarted(trading_pairs=tuple(self._settings.trading_pairs)))

    async def stop(self) -> None:
        """Stop timers, the feed, then persist the final snapshot. Never raises."""
        if self._state.status != EngineStatus.RUNNING:
            return
        self._state.status = EngineStatus.STOPPING
        self._logger.info("session_stopping")

        for timer in self._timers:
            await timer.stop()
        self._timers = []
        try:
            await self._decision.stop_monitoring()
        except Exception as exc:  # noqa: BLE001 - shutdown always reaches stopped.
            self._logger.exception("sweep_stop_failed", error=str(exc))
        if self._feed is not None:
            try:
                await self._feed.stop()
            except Exception as exc:  # noqa: BLE001 - shutdown always reaches stopped.
                self._logger.exception("feed_stop_failed", error=str(exc))

        started = self._state.start_time
        session_seconds = (self._clock() - started).total_seconds() if started else 0.0
        self._state.status = EngineStatus.STOPPED
        self._state.start_time = None
        self._sync_system_state()
        try:
            await self._recovery.stop_monitoring()
        except Exception as exc:  # noqa: BLE001 - shutdown always reaches stopped.
            self._logger.exception("recovery_stop_failed", error=str(exc))

        self._journal_append(
            "session_stop",
            {
                "session_id": self._session_id,
                "session_seconds": round(session_seconds, 3),
                "total_trades": self._state.total_trades,
                "active_positions": len(self._positions),
            },
        )
        self._logger.info(
            "session_stopped",
            session_seconds=round(session_seconds, 3),
            total_trades=self._state.total_trades,
        )
        await self._bus.publish(
            TradingStopped(
                session_seconds=session_seconds,
                total_trades=self._state.total_trades,
                active_positions=len(self._positions),
            )
        )
        clear_session_context()

    async def _authenticate(self, service: str, authenticate: Callable[[], Any]) -> None:
        ok = await self._recovery.call(service, authenticate, context="authenticate")
        if not ok:
            error = AuthenticationError(f"{service} authentication rejected", service=service)
            await self._recovery.report_error(service, error, context="authenticate")
            raise error

    def _start_timers(self) -> None:
        self._timers = [
            PeriodicTask(
                "signal_processing",
                self._settings.signal_processing_interval,
                self.process_pending_signals,
            ),
            PeriodicTask(
                "position_update",
                self._settings.position_update_interval,
                self.update_positions,
            ),
            PeriodicTask(
                "risk_enforcement",
                self._settings.risk_enforcement_interval,
                self._risk.enforce_limits,
            ),
        ]
        for timer in self._timers:
            timer.start()

    async def _restore_state(self) -> None:
        restored = self._recovery.restore()
        if restored is None:
            return
        for position in restored.active_positions:
            self._upsert_position(position)
        self._pending = {signal.symbol: signal for signal in restored.pending_signals}
        for sample in restored.market_data_cache.values():
            self._samples[sample.symbol] = sample
            self._decision.update_market_data(sample)
        self._state.active_positions = len(self._positions)
        self._logger.info(
            "session_state_restored",
            positions=len(restored.active_positions),
            pending_signals=len(restored.pending_signals),
        )
        await self._bus.publish(
            StateRestored(
                positions=len(restored.active_positions),
                pending_signals=len(restored.pending_signals),
            )
        )

    # --------------------------------------------------------- market data

    async def process_market_data(
        self, sample: MarketSample | Mapping[str, Any]
    ) -> TradingDecision | None:
        """Ingest one sample. Errors are logged, never raised."""
        started = perf_counter()
        symbol = sample.get("symbol", "?") if isinstance(sample, Mapping) else sample.symbol
        try:
            if isinstance(sample, Mapping):
                sample = MarketSample.model_validate(sample)
            if not is_valid_sample(sample):
                raise ValueError(f"Invalid market data received for {sample.symbol}")
        except (ValidationError, ValueError) as exc:
            self._logger.warning("market_sample_rejected", symbol=symbol, error=str(exc))
            await self._bus.publish(MarketSampleRejected(symbol=str(symbol), error=str(exc)))
            return None

        decision: TradingDecision | None = None
        try:
            self._samples[sample.symbol] = sample
            self._decision.update_market_data(sample)
            self._state.last_market_update = self._clock()
            self._mark_positions(sample)
            self._sync_system_state()

            if (
                self._state.status == EngineStatus.RUNNING
                and self._settings.enable_auto_trading
                and sample.symbol not in self._pending
            ):
                decision = await self._request_signal(sample)
        except Exception as exc:  # noqa: BLE001 - one sample never stops the feed.
            self._logger.exception("market_sample_failed", symbol=sample.symbol, error=str(exc))
            await self._recovery.log_error(exc, f"process market data {sample.symbol}")

        elapsed_ms = (perf_counter() - started) * 1000
        if elapsed_ms > self._settings.sample_budget_ms:
            log_slow_sample(
                self._logger,
                symbol=sample.symbol,
                elapsed_ms=elapsed_ms,
                budget_ms=self._settings.sample_budget_ms,
            )
        return decision

    async def _request_signal(self, sample: MarketSample) -> TradingDecision | None:
        try:
            signal = await self._recovery.call(
                AI_SERVICE,
                lambda: self._signals.analyze_market(sample),
                context=f"analyze market {sample.symbol}",
            )
        except TradingError as exc:
            self._logger.warning("signal_request_failed", symbol=sample.symbol, error=str(exc))
            return None
        if signal.symbol != sample.symbol:
            self._logger.warning(
                "signal_symbol_mismatch", symbol=sample.symbol, signal_symbol=signal.symbol
            )
            return None

        self._decision.add_signal(signal)
        self._pending[signal.symbol] = signal
        self._journal_append(
            "signal", signal.model_dump(mode="json", by_alias=True)
        )
        return await self._evaluate_pending(signal, sample)

    async def process_pending_signals(self) -> None:
        """Signal-processing tick: retry throttled signals, drop stale ones."""
        for symbol, signal in list(self._pending.items()):
            sample = self._samples.get(symbol)
            if sample is None:
                continue
            try:
                await self._evaluate_pending(signal, sample)
            except Exception as exc:  # noqa: BLE001 - isolate per-symbol failures.
                self._logger.exception("pending_signal_failed", symbol=symbol, error=str(exc))

    async def _evaluate_pending(
        self, signal: TradingSignal, sample: MarketSample
    ) -> TradingDecision | None:
        if signal.symbol in self._in_flight:
            return None
        try:
            decision = await self._decision.evaluate_signal(signal, sample)
        except Exception as exc:  # noqa: BLE001 - a failed evaluation drops the signal.
            self._resolve_pending(signal)
            await self._recovery.log_error(exc, f"evaluate signal {signal.symbol}")
            return None

        self._state.last_signal_processed = self._clock()
        if decision is None:
            return None
        self._resolve_pending(signal)
        self._journal_append("decision", decision.as_dict())
        if decision.is_actionable:
            await self.dispatch(decision)
        return decision

    def _resolve_pending(self, signal: TradingSignal) -> None:
        if self._pending.get(signal.symbol) is signal:
            del self._pending[signal.symbol]

    # ------------------------------------------------------------ dispatch

    async def dispatch(self, decision: TradingDecision) -> TradeExecution | None:
        """Execute one buy/sell decision. At most one order per symbol is in flight."""
        if not decision.is_actionable:
            return None
        if self._state.status == EngineStatus.STOPPING:
            self._logger.info("dispatch_skipped_stopping", symbol=decision.symbol)
            return None
        if decision.symbol in self._in_flight:
            self._logger.info("dispatch_skipped_in_flight", symbol=decision.symbol)
            return None

        self._in_flight.add(decision.symbol)
        try:
            place = (
                self._exchange.place_buy_order
                if decision.action == "buy"
                else self._exchange.place_sell_order
            )
            try:
                execution = await self._recovery.call(
                    EXCHANGE_SERVICE,
                    lambda: place(decision.symbol, decision.amount, decision.price),
                    context=f"place {decision.action} order {decision.symbol}",
                )
            except TradingError as exc:
                self._logger.error(
                    "trade_failed",
                    symbol=decision.symbol,
                    action=decision.action,
                    error=str(exc),
                )
                await self._bus.publish(TradeFailed(decision=decision, error=str(exc)))
                return None

            self._record_execution(execution)
            self._journal_append(
                "order",
                {
                    "decision": decision.as_dict(),
                    "execution": execution.model_dump(mode="json", by_alias=True),
                },
            )
            await self._bus.publish(TradeExecuted(decision=decision, execution=execution))
            return execution
        finally:
            self._in_flight.discard(decision.symbol)

    def _record_execution(self, execution: TradeExecution) -> None:
        log_order_execution(self._logger, execution)
        if execution.status != "filled":
            return
        self._state.total_trades += 1
        self._apply_fill(execution)
        self._sync_system_state()

    def _apply_fill(self, execution: TradeExecution) -> None:
        position = next(
            (p for p in self._positions.values() if p.symbol == execution.symbol), None
        )
        if position is None:
            if execution.side == "sell":
                self._logger.warning("fill_without_position", symbol=execution.symbol)
                return
            self._upsert_position(
                TradingPosition(
                    id=f"{execution.symbol}-{execution.order_id}",
                    symbol=execution.symbol,
                    side=execution.side,
                    amount=execution.amount,
                    entry_price=execution.price,
                    current_price=execution.price,
                    timestamp=execution.timestamp,
                )
            )
            return

        if execution.side == position.side:
            amount = position.amount + execution.amount
            entry = (
                position.entry_price * position.amount + execution.price * execution.amount
            ) / amount
            self._upsert_position(
                mark_to_market(
                    position.model_copy(update={"amount": amount, "entry_price": entry}),
                    execution.price,
                )
            )
            return

        closed = min(execution.amount, position.amount)
        direction = 1.0 if position.side == "buy" else -1.0
        realized = (execution.price - position.entry_price) * closed * direction
        self._risk.record_realized_pnl(realized)
        remaining = max(0.0, position.amount - execution.amount)
        if remaining <= _DUST:
            self._drop_position(position.id)
            self._logger.info(
                "position_closed", symbol=position.symbol, realized_pnl=round(realized, 4)
            )
            return
        self._upsert_position(
            mark_to_market(position.model_copy(update={"amount": remaining}), execution.price)
        )

    async def _on_decision_issued(self, event: DecisionIssued) -> None:
        if self._state.status != EngineStatus.RUNNING:
            return
        self._journal_append("decision", event.decision.as_dict())
        await self.dispatch(event.decision)

    async def _on_rebalance(self, event: RebalanceRecommended) -> None:
        self._journal_append(
            "rebalance",
            {**event.decision.as_dict(), "portfolio_share": round(event.portfolio_share, 4)},
        )

    async def _on_emergency_stop(self, event: EmergencyStopActivated) -> None:
        self._journal_append(
            "risk_event",
            {"type": "emergency_stop", "reason": event.reason, "daily_loss": event.daily_loss},
        )

    # ------------------------------------------------------ reconciliation

    async def update_positions(self) -> None:
        """Replace local positions with the exchange's list and force stop-loss exits."""
        try:
            reported = await self._recovery.call(
                EXCHANGE_SERVICE,
                self._exchange.get_open_positions,
                context="get open positions",
            )
        except TradingError as exc:
            self._logger.warning("position_update_failed", error=str(exc))
            return

        seen: set[str] = set()
        for position in reported:
            if position.status != "open" or position.amount <= 0:
                continue
            seen.add(position.id)
            self._upsert_position(position)

        removed = tuple(pid for pid in self._positions if pid not in seen)
        for position_id in removed:
            self._drop_position(position_id)
        if removed:
            self._logger.info("positions_closed_externally", position_ids=list(removed))
            self._journal_append("reconcile", {"removed": list(removed)})

        for position in list(self._positions.values()):
            if self._risk.check_stop_loss(position):
                await self._handle_stop_loss(position)

        self._sync_system_state()
        await self._bus.publish(PositionsReconciled(active=len(self._positions), removed=removed))

    async def _handle_stop_loss(self, position: TradingPosition) -> None:
        if position.symbol in self._in_flight or self._state.status == EngineStatus.STOPPING:
            return
        side = close_side(position)
        market = position.current_price or position.entry_price
        bias = -_STOP_LOSS_FILL_BIAS if side == "sell" else _STOP_LOSS_FILL_BIAS
        price = market * (1 + bias)
        place = (
            self._exchange.place_sell_order if side == "sell" else self._exchange.place_buy_order
        )
        self._logger.warning(
            "stop_loss_triggered",
            position_id=position.id,
            symbol=position.symbol,
            unrealized_pnl=position.unrealized_pnl,
        )

        self._in_flight.add(position.symbol)
        try:
            execution = await self._recovery.call(
                EXCHANGE_SERVICE,
                lambda: place(position.symbol, position.amount, price),
                context=f"stop-loss {position.id}",
            )
        except TradingError as exc:
            self._logger.error("stop_loss_failed", position_id=position.id, error=str(exc))
            await self._bus.publish(StopLossTriggered(position=position, execution=None))
            return
        finally:
            self._in_flight.discard(position.symbol)

        self._record_execution(execution)
        self._journal_append(
            "stop_loss",
            {
                "position": position.model_dump(mode="json", by_alias=True),
                "execution": execution.model_dump(mode="json", by_alias=True),
            },
        )
        await self._bus.publish(StopLossTriggered(position=position, execution=execution))

    # -------------------------------------------------------- position map

    def _upsert_position(self, position: TradingPosition) -> None:
        self._positions[position.id] = position
        self._risk.track_position(position)
        self._decision.update_position(position)
        self._state.active_positions = len(self._positions)

    def _drop_position(self, position_id: str) -> None:
        self._positions.pop(position_id, None)
        self._risk.untrack_position(position_id)
        self._decision.remove_position(position_id)
        self._state.active_positions = len(self._positions)

    def _mark_positions(self, sample: MarketSample) -> None:
        for position in list(self._positions.values()):
            if position.symbol == sample.symbol:
                self._upsert_position(mark_to_market(position, sample.price))

    async def available_balance(self) -> float:
        """Free quote-currency balance, through the recovery system."""
        balances = await self._recovery.call(
            EXCHANGE_SERVICE,
            self._exchange.get_account_balance,
            context="get account balance",
        )
        return balances.get(self._settings.quote_currency, Balance()).available

    # ------------------------------------------------------- control surface

    def get_state(self) -> EngineState:
        return dataclasses.replace(self._state)

    def get_active_positions(self) -> list[TradingPosition]:
        return [position.model_copy() for position in self._positions.values()]

    def get_pending_signals(self) -> list[TradingSignal]:
        return list(self._pending.values())

    def get_market_data(
        self, symbol: str | None = None
    ) -> MarketSample | dict[str, MarketSample] | None:
        if symbol is not None:
            return self._samples.get(symbol)
        return dict(self._samples)

    def get_recovery_status(self) -> RecoveryStatus:
        self._sync_system_state()
        return RecoveryStatus(
            connection_status=self._recovery.get_connection_status(),
            error_statistics=self._recovery.get_error_statistics(),
            is_in_recovery_mode=self._recovery.is_in_recovery_mode(),
            system_state=self._recovery.get_system_state(),
        )

    async def force_service_recovery(self, service: str) -> bool:
        return await self._recovery.force_recovery(service)

    def reset_service_errors(self, service: str) -> None:
        self._recovery.reset_error_tracking(service)

    async def emergency_stop(self, reason: str = "manual") -> bool:
        return await self._risk.emergency_stop(reason)

    async def reset_emergency_stop(self) -> None:
        await self._risk.reset_emergency_stop()

    def get_session_config(self) -> dict[str, Any]:
        return {name: getattr(self._settings, name) for name in _SESSION_FIELDS + _RISK_FIELDS}

    async def update_session_config(self, **changes: Any) -> dict[str, Any]:
        """Apply runtime changes. Timers restart with the new intervals when running."""
        unknown = set(changes) - set(_SESSION_FIELDS + _RISK_FIELDS)
        if unknown:
            raise ValueError(f"unknown_session_settings: {sorted(unknown)}")
        self._settings = self._settings.with_changes(**changes)
        self._decision.update_settings(self._settings)
        risk_changes = {k: v for k, v in changes.items() if k in _RISK_FIELDS}
        if risk_changes:
            self._risk.update_config(**risk_changes)
        self._logger.info("session_config_updated", **changes)

        if self._state.status == EngineStatus.RUNNING:
            for timer in self._timers:
                await timer.stop()
            self._start_timers()
            await self._decision.stop_monitoring()
            self._decision.start_monitoring()
        return self.get_session_config()

    # ------------------------------------------------------------- helpers

    def _sync_system_state(self) -> None:
        self._recovery.update_system_state(
            is_running=self._state.status == EngineStatus.RUNNING,
            start_time=self._state.start_time,
            active_positions=[p.model_copy() for p in self._positions.values()],
            pending_signals=list(self._pending.values()),
            market_data_cache=dict(self._samples),
        )

    def _journal_append(self, event_type: str, payload: dict[str, Any]) -> None:
        if self._journal is None:
            return
        try:
            self._journal.append(event_type, payload)
        except PersistenceError as exc:
            self._logger.warning("journal_write_failed", event_type=event_type, error=str(exc))
