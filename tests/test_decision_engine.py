from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from signal_trader.config import Settings
from signal_trader.decision.engine import DecisionEngine, close_side
from signal_trader.events import DecisionIssued, EventBus, RebalanceRecommended
from signal_trader.risk.rules import RiskEngine
from signal_trader.schemas import MarketSample, TradingPosition, TradingSignal
from signal_trader.types import TradingDecision

_START = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)


class _Clock:
    def __init__(self) -> None:
        self.now = _START

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class _FakeBalance:
    def __init__(self, amount: float) -> None:
        self.amount = amount
        self.calls = 0

    async def __call__(self) -> float:
        self.calls += 1
        return self.amount


def _sample(price: float, symbol: str = "BTC/USDT") -> MarketSample:
    return MarketSample(
        symbol=symbol,
        price=price,
        volume=100.0,
        timestamp=int(_START.timestamp() * 1000),
    )


def _signal(
    action: str,
    confidence: float,
    target_price: float,
    timestamp: datetime = _START,
) -> TradingSignal:
    return TradingSignal(
        symbol="BTC/USDT",
        action=action,  # type: ignore[arg-type]
        confidence=confidence,
        target_price=target_price,
        reasoning="test",
        timestamp=timestamp,
    )


def _long(amount: float = 0.1, entry: float = 50_000.0) -> TradingPosition:
    return TradingPosition(
        id="BTC/USDT-1",
        symbol="BTC/USDT",
        side="buy",
        amount=amount,
        entry_price=entry,
        current_price=entry,
    )


def _engine(
    balance: float = 10_000.0,
    **overrides: object,
) -> tuple[DecisionEngine, RiskEngine, EventBus, _Clock]:
    settings = Settings(journal_dir="data/journal", **overrides)  # type: ignore[arg-type]
    clock = _Clock()
    bus = EventBus()
    risk = RiskEngine(settings, bus, clock=clock)
    engine = DecisionEngine(settings, risk, bus, _FakeBalance(balance), clock=clock)
    return engine, risk, bus, clock


def _hold_position(engine: DecisionEngine, risk: RiskEngine, position: TradingPosition) -> None:
    engine.update_position(position)
    risk.track_position(position)


def test_close_side_reduces_position() -> None:
    assert close_side(_long()) == "sell"
    assert close_side(_long().model_copy(update={"side": "sell"})) == "buy"


def test_buy_signal_sized_by_confidence() -> None:
    engine, _, _, _ = _engine()
    decision = asyncio.run(
        engine.evaluate_signal(_signal("buy", 0.8, 50_000.0), _sample(50_000.0))
    )

    assert decision is not None
    assert decision.action == "buy"
    assert decision.amount == pytest.approx(0.016)
    assert decision.price == 50_000.0
    assert decision.amount * decision.price <= 1_000.0


def test_low_confidence_signal_holds() -> None:
    engine, risk, _, _ = _engine()
    _hold_position(engine, risk, _long())

    buy = asyncio.run(engine.evaluate_signal(_signal("buy", 0.5, 50_000.0), _sample(50_000.0)))
    sell = asyncio.run(engine.evaluate_signal(_signal("sell", 0.5, 50_000.0), _sample(50_000.0)))

    assert buy is not None and buy.action == "hold"
    assert sell is not None and sell.action == "hold"
    assert "below threshold" in sell.reasoning


def test_buy_rejected_by_risk_becomes_hold() -> None:
    engine, _, _, _ = _engine()
    decision = asyncio.run(
        engine.evaluate_signal(_signal("buy", 0.8, 51_500.0), _sample(50_000.0))
    )

    assert decision is not None
    assert decision.action == "hold"
    assert "exceeds market" in decision.reasoning


def test_buy_with_insufficient_balance_holds() -> None:
    engine, _, _, _ = _engine(balance=5.0)
    decision = asyncio.run(
        engine.evaluate_signal(_signal("buy", 0.9, 50_000.0), _sample(50_000.0))
    )

    assert decision is not None
    assert decision.action == "hold"
    assert decision.reasoning == "Insufficient balance for new position"


def test_confident_sell_in_profit_takes_partial_exit() -> None:
    engine, risk, _, _ = _engine()
    _hold_position(engine, risk, _long())

    decision = asyncio.run(
        engine.evaluate_signal(_signal("sell", 0.85, 56_000.0), _sample(56_000.0))
    )

    assert decision is not None
    assert decision.action == "sell"
    assert decision.amount == pytest.approx(0.06)
    assert "High confidence sell signal with profit" in decision.reasoning


def test_sell_through_stop_loss_exits_fully() -> None:
    engine, risk, _, _ = _engine()
    _hold_position(engine, risk, _long())

    decision = asyncio.run(
        engine.evaluate_signal(_signal("sell", 0.7, 44_000.0), _sample(44_000.0))
    )

    assert decision is not None
    assert decision.action == "sell"
    assert decision.amount == pytest.approx(0.1)
    assert "Stop-loss triggered" in decision.reasoning


def test_sell_without_position_holds() -> None:
    engine, _, _, _ = _engine()
    decision = asyncio.run(
        engine.evaluate_signal(_signal("sell", 0.9, 50_000.0), _sample(50_000.0))
    )

    assert decision is not None
    assert decision.action == "hold"
    assert decision.reasoning == "No open buy position to sell"


def test_disabled_signal_type_resolves_to_hold() -> None:
    engine, _, _, _ = _engine(enable_buy_signals=False)
    decision = asyncio.run(
        engine.evaluate_signal(_signal("buy", 0.9, 50_000.0), _sample(50_000.0))
    )

    assert decision is not None
    assert decision.action == "hold"
    assert "disabled" in decision.reasoning


def test_stale_signal_holds() -> None:
    engine, _, _, clock = _engine()
    signal = _signal("buy", 0.9, 50_000.0)
    clock.advance(301)

    decision = asyncio.run(engine.evaluate_signal(signal, _sample(50_000.0)))

    assert decision is not None
    assert decision.action == "hold"
    assert decision.reasoning == "Signal is stale"


def test_actionable_decision_throttles_symbol() -> None:
    engine, _, _, clock = _engine()
    first = asyncio.run(engine.evaluate_signal(_signal("buy", 0.8, 50_000.0), _sample(50_000.0)))
    assert first is not None and first.is_actionable

    second = asyncio.run(
        engine.evaluate_signal(_signal("buy", 0.8, 50_000.0, clock()), _sample(50_000.0))
    )
    assert second is None

    clock.advance(61)
    third = asyncio.run(
        engine.evaluate_signal(_signal("buy", 0.8, 50_000.0, clock()), _sample(50_000.0))
    )
    assert third is not None


def test_position_increase_on_winning_position() -> None:
    engine, risk, _, _ = _engine(max_position_size=10_000.0)
    _hold_position(engine, risk, _long(amount=0.01))

    decision = asyncio.run(
        engine.evaluate_signal(_signal("buy", 0.9, 52_000.0), _sample(52_000.0))
    )

    assert decision is not None
    assert decision.action == "buy"
    assert decision.amount == pytest.approx(0.003)
    assert decision.reasoning.startswith("Increase position")


def test_position_increase_requires_profit() -> None:
    engine, risk, _, _ = _engine()
    _hold_position(engine, risk, _long(amount=0.01))

    decision = asyncio.run(
        engine.evaluate_signal(_signal("buy", 0.9, 50_500.0), _sample(50_500.0))
    )

    assert decision is not None
    assert decision.action == "hold"


def _sell(engine: DecisionEngine, confidence: float, price: float) -> TradingDecision:
    decision = asyncio.run(
        engine.evaluate_signal(_signal("sell", confidence, price), _sample(price))
    )
    assert decision is not None
    return decision


def test_large_gain_takes_profit_without_high_confidence() -> None:
    engine, risk, _, _ = _engine()
    _hold_position(engine, risk, _long())

    decision = _sell(engine, 0.7, 58_000.0)

    assert decision.action == "sell"
    assert "Taking profits at significant gain" in decision.reasoning
    assert decision.amount == pytest.approx(0.06)


def test_confident_sell_cuts_moderate_loss_by_half() -> None:
    engine, risk, _, _ = _engine(stop_loss_percentage=20.0)
    _hold_position(engine, risk, _long())

    decision = _sell(engine, 0.75, 46_000.0)

    assert decision.action == "sell"
    assert "Cutting losses with confident sell signal" in decision.reasoning
    assert decision.amount == pytest.approx(0.05)


def test_deep_loss_exits_fully_without_stop_loss() -> None:
    engine, risk, _, _ = _engine(stop_loss_percentage=20.0)
    _hold_position(engine, risk, _long())

    decision = _sell(engine, 0.75, 44_000.0)

    assert decision.action == "sell"
    assert "Stop-loss triggered" not in decision.reasoning
    assert "Cutting losses" in decision.reasoning
    assert decision.amount == pytest.approx(0.1)


def test_very_confident_sell_exits_fully() -> None:
    engine, risk, _, _ = _engine()
    _hold_position(engine, risk, _long())

    decision = _sell(engine, 0.95, 52_000.0)

    assert decision.action == "sell"
    assert "High confidence sell signal with profit" in decision.reasoning
    assert decision.amount == pytest.approx(0.1)


def test_confident_sell_with_small_profit_exits_half() -> None:
    engine, risk, _, _ = _engine()
    _hold_position(engine, risk, _long())

    decision = _sell(engine, 0.85, 52_000.0)

    assert decision.action == "sell"
    assert decision.amount == pytest.approx(0.05)


def test_sell_conditions_not_met_holds() -> None:
    engine, risk, _, _ = _engine()
    _hold_position(engine, risk, _long())

    decision = _sell(engine, 0.7, 52_000.0)

    assert decision.action == "hold"
    assert decision.reasoning == "Conditions not met for sell execution"


def test_position_increase_clamped_to_max_position_size() -> None:
    engine, risk, _, _ = _engine(max_position_size=1_000.0)
    _hold_position(engine, risk, _long(amount=0.018))

    decision = asyncio.run(
        engine.evaluate_signal(_signal("buy", 0.9, 52_000.0), _sample(52_000.0))
    )

    assert decision is not None
    assert decision.action == "buy"
    assert decision.amount == pytest.approx(100.0 / 52_000.0)
    assert 0.018 * 50_000.0 + decision.amount * decision.price <= 1_000.0 + 1e-9


def test_position_increase_holds_when_headroom_below_minimum() -> None:
    engine, risk, _, _ = _engine(max_position_size=1_000.0)
    _hold_position(engine, risk, _long(amount=0.0199))

    decision = asyncio.run(
        engine.evaluate_signal(_signal("buy", 0.9, 52_000.0), _sample(52_000.0))
    )

    assert decision is not None
    assert decision.action == "hold"
    assert "exceeds maximum position size" in decision.reasoning


def test_sweep_forces_stop_loss_despite_throttle() -> None:
    engine, risk, bus, _ = _engine(balance=100_000.0)
    issued: list[DecisionIssued] = []
    bus.subscribe(DecisionIssued, issued.append)
    asyncio.run(engine.evaluate_signal(_signal("buy", 0.8, 50_000.0), _sample(50_000.0)))
    assert engine.is_throttled("BTC/USDT")

    _hold_position(engine, risk, _long())
    engine.update_market_data(_sample(47_000.0))
    decisions = asyncio.run(engine.continuous_sweep())

    assert len(decisions) == 1
    assert decisions[0].action == "sell"
    assert decisions[0].amount == pytest.approx(0.1)
    assert decisions[0].price == pytest.approx(47_000.0 * 0.99)
    assert decisions[0].confidence == 1.0
    assert [event.decision for event in issued] == decisions


def test_sweep_takes_profit_on_half_position() -> None:
    engine, risk, _, _ = _engine(balance=100_000.0)
    _hold_position(engine, risk, _long())
    engine.update_market_data(_sample(56_000.0))

    decisions = asyncio.run(engine.continuous_sweep())

    assert len(decisions) == 1
    assert decisions[0].action == "sell"
    assert decisions[0].amount == pytest.approx(0.05)
    assert decisions[0].confidence == pytest.approx(0.8)


def test_sweep_flags_concentrated_position_without_trading() -> None:
    engine, risk, bus, _ = _engine(balance=5_000.0)
    flagged: list[RebalanceRecommended] = []
    bus.subscribe(RebalanceRecommended, flagged.append)
    _hold_position(engine, risk, _long())
    engine.update_market_data(_sample(50_000.0))

    decisions = asyncio.run(engine.continuous_sweep())

    assert decisions == []
    assert len(flagged) == 1
    assert flagged[0].decision.action == "rebalance"
    assert flagged[0].decision.amount == pytest.approx(0.03)
    assert flagged[0].portfolio_share == pytest.approx(0.5)
