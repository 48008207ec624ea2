from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from signal_trader.config import Settings
from signal_trader.events import EmergencyStopActivated, EventBus
from signal_trader.risk.rules import EMERGENCY_STOP_REASON, RiskEngine
from signal_trader.schemas import TradingPosition, TradingSignal
from signal_trader.types import TradeRequest


class _Clock:
    def __init__(self) -> None:
        self.now = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def _signal(confidence: float = 0.8, target_price: float = 50_000.0) -> TradingSignal:
    return TradingSignal(
        symbol="BTC/USDT",
        action="buy",
        confidence=confidence,
        target_price=target_price,
    )


def _position(
    position_id: str = "p1",
    symbol: str = "BTC/USDT",
    unrealized_pnl: float = 0.0,
) -> TradingPosition:
    return TradingPosition(
        id=position_id,
        symbol=symbol,
        side="buy",
        amount=0.1,
        entry_price=50_000.0,
        current_price=50_000.0,
        unrealized_pnl=unrealized_pnl,
    )


def _buy(amount: float = 0.01, price: float = 50_000.0, **kwargs: object) -> TradeRequest:
    params: dict[str, object] = {
        "symbol": "BTC/USDT",
        "side": "buy",
        "amount": amount,
        "price": price,
        "market_price": 50_000.0,
        "available_balance": 10_000.0,
    }
    params.update(kwargs)
    return TradeRequest(**params)  # type: ignore[arg-type]


def test_size_position_scales_with_confidence() -> None:
    engine = RiskEngine(Settings(journal_dir="data/journal"))
    amount = engine.size_position(_signal(confidence=0.8), available_balance=10_000)
    assert amount == pytest.approx(800 / 50_000)


def test_size_position_capped_and_floored() -> None:
    engine = RiskEngine(Settings(journal_dir="data/journal"))
    capped = engine.size_position(_signal(confidence=1.0), available_balance=100_000)
    assert capped * 50_000 == pytest.approx(1_000)

    floored = engine.size_position(_signal(confidence=0.6), available_balance=50)
    assert floored * 50_000 == pytest.approx(10)

    assert engine.size_position(_signal(), available_balance=5) == 0.0


def test_validate_accepts_trade_within_limits() -> None:
    engine = RiskEngine(Settings(journal_dir="data/journal"))
    verdict = asyncio.run(engine.validate(_buy()))
    assert verdict.valid
    assert verdict.reason is None


def test_validate_rejects_oversized_trade_with_adjusted_amount() -> None:
    engine = RiskEngine(Settings(journal_dir="data/journal"))
    verdict = asyncio.run(engine.validate(_buy(amount=0.03)))
    assert not verdict.valid
    assert "maximum position size" in (verdict.reason or "")
    assert verdict.adjusted_amount == pytest.approx(0.02)


def test_validate_counts_existing_exposure_toward_position_size() -> None:
    engine = RiskEngine(Settings(journal_dir="data/journal"))
    engine.track_position(_position())
    verdict = asyncio.run(engine.validate(_buy(amount=0.001)))
    assert not verdict.valid
    assert verdict.adjusted_amount == 0.0


def test_validate_rejects_price_outside_bands() -> None:
    engine = RiskEngine(Settings(journal_dir="data/journal"))

    slipped = asyncio.run(engine.validate(_buy(price=51_500.0)))
    assert not slipped.valid
    assert "Buy price exceeds market" in (slipped.reason or "")

    deviated = asyncio.run(engine.validate(_buy(price=40_000.0)))
    assert not deviated.valid
    assert "deviates" in (deviated.reason or "")


def test_validate_rejects_small_and_unfunded_trades() -> None:
    engine = RiskEngine(Settings(journal_dir="data/journal"))

    small = asyncio.run(engine.validate(_buy(amount=0.0001)))
    assert not small.valid
    assert "below minimum" in (small.reason or "")

    unfunded = asyncio.run(engine.validate(_buy(available_balance=400.0)))
    assert not unfunded.valid
    assert "Insufficient balance" in (unfunded.reason or "")


def test_validate_rejects_new_symbol_when_positions_full() -> None:
    engine = RiskEngine(Settings(journal_dir="data/journal", max_open_positions=2))
    engine.track_position(_position("p1", "ETH/USDT"))
    engine.track_position(_position("p2", "SOL/USDT"))
    verdict = asyncio.run(engine.validate(_buy()))
    assert not verdict.valid
    assert "Maximum open positions" in (verdict.reason or "")


def test_emergency_stop_blocks_every_trade_until_reset() -> None:
    async def _scenario() -> None:
        engine = RiskEngine(Settings(journal_dir="data/journal"))
        assert await engine.emergency_stop("operator")
        verdict = await engine.validate(_buy())
        assert not verdict.valid
        assert verdict.reason == EMERGENCY_STOP_REASON

        sell = await engine.validate(_buy(side="sell"))
        assert sell.reason == EMERGENCY_STOP_REASON

        await engine.reset_emergency_stop()
        assert (await engine.validate(_buy())).valid

    asyncio.run(_scenario())


def test_emergency_stop_disabled_has_no_effect() -> None:
    engine = RiskEngine(Settings(journal_dir="data/journal", emergency_stop_enabled=False))
    assert not asyncio.run(engine.emergency_stop("operator"))
    assert not engine.emergency_stop_active


def test_enforce_limits_triggers_emergency_stop_on_daily_loss() -> None:
    bus = EventBus()
    seen: list[EmergencyStopActivated] = []
    bus.subscribe(EmergencyStopActivated, seen.append)
    engine = RiskEngine(Settings(journal_dir="data/journal", max_daily_loss=100), bus)
    engine.track_position(_position(unrealized_pnl=-150.0))

    status = asyncio.run(engine.enforce_limits())

    assert status.emergency_stop_active
    assert status.daily_loss == pytest.approx(150.0)
    assert len(seen) == 1
    assert "Daily loss" in seen[0].reason


def test_daily_loss_resets_on_new_day() -> None:
    clock = _Clock()
    engine = RiskEngine(Settings(journal_dir="data/journal"), clock=clock)
    engine.record_realized_pnl(-60.0)
    engine.record_realized_pnl(25.0)
    assert engine.daily_loss() == pytest.approx(60.0)

    clock.advance(86_400)
    assert engine.daily_loss() == 0.0


def test_check_stop_loss_only_fires_on_losses() -> None:
    engine = RiskEngine(Settings(journal_dir="data/journal"))
    assert engine.check_stop_loss(_position(unrealized_pnl=-300.0))
    assert engine.check_stop_loss(_position(unrealized_pnl=-250.0))
    assert not engine.check_stop_loss(_position(unrealized_pnl=-200.0))
    assert not engine.check_stop_loss(_position(unrealized_pnl=600.0))


def test_update_config_applies_new_limits() -> None:
    engine = RiskEngine(Settings(journal_dir="data/journal"))
    engine.update_config(max_open_positions=1)
    assert engine.get_risk_status().max_positions == 1
    with pytest.raises(ValueError):
        engine.update_config(openrouter_model="x")
