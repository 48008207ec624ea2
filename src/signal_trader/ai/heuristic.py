"""Deterministic offline signal provider."""

from __future__ import annotations

from signal_trader.schemas import MarketSample, TradingSignal, utcnow

# 24h change thresholds in percent.
_DIP_BUY_CHANGE = -3.0
_RALLY_SELL_CHANGE = 5.0
_BASE_CONFIDENCE = 0.6
_MAX_CONFIDENCE = 0.95
_STOP_LOSS_RATIO = 0.95


class HeuristicSignalProvider:
    """Buys dips and sells rallies from the 24h change. No network, always authenticated."""

    async def authenticate(self) -> bool:
        return True

    async def analyze_market(self, sample: MarketSample) -> TradingSignal:
        change = sample.change_24h
        if change is None:
            return self._signal(sample, "hold", 0.5, "no_24h_change")

        confidence = min(_MAX_CONFIDENCE, _BASE_CONFIDENCE + abs(change) / 20)
        if change <= _DIP_BUY_CHANGE:
            price = sample.ask or sample.price
            return self._signal(
                sample,
                "buy",
                confidence,
                f"dip_{change:.2f}pct",
                target_price=price,
                stop_loss=price * _STOP_LOSS_RATIO,
            )
        if change >= _RALLY_SELL_CHANGE:
            return self._signal(
                sample,
                "sell",
                confidence,
                f"rally_{change:.2f}pct",
                target_price=sample.bid or sample.price,
            )
        return self._signal(sample, "hold", 0.5, "range_bound")

    @staticmethod
    def _signal(
        sample: MarketSample,
        action: str,
        confidence: float,
        reasoning: str,
        *,
        target_price: float | None = None,
        stop_loss: float | None = None,
    ) -> TradingSignal:
        return TradingSignal(
            symbol=sample.symbol,
            action=action,
            confidence=confidence,
            target_price=target_price or sample.price,
            stop_loss=stop_loss,
            reasoning=reasoning,
            timestamp=utcnow(),
        )
