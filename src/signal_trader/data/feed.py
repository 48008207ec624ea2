"""Polling market data feed."""

from __future__ import annotations

from signal_trader.errors import TradingError
from signal_trader.exec.paper import MarketDataSource
from signal_trader.interfaces import SampleCallback
from signal_trader.resilience.recovery import EXCHANGE_SERVICE, RecoverySystem
from signal_trader.utils.logging import get_logger
from signal_trader.utils.scheduling import PeriodicTask


class PollingMarketFeed:
    """Samples every trading pair on a fixed interval and fans out to subscribers."""

    def __init__(
        self,
        source: MarketDataSource,
        symbols: list[str],
        *,
        interval: float,
        recovery: RecoverySystem | None = None,
    ) -> None:
        self._source = source
        self._symbols = list(symbols)
        self._recovery = recovery
        self._callbacks: list[SampleCallback] = []
        self._task = PeriodicTask("market_data_poll", interval, self.poll_once)
        self._logger = get_logger("signal_trader.data.feed")

    def subscribe(self, callback: SampleCallback) -> None:
        self._callbacks.append(callback)

    async def start(self) -> None:
        self._task.start()
        self._logger.info("market_feed_started", symbols=self._symbols)

    async def stop(self) -> None:
        await self._task.stop()
        self._logger.info("market_feed_stopped")

    async def poll_once(self) -> int:
        """Fetch one sample per symbol. Returns how many were delivered."""
        delivered = 0
        for symbol in self._symbols:
            try:
                if self._recovery is not None:
                    sample = await self._recovery.call(
                        EXCHANGE_SERVICE,
                        lambda symbol=symbol: self._source.get_market_data(symbol),
                        context=f"get market data {symbol}",
                    )
                else:
                    sample = await self._source.get_market_data(symbol)
            except TradingError as exc:
                self._logger.warning("market_data_fetch_failed", symbol=symbol, error=str(exc))
                continue
            for callback in self._callbacks:
                await callback(sample)
            delivered += 1
        return delivered
