"""Binance public market data for the paper exchange."""

from __future__ import annotations

import asyncio
from typing import Any

from binance.client import Client  # type: ignore[import-untyped]
from binance.exceptions import (  # type: ignore[import-untyped]
    BinanceAPIException,
    BinanceRequestException,
)

from signal_trader.config import Settings
from signal_trader.errors import AuthenticationError, NetworkError, RateLimitError, ServiceError
from signal_trader.schemas import MarketSample
from signal_trader.utils.logging import get_logger

_RATE_LIMIT_CODES = {-1003, -1015}
_AUTH_CODES = {-2014, -2015}


def to_exchange_symbol(symbol: str) -> str:
    """Convert "BTC/USDT" to "BTCUSDT"."""
    return symbol.replace("/", "").upper()


class BinanceMarketData:
    """Read-only 24h ticker client.

    python-binance is synchronous, so every call runs in a worker thread. The
    SDK client pings the API on construction and is therefore created lazily.
    """

    def __init__(self, settings: Settings, *, client: Any | None = None) -> None:
        self._settings = settings
        self._client = client
        self._logger = get_logger("signal_trader.data.binance")

    async def get_market_data(self, symbol: str) -> MarketSample:
        """Latest 24h ticker for ``symbol`` as a validated sample."""
        payload = await asyncio.to_thread(self._fetch_ticker, to_exchange_symbol(symbol))
        return ticker_to_sample(symbol, payload)

    def _fetch_ticker(self, exchange_symbol: str) -> dict[str, Any]:
        try:
            if self._client is None:
                self._client = Client(
                    api_key=self._settings.binance_api_key or None,
                    api_secret=self._settings.binance_api_secret or None,
                    testnet=self._settings.binance_testnet,
                )
            return self._client.get_ticker(symbol=exchange_symbol)
        except BinanceAPIException as exc:
            self._logger.warning(
                "binance_api_error",
                symbol=exchange_symbol,
                status=exc.status_code,
                code=exc.code,
            )
            if exc.status_code == 429 or exc.code in _RATE_LIMIT_CODES:
                raise RateLimitError(str(exc), service="exchange") from exc
            if exc.status_code in (401, 403) or exc.code in _AUTH_CODES:
                raise AuthenticationError(str(exc), service="exchange") from exc
            raise ServiceError(str(exc), service="exchange") from exc
        except BinanceRequestException as exc:
            raise ServiceError(str(exc), service="exchange") from exc
        except OSError as exc:
            raise NetworkError(str(exc), service="exchange") from exc


def ticker_to_sample(symbol: str, payload: dict[str, Any]) -> MarketSample:
    """Map a Binance 24h ticker payload onto ``MarketSample``."""

    def _optional(key: str) -> float | None:
        value = payload.get(key)
        if value in (None, ""):
            return None
        number = float(value)
        return number if number > 0 else None

    change = payload.get("priceChangePercent")
    return MarketSample(
        symbol=symbol,
        price=float(payload["lastPrice"]),
        volume=float(payload["volume"]),
        timestamp=int(payload["closeTime"]),
        bid=_optional("bidPrice"),
        ask=_optional("askPrice"),
        change_24h=float(change) if change not in (None, "") else None,
    )
