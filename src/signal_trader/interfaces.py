"""Collaborator contracts consumed by the trading loop."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Protocol

from signal_trader.schemas import (
    Balance,
    MarketSample,
    SystemState,
    TradeExecution,
    TradingPosition,
    TradingSignal,
)

SampleCallback = Callable[[MarketSample], Awaitable[None]]
RecoveryProbe = Callable[[], Awaitable[bool]]


class ExchangeClient(Protocol):
    """Functional contract of the exchange. Wire details live in implementations."""

    async def authenticate(self) -> bool:
        """Return True when credentials are accepted."""

    async def get_market_data(self, symbol: str) -> MarketSample:
        """Return the latest sample for ``symbol``."""

    async def get_account_balance(self) -> dict[str, Balance]:
        """Return balances keyed by currency."""

    async def place_buy_order(self, symbol: str, amount: float, price: float) -> TradeExecution:
        """Place a buy order."""

    async def place_sell_order(self, symbol: str, amount: float, price: float) -> TradeExecution:
        """Place a sell order."""

    async def get_open_positions(self) -> list[TradingPosition]:
        """Return the authoritative list of open positions."""

    async def cancel_order(self, order_id: str) -> bool:
        """Cancel an order, True when the exchange accepted the cancel."""


class SignalProvider(Protocol):
    """AI signal source. Output is advisory and untrusted."""

    async def authenticate(self) -> bool:
        """Return True when the provider is reachable and authorized."""

    async def analyze_market(self, sample: MarketSample) -> TradingSignal:
        """Return one signal for ``sample``."""


class MarketDataFeed(Protocol):
    """Real-time sample source feeding the session."""

    def subscribe(self, callback: SampleCallback) -> None:
        """Register a coroutine called for every sample."""

    async def start(self) -> None:
        """Begin delivering samples."""

    async def stop(self) -> None:
        """Stop delivering samples."""


class StateStore(Protocol):
    """Durable snapshot storage for ``SystemState``."""

    def load(self) -> SystemState | None:
        """Return the most recent snapshot, or None when nothing was saved."""

    def save(self, state: SystemState) -> None:
        """Persist ``state``; raise ``PersistenceError`` on failure."""
