"""Paper trading exchange with persistent local state."""

from __future__ import annotations

import uuid
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import Protocol

from pydantic import BaseModel, Field, ValidationError

from signal_trader.errors import PersistenceError, ServiceError
from signal_trader.schemas import (
    Balance,
    MarketSample,
    PositionSide,
    TradeExecution,
    TradingPosition,
    utcnow,
)
from signal_trader.types import mark_to_market
from signal_trader.utils.logging import get_logger


class MarketDataSource(Protocol):
    async def get_market_data(self, symbol: str) -> MarketSample:
        """Return the latest sample for ``symbol``."""


class _PaperState(BaseModel):
    balance: float
    initial_balance: float
    positions: dict[str, TradingPosition] = Field(default_factory=dict)
    last_prices: dict[str, float] = Field(default_factory=dict)


class PaperExchange:
    """Simulated spot exchange, long-only, immediate fills.

    Buys fill at the limit price plus slippage and sells at the limit price
    minus slippage; fees are charged in the quote currency. Positions are
    marked to the last price seen through ``get_market_data``.
    """

    def __init__(
        self,
        state_file: Path,
        *,
        market_data: MarketDataSource | None = None,
        quote_currency: str = "USDT",
        initial_balance: float = 10_000.0,
        slippage_bps: float = 2.0,
        fee_rate: float = 0.001,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._state_file = state_file
        self._market_data = market_data
        self._quote = quote_currency
        self._slippage = slippage_bps / 10_000.0
        self._fee_rate = fee_rate
        self._clock = clock
        self._logger = get_logger("signal_trader.exec.paper")
        self._state = self._load_state(initial_balance)

    @property
    def balance(self) -> float:
        return self._state.balance

    def equity(self) -> float:
        """Quote balance plus marked value of every position."""
        return self._state.balance + sum(
            p.amount * (p.current_price or p.entry_price) for p in self._state.positions.values()
        )

    async def authenticate(self) -> bool:
        return True

    async def get_market_data(self, symbol: str) -> MarketSample:
        if self._market_data is None:
            price = self._state.last_prices.get(symbol)
            if price is None:
                raise ServiceError(f"no_market_data: {symbol}", service="exchange")
            return MarketSample(
                symbol=symbol,
                price=price,
                volume=1.0,
                timestamp=int(self._clock().timestamp() * 1000),
            )
        sample = await self._market_data.get_market_data(symbol)
        self.mark_price(symbol, sample.price)
        return sample

    def mark_price(self, symbol: str, price: float) -> None:
        """Record the last traded price and revalue any open position."""
        self._state.last_prices[symbol] = price
        position = self._state.positions.get(symbol)
        if position is not None:
            self._state.positions[symbol] = mark_to_market(position, price)
        self._persist()

    async def get_account_balance(self) -> dict[str, Balance]:
        balances = {self._quote: Balance(available=self._state.balance)}
        for symbol, position in self._state.positions.items():
            base = symbol.split("/", 1)[0]
            balances[base] = Balance(available=position.amount)
        return balances

    async def place_buy_order(self, symbol: str, amount: float, price: float) -> TradeExecution:
        if amount <= 0 or price <= 0:
            return self._execution(symbol, "buy", amount, price, 0.0, "failed")
        fill_price = price * (1.0 + self._slippage)
        cost = amount * fill_price
        fee = cost * self._fee_rate
        if cost + fee > self._state.balance:
            self._logger.warning(
                "paper_insufficient_balance",
                symbol=symbol,
                required=round(cost + fee, 2),
                available=round(self._state.balance, 2),
            )
            return self._execution(symbol, "buy", amount, fill_price, 0.0, "failed")

        execution = self._execution(symbol, "buy", amount, fill_price, fee, "filled")
        self._state.balance -= cost + fee
        position = self._state.positions.get(symbol)
        if position is None:
            position = TradingPosition(
                id=f"{symbol}-{execution.order_id}",
                symbol=symbol,
                side="buy",
                amount=amount,
                entry_price=fill_price,
                current_price=fill_price,
                timestamp=execution.timestamp,
            )
        else:
            total = position.amount + amount
            entry = (position.entry_price * position.amount + fill_price * amount) / total
            position = position.model_copy(update={"amount": total, "entry_price": entry})
        self._state.positions[symbol] = mark_to_market(
            position, self._state.last_prices.get(symbol, fill_price)
        )
        self._persist()
        return execution

    async def place_sell_order(self, symbol: str, amount: float, price: float) -> TradeExecution:
        position = self._state.positions.get(symbol)
        if position is None or amount <= 0 or price <= 0:
            return self._execution(symbol, "sell", amount, price, 0.0, "failed")

        filled = min(amount, position.amount)
        fill_price = price * (1.0 - self._slippage)
        proceeds = filled * fill_price
        fee = proceeds * self._fee_rate
        execution = self._execution(symbol, "sell", filled, fill_price, fee, "filled")
        self._state.balance += proceeds - fee
        remaining = position.amount - filled
        if remaining <= 1e-12:
            del self._state.positions[symbol]
        else:
            self._state.positions[symbol] = mark_to_market(
                position.model_copy(update={"amount": remaining}),
                self._state.last_prices.get(symbol, fill_price),
            )
        self._persist()
        return execution

    async def get_open_positions(self) -> list[TradingPosition]:
        return [p.model_copy() for p in self._state.positions.values()]

    async def cancel_order(self, order_id: str) -> bool:
        # Paper orders fill immediately, nothing is ever left to cancel.
        self._logger.info("paper_cancel_ignored", order_id=order_id)
        return False

    def _execution(
        self,
        symbol: str,
        side: PositionSide,
        amount: float,
        price: float,
        fee: float,
        status: str,
    ) -> TradeExecution:
        order_id = uuid.uuid4().hex[:16]
        return TradeExecution(
            id=f"paper-{order_id}",
            order_id=order_id,
            symbol=symbol,
            side=side,
            amount=max(amount, 0.0),
            price=max(price, 0.0),
            fee=fee,
            status=status,
            timestamp=self._clock(),
        )

    def _load_state(self, initial_balance: float) -> _PaperState:
        if not self._state_file.exists():
            return _PaperState(balance=initial_balance, initial_balance=initial_balance)
        try:
            return _PaperState.model_validate_json(self._state_file.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as exc:
            raise PersistenceError(f"paper_state_load_failed: {exc}") from exc

    def _persist(self) -> None:
        try:
            self._state_file.parent.mkdir(parents=True, exist_ok=True)
            self._state_file.write_text(
                self._state.model_dump_json(by_alias=True, indent=2), encoding="utf-8"
            )
        except OSError as exc:
            raise PersistenceError(f"paper_state_save_failed: {exc}") from exc
