"""Exchange interface and the in-process paper exchange.

`ExchangeClient` is everything the trading core needs from an exchange.
`CcxtExchange` (ccxt_client.py) implements it against a live venue;
`PaperExchange` fills orders locally and is used for dry runs (wrapping a
live client for market data) and in tests (fed candles by hand).
"""

import asyncio
import itertools
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Protocol

from cryptotrader.domain import (
    Candle,
    ExchangeRules,
    Order,
    OrderStatus,
    OrderStatusReport,
    OrderType,
    Side,
)
from cryptotrader.errors import OrderRejected
from cryptotrader.schemas.strategy import split_symbol
from cryptotrader.utils.precision import to_decimal

logger = logging.getLogger(__name__)


class ExchangeClient(Protocol):
    def subscribe_candles(self, pair: str, timeframe: str) -> AsyncIterator[Candle]:
        """Closed candles, oldest first. A new subscription starts with the latest closed candle."""
        ...

    async def get_candle_history(self, pair: str, timeframe: str, limit: int) -> list[Candle]: ...

    async def get_exchange_rules(self, pair: str) -> ExchangeRules: ...

    async def get_account_balance(self, asset: str) -> Decimal: ...

    async def get_isolated_margin_balance(self, pair: str) -> Decimal: ...

    async def get_last_price(self, pair: str) -> Decimal: ...

    async def submit_order(self, order: Order) -> str: ...

    async def get_order_status(self, order_id: str, pair: str) -> OrderStatusReport: ...

    async def cancel_order(self, order_id: str, pair: str): ...

    async def close(self): ...


DEFAULT_RULES = ExchangeRules(
    tick_size=Decimal("0.01"),
    lot_size_step=Decimal("0.0001"),
    min_notional=Decimal("0"),
)


@dataclass
class _PaperOrder:
    order: Order
    status: OrderStatus = OrderStatus.PENDING
    filled: Decimal = Decimal("0")
    avg_price: Decimal | None = None
    error: str | None = None


@dataclass
class PaperExchange:
    """Local order matching against the last known price.

    Market orders fill immediately at the last price. Limit buys fill once
    the price trades at or below the limit, limit sells at or above it.
    """

    balances: dict[str, Decimal] = field(default_factory=dict)
    margin_balances: dict[str, Decimal] = field(default_factory=dict)
    rules: dict[str, ExchangeRules] = field(default_factory=dict)
    market_data: ExchangeClient | None = None  # live client for candles/prices in dry-run mode

    def __post_init__(self):
        self.balances = {k: to_decimal(v) for k, v in self.balances.items()}
        self.margin_balances = {k: to_decimal(v) for k, v in self.margin_balances.items()}
        self.prices: dict[str, Decimal] = {}
        self.history: dict[str, list[Candle]] = {}
        self._queues: dict[str, asyncio.Queue] = {}
        self._orders: dict[str, _PaperOrder] = {}
        self._ids = itertools.count(1)

    # ------------------------------------------------------------------
    # Feeding (tests and dry run)
    # ------------------------------------------------------------------

    def _queue(self, pair: str) -> asyncio.Queue:
        if pair not in self._queues:
            self._queues[pair] = asyncio.Queue()
        return self._queues[pair]

    def push_candle(self, pair: str, candle: Candle | None):
        """Deliver a closed candle to subscribers. None ends the current subscription."""
        if candle is not None:
            self.history.setdefault(pair, []).append(candle)
            self.set_price(pair, candle.close)
        self._queue(pair).put_nowait(candle)

    def set_price(self, pair: str, price):
        self.prices[pair] = to_decimal(price)
        self._match(pair)

    # ------------------------------------------------------------------
    # Market data
    # ------------------------------------------------------------------

    async def subscribe_candles(self, pair: str, timeframe: str) -> AsyncIterator[Candle]:
        if self.market_data is not None:
            async for candle in self.market_data.subscribe_candles(pair, timeframe):
                self.set_price(pair, candle.close)
                yield candle
            return

        queue = self._queue(pair)
        while True:
            candle = await queue.get()
            if candle is None:
                return
            yield candle

    async def get_candle_history(self, pair: str, timeframe: str, limit: int) -> list[Candle]:
        if self.market_data is not None:
            return await self.market_data.get_candle_history(pair, timeframe, limit)
        return self.history.get(pair, [])[-limit:]

    async def get_exchange_rules(self, pair: str) -> ExchangeRules:
        if pair in self.rules:
            return self.rules[pair]
        if self.market_data is not None:
            return await self.market_data.get_exchange_rules(pair)
        return DEFAULT_RULES

    async def get_last_price(self, pair: str) -> Decimal:
        if self.market_data is not None:
            self.set_price(pair, await self.market_data.get_last_price(pair))
        if pair not in self.prices:
            raise OrderRejected(pair, "no price available")
        return self.prices[pair]

    # ------------------------------------------------------------------
    # Account
    # ------------------------------------------------------------------

    async def get_account_balance(self, asset: str) -> Decimal:
        return self.balances.get(asset, Decimal("0"))

    async def get_isolated_margin_balance(self, pair: str) -> Decimal:
        if pair in self.margin_balances:
            return self.margin_balances[pair]
        return self.balances.get(split_symbol(pair)[1], Decimal("0"))

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    async def submit_order(self, order: Order) -> str:
        pair = order.pair
        reference = order.price if order.type is OrderType.LIMIT else self.prices.get(pair)
        if reference is None:
            raise OrderRejected(pair, "no price available")

        base, quote = split_symbol(pair)
        if order.side is Side.BUY and not order.isolated_margin:
            cost = order.quantity * reference
            if self.balances.get(quote, Decimal("0")) < cost:
                raise OrderRejected(pair, f"insufficient {quote} balance for {cost}")
        if order.side is Side.SELL and not order.isolated_margin:
            if self.balances.get(base, Decimal("0")) < order.quantity:
                raise OrderRejected(pair, f"insufficient {base} balance for {order.quantity}")

        order_id = f"paper-{next(self._ids)}"
        self._orders[order_id] = _PaperOrder(order=order)
        logger.info(
            f"[{pair}] paper {order.type.value} {order.side.value} {order.quantity}"
            f"{f' @ {order.price}' if order.price is not None else ''} -> {order_id}"
        )
        self._match(pair)
        return order_id

    async def get_order_status(self, order_id: str, pair: str) -> OrderStatusReport:
        paper = self._orders.get(order_id)
        if paper is None:
            return OrderStatusReport(status=OrderStatus.REJECTED, error="unknown order")
        return OrderStatusReport(
            status=paper.status,
            filled_quantity=paper.filled,
            avg_fill_price=paper.avg_price,
            error=paper.error,
        )

    async def cancel_order(self, order_id: str, pair: str):
        paper = self._orders.get(order_id)
        if paper is None or paper.status.is_terminal:
            return
        paper.status = OrderStatus.CANCELED
        logger.info(f"[{pair}] paper order {order_id} canceled")

    def fill(self, order_id: str, quantity, price=None):
        """Fill (part of) a resting order by hand."""
        paper = self._orders[order_id]
        price = to_decimal(price) if price is not None else (paper.order.price or self.prices[paper.order.pair])
        self._apply_fill(paper, to_decimal(quantity), price)

    async def close(self):
        if self.market_data is not None:
            await self.market_data.close()

    # ------------------------------------------------------------------
    # Matching
    # ------------------------------------------------------------------

    def _match(self, pair: str):
        price = self.prices.get(pair)
        if price is None:
            return
        for paper in self._orders.values():
            order = paper.order
            if order.pair != pair or paper.status.is_terminal:
                continue
            if order.type is OrderType.MARKET:
                self._apply_fill(paper, order.quantity - paper.filled, price)
            elif order.side is Side.BUY and price <= order.price:
                self._apply_fill(paper, order.quantity - paper.filled, order.price)
            elif order.side is Side.SELL and price >= order.price:
                self._apply_fill(paper, order.quantity - paper.filled, order.price)

    def _apply_fill(self, paper: _PaperOrder, quantity: Decimal, price: Decimal):
        order = paper.order
        quantity = min(quantity, order.quantity - paper.filled)
        if quantity <= 0:
            return
        base, quote = split_symbol(order.pair)
        sign = 1 if order.side is Side.BUY else -1
        self.balances[base] = self.balances.get(base, Decimal("0")) + sign * quantity
        self.balances[quote] = self.balances.get(quote, Decimal("0")) - sign * quantity * price

        previous = paper.filled * (paper.avg_price or Decimal("0"))
        paper.filled += quantity
        paper.avg_price = (previous + quantity * price) / paper.filled
        paper.status = (
            OrderStatus.FILLED if paper.filled >= order.quantity else OrderStatus.PARTIALLY_FILLED
        )
