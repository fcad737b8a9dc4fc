"""ccxt-backed exchange client.

Wraps `ccxt.async_support` for the operations the trading core needs and
maps ccxt's exception hierarchy onto cryptotrader's error kinds.
"""

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from decimal import Decimal

import ccxt.async_support as ccxt
import pandas as pd

from cryptotrader.domain import (
    Candle,
    ExchangeRules,
    Order,
    OrderStatus,
    OrderStatusReport,
    OrderType,
)
from cryptotrader.errors import OrderRejected, TradingError, TransportError
from cryptotrader.schemas.strategy import split_symbol
from cryptotrader.utils.constants import INTERVAL_MS
from cryptotrader.utils.precision import to_decimal

logger = logging.getLogger(__name__)

# ccxt unified order status -> OrderStatus
_STATUS_MAP = {
    "closed": OrderStatus.FILLED,
    "canceled": OrderStatus.CANCELED,
    "expired": OrderStatus.CANCELED,
    "rejected": OrderStatus.REJECTED,
}


class CcxtExchange:
    """Live exchange access through ccxt."""

    def __init__(
        self,
        exchange_id: str,
        api_key: str = "",
        api_secret: str = "",
        poll_seconds: float = 5.0,
    ):
        try:
            exchange_class = getattr(ccxt, exchange_id)
        except AttributeError as e:
            raise TradingError(f"unknown ccxt exchange id {exchange_id!r}") from e
        self.exchange_id = exchange_id
        self.poll_seconds = poll_seconds
        self._exchange = exchange_class({
            "apiKey": api_key,
            "secret": api_secret,
            "enableRateLimit": True,
            "options": {"defaultType": "spot"},
        })
        self._markets_loaded = False

    async def _call(self, pair: str, method, *args, **kwargs):
        """Invoke a ccxt coroutine, translating its errors."""
        try:
            return await method(*args, **kwargs)
        except (ccxt.InsufficientFunds, ccxt.InvalidOrder) as e:
            raise OrderRejected(pair, str(e)) from e
        except ccxt.NetworkError as e:
            raise TransportError(f"{self.exchange_id} {pair}: {e}") from e
        except ccxt.ExchangeError as e:
            raise TradingError(f"{self.exchange_id} {pair}: {e}") from e

    async def _ensure_markets(self):
        if self._markets_loaded:
            return
        await self._call("*", self._exchange.load_markets)
        self._markets_loaded = True
        logger.info(f"Loaded {len(self._exchange.symbols)} {self.exchange_id} markets")

    # ------------------------------------------------------------------
    # Market data
    # ------------------------------------------------------------------

    async def subscribe_candles(self, pair: str, timeframe: str) -> AsyncIterator[Candle]:
        """Poll OHLCV and yield each newly closed candle.

        The first candle yielded is the most recent closed one, so a
        resubscription always re-delivers the boundary candle.
        """
        last_open_time: int | None = None
        while True:
            rows = await self._call(pair, self._exchange.fetch_ohlcv, pair, timeframe, None, 3)
            candles = _closed_candles(rows, timeframe)
            if last_open_time is None:
                candles = candles[-1:]
            for candle in candles:
                if last_open_time is None or candle.open_time > last_open_time:
                    last_open_time = candle.open_time
                    yield candle
            await asyncio.sleep(self.poll_seconds)

    async def get_candle_history(self, pair: str, timeframe: str, limit: int) -> list[Candle]:
        # one extra row: the still-forming candle is dropped
        rows = await self._call(pair, self._exchange.fetch_ohlcv, pair, timeframe, None, limit + 1)
        return _closed_candles(rows, timeframe)[-limit:]

    async def get_exchange_rules(self, pair: str) -> ExchangeRules:
        await self._ensure_markets()
        try:
            market = self._exchange.market(pair)
        except ccxt.BadSymbol as e:
            raise TradingError(f"{self.exchange_id} has no market {pair}") from e

        precision = market.get("precision") or {}
        tick = _precision_to_step(precision.get("price"), self._exchange.precisionMode)
        lot = _precision_to_step(precision.get("amount"), self._exchange.precisionMode)
        cost_limits = (market.get("limits") or {}).get("cost") or {}
        min_notional = to_decimal(cost_limits.get("min") or 0)
        return ExchangeRules(tick_size=tick, lot_size_step=lot, min_notional=min_notional)

    async def get_last_price(self, pair: str) -> Decimal:
        ticker = await self._call(pair, self._exchange.fetch_ticker, pair)
        price = ticker.get("last") or ticker.get("close")
        if price is None:
            raise TransportError(f"{self.exchange_id} {pair}: ticker has no last price")
        return to_decimal(price)

    # ------------------------------------------------------------------
    # Account
    # ------------------------------------------------------------------

    async def get_account_balance(self, asset: str) -> Decimal:
        balance = await self._call(asset, self._exchange.fetch_balance)
        return to_decimal((balance.get("free") or {}).get(asset) or 0)

    async def get_isolated_margin_balance(self, pair: str) -> Decimal:
        """Free quote collateral in the pair's isolated margin account."""
        quote = split_symbol(pair)[1]
        balance = await self._call(
            pair, self._exchange.fetch_balance, {"type": "margin", "marginMode": "isolated"}
        )
        account = balance.get(pair) or {}
        free = (account.get(quote) or {}).get("free")
        if free is None:
            free = (balance.get("free") or {}).get(quote)
        return to_decimal(free or 0)

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    async def submit_order(self, order: Order) -> str:
        params = {}
        if order.isolated_margin:
            params = {"marginMode": "isolated", "sideEffectType": "AUTO_BORROW_REPAY"}
        price = float(order.price) if order.type is OrderType.LIMIT else None
        response = await self._call(
            order.pair,
            self._exchange.create_order,
            order.pair,
            order.type.value,
            order.side.value,
            float(order.quantity),
            price,
            params,
        )
        order_id = str(response["id"])
        logger.info(
            f"[{order.pair}] submitted {order.type.value} {order.side.value} "
            f"{order.quantity} @ {order.price or 'market'} -> {order_id}"
        )
        return order_id

    async def get_order_status(self, order_id: str, pair: str) -> OrderStatusReport:
        raw = await self._call(pair, self._exchange.fetch_order, order_id, pair)
        filled = to_decimal(raw.get("filled") or 0)
        status = _STATUS_MAP.get(raw.get("status"))
        if status is None:
            status = OrderStatus.PARTIALLY_FILLED if filled > 0 else OrderStatus.PENDING
        average = raw.get("average")
        return OrderStatusReport(
            status=status,
            filled_quantity=filled,
            avg_fill_price=to_decimal(average) if average else None,
        )

    async def cancel_order(self, order_id: str, pair: str):
        try:
            await self._call(pair, self._exchange.cancel_order, order_id, pair)
        except OrderRejected as e:
            # already filled or canceled on the exchange side
            logger.warning(f"[{pair}] cancel of {order_id} refused: {e.reason}")

    async def close(self):
        await self._exchange.close()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _closed_candles(rows: list[list], timeframe: str) -> list[Candle]:
    """Parse ccxt OHLCV rows, keeping only candles whose interval has ended."""
    if not rows:
        return []
    df = pd.DataFrame(rows, columns=["open_time", "open", "high", "low", "close", "volume"])
    df = df.dropna().drop_duplicates("open_time").sort_values("open_time")
    now_ms = int(time.time() * 1000)
    df = df[df["open_time"] + INTERVAL_MS[timeframe] <= now_ms]
    return [
        Candle(
            open=float(r.open),
            high=float(r.high),
            low=float(r.low),
            close=float(r.close),
            volume=float(r.volume),
            open_time=int(r.open_time),
            interval=timeframe,
        )
        for r in df.itertuples(index=False)
    ]


def _precision_to_step(value, precision_mode) -> Decimal:
    """ccxt reports precision either as a step (TICK_SIZE mode) or as decimal places."""
    if value is None:
        return Decimal("0")
    if precision_mode == ccxt.TICK_SIZE:
        return to_decimal(value)
    return Decimal(1).scaleb(-int(value))
