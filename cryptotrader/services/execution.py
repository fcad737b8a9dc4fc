"""Order execution engine.

Turns an OrderIntent into a concrete exchange order, submits it, and polls
it to a terminal status within a bounded time. Confirmed fills are written
to the State Store as they settle; the caller only sees the final order or
an error:

* OrderRejected: refused by the exchange or by a local pre-check
  (zero quantity, minimum notional). Never retried.
* OrderTimeout: not filled by the deadline and canceled. Signal-driven
  limit orders get one retry at a refreshed price first; BVLT switch legs
  are reported as missed.
"""

import asyncio
import logging
import uuid
from dataclasses import replace
from decimal import Decimal

from cryptotrader.domain import (
    ExchangeRules,
    IntentReason,
    Order,
    OrderIntent,
    OrderStatus,
    OrderStatusReport,
    OrderType,
    PairPhase,
    Side,
)
from cryptotrader.errors import OrderRejected, OrderTimeout
from cryptotrader.schemas.strategy import PairConfig
from cryptotrader.utils.precision import floor_to_step, to_decimal

logger = logging.getLogger(__name__)

PARTIAL_FILL_WAIT_THEN_CANCEL = "wait_then_cancel"
PARTIAL_FILL_COMPLETE_AT_MARKET = "complete_at_market"
PARTIAL_FILL_POLICIES = (PARTIAL_FILL_WAIT_THEN_CANCEL, PARTIAL_FILL_COMPLETE_AT_MARKET)

_RETRYABLE_REASONS = (IntentReason.SIGNAL_OPEN, IntentReason.SIGNAL_CLOSE)


def compute_limit_price(close, tick_size, limit_offset: int, side: Side) -> Decimal:
    """close +/- tick*offset, snapped down to the tick grid."""
    close = to_decimal(close)
    tick = to_decimal(tick_size)
    delta = tick * limit_offset
    price = close + delta if side is Side.BUY else close - delta
    return floor_to_step(price, tick)


class ExecutionEngine:
    def __init__(
        self,
        exchange,
        store,
        risk=None,
        timeout_seconds: float = 60.0,
        poll_seconds: float = 1.0,
        partial_fill_policy: str = PARTIAL_FILL_WAIT_THEN_CANCEL,
    ):
        if partial_fill_policy not in PARTIAL_FILL_POLICIES:
            raise ValueError(f"unknown partial fill policy {partial_fill_policy!r}")
        self.exchange = exchange
        self.store = store
        self.risk = risk
        self.timeout_seconds = timeout_seconds
        self.poll_seconds = poll_seconds
        self.partial_fill_policy = partial_fill_policy
        self._rules: dict[str, ExchangeRules] = {}

    async def get_rules(self, pair: str) -> ExchangeRules:
        if pair not in self._rules:
            self._rules[pair] = await self.exchange.get_exchange_rules(pair)
        return self._rules[pair]

    # ------------------------------------------------------------------
    # Order construction
    # ------------------------------------------------------------------

    def build_order(self, intent: OrderIntent, config: PairConfig, price, rules: ExchangeRules) -> Order:
        pair = intent.pair
        price = to_decimal(price)
        if intent.force_market or config.order_type is OrderType.MARKET:
            order_type = OrderType.MARKET
            limit_price = None
            reference = price
        else:
            order_type = OrderType.LIMIT
            limit_price = compute_limit_price(price, rules.tick_size, config.limit_offset, intent.side)
            reference = limit_price

        if intent.target_quantity is not None:
            quantity = intent.target_quantity
        else:
            if reference <= 0:
                raise OrderRejected(pair, "no usable price to size the order")
            quantity = intent.target_notional / reference
        quantity = floor_to_step(quantity, rules.lot_size_step)

        if quantity <= 0:
            raise OrderRejected(pair, "quantity rounds down to zero")
        notional = quantity * reference
        if rules.min_notional > 0 and notional < rules.min_notional:
            raise OrderRejected(pair, f"notional {notional} below minimum {rules.min_notional}")

        return Order(
            id="",
            pair=pair,
            side=intent.side,
            type=order_type,
            quantity=quantity,
            price=limit_price,
            reason=intent.reason,
            isolated_margin=config.uses_margin,
        )

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(self, intent: OrderIntent, config: PairConfig, price) -> Order:
        """Carry out `intent` and return the order that completed it."""
        pair = intent.pair
        price = to_decimal(price)
        rules = await self.get_rules(pair)
        order = self.build_order(intent, config, price, rules)

        self.store.set_phase(pair, PairPhase.ENTERING if intent.is_opening else PairPhase.EXITING)
        try:
            return await self._execute_with_retry(order, intent, config, price, rules)
        finally:
            position = self.store.position(pair)
            self.store.set_phase(pair, PairPhase.OPEN if position.is_open else PairPhase.FLAT)

    async def _execute_with_retry(
        self,
        order: Order,
        intent: OrderIntent,
        config: PairConfig,
        price: Decimal,
        rules: ExchangeRules,
    ) -> Order:
        try:
            return await self._place(order, intent, config, price)
        except OrderTimeout as e:
            filled = to_decimal(e.filled_quantity or 0)
            remaining = order.quantity - filled

            if intent.reason is IntentReason.BVLT_SWITCH:
                if (
                    filled > 0
                    and intent.side is Side.SELL
                    and self.partial_fill_policy == PARTIAL_FILL_COMPLETE_AT_MARKET
                ):
                    logger.warning(f"[{order.pair}] completing partially filled switch sell at market")
                    rest = replace(intent, target_quantity=remaining, target_notional=None, force_market=True)
                    market_order = self.build_order(rest, config, price, rules)
                    return await self._place(market_order, rest, config, price)
                logger.warning(f"[{order.pair}] switch leg missed: {e}")
                raise

            if order.type is OrderType.LIMIT and intent.reason in _RETRYABLE_REASONS:
                refreshed = await self.exchange.get_last_price(order.pair)
                retry_intent = replace(intent, target_quantity=remaining, target_notional=None)
                retry = self.build_order(retry_intent, config, refreshed, rules)
                logger.info(
                    f"[{order.pair}] limit order timed out, retrying once: "
                    f"{retry.quantity} @ {retry.price} (was {order.price})"
                )
                return await self._place(retry, retry_intent, config, to_decimal(refreshed))

            raise

    async def _place(self, order: Order, intent: OrderIntent, config: PairConfig, reference: Decimal) -> Order:
        """Submit one order and wait for a terminal status."""
        pair = order.pair
        try:
            order_id = await self.exchange.submit_order(order)
        except OrderRejected as e:
            rejected = replace(order, id=f"rejected-{uuid.uuid4().hex[:12]}", status=OrderStatus.REJECTED)
            self.store.record_order(rejected)
            logger.error(f"[{pair}] order rejected: {e.reason}")
            raise

        order = self.store.record_order(replace(order, id=order_id))
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout_seconds

        while True:
            report = await self.exchange.get_order_status(order_id, pair)
            order = self._record_report(order, report)

            if report.status is OrderStatus.FILLED:
                self._settle(intent, config, order, report, reference)
                return order
            if report.status in (OrderStatus.CANCELED, OrderStatus.REJECTED):
                self._settle(intent, config, order, report, reference)
                raise OrderRejected(pair, report.error or f"order {order_id} {report.status.value}")
            if loop.time() >= deadline:
                break
            await asyncio.sleep(self.poll_seconds)

        await self.exchange.cancel_order(order_id, pair)
        report = await self.exchange.get_order_status(order_id, pair)
        if report.status is OrderStatus.FILLED:
            # filled while the cancel was in flight
            order = self._record_report(order, report)
            self._settle(intent, config, order, report, reference)
            return order

        order = self.store.update_order(
            order_id,
            OrderStatus.CANCELED,
            filled_quantity=report.filled_quantity,
            avg_fill_price=report.avg_fill_price,
            error="timeout",
        )
        self._settle(intent, config, order, report, reference)
        logger.warning(
            f"[{pair}] order {order_id} canceled after {self.timeout_seconds:.0f}s "
            f"(filled {report.filled_quantity}/{order.quantity})"
        )
        raise OrderTimeout(pair, order_id, report.filled_quantity)

    def _record_report(self, order: Order, report: OrderStatusReport) -> Order:
        if report.status is order.status and report.filled_quantity == order.filled_quantity:
            return order
        return self.store.update_order(
            order.id,
            report.status,
            filled_quantity=report.filled_quantity,
            avg_fill_price=report.avg_fill_price,
            error=report.error,
        )

    def _settle(
        self,
        intent: OrderIntent,
        config: PairConfig,
        order: Order,
        report: OrderStatusReport,
        reference: Decimal,
    ):
        """Apply whatever quantity actually filled to the position."""
        filled = report.filled_quantity
        if filled <= 0:
            return
        fill_price = report.avg_fill_price or order.price or reference
        if intent.is_opening:
            stop = self.risk.stop_price_for(order.pair, intent.opens, fill_price) if self.risk else None
            self.store.open_position(
                order.pair,
                intent.opens,
                filled,
                fill_price,
                leverage=config.leverage,
                stop_price=stop,
            )
        else:
            self.store.reduce_position(order.pair, filled, fill_price, intent.reason)
