"""Emergency stop: cancel in-flight orders and flatten every open position."""

import logging

from cryptotrader.domain import IntentReason, OrderIntent, OrderStatus, PositionSide, Side

logger = logging.getLogger(__name__)


async def run_emergency_stop(exchange, store, execution, configs: dict) -> dict:
    """Cancel every open order, then close every open position at market.

    `configs` maps traded pair -> PairConfig. Returns dict with
    orders_canceled, positions_closed and errors.
    """
    result = {"orders_canceled": 0, "positions_closed": 0, "errors": []}

    for order in store.open_orders():
        try:
            await exchange.cancel_order(order.id, order.pair)
            report = await exchange.get_order_status(order.id, order.pair)
            status = report.status if report.status.is_terminal else OrderStatus.CANCELED
            store.update_order(
                order.id,
                status,
                filled_quantity=report.filled_quantity,
                avg_fill_price=report.avg_fill_price,
                error="emergency_stop",
            )
            result["orders_canceled"] += 1
        except Exception as e:
            error_msg = f"Failed to cancel order {order.id} ({order.pair}): {e}"
            logger.error(error_msg)
            result["errors"].append(error_msg)

    snapshot = store.snapshot()
    for pair, position in snapshot.positions.items():
        if not position.is_open:
            continue
        config = configs.get(pair)
        if config is None:
            error_msg = f"No configuration for {pair}, position left open"
            logger.error(error_msg)
            result["errors"].append(error_msg)
            continue
        try:
            price = await exchange.get_last_price(pair)
            intent = OrderIntent(
                pair=pair,
                side=Side.SELL if position.side is PositionSide.LONG else Side.BUY,
                reason=IntentReason.EMERGENCY_STOP,
                target_quantity=position.quantity,
                force_market=True,
            )
            await execution.execute(intent, config, price)
            result["positions_closed"] += 1
            logger.info(f"[emergency_stop] Closed {position.side.value} {position.quantity} {pair}")
        except Exception as e:
            error_msg = f"Failed to close position on {pair}: {e}"
            logger.error(error_msg)
            result["errors"].append(error_msg)

    return result
