"""Position sync — reconcile stored state with the exchange on startup.

After a restart the store may not match the account: orders may have
settled while the process was down, holdings may have been sold by hand,
or the process may have died mid-cycle.

Scenarios handled:
1. Orders left Pending/PartiallyFilled → status refreshed, still-open ones canceled
2. Stored Long, exchange holds the base asset → OK, phase set back to Open
3. Stored Long, exchange holds nothing tradable → stale record reset
4. Exchange holds the base asset, store is flat → position adopted at the current price
Margin pairs (leverage/short) cannot be inferred from spot balances and are kept as stored.
"""

import logging

from cryptotrader.domain import OrderStatus, PairPhase, PositionSide
from cryptotrader.errors import BothLegsHeld
from cryptotrader.schemas.strategy import StrategyConfig
from cryptotrader.utils.precision import floor_to_step

logger = logging.getLogger(__name__)


async def sync_positions_on_startup(exchange, store, strategy: StrategyConfig, risk) -> dict:
    """Compare stored orders and positions against the exchange and reconcile.

    Called once before any job starts. Returns counts per scenario.
    """
    result = {"orders_reconciled": 0, "confirmed": 0, "removed": 0, "adopted": 0}

    for order in store.open_orders():
        report = await exchange.get_order_status(order.id, order.pair)
        if not report.status.is_terminal:
            await exchange.cancel_order(order.id, order.pair)
            report = await exchange.get_order_status(order.id, order.pair)
        status = report.status if report.status.is_terminal else OrderStatus.CANCELED
        store.update_order(
            order.id,
            status,
            filled_quantity=report.filled_quantity,
            avg_fill_price=report.avg_fill_price,
            error="reconciled on startup",
        )
        result["orders_reconciled"] += 1
        logger.warning(f"Position sync: order {order.id} on {order.pair} left {status.value}")

    for pair in strategy.traded_symbols:
        config = risk.config(pair)
        position = store.position(pair)

        if config.uses_margin:
            if position.is_open:
                logger.info(
                    f"Position sync: {pair} margin position {position.side.value} {position.quantity} kept as stored"
                )
                store.set_phase(pair, PairPhase.OPEN)
            elif position.phase is not PairPhase.FLAT:
                store.set_phase(pair, PairPhase.FLAT)
            continue

        rules = await exchange.get_exchange_rules(pair)
        held = floor_to_step(await exchange.get_account_balance(config.base), rules.lot_size_step)
        price = await exchange.get_last_price(pair)
        tradable = held > 0 and (rules.min_notional <= 0 or held * price >= rules.min_notional)

        if position.is_open:
            if tradable:
                logger.info(f"Position sync: {pair} position confirmed ({held} {config.base} on exchange)")
                store.set_phase(pair, PairPhase.OPEN)
                result["confirmed"] += 1
            else:
                logger.warning(
                    f"Position sync: {pair} stored {position.side.value} {position.quantity} "
                    f"but exchange holds {held} {config.base}. Removing stale record."
                )
                store.reset_position(pair)
                _log_sync_event(store, pair, f"Stale position removed ({position.quantity} stored, {held} held)")
                result["removed"] += 1
            continue

        if position.phase is not PairPhase.FLAT:
            store.set_phase(pair, PairPhase.FLAT)
        if tradable:
            stop = risk.stop_price_for(pair, PositionSide.LONG, price)
            store.open_position(pair, PositionSide.LONG, held, price, stop_price=stop)
            logger.warning(f"Position sync: adopted untracked {held} {config.base} on {pair} at {price}")
            _log_sync_event(store, pair, f"Auto-recovered position from exchange ({held} @ {price})")
            result["adopted"] += 1

    for group in strategy.bvlt_groups:
        up = store.position(group.up_pair).is_open
        down = store.position(group.down_pair).is_open
        if up and down:
            raise BothLegsHeld(
                f"{group.name}: both {group.up_pair} and {group.down_pair} are held. "
                f"Sell one manually before starting."
            )

    logger.info(f"Position sync complete: {result}")
    return result


def _log_sync_event(store, pair: str, message: str):
    """Write a sync event to the job log."""
    store.log_cycle(pair, "warning", action="position_sync", message=message)
