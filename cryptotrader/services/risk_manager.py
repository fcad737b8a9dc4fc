"""Risk manager: stop-loss, take-profit and leverage/short eligibility.

Stop prices are fixed when a position opens. Pairs trading with leverage
or shorting never get one; that combination is refused when the strategy
file is loaded, so nothing here has to re-check it at runtime.
"""

import logging
from decimal import Decimal

from cryptotrader.domain import IntentReason, OrderIntent, Position, PositionSide, Side
from cryptotrader.schemas.strategy import PairConfig
from cryptotrader.utils.precision import to_decimal

logger = logging.getLogger(__name__)

_HUNDRED = Decimal("100")


def compute_stop_price(config: PairConfig, side: PositionSide, entry_price: Decimal) -> Decimal | None:
    if config.stop_percent is None or side is PositionSide.NONE:
        return None
    pct = to_decimal(config.stop_percent) / _HUNDRED
    if side is PositionSide.LONG:
        return entry_price * (1 - pct)
    return entry_price * (1 + pct)


def compute_take_profit_price(config: PairConfig, side: PositionSide, entry_price: Decimal) -> Decimal | None:
    if config.take_profit_percent is None or side is PositionSide.NONE:
        return None
    pct = to_decimal(config.take_profit_percent) / _HUNDRED
    if side is PositionSide.LONG:
        return entry_price * (1 + pct)
    return entry_price * (1 - pct)


def is_stop_breached(position: Position, price: Decimal) -> bool:
    if not position.is_open or position.stop_price is None:
        return False
    if position.side is PositionSide.LONG:
        return price <= position.stop_price
    return price >= position.stop_price


def _closing_intent(position: Position, reason: IntentReason) -> OrderIntent:
    side = Side.SELL if position.side is PositionSide.LONG else Side.BUY
    return OrderIntent(
        pair=position.pair,
        side=side,
        reason=reason,
        target_quantity=position.quantity,
        force_market=True,
    )


class RiskManager:
    def __init__(self, configs: list[PairConfig] | None = None):
        self._configs: dict[str, PairConfig] = {}
        for config in configs or []:
            self.add_pair(config)

    def add_pair(self, config: PairConfig):
        self._configs[config.symbol] = config

    def config(self, pair: str) -> PairConfig:
        return self._configs[pair]

    def stop_price_for(self, pair: str, side: PositionSide, entry_price: Decimal) -> Decimal | None:
        return compute_stop_price(self._configs[pair], side, entry_price)

    def check_price(self, position: Position, price) -> OrderIntent | None:
        """StopLoss intent (market, full quantity) if `price` breaches the stop."""
        price = to_decimal(price)
        if not is_stop_breached(position, price):
            return None
        logger.warning(
            f"[{position.pair}] stop-loss breached: price={price} stop={position.stop_price} "
            f"({position.side.value} {position.quantity} @ {position.entry_price})"
        )
        return _closing_intent(position, IntentReason.STOP_LOSS)

    def check_take_profit(self, position: Position, close) -> OrderIntent | None:
        if not position.is_open:
            return None
        target = compute_take_profit_price(self._configs[position.pair], position.side, position.entry_price)
        if target is None:
            return None
        close = to_decimal(close)
        hit = close >= target if position.side is PositionSide.LONG else close <= target
        if not hit:
            return None
        logger.info(f"[{position.pair}] take-profit reached: close={close} target={target}")
        return _closing_intent(position, IntentReason.TAKE_PROFIT)

    def vet(self, intent: OrderIntent) -> OrderIntent | None:
        """Drop opening intents the pair is not configured for."""
        config = self._configs.get(intent.pair)
        if config is None:
            logger.error(f"[{intent.pair}] intent for unconfigured pair dropped")
            return None
        if intent.opens is PositionSide.SHORT and not config.short_enabled:
            logger.warning(f"[{intent.pair}] short entry dropped: Short is not enabled")
            return None
        return intent

    def prioritize(self, forced: OrderIntent | None, intents: list[OrderIntent]) -> list[OrderIntent]:
        """A forced close pre-empts every signal-driven intent for the pair."""
        if forced is not None:
            if intents:
                logger.info(f"[{forced.pair}] {forced.reason.value} pre-empts {len(intents)} signal intent(s)")
            return [forced]
        vetted = [self.vet(i) for i in intents]
        return [i for i in vetted if i is not None]
