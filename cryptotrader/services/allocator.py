"""Portfolio allocator: capital slots and bias-to-intent translation.

Total capital is split evenly across allocation slots (a standalone pair
or a whole BVLT group is one slot). Shares are floored to 1e-8 and the
last slot takes the remainder, so the slots always sum to the total.
"""

import logging
from decimal import ROUND_FLOOR, Decimal

from cryptotrader.domain import (
    Bias,
    BiasEvent,
    ExchangeRules,
    IntentReason,
    OrderIntent,
    Position,
    PositionSide,
    Side,
)
from cryptotrader.schemas.strategy import PairConfig, StrategyConfig
from cryptotrader.utils.precision import floor_to_step, to_decimal

logger = logging.getLogger(__name__)

_CAPITAL_QUANTUM = Decimal("0.00000001")


def split_capital(total: Decimal, slots: list[str]) -> dict[str, Decimal]:
    if not slots:
        return {}
    total = to_decimal(total)
    share = (total / len(slots)).quantize(_CAPITAL_QUANTUM, rounding=ROUND_FLOOR)
    allocations = {slot: share for slot in slots[:-1]}
    allocations[slots[-1]] = total - share * (len(slots) - 1)
    return allocations


def slot_names(strategy: StrategyConfig) -> list[str]:
    return [p.symbol for p in strategy.pairs] + [g.name for g in strategy.bvlt_groups]


class PortfolioAllocator:
    def __init__(self, strategy: StrategyConfig, total_capital=Decimal("0")):
        self.strategy = strategy
        self.allocations: dict[str, Decimal] = {}
        self.set_total_capital(total_capital)

    def set_total_capital(self, total_capital):
        self.total_capital = to_decimal(total_capital)
        self.allocations = split_capital(self.total_capital, slot_names(self.strategy))
        logger.info(
            f"Capital {self.total_capital} split over {len(self.allocations)} slot(s): "
            + ", ".join(f"{k}={v}" for k, v in self.allocations.items())
        )

    def allocation(self, slot: str) -> Decimal:
        return self.allocations[slot]

    def capital_for(self, config: PairConfig, available: Decimal | None = None) -> Decimal:
        """Quote capital an opening order may use: the slot, capped by what is available, times leverage."""
        capital = self.allocations[config.symbol]
        if available is not None:
            capital = min(capital, to_decimal(available))
        return capital * (config.leverage or 1)

    def plan(
        self,
        event: BiasEvent,
        config: PairConfig,
        position: Position,
        price,
        rules: ExchangeRules,
        available: Decimal | None = None,
    ) -> list[OrderIntent]:
        """Intents for a bias change, in execution order (any close comes first)."""
        price = to_decimal(price)
        pair = config.symbol
        intents: list[OrderIntent] = []

        if event.bias is Bias.BULLISH:
            if position.side is PositionSide.LONG:
                return []
            if position.side is PositionSide.SHORT:
                intents.append(self._close(position, Side.BUY))
            opening = self._open(config, Side.BUY, PositionSide.LONG, price, rules, available)
            if opening is not None:
                intents.append(opening)

        elif event.bias is Bias.BEARISH:
            if position.side is PositionSide.SHORT:
                return []
            if position.side is PositionSide.LONG:
                intents.append(self._close(position, Side.SELL))
            if config.short_enabled:
                opening = self._open(config, Side.SELL, PositionSide.SHORT, price, rules, available)
                if opening is not None:
                    intents.append(opening)

        if intents:
            logger.info(
                f"[{pair}] {event.bias.value}: "
                + ", ".join(f"{i.reason.value} {i.side.value} {i.target_quantity}" for i in intents)
            )
        return intents

    @staticmethod
    def _close(position: Position, side: Side) -> OrderIntent:
        return OrderIntent(
            pair=position.pair,
            side=side,
            reason=IntentReason.SIGNAL_CLOSE,
            target_quantity=position.quantity,
        )

    def _open(
        self,
        config: PairConfig,
        side: Side,
        opens: PositionSide,
        price: Decimal,
        rules: ExchangeRules,
        available: Decimal | None,
    ) -> OrderIntent | None:
        if price <= 0:
            logger.warning(f"[{config.symbol}] no usable price, skipping entry")
            return None
        capital = self.capital_for(config, available)
        quantity = floor_to_step(capital / price, rules.lot_size_step)
        if quantity <= 0:
            logger.warning(
                f"[{config.symbol}] capital {capital} buys less than one lot at {price}, skipping entry"
            )
            return None
        return OrderIntent(
            pair=config.symbol,
            side=side,
            reason=IntentReason.SIGNAL_OPEN,
            target_quantity=quantity,
            opens=opens,
        )
