"""BVLT router: primary-pair bias to leveraged-token leg switches.

A switch is an explicit state machine:

    IDLE --bias--> SELLING --sell filled--> SWITCHING --buy submitted--> BUYING --buy filled--> IDLE

`next_intent` only ever hands out a Buy on the target leg when the State
Store shows the opposite leg flat with no order in flight. A failed or
timed-out sell drops back to IDLE with the target still pending, so the
switch is attempted again on the next cycle.
"""

import logging
from decimal import Decimal
from enum import Enum

from cryptotrader.domain import Bias, BvltLeg, IntentReason, OrderIntent, PortfolioSnapshot, PositionSide, Side
from cryptotrader.errors import BothLegsHeld
from cryptotrader.schemas.strategy import BvltGroupConfig

logger = logging.getLogger(__name__)


class SwitchState(str, Enum):
    IDLE = "idle"
    SELLING = "selling"
    SWITCHING = "switching"
    BUYING = "buying"


def target_leg(bias: Bias) -> BvltLeg | None:
    if bias is Bias.BULLISH:
        return BvltLeg.UP
    if bias is Bias.BEARISH:
        return BvltLeg.DOWN
    return None


def _other(leg: BvltLeg) -> BvltLeg:
    return BvltLeg.DOWN if leg is BvltLeg.UP else BvltLeg.UP


class BvltRouter:
    def __init__(self, group: BvltGroupConfig):
        self.group = group
        self.state = SwitchState.IDLE
        self.pending_target: BvltLeg | None = None

    @property
    def name(self) -> str:
        return self.group.name

    def held_leg(self, snapshot: PortfolioSnapshot) -> BvltLeg | None:
        up = snapshot.position(self.group.up_pair).is_open
        down = snapshot.position(self.group.down_pair).is_open
        if up and down:
            raise BothLegsHeld(f"{self.name}: both {self.group.up_pair} and {self.group.down_pair} are held")
        if up:
            return BvltLeg.UP
        if down:
            return BvltLeg.DOWN
        return None

    def on_bias(self, bias: Bias):
        leg = target_leg(bias)
        if leg is None:
            return
        if leg is not self.pending_target:
            logger.info(f"[{self.name}] switch target -> {self.group.leg_pair(leg)}")
        self.pending_target = leg

    def next_intent(self, snapshot: PortfolioSnapshot, capital: Decimal) -> OrderIntent | None:
        """The next order needed to reach the pending target leg, or None when there is nothing to do."""
        target = self.pending_target
        if target is None:
            return None

        entry_pair = self.group.leg_pair(target)
        exit_pair = self.group.leg_pair(_other(target))
        if snapshot.has_open_order(entry_pair) or snapshot.has_open_order(exit_pair):
            logger.info(f"[{self.name}] order still in flight, waiting")
            return None

        held = self.held_leg(snapshot)
        if held is target:
            logger.debug(f"[{self.name}] already holding {entry_pair}")
            self._reset()
            return None

        if held is not None:
            position = snapshot.position(exit_pair)
            self.state = SwitchState.SELLING
            return OrderIntent(
                pair=exit_pair,
                side=Side.SELL,
                reason=IntentReason.BVLT_SWITCH,
                target_quantity=position.quantity,
            )

        if capital <= 0:
            logger.warning(f"[{self.name}] no capital available for {entry_pair}")
            self.state = SwitchState.IDLE
            return None

        self.state = SwitchState.BUYING
        return OrderIntent(
            pair=entry_pair,
            side=Side.BUY,
            reason=IntentReason.BVLT_SWITCH,
            target_notional=capital,
            opens=PositionSide.LONG,
        )

    def on_sell_filled(self):
        self.state = SwitchState.SWITCHING

    def on_buy_filled(self):
        self._reset()

    def on_failed(self, reason: str):
        """Abort the switch for this cycle; the pending target is kept."""
        logger.warning(f"[{self.name}] switch aborted in state {self.state.value}: {reason}")
        self.state = SwitchState.IDLE

    def _reset(self):
        self.state = SwitchState.IDLE
        self.pending_target = None
