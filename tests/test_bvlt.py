"""Tests for BVLT leg switching: router state machine and the switch sequence."""

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlmodel import Session, select

from cryptotrader.config import Settings
from cryptotrader.domain import (
    Bias,
    BvltLeg,
    IntentReason,
    Order,
    OrderStatus,
    OrderStatusReport,
    OrderType,
    PairPhase,
    PortfolioSnapshot,
    Position,
    PositionSide,
    Side,
)
from cryptotrader.engine.controller import TradingController
from cryptotrader.errors import BothLegsHeld, TradingError
from cryptotrader.models.job_log import JobLog
from cryptotrader.schemas.strategy import parse_strategy_text
from cryptotrader.services.bvlt_router import BvltRouter, SwitchState
from cryptotrader.services.exchange import DEFAULT_RULES, PaperExchange

STRATEGY = parse_strategy_text(
    "[Strategy]\nPairs=BTC/USDT:BTCUP/USDT:BTCDOWN/USDT\nFast=9\nSlow=21\n"
)
GROUP = STRATEGY.bvlt_groups[0]
UP, DOWN = "BTCUP/USDT", "BTCDOWN/USDT"


def held(pair: str, quantity: str = "10") -> Position:
    return Position(pair=pair, side=PositionSide.LONG, quantity=Decimal(quantity), entry_price=Decimal("2"))


def snapshot(*positions: Position, open_orders=()) -> PortfolioSnapshot:
    return PortfolioSnapshot(positions={p.pair: p for p in positions}, open_orders=tuple(open_orders))


def make_settings(**kwargs) -> Settings:
    return Settings(total_capital=100, order_timeout_seconds=0, order_poll_seconds=0, **kwargs)


# ---------------------------------------------------------------------------
# Router
# ---------------------------------------------------------------------------

class TestRouter:
    def test_held_leg(self):
        router = BvltRouter(GROUP)
        assert router.held_leg(snapshot()) is None
        assert router.held_leg(snapshot(held(UP))) is BvltLeg.UP
        assert router.held_leg(snapshot(held(DOWN))) is BvltLeg.DOWN

    def test_both_legs_held_is_an_error(self):
        router = BvltRouter(GROUP)
        with pytest.raises(BothLegsHeld):
            router.held_leg(snapshot(held(UP), held(DOWN)))
        assert issubclass(BothLegsHeld, TradingError)

    def test_no_target_no_intent(self):
        router = BvltRouter(GROUP)
        assert router.next_intent(snapshot(held(DOWN)), Decimal("50")) is None

    def test_neutral_bias_ignored(self):
        router = BvltRouter(GROUP)
        router.on_bias(Bias.NEUTRAL)
        assert router.pending_target is None

    def test_sells_opposite_leg_first(self):
        router = BvltRouter(GROUP)
        router.on_bias(Bias.BULLISH)
        intent = router.next_intent(snapshot(held(DOWN)), Decimal("50"))
        assert intent.pair == DOWN
        assert intent.side is Side.SELL
        assert intent.reason is IntentReason.BVLT_SWITCH
        assert intent.target_quantity == Decimal("10")
        assert router.state is SwitchState.SELLING

    def test_buys_target_when_flat(self):
        router = BvltRouter(GROUP)
        router.on_bias(Bias.BEARISH)
        intent = router.next_intent(snapshot(), Decimal("50"))
        assert intent.pair == DOWN
        assert intent.side is Side.BUY
        assert intent.target_notional == Decimal("50")
        assert intent.opens is PositionSide.LONG
        assert router.state is SwitchState.BUYING

    def test_waits_for_in_flight_order(self):
        router = BvltRouter(GROUP)
        router.on_bias(Bias.BULLISH)
        in_flight = Order(
            id="o1", pair=DOWN, side=Side.SELL, type=OrderType.MARKET, quantity=Decimal("10")
        )
        assert router.next_intent(snapshot(held(DOWN), open_orders=[in_flight]), Decimal("50")) is None

    def test_target_already_held(self):
        router = BvltRouter(GROUP)
        router.on_bias(Bias.BULLISH)
        assert router.next_intent(snapshot(held(UP)), Decimal("50")) is None
        assert router.pending_target is None

    def test_failure_keeps_pending_target(self):
        router = BvltRouter(GROUP)
        router.on_bias(Bias.BULLISH)
        router.next_intent(snapshot(held(DOWN)), Decimal("50"))
        router.on_failed("timeout")
        assert router.state is SwitchState.IDLE
        assert router.pending_target is BvltLeg.UP

    def test_no_capital(self):
        router = BvltRouter(GROUP)
        router.on_bias(Bias.BULLISH)
        assert router.next_intent(snapshot(), Decimal("0")) is None


# ---------------------------------------------------------------------------
# Switch sequence
# ---------------------------------------------------------------------------

class TestSwitch:
    @pytest.mark.asyncio
    async def test_sell_completes_before_buy(self, store):
        paper = PaperExchange(balances={"USDT": Decimal("100"), "BTCDOWN": Decimal("10")})
        for pair, price in ((UP, 2), (DOWN, 2), ("BTC/USDT", 100)):
            paper.set_price(pair, price)
        store.open_position(DOWN, PositionSide.LONG, Decimal("10"), Decimal("2"))
        controller = TradingController(STRATEGY, paper, store, make_settings())
        controller.allocator.set_total_capital(Decimal("100"))
        job = controller.jobs[0]

        submitted = []
        original_submit = paper.submit_order

        async def tracking_submit(order):
            if order.side is Side.BUY:
                assert not store.position(DOWN).is_open
                assert store.open_orders(DOWN) == []
            submitted.append((order.pair, order.side))
            return await original_submit(order)

        paper.submit_order = tracking_submit

        job.router.on_bias(Bias.BULLISH)
        await job.switch()

        assert submitted == [(DOWN, Side.SELL), (UP, Side.BUY)]
        up = store.position(UP)
        assert up.side is PositionSide.LONG
        assert up.quantity == Decimal("50")
        down = store.position(DOWN)
        assert not down.is_open
        assert down.phase is PairPhase.FLAT
        assert job.router.state is SwitchState.IDLE
        assert job.router.pending_target is None
        assert paper.balances["USDT"] == Decimal("20")

    @pytest.mark.asyncio
    async def test_sell_timeout_skips_buy(self, store, db_engine):
        exchange = MagicMock()
        exchange.get_account_balance = AsyncMock(return_value=Decimal("100"))
        exchange.get_last_price = AsyncMock(return_value=Decimal("2"))
        exchange.get_exchange_rules = AsyncMock(return_value=DEFAULT_RULES)
        exchange.submit_order = AsyncMock(return_value="o1")
        exchange.get_order_status = AsyncMock(return_value=OrderStatusReport(status=OrderStatus.PENDING))
        exchange.cancel_order = AsyncMock()
        store.open_position(DOWN, PositionSide.LONG, Decimal("10"), Decimal("2"))
        controller = TradingController(STRATEGY, exchange, store, make_settings())
        controller.allocator.set_total_capital(Decimal("100"))
        job = controller.jobs[0]

        job.router.on_bias(Bias.BULLISH)
        await job.switch()

        exchange.submit_order.assert_awaited_once()
        sell = exchange.submit_order.await_args.args[0]
        assert sell.pair == DOWN
        assert sell.side is Side.SELL
        assert job.router.pending_target is BvltLeg.UP
        assert job.router.state is SwitchState.IDLE
        assert store.position(DOWN).is_open
        assert store.position(DOWN).phase is PairPhase.OPEN
        assert store.order("o1").status is OrderStatus.CANCELED
        assert not store.position(UP).is_open

        with Session(db_engine) as session:
            actions = [log.action for log in session.exec(select(JobLog)).all()]
        assert "bvlt_switch:sell_failed" in actions

    def test_seed_bias_from_held_leg(self, store, paper):
        store.open_position(DOWN, PositionSide.LONG, Decimal("10"), Decimal("2"))
        controller = TradingController(STRATEGY, paper, store, make_settings())
        job = controller.jobs[0]
        job.seed_bias()
        assert controller.ctx.signals.last_bias("BTC/USDT") is Bias.BEARISH
