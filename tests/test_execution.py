"""Tests for order construction, polling, timeouts and fill settlement."""

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from cryptotrader.domain import (
    ExchangeRules,
    IntentReason,
    OrderIntent,
    OrderStatus,
    OrderStatusReport,
    OrderType,
    PairPhase,
    PositionSide,
    Side,
)
from cryptotrader.errors import OrderRejected, OrderTimeout
from cryptotrader.schemas.strategy import PairConfig
from cryptotrader.services.exchange import DEFAULT_RULES
from cryptotrader.services.execution import (
    PARTIAL_FILL_COMPLETE_AT_MARKET,
    ExecutionEngine,
    compute_limit_price,
)
from cryptotrader.services.risk_manager import RiskManager

MARKET = PairConfig(symbol="ADA/USDT", fast_period=9, slow_period=21, stop_percent=5)
LIMIT = PairConfig(
    symbol="ADA/USDT", fast_period=9, slow_period=21, order_type=OrderType.LIMIT, limit_offset=10
)
DOWN_LEG = PairConfig(
    symbol="BTCDOWN/USDT", fast_period=9, slow_period=21, order_type=OrderType.LIMIT, limit_offset=10
)
UP_LEG = DOWN_LEG.model_copy(update={"symbol": "BTCUP/USDT"})


def open_long(pair="ADA/USDT", quantity="1", reason=IntentReason.SIGNAL_OPEN) -> OrderIntent:
    return OrderIntent(
        pair=pair,
        side=Side.BUY,
        reason=reason,
        target_quantity=Decimal(quantity),
        opens=PositionSide.LONG,
    )


def mock_exchange(status_for) -> MagicMock:
    """Exchange double: ids o1, o2, ... and statuses from `status_for(order_id, canceled)`."""
    exchange = MagicMock()
    exchange.get_exchange_rules = AsyncMock(return_value=DEFAULT_RULES)
    exchange.get_last_price = AsyncMock(return_value=Decimal("101"))
    exchange.submit_order = AsyncMock(side_effect=["o1", "o2", "o3"])
    exchange.cancel_order = AsyncMock()
    exchange.get_order_status = AsyncMock(
        side_effect=lambda order_id, pair: status_for(order_id, exchange.cancel_order.await_count > 0)
    )
    return exchange


def pending(*_):
    return OrderStatusReport(status=OrderStatus.PENDING)


# ---------------------------------------------------------------------------
# Order construction
# ---------------------------------------------------------------------------

class TestBuildOrder:
    def test_limit_price_offsets(self):
        assert compute_limit_price(100, Decimal("0.01"), 10, Side.BUY) == Decimal("100.10")
        assert compute_limit_price(100, Decimal("0.01"), 10, Side.SELL) == Decimal("99.90")

    def test_limit_price_snaps_to_tick(self):
        assert compute_limit_price(Decimal("1.2345"), Decimal("0.01"), 1, Side.BUY) == Decimal("1.24")

    def test_limit_order_sized_from_notional(self, store):
        engine = ExecutionEngine(MagicMock(), store)
        intent = OrderIntent(
            pair="ADA/USDT",
            side=Side.BUY,
            reason=IntentReason.SIGNAL_OPEN,
            target_notional=Decimal("50"),
            opens=PositionSide.LONG,
        )
        order = engine.build_order(intent, LIMIT, 100, DEFAULT_RULES)
        assert order.type is OrderType.LIMIT
        assert order.price == Decimal("100.10")
        assert order.quantity == Decimal("0.4995")

    def test_forced_intent_is_market(self, store):
        engine = ExecutionEngine(MagicMock(), store)
        intent = OrderIntent(
            pair="ADA/USDT",
            side=Side.SELL,
            reason=IntentReason.STOP_LOSS,
            target_quantity=Decimal("2"),
            force_market=True,
        )
        order = engine.build_order(intent, LIMIT, 100, DEFAULT_RULES)
        assert order.type is OrderType.MARKET
        assert order.price is None

    def test_below_min_notional_rejected(self, store):
        engine = ExecutionEngine(MagicMock(), store)
        rules = ExchangeRules(tick_size=Decimal("0.01"), lot_size_step=Decimal("0.01"), min_notional=Decimal("10"))
        with pytest.raises(OrderRejected, match="below minimum"):
            engine.build_order(open_long(quantity="0.05"), MARKET, 100, rules)

    def test_zero_quantity_rejected(self, store):
        engine = ExecutionEngine(MagicMock(), store)
        with pytest.raises(OrderRejected, match="zero"):
            engine.build_order(open_long(quantity="0.00001"), MARKET, 100, DEFAULT_RULES)

    def test_unknown_partial_fill_policy(self, store):
        with pytest.raises(ValueError):
            ExecutionEngine(MagicMock(), store, partial_fill_policy="hope")


# ---------------------------------------------------------------------------
# Paper exchange execution
# ---------------------------------------------------------------------------

class TestPaperExecution:
    @pytest.mark.asyncio
    async def test_market_fill_opens_position_with_stop(self, store, paper):
        store.ensure_pairs(["ADA/USDT"])
        paper.set_price("ADA/USDT", 10)
        engine = ExecutionEngine(paper, store, RiskManager([MARKET]), timeout_seconds=0, poll_seconds=0)

        order = await engine.execute(open_long(quantity="5"), MARKET, 10)

        assert order.status is OrderStatus.FILLED
        assert order.filled_quantity == Decimal("5")
        position = store.position("ADA/USDT")
        assert position.side is PositionSide.LONG
        assert position.quantity == Decimal("5")
        assert position.entry_price == Decimal("10")
        assert position.stop_price == Decimal("9.5")
        assert position.phase is PairPhase.OPEN
        assert paper.balances["USDT"] == Decimal("50")

    @pytest.mark.asyncio
    async def test_insufficient_balance_is_rejected(self, store, paper):
        store.ensure_pairs(["ADA/USDT"])
        paper.set_price("ADA/USDT", 10)
        engine = ExecutionEngine(paper, store, timeout_seconds=0, poll_seconds=0)

        with pytest.raises(OrderRejected, match="insufficient"):
            await engine.execute(open_long(quantity="20"), MARKET, 10)

        position = store.position("ADA/USDT")
        assert not position.is_open
        assert position.phase is PairPhase.FLAT
        assert store.open_orders() == []

    @pytest.mark.asyncio
    async def test_close_records_trade(self, store, paper):
        store.ensure_pairs(["ADA/USDT"])
        paper.set_price("ADA/USDT", 10)
        engine = ExecutionEngine(paper, store, timeout_seconds=0, poll_seconds=0)
        await engine.execute(open_long(quantity="5"), MARKET, 10)

        paper.set_price("ADA/USDT", 12)
        close = OrderIntent(
            pair="ADA/USDT", side=Side.SELL, reason=IntentReason.SIGNAL_CLOSE, target_quantity=Decimal("5")
        )
        await engine.execute(close, MARKET, 12)

        position = store.position("ADA/USDT")
        assert not position.is_open
        assert position.phase is PairPhase.FLAT
        assert paper.balances["USDT"] == Decimal("110")


# ---------------------------------------------------------------------------
# Timeouts and partial fills
# ---------------------------------------------------------------------------

class TestTimeouts:
    @pytest.mark.asyncio
    async def test_signal_limit_order_retried_once_at_refreshed_price(self, store):
        def status_for(order_id, canceled):
            if order_id == "o1":
                return OrderStatusReport(status=OrderStatus.CANCELED if canceled else OrderStatus.PENDING)
            return OrderStatusReport(
                status=OrderStatus.FILLED, filled_quantity=Decimal("1"), avg_fill_price=Decimal("101.1")
            )

        exchange = mock_exchange(status_for)
        store.ensure_pairs(["ADA/USDT"])
        engine = ExecutionEngine(exchange, store, timeout_seconds=0, poll_seconds=0)

        order = await engine.execute(open_long(), LIMIT, 100)

        assert order.id == "o2"
        assert exchange.submit_order.await_count == 2
        first, retry = (c.args[0] for c in exchange.submit_order.await_args_list)
        assert first.price == Decimal("100.10")
        assert retry.price == Decimal("101.10")
        canceled = store.order("o1")
        assert canceled.status is OrderStatus.CANCELED
        assert store.position("ADA/USDT").entry_price == Decimal("101.1")

    @pytest.mark.asyncio
    async def test_second_timeout_is_raised(self, store):
        exchange = mock_exchange(pending)
        store.ensure_pairs(["ADA/USDT"])
        engine = ExecutionEngine(exchange, store, timeout_seconds=0, poll_seconds=0)

        with pytest.raises(OrderTimeout):
            await engine.execute(open_long(), LIMIT, 100)

        assert exchange.submit_order.await_count == 2
        assert store.position("ADA/USDT").phase is PairPhase.FLAT

    @pytest.mark.asyncio
    async def test_market_order_timeout_not_retried(self, store):
        exchange = mock_exchange(pending)
        store.ensure_pairs(["ADA/USDT"])
        engine = ExecutionEngine(exchange, store, timeout_seconds=0, poll_seconds=0)

        with pytest.raises(OrderTimeout):
            await engine.execute(open_long(), MARKET, 100)
        assert exchange.submit_order.await_count == 1

    @pytest.mark.asyncio
    async def test_switch_leg_timeout_not_retried(self, store):
        exchange = mock_exchange(pending)
        store.ensure_pairs(["BTCUP/USDT"])
        engine = ExecutionEngine(exchange, store, timeout_seconds=0, poll_seconds=0)
        intent = OrderIntent(
            pair="BTCUP/USDT",
            side=Side.BUY,
            reason=IntentReason.BVLT_SWITCH,
            target_notional=Decimal("50"),
            opens=PositionSide.LONG,
        )

        with pytest.raises(OrderTimeout):
            await engine.execute(intent, UP_LEG, 2)
        assert exchange.submit_order.await_count == 1
        exchange.cancel_order.assert_awaited_once_with("o1", "BTCUP/USDT")

    @pytest.mark.asyncio
    async def test_exchange_rejection_while_polling(self, store):
        def status_for(order_id, canceled):
            return OrderStatusReport(status=OrderStatus.REJECTED, error="insufficient margin")

        exchange = mock_exchange(status_for)
        store.ensure_pairs(["ADA/USDT"])
        engine = ExecutionEngine(exchange, store, timeout_seconds=0, poll_seconds=0)

        with pytest.raises(OrderRejected, match="insufficient margin"):
            await engine.execute(open_long(), MARKET, 100)
        assert store.order("o1").status is OrderStatus.REJECTED
        assert exchange.submit_order.await_count == 1


class TestPartialFills:
    def _partial_sell(self, order_id, canceled):
        if order_id == "o1":
            return OrderStatusReport(
                status=OrderStatus.CANCELED if canceled else OrderStatus.PARTIALLY_FILLED,
                filled_quantity=Decimal("4"),
                avg_fill_price=Decimal("1.9"),
            )
        return OrderStatusReport(
            status=OrderStatus.FILLED, filled_quantity=Decimal("6"), avg_fill_price=Decimal("1.95")
        )

    def _switch_sell(self) -> OrderIntent:
        return OrderIntent(
            pair="BTCDOWN/USDT",
            side=Side.SELL,
            reason=IntentReason.BVLT_SWITCH,
            target_quantity=Decimal("10"),
        )

    @pytest.mark.asyncio
    async def test_wait_then_cancel_keeps_remainder(self, store):
        exchange = mock_exchange(self._partial_sell)
        store.open_position("BTCDOWN/USDT", PositionSide.LONG, Decimal("10"), Decimal("2"))
        engine = ExecutionEngine(exchange, store, timeout_seconds=0, poll_seconds=0)

        with pytest.raises(OrderTimeout) as exc_info:
            await engine.execute(self._switch_sell(), DOWN_LEG, 2)

        assert exc_info.value.filled_quantity == Decimal("4")
        position = store.position("BTCDOWN/USDT")
        assert position.quantity == Decimal("6")
        assert position.phase is PairPhase.OPEN
        assert exchange.submit_order.await_count == 1

    @pytest.mark.asyncio
    async def test_complete_at_market_sells_remainder(self, store):
        exchange = mock_exchange(self._partial_sell)
        store.open_position("BTCDOWN/USDT", PositionSide.LONG, Decimal("10"), Decimal("2"))
        engine = ExecutionEngine(
            exchange,
            store,
            timeout_seconds=0,
            poll_seconds=0,
            partial_fill_policy=PARTIAL_FILL_COMPLETE_AT_MARKET,
        )

        order = await engine.execute(self._switch_sell(), DOWN_LEG, 2)

        assert order.id == "o2"
        market = exchange.submit_order.await_args_list[1].args[0]
        assert market.type is OrderType.MARKET
        assert market.quantity == Decimal("6")
        position = store.position("BTCDOWN/USDT")
        assert not position.is_open
        assert position.phase is PairPhase.FLAT
