"""Per-pair trading cycle.

Each configured slot (a standalone pair or a BVLT group) runs one job as
an asyncio task. A job consumes its candle feed one closed candle at a
time and orchestrates:
indicators → signal → allocator/router → risk → execution → JobLog.

The per-pair lock serialises the candle cycle with the stop-loss price
ticks scheduled by APScheduler, so a pair never has two decisions in
flight.
"""

import asyncio
import logging
from dataclasses import dataclass

from cryptotrader.domain import Bias, BvltLeg, Candle, IndicatorSnapshot, OrderIntent, PairPhase, Side
from cryptotrader.errors import OrderRejected, OrderTimeout, StaleDataError, TradingError, TransportError
from cryptotrader.schemas.strategy import BvltGroupConfig, PairConfig
from cryptotrader.services.allocator import PortfolioAllocator
from cryptotrader.services.bvlt_router import BvltRouter
from cryptotrader.services.execution import ExecutionEngine
from cryptotrader.services.indicators import IndicatorEngine
from cryptotrader.services.market_data import CandleFeed
from cryptotrader.services.risk_manager import RiskManager, is_stop_breached
from cryptotrader.services.signal_engine import SignalEngine, bias_for_position
from cryptotrader.services.state_store import StateStore
from cryptotrader.utils.precision import to_decimal

logger = logging.getLogger(__name__)
_pair_locks: dict[str, asyncio.Lock] = {}


def get_pair_lock(name: str) -> asyncio.Lock:
    lock = _pair_locks.get(name)
    if lock is None:
        lock = asyncio.Lock()
        _pair_locks[name] = lock
    return lock


@dataclass
class TradingContext:
    """Shared components every job works with."""
    exchange: object
    store: StateStore
    indicators: IndicatorEngine
    signals: SignalEngine
    risk: RiskManager
    execution: ExecutionEngine
    allocator: PortfolioAllocator
    max_resubscribe_attempts: int = 5
    resubscribe_backoff_seconds: float = 5.0


class PairJob:
    """Candle loop shared by standard and BVLT jobs."""

    def __init__(self, ctx: TradingContext, name: str, config: PairConfig, traded_pairs: list[str]):
        self.ctx = ctx
        self.name = name
        self.config = config
        self.symbol = config.symbol
        self.traded_pairs = traded_pairs
        self.lock = get_pair_lock(name)
        self.feed = CandleFeed(
            ctx.exchange,
            config.symbol,
            config.timeframe,
            max_attempts=ctx.max_resubscribe_attempts,
            backoff_seconds=ctx.resubscribe_backoff_seconds,
        )
        self.candles_processed = 0
        self.last_candle_time: int | None = None
        self.last_error: str | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def seed_bias(self):
        """Restore the debounce state from positions that survived a restart."""
        raise NotImplementedError

    async def warm_up(self):
        """Prime indicators from history. History candles never trade."""
        ctx = self.ctx
        history = await self._fetch_history()
        ctx.indicators.reset(self.symbol)
        ctx.indicators.replay(self.symbol, history)
        state = ctx.indicators.pair(self.symbol)
        self.feed.mark_synced(state.last_open_time)
        logger.info(f"[{self.name}] warmed up with {state.candle_count} candles")

    async def _fetch_history(self):
        """Candle history, retried with the feed's resubscribe attempts and backoff."""
        attempts = 0
        while True:
            try:
                return await self.ctx.exchange.get_candle_history(
                    self.symbol, self.config.timeframe, self.config.history_required
                )
            except TransportError as e:
                attempts += 1
                if attempts > self.feed.max_attempts:
                    logger.error(f"[{self.name}] giving up on candle history after {self.feed.max_attempts} retries")
                    raise TransportError(
                        f"{self.symbol}: candle history unavailable after {self.feed.max_attempts} attempts: {e}"
                    ) from e
                delay = self.feed.backoff_seconds * attempts
                logger.warning(
                    f"[{self.name}] candle history error ({e}), retrying in {delay:.0f}s "
                    f"(attempt {attempts}/{self.feed.max_attempts})"
                )
                await asyncio.sleep(delay)

    async def resync(self, error: StaleDataError):
        logger.warning(f"[{self.name}] {error}; rebuilding indicator state")
        self.ctx.store.log_cycle(self.name, "warning", action="resync", message=str(error))
        await self.warm_up()

    async def run(self):
        """Consume candles until cancelled. TransportError after exhausted resubscribes propagates."""
        await self.warm_up()
        while True:
            try:
                async for candle in self.feed.candles():
                    async with self.lock:
                        await self.process_candle(candle)
            except StaleDataError as e:
                async with self.lock:
                    await self.resync(e)

    async def process_candle(self, candle: Candle):
        snapshot = self.ctx.indicators.update(self.symbol, candle)
        if snapshot is None:
            return
        self.candles_processed += 1
        self.last_candle_time = candle.open_time
        try:
            await self.on_candle(candle, snapshot)
        except Exception as e:
            self.last_error = str(e)
            logger.error(f"[{self.name}] Cycle error: {e}", exc_info=True)
            self.ctx.store.log_cycle(self.name, "error", snapshot, message=str(e))

    async def on_candle(self, candle: Candle, snapshot: IndicatorSnapshot):
        raise NotImplementedError

    # ------------------------------------------------------------------
    # Stop-loss price ticks
    # ------------------------------------------------------------------

    async def on_price_tick(self):
        """Check every held pair's stop against the live price.

        While the candle cycle holds the lock its orders may still be working,
        so a breach seen then is only logged and acted on by the next tick.
        """
        if self.lock.locked():
            logger.debug(f"[{self.name}] cycle in flight, skipping price tick")
            await self._report_deferred_stops()
            return
        async with self.lock:
            for pair in self.traded_pairs:
                position = self.ctx.store.position(pair)
                if position.phase is not PairPhase.OPEN or position.stop_price is None:
                    continue
                try:
                    price = await self.ctx.exchange.get_last_price(pair)
                    intent = self.ctx.risk.check_price(position, price)
                    if intent is not None:
                        await self._execute(intent, self.ctx.risk.config(pair), price)
                except Exception as e:
                    self.last_error = str(e)
                    logger.error(f"[{self.name}] price tick error on {pair}: {e}")

    async def _report_deferred_stops(self):
        for pair in self.traded_pairs:
            position = self.ctx.store.position(pair)
            if position.phase is not PairPhase.OPEN or position.stop_price is None:
                continue
            try:
                price = to_decimal(await self.ctx.exchange.get_last_price(pair))
            except TradingError as e:
                logger.debug(f"[{self.name}] price unavailable for {pair}: {e}")
                continue
            if is_stop_breached(position, price):
                message = f"stop {position.stop_price} breached at {price} while a cycle is in flight"
                logger.warning(f"[{pair}] {message}")
                self.ctx.store.log_cycle(self.name, "warning", action="stop_deferred", message=message)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _execute(
        self,
        intent: OrderIntent,
        config: PairConfig,
        price,
        snapshot: IndicatorSnapshot | None = None,
    ) -> bool:
        """Execute one intent, logging the outcome. False if it was rejected or timed out."""
        action = f"{intent.reason.value}:{intent.side.value}"
        bias = self.ctx.signals.last_bias(self.symbol).value
        try:
            order = await self.ctx.execution.execute(intent, config, price)
        except (OrderRejected, OrderTimeout) as e:
            self.last_error = str(e)
            logger.error(f"[{intent.pair}] {action} failed: {e}")
            self.ctx.store.log_cycle(
                self.name, "error", snapshot, action=f"{action}_failed", bias=bias, message=str(e)
            )
            return False

        message = f"{order.side.value} {order.filled_quantity or order.quantity} {intent.pair}"
        if order.avg_fill_price is not None:
            message += f" @ {order.avg_fill_price}"
        self.ctx.store.log_cycle(
            self.name,
            "success",
            snapshot,
            action=action,
            bias=bias,
            message=message,
            details={"order_id": order.id, "pair": intent.pair, "type": order.type.value},
        )
        return True

    def status(self) -> dict:
        return {
            "name": self.name,
            "pairs": self.traded_pairs,
            "candles_processed": self.candles_processed,
            "last_candle_time": self.last_candle_time,
            "last_bias": self.ctx.signals.last_bias(self.symbol).value,
            "last_error": self.last_error,
        }


class StandardPairJob(PairJob):
    def __init__(self, ctx: TradingContext, config: PairConfig):
        super().__init__(ctx, config.symbol, config, [config.symbol])

    def seed_bias(self):
        position = self.ctx.store.position(self.symbol)
        self.ctx.signals.seed(self.symbol, bias_for_position(position.side))

    async def on_candle(self, candle: Candle, snapshot: IndicatorSnapshot):
        ctx = self.ctx
        pair = self.symbol
        close = to_decimal(candle.close)
        position = ctx.store.position(pair)

        forced = ctx.risk.check_price(position, close) or ctx.risk.check_take_profit(position, close)
        event = ctx.signals.evaluate(
            pair, ctx.indicators.snapshots(pair), ctx.indicators.pair(pair).candles
        )

        intents: list[OrderIntent] = []
        if event is not None and forced is None:
            rules = await ctx.execution.get_rules(pair)
            available = await self._available_capital()
            intents = ctx.allocator.plan(event, self.config, position, close, rules, available)
        intents = ctx.risk.prioritize(forced, intents)

        if not intents:
            ctx.store.log_cycle(
                pair,
                "success",
                snapshot,
                action="hold" if position.is_open else "none",
                bias=event.bias.value if event else ctx.signals.last_bias(pair).value,
            )
            return

        for intent in intents:
            # a failed close must not be followed by the opposite open
            if not await self._execute(intent, self.config, close, snapshot):
                break

    async def _available_capital(self):
        if self.config.uses_margin:
            return await self.ctx.exchange.get_isolated_margin_balance(self.symbol)
        return await self.ctx.exchange.get_account_balance(self.config.quote)


class BvltPairJob(PairJob):
    """Signals on the primary pair, trades on its UP/DOWN tokens."""

    def __init__(self, ctx: TradingContext, group: BvltGroupConfig):
        super().__init__(ctx, group.name, group.primary, [group.up_pair, group.down_pair])
        self.group = group
        self.router = BvltRouter(group)
        self.leg_configs = {group.leg_pair(leg): group.leg_config(leg) for leg in BvltLeg}

    def seed_bias(self):
        held = self.router.held_leg(self.ctx.store.snapshot())
        if held is BvltLeg.UP:
            self.ctx.signals.seed(self.symbol, Bias.BULLISH)
        elif held is BvltLeg.DOWN:
            self.ctx.signals.seed(self.symbol, Bias.BEARISH)

    async def on_candle(self, candle: Candle, snapshot: IndicatorSnapshot):
        ctx = self.ctx
        event = ctx.signals.evaluate(
            self.symbol, ctx.indicators.snapshots(self.symbol), ctx.indicators.pair(self.symbol).candles
        )
        if event is not None:
            self.router.on_bias(event.bias)

        held = self.router.held_leg(ctx.store.snapshot())
        if held is not None:
            leg_pair = self.group.leg_pair(held)
            position = ctx.store.position(leg_pair)
            price = await ctx.exchange.get_last_price(leg_pair)
            forced = ctx.risk.check_price(position, price) or ctx.risk.check_take_profit(position, price)
            if forced is not None:
                await self._execute(forced, self.leg_configs[leg_pair], price, snapshot)
                return

        if self.router.pending_target is None:
            ctx.store.log_cycle(
                self.name,
                "success",
                snapshot,
                action="hold" if held else "none",
                bias=ctx.signals.last_bias(self.symbol).value,
            )
            return
        await self.switch(snapshot)

    async def switch(self, snapshot: IndicatorSnapshot | None = None):
        """Drive the router to its pending target: sell the held leg, then buy the other."""
        ctx = self.ctx
        while True:
            capital = min(
                ctx.allocator.allocation(self.name),
                await ctx.exchange.get_account_balance(self.group.primary.quote),
            )
            intent = self.router.next_intent(ctx.store.snapshot(), capital)
            if intent is None:
                return

            exit_pair = self._other_pair(intent.pair)
            if intent.side is Side.BUY and ctx.store.position(exit_pair).phase is PairPhase.SWITCHING:
                ctx.store.set_phase(exit_pair, PairPhase.FLAT)

            price = await ctx.exchange.get_last_price(intent.pair)
            if not await self._execute(intent, self.leg_configs[intent.pair], price, snapshot):
                self.router.on_failed(f"{intent.side.value} {intent.pair} did not complete")
                return

            if intent.side is Side.BUY:
                self.router.on_buy_filled()
                return
            if ctx.store.position(intent.pair).is_open:
                self.router.on_failed(f"{intent.pair} still holds a remainder after the sell")
                return
            self.router.on_sell_filled()
            ctx.store.set_phase(intent.pair, PairPhase.SWITCHING)

    def _other_pair(self, pair: str) -> str:
        return self.group.down_pair if pair == self.group.up_pair else self.group.up_pair

    def status(self) -> dict:
        status = super().status()
        status["switch_state"] = self.router.state.value
        target = self.router.pending_target
        status["pending_target"] = self.group.leg_pair(target) if target else None
        return status
