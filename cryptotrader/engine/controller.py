"""Trading controller: wires the components together and owns the job tasks."""

import asyncio
import logging
from datetime import datetime, timezone

from cryptotrader.config import Settings
from cryptotrader.database import create_db_and_tables, engine
from cryptotrader.domain import BvltLeg
from cryptotrader.engine.pair_job import BvltPairJob, PairJob, StandardPairJob, TradingContext
from cryptotrader.engine.position_sync import sync_positions_on_startup
from cryptotrader.engine.scheduler import add_price_job, remove_price_job, start_scheduler, stop_scheduler
from cryptotrader.schemas.strategy import PairConfig, StrategyConfig, load_strategy_config
from cryptotrader.services.allocator import PortfolioAllocator
from cryptotrader.services.ccxt_client import CcxtExchange
from cryptotrader.services.emergency_stop import run_emergency_stop
from cryptotrader.services.exchange import PaperExchange
from cryptotrader.services.execution import ExecutionEngine
from cryptotrader.services.indicators import IndicatorEngine
from cryptotrader.services.risk_manager import RiskManager
from cryptotrader.services.signal_engine import SignalEngine
from cryptotrader.services.state_store import StateStore
from cryptotrader.utils.precision import to_decimal

logger = logging.getLogger(__name__)


class TradingController:
    def __init__(self, strategy: StrategyConfig, exchange, store: StateStore, settings: Settings):
        self.strategy = strategy
        self.exchange = exchange
        self.store = store
        self.settings = settings

        signal_configs = list(strategy.pairs) + [g.primary for g in strategy.bvlt_groups]
        self.traded_configs: dict[str, PairConfig] = {p.symbol: p for p in strategy.pairs}
        for group in strategy.bvlt_groups:
            for leg in BvltLeg:
                self.traded_configs[group.leg_pair(leg)] = group.leg_config(leg)

        self.risk = RiskManager(list(self.traded_configs.values()))
        self.execution = ExecutionEngine(
            exchange,
            store,
            risk=self.risk,
            timeout_seconds=settings.order_timeout_seconds,
            poll_seconds=settings.order_poll_seconds,
            partial_fill_policy=settings.bvlt_partial_fill_policy,
        )
        self.allocator = PortfolioAllocator(strategy)
        self.ctx = TradingContext(
            exchange=exchange,
            store=store,
            indicators=IndicatorEngine(signal_configs),
            signals=SignalEngine(signal_configs),
            risk=self.risk,
            execution=self.execution,
            allocator=self.allocator,
            max_resubscribe_attempts=settings.max_resubscribe_attempts,
            resubscribe_backoff_seconds=settings.resubscribe_backoff_seconds,
        )
        self.jobs: list[PairJob] = [StandardPairJob(self.ctx, p) for p in strategy.pairs]
        self.jobs += [BvltPairJob(self.ctx, g) for g in strategy.bvlt_groups]
        self._tasks: dict[str, asyncio.Task] = {}
        self.started_at: datetime | None = None
        self.emergency_stopped = False

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks.values())

    async def start(self, use_scheduler: bool = True):
        """Reconcile state, size capital, then start one task per job."""
        self.store.ensure_pairs(self.strategy.traded_symbols)
        await sync_positions_on_startup(self.exchange, self.store, self.strategy, self.risk)

        if self.settings.total_capital is not None:
            capital = to_decimal(self.settings.total_capital)
        else:
            capital = await self.exchange.get_account_balance(self.strategy.quote_asset)
        self.allocator.set_total_capital(capital)

        for job in self.jobs:
            job.seed_bias()
            self._tasks[job.name] = asyncio.create_task(self._run_job(job), name=f"job-{job.name}")
            if use_scheduler:
                add_price_job(job, self.settings.price_check_seconds)
        if use_scheduler:
            start_scheduler()

        self.started_at = datetime.now(timezone.utc)
        logger.info(f"Trading controller started with {len(self.jobs)} job(s)")

    async def _run_job(self, job: PairJob):
        try:
            await job.run()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            job.last_error = str(e)
            logger.error(f"[{job.name}] job stopped: {e}", exc_info=True)
            self.store.log_cycle(job.name, "error", action="job_stopped", message=str(e))

    async def wait(self):
        """Block until every job task has finished."""
        await asyncio.gather(*self._tasks.values(), return_exceptions=True)

    async def stop(self):
        for job in self.jobs:
            remove_price_job(job.name)
        for task in self._tasks.values():
            task.cancel()
        await asyncio.gather(*self._tasks.values(), return_exceptions=True)
        logger.info("Trading controller stopped")

    async def close(self):
        await self.stop()
        stop_scheduler()
        await self.exchange.close()

    async def emergency_stop(self) -> dict:
        """Stop every job, cancel open orders and flatten all positions."""
        logger.warning("Emergency stop requested")
        await self.stop()
        result = await run_emergency_stop(self.exchange, self.store, self.execution, self.traded_configs)
        self.emergency_stopped = True
        return result

    def status(self) -> dict:
        return {
            "running": self.running,
            "dry_run": self.settings.dry_run,
            "emergency_stopped": self.emergency_stopped,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "total_capital": str(self.allocator.total_capital),
            "allocations": {k: str(v) for k, v in self.allocator.allocations.items()},
            "jobs": [
                {**job.status(), "task_running": job.name in self._tasks and not self._tasks[job.name].done()}
                for job in self.jobs
            ],
        }


def create_exchange(settings: Settings, strategy: StrategyConfig):
    """Live ccxt client, or a paper exchange fed by it when dry-running."""
    live = CcxtExchange(
        settings.exchange_id,
        api_key=settings.api_key,
        api_secret=settings.api_secret,
        poll_seconds=settings.candle_poll_seconds,
    )
    if settings.dry_run:
        logger.info(f"Dry run: paper account with {settings.paper_balance} {strategy.quote_asset}")
        return PaperExchange(balances={strategy.quote_asset: settings.paper_balance}, market_data=live)
    return live


def build_controller(settings: Settings, db_engine=None) -> TradingController:
    """Load the strategy file and assemble a controller. Raises ConfigurationError on a bad strategy."""
    strategy = load_strategy_config(settings.strategy_file)
    db_engine = db_engine or engine
    create_db_and_tables(db_engine)
    exchange = create_exchange(settings, strategy)
    return TradingController(strategy, exchange, StateStore(db_engine), settings)
