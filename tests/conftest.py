"""Shared fixtures: in-memory database, candle factory, paper exchange."""

from decimal import Decimal

import pytest

from cryptotrader.database import create_db_and_tables, make_engine
from cryptotrader.domain import Candle
from cryptotrader.engine import pair_job
from cryptotrader.services.exchange import PaperExchange
from cryptotrader.services.state_store import StateStore

HOUR_MS = 3_600_000


@pytest.fixture(autouse=True)
def _fresh_pair_locks():
    pair_job._pair_locks.clear()
    yield
    pair_job._pair_locks.clear()


@pytest.fixture
def db_engine():
    engine = make_engine("sqlite://")
    create_db_and_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def store(db_engine):
    return StateStore(db_engine)


@pytest.fixture
def make_candle():
    def _make(close: float, index: int, interval: str = "1h") -> Candle:
        return Candle(
            open=close,
            high=close,
            low=close,
            close=close,
            volume=1.0,
            open_time=index * HOUR_MS,
            interval=interval,
        )
    return _make


@pytest.fixture
def paper():
    return PaperExchange(balances={"USDT": Decimal("100")})
