"""Database models."""

from cryptotrader.models.position import PairPosition
from cryptotrader.models.order import OrderRecord
from cryptotrader.models.trade import Trade
from cryptotrader.models.job_log import JobLog

__all__ = [
    "PairPosition",
    "OrderRecord",
    "Trade",
    "JobLog",
]
