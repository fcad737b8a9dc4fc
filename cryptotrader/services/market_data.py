"""Candle ingestion with gap detection and resubscription.

A `CandleFeed` sits between one pair's exchange subscription and its
decision cycle. It drops boundary candles that are delivered twice after a
reconnect, raises `StaleDataError` when a candle is missing, and
resubscribes with backoff when the transport fails.
"""

import asyncio
import logging
from collections.abc import AsyncIterator

from cryptotrader.domain import Candle
from cryptotrader.errors import StaleDataError, TransportError
from cryptotrader.utils.constants import INTERVAL_MS

logger = logging.getLogger(__name__)


class CandleFeed:
    def __init__(
        self,
        exchange,
        pair: str,
        timeframe: str,
        max_attempts: int = 5,
        backoff_seconds: float = 5.0,
    ):
        self.exchange = exchange
        self.pair = pair
        self.timeframe = timeframe
        self.interval_ms = INTERVAL_MS[timeframe]
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.last_open_time: int | None = None

    def mark_synced(self, open_time: int | None):
        """Record the last candle already folded into indicator state."""
        self.last_open_time = open_time

    def accept(self, candle: Candle) -> bool:
        """True if `candle` is the next one in sequence, False if already seen.

        Raises StaleDataError when one or more candles were skipped.
        """
        last = self.last_open_time
        if last is not None:
            if candle.open_time <= last:
                return False
            expected = last + self.interval_ms
            if candle.open_time != expected:
                raise StaleDataError(self.pair, expected, candle.open_time)
        self.last_open_time = candle.open_time
        return True

    async def candles(self) -> AsyncIterator[Candle]:
        """Closed candles in strict sequence, resubscribing on transport failures."""
        attempts = 0
        while True:
            try:
                async for candle in self.exchange.subscribe_candles(self.pair, self.timeframe):
                    attempts = 0
                    if self.accept(candle):
                        yield candle
                    else:
                        logger.debug(f"[{self.pair}] skipping already seen candle {candle.open_time}")
                logger.warning(f"[{self.pair}] candle stream ended, resubscribing")
            except TransportError as e:
                attempts += 1
                if attempts > self.max_attempts:
                    logger.error(f"[{self.pair}] giving up after {self.max_attempts} resubscribe attempts")
                    raise TransportError(
                        f"{self.pair}: candle stream lost after {self.max_attempts} attempts: {e}"
                    ) from e
                delay = self.backoff_seconds * attempts
                logger.warning(
                    f"[{self.pair}] candle stream error ({e}), resubscribing in {delay:.0f}s "
                    f"(attempt {attempts}/{self.max_attempts})"
                )
                await asyncio.sleep(delay)
