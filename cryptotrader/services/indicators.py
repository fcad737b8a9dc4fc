"""Indicator engine: moving averages and MACD over a bounded candle window.

All state is per pair and updated incrementally, one closed candle at a
time. No I/O.
"""

import logging
from collections import deque

import numpy as np

from cryptotrader.domain import Candle, IndicatorSnapshot
from cryptotrader.schemas.strategy import PairConfig
from cryptotrader.utils.constants import TREND_LOOKBACK

logger = logging.getLogger(__name__)


class MovingAverage:
    """Simple or exponential moving average of a stream of values.

    The EMA uses the smoothing factor 2/(period+1) and is seeded with the
    simple mean of its first `period` values.
    """

    def __init__(self, period: int, exponential: bool = False):
        if period <= 0:
            raise ValueError("period must be > 0")
        self.period = period
        self.exponential = exponential
        self.weight = 2.0 / (period + 1.0)
        self.value: float | None = None
        self._window: deque[float] = deque(maxlen=period)

    def update(self, x: float) -> float | None:
        self._window.append(x)
        if len(self._window) < self.period:
            return None

        if self.exponential and self.value is not None:
            self.value = x * self.weight + self.value * (1.0 - self.weight)
        else:
            self.value = float(np.mean(self._window))
        return self.value

    def reset(self):
        self.value = None
        self._window.clear()


class Macd:
    """MACD line (fast EMA - slow EMA) and its signal line (EMA of the MACD line)."""

    def __init__(self, fast: int, slow: int, signal: int):
        self._fast = MovingAverage(fast, exponential=True)
        self._slow = MovingAverage(slow, exponential=True)
        self._signal = MovingAverage(signal, exponential=True)
        self.line: float | None = None
        self.signal_line: float | None = None

    def update(self, close: float):
        fast = self._fast.update(close)
        slow = self._slow.update(close)
        if fast is None or slow is None:
            return
        self.line = fast - slow
        self.signal_line = self._signal.update(self.line)

    def reset(self):
        for ma in (self._fast, self._slow, self._signal):
            ma.reset()
        self.line = None
        self.signal_line = None


class PairIndicators:
    """Rolling indicator state for one pair."""

    def __init__(self, config: PairConfig):
        self.config = config
        window = max(
            config.fast_period or 0,
            config.slow_period or 0,
            config.macd_slow,
            config.confirmation_candles or 0,
        ) + 1
        self.candles: deque[Candle] = deque(maxlen=window)
        self.snapshots: deque[IndicatorSnapshot] = deque(maxlen=TREND_LOOKBACK)

        self._fast = MovingAverage(config.fast_period, config.use_ema) if config.fast_period else None
        self._slow = MovingAverage(config.slow_period, config.use_ema) if config.slow_period else None
        self._trend = (
            MovingAverage(config.macd_trend_period, config.use_ema)
            if config.macd_trend_period
            else None
        )
        self._macd = Macd(config.macd_fast, config.macd_slow, config.macd_signal)

    @property
    def last_open_time(self) -> int | None:
        return self.candles[-1].open_time if self.candles else None

    @property
    def candle_count(self) -> int:
        return len(self.candles)

    def update(self, candle: Candle) -> IndicatorSnapshot | None:
        """Fold one closed candle in. Returns None for out-of-order or repeated candles."""
        last = self.last_open_time
        if last is not None and candle.open_time <= last:
            logger.debug(
                f"[{self.config.symbol}] ignoring candle {candle.open_time} (last seen {last})"
            )
            return None

        self.candles.append(candle)
        close = candle.close
        fast = self._fast.update(close) if self._fast else None
        slow = self._slow.update(close) if self._slow else None
        trend = self._trend.update(close) if self._trend else None
        self._macd.update(close)

        snapshot = IndicatorSnapshot(
            open_time=candle.open_time,
            close=close,
            fast_avg=fast,
            slow_avg=slow,
            macd_line=self._macd.line,
            macd_signal_line=self._macd.signal_line,
            trend_avg=trend,
        )
        self.snapshots.append(snapshot)
        return snapshot

    def reset(self):
        self.candles.clear()
        self.snapshots.clear()
        for ma in (self._fast, self._slow, self._trend):
            if ma is not None:
                ma.reset()
        self._macd.reset()


class IndicatorEngine:
    """Indicator state for every watched pair."""

    def __init__(self, configs: list[PairConfig] | None = None):
        self._pairs: dict[str, PairIndicators] = {}
        for config in configs or []:
            self.add_pair(config)

    def add_pair(self, config: PairConfig) -> PairIndicators:
        state = PairIndicators(config)
        self._pairs[config.symbol] = state
        return state

    def pair(self, symbol: str) -> PairIndicators:
        return self._pairs[symbol]

    def update(self, symbol: str, candle: Candle) -> IndicatorSnapshot | None:
        return self._pairs[symbol].update(candle)

    def replay(self, symbol: str, candles: list[Candle]) -> IndicatorSnapshot | None:
        """Feed a batch of history, returning the last snapshot produced."""
        snapshot = None
        for candle in candles:
            snapshot = self.update(symbol, candle) or snapshot
        return snapshot

    def snapshots(self, symbol: str) -> list[IndicatorSnapshot]:
        return list(self._pairs[symbol].snapshots)

    def reset(self, symbol: str):
        logger.info(f"[{symbol}] discarding indicator state")
        self._pairs[symbol].reset()
