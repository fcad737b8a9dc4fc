"""Signal computation: raw directional decisions and debounced bias events.

The per-kind rules are pure functions of the most recent indicator
snapshots. `SignalEngine` selects one rule per pair at construction time,
applies the optional MACD filters, and only emits a `BiasEvent` when the
decision differs from the last one it emitted for that pair.
"""

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from cryptotrader.domain import Bias, BiasEvent, Candle, IndicatorSnapshot, PositionSide, SignalKind
from cryptotrader.schemas.strategy import PairConfig
from cryptotrader.utils.constants import TREND_LOOKBACK

logger = logging.getLogger(__name__)

SignalRule = Callable[[Sequence[IndicatorSnapshot]], Bias]


# ---------------------------------------------------------------------------
# Signal rules
# ---------------------------------------------------------------------------

def _sign_flip(previous: float, current: float) -> Bias:
    """Bullish on a negative -> positive flip, Bearish on positive -> negative."""
    if previous <= 0 < current:
        return Bias.BULLISH
    if previous >= 0 > current:
        return Bias.BEARISH
    return Bias.NEUTRAL


def cross_signal(snapshots: Sequence[IndicatorSnapshot]) -> Bias:
    """Fast average crossing the slow average."""
    if len(snapshots) < 2:
        return Bias.NEUTRAL
    prev, cur = snapshots[-2], snapshots[-1]
    if None in (prev.fast_avg, prev.slow_avg, cur.fast_avg, cur.slow_avg):
        return Bias.NEUTRAL
    return _sign_flip(prev.fast_avg - prev.slow_avg, cur.fast_avg - cur.slow_avg)


def trend_signal(snapshots: Sequence[IndicatorSnapshot]) -> Bias:
    """Local extremum on the fast average: falling then rising is Bullish."""
    if len(snapshots) < TREND_LOOKBACK:
        return Bias.NEUTRAL
    points = [s.fast_avg for s in snapshots[-TREND_LOOKBACK:]]
    if None in points:
        return Bias.NEUTRAL
    pp, p, c = points[-3], points[-2], points[-1]
    if c > p and p < pp:
        return Bias.BULLISH
    if c < p and p > pp:
        return Bias.BEARISH
    return Bias.NEUTRAL


def macd_signal(snapshots: Sequence[IndicatorSnapshot]) -> Bias:
    """MACD line crossing its signal line."""
    if len(snapshots) < 2:
        return Bias.NEUTRAL
    prev, cur = snapshots[-2], snapshots[-1]
    if None in (prev.macd_line, prev.macd_signal_line, cur.macd_line, cur.macd_signal_line):
        return Bias.NEUTRAL
    return _sign_flip(
        prev.macd_line - prev.macd_signal_line,
        cur.macd_line - cur.macd_signal_line,
    )


SIGNAL_RULES: dict[SignalKind, SignalRule] = {
    SignalKind.CROSS: cross_signal,
    SignalKind.TREND: trend_signal,
    SignalKind.MACD: macd_signal,
}


# ---------------------------------------------------------------------------
# Filters
# ---------------------------------------------------------------------------

def trend_filter(bias: Bias, snapshots: Sequence[IndicatorSnapshot]) -> Bias:
    """Only allow a Bullish MACD cross while the trend average is not falling."""
    if bias is not Bias.BULLISH:
        return bias
    if len(snapshots) < 2:
        return Bias.NEUTRAL
    prev, cur = snapshots[-2].trend_avg, snapshots[-1].trend_avg
    if prev is None or cur is None or cur < prev:
        return Bias.NEUTRAL
    return bias


def confirmation_filter(bias: Bias, candles: Sequence[Candle], required: int) -> Bias:
    """Require the last `required` candles to all be green (Bullish) or red (Bearish)."""
    if bias is Bias.NEUTRAL:
        return bias
    if len(candles) < required + 1:
        return Bias.NEUTRAL
    recent = list(candles)[-(required + 1):]
    greens = [b.close >= a.close for a, b in zip(recent, recent[1:])]
    if bias is Bias.BULLISH and all(greens):
        return bias
    if bias is Bias.BEARISH and not any(greens):
        return bias
    return Bias.NEUTRAL


def bias_for_position(side: PositionSide) -> Bias:
    if side is PositionSide.LONG:
        return Bias.BULLISH
    if side is PositionSide.SHORT:
        return Bias.BEARISH
    return Bias.NEUTRAL


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

@dataclass
class _PairSignal:
    config: PairConfig
    rule: SignalRule
    last_emitted: Bias = Bias.NEUTRAL


class SignalEngine:
    """Debounced bias per pair."""

    def __init__(self, configs: list[PairConfig] | None = None):
        self._pairs: dict[str, _PairSignal] = {}
        for config in configs or []:
            self.add_pair(config)

    def add_pair(self, config: PairConfig):
        self._pairs[config.symbol] = _PairSignal(config=config, rule=SIGNAL_RULES[config.signal_kind])

    def last_bias(self, symbol: str) -> Bias:
        return self._pairs[symbol].last_emitted

    def seed(self, symbol: str, bias: Bias):
        """Set the last emitted bias, e.g. from a position that survived a restart."""
        self._pairs[symbol].last_emitted = bias

    def raw_bias(
        self,
        symbol: str,
        snapshots: Sequence[IndicatorSnapshot],
        candles: Sequence[Candle] = (),
    ) -> Bias:
        state = self._pairs[symbol]
        config = state.config
        bias = state.rule(snapshots)
        if config.signal_kind is SignalKind.MACD:
            if config.macd_trend_period:
                bias = trend_filter(bias, snapshots)
            if config.confirmation_candles:
                bias = confirmation_filter(bias, candles, config.confirmation_candles)
        return bias

    def debounce(self, symbol: str, raw: Bias, open_time: int, close: float) -> BiasEvent | None:
        """Emit only when `raw` is a direction different from the last emitted one."""
        state = self._pairs[symbol]
        if raw is Bias.NEUTRAL or raw is state.last_emitted:
            return None
        logger.info(f"[{symbol}] bias changed: {state.last_emitted.value} --> {raw.value}")
        state.last_emitted = raw
        return BiasEvent(pair=symbol, bias=raw, open_time=open_time, close=close)

    def evaluate(
        self,
        symbol: str,
        snapshots: Sequence[IndicatorSnapshot],
        candles: Sequence[Candle] = (),
    ) -> BiasEvent | None:
        if not snapshots:
            return None
        raw = self.raw_bias(symbol, snapshots, candles)
        current = snapshots[-1]
        logger.debug(
            f"[{symbol}] close={current.close} fast={current.fast_avg} slow={current.slow_avg} "
            f"macd={current.macd_line} signal={current.macd_signal_line} raw={raw.value}"
        )
        return self.debounce(symbol, raw, current.open_time, current.close)
