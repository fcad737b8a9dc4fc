"""Tests for strategy file parsing and validation."""

import pytest

from cryptotrader.config import PROJECT_ROOT
from cryptotrader.domain import BvltLeg, OrderType, SignalKind
from cryptotrader.errors import ConfigurationError
from cryptotrader.schemas.strategy import load_strategy_config, parse_strategy_text

BASE = """
[Strategy]
Pairs=ADA/USDT
TimeFrame=1h
Slow=21
Fast=9
Signals=Cross
"""


# ---------------------------------------------------------------------------
# Mutually exclusive options
# ---------------------------------------------------------------------------

class TestMutualExclusion:
    def test_stop_with_leverage_rejected(self):
        with pytest.raises(ConfigurationError, match="mutually exclusive"):
            parse_strategy_text(BASE + "StopPercent=5\nLeverage=3\n")

    def test_stop_with_short_rejected(self):
        with pytest.raises(ConfigurationError, match="mutually exclusive"):
            parse_strategy_text(BASE + "StopPercent=5\nShort=true\n")

    def test_stop_alone_accepted(self):
        strategy = parse_strategy_text(BASE + "StopPercent=5\n")
        assert strategy.pairs[0].stop_percent == 5.0
        assert strategy.pairs[0].leverage is None

    def test_leverage_none_means_unset(self):
        strategy = parse_strategy_text(BASE + "StopPercent=5\nLeverage=None\n")
        assert strategy.pairs[0].leverage is None

    def test_leverage_and_short_together_accepted(self):
        strategy = parse_strategy_text(BASE + "Leverage=3\nShort=true\n")
        pair = strategy.pairs[0]
        assert pair.leverage == 3
        assert pair.short_enabled is True
        assert pair.uses_margin

    def test_leverage_out_of_range_rejected(self):
        with pytest.raises(ConfigurationError):
            parse_strategy_text(BASE + "Leverage=11\n")


# ---------------------------------------------------------------------------
# Order types
# ---------------------------------------------------------------------------

class TestOrderType:
    def test_limit_requires_offset(self):
        with pytest.raises(ConfigurationError, match="LimitOffset"):
            parse_strategy_text(BASE + "OrderType=Limit\n")

    def test_limit_offset_must_be_positive(self):
        with pytest.raises(ConfigurationError):
            parse_strategy_text(BASE + "OrderType=Limit\nLimitOffset=0\n")

    def test_offset_with_market_rejected(self):
        with pytest.raises(ConfigurationError):
            parse_strategy_text(BASE + "OrderType=Market\nLimitOffset=10\n")

    def test_limit_with_offset_accepted(self):
        strategy = parse_strategy_text(BASE + "OrderType=Limit\nLimitOffset=10\n")
        assert strategy.pairs[0].order_type is OrderType.LIMIT
        assert strategy.pairs[0].limit_offset == 10

    def test_market_is_default(self):
        strategy = parse_strategy_text(BASE)
        assert strategy.pairs[0].order_type is OrderType.MARKET


# ---------------------------------------------------------------------------
# Signals
# ---------------------------------------------------------------------------

class TestSignals:
    def test_cross_needs_fast_shorter_than_slow(self):
        with pytest.raises(ConfigurationError, match="Fast must be shorter"):
            parse_strategy_text(BASE.replace("Fast=9", "Fast=30"))

    def test_trend_needs_fast(self):
        with pytest.raises(ConfigurationError):
            parse_strategy_text("[Strategy]\nPairs=ADA/USDT\nSignals=Trend\n")

    def test_macd_without_averages(self):
        strategy = parse_strategy_text("[Strategy]\nPairs=ADA/USDT\nSignals=Macd\nConfirmationCandles=3\n")
        pair = strategy.pairs[0]
        assert pair.signal_kind is SignalKind.MACD
        assert pair.confirmation_candles == 3
        assert pair.history_required == 26 + 9 + 1

    def test_confirmation_candles_only_with_macd(self):
        with pytest.raises(ConfigurationError, match="ConfirmationCandles"):
            parse_strategy_text(BASE + "ConfirmationCandles=2\n")

    def test_confirmation_candles_capped(self):
        with pytest.raises(ConfigurationError):
            parse_strategy_text("[Strategy]\nPairs=ADA/USDT\nSignals=Macd\nConfirmationCandles=11\n")

    def test_trend_ma_only_with_macd(self):
        with pytest.raises(ConfigurationError, match="MacdTrendMa"):
            parse_strategy_text(BASE + "MacdTrendMa=50\n")

    def test_history_required_covers_slow_average(self):
        strategy = parse_strategy_text(BASE)
        assert strategy.pairs[0].history_required == 22

    def test_history_required_covers_confirmation_candles(self):
        strategy = parse_strategy_text(
            "[Strategy]\nPairs=ADA/USDT\nSignals=Macd\nMacdFast=2\nMacdSlow=4\nMacdSignal=2\n"
            "ConfirmationCandles=8\n"
        )
        assert strategy.pairs[0].history_required == 9


# ---------------------------------------------------------------------------
# Portfolio and BVLT groups
# ---------------------------------------------------------------------------

class TestPortfolio:
    def test_pairs_and_bvlt_group(self):
        strategy = parse_strategy_text(
            BASE.replace("Pairs=ADA/USDT", "Pairs=ADA/USDT,BTC/USDT:BTCUP/USDT:BTCDOWN/USDT")
        )
        assert [p.symbol for p in strategy.pairs] == ["ADA/USDT"]
        group = strategy.bvlt_groups[0]
        assert group.primary.symbol == "BTC/USDT"
        assert group.leg_pair(BvltLeg.UP) == "BTCUP/USDT"
        assert group.leg_config(BvltLeg.DOWN).symbol == "BTCDOWN/USDT"
        assert group.leg_config(BvltLeg.DOWN).fast_period == 9
        assert strategy.slot_count == 2
        assert strategy.traded_symbols == ["ADA/USDT", "BTCUP/USDT", "BTCDOWN/USDT"]

    def test_wrong_leg_token_rejected(self):
        with pytest.raises(ConfigurationError, match="UP token"):
            parse_strategy_text(BASE.replace("Pairs=ADA/USDT", "Pairs=BTC/USDT:ETHUP/USDT:BTCDOWN/USDT"))

    def test_two_member_entry_rejected(self):
        with pytest.raises(ConfigurationError, match="exactly 3"):
            parse_strategy_text(BASE.replace("Pairs=ADA/USDT", "Pairs=BTC/USDT:BTCUP/USDT"))

    def test_leverage_on_bvlt_rejected(self):
        with pytest.raises(ConfigurationError):
            parse_strategy_text(
                BASE.replace("Pairs=ADA/USDT", "Pairs=BTC/USDT:BTCUP/USDT:BTCDOWN/USDT") + "Leverage=2\n"
            )

    def test_duplicate_pair_rejected(self):
        with pytest.raises(ConfigurationError, match="more than once"):
            parse_strategy_text(BASE.replace("Pairs=ADA/USDT", "Pairs=ADA/USDT,ADA/USDT"))

    def test_quote_mismatch_rejected(self):
        with pytest.raises(ConfigurationError, match="not quoted"):
            parse_strategy_text(BASE.replace("Pairs=ADA/USDT", "Pairs=ADA/BTC"))

    def test_unknown_option_rejected(self):
        with pytest.raises(ConfigurationError, match="unknown option"):
            parse_strategy_text(BASE + "Colour=blue\n")

    def test_missing_pairs_rejected(self):
        with pytest.raises(ConfigurationError, match="Pairs"):
            parse_strategy_text("[Strategy]\nFast=9\nSlow=21\n")

    def test_missing_section_rejected(self):
        with pytest.raises(ConfigurationError):
            parse_strategy_text("[Other]\nPairs=ADA/USDT\n")


class TestLoadFile:
    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="not found"):
            load_strategy_config(tmp_path / "nope.ini")

    def test_load_from_file(self, tmp_path):
        path = tmp_path / "ct.ini"
        path.write_text(BASE + "EMA=true\n")
        strategy = load_strategy_config(path)
        assert strategy.pairs[0].use_ema is True
        assert strategy.pairs[0].timeframe == "1h"

    def test_shipped_example_is_valid(self):
        strategy = load_strategy_config(PROJECT_ROOT / "conf" / "ct.ini")
        assert strategy.slot_count == 3
        margin = next(p for p in strategy.pairs if p.symbol == "ETH/USDT")
        assert margin.leverage == 3
        assert margin.short_enabled
