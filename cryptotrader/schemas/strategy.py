"""Pydantic schemas for the strategy configuration.

The strategy file is an INI file; every section whose name starts with
"Strategy" is one strategy block, for example:

    [Strategy]
    Pairs=ADA/USDT,BTC/USDT:BTCUP/USDT:BTCDOWN/USDT
    TimeFrame=1h
    Slow=21
    Fast=9
    EMA=true
    Signals=Cross
    OrderType=Limit
    LimitOffset=10
    StopPercent=5

Each comma-separated `Pairs` entry is one capital allocation slot. An entry
made of three colon-separated pairs is a BVLT group (primary:up:down).
"""

import configparser
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from cryptotrader.domain import BvltLeg, OrderType, SignalKind
from cryptotrader.errors import ConfigurationError
from cryptotrader.utils.constants import (
    BVLT_DOWN_SUFFIX,
    BVLT_UP_SUFFIX,
    DEFAULT_QUOTE_ASSET,
    MACD_FAST,
    MACD_SIGNAL,
    MACD_SLOW,
    MAX_CONFIRMATION_CANDLES,
    MAX_LEVERAGE,
    VALID_INTERVALS,
)


def split_symbol(symbol: str) -> tuple[str, str]:
    parts = symbol.split("/")
    if len(parts) != 2 or not parts[0] or not parts[1]:
        raise ValueError(f"pair must look like BASE/QUOTE, got {symbol!r}")
    return parts[0], parts[1]


class PairConfig(BaseModel):
    symbol: str = Field(min_length=3)
    timeframe: str = "1h"
    fast_period: int | None = Field(default=None, ge=1)
    slow_period: int | None = Field(default=None, ge=1)
    use_ema: bool = False
    signal_kind: SignalKind = SignalKind.CROSS
    order_type: OrderType = OrderType.MARKET
    limit_offset: int | None = None
    stop_percent: float | None = None
    take_profit_percent: float | None = None
    leverage: int | None = None
    short_enabled: bool = False

    # MACD tuning
    macd_fast: int = Field(default=MACD_FAST, ge=1)
    macd_slow: int = Field(default=MACD_SLOW, ge=2)
    macd_signal: int = Field(default=MACD_SIGNAL, ge=1)
    macd_trend_period: int | None = Field(default=None, ge=1)
    confirmation_candles: int | None = None

    model_config = {"frozen": True}

    @property
    def base(self) -> str:
        return split_symbol(self.symbol)[0]

    @property
    def quote(self) -> str:
        return split_symbol(self.symbol)[1]

    @property
    def uses_margin(self) -> bool:
        return self.leverage is not None or self.short_enabled

    @property
    def history_required(self) -> int:
        """Closed candles needed before every configured indicator is warm."""
        periods = [self.fast_period or 0, self.slow_period or 0, self.macd_trend_period or 0]
        if self.signal_kind is SignalKind.MACD:
            periods.append(self.macd_slow + self.macd_signal)
            periods.append(self.confirmation_candles or 0)
        return max(periods) + 1

    @field_validator("symbol")
    @classmethod
    def _validate_symbol(cls, value: str) -> str:
        value = value.strip().upper()
        split_symbol(value)
        return value

    @field_validator("timeframe")
    @classmethod
    def _validate_timeframe(cls, value: str) -> str:
        if value not in VALID_INTERVALS:
            allowed = ", ".join(VALID_INTERVALS)
            raise ValueError(f"must be one of: {allowed}")
        return value

    @field_validator("stop_percent", "take_profit_percent")
    @classmethod
    def _validate_percent(cls, value: float | None) -> float | None:
        if value is not None and not (0 < value <= 100):
            raise ValueError("must be a percentage in (0, 100]")
        return value

    @field_validator("leverage")
    @classmethod
    def _validate_leverage(cls, value: int | None) -> int | None:
        if value is not None and not (1 <= value <= MAX_LEVERAGE):
            raise ValueError(f"must be between 1 and {MAX_LEVERAGE}")
        return value

    @model_validator(mode="after")
    def _validate_relationships(self):
        if self.stop_percent is not None and self.leverage is not None:
            raise ValueError("StopPercent and Leverage are mutually exclusive")
        if self.stop_percent is not None and self.short_enabled:
            raise ValueError("StopPercent and Short are mutually exclusive")

        if self.order_type is OrderType.LIMIT:
            if self.limit_offset is None or self.limit_offset <= 0:
                raise ValueError("Limit orders require a positive integer LimitOffset")
        elif self.limit_offset is not None:
            raise ValueError("LimitOffset is only valid with OrderType=Limit")

        if self.signal_kind is SignalKind.CROSS:
            if self.fast_period is None or self.slow_period is None:
                raise ValueError("Cross signals require both Fast and Slow")
            if self.fast_period >= self.slow_period:
                raise ValueError("Fast must be shorter than Slow")
        elif self.signal_kind is SignalKind.TREND:
            if self.fast_period is None:
                raise ValueError("Trend signals require Fast")
        else:
            if self.macd_fast >= self.macd_slow:
                raise ValueError("MacdFast must be shorter than MacdSlow")

        if self.signal_kind is not SignalKind.MACD:
            if self.confirmation_candles is not None:
                raise ValueError("ConfirmationCandles is only valid with Signals=Macd")
            if self.macd_trend_period is not None:
                raise ValueError("MacdTrendMa is only valid with Signals=Macd")
        if self.confirmation_candles is not None and not (
            1 <= self.confirmation_candles <= MAX_CONFIRMATION_CANDLES
        ):
            raise ValueError(f"ConfirmationCandles must be between 1 and {MAX_CONFIRMATION_CANDLES}")
        return self


class BvltGroupConfig(BaseModel):
    """Primary pair whose signals drive trades on its UP and DOWN tokens."""
    primary: PairConfig
    up_pair: str
    down_pair: str

    model_config = {"frozen": True}

    @property
    def name(self) -> str:
        return f"{self.primary.symbol}:{self.up_pair}:{self.down_pair}"

    def leg_pair(self, leg: BvltLeg) -> str:
        return self.up_pair if leg is BvltLeg.UP else self.down_pair

    def leg_config(self, leg: BvltLeg) -> PairConfig:
        """Execution/risk config for one leg: the primary's settings on the token's symbol."""
        return self.primary.model_copy(update={"symbol": self.leg_pair(leg)})

    @model_validator(mode="after")
    def _validate_legs(self):
        base, quote = split_symbol(self.primary.symbol)
        up_base, up_quote = split_symbol(self.up_pair)
        down_base, down_quote = split_symbol(self.down_pair)
        if up_base != base + BVLT_UP_SUFFIX or up_quote != quote:
            raise ValueError(f"{self.up_pair} is not the UP token of {self.primary.symbol}")
        if down_base != base + BVLT_DOWN_SUFFIX or down_quote != quote:
            raise ValueError(f"{self.down_pair} is not the DOWN token of {self.primary.symbol}")
        if self.primary.uses_margin:
            raise ValueError("Leverage and Short are not supported on BVLT groups")
        return self


class StrategyConfig(BaseModel):
    pairs: list[PairConfig] = Field(default_factory=list)
    bvlt_groups: list[BvltGroupConfig] = Field(default_factory=list)
    quote_asset: str = DEFAULT_QUOTE_ASSET

    model_config = {"frozen": True}

    @property
    def slot_count(self) -> int:
        return len(self.pairs) + len(self.bvlt_groups)

    @property
    def traded_symbols(self) -> list[str]:
        """Every symbol that may hold a position."""
        symbols = [p.symbol for p in self.pairs]
        for group in self.bvlt_groups:
            symbols.extend([group.up_pair, group.down_pair])
        return symbols

    @property
    def watched_symbols(self) -> list[str]:
        symbols = [p.symbol for p in self.pairs]
        for group in self.bvlt_groups:
            symbols.extend([group.primary.symbol, group.up_pair, group.down_pair])
        return symbols

    @model_validator(mode="after")
    def _validate_portfolio(self):
        if self.slot_count == 0:
            raise ValueError("at least one trading pair must be configured")
        symbols = self.watched_symbols
        duplicates = sorted({s for s in symbols if symbols.count(s) > 1})
        if duplicates:
            raise ValueError(f"pairs configured more than once: {', '.join(duplicates)}")
        for symbol in self.traded_symbols:
            if split_symbol(symbol)[1] != self.quote_asset:
                raise ValueError(f"{symbol} is not quoted in {self.quote_asset}")
        return self


# ---------------------------------------------------------------------------
# INI loading
# ---------------------------------------------------------------------------

# INI key -> PairConfig field
_KEY_MAP = {
    "timeframe": "timeframe",
    "fast": "fast_period",
    "slow": "slow_period",
    "ema": "use_ema",
    "signals": "signal_kind",
    "ordertype": "order_type",
    "limitoffset": "limit_offset",
    "stoppercent": "stop_percent",
    "takeprofitpercent": "take_profit_percent",
    "leverage": "leverage",
    "short": "short_enabled",
    "macdfast": "macd_fast",
    "macdslow": "macd_slow",
    "macdsignal": "macd_signal",
    "macdtrendma": "macd_trend_period",
    "confirmationcandles": "confirmation_candles",
}

_GLOBAL_KEYS = {"pairs", "quoteasset"}


def _section_options(section: configparser.SectionProxy) -> dict[str, str]:
    return {key.lower(): value for key, value in section.items()}


def _section_to_fields(name: str, options: dict[str, str]) -> dict:
    fields = {}
    for key, raw in options.items():
        if key in _GLOBAL_KEYS:
            continue
        if key not in _KEY_MAP:
            raise ConfigurationError(f"[{name}] unknown option {key!r}")
        value = raw.strip()
        if key in ("signals", "ordertype"):
            value = value.lower()
        if value == "" or (key == "leverage" and value.lower() == "none"):
            continue
        fields[_KEY_MAP[key]] = value
    return fields


def parse_strategy(parser: configparser.ConfigParser) -> StrategyConfig:
    """Build a validated StrategyConfig from parsed INI sections."""
    sections = [s for s in parser.sections() if s.lower().startswith("strategy")]
    if not sections:
        raise ConfigurationError("no [Strategy] section found")

    pairs: list[PairConfig] = []
    groups: list[BvltGroupConfig] = []
    quote_asset = DEFAULT_QUOTE_ASSET
    try:
        for name in sections:
            options = _section_options(parser[name])
            raw_pairs = options.get("pairs", "").strip()
            if not raw_pairs:
                raise ConfigurationError(f"[{name}] missing required Pairs entry")
            quote_asset = options.get("quoteasset", quote_asset).strip().upper()
            fields = _section_to_fields(name, options)

            for entry in raw_pairs.split(","):
                members = [m.strip() for m in entry.split(":") if m.strip()]
                if len(members) == 1:
                    pairs.append(PairConfig(symbol=members[0], **fields))
                elif len(members) == 3:
                    primary = PairConfig(symbol=members[0], **fields)
                    groups.append(
                        BvltGroupConfig(
                            primary=primary,
                            up_pair=members[1].upper(),
                            down_pair=members[2].upper(),
                        )
                    )
                else:
                    raise ConfigurationError(
                        f"[{name}] Pairs entry {entry!r} must be one pair or exactly 3 colon-separated pairs"
                    )

        return StrategyConfig(pairs=pairs, bvlt_groups=groups, quote_asset=quote_asset)
    except ValidationError as e:
        raise ConfigurationError(str(e)) from e
    except ValueError as e:
        raise ConfigurationError(str(e)) from e


def load_strategy_config(path: str | Path) -> StrategyConfig:
    """Read and validate a strategy file. Raises ConfigurationError on any problem."""
    path = Path(path)
    if not path.is_file():
        raise ConfigurationError(f"strategy file not found: {path}")
    parser = configparser.ConfigParser()
    parser.optionxform = str  # keep key case for error messages
    try:
        parser.read(path, encoding="utf-8")
    except configparser.Error as e:
        raise ConfigurationError(f"failed to parse {path}: {e}") from e
    return parse_strategy(parser)


def parse_strategy_text(text: str) -> StrategyConfig:
    parser = configparser.ConfigParser()
    parser.optionxform = str
    try:
        parser.read_string(text)
    except configparser.Error as e:
        raise ConfigurationError(f"failed to parse strategy: {e}") from e
    return parse_strategy(parser)
