"""Core trading data types shared by every component.

Plain dataclasses and string enums only, no I/O. ORM rows live in
`cryptotrader.models`; components exchange the frozen views defined here.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum


class Bias(str, Enum):
    BULLISH = "bullish"
    BEARISH = "bearish"
    NEUTRAL = "neutral"


class SignalKind(str, Enum):
    CROSS = "cross"
    TREND = "trend"
    MACD = "macd"


class OrderType(str, Enum):
    MARKET = "market"
    LIMIT = "limit"


class Side(str, Enum):
    BUY = "buy"
    SELL = "sell"

    @property
    def opposite(self) -> "Side":
        return Side.SELL if self is Side.BUY else Side.BUY


class PositionSide(str, Enum):
    LONG = "long"
    SHORT = "short"
    NONE = "none"


class IntentReason(str, Enum):
    SIGNAL_OPEN = "signal_open"
    SIGNAL_CLOSE = "signal_close"
    STOP_LOSS = "stop_loss"
    TAKE_PROFIT = "take_profit"
    BVLT_SWITCH = "bvlt_switch"
    EMERGENCY_STOP = "emergency_stop"


class OrderStatus(str, Enum):
    PENDING = "pending"
    PARTIALLY_FILLED = "partially_filled"
    FILLED = "filled"
    CANCELED = "canceled"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self in (OrderStatus.FILLED, OrderStatus.CANCELED, OrderStatus.REJECTED)


class PairPhase(str, Enum):
    """Per-pair lifecycle: Flat -> Entering -> Open -> Exiting -> Flat.

    BVLT legs pass through SWITCHING between a confirmed exit and the
    opposite leg's entry.
    """

    FLAT = "flat"
    ENTERING = "entering"
    OPEN = "open"
    EXITING = "exiting"
    SWITCHING = "switching"


class BvltLeg(str, Enum):
    UP = "up"
    DOWN = "down"


# ---------------------------------------------------------------------------
# Market data
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Candle:
    """A closed candle. `open_time` is epoch milliseconds."""
    open: float
    high: float
    low: float
    close: float
    volume: float
    open_time: int
    interval: str


@dataclass(frozen=True)
class IndicatorSnapshot:
    """Indicator values as of one candle close. None until warmed up."""
    open_time: int
    close: float
    fast_avg: float | None = None
    slow_avg: float | None = None
    macd_line: float | None = None
    macd_signal_line: float | None = None
    trend_avg: float | None = None


@dataclass(frozen=True)
class BiasEvent:
    """A debounced directional decision for a pair."""
    pair: str
    bias: Bias
    open_time: int
    close: float


@dataclass(frozen=True)
class ExchangeRules:
    tick_size: Decimal
    lot_size_step: Decimal
    min_notional: Decimal = Decimal("0")


# ---------------------------------------------------------------------------
# Positions and orders
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Position:
    pair: str
    side: PositionSide = PositionSide.NONE
    quantity: Decimal = Decimal("0")
    entry_price: Decimal = Decimal("0")
    leverage: int | None = None
    opened_at: datetime | None = None
    stop_price: Decimal | None = None
    phase: PairPhase = PairPhase.FLAT

    @property
    def is_open(self) -> bool:
        return self.side is not PositionSide.NONE and self.quantity > 0


@dataclass(frozen=True)
class OrderIntent:
    """What a decision component wants done. Exactly one of
    `target_notional` (quote currency) or `target_quantity` (base units) is set."""
    pair: str
    side: Side
    reason: IntentReason
    target_notional: Decimal | None = None
    target_quantity: Decimal | None = None
    opens: PositionSide = PositionSide.NONE  # side being opened, NONE for closing intents
    force_market: bool = False

    def __post_init__(self):
        if (self.target_notional is None) == (self.target_quantity is None):
            raise ValueError("exactly one of target_notional / target_quantity must be set")

    @property
    def is_opening(self) -> bool:
        return self.opens is not PositionSide.NONE


@dataclass(frozen=True)
class Order:
    id: str
    pair: str
    side: Side
    type: OrderType
    quantity: Decimal
    price: Decimal | None = None
    status: OrderStatus = OrderStatus.PENDING
    reason: IntentReason = IntentReason.SIGNAL_OPEN
    filled_quantity: Decimal = Decimal("0")
    avg_fill_price: Decimal | None = None
    isolated_margin: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class OrderStatusReport:
    """Exchange-side view of an order returned by status polling."""
    status: OrderStatus
    filled_quantity: Decimal = Decimal("0")
    avg_fill_price: Decimal | None = None
    error: str | None = None


@dataclass(frozen=True)
class PortfolioSnapshot:
    """Consistent read of all positions and in-flight orders for one cycle."""
    positions: dict[str, Position]
    open_orders: tuple[Order, ...] = ()

    def position(self, pair: str) -> Position:
        return self.positions.get(pair) or Position(pair=pair)

    def has_open_order(self, pair: str) -> bool:
        return any(o.pair == pair for o in self.open_orders)
