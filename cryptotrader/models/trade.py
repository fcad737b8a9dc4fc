"""Trade model — immutable record of every closed position."""

from datetime import datetime, timezone
from sqlmodel import SQLModel, Field


class Trade(SQLModel, table=True):
    __tablename__ = "trade"

    id: int | None = Field(default=None, primary_key=True)
    pair: str = Field(index=True)
    side: str  # side of the closed position: "long" or "short"
    entry_time: datetime | None = None
    exit_time: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    entry_price: float
    exit_price: float
    quantity: float
    leverage: int | None = None
    pnl: float
    pnl_pct: float
    exit_reason: str  # "signal_close", "stop_loss", "take_profit", "bvlt_switch", "emergency_stop"
