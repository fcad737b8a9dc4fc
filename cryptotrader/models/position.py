"""PairPosition model — settled position and lifecycle phase, one row per traded pair."""

from datetime import datetime, timezone
from sqlmodel import SQLModel, Field


class PairPosition(SQLModel, table=True):
    __tablename__ = "pair_position"

    id: int | None = Field(default=None, primary_key=True)
    pair: str = Field(index=True, unique=True)  # e.g. "BTC/USDT"
    side: str = "none"  # "long", "short", "none"
    quantity: float = 0.0
    entry_price: float = 0.0
    leverage: int | None = None
    opened_at: datetime | None = None
    stop_price: float | None = None
    phase: str = "flat"  # "flat", "entering", "open", "exiting", "switching"
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
