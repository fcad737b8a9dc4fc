"""OrderRecord model — every submitted order, kept for audit after it terminates."""

from datetime import datetime, timezone
from sqlmodel import SQLModel, Field


class OrderRecord(SQLModel, table=True):
    __tablename__ = "order_record"

    id: int | None = Field(default=None, primary_key=True)
    order_id: str = Field(index=True, unique=True)  # exchange order id
    pair: str = Field(index=True)
    side: str  # "buy", "sell"
    order_type: str  # "market", "limit"
    price: float | None = None  # limit price
    quantity: float
    filled_quantity: float = 0.0
    avg_fill_price: float | None = None
    status: str = "pending"  # "pending", "partially_filled", "filled", "canceled", "rejected"
    reason: str  # "signal_open", "signal_close", "stop_loss", "take_profit", "bvlt_switch", "emergency_stop"
    isolated_margin: bool = False
    error: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
