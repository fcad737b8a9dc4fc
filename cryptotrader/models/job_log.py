"""JobLog model — per-cycle decision log for each pair."""

from datetime import datetime, timezone
from typing import Any

from sqlmodel import SQLModel, Field, Column
from sqlalchemy import JSON


class JobLog(SQLModel, table=True):
    __tablename__ = "job_log"

    id: int | None = Field(default=None, primary_key=True)
    pair: str = Field(index=True)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    status: str  # "success", "error", "skipped", "warning"
    action: str | None = None  # "none", "open_long", "close", "stop_loss", "bvlt_switch", ...
    bias: str | None = None
    close: float | None = None
    fast_avg: float | None = None
    slow_avg: float | None = None
    macd_line: float | None = None
    macd_signal_line: float | None = None
    message: str | None = None
    details: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON))
