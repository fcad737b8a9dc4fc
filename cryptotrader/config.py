"""Application configuration via environment variables."""

from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings

PROJECT_ROOT = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    database_url: str = f"sqlite:///{PROJECT_ROOT / 'cryptotrader.db'}"
    log_level: str = "INFO"
    log_dir: str = ""  # empty = console only
    cors_origins: list[str] = ["http://localhost:5173"]
    strategy_file: str = str(PROJECT_ROOT / "conf" / "ct.ini")

    # Exchange
    exchange_id: str = "binance"  # any ccxt exchange id
    api_key: str = ""
    api_secret: str = ""
    dry_run: bool = False  # live market data, paper fills
    paper_balance: float = 1000.0  # starting quote balance of the paper account

    # Ops API; empty token leaves mutating endpoints disabled
    api_token: str = ""

    # Execution timing
    order_timeout_seconds: float = 60.0
    order_poll_seconds: float = 1.0
    price_check_seconds: float = 5.0
    candle_poll_seconds: float = 5.0

    # Market data recovery
    max_resubscribe_attempts: int = 5
    resubscribe_backoff_seconds: float = 5.0

    # Capital
    total_capital: float | None = None  # default: free quote balance at startup

    # What to do when a BVLT sell leg times out partially filled:
    # "wait_then_cancel" reports the switch as missed, "complete_at_market" sells the rest at market
    bvlt_partial_fill_policy: Literal["wait_then_cancel", "complete_at_market"] = "wait_then_cancel"

    model_config = {"env_prefix": "CT_", "env_file": ".env"}


settings = Settings()
