"""Process-wide logging setup."""

import logging
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path

from cryptotrader.config import settings

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"


def setup_logging(level: str | None = None, log_dir: str | None = None):
    """Configure the root logger once: console always, daily-rotated file if `log_dir` is set."""
    root = logging.getLogger()
    root.setLevel((level or settings.log_level).upper())

    if getattr(root, "_cryptotrader_configured", False):
        return

    formatter = logging.Formatter(LOG_FORMAT)
    console = logging.StreamHandler()
    console.setFormatter(formatter)
    root.addHandler(console)

    log_dir = log_dir if log_dir is not None else settings.log_dir
    if log_dir:
        path = Path(log_dir)
        path.mkdir(parents=True, exist_ok=True)
        file_handler = TimedRotatingFileHandler(
            path / "cryptotrader.log", when="D", backupCount=7, encoding="utf-8"
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    # ccxt and apscheduler are chatty at INFO
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
    logging.getLogger("ccxt").setLevel(logging.WARNING)
    root._cryptotrader_configured = True
