"""Shared constants and defaults."""

VALID_INTERVALS = ["1m", "3m", "5m", "15m", "30m", "1h", "2h", "4h", "6h", "8h", "12h", "1d"]

# Candle interval to milliseconds, used for gap detection
INTERVAL_MS: dict[str, int] = {
    "1m": 60_000,
    "3m": 180_000,
    "5m": 300_000,
    "15m": 900_000,
    "30m": 1_800_000,
    "1h": 3_600_000,
    "2h": 7_200_000,
    "4h": 14_400_000,
    "6h": 21_600_000,
    "8h": 28_800_000,
    "12h": 43_200_000,
    "1d": 86_400_000,
}

# Standard MACD parameters
MACD_FAST = 12
MACD_SLOW = 26
MACD_SIGNAL = 9

# Fast-average points needed to detect a slope reversal
TREND_LOOKBACK = 3

MAX_LEVERAGE = 10
MAX_CONFIRMATION_CANDLES = 10

DEFAULT_QUOTE_ASSET = "USDT"
BVLT_UP_SUFFIX = "UP"
BVLT_DOWN_SUFFIX = "DOWN"
