"""Error kinds raised across the trading core."""


class TradingError(Exception):
    """Base class for all cryptotrader errors."""


class ConfigurationError(TradingError):
    """Invalid or contradictory configuration. Fatal at startup."""


class TransportError(TradingError):
    """Connectivity to the exchange was lost or a request failed in transit."""


class OrderRejected(TradingError):
    """The exchange (or a local pre-check) refused the order. Never retried."""

    def __init__(self, pair: str, reason: str):
        super().__init__(f"{pair}: order rejected: {reason}")
        self.pair = pair
        self.reason = reason


class OrderTimeout(TradingError):
    """An order did not fill before its deadline and was canceled."""

    def __init__(self, pair: str, order_id: str, filled_quantity=None):
        super().__init__(f"{pair}: order {order_id} timed out")
        self.pair = pair
        self.order_id = order_id
        self.filled_quantity = filled_quantity


class StaleDataError(TradingError):
    """A gap was detected in a pair's candle sequence."""

    def __init__(self, pair: str, expected_open_time: int, got_open_time: int):
        super().__init__(
            f"{pair}: candle gap, expected open_time {expected_open_time}, got {got_open_time}"
        )
        self.pair = pair
        self.expected_open_time = expected_open_time
        self.got_open_time = got_open_time


class BothLegsHeld(TradingError):
    """Both leveraged-token legs of a BVLT group hold a position at once."""
