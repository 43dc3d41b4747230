"""Error taxonomy shared by the exchange client, executor and orchestrator.

Transient errors are retried inside ``fetch_with_retry`` and surface only once
the attempts are exhausted. Rejections and lookups that fail are terminal.
``LockHeld`` is expected contention, not a failure.
"""
from typing import Optional


class ExchangeError(Exception):
    """Base class for everything the exchange layer raises."""


class TransientFailure(ExchangeError):
    """Timeouts or retryable statuses that were still failing on the last attempt."""

    def __init__(self, message: str, status: Optional[int] = None, cause: Optional[BaseException] = None, attempts: int = 0):
        super().__init__(message)
        self.status = status
        self.cause = cause
        self.attempts = attempts


class ExchangeHTTPError(ExchangeError):
    """Non-retryable HTTP status from the exchange."""

    def __init__(self, status: int, body: str = ""):
        super().__init__(f"HTTP {status}: {body[:200]}")
        self.status = status
        self.body = body


class ExchangeRequestError(ExchangeError):
    """Transport failure other than a timeout (DNS, refused connection, ...)."""


class OrderRejected(ExchangeError):
    """The exchange refused the order. Terminal, never retried automatically."""

    def __init__(self, message: str, symbol: Optional[str] = None):
        super().__init__(message)
        self.symbol = symbol


class OrderUnconfirmed(OrderRejected):
    """Response carried no order status, so the order may not exist."""


class NotFound(ExchangeError):
    pass


class UnknownAsset(NotFound):
    def __init__(self, symbol: str, testnet: bool = False):
        network = "testnet" if testnet else "mainnet"
        super().__init__(f"Asset {symbol} not found on {network}")
        self.symbol = symbol


class PriceUnavailable(NotFound):
    def __init__(self, symbol: str):
        super().__init__(f"No mid price for {symbol}")
        self.symbol = symbol


class LockHeld(Exception):
    """Another trading cycle already holds the user's lock."""

    def __init__(self, user_id: str, expires_at=None):
        super().__init__(f"Trading lock held for {user_id}")
        self.user_id = user_id
        self.expires_at = expires_at


__all__ = [
    "ExchangeError",
    "TransientFailure",
    "ExchangeHTTPError",
    "ExchangeRequestError",
    "OrderRejected",
    "OrderUnconfirmed",
    "NotFound",
    "UnknownAsset",
    "PriceUnavailable",
    "LockHeld",
]
