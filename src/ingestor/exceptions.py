"""Custom exceptions for the market data ingestor.

Kept in one module so the rate limiter, exchange clients and the collector
can share them without importing each other.
"""


class IngestorError(Exception):
    """Base exception for all ingestor errors."""


class RateLimitExceeded(IngestorError):
    """Raised when an operation keeps hitting exchange rate limits.

    Only raised after every allowed attempt failed with a rate-limit error.
    The last underlying error is available as ``cause`` and ``__cause__``.
    """

    def __init__(self, operation_name: str, cause: BaseException) -> None:
        super().__init__(f"Rate limit exceeded for {operation_name}")
        self.operation_name = operation_name
        self.cause = cause


class RateLimiterInvariantError(IngestorError):
    """Raised when the retry loop ends without returning or raising."""


class OperationCancelled(IngestorError):
    """Raised when a cancellable wait sees the shutdown signal."""


class UnsupportedExchangeError(IngestorError):
    """Raised for an exchange id with no client configured or known to ccxt."""


class UnsupportedTimeframeError(IngestorError):
    """Raised for a timeframe outside the supported buckets."""
