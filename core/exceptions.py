"""Shared exception types for market data resolution and the portfolio ledger."""

from typing import Optional


class MarketDataError(RuntimeError):
    """Base class for failures fetching or resolving market data."""

    def __init__(self, message: str, source: Optional[str] = None,
                 original: Optional[Exception] = None):
        super().__init__(message)
        self.source = source
        self.original = original


class InstrumentNotFound(MarketDataError):
    """Raised when a symbol or instrument is confirmed unknown upstream.

    Terminal: never retried against a fallback provider.
    """


class UpstreamUnavailable(MarketDataError):
    """Raised on transport errors, non-2xx responses or malformed payloads."""


class RateLimited(MarketDataError):
    """Raised when a provider's rate budget cannot be met within the bounded wait."""

    def __init__(self, provider: str, retry_after: float):
        super().__init__(
            f"Rate limit for {provider} exceeded (retry after {retry_after:.2f}s)",
            source=provider,
        )
        self.provider = provider
        self.retry_after = retry_after


class LedgerError(RuntimeError):
    """Base class for rejected portfolio ledger mutations."""


class InsufficientFunds(LedgerError):
    """Cash balance cannot cover the requested position."""

    def __init__(self, required: float, available: float):
        super().__init__(
            f"Insufficient funds: have ${available:.2f}, need ${required:.2f}"
        )
        self.required = required
        self.available = available


class LimitExceeded(LedgerError):
    """A configured portfolio limit would be violated."""


class TradingHalted(LimitExceeded):
    """New positions are suspended until the daily loss boundary resets."""


class InvalidPositionRequest(LedgerError, ValueError):
    """Position request is malformed (non-positive size, protections on the wrong side)."""


class PositionNotFound(LedgerError, KeyError):
    """No position with the given id exists."""

    def __str__(self) -> str:  # KeyError quotes its message otherwise
        return str(self.args[0]) if self.args else ""


class PositionAlreadyClosed(LedgerError):
    """Position is CLOSED; no further transitions are allowed."""


class DataIntegrityWarning(UserWarning):
    """Discovery rejection ledger does not reconcile with the scanned universe."""
