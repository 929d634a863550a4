"""
Error taxonomy for the ingestion and analysis pipeline.

Fetch errors carry the provider status code when one is known so the
retry loop can decide between retrying, failing over and giving up.
"""

from typing import Optional


class MarketPulseError(Exception):
    """Base class for all package errors."""


class FetchError(MarketPulseError):
    """A provider call failed."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class TransientNetworkError(FetchError):
    """Timeout, connection failure or 5xx response. Retried with backoff."""


class RateLimitError(FetchError):
    """Quota exhausted or provider blocked the client (429/403)."""


class NotFoundError(FetchError):
    """404-class response. Never retried."""


class DataShapeError(FetchError):
    """Response is missing expected fields. Never retried."""


class ModelError(MarketPulseError):
    """A single forecast predictor failed to train or predict."""


class PersistenceError(MarketPulseError):
    """Read or write failure on the persistence collaborator."""


class InsufficientDataError(MarketPulseError):
    """Not enough history to compute the requested analytics."""


def classify_status(status: int, message: str) -> FetchError:
    """Map an HTTP status to the matching fetch error."""
    if status == 404:
        return NotFoundError(message, status)
    if status in (403, 429):
        return RateLimitError(message, status)
    return TransientNetworkError(message, status)
