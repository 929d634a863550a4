"""
Utility functions for market_pulse.

This module provides:
- Async retry with exponential backoff
- Backoff schedule helpers
- Small numeric and time helpers
"""

import asyncio
import math
import logging
from typing import Any, Awaitable, Callable, List, Optional
from functools import wraps
from datetime import datetime, timezone

logger = logging.getLogger(__name__)


def backoff_delay(
    base_delay: float,
    backoff_factor: float,
    attempt: int,
    max_delay: Optional[float] = None
) -> float:
    """
    Delay before retry number ``attempt`` (1-based).

    ``base_delay * backoff_factor ** (attempt - 1)``, optionally capped.
    """
    if attempt < 1:
        raise ValueError("attempt must be >= 1")
    delay = base_delay * (backoff_factor ** (attempt - 1))
    if max_delay is not None:
        delay = min(delay, max_delay)
    return delay


def retry_schedule(base_delay: float, backoff_factor: float, max_retries: int) -> List[float]:
    """All delays a call with ``max_retries`` retries may sleep through."""
    return [backoff_delay(base_delay, backoff_factor, n) for n in range(1, max_retries + 1)]


def retry(
    max_attempts: int = 3,
    delay: float = 1.0,
    backoff_factor: float = 2.0,
    exceptions: tuple = (Exception,),
    giveup: tuple = (),
    on_retry: Optional[Callable[[Exception, int], None]] = None,
    max_delay: Optional[float] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
):
    """
    Retry decorator for coroutines with exponential backoff.

    Args:
        max_attempts: Total attempts including the first call
        delay: Initial delay between retries in seconds
        backoff_factor: Factor to multiply delay by for each retry
        exceptions: Tuple of exceptions to catch and retry on
        giveup: Exceptions re-raised immediately even if listed in ``exceptions``
        on_retry: Optional callback called with (error, attempt) before sleeping
        max_delay: Optional cap on a single delay
        sleep: Coroutine used to wait between attempts
    """
    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            last_exception = None

            for attempt in range(1, max_attempts + 1):
                try:
                    return await func(*args, **kwargs)
                except giveup:
                    raise
                except exceptions as e:
                    last_exception = e

                    if attempt < max_attempts:
                        current_delay = backoff_delay(delay, backoff_factor, attempt, max_delay)

                        logger.warning(
                            f"Attempt {attempt}/{max_attempts} failed for {func.__name__}. "
                            f"Retrying in {current_delay:.2f}s. Error: {str(e)}"
                        )

                        if on_retry:
                            on_retry(e, attempt)

                        await sleep(current_delay)

            logger.error(
                f"All {max_attempts} attempts failed for {func.__name__}. "
                f"Final error: {str(last_exception)}"
            )
            raise last_exception
        return wrapper
    return decorator


def percent_change(previous: float, current: float) -> Optional[float]:
    """Relative change in percent, or None when there is no usable baseline."""
    if previous is None or current is None or previous == 0:
        return None
    return (current - previous) * 100.0 / previous


def is_finite_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def from_timestamp_ms(value: float) -> datetime:
    return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 string (``Z`` suffix allowed) into an aware datetime."""
    if value is None or isinstance(value, datetime):
        return value
    text = str(value)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
