"""
Provider rate limiting.

This module handles:
- Sliding-window admission (at most N calls per rolling window)
- A FIFO wait queue drained by a single background task
- Performance monitoring
"""

import time
import asyncio
import logging
from collections import deque
from typing import Any, Callable, Deque, Dict, Optional
from dataclasses import dataclass
from datetime import datetime

from .config import Config
from .monitor.metrics import MetricsCollector

logger = logging.getLogger(__name__)


@dataclass
class RateLimitMetrics:
    """Metrics for rate limiter performance."""
    requests_made: int = 0
    requests_limited: int = 0
    total_wait_time: float = 0.0
    max_wait_time: float = 0.0
    provider_rejections: int = 0
    last_limit_time: Optional[datetime] = None


class RateLimiter:
    """
    Sliding-window rate limiter with an ordered wait queue.

    Every admitted call leaves a timestamp in ``timestamps``. A caller is
    admitted straight away only when the queue is empty and fewer than
    ``max_requests`` timestamps fall inside the window; otherwise it parks
    a future on the queue. One drainer task releases the queued futures in
    arrival order as old timestamps fall out of the window.
    """

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        metrics: Optional[MetricsCollector] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        if max_requests <= 0:
            raise ValueError("max_requests must be positive")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")

        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.metrics = metrics if metrics is not None else MetricsCollector()
        self.clock = clock

        self.timestamps: Deque[float] = deque()
        self._waiters: Deque[asyncio.Future] = deque()
        self._drainer: Optional[asyncio.Task] = None

        self.metrics_data = RateLimitMetrics()

        logger.info(
            f"Initialized RateLimiter with {max_requests} requests per {window_seconds}s"
        )

    @classmethod
    def from_config(cls, config: Config, metrics: Optional[MetricsCollector] = None) -> 'RateLimiter':
        return cls(
            max_requests=config.rate_limit.max_requests,
            window_seconds=config.rate_limit.window_seconds,
            metrics=metrics,
        )

    def _prune(self, now: float):
        while self.timestamps and now - self.timestamps[0] >= self.window_seconds:
            self.timestamps.popleft()

    def _admit(self, now: float):
        self.timestamps.append(now)
        self.metrics_data.requests_made += 1

    @property
    def queue_length(self) -> int:
        return sum(1 for fut in self._waiters if not fut.done())

    def available(self) -> int:
        """Free slots in the current window."""
        self._prune(self.clock())
        return max(0, self.max_requests - len(self.timestamps))

    def try_acquire(self) -> bool:
        """Admit immediately if possible, without queueing."""
        now = self.clock()
        self._prune(now)
        if not self._waiters and len(self.timestamps) < self.max_requests:
            self._admit(now)
            return True
        return False

    async def acquire(self) -> float:
        """
        Wait for admission.

        Returns:
            Time waited in seconds (0.0 when admitted immediately)
        """
        if self.try_acquire():
            return 0.0

        start = self.clock()
        future = asyncio.get_running_loop().create_future()
        self._waiters.append(future)
        self.metrics_data.requests_limited += 1
        self.metrics.set_gauge("rate_limit_queue", self.queue_length)

        if self._drainer is None or self._drainer.done():
            self._drainer = asyncio.create_task(self._drain())

        logger.debug(f"Rate limit reached, queued behind {len(self._waiters) - 1} callers")

        await future

        wait_time = self.clock() - start
        self.metrics_data.total_wait_time += wait_time
        self.metrics_data.max_wait_time = max(self.metrics_data.max_wait_time, wait_time)
        self.metrics.record_rate_limited(wait_time)
        return wait_time

    async def _drain(self):
        while self._waiters:
            now = self.clock()
            self._prune(now)

            if len(self.timestamps) < self.max_requests:
                future = self._waiters.popleft()
                self.metrics.set_gauge("rate_limit_queue", self.queue_length)
                # Cancelled waiters give up their place without consuming a slot
                if future.done():
                    continue
                self._admit(now)
                future.set_result(None)
                continue

            sleep_for = self.timestamps[0] + self.window_seconds - now
            await asyncio.sleep(max(sleep_for, 0.001))

    def record_rate_limit(self):
        """Record a rate limit response from the provider."""
        self.metrics_data.provider_rejections += 1
        self.metrics_data.last_limit_time = datetime.now()
        logger.warning("Provider rejected a request with a rate limit status")

    async def close(self):
        """Stop the drainer and cancel anyone still queued."""
        if self._drainer and not self._drainer.done():
            self._drainer.cancel()
            try:
                await self._drainer
            except asyncio.CancelledError:
                pass
        while self._waiters:
            future = self._waiters.popleft()
            if not future.done():
                future.cancel()
        self._drainer = None
        self.metrics.set_gauge("rate_limit_queue", 0)

    def get_metrics(self) -> Dict[str, Any]:
        """Get rate limiter metrics."""
        return {
            "max_requests": self.max_requests,
            "window_seconds": self.window_seconds,
            "available": self.available(),
            "queued": self.queue_length,
            "requests_made": self.metrics_data.requests_made,
            "requests_limited": self.metrics_data.requests_limited,
            "limit_rate": (
                self.metrics_data.requests_limited /
                max(1, self.metrics_data.requests_made) * 100
            ),
            "total_wait_time": self.metrics_data.total_wait_time,
            "max_wait_time": self.metrics_data.max_wait_time,
            "provider_rejections": self.metrics_data.provider_rejections,
            "last_limit_time": (
                self.metrics_data.last_limit_time.isoformat()
                if self.metrics_data.last_limit_time else None
            )
        }
