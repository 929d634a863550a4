"""
In-process metrics for the ingestion and analysis pipeline.

This module handles:
- Counters, gauges and timing series with tags
- Fetch path bookkeeping (provider calls, cache, limiter, retries, fallbacks)
- Per-cycle durations for the pipeline timers
"""

import time
import logging
from typing import Dict, Any, Optional, List
from datetime import datetime, timedelta
from dataclasses import dataclass, field
from collections import defaultdict, deque

import numpy as np

logger = logging.getLogger(__name__)

Tags = Optional[Dict[str, str]]


@dataclass
class MetricPoint:
    """A single tagged observation."""
    timestamp: datetime
    value: float
    tags: Dict[str, str] = field(default_factory=dict)


class MetricsCollector:
    """
    Collects counters, gauges and timings for one pipeline.

    Every component of a pipeline shares one collector. All mutation
    happens on the event loop thread, so nothing is locked.
    """

    def __init__(self, max_points: int = 1000):
        self.max_points = max_points
        self.counters: Dict[str, int] = defaultdict(int)
        self.gauges: Dict[str, float] = {}
        self.timings: Dict[str, deque] = defaultdict(lambda: deque(maxlen=max_points))
        self.points: Dict[str, deque] = defaultdict(lambda: deque(maxlen=max_points))
        self.started_at = time.time()

    # Primitive metric types

    def increment(self, name: str, value: int = 1, tags: Tags = None):
        self.counters[name] += value
        self._observe(name, value, tags)

    def set_gauge(self, name: str, value: float, tags: Tags = None):
        self.gauges[name] = value
        self._observe(name, value, tags)

    def record_timing(self, name: str, seconds: float, tags: Tags = None):
        self.timings[name].append(seconds)
        self._observe(name, seconds, tags)

    def _observe(self, name: str, value: float, tags: Tags):
        self.points[name].append(MetricPoint(datetime.now(), value, dict(tags or {})))

    # Fetch path

    def record_api_call(self, endpoint: str, duration: float, provider: str):
        """One provider round trip, successful or not."""
        tags = {"endpoint": endpoint, "provider": provider}
        self.increment("api_calls_total", tags=tags)
        self.record_timing("api_duration_seconds", duration, tags=tags)

    def record_cache_hit(self, key: str):
        self.increment("cache_hits", tags={"key": key})

    def record_cache_miss(self, key: str):
        self.increment("cache_misses", tags={"key": key})

    def record_rate_limited(self, wait_time: float):
        self.increment("rate_limited_total")
        self.record_timing("rate_limit_wait_seconds", wait_time)

    def record_retry(self, key: str, attempt: int):
        self.increment("retries_total", tags={"key": key, "attempt": str(attempt)})

    def record_fallback(self, key: str, source: str):
        """A fetch answered from the stale cache (``stale_cache``) or a default (``default``)."""
        self.increment("fallbacks_total", tags={"key": key, "source": source})

    # Pipeline

    def record_cycle(self, cycle: str, duration: float):
        self.increment("cycles_total", tags={"cycle": cycle})
        self.record_timing(f"{cycle}_cycle_seconds", duration)

    def record_error(self, component: str, error_type: str, tags: Tags = None):
        self.increment(
            "errors_total",
            tags={"component": component, "error_type": error_type, **(tags or {})}
        )

    # Queries

    def get_counter(self, name: str) -> int:
        return self.counters.get(name, 0)

    def get_gauge(self, name: str) -> float:
        return self.gauges.get(name, 0.0)

    def get_timing_stats(self, name: str) -> Dict[str, float]:
        """count/min/max/avg/p50/p95 over the retained timings, {} when none."""
        values = self.timings.get(name)
        if not values:
            return {}

        samples = np.fromiter(values, dtype=float)
        p50, p95 = np.percentile(samples, [50, 95])
        return {
            "count": int(samples.size),
            "min": float(samples.min()),
            "max": float(samples.max()),
            "avg": float(samples.mean()),
            "p50": float(p50),
            "p95": float(p95),
        }

    def count_by_tag(self, name: str, tag: str) -> Dict[str, int]:
        """Sum retained observations of a counter grouped by one tag value."""
        totals: Dict[str, int] = defaultdict(int)
        for point in self.points.get(name, []):
            if tag in point.tags:
                totals[point.tags[tag]] += int(point.value)
        return dict(totals)

    def get_recent_metrics(self, name: str, since: Optional[datetime] = None) -> List[MetricPoint]:
        """Observations since ``since``, the last hour by default."""
        since = since or datetime.now() - timedelta(hours=1)
        return [p for p in self.points.get(name, []) if p.timestamp >= since]

    def get_all_metrics(self) -> Dict[str, Any]:
        return {
            "uptime_seconds": time.time() - self.started_at,
            "counters": dict(self.counters),
            "gauges": dict(self.gauges),
            "timings": {name: self.get_timing_stats(name) for name in self.timings},
            "errors_by_component": self.count_by_tag("errors_total", "component"),
        }

    def reset(self):
        self.counters.clear()
        self.gauges.clear()
        self.timings.clear()
        self.points.clear()
        logger.info("Reset all metrics")
