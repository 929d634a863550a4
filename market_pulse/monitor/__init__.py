"""
Runtime instrumentation shared by the fetcher, limiter and pipeline.
"""

from .metrics import MetricsCollector

__all__ = ["MetricsCollector"]
