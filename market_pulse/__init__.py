"""
market_pulse: crypto market ingestion and analysis

This package is responsible for:
- Fetching market snapshots from a rate-limited provider with caching and failover
- Recording price history and detecting price/volume anomalies
- Technical indicators, cross-asset correlation and price forecasts
- Deduplicated alerts and typed event broadcasting
"""

from .config import Config
from .fetcher import MarketDataFetcher, FetchState
from .cache_manager import CacheManager
from .rate_limiter import RateLimiter
from .storage import MarketRepository, InMemoryRepository
from .events import EventBus
from .processor import MarketProcessor, ProcessingResult
from .indicators import IndicatorEngine
from .correlation import CorrelationEngine
from .alerts import AlertService
from .forecast import ForecastService, ModelEnsemble
from .pipeline import MarketPipeline
from .monitor.metrics import MetricsCollector

__version__ = "1.0.0"
__all__ = [
    "Config",
    "MarketDataFetcher",
    "FetchState",
    "CacheManager",
    "RateLimiter",
    "MarketRepository",
    "InMemoryRepository",
    "EventBus",
    "MarketProcessor",
    "ProcessingResult",
    "IndicatorEngine",
    "CorrelationEngine",
    "AlertService",
    "ForecastService",
    "ModelEnsemble",
    "MarketPipeline",
    "MetricsCollector",
]
