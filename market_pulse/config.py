"""
Configuration management for market_pulse.

This module handles:
- Centralized configuration
- Environment variable support
- Configuration validation
- Logging setup
"""

import os
import json
import logging
from dataclasses import dataclass, field, asdict
from typing import Optional, Dict, Any, List

logger = logging.getLogger(__name__)

DEFAULT_PROVIDERS = [
    "https://api.coingecko.com/api/v3",
    "https://coingecko.p.rapidapi.com/api/v3",
]


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


def _env_list(name: str, default: List[Any], cast=str) -> List[Any]:
    raw = os.getenv(name)
    if not raw:
        return list(default)
    return [cast(item.strip()) for item in raw.split(",") if item.strip()]


@dataclass
class ApiConfig:
    """Provider endpoints, in failover order."""
    base_urls: List[str] = field(default_factory=lambda: list(DEFAULT_PROVIDERS))
    api_key: Optional[str] = None
    timeout: float = 10.0
    historical_timeout: float = 15.0
    vs_currency: str = "usd"
    connection_pool_size: int = 10


@dataclass
class FetchConfig:
    """Periodic fetch settings. Intervals are in seconds."""
    fetch_interval: float = 60.0
    detailed_fetch_interval: float = 600.0
    asset_count: int = 20
    detail_count: int = 10
    detail_pause: float = 0.3
    analysis_interval: float = 300.0
    analysis_asset_count: int = 10


@dataclass
class RateLimitConfig:
    """Rate limit configuration."""
    max_requests: int = 40
    window_seconds: float = 60.0


@dataclass
class RetryConfig:
    """Retry with exponential backoff. Delays are in seconds."""
    max_retries: int = 5
    base_delay: float = 2.0
    backoff_factor: float = 2.0


@dataclass
class CacheConfig:
    """Cache configuration. TTLs are in seconds."""
    market_ttl: float = 60.0
    detail_ttl: float = 300.0
    historical_ttl: float = 3600.0
    max_entries: int = 500
    max_stale_age: float = 86400.0
    cache_dir: Optional[str] = None


@dataclass
class AnomalyConfig:
    """Anomaly thresholds, in percent."""
    price_threshold_pct: float = 5.0
    volume_threshold_pct: float = 20.0


@dataclass
class IndicatorConfig:
    """Technical indicator parameters."""
    sma_periods: List[int] = field(default_factory=lambda: [7, 25, 99])
    rsi_period: int = 14
    rsi_overbought: float = 70.0
    rsi_oversold: float = 30.0
    macd_fast: int = 12
    macd_slow: int = 26
    macd_signal: int = 9
    window_days: int = 30


@dataclass
class CorrelationConfig:
    """Correlation engine configuration."""
    window_days: int = 30
    alignment_tolerance_seconds: float = 30.0


@dataclass
class AlertConfig:
    """Alert dedup and notification configuration."""
    anomaly_bucket_seconds: int = 60
    indicator_bucket_seconds: int = 3600
    sent_retention_seconds: float = 3600.0
    strong_signal_threshold: float = 0.7
    channels: List[str] = field(default_factory=lambda: ["log"])


@dataclass
class ForecastConfig:
    """Forecast ensemble configuration."""
    linear_weight: float = 0.3
    smoothing_weight: float = 0.3
    autoregression_weight: float = 0.4
    smoothing_alpha: float = 0.3
    smoothing_beta: float = 0.1
    ar_order: int = 3
    ridge: float = 1e-6
    min_history: int = 10
    history_days: int = 90
    staleness_seconds: float = 12 * 3600.0
    band_pct: float = 0.10
    synthetic_length: int = 30
    synthetic_growth: float = 0.01
    default_base_price: float = 100.0

    @property
    def weights(self) -> Dict[str, float]:
        return {
            "linear_regression": self.linear_weight,
            "exponential_smoothing": self.smoothing_weight,
            "autoregression": self.autoregression_weight,
        }


@dataclass
class RetentionConfig:
    """Price history and analytics retention."""
    price_history_days: int = 30
    analytics_days: int = 30
    interval_seconds: float = 3600.0


_SECTIONS = {
    "api": ApiConfig,
    "fetch": FetchConfig,
    "rate_limit": RateLimitConfig,
    "retry": RetryConfig,
    "cache": CacheConfig,
    "anomaly": AnomalyConfig,
    "indicators": IndicatorConfig,
    "correlation": CorrelationConfig,
    "alerts": AlertConfig,
    "forecast": ForecastConfig,
    "retention": RetentionConfig,
}


@dataclass
class Config:
    """Main configuration class."""
    api: ApiConfig = field(default_factory=ApiConfig)
    fetch: FetchConfig = field(default_factory=FetchConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    anomaly: AnomalyConfig = field(default_factory=AnomalyConfig)
    indicators: IndicatorConfig = field(default_factory=IndicatorConfig)
    correlation: CorrelationConfig = field(default_factory=CorrelationConfig)
    alerts: AlertConfig = field(default_factory=AlertConfig)
    forecast: ForecastConfig = field(default_factory=ForecastConfig)
    retention: RetentionConfig = field(default_factory=RetentionConfig)

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None

    @classmethod
    def from_env(cls) -> 'Config':
        """Create configuration from MARKET_PULSE_* environment variables."""
        p = "MARKET_PULSE_"
        return cls(
            api=ApiConfig(
                base_urls=_env_list(p + "PROVIDER_URLS", DEFAULT_PROVIDERS),
                api_key=os.getenv(p + "API_KEY"),
                timeout=float(os.getenv(p + "TIMEOUT", "10")),
                historical_timeout=float(os.getenv(p + "HISTORICAL_TIMEOUT", "15")),
                vs_currency=os.getenv(p + "VS_CURRENCY", "usd"),
            ),
            fetch=FetchConfig(
                fetch_interval=float(os.getenv(p + "FETCH_INTERVAL", "60")),
                detailed_fetch_interval=float(os.getenv(p + "DETAILED_FETCH_INTERVAL", "600")),
                asset_count=int(os.getenv(p + "ASSET_COUNT", "20")),
                detail_count=int(os.getenv(p + "DETAIL_COUNT", "10")),
                analysis_interval=float(os.getenv(p + "ANALYSIS_INTERVAL", "300")),
                analysis_asset_count=int(os.getenv(p + "ANALYSIS_ASSET_COUNT", "10")),
            ),
            rate_limit=RateLimitConfig(
                max_requests=int(os.getenv(p + "RATE_LIMIT_MAX_REQUESTS", "40")),
                window_seconds=float(os.getenv(p + "RATE_LIMIT_WINDOW", "60")),
            ),
            retry=RetryConfig(
                max_retries=int(os.getenv(p + "MAX_RETRIES", "5")),
                base_delay=float(os.getenv(p + "RETRY_BASE_DELAY", "2.0")),
                backoff_factor=float(os.getenv(p + "RETRY_BACKOFF_FACTOR", "2.0")),
            ),
            cache=CacheConfig(
                market_ttl=float(os.getenv(p + "MARKET_TTL", "60")),
                detail_ttl=float(os.getenv(p + "DETAIL_TTL", "300")),
                historical_ttl=float(os.getenv(p + "HISTORICAL_TTL", "3600")),
                cache_dir=os.getenv(p + "CACHE_DIR"),
            ),
            anomaly=AnomalyConfig(
                price_threshold_pct=float(os.getenv(p + "PRICE_THRESHOLD_PCT", "5")),
                volume_threshold_pct=float(os.getenv(p + "VOLUME_THRESHOLD_PCT", "20")),
            ),
            indicators=IndicatorConfig(
                sma_periods=_env_list(p + "SMA_PERIODS", [7, 25, 99], int),
                rsi_period=int(os.getenv(p + "RSI_PERIOD", "14")),
                rsi_overbought=float(os.getenv(p + "RSI_OVERBOUGHT", "70")),
                rsi_oversold=float(os.getenv(p + "RSI_OVERSOLD", "30")),
                macd_fast=int(os.getenv(p + "MACD_FAST", "12")),
                macd_slow=int(os.getenv(p + "MACD_SLOW", "26")),
                macd_signal=int(os.getenv(p + "MACD_SIGNAL", "9")),
            ),
            alerts=AlertConfig(
                channels=_env_list(p + "ALERT_CHANNELS", ["log"]),
            ),
            retention=RetentionConfig(
                price_history_days=int(os.getenv(p + "RETENTION_DAYS", "30")),
                analytics_days=int(os.getenv(p + "ANALYTICS_RETENTION_DAYS", "30")),
            ),
            log_level=os.getenv(p + "LOG_LEVEL", "INFO"),
            log_file=os.getenv(p + "LOG_FILE"),
        )

    @classmethod
    def from_file(cls, file_path: str) -> 'Config':
        """Create configuration from JSON file."""
        with open(file_path, 'r') as f:
            config_data = json.load(f)

        sections = {
            name: section_cls(**config_data.get(name, {}))
            for name, section_cls in _SECTIONS.items()
        }
        return cls(
            **sections,
            **{k: v for k, v in config_data.items() if k not in _SECTIONS}
        )

    def to_file(self, file_path: str):
        """Save configuration to JSON file."""
        with open(file_path, 'w') as f:
            json.dump(asdict(self), f, indent=2)

    def validate(self):
        """Validate configuration values."""
        errors = []

        if not self.api.base_urls:
            errors.append("At least one provider URL is required")
        for url in self.api.base_urls:
            if not url.startswith(('http://', 'https://')):
                errors.append(f"Provider URL must start with http:// or https://: {url}")

        if self.api.timeout <= 0:
            errors.append("Timeout must be positive")

        if self.fetch.fetch_interval <= 0 or self.fetch.detailed_fetch_interval <= 0:
            errors.append("Fetch intervals must be positive")

        if self.fetch.asset_count <= 0:
            errors.append("Asset count must be positive")

        if self.rate_limit.max_requests <= 0:
            errors.append("Rate limit ceiling must be positive")

        if self.rate_limit.window_seconds <= 0:
            errors.append("Rate limit window must be positive")

        if self.retry.max_retries < 0:
            errors.append("Max retries must not be negative")

        if self.retry.base_delay < 0:
            errors.append("Retry base delay must not be negative")

        if self.retry.backoff_factor < 1:
            errors.append("Backoff factor must be at least 1")

        for name in ("market_ttl", "detail_ttl", "historical_ttl"):
            if getattr(self.cache, name) <= 0:
                errors.append(f"Cache {name} must be positive")

        if self.anomaly.price_threshold_pct <= 0 or self.anomaly.volume_threshold_pct <= 0:
            errors.append("Anomaly thresholds must be positive")

        if not self.indicators.sma_periods or min(self.indicators.sma_periods) < 1:
            errors.append("SMA periods must be positive integers")

        if not 0 < self.indicators.rsi_oversold < self.indicators.rsi_overbought < 100:
            errors.append("RSI thresholds must satisfy 0 < oversold < overbought < 100")

        if self.indicators.macd_fast >= self.indicators.macd_slow:
            errors.append("MACD fast period must be shorter than slow period")

        if self.correlation.alignment_tolerance_seconds < 0:
            errors.append("Correlation alignment tolerance must not be negative")

        weights = self.forecast.weights
        if any(w < 0 for w in weights.values()) or abs(sum(weights.values()) - 1) > 1e-6:
            errors.append("Forecast weights must be non-negative and sum to 1")

        if not 0 < self.forecast.smoothing_alpha <= 1 or not 0 < self.forecast.smoothing_beta <= 1:
            errors.append("Smoothing constants must be in (0, 1]")

        if self.retention.price_history_days <= 0 or self.retention.analytics_days <= 0:
            errors.append("Retention days must be positive")

        if errors:
            raise ValueError(f"Configuration validation failed: {'; '.join(errors)}")

        logger.info("Configuration validation passed")

    def setup_logging(self):
        """Set up logging based on configuration."""
        level = getattr(logging, self.log_level.upper())
        logging.basicConfig(level=level)

        if self.log_file:
            handler = logging.FileHandler(self.log_file)
            handler.setLevel(level)
            formatter = logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            )
            handler.setFormatter(formatter)
            logging.getLogger().addHandler(handler)

        logger.info(f"Logging configured with level {self.log_level}")
