"""
Main fetching logic for market data retrieval.

This module handles:
- API communication with the market data provider
- Caching, request coalescing and rate limiting
- Retries with exponential backoff and provider failover
- Fallback to the last good payload when every attempt fails
"""

import copy
import asyncio
import time
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional
import aiohttp
import pandas as pd

from .config import Config
from .rate_limiter import RateLimiter
from .cache_manager import CacheManager
from .exceptions import (
    FetchError,
    TransientNetworkError,
    RateLimitError,
    NotFoundError,
    DataShapeError,
    classify_status,
)
from .validators import (
    EMPTY_CHART,
    validate_market_list,
    validate_coin_detail,
    validate_market_chart,
    chart_to_frame,
    validate_price_frame,
)
from .monitor.metrics import MetricsCollector
from .utils import retry

logger = logging.getLogger(__name__)

ApiCall = Callable[[str], Awaitable[Any]]

MARKETS_KEY = "markets"


class FetchState(str, Enum):
    IDLE = "idle"
    CACHE_HIT = "cache_hit"
    RATE_LIMITED = "rate_limited"
    QUEUED = "queued"
    FETCHING = "fetching"
    RETRYING = "retrying"
    SUCCESS = "success"
    EXHAUSTED = "exhausted"
    FALLBACK = "fallback"


def detail_key(asset_id: str) -> str:
    return f"detail:{asset_id}"


def history_key(asset_id: str, days: int) -> str:
    return f"history:{asset_id}:{days}"


class MarketDataFetcher:
    """
    Fetches market data through the cache, limiter and retry layers.

    Responsibilities:
    - Manage the HTTP session and provider failover
    - Serve fresh cache hits without touching the network
    - Coalesce concurrent misses on the same key
    - Fall back to stale or default payloads instead of raising
    - Track performance metrics and the last state per key
    """

    def __init__(
        self,
        config: Config,
        cache: Optional[CacheManager] = None,
        rate_limiter: Optional[RateLimiter] = None,
        metrics: Optional[MetricsCollector] = None,
        session: Optional[aiohttp.ClientSession] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    ):
        self.config = config
        self.metrics = metrics if metrics is not None else MetricsCollector()
        self.cache = cache if cache is not None else CacheManager.from_config(config, self.metrics)
        self.rate_limiter = (
            rate_limiter if rate_limiter is not None
            else RateLimiter.from_config(config, self.metrics)
        )
        self.sleep = sleep

        # Session management
        self.session = session
        self._owns_session = session is None

        self.provider_index = 0
        self.states: Dict[str, FetchState] = {}
        self._inflight: Dict[str, asyncio.Future] = {}

        # Performance tracking
        self.request_count = 0
        self.error_count = 0
        self.fallback_count = 0

        logger.info(f"Initialized MarketDataFetcher with provider {self.base_url}")

    @property
    def base_url(self) -> str:
        return self.config.api.base_urls[self.provider_index]

    def switch_provider(self) -> str:
        """Move to the next configured provider URL."""
        previous = self.base_url
        self.provider_index = (self.provider_index + 1) % len(self.config.api.base_urls)
        if self.base_url != previous:
            logger.warning(f"Switching provider: {previous} -> {self.base_url}")
        return self.base_url

    def get_state(self, key: str) -> FetchState:
        return self.states.get(key, FetchState.IDLE)

    def _set_state(self, key: str, state: FetchState):
        self.states[key] = state

    async def get_session(self) -> aiohttp.ClientSession:
        """Get or create the aiohttp session with proper configuration."""
        if self.session is None or self.session.closed:
            connector = aiohttp.TCPConnector(
                limit=self.config.api.connection_pool_size,
                ttl_dns_cache=300
            )

            timeout = aiohttp.ClientTimeout(total=self.config.api.timeout)

            headers = {"Accept": "application/json"}
            if self.config.api.api_key:
                headers["x-cg-demo-api-key"] = self.config.api.api_key

            self.session = aiohttp.ClientSession(
                connector=connector,
                timeout=timeout,
                headers=headers
            )
            self._owns_session = True

            logger.debug("Created new aiohttp session")

        return self.session

    async def close(self):
        """Close the aiohttp session and cleanup resources."""
        await self.rate_limiter.close()
        if self.session and not self.session.closed and self._owns_session:
            await self.session.close()
            logger.debug("Closed aiohttp session")
        self.session = None

    async def _get_json(
        self,
        base_url: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None
    ) -> Any:
        """
        Make a GET request and decode the JSON body.

        Raises:
            NotFoundError, RateLimitError, TransientNetworkError or
            DataShapeError depending on the failure
        """
        session = await self.get_session()
        url = f"{base_url}/{endpoint}"
        query = {k: v for k, v in (params or {}).items() if v is not None}
        request_timeout = aiohttp.ClientTimeout(total=timeout or self.config.api.timeout)

        start_time = time.time()
        self.request_count += 1

        try:
            async with session.get(url, params=query, timeout=request_timeout) as response:
                if response.status >= 400:
                    body = await response.text()
                    raise classify_status(
                        response.status,
                        f"HTTP {response.status} from {url}: {body[:200]}"
                    )
                try:
                    return await response.json(content_type=None)
                except ValueError as e:
                    raise DataShapeError(f"Invalid JSON from {url}: {str(e)}") from e
        except FetchError as e:
            self.error_count += 1
            self.metrics.record_error("fetcher", type(e).__name__, {"endpoint": endpoint})
            raise
        except asyncio.TimeoutError as e:
            self.error_count += 1
            self.metrics.record_error("fetcher", "timeout", {"endpoint": endpoint})
            raise TransientNetworkError(f"Timeout requesting {url}") from e
        except aiohttp.ClientError as e:
            self.error_count += 1
            self.metrics.record_error("fetcher", type(e).__name__, {"endpoint": endpoint})
            raise TransientNetworkError(f"Request to {url} failed: {str(e)}") from e
        finally:
            self.metrics.record_api_call(endpoint, time.time() - start_time, base_url)

    async def fetch(
        self,
        key: str,
        api_call: ApiCall,
        ttl: float,
        validate: Optional[Callable[[Any], Any]] = None,
        default: Any = None
    ) -> Any:
        """
        Fetch a payload through cache, limiter and retries.

        Args:
            key: Cache key
            api_call: Coroutine function taking the current provider base URL
            ttl: Freshness window in seconds
            validate: Optional shape check applied to the raw payload
            default: Returned when every attempt fails and nothing is cached

        Returns:
            Fresh, stale or default payload; never raises for provider errors
        """
        cached = self.cache.get_fresh(key)
        if cached is not None:
            self._set_state(key, FetchState.CACHE_HIT)
            return cached

        inflight = self._inflight.get(key)
        if inflight is not None:
            logger.debug(f"Joining in-flight fetch for {key}")
            return await asyncio.shield(inflight)

        task = asyncio.ensure_future(self._fetch_uncached(key, api_call, ttl, validate, default))
        self._inflight[key] = task
        task.add_done_callback(lambda _: self._inflight.pop(key, None))
        return await asyncio.shield(task)

    async def _admit(self, key: str):
        if self.rate_limiter.try_acquire():
            return
        self._set_state(key, FetchState.RATE_LIMITED)
        logger.info(f"Rate limit reached, queueing request for {key}")
        self._set_state(key, FetchState.QUEUED)
        await self.rate_limiter.acquire()

    def _on_retry(self, key: str, error: Exception, attempt: int):
        self._set_state(key, FetchState.RETRYING)
        self.metrics.record_retry(key, attempt)
        if isinstance(error, RateLimitError):
            self.rate_limiter.record_rate_limit()
            self.switch_provider()

    async def _fetch_uncached(
        self,
        key: str,
        api_call: ApiCall,
        ttl: float,
        validate: Optional[Callable[[Any], Any]],
        default: Any
    ) -> Any:
        retry_config = self.config.retry

        @retry(
            max_attempts=retry_config.max_retries + 1,
            delay=retry_config.base_delay,
            backoff_factor=retry_config.backoff_factor,
            exceptions=(FetchError,),
            giveup=(NotFoundError, DataShapeError),
            on_retry=lambda error, attempt: self._on_retry(key, error, attempt),
            sleep=self.sleep
        )
        async def attempt_fetch():
            await self._admit(key)
            self._set_state(key, FetchState.FETCHING)
            payload = await api_call(self.base_url)
            if payload is None:
                raise DataShapeError(f"Empty response for {key}")
            return validate(payload) if validate else payload

        try:
            payload = await attempt_fetch()
        except Exception as e:
            # Provider errors are reported through the fallback path only
            self._set_state(key, FetchState.EXHAUSTED)
            logger.error(f"Fetch for {key} failed: {type(e).__name__}: {str(e)}")
            return self._fallback(key, default)

        await self.cache.set(key, payload, ttl)
        self._set_state(key, FetchState.SUCCESS)
        return payload

    def _fallback(self, key: str, default: Any) -> Any:
        self._set_state(key, FetchState.FALLBACK)
        self.fallback_count += 1

        stale = self.cache.get_stale(key)
        if stale is not None:
            logger.warning(f"Serving stale cached data for {key}")
            self.metrics.record_fallback(key, "stale_cache")
            return stale

        logger.warning(f"No cached data for {key}, returning default")
        self.metrics.record_fallback(key, "default")
        return copy.deepcopy(default)

    async def fetch_market_data(self) -> List[Dict[str, Any]]:
        """
        Fetch the top assets ordered by market cap.

        Returns:
            List of validated market rows (possibly stale, or empty)
        """
        async def api_call(base_url: str):
            return await self._get_json(base_url, "coins/markets", {
                "vs_currency": self.config.api.vs_currency,
                "order": "market_cap_desc",
                "per_page": self.config.fetch.asset_count,
                "page": 1,
                "sparkline": "false",
                "price_change_percentage": "24h",
            })

        data = await self.fetch(
            MARKETS_KEY,
            api_call,
            self.config.cache.market_ttl,
            validate=validate_market_list,
            default=[]
        )
        logger.info(f"Market data: {len(data)} assets ({self.get_state(MARKETS_KEY).value})")
        return data

    async def fetch_coin_detail(self, asset_id: str) -> Dict[str, Any]:
        """Fetch the per-asset detail payload."""
        async def api_call(base_url: str):
            return await self._get_json(base_url, f"coins/{asset_id}", {
                "localization": "false",
                "tickers": "false",
                "market_data": "true",
                "community_data": "false",
                "developer_data": "false",
                "sparkline": "false",
            })

        return await self.fetch(
            detail_key(asset_id),
            api_call,
            self.config.cache.detail_ttl,
            validate=validate_coin_detail,
            default={}
        )

    async def fetch_detailed_data(self) -> List[Dict[str, Any]]:
        """
        Fetch detail for the top assets of the cached market list, one by one.

        Assets whose detail cannot be fetched and was never cached are skipped.
        """
        markets = self.get_cached_market_data()
        if not markets:
            markets = await self.fetch_market_data()

        asset_ids = [row["id"] for row in markets[:self.config.fetch.detail_count]]
        details = []

        for asset_id in asset_ids:
            detail = await self.fetch_coin_detail(asset_id)
            if detail:
                details.append(detail)
            else:
                logger.warning(f"No detail available for {asset_id}")

            if self.get_state(detail_key(asset_id)) != FetchState.CACHE_HIT:
                await self.sleep(self.config.fetch.detail_pause)

        logger.info(f"Detailed data: {len(details)}/{len(asset_ids)} assets")
        return details

    async def fetch_historical_data(self, asset_id: str, days: int = 7) -> Dict[str, list]:
        """
        Fetch the historical chart for an asset.

        Returns:
            ``{"prices": [...], "market_caps": [...], "total_volumes": [...]}``
            where each series holds ``[timestamp_ms, value]`` pairs
        """
        async def api_call(base_url: str):
            return await self._get_json(
                base_url,
                f"coins/{asset_id}/market_chart",
                {
                    "vs_currency": self.config.api.vs_currency,
                    "days": days,
                    "interval": "daily" if days > 90 else None,
                },
                timeout=self.config.api.historical_timeout
            )

        return await self.fetch(
            history_key(asset_id, days),
            api_call,
            self.config.cache.historical_ttl,
            validate=validate_market_chart,
            default=EMPTY_CHART
        )

    async def fetch_price_frame(self, asset_id: str, days: int) -> pd.DataFrame:
        """Historical chart as a frame, with quality issues logged."""
        df = chart_to_frame(await self.fetch_historical_data(asset_id, days))
        if df.empty:
            return df

        validation_result = validate_price_frame(df)
        if not validation_result.valid or validation_result.warnings:
            logger.warning(
                f"Price history issues for {asset_id}: "
                f"{validation_result.errors + validation_result.warnings}"
            )
        return df

    def get_cached_market_data(self) -> List[Dict[str, Any]]:
        """Last good market list regardless of age."""
        entry = self.cache.get_entry(MARKETS_KEY)
        return list(entry.payload) if entry else []

    def get_cached_asset(self, asset_id: str) -> Optional[Dict[str, Any]]:
        """Look an asset up in the cached market list, then in cached details."""
        for row in self.get_cached_market_data():
            if row.get("id") == asset_id:
                return row

        entry = self.cache.get_entry(detail_key(asset_id))
        return entry.payload if entry else None

    def get_metrics(self) -> Dict[str, Any]:
        """Get current performance metrics."""
        return {
            "provider": self.base_url,
            "requests": self.request_count,
            "errors": self.error_count,
            "fallbacks": self.fallback_count,
            "error_rate": self.error_count / max(1, self.request_count) * 100,
            "inflight": len(self._inflight),
            "rate_limiter": self.rate_limiter.get_metrics(),
            "cache": self.cache.get_metrics()
        }
