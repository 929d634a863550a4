"""
Service wiring and periodic scheduling.

This module handles:
- Constructing and connecting every component
- Repeating timers for market fetch, detailed fetch, analysis and retention
- Start/stop/close lifecycle
"""

import time
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from .alerts import AlertService
from .config import Config
from .correlation import CorrelationEngine, CorrelationMatrix
from .events import (
    AnomaliesDetected,
    CorrelationsUpdate,
    EventBus,
    MarketUpdate,
    TechnicalIndicatorsUpdate,
)
from .exceptions import DataShapeError, InsufficientDataError
from .fetcher import MARKETS_KEY, FetchState, MarketDataFetcher
from .forecast import ForecastService
from .indicators import IndicatorEngine
from .models import AssetSnapshot
from .monitor.metrics import MetricsCollector
from .processor import MarketProcessor, ProcessingResult
from .storage import InMemoryRepository, MarketRepository
from .utils import utc_now
from .validators import parse_coin_detail, parse_market_list

logger = logging.getLogger(__name__)


class MarketPipeline:
    """
    Owns every service and runs the periodic cycles.

    Cycle work is spawned as separate tasks so a slow cycle never delays
    its timer. ``stop`` cancels only the timers; ``close`` also waits for
    the spawned work and releases the HTTP session.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        repository: Optional[MarketRepository] = None,
        fetcher: Optional[MarketDataFetcher] = None,
        bus: Optional[EventBus] = None,
        metrics: Optional[MetricsCollector] = None
    ):
        self.config = config or Config()
        self.metrics = metrics if metrics is not None else MetricsCollector()
        self.repository = repository if repository is not None else InMemoryRepository()
        self.bus = bus if bus is not None else EventBus()
        self.fetcher = fetcher if fetcher is not None else MarketDataFetcher(self.config, metrics=self.metrics)

        self.processor = MarketProcessor(self.config, self.repository, self.bus, self.metrics)
        self.indicators = IndicatorEngine(self.config, self.repository)
        self.correlations = CorrelationEngine(self.config, self.repository)
        self.alerts = AlertService(self.config, self.repository, self.bus)
        self.forecasts = ForecastService(self.config, self.fetcher)

        self.bus.subscribe(AnomaliesDetected, self._on_anomalies)

        self._timers: List[asyncio.Task] = []
        self._work: Set[asyncio.Task] = set()
        self.running = False
        self.last_cycle: Dict[str, datetime] = {}

    async def _on_anomalies(self, event: AnomaliesDetected):
        await self.alerts.process_anomalies(event.anomalies, event.timestamp)

    # Cycles

    async def run_market_cycle(self) -> Optional[ProcessingResult]:
        """Fetch the market list, process it and broadcast the snapshot."""
        rows = await self.fetcher.fetch_market_data()
        stale = self.fetcher.get_state(MARKETS_KEY) == FetchState.FALLBACK
        snapshot = parse_market_list(rows)
        self.last_cycle["market"] = utc_now()

        if not snapshot:
            logger.warning("Market cycle produced no assets")
            return None

        result = await self.processor.process(snapshot)
        await self.bus.publish(MarketUpdate(assets=snapshot, stale=stale, timestamp=result.processed_at))
        return result

    async def run_detailed_cycle(self) -> List[AssetSnapshot]:
        """Refresh per-asset detail for the top assets."""
        details = []
        for payload in await self.fetcher.fetch_detailed_data():
            try:
                details.append(parse_coin_detail(payload, self.config.api.vs_currency))
            except DataShapeError as e:
                logger.warning(f"Skipping malformed detail payload: {str(e)}")
        self.last_cycle["detailed"] = utc_now()
        return details

    async def analyze_asset(self, asset_id: str, now: Optional[datetime] = None) -> bool:
        """Indicators, interpretation and indicator alerts for one asset."""
        try:
            result = await self.indicators.calculate(asset_id, now=now)
            interpretation = self.indicators.interpret(result)
            await self.bus.publish(TechnicalIndicatorsUpdate(
                asset_id=asset_id,
                indicators=self.indicators.to_values(result),
                overall_signal=interpretation.overall,
                strength=interpretation.strength,
                interpretation=interpretation,
                timestamp=result.timestamp,
            ))
            await self.alerts.from_indicator_signal(asset_id, result, interpretation, now)
            return True
        except InsufficientDataError as e:
            logger.debug(f"Skipping analysis for {asset_id}: {str(e)}")
        except Exception as e:
            logger.error(f"Analysis failed for {asset_id}: {str(e)}")
            self.metrics.record_error("analysis", type(e).__name__, {"asset_id": asset_id})
        return False

    async def run_analysis_cycle(self, now: Optional[datetime] = None) -> Optional[CorrelationMatrix]:
        """Analyse the top assets concurrently, then correlate them."""
        assets = await self.repository.list_assets(limit=self.config.fetch.analysis_asset_count)
        asset_ids = [asset.id for asset in assets]
        self.last_cycle["analysis"] = utc_now()
        if not asset_ids:
            logger.info("No assets to analyse yet")
            return None

        outcomes = await asyncio.gather(*(self.analyze_asset(a, now) for a in asset_ids))
        logger.info(f"Analysed {sum(outcomes)}/{len(asset_ids)} assets")

        if len(asset_ids) < 2:
            return None

        try:
            matrix = await self.correlations.calculate_correlations(asset_ids, now=now)
        except InsufficientDataError as e:
            logger.info(f"Skipping correlations: {str(e)}")
            return None
        except Exception as e:
            logger.error(f"Correlation calculation failed: {str(e)}")
            self.metrics.record_error("correlation", type(e).__name__)
            return None

        await self.bus.publish(CorrelationsUpdate(
            asset_ids=matrix.asset_ids,
            edges=matrix.edges,
            timeframe=matrix.timeframe,
            timestamp=matrix.timestamp,
        ))
        return matrix

    async def run_retention(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Prune old price history, old analytics records and expired cache entries."""
        now = now or utc_now()
        retention = self.config.retention
        removed_points = await self.repository.prune_price_history(
            now - timedelta(days=retention.price_history_days)
        )
        removed_records = await self.repository.prune_analytics(
            now - timedelta(days=retention.analytics_days)
        )
        removed_keys = await self.fetcher.cache.cleanup_expired()
        self.last_cycle["retention"] = utc_now()
        logger.info(
            f"Retention removed {removed_points} price points, {removed_records} analytics records "
            f"and {len(removed_keys)} cache entries"
        )
        return {
            "price_points": removed_points,
            "analytics_records": removed_records,
            "cache_entries": len(removed_keys),
        }

    # Lifecycle

    def _spawn(self, name: str, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._work.add(task)
        started = time.monotonic()

        def _done(t: asyncio.Task):
            self._work.discard(t)
            if t.cancelled():
                return
            if t.exception() is not None:
                logger.error(f"{name} cycle failed: {t.exception()}")
                self.metrics.record_error("pipeline", type(t.exception()).__name__, {"cycle": name})
            else:
                self.metrics.record_cycle(name, time.monotonic() - started)

        task.add_done_callback(_done)
        return task

    async def _timer(self, name: str, interval: float, cycle: Callable[[], Awaitable[Any]]):
        while True:
            self._spawn(name, cycle())
            await asyncio.sleep(interval)

    async def start(self):
        """Restore the cache and start every periodic timer."""
        if self.running:
            return
        self.config.validate()
        await self.fetcher.cache.load()

        schedule = [
            ("market", self.config.fetch.fetch_interval, self.run_market_cycle),
            ("detailed", self.config.fetch.detailed_fetch_interval, self.run_detailed_cycle),
            ("analysis", self.config.fetch.analysis_interval, self.run_analysis_cycle),
            ("retention", self.config.retention.interval_seconds, self.run_retention),
        ]
        self._timers = [
            asyncio.ensure_future(self._timer(name, interval, cycle))
            for name, interval, cycle in schedule
        ]
        self.running = True
        logger.info("Market pipeline started")

    async def stop(self):
        """Cancel the timers; cycles already running are left to finish."""
        for timer in self._timers:
            timer.cancel()
        await asyncio.gather(*self._timers, return_exceptions=True)
        self._timers = []
        self.running = False
        logger.info("Market pipeline stopped")

    async def close(self):
        """Stop, wait for outstanding cycle work and close the fetcher."""
        await self.stop()
        if self._work:
            await asyncio.gather(*list(self._work), return_exceptions=True)
        await self.fetcher.close()
        logger.info("Market pipeline closed")

    async def __aenter__(self) -> 'MarketPipeline':
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    def get_status(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "pending_work": len(self._work),
            "last_cycle": {name: ts.isoformat() for name, ts in self.last_cycle.items()},
            "fetcher": self.fetcher.get_metrics(),
            "metrics": self.metrics.get_all_metrics(),
        }
