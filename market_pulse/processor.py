"""
Market snapshot processing.

This module handles:
- Upserting assets and appending price history
- Price and volume anomaly detection between cycles
- Processing statistics
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from .config import Config
from .events import EventBus, AnomaliesDetected
from .models import Anomaly, AnomalyKind, AssetSnapshot, PricePoint
from .monitor.metrics import MetricsCollector
from .storage import MarketRepository
from .utils import percent_change, utc_now

logger = logging.getLogger(__name__)


@dataclass
class ProcessingResult:
    """Outcome of one ingestion cycle."""
    updated_count: int = 0
    new_count: int = 0
    anomalies: List[Anomaly] = field(default_factory=list)
    failed_assets: List[str] = field(default_factory=list)
    processed_at: datetime = field(default_factory=utc_now)


class MarketProcessor:
    """
    Applies market snapshots to the repository and flags abrupt moves.

    The previous price and volume of every asset are held in memory and
    overwritten each cycle, so the first cycle after start never reports
    anomalies.
    """

    def __init__(
        self,
        config: Config,
        repository: MarketRepository,
        bus: Optional[EventBus] = None,
        metrics: Optional[MetricsCollector] = None
    ):
        self.repository = repository
        self.bus = bus
        self.metrics = metrics if metrics is not None else MetricsCollector()
        self.price_threshold = config.anomaly.price_threshold_pct
        self.volume_threshold = config.anomaly.volume_threshold_pct

        self.previous_values: Dict[str, Tuple[Optional[float], Optional[float]]] = {}

        self.cycles = 0
        self.price_points_written = 0
        self.anomalies_found = 0
        self.last_processed_at: Optional[datetime] = None

    async def process(self, snapshot: List[AssetSnapshot], now: Optional[datetime] = None) -> ProcessingResult:
        """
        Process one market snapshot.

        Args:
            snapshot: Assets from the latest market list
            now: Cycle timestamp, defaults to the current UTC time

        Returns:
            ProcessingResult with counts, anomalies and failed asset ids
        """
        now = now or utc_now()
        result = ProcessingResult(processed_at=now)

        for asset in snapshot:
            try:
                is_new = await self.repository.upsert_asset(asset, now)
                if asset.current_price is not None:
                    await self.repository.add_price_point(PricePoint(
                        asset_id=asset.id,
                        price=asset.current_price,
                        market_cap=asset.market_cap,
                        volume=asset.total_volume,
                        timestamp=now,
                    ))
                    self.price_points_written += 1
            except Exception as e:
                logger.error(f"Failed to persist {asset.id}: {str(e)}")
                self.metrics.record_error("processor", type(e).__name__, {"asset_id": asset.id})
                result.failed_assets.append(asset.id)
                continue

            if is_new:
                result.new_count += 1
            else:
                result.updated_count += 1

            result.anomalies.extend(self.detect_anomalies(asset, now))

        if result.anomalies:
            try:
                await self.repository.add_anomalies(result.anomalies)
            except Exception as e:
                logger.error(f"Failed to persist {len(result.anomalies)} anomalies: {str(e)}")
                self.metrics.record_error("processor", type(e).__name__)

            if self.bus is not None:
                await self.bus.publish(AnomaliesDetected(anomalies=list(result.anomalies), timestamp=now))

        self.cycles += 1
        self.anomalies_found += len(result.anomalies)
        self.last_processed_at = now

        logger.info(
            f"Processed {len(snapshot)} assets: {result.new_count} new, "
            f"{result.updated_count} updated, {len(result.anomalies)} anomalies, "
            f"{len(result.failed_assets)} failed"
        )
        return result

    def detect_anomalies(self, asset: AssetSnapshot, now: datetime) -> List[Anomaly]:
        """Compare with the previous cycle and overwrite the stored values."""
        anomalies = []
        previous = self.previous_values.get(asset.id)

        if previous is not None:
            previous_price, previous_volume = previous

            price_change = percent_change(previous_price, asset.current_price)
            if price_change is not None and abs(price_change) > self.price_threshold:
                anomalies.append(Anomaly(
                    asset_id=asset.id,
                    kind=AnomalyKind.PRICE,
                    old_value=previous_price,
                    new_value=asset.current_price,
                    percentage_change=price_change,
                    description=(
                        f"Significant price change for {asset.name} "
                        f"({asset.symbol.upper()}): {price_change:+.2f}%"
                    ),
                    timestamp=now,
                ))

            volume_change = percent_change(previous_volume, asset.total_volume)
            if volume_change is not None and abs(volume_change) > self.volume_threshold:
                anomalies.append(Anomaly(
                    asset_id=asset.id,
                    kind=AnomalyKind.VOLUME,
                    old_value=previous_volume,
                    new_value=asset.total_volume,
                    percentage_change=volume_change,
                    description=(
                        f"Significant volume change for {asset.name} "
                        f"({asset.symbol.upper()}): {volume_change:+.2f}%"
                    ),
                    timestamp=now,
                ))

        self.previous_values[asset.id] = (asset.current_price, asset.total_volume)
        return anomalies

    async def get_latest_anomalies(self, limit: int = 10) -> List[Anomaly]:
        return await self.repository.get_anomalies(limit=limit)

    async def get_processing_stats(self) -> Dict[str, Any]:
        """Repository counts plus in-process cycle counters."""
        assets = await self.repository.list_assets()
        return {
            "assets": len(assets),
            "cycles": self.cycles,
            "price_points_written": self.price_points_written,
            "anomalies_found": self.anomalies_found,
            "tracked_assets": len(self.previous_values),
            "last_processed_at": self.last_processed_at.isoformat() if self.last_processed_at else None,
        }
