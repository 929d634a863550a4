"""
Persistence interface.

``MarketRepository`` is the narrow surface the analytics components write
to and read from. ``InMemoryRepository`` implements it for tests and
single-process deployments.
"""

import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime
from typing import Dict, List, Optional

from .models import (
    Alert,
    AlertKind,
    AlertSeverity,
    Anomaly,
    Asset,
    AssetSnapshot,
    CorrelationEdge,
    IndicatorKind,
    IndicatorValue,
    PricePoint,
)

logger = logging.getLogger(__name__)


class MarketRepository(ABC):
    """Abstract persistence collaborator. Implementations raise PersistenceError."""

    # Assets

    @abstractmethod
    async def upsert_asset(self, snapshot: AssetSnapshot, now: datetime) -> bool:
        """Insert or fully update an asset. Returns True when it was new."""

    @abstractmethod
    async def get_asset(self, asset_id: str) -> Optional[Asset]:
        pass

    @abstractmethod
    async def list_assets(self, limit: Optional[int] = None) -> List[Asset]:
        """Assets ordered by market-cap rank, unranked last."""

    # Price history

    @abstractmethod
    async def add_price_point(self, point: PricePoint):
        pass

    @abstractmethod
    async def get_price_history(
        self,
        asset_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None
    ) -> List[PricePoint]:
        """Points for one asset in ``[start, end]``, oldest first."""

    @abstractmethod
    async def prune_price_history(self, before: datetime) -> int:
        """Delete points older than ``before``; returns how many were removed."""

    @abstractmethod
    async def prune_analytics(self, before: datetime) -> int:
        """Delete indicator values, anomalies, alerts and correlation edges older than ``before``."""

    # Indicators

    @abstractmethod
    async def add_indicator_values(self, values: List[IndicatorValue]):
        pass

    @abstractmethod
    async def get_indicator_values(
        self,
        asset_id: str,
        kind: Optional[IndicatorKind] = None,
        limit: Optional[int] = None
    ) -> List[IndicatorValue]:
        """Newest first."""

    # Anomalies

    @abstractmethod
    async def add_anomalies(self, anomalies: List[Anomaly]):
        pass

    @abstractmethod
    async def get_anomalies(
        self,
        asset_id: Optional[str] = None,
        limit: Optional[int] = None
    ) -> List[Anomaly]:
        """Newest first."""

    # Alerts

    @abstractmethod
    async def add_alert(self, alert: Alert):
        pass

    @abstractmethod
    async def get_alerts(
        self,
        asset_id: Optional[str] = None,
        severity: Optional[AlertSeverity] = None,
        kind: Optional[AlertKind] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: Optional[int] = None
    ) -> List[Alert]:
        """Newest first, filtered by every argument that is set."""

    # Correlations

    @abstractmethod
    async def add_correlations(self, edges: List[CorrelationEdge]):
        pass

    @abstractmethod
    async def get_correlations(
        self,
        timeframe: Optional[str] = None,
        asset_id: Optional[str] = None,
        limit: Optional[int] = None
    ) -> List[CorrelationEdge]:
        """Newest first."""


def _newest_first(items, limit: Optional[int]):
    ordered = sorted(items, key=lambda item: item.timestamp, reverse=True)
    return ordered[:limit] if limit is not None else ordered


class InMemoryRepository(MarketRepository):
    """Dict and list backed repository."""

    def __init__(self):
        self.assets: Dict[str, Asset] = {}
        self.prices: Dict[str, List[PricePoint]] = defaultdict(list)
        self.indicators: List[IndicatorValue] = []
        self.anomalies: List[Anomaly] = []
        self.alerts: List[Alert] = []
        self.correlations: List[CorrelationEdge] = []

    async def upsert_asset(self, snapshot: AssetSnapshot, now: datetime) -> bool:
        existing = self.assets.get(snapshot.id)
        if existing is None:
            asset = Asset.from_snapshot(snapshot)
            asset.created_at = now
            asset.updated_at = now
            self.assets[snapshot.id] = asset
            return True
        self.assets[snapshot.id] = existing.refresh(snapshot, now)
        return False

    async def get_asset(self, asset_id: str) -> Optional[Asset]:
        return self.assets.get(asset_id)

    async def list_assets(self, limit: Optional[int] = None) -> List[Asset]:
        ordered = sorted(
            self.assets.values(),
            key=lambda a: (a.market_cap_rank is None, a.market_cap_rank or 0, a.id)
        )
        return ordered[:limit] if limit is not None else ordered

    async def add_price_point(self, point: PricePoint):
        self.prices[point.asset_id].append(point)

    async def get_price_history(
        self,
        asset_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None
    ) -> List[PricePoint]:
        points = [
            p for p in self.prices.get(asset_id, [])
            if (start is None or p.timestamp >= start) and (end is None or p.timestamp <= end)
        ]
        return sorted(points, key=lambda p: p.timestamp)

    async def prune_price_history(self, before: datetime) -> int:
        removed = 0
        for asset_id, points in self.prices.items():
            kept = [p for p in points if p.timestamp >= before]
            removed += len(points) - len(kept)
            self.prices[asset_id] = kept
        return removed

    async def prune_analytics(self, before: datetime) -> int:
        removed = 0
        for name in ("indicators", "anomalies", "alerts", "correlations"):
            records = getattr(self, name)
            kept = [r for r in records if r.timestamp >= before]
            removed += len(records) - len(kept)
            setattr(self, name, kept)
        return removed

    async def add_indicator_values(self, values: List[IndicatorValue]):
        self.indicators.extend(values)

    async def get_indicator_values(
        self,
        asset_id: str,
        kind: Optional[IndicatorKind] = None,
        limit: Optional[int] = None
    ) -> List[IndicatorValue]:
        matches = [
            v for v in self.indicators
            if v.asset_id == asset_id and (kind is None or v.kind == kind)
        ]
        return _newest_first(matches, limit)

    async def add_anomalies(self, anomalies: List[Anomaly]):
        self.anomalies.extend(anomalies)

    async def get_anomalies(
        self,
        asset_id: Optional[str] = None,
        limit: Optional[int] = None
    ) -> List[Anomaly]:
        matches = [a for a in self.anomalies if asset_id is None or a.asset_id == asset_id]
        return _newest_first(matches, limit)

    async def add_alert(self, alert: Alert):
        self.alerts.append(alert)

    async def get_alerts(
        self,
        asset_id: Optional[str] = None,
        severity: Optional[AlertSeverity] = None,
        kind: Optional[AlertKind] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: Optional[int] = None
    ) -> List[Alert]:
        matches = [
            a for a in self.alerts
            if (asset_id is None or a.asset_id == asset_id)
            and (severity is None or a.severity == severity)
            and (kind is None or a.kind == kind)
            and (start is None or a.timestamp >= start)
            and (end is None or a.timestamp <= end)
        ]
        return _newest_first(matches, limit)

    async def add_correlations(self, edges: List[CorrelationEdge]):
        self.correlations.extend(edges)

    async def get_correlations(
        self,
        timeframe: Optional[str] = None,
        asset_id: Optional[str] = None,
        limit: Optional[int] = None
    ) -> List[CorrelationEdge]:
        matches = [
            e for e in self.correlations
            if (timeframe is None or e.timeframe == timeframe)
            and (asset_id is None or asset_id in (e.asset_a, e.asset_b))
        ]
        return _newest_first(matches, limit)
