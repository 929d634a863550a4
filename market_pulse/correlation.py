"""
Cross-asset correlation.

Prices of each pair are aligned by nearest timestamp within a tolerance,
then compared with the Pearson coefficient.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from .config import Config
from .exceptions import InsufficientDataError
from .models import CorrelationEdge, PricePoint
from .storage import MarketRepository
from .utils import utc_now

logger = logging.getLogger(__name__)


def pearson(x: Sequence[float], y: Sequence[float]) -> float:
    """Pearson coefficient rounded to 4 places; 0.0 when undefined."""
    if len(x) != len(y):
        raise ValueError("series must have equal length")
    if len(x) < 2:
        return 0.0

    xs = np.asarray(x, dtype=float)
    ys = np.asarray(y, dtype=float)
    dx = xs - xs.mean()
    dy = ys - ys.mean()
    denominator = np.sqrt((dx ** 2).sum() * (dy ** 2).sum())
    if denominator == 0 or not np.isfinite(denominator):
        return 0.0

    value = float((dx * dy).sum() / denominator)
    return round(min(1.0, max(-1.0, value)), 4)


def _to_frame(points: List[PricePoint], column: str) -> pd.DataFrame:
    df = pd.DataFrame({
        "timestamp": pd.to_datetime([p.timestamp for p in points], utc=True),
        column: [p.price for p in points],
    })
    return df.sort_values("timestamp").reset_index(drop=True)


def align_series(
    left: List[PricePoint],
    right: List[PricePoint],
    tolerance_seconds: float
) -> Tuple[List[float], List[float]]:
    """
    Pair each left point with the nearest right point within the tolerance.

    A right point is used at most once; ``tolerance_seconds=0`` gives exact
    timestamp matching.
    """
    if not left or not right:
        return [], []

    left_df = _to_frame(left, "left")
    right_df = _to_frame(right, "right")
    right_df["right_timestamp"] = right_df["timestamp"]

    merged = pd.merge_asof(
        left_df,
        right_df,
        on="timestamp",
        direction="nearest",
        tolerance=pd.Timedelta(seconds=tolerance_seconds),
    )
    merged = merged.dropna(subset=["right"])
    merged = merged.drop_duplicates(subset=["right_timestamp"], keep="first")
    return merged["left"].tolist(), merged["right"].tolist()


@dataclass
class CorrelationMatrix:
    asset_ids: List[str]
    matrix: Dict[str, Dict[str, float]]
    edges: List[CorrelationEdge]
    timeframe: str
    timestamp: datetime
    excluded: List[str] = field(default_factory=list)

    def get(self, a: str, b: str) -> float:
        return self.matrix[a][b]


class CorrelationEngine:
    """Pairwise price correlation over a trailing window."""

    def __init__(self, config: Config, repository: MarketRepository):
        self.settings = config.correlation
        self.repository = repository

    @staticmethod
    def timeframe_label(window_days: int) -> str:
        return f"{window_days}d"

    async def calculate_correlations(
        self,
        asset_ids: List[str],
        window_days: Optional[int] = None,
        now: Optional[datetime] = None
    ) -> CorrelationMatrix:
        """
        Build and persist the correlation matrix for ``asset_ids``.

        Raises:
            ValueError: fewer than two distinct ids were given
            InsufficientDataError: fewer than two ids have price history
        """
        unique_ids = list(dict.fromkeys(asset_ids))
        if len(unique_ids) < 2:
            raise ValueError("At least two assets are required for correlation")

        now = now or utc_now()
        window_days = window_days or self.settings.window_days
        start = now - timedelta(days=window_days)

        histories: Dict[str, List[PricePoint]] = {}
        excluded = []
        for asset_id in unique_ids:
            points = await self.repository.get_price_history(asset_id, start=start, end=now)
            if points:
                histories[asset_id] = points
            else:
                excluded.append(asset_id)

        if len(histories) < 2:
            raise InsufficientDataError(
                f"Need price history for at least two assets, got {len(histories)}"
            )
        if excluded:
            logger.warning(f"No price history for {excluded}, excluded from correlation")

        ids = list(histories)
        matrix: Dict[str, Dict[str, float]] = {a: {a: 1.0} for a in ids}
        timeframe = self.timeframe_label(window_days)
        edges = []

        for i, a in enumerate(ids):
            for b in ids[i + 1:]:
                x, y = align_series(histories[a], histories[b], self.settings.alignment_tolerance_seconds)
                value = pearson(x, y)
                matrix[a][b] = value
                matrix[b][a] = value
                edges.append(CorrelationEdge.canonical(a, b, value, timeframe, now))

        await self.repository.add_correlations(edges)
        logger.info(f"Calculated {len(edges)} correlations over {timeframe} for {len(ids)} assets")

        return CorrelationMatrix(
            asset_ids=ids,
            matrix=matrix,
            edges=edges,
            timeframe=timeframe,
            timestamp=now,
            excluded=excluded,
        )

    async def get_latest_correlations(self, timeframe: Optional[str] = None, limit: int = 100) -> List[CorrelationEdge]:
        timeframe = timeframe or self.timeframe_label(self.settings.window_days)
        return await self.repository.get_correlations(timeframe=timeframe, limit=limit)

    async def get_correlations_for_asset(
        self,
        asset_id: str,
        timeframe: Optional[str] = None,
        limit: int = 100
    ) -> List[CorrelationEdge]:
        timeframe = timeframe or self.timeframe_label(self.settings.window_days)
        return await self.repository.get_correlations(timeframe=timeframe, asset_id=asset_id, limit=limit)
