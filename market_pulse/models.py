"""
Data model shared by every component.

Records are plain dataclasses. Alerts and indicator parameter records are
frozen so they cannot change after creation.
"""

from dataclasses import dataclass, field, asdict, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Union

from .utils import utc_now


class Signal(str, Enum):
    BUY = "buy"
    SELL = "sell"
    NEUTRAL = "neutral"


class AnomalyKind(str, Enum):
    PRICE = "price"
    VOLUME = "volume"


class AlertSeverity(str, Enum):
    """Alert severity levels."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class AlertKind(str, Enum):
    PRICE_INCREASE = "price_increase"
    PRICE_DECREASE = "price_decrease"
    PRICE_SURGE = "price_surge"
    PRICE_DROP = "price_drop"
    VOLUME_CHANGE = "volume_change"
    VOLUME_SPIKE = "volume_spike"
    RSI_OVERBOUGHT = "rsi_overbought"
    RSI_OVERSOLD = "rsi_oversold"
    MACD_BULLISH_CROSS = "macd_bullish_cross"
    MACD_BEARISH_CROSS = "macd_bearish_cross"
    SMA_BULLISH_CROSS = "sma_bullish_cross"
    SMA_BEARISH_CROSS = "sma_bearish_cross"
    STRONG_BUY_SIGNAL = "strong_buy_signal"
    STRONG_SELL_SIGNAL = "strong_sell_signal"


class IndicatorKind(str, Enum):
    SMA = "SMA"
    RSI = "RSI"
    MACD_LINE = "MACD_line"
    MACD_SIGNAL = "MACD_signal"
    MACD_HISTOGRAM = "MACD_histogram"


@dataclass
class AssetSnapshot:
    """One asset's field set from a provider market list."""
    id: str
    symbol: str
    name: str
    current_price: Optional[float] = None
    market_cap: Optional[float] = None
    market_cap_rank: Optional[int] = None
    total_volume: Optional[float] = None
    high_24h: Optional[float] = None
    low_24h: Optional[float] = None
    price_change_24h: Optional[float] = None
    price_change_percentage_24h: Optional[float] = None
    circulating_supply: Optional[float] = None
    total_supply: Optional[float] = None
    max_supply: Optional[float] = None
    last_updated: Optional[datetime] = None
    image: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        if self.last_updated is not None:
            data["last_updated"] = self.last_updated.isoformat()
        return data


@dataclass
class Asset(AssetSnapshot):
    """Stored asset row. Upserted every ingestion cycle, never deleted."""
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @classmethod
    def from_snapshot(cls, snapshot: AssetSnapshot) -> 'Asset':
        return cls(**asdict(snapshot))

    def refresh(self, snapshot: AssetSnapshot, now: datetime) -> 'Asset':
        """Full-field update from a newer snapshot, keeping ``created_at``."""
        return replace(self, **asdict(snapshot), updated_at=now)


@dataclass
class PricePoint:
    asset_id: str
    price: float
    market_cap: Optional[float]
    volume: Optional[float]
    timestamp: datetime


@dataclass(frozen=True)
class SmaParams:
    period: int


@dataclass(frozen=True)
class RsiParams:
    period: int
    condition: str


@dataclass(frozen=True)
class MacdParams:
    fast_period: int
    slow_period: int
    signal_period: int
    crossover: Optional[str] = None


IndicatorParams = Union[SmaParams, RsiParams, MacdParams]

_PARAMS_FOR_KIND = {
    IndicatorKind.SMA: SmaParams,
    IndicatorKind.RSI: RsiParams,
    IndicatorKind.MACD_LINE: MacdParams,
    IndicatorKind.MACD_SIGNAL: MacdParams,
    IndicatorKind.MACD_HISTOGRAM: MacdParams,
}


@dataclass
class IndicatorValue:
    """A persisted indicator reading; ``params`` must match ``kind``."""
    asset_id: str
    kind: IndicatorKind
    value: float
    params: IndicatorParams
    timestamp: datetime

    def __post_init__(self):
        expected = _PARAMS_FOR_KIND[self.kind]
        if not isinstance(self.params, expected):
            raise TypeError(
                f"{self.kind.value} requires {expected.__name__}, got {type(self.params).__name__}"
            )


@dataclass
class Anomaly:
    asset_id: str
    kind: AnomalyKind
    old_value: float
    new_value: float
    percentage_change: float
    description: str
    timestamp: datetime


@dataclass(frozen=True)
class Alert:
    """An alert instance. Immutable once created."""
    id: str
    asset_id: str
    kind: AlertKind
    message: str
    severity: AlertSeverity
    timestamp: datetime
    old_value: Optional[float] = None
    new_value: Optional[float] = None
    percentage_change: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind.value
        data["severity"] = self.severity.value
        data["timestamp"] = self.timestamp.isoformat()
        return data


@dataclass(frozen=True)
class CorrelationEdge:
    asset_a: str
    asset_b: str
    value: float
    timeframe: str
    timestamp: datetime

    @classmethod
    def canonical(cls, first: str, second: str, value: float,
                  timeframe: str, timestamp: datetime) -> 'CorrelationEdge':
        """Edge with the lexicographically smaller id first."""
        a, b = sorted((first, second))
        return cls(a, b, value, timeframe, timestamp)
