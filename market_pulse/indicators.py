"""
Technical indicator calculation.

This module handles:
- SMA, Wilder RSI and MACD over stored price history
- Persisting current indicator values as typed records
- Turning indicator results into buy/sell/neutral votes
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence

import numpy as np
import pandas as pd

from .config import Config
from .exceptions import InsufficientDataError
from .models import IndicatorKind, IndicatorValue, MacdParams, RsiParams, Signal, SmaParams
from .storage import MarketRepository
from .utils import utc_now

logger = logging.getLogger(__name__)

OVERBOUGHT = "overbought"
OVERSOLD = "oversold"
NEUTRAL = "neutral"


def sma(prices: Sequence[float], period: int) -> List[float]:
    """Simple moving average; one value per full window."""
    if period < 1:
        raise ValueError("period must be >= 1")
    if len(prices) < period:
        return []
    rolling = pd.Series(prices, dtype=float).rolling(window=period).mean()
    return rolling.iloc[period - 1:].tolist()


def ema(values: Sequence[float], period: int) -> List[float]:
    """
    Exponential moving average seeded with the SMA of the first ``period`` values.

    The result starts at index ``period - 1`` of the input.
    """
    if period < 1:
        raise ValueError("period must be >= 1")
    if len(values) < period:
        return []
    k = 2.0 / (period + 1)
    current = float(np.mean(values[:period]))
    result = [current]
    for value in values[period:]:
        current = value * k + current * (1 - k)
        result.append(current)
    return result


def _rsi_from_averages(avg_gain: float, avg_loss: float) -> float:
    if avg_loss == 0:
        return 50.0 if avg_gain == 0 else 100.0
    rs = avg_gain / avg_loss
    return 100.0 - 100.0 / (1.0 + rs)


def rsi(prices: Sequence[float], period: int = 14) -> List[float]:
    """
    Relative Strength Index with Wilder smoothing.

    The first averages are plain means of the first ``period`` changes;
    later ones use ``(prev * (period - 1) + current) / period``.
    """
    if period < 1:
        raise ValueError("period must be >= 1")
    if len(prices) <= period:
        return []

    changes = np.diff(np.asarray(prices, dtype=float))
    gains = np.where(changes > 0, changes, 0.0)
    losses = np.where(changes < 0, -changes, 0.0)

    avg_gain = float(gains[:period].mean())
    avg_loss = float(losses[:period].mean())
    values = [_rsi_from_averages(avg_gain, avg_loss)]

    for gain, loss in zip(gains[period:], losses[period:]):
        avg_gain = (avg_gain * (period - 1) + gain) / period
        avg_loss = (avg_loss * (period - 1) + loss) / period
        values.append(_rsi_from_averages(avg_gain, avg_loss))

    return values


def crossover_signal(line: Sequence[float], signal: Sequence[float]) -> Signal:
    """Buy when ``line`` moves from at-or-below to above ``signal``; sell symmetrically."""
    if len(line) < 2 or len(signal) < 2:
        return Signal.NEUTRAL
    prev_line, cur_line = line[-2], line[-1]
    prev_signal, cur_signal = signal[-2], signal[-1]
    if prev_line <= prev_signal and cur_line > cur_signal:
        return Signal.BUY
    if prev_line >= prev_signal and cur_line < cur_signal:
        return Signal.SELL
    return Signal.NEUTRAL


@dataclass
class SmaResult:
    period: int
    values: List[float]

    @property
    def current(self) -> Optional[float]:
        return self.values[-1] if self.values else None


@dataclass
class RsiResult:
    period: int
    values: List[float]
    condition: Optional[str] = None

    @property
    def current(self) -> Optional[float]:
        return self.values[-1] if self.values else None


@dataclass
class MacdResult:
    fast_period: int
    slow_period: int
    signal_period: int
    line: List[float] = field(default_factory=list)
    signal: List[float] = field(default_factory=list)
    histogram: List[float] = field(default_factory=list)
    crossover: Signal = Signal.NEUTRAL

    @property
    def available(self) -> bool:
        return bool(self.signal)

    @property
    def current_line(self) -> Optional[float]:
        return self.line[-1] if self.available else None

    @property
    def current_signal(self) -> Optional[float]:
        return self.signal[-1] if self.signal else None

    @property
    def current_histogram(self) -> Optional[float]:
        return self.histogram[-1] if self.histogram else None

    @property
    def params(self) -> MacdParams:
        return MacdParams(self.fast_period, self.slow_period, self.signal_period, self.crossover.value)


def macd(prices: Sequence[float], fast: int = 12, slow: int = 26, signal_period: int = 9) -> MacdResult:
    """
    MACD line, signal line and histogram.

    Points are reported only where the signal line exists, so the three
    series share one length (``len(prices) - slow - signal_period + 2``).
    """
    if fast >= slow:
        raise ValueError("fast period must be shorter than slow period")

    result = MacdResult(fast, slow, signal_period)
    fast_ema = ema(prices, fast)
    slow_ema = ema(prices, slow)
    if not slow_ema:
        return result

    offset = slow - fast
    full_line = [f - s for f, s in zip(fast_ema[offset:], slow_ema)]
    signal = ema(full_line, signal_period)
    if not signal:
        return result

    line = full_line[signal_period - 1:]
    result.line = line
    result.signal = signal
    result.histogram = [m - s for m, s in zip(line, signal)]
    result.crossover = crossover_signal(line, signal)
    return result


@dataclass
class IndicatorResult:
    """All indicators computed for one asset."""
    asset_id: str
    timestamp: datetime
    data_points: int
    sma: Dict[int, SmaResult] = field(default_factory=dict)
    rsi: Optional[RsiResult] = None
    macd: Optional[MacdResult] = None


@dataclass
class Interpretation:
    overall: Signal
    strength: float
    buy_votes: int = 0
    sell_votes: int = 0
    neutral_votes: int = 0
    sma_trend: Optional[Signal] = None
    rsi_condition: Optional[str] = None
    rsi_signal: Optional[Signal] = None
    macd_signal: Optional[Signal] = None
    macd_histogram_trend: Optional[str] = None


def histogram_trend(histogram: Sequence[float]) -> Optional[str]:
    if len(histogram) < 2:
        return None
    previous, current = histogram[-2], histogram[-1]
    if current > 0 and current > previous:
        return "increasing_positive"
    if current > 0 and current < previous:
        return "decreasing_positive"
    if current < 0 and current < previous:
        return "decreasing_negative"
    if current < 0 and current > previous:
        return "increasing_negative"
    return NEUTRAL


class IndicatorEngine:
    """Computes, persists and interprets technical indicators."""

    def __init__(self, config: Config, repository: MarketRepository):
        self.settings = config.indicators
        self.repository = repository

    def rsi_condition(self, value: float) -> str:
        if value >= self.settings.rsi_overbought:
            return OVERBOUGHT
        if value <= self.settings.rsi_oversold:
            return OVERSOLD
        return NEUTRAL

    def compute(self, asset_id: str, prices: Sequence[float], now: Optional[datetime] = None) -> IndicatorResult:
        """Pure calculation over an ordered price series."""
        result = IndicatorResult(asset_id=asset_id, timestamp=now or utc_now(), data_points=len(prices))

        for period in sorted(set(self.settings.sma_periods)):
            result.sma[period] = SmaResult(period, sma(prices, period))

        rsi_values = rsi(prices, self.settings.rsi_period)
        result.rsi = RsiResult(
            self.settings.rsi_period,
            rsi_values,
            self.rsi_condition(rsi_values[-1]) if rsi_values else None,
        )

        result.macd = macd(prices, self.settings.macd_fast, self.settings.macd_slow, self.settings.macd_signal)
        return result

    async def calculate(
        self,
        asset_id: str,
        window_days: Optional[int] = None,
        now: Optional[datetime] = None
    ) -> IndicatorResult:
        """
        Compute indicators from the asset's stored history and persist them.

        Raises:
            InsufficientDataError: the asset has no price history in the window
        """
        now = now or utc_now()
        window_days = window_days or self.settings.window_days
        history = await self.repository.get_price_history(asset_id, start=now - timedelta(days=window_days))
        if not history:
            raise InsufficientDataError(f"No price history for {asset_id}")

        prices = [point.price for point in history]
        result = self.compute(asset_id, prices, now)

        values = self.to_values(result)
        if values:
            await self.repository.add_indicator_values(values)

        logger.debug(f"Indicators for {asset_id}: {len(values)} values from {len(prices)} points")
        return result

    def to_values(self, result: IndicatorResult) -> List[IndicatorValue]:
        """Typed records for every indicator that has a current value."""
        values = []
        for period, sma_result in result.sma.items():
            if sma_result.current is not None:
                values.append(IndicatorValue(
                    result.asset_id, IndicatorKind.SMA, sma_result.current,
                    SmaParams(period), result.timestamp
                ))

        if result.rsi is not None and result.rsi.current is not None:
            values.append(IndicatorValue(
                result.asset_id, IndicatorKind.RSI, result.rsi.current,
                RsiParams(result.rsi.period, result.rsi.condition), result.timestamp
            ))

        if result.macd is not None and result.macd.available:
            params = result.macd.params
            for kind, value in (
                (IndicatorKind.MACD_LINE, result.macd.current_line),
                (IndicatorKind.MACD_SIGNAL, result.macd.current_signal),
                (IndicatorKind.MACD_HISTOGRAM, result.macd.current_histogram),
            ):
                values.append(IndicatorValue(result.asset_id, kind, value, params, result.timestamp))

        return values

    def interpret(self, result: IndicatorResult) -> Interpretation:
        """
        Vote buy/sell/neutral from SMA trend, RSI condition and MACD crossover.

        The side with strictly more votes than each other side wins; anything
        else is neutral. Indicators without a current value do not vote.
        """
        votes = {Signal.BUY: 0, Signal.SELL: 0, Signal.NEUTRAL: 0}
        interpretation = Interpretation(overall=Signal.NEUTRAL, strength=0.0)

        # Trend compares the shortest and longest configured periods only
        periods = self.settings.sma_periods
        short_sma = result.sma.get(min(periods)) if periods else None
        long_sma = result.sma.get(max(periods)) if periods else None
        if (
            short_sma is not None and long_sma is not None
            and short_sma.period != long_sma.period
            and short_sma.current is not None and long_sma.current is not None
        ):
            short, long = short_sma.current, long_sma.current
            if short > long:
                interpretation.sma_trend = Signal.BUY
            elif short < long:
                interpretation.sma_trend = Signal.SELL
            else:
                interpretation.sma_trend = Signal.NEUTRAL
            votes[interpretation.sma_trend] += 1

        if result.rsi is not None and result.rsi.current is not None:
            interpretation.rsi_condition = result.rsi.condition
            interpretation.rsi_signal = {
                OVERBOUGHT: Signal.SELL,
                OVERSOLD: Signal.BUY,
            }.get(result.rsi.condition, Signal.NEUTRAL)
            votes[interpretation.rsi_signal] += 1

        if result.macd is not None and result.macd.available:
            interpretation.macd_signal = result.macd.crossover
            interpretation.macd_histogram_trend = histogram_trend(result.macd.histogram)
            votes[interpretation.macd_signal] += 1

        interpretation.buy_votes = votes[Signal.BUY]
        interpretation.sell_votes = votes[Signal.SELL]
        interpretation.neutral_votes = votes[Signal.NEUTRAL]

        total = sum(votes.values())
        if total == 0:
            return interpretation

        buy, sell, neutral = votes[Signal.BUY], votes[Signal.SELL], votes[Signal.NEUTRAL]
        if buy > sell and buy > neutral:
            interpretation.overall = Signal.BUY
        elif sell > buy and sell > neutral:
            interpretation.overall = Signal.SELL
        else:
            interpretation.overall = Signal.NEUTRAL
        interpretation.strength = votes[interpretation.overall] / total
        return interpretation

    async def get_latest_indicators(self, asset_id: str) -> List[IndicatorValue]:
        """Newest persisted value per indicator (per period for SMA)."""
        latest = {}
        for value in await self.repository.get_indicator_values(asset_id):
            key = (value.kind, value.params.period if value.kind == IndicatorKind.SMA else None)
            if key not in latest:
                latest[key] = value
        return list(latest.values())
