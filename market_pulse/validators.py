"""
Provider response validation.

This module handles:
- Shape checks on market list, coin detail and chart payloads
- Normalisation into the shared data model
- Quality checks on price history frames
"""

import math
import pandas as pd
import numpy as np
import logging
from typing import Dict, List, Any, Optional
from dataclasses import dataclass, field

from .exceptions import DataShapeError
from .models import AssetSnapshot
from .utils import parse_datetime

logger = logging.getLogger(__name__)

CHART_SERIES = ("prices", "market_caps", "total_volumes")

EMPTY_CHART: Dict[str, list] = {name: [] for name in CHART_SERIES}


@dataclass
class ValidationResult:
    """Result of data validation."""
    valid: bool = True
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    metrics: Dict[str, Any] = field(default_factory=dict)
    score: float = 1.0  # 0.0 to 1.0


def _to_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _to_int(value: Any) -> Optional[int]:
    number = _to_float(value)
    return int(number) if number is not None else None


def _require_identity(item: Any, where: str) -> Dict[str, Any]:
    if not isinstance(item, dict):
        raise DataShapeError(f"{where}: expected an object, got {type(item).__name__}")
    for key in ("id", "symbol", "name"):
        if not isinstance(item.get(key), str) or not item.get(key):
            raise DataShapeError(f"{where}: missing or invalid '{key}'")
    return item


def parse_market_entry(item: Any) -> AssetSnapshot:
    """Normalise one market list row."""
    item = _require_identity(item, "market entry")
    return AssetSnapshot(
        id=item["id"],
        symbol=item["symbol"],
        name=item["name"],
        image=item.get("image") if isinstance(item.get("image"), str) else None,
        current_price=_to_float(item.get("current_price")),
        market_cap=_to_float(item.get("market_cap")),
        market_cap_rank=_to_int(item.get("market_cap_rank")),
        total_volume=_to_float(item.get("total_volume")),
        high_24h=_to_float(item.get("high_24h")),
        low_24h=_to_float(item.get("low_24h")),
        price_change_24h=_to_float(item.get("price_change_24h")),
        price_change_percentage_24h=_to_float(item.get("price_change_percentage_24h")),
        circulating_supply=_to_float(item.get("circulating_supply")),
        total_supply=_to_float(item.get("total_supply")),
        max_supply=_to_float(item.get("max_supply")),
        last_updated=parse_datetime(item.get("last_updated")),
    )


def validate_market_list(payload: Any) -> List[Dict[str, Any]]:
    """
    Check a market list payload.

    Rows that fail identity checks are dropped with a warning; a payload
    that is not a list at all raises DataShapeError.
    """
    if not isinstance(payload, list):
        raise DataShapeError(f"market list: expected a list, got {type(payload).__name__}")

    valid_rows = []
    for index, item in enumerate(payload):
        try:
            _require_identity(item, f"market entry {index}")
        except DataShapeError as e:
            logger.warning(f"Dropping malformed market row: {str(e)}")
            continue
        valid_rows.append(item)
    return valid_rows


def parse_market_list(payload: Any) -> List[AssetSnapshot]:
    """Normalise a validated market list into snapshots."""
    return [parse_market_entry(item) for item in validate_market_list(payload)]


def _currency_value(market_data: Dict[str, Any], name: str, vs_currency: str) -> Optional[float]:
    value = market_data.get(name)
    if isinstance(value, dict):
        return _to_float(value.get(vs_currency))
    return _to_float(value)


def validate_coin_detail(payload: Any) -> Dict[str, Any]:
    item = _require_identity(payload, "coin detail")
    market_data = item.get("market_data")
    if market_data is not None and not isinstance(market_data, dict):
        raise DataShapeError("coin detail: 'market_data' must be an object")
    return item


def parse_coin_detail(payload: Any, vs_currency: str = "usd") -> AssetSnapshot:
    """
    Normalise a per-asset detail payload.

    Currency-keyed figures (``{"usd": 1.0}``) are reduced to ``vs_currency``.
    """
    item = validate_coin_detail(payload)
    market_data = item.get("market_data") or {}
    image = item.get("image")
    if isinstance(image, dict):
        image = image.get("large") or image.get("small") or image.get("thumb")

    return AssetSnapshot(
        id=item["id"],
        symbol=item["symbol"],
        name=item["name"],
        image=image if isinstance(image, str) else None,
        current_price=_currency_value(market_data, "current_price", vs_currency),
        market_cap=_currency_value(market_data, "market_cap", vs_currency),
        market_cap_rank=_to_int(item.get("market_cap_rank", market_data.get("market_cap_rank"))),
        total_volume=_currency_value(market_data, "total_volume", vs_currency),
        high_24h=_currency_value(market_data, "high_24h", vs_currency),
        low_24h=_currency_value(market_data, "low_24h", vs_currency),
        price_change_24h=_to_float(market_data.get("price_change_24h")),
        price_change_percentage_24h=_to_float(market_data.get("price_change_percentage_24h")),
        circulating_supply=_to_float(market_data.get("circulating_supply")),
        total_supply=_to_float(market_data.get("total_supply")),
        max_supply=_to_float(market_data.get("max_supply")),
        last_updated=parse_datetime(item.get("last_updated")),
    )


def validate_market_chart(payload: Any) -> Dict[str, list]:
    """
    Check a historical chart payload.

    ``prices`` must be a list of ``[timestamp_ms, value]`` pairs. The
    market cap and volume series are optional and default to empty.
    """
    if not isinstance(payload, dict):
        raise DataShapeError(f"market chart: expected an object, got {type(payload).__name__}")
    if not isinstance(payload.get("prices"), list):
        raise DataShapeError("market chart: 'prices' must be a list")

    chart = {}
    for name in CHART_SERIES:
        series = payload.get(name) or []
        if not isinstance(series, list):
            raise DataShapeError(f"market chart: '{name}' must be a list")
        for point in series:
            if not isinstance(point, (list, tuple)) or len(point) != 2:
                raise DataShapeError(f"market chart: malformed point in '{name}': {point!r}")
        chart[name] = [list(point) for point in series]
    return chart


def chart_to_frame(chart: Dict[str, list]) -> pd.DataFrame:
    """
    Convert a chart payload into a frame indexed by position.

    Columns: ``timestamp`` (UTC), ``price``, ``market_cap``, ``volume``.
    Points with a non-numeric price are dropped; rows are sorted by time.
    """
    columns = ["timestamp", "price", "market_cap", "volume"]
    prices = chart.get("prices") or []
    if not prices:
        return pd.DataFrame(columns=columns)

    df = pd.DataFrame(prices, columns=["ts", "price"])
    for source, column in (("market_caps", "market_cap"), ("total_volumes", "volume")):
        series = chart.get(source) or []
        if not series:
            df[column] = np.nan
            continue
        extra = pd.DataFrame(series, columns=["ts", column]).drop_duplicates("ts")
        df = df.merge(extra, on="ts", how="left")

    df["price"] = pd.to_numeric(df["price"], errors="coerce")
    df["market_cap"] = pd.to_numeric(df["market_cap"], errors="coerce")
    df["volume"] = pd.to_numeric(df["volume"], errors="coerce")
    df["timestamp"] = pd.to_datetime(pd.to_numeric(df["ts"], errors="coerce"), unit="ms", utc=True)

    df = df.dropna(subset=["timestamp", "price"])
    df = df.sort_values("timestamp").reset_index(drop=True)
    return df[columns]


def validate_price_frame(df: pd.DataFrame, max_jump: float = 0.5) -> ValidationResult:
    """
    Quality checks on a price history frame.

    Args:
        df: Frame with ``timestamp`` and ``price`` columns
        max_jump: Relative change between consecutive points flagged as extreme

    Returns:
        ValidationResult with errors, warnings and a 0..1 score
    """
    result = ValidationResult()

    if df.empty:
        result.valid = False
        result.errors.append("DataFrame is empty")
        result.score = _calculate_score(result)
        return result

    missing_cols = [col for col in ("timestamp", "price") if col not in df.columns]
    if missing_cols:
        result.valid = False
        result.errors.append(f"Missing required columns: {missing_cols}")
        result.score = _calculate_score(result)
        return result

    non_positive = df["price"] <= 0
    if non_positive.any():
        result.errors.append(f"Non-positive prices: {int(non_positive.sum())} rows")
        result.valid = False
        result.metrics["non_positive_prices"] = int(non_positive.sum())

    duplicates = df.duplicated(subset=["timestamp"])
    if duplicates.any():
        result.warnings.append(f"Duplicate timestamps: {int(duplicates.sum())}")
        result.metrics["duplicates"] = int(duplicates.sum())

    if len(df) > 1:
        changes = df["price"].pct_change().replace([np.inf, -np.inf], np.nan).dropna()
        extreme = changes.abs() > max_jump
        if extreme.any():
            result.warnings.append(f"Extreme price moves in {int(extreme.sum())} points")
            result.metrics["extreme_moves"] = int(extreme.sum())

    result.metrics["rows"] = len(df)
    result.score = _calculate_score(result)
    return result


def _calculate_score(result: ValidationResult) -> float:
    """Calculate data quality score (0.0 to 1.0)."""
    score = 1.0

    if result.errors:
        score -= min(0.5, len(result.errors) * 0.1)

    if result.warnings:
        score -= min(0.3, len(result.warnings) * 0.05)

    return max(0.0, score)
