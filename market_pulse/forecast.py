"""
Short-horizon price forecasting.

This module handles:
- Three statistical predictors (linear trend, Holt smoothing, autoregression)
- A weighted ensemble that survives individual predictor failures
- Per-asset model caching and forecast generation with a confidence band
"""

import math
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from .config import Config, ForecastConfig
from .exceptions import ModelError
from .utils import utc_now

logger = logging.getLogger(__name__)


class Predictor:
    """Base predictor: ``fit`` on a price series, then ``predict`` the next steps."""

    name = "predictor"

    def fit(self, prices: Sequence[float]):
        raise NotImplementedError

    def predict(self, steps: int) -> List[float]:
        raise NotImplementedError


class LinearRegressionPredictor(Predictor):
    """Closed-form least squares of price on the sample index."""

    name = "linear_regression"

    def __init__(self):
        self.slope = 0.0
        self.intercept = 0.0
        self.n = 0
        self.r2 = None

    def fit(self, prices: Sequence[float]):
        n = len(prices)
        if n < 2:
            raise ModelError("Linear regression needs at least two points")

        x = np.arange(n, dtype=float)
        y = np.asarray(prices, dtype=float)
        denominator = n * (x ** 2).sum() - x.sum() ** 2
        if denominator == 0:
            raise ModelError("Degenerate design matrix")

        self.slope = float((n * (x * y).sum() - x.sum() * y.sum()) / denominator)
        self.intercept = float((y.sum() - self.slope * x.sum()) / n)
        self.n = n

        fitted = self.intercept + self.slope * x
        ss_res = float(((y - fitted) ** 2).sum())
        ss_tot = float(((y - y.mean()) ** 2).sum())
        self.r2 = 1.0 if ss_tot == 0 else 1.0 - ss_res / ss_tot

    def predict(self, steps: int) -> List[float]:
        return [self.intercept + self.slope * (self.n + i) for i in range(steps)]


class ExponentialSmoothingPredictor(Predictor):
    """
    Holt double exponential smoothing.

    Level starts at the first price and trend at the mean first difference;
    the k-step forecast is ``level + k * trend``.
    """

    name = "exponential_smoothing"

    def __init__(self, alpha: float = 0.3, beta: float = 0.1):
        self.alpha = alpha
        self.beta = beta
        self.level = None
        self.trend = None

    def fit(self, prices: Sequence[float]):
        if len(prices) < 2:
            raise ModelError("Exponential smoothing needs at least two points")

        values = np.asarray(prices, dtype=float)
        level = float(values[0])
        trend = float(np.diff(values).mean())

        for value in values[1:]:
            previous_level = level
            level = self.alpha * value + (1 - self.alpha) * (level + trend)
            trend = self.beta * (level - previous_level) + (1 - self.beta) * trend

        self.level = level
        self.trend = trend

    def predict(self, steps: int) -> List[float]:
        if self.level is None:
            raise ModelError("Model is not trained")
        return [self.level + k * self.trend for k in range(1, steps + 1)]


def solve_gauss_jordan(matrix: np.ndarray, rhs: np.ndarray) -> np.ndarray:
    """
    Solve ``matrix @ x = rhs`` by Gauss-Jordan elimination with partial pivoting.

    A pivot smaller than 1e-10 is bumped by 1e-5 instead of failing.
    """
    size = matrix.shape[0]
    augmented = np.hstack([matrix.astype(float), rhs.reshape(-1, 1).astype(float)])

    for i in range(size):
        max_row = i + int(np.argmax(np.abs(augmented[i:, i])))
        if max_row != i:
            augmented[[i, max_row]] = augmented[[max_row, i]]

        if abs(augmented[i, i]) < 1e-10:
            logger.debug("Near-singular matrix, regularising pivot")
            augmented[i, i] += 1e-5

        augmented[i] = augmented[i] / augmented[i, i]

        for j in range(size):
            if j != i:
                augmented[j] -= augmented[j, i] * augmented[i]

    return augmented[:, size]


class AutoRegressionPredictor(Predictor):
    """
    AR(p) on z-scored prices, fitted by ridge-regularised least squares.

    The order drops to ``max(1, n // 3)`` on short series. Forecasts are fed
    back as the newest lag for multi-step prediction.
    """

    name = "autoregression"

    def __init__(self, order: int = 3, ridge: float = 1e-6):
        self.order = order
        self.ridge = ridge
        self.effective_order = order
        self.intercept = 0.0
        self.coefficients: List[float] = []
        self.mean = 0.0
        self.scale = 1.0
        self.history: List[float] = []

    def fit(self, prices: Sequence[float]):
        n = len(prices)
        if n < 2:
            raise ModelError("Autoregression needs at least two points")

        order = min(self.order, max(1, n // 3))
        values = np.asarray(prices, dtype=float)
        self.mean = float(values.mean())
        std = float(values.std())
        self.scale = std if std > 1e-10 else 1.0
        z = (values - self.mean) / self.scale

        rows = [[1.0] + [z[t - j] for j in range(1, order + 1)] for t in range(order, n)]
        if not rows:
            raise ModelError("Not enough points for the lag matrix")
        X = np.asarray(rows)
        y = z[order:]

        xtx = X.T @ X + self.ridge * np.eye(order + 1)
        xty = X.T @ y
        solution = solve_gauss_jordan(xtx, xty)
        if not np.all(np.isfinite(solution)):
            raise ModelError("Autoregression solution is not finite")

        self.effective_order = order
        self.intercept = float(solution[0])
        self.coefficients = [float(c) for c in solution[1:]]
        self.history = z[-order:].tolist()

    def predict(self, steps: int) -> List[float]:
        if not self.coefficients:
            raise ModelError("Model is not trained")

        lags = list(reversed(self.history))
        predictions = []
        for _ in range(steps):
            z_next = self.intercept + sum(c * lag for c, lag in zip(self.coefficients, lags))
            lags = [z_next] + lags[:-1]
            predictions.append(z_next * self.scale + self.mean)
        return predictions


def redistribute_weights(base: Dict[str, float], failed: Sequence[str]) -> Dict[str, float]:
    """Share the weight of failed predictors equally among the survivors."""
    survivors = [name for name in base if name not in failed]
    if not survivors:
        return {}

    freed = sum(base[name] for name in failed if name in base)
    weights = {name: base[name] + freed / len(survivors) for name in survivors}
    total = sum(weights.values())
    if total <= 0:
        return {name: 1.0 / len(survivors) for name in survivors}
    return {name: w / total for name, w in weights.items()}


@dataclass
class EnsembleForecast:
    points: List[float]
    weights: Dict[str, float]
    failed_predictors: List[str]
    flat_line: bool = False


class ModelEnsemble:
    """Weighted combination of the three predictors."""

    def __init__(self, settings: Optional[ForecastConfig] = None, predictors: Optional[List[Predictor]] = None):
        settings = settings or ForecastConfig()
        self.predictors: List[Predictor] = predictors or [
            LinearRegressionPredictor(),
            ExponentialSmoothingPredictor(settings.smoothing_alpha, settings.smoothing_beta),
            AutoRegressionPredictor(settings.ar_order, settings.ridge),
        ]
        # Predictors without a configured weight get an equal share
        names = [p.name for p in self.predictors]
        self.base_weights = {
            name: settings.weights.get(name, 1.0 / len(names)) for name in names
        }
        self.failed: List[str] = []
        self.trained_on = 0

    def train(self, prices: Sequence[float]) -> Dict[str, float]:
        """Fit every predictor; returns the effective weights."""
        self.failed = []
        for predictor in self.predictors:
            try:
                predictor.fit(prices)
            except ModelError as e:
                logger.warning(f"{predictor.name} failed to train: {str(e)}")
                self.failed.append(predictor.name)
        self.trained_on = len(prices)
        return redistribute_weights(self.base_weights, self.failed)

    def forecast(self, prices: Sequence[float], steps: int) -> EnsembleForecast:
        """
        Weighted forecast for ``steps`` points after ``prices``.

        A predictor that fails or returns non-finite values drops out for
        this forecast. With every predictor out, the last price is repeated.
        """
        if not prices:
            raise ModelError("Cannot forecast an empty series")
        if self.trained_on != len(prices):
            self.train(prices)

        failed = list(self.failed)
        outputs: Dict[str, List[float]] = {}
        for predictor in self.predictors:
            if predictor.name in failed:
                continue
            try:
                values = predictor.predict(steps)
            except ModelError as e:
                logger.warning(f"{predictor.name} failed to predict: {str(e)}")
                failed.append(predictor.name)
                continue
            if len(values) != steps or not all(math.isfinite(v) for v in values):
                logger.warning(f"{predictor.name} produced non-finite output")
                failed.append(predictor.name)
                continue
            outputs[predictor.name] = values

        weights = redistribute_weights(self.base_weights, failed)
        if not outputs:
            last = max(0.0, float(prices[-1]))
            return EnsembleForecast([last] * steps, {}, failed, flat_line=True)

        points = [
            max(0.0, sum(weights[name] * outputs[name][i] for name in outputs))
            for i in range(steps)
        ]
        return EnsembleForecast(points, weights, failed)

    def r2_score(self) -> Optional[float]:
        for predictor in self.predictors:
            if isinstance(predictor, LinearRegressionPredictor) and predictor.name not in self.failed:
                return predictor.r2
        return None


@dataclass
class ForecastModel:
    asset_id: str
    ensemble: ModelEnsemble
    trained_at: datetime
    prices: List[float]
    timestamps: List[datetime]
    data_points: int
    synthetic: bool = False


@dataclass
class PriceForecast:
    asset_id: str
    points: List[Tuple[datetime, float]]
    lower: List[Tuple[datetime, float]]
    upper: List[Tuple[datetime, float]]
    weights: Dict[str, float]
    failed_predictors: List[str]
    synthetic: bool
    flat_line: bool
    r2_score: Optional[float]
    data_points: int
    generated_at: datetime = field(default_factory=utc_now)


def daily_closes(df: pd.DataFrame) -> pd.DataFrame:
    """Last price per UTC day from a ``timestamp``/``price`` frame."""
    if df.empty:
        return df
    daily = (
        df.set_index("timestamp")["price"]
        .resample("1D")
        .last()
        .dropna()
        .reset_index()
    )
    return daily


class ForecastService:
    """
    Trains and caches one ensemble per asset.

    Models older than ``staleness_seconds`` are retrained from the
    provider's historical chart on the next request.
    """

    def __init__(self, config: Config, fetcher=None, clock: Callable[[], datetime] = utc_now):
        self.settings = config.forecast
        self.fetcher = fetcher
        self.clock = clock
        self.models: Dict[str, ForecastModel] = {}

    def synthetic_series(self, base_price: float, now: datetime) -> Tuple[List[float], List[datetime]]:
        """Daily series growing by ``synthetic_growth`` per step, ending before ``now``."""
        length = self.settings.synthetic_length
        prices = [base_price * (1 + self.settings.synthetic_growth) ** i for i in range(length)]
        timestamps = [now - timedelta(days=length - i) for i in range(length)]
        return prices, timestamps

    def train(
        self,
        asset_id: str,
        prices: Sequence[float],
        timestamps: Sequence[datetime],
        synthetic: bool = False,
        base_price: Optional[float] = None
    ) -> ForecastModel:
        """
        Train an ensemble for ``asset_id``.

        With fewer than ``min_history`` points a synthetic series is used
        instead and the model is flagged ``synthetic``.
        """
        now = self.clock()
        prices = list(prices)
        timestamps = list(timestamps)

        if len(prices) < self.settings.min_history:
            base = prices[-1] if prices else (base_price or self.settings.default_base_price)
            logger.warning(
                f"Only {len(prices)} points for {asset_id}, training on synthetic series from {base}"
            )
            prices, timestamps = self.synthetic_series(base, now)
            synthetic = True

        ensemble = ModelEnsemble(self.settings)
        ensemble.train(prices)

        model = ForecastModel(
            asset_id=asset_id,
            ensemble=ensemble,
            trained_at=now,
            prices=prices,
            timestamps=timestamps,
            data_points=len(prices),
            synthetic=synthetic,
        )
        self.models[asset_id] = model
        return model

    def forecast(self, model: ForecastModel, horizon_days: int = 7) -> PriceForecast:
        """Daily forecast for ``horizon_days`` with a symmetric confidence band."""
        if horizon_days < 1:
            raise ValueError("horizon_days must be >= 1")

        result = model.ensemble.forecast(model.prices, horizon_days)
        last_timestamp = model.timestamps[-1] if model.timestamps else self.clock()
        dates = [last_timestamp + timedelta(days=i) for i in range(1, horizon_days + 1)]
        band = self.settings.band_pct

        points = list(zip(dates, result.points))
        return PriceForecast(
            asset_id=model.asset_id,
            points=points,
            lower=[(d, p * (1 - band)) for d, p in points],
            upper=[(d, p * (1 + band)) for d, p in points],
            weights=result.weights,
            failed_predictors=result.failed_predictors,
            synthetic=model.synthetic,
            flat_line=result.flat_line,
            r2_score=model.ensemble.r2_score(),
            data_points=model.data_points,
            generated_at=self.clock(),
        )

    def is_stale(self, model: ForecastModel) -> bool:
        age = (self.clock() - model.trained_at).total_seconds()
        return age > self.settings.staleness_seconds

    def _cached_price(self, asset_id: str) -> Optional[float]:
        if self.fetcher is None:
            return None
        row = self.fetcher.get_cached_asset(asset_id) or {}
        # Detail payloads nest prices per currency under market_data
        price = row.get("current_price", (row.get("market_data") or {}).get("current_price"))
        if isinstance(price, dict):
            price = price.get(self.fetcher.config.api.vs_currency)
        return price if isinstance(price, (int, float)) else None

    async def get_model(self, asset_id: str) -> ForecastModel:
        model = self.models.get(asset_id)
        if model is not None and not self.is_stale(model):
            return model

        prices: List[float] = []
        timestamps: List[datetime] = []
        if self.fetcher is not None:
            df = daily_closes(await self.fetcher.fetch_price_frame(asset_id, self.settings.history_days))
            if not df.empty:
                prices = df["price"].astype(float).tolist()
                timestamps = [ts.to_pydatetime() for ts in df["timestamp"]]

        logger.info(f"Training forecast model for {asset_id} on {len(prices)} daily points")
        return self.train(asset_id, prices, timestamps, base_price=self._cached_price(asset_id))

    async def get_forecast(self, asset_id: str, horizon_days: int = 7) -> PriceForecast:
        """Forecast from the cached model, retraining when missing or stale."""
        model = await self.get_model(asset_id)
        return self.forecast(model, horizon_days)

    def clear(self, asset_id: Optional[str] = None):
        if asset_id is None:
            self.models.clear()
        else:
            self.models.pop(asset_id, None)
