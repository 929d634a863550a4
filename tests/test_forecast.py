"""
Tests for the forecast predictors, ensemble and service.
"""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import numpy as np
import pandas as pd
import pytest

from market_pulse.exceptions import ModelError
from market_pulse.forecast import (
    AutoRegressionPredictor,
    ExponentialSmoothingPredictor,
    ForecastService,
    LinearRegressionPredictor,
    ModelEnsemble,
    Predictor,
    daily_closes,
    redistribute_weights,
    solve_gauss_jordan,
)

from conftest import BASE_TIME, FakeDateClock


class FailingPredictor(Predictor):
    def __init__(self, name, fail_on="fit"):
        self.name = name
        self.fail_on = fail_on

    def fit(self, prices):
        if self.fail_on == "fit":
            raise ModelError("cannot fit")

    def predict(self, steps):
        if self.fail_on == "predict":
            raise ModelError("cannot predict")
        return [float("nan")] * steps


class TestPredictors:
    """Tests for the individual predictors."""

    def test_linear_regression(self):
        model = LinearRegressionPredictor()
        model.fit([1, 2, 3])

        assert model.slope == pytest.approx(1.0)
        assert model.intercept == pytest.approx(1.0)
        assert model.r2 == pytest.approx(1.0)
        assert model.predict(2) == [pytest.approx(4.0), pytest.approx(5.0)]

    def test_linear_regression_needs_two_points(self):
        with pytest.raises(ModelError):
            LinearRegressionPredictor().fit([1.0])

    def test_holt_follows_linear_trend(self):
        model = ExponentialSmoothingPredictor(alpha=0.3, beta=0.1)
        model.fit([10, 20, 30, 40, 50])

        assert model.level == pytest.approx(50.0)
        assert model.trend == pytest.approx(10.0)
        assert model.predict(2) == [pytest.approx(60.0), pytest.approx(70.0)]

    def test_autoregression_order_shrinks_on_short_series(self):
        model = AutoRegressionPredictor(order=3)
        model.fit([1.0, 2.0, 1.5, 2.5, 2.0])

        assert model.effective_order == 1
        assert len(model.predict(3)) == 3

    def test_autoregression_on_flat_series(self):
        model = AutoRegressionPredictor(order=3)
        model.fit([100.0] * 30)

        assert model.predict(5) == [pytest.approx(100.0)] * 5

    def test_gauss_jordan(self):
        solution = solve_gauss_jordan(np.array([[2.0, 1.0], [1.0, 3.0]]), np.array([3.0, 5.0]))
        assert solution.tolist() == [pytest.approx(0.8), pytest.approx(1.4)]

    def test_gauss_jordan_singular_is_regularised(self):
        solution = solve_gauss_jordan(np.zeros((2, 2)), np.zeros(2))
        assert np.all(np.isfinite(solution))


class TestEnsemble:
    """Tests for weighting and degradation."""

    def test_redistribute_weights(self):
        base = {"linear_regression": 0.3, "exponential_smoothing": 0.3, "autoregression": 0.4}

        weights = redistribute_weights(base, ["linear_regression"])

        assert weights == {
            "exponential_smoothing": pytest.approx(0.45),
            "autoregression": pytest.approx(0.55),
        }
        assert redistribute_weights(base, list(base)) == {}

    def test_flat_history_forecasts_flat(self):
        result = ModelEnsemble().forecast([100.0] * 30, 10)

        assert result.points == [pytest.approx(100.0)] * 10
        assert result.failed_predictors == []
        assert sum(result.weights.values()) == pytest.approx(1.0)

    @pytest.mark.parametrize("fail_on", ["fit", "predict", "output"])
    def test_failed_predictor_weight_redistributed(self, fail_on):
        ensemble = ModelEnsemble(predictors=[
            LinearRegressionPredictor(),
            ExponentialSmoothingPredictor(),
            FailingPredictor("autoregression", fail_on),
        ])

        result = ensemble.forecast([1, 2, 3, 4, 5, 6, 7, 8, 9, 10], 3)

        assert result.failed_predictors == ["autoregression"]
        assert set(result.weights) == {"linear_regression", "exponential_smoothing"}
        assert sum(result.weights.values()) == pytest.approx(1.0)
        assert all(np.isfinite(p) for p in result.points)

    def test_all_predictors_failing_gives_last_price(self):
        ensemble = ModelEnsemble(predictors=[FailingPredictor("a"), FailingPredictor("b")])

        result = ensemble.forecast([5.0, 6.0, 7.0], 4)

        assert result.flat_line is True
        assert result.points == [7.0] * 4
        assert result.weights == {}

    def test_forecast_never_negative(self):
        ensemble = ModelEnsemble(predictors=[LinearRegressionPredictor()])

        result = ensemble.forecast([100 - 10 * i for i in range(10)], 5)

        assert result.points == [0.0] * 5

    def test_empty_series_rejected(self):
        with pytest.raises(ModelError):
            ModelEnsemble().forecast([], 3)


def price_frame(days, start_price=100.0, points_per_day=4):
    timestamps = pd.date_range(pd.Timestamp("2024-02-01", tz="UTC"), periods=days * points_per_day,
                               freq=pd.Timedelta(hours=24 // points_per_day))
    prices = [start_price + i * 0.25 for i in range(len(timestamps))]
    return pd.DataFrame({"timestamp": timestamps, "price": prices})


@pytest.fixture
def date_clock():
    return FakeDateClock(BASE_TIME)


@pytest.fixture
def fetcher(config):
    fetcher = MagicMock()
    fetcher.config = config
    fetcher.fetch_price_frame = AsyncMock(return_value=price_frame(20))
    fetcher.get_cached_asset.return_value = None
    return fetcher


class TestForecastService:
    """Tests for training, caching and forecast output."""

    def test_daily_closes(self):
        daily = daily_closes(price_frame(3))
        assert len(daily) == 3
        assert daily["price"].tolist() == [100.75, 101.75, 102.75]

    def test_short_history_uses_synthetic_series(self, config, date_clock):
        service = ForecastService(config, clock=date_clock)

        model = service.train("bitcoin", [50.0, 51.0], [BASE_TIME, BASE_TIME])

        assert model.synthetic is True
        assert model.data_points == 30
        assert model.prices[0] == 51.0
        assert model.prices[1] == pytest.approx(51.0 * 1.01)
        assert model.timestamps[-1] == BASE_TIME - timedelta(days=1)

    def test_forecast_points_and_band(self, config, date_clock):
        service = ForecastService(config, clock=date_clock)
        timestamps = [BASE_TIME - timedelta(days=30 - i) for i in range(30)]
        model = service.train("bitcoin", [100.0] * 30, timestamps)

        forecast = service.forecast(model, horizon_days=7)

        assert len(forecast.points) == 7
        assert forecast.points[0][0] == timestamps[-1] + timedelta(days=1)
        for (_, price), (_, low), (_, high) in zip(forecast.points, forecast.lower, forecast.upper):
            assert price == pytest.approx(100.0)
            assert low == pytest.approx(90.0)
            assert high == pytest.approx(110.0)
        assert forecast.synthetic is False
        assert forecast.r2_score == pytest.approx(1.0)

    def test_horizon_must_be_positive(self, config, date_clock):
        service = ForecastService(config, clock=date_clock)
        model = service.train("bitcoin", [100.0] * 30, [BASE_TIME] * 30)
        with pytest.raises(ValueError):
            service.forecast(model, horizon_days=0)

    @pytest.mark.asyncio
    async def test_model_cached_until_stale(self, config, fetcher, date_clock):
        service = ForecastService(config, fetcher, clock=date_clock)

        first = await service.get_forecast("bitcoin", 3)
        await service.get_forecast("bitcoin", 3)
        assert fetcher.fetch_price_frame.await_count == 1
        assert first.data_points == 20
        assert first.synthetic is False

        date_clock.advance(hours=13)
        await service.get_forecast("bitcoin", 3)
        assert fetcher.fetch_price_frame.await_count == 2
        fetcher.fetch_price_frame.assert_awaited_with("bitcoin", config.forecast.history_days)

    @pytest.mark.asyncio
    async def test_missing_history_uses_cached_price(self, config, fetcher, date_clock):
        fetcher.fetch_price_frame = AsyncMock(return_value=pd.DataFrame(columns=["timestamp", "price"]))
        fetcher.get_cached_asset.return_value = {"id": "bitcoin", "current_price": 50.0}
        service = ForecastService(config, fetcher, clock=date_clock)

        forecast = await service.get_forecast("bitcoin", 3)

        assert forecast.synthetic is True
        assert service.models["bitcoin"].prices[0] == 50.0

    @pytest.mark.asyncio
    async def test_missing_history_uses_cached_detail_price(self, config, fetcher, date_clock):
        fetcher.fetch_price_frame = AsyncMock(return_value=pd.DataFrame(columns=["timestamp", "price"]))
        fetcher.get_cached_asset.return_value = {
            "id": "bitcoin",
            "market_data": {"current_price": {"usd": 42000.0, "eur": 39000.0}},
        }
        service = ForecastService(config, fetcher, clock=date_clock)

        await service.get_forecast("bitcoin", 3)

        assert service.models["bitcoin"].prices[0] == 42000.0

    @pytest.mark.asyncio
    async def test_no_price_anywhere_uses_default_base(self, config, date_clock):
        service = ForecastService(config, clock=date_clock)

        forecast = await service.get_forecast("bitcoin", 2)

        assert forecast.synthetic is True
        assert service.models["bitcoin"].prices[0] == 100.0

    def test_clear(self, config, date_clock):
        service = ForecastService(config, clock=date_clock)
        service.train("bitcoin", [1.0] * 30, [BASE_TIME] * 30)
        service.train("ethereum", [1.0] * 30, [BASE_TIME] * 30)

        service.clear("bitcoin")
        assert list(service.models) == ["ethereum"]
        service.clear()
        assert service.models == {}
