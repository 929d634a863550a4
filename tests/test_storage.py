"""
Tests for the in-memory repository.
"""

from datetime import timedelta

import pytest

from market_pulse.models import (
    Alert,
    AlertKind,
    AlertSeverity,
    Anomaly,
    AnomalyKind,
    CorrelationEdge,
    IndicatorKind,
    IndicatorValue,
    RsiParams,
    SmaParams,
)
from market_pulse.storage import MarketRepository

from conftest import make_snapshot, seed_prices


class TestAssets:
    """Tests for asset upserts and ordering."""

    def test_abstract_repository_cannot_be_instantiated(self):
        with pytest.raises(TypeError):
            MarketRepository()

    @pytest.mark.asyncio
    async def test_list_orders_by_rank_unranked_last(self, repository, base_time):
        await repository.upsert_asset(make_snapshot("zcash", market_cap_rank=None), base_time)
        await repository.upsert_asset(make_snapshot("ethereum", market_cap_rank=2), base_time)
        await repository.upsert_asset(make_snapshot("bitcoin", market_cap_rank=1), base_time)

        assets = await repository.list_assets()
        assert [a.id for a in assets] == ["bitcoin", "ethereum", "zcash"]
        assert [a.id for a in await repository.list_assets(limit=1)] == ["bitcoin"]

    @pytest.mark.asyncio
    async def test_upsert_replaces_all_fields(self, repository, base_time):
        await repository.upsert_asset(make_snapshot("bitcoin", high_24h=110.0), base_time)
        is_new = await repository.upsert_asset(make_snapshot("bitcoin", high_24h=None), base_time + timedelta(hours=1))

        asset = await repository.get_asset("bitcoin")
        assert is_new is False
        assert asset.high_24h is None
        assert asset.created_at == base_time


class TestPriceHistory:
    """Tests for price history range queries and pruning."""

    @pytest.mark.asyncio
    async def test_range_query_oldest_first(self, repository, base_time):
        await seed_prices(repository, "bitcoin", [1, 2, 3, 4])

        points = await repository.get_price_history(
            "bitcoin",
            start=base_time + timedelta(hours=1),
            end=base_time + timedelta(hours=2),
        )
        assert [p.price for p in points] == [2, 3]

    @pytest.mark.asyncio
    async def test_prune(self, repository, base_time):
        await seed_prices(repository, "bitcoin", [1, 2, 3])
        await seed_prices(repository, "ethereum", [4, 5])

        removed = await repository.prune_price_history(base_time + timedelta(hours=1))

        assert removed == 2
        assert [p.price for p in await repository.get_price_history("bitcoin")] == [2, 3]


class TestAnalyticsRecords:
    """Tests for indicator, alert and correlation queries."""

    @pytest.mark.asyncio
    async def test_indicator_values_newest_first_by_kind(self, repository, base_time):
        await repository.add_indicator_values([
            IndicatorValue("bitcoin", IndicatorKind.SMA, 10.0, SmaParams(7), base_time),
            IndicatorValue("bitcoin", IndicatorKind.RSI, 55.0, RsiParams(14, "neutral"), base_time),
            IndicatorValue("bitcoin", IndicatorKind.SMA, 11.0, SmaParams(7), base_time + timedelta(hours=1)),
        ])

        values = await repository.get_indicator_values("bitcoin", IndicatorKind.SMA)
        assert [v.value for v in values] == [11.0, 10.0]
        assert len(await repository.get_indicator_values("bitcoin", limit=1)) == 1

    @pytest.mark.asyncio
    async def test_alert_filters(self, repository, base_time):
        for i, severity in enumerate([AlertSeverity.LOW, AlertSeverity.HIGH, AlertSeverity.HIGH]):
            await repository.add_alert(Alert(
                id=str(i),
                asset_id="bitcoin" if i < 2 else "ethereum",
                kind=AlertKind.PRICE_SURGE,
                message="m",
                severity=severity,
                timestamp=base_time + timedelta(minutes=i),
            ))

        high = await repository.get_alerts(severity=AlertSeverity.HIGH)
        assert [a.id for a in high] == ["2", "1"]
        bitcoin = await repository.get_alerts(asset_id="bitcoin")
        assert [a.id for a in bitcoin] == ["1", "0"]
        window = await repository.get_alerts(start=base_time + timedelta(minutes=1), end=base_time + timedelta(minutes=1))
        assert [a.id for a in window] == ["1"]

    @pytest.mark.asyncio
    async def test_correlations_by_asset(self, repository, base_time):
        await repository.add_correlations([
            CorrelationEdge.canonical("ethereum", "bitcoin", 0.9, "30d", base_time),
            CorrelationEdge.canonical("solana", "ethereum", 0.5, "30d", base_time),
        ])

        edges = await repository.get_correlations(asset_id="bitcoin")
        assert len(edges) == 1
        assert (edges[0].asset_a, edges[0].asset_b) == ("bitcoin", "ethereum")
        assert len(await repository.get_correlations(timeframe="7d")) == 0

    @pytest.mark.asyncio
    async def test_prune_analytics(self, repository, base_time):
        old, recent = base_time - timedelta(days=40), base_time
        await repository.add_indicator_values([
            IndicatorValue("bitcoin", IndicatorKind.SMA, 10.0, SmaParams(7), old),
            IndicatorValue("bitcoin", IndicatorKind.SMA, 11.0, SmaParams(7), recent),
        ])
        await repository.add_anomalies([
            Anomaly("bitcoin", AnomalyKind.PRICE, 100.0, 110.0, 10.0, "jump", old),
        ])
        await repository.add_alert(Alert("a", "bitcoin", AlertKind.PRICE_SURGE, "m", AlertSeverity.HIGH, old))
        await repository.add_correlations([
            CorrelationEdge.canonical("bitcoin", "ethereum", 0.9, "30d", recent),
        ])

        removed = await repository.prune_analytics(base_time - timedelta(days=30))

        assert removed == 3
        assert [v.value for v in await repository.get_indicator_values("bitcoin")] == [11.0]
        assert await repository.get_anomalies() == []
        assert await repository.get_alerts() == []
        assert len(await repository.get_correlations()) == 1
