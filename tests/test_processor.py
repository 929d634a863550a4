"""
Tests for market snapshot processing and anomaly detection.
"""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from market_pulse.events import AnomaliesDetected
from market_pulse.exceptions import PersistenceError
from market_pulse.models import AnomalyKind
from market_pulse.processor import MarketProcessor
from market_pulse.storage import InMemoryRepository

from conftest import make_snapshot


class FlakyRepository(InMemoryRepository):
    """Fails to upsert one chosen asset."""

    def __init__(self, broken_id):
        super().__init__()
        self.broken_id = broken_id

    async def upsert_asset(self, snapshot, now):
        if snapshot.id == self.broken_id:
            raise PersistenceError("disk full")
        return await super().upsert_asset(snapshot, now)


@pytest.fixture
def processor(config, repository, bus):
    return MarketProcessor(config, repository, bus)


class TestIngestion:
    """Tests for upserts and price history."""

    @pytest.mark.asyncio
    async def test_new_then_updated(self, processor, repository, base_time):
        first = await processor.process([make_snapshot("bitcoin"), make_snapshot("ethereum")], base_time)
        second = await processor.process([make_snapshot("bitcoin", price=101)], base_time + timedelta(minutes=1))

        assert (first.new_count, first.updated_count) == (2, 0)
        assert (second.new_count, second.updated_count) == (0, 1)

        asset = await repository.get_asset("bitcoin")
        assert asset.current_price == 101
        assert asset.created_at == base_time
        assert asset.updated_at == base_time + timedelta(minutes=1)

        history = await repository.get_price_history("bitcoin")
        assert [p.price for p in history] == [100, 101]

    @pytest.mark.asyncio
    async def test_missing_price_skips_history(self, processor, repository, base_time):
        await processor.process([make_snapshot("bitcoin", price=None, market_cap=None)], base_time)

        assert await repository.get_asset("bitcoin") is not None
        assert await repository.get_price_history("bitcoin") == []

    @pytest.mark.asyncio
    async def test_persistence_failure_isolated_to_asset(self, config, bus, base_time):
        repository = FlakyRepository("ethereum")
        processor = MarketProcessor(config, repository, bus)

        result = await processor.process(
            [make_snapshot("bitcoin"), make_snapshot("ethereum"), make_snapshot("solana")],
            base_time,
        )

        assert result.failed_assets == ["ethereum"]
        assert result.new_count == 2
        assert await repository.get_asset("solana") is not None


class TestAnomalyDetection:
    """Tests for price and volume anomalies."""

    @pytest.mark.asyncio
    async def test_first_cycle_reports_nothing(self, processor, base_time):
        result = await processor.process([make_snapshot(price=100)], base_time)
        assert result.anomalies == []

    @pytest.mark.asyncio
    async def test_price_jump_above_threshold(self, processor, repository, base_time):
        await processor.process([make_snapshot(price=100)], base_time)
        result = await processor.process([make_snapshot(price=106)], base_time + timedelta(minutes=1))

        assert len(result.anomalies) == 1
        anomaly = result.anomalies[0]
        assert anomaly.kind == AnomalyKind.PRICE
        assert anomaly.old_value == 100
        assert anomaly.new_value == 106
        assert anomaly.percentage_change == pytest.approx(6.0)
        assert anomaly.description == "Significant price change for Bitcoin (BIT): +6.00%"
        assert await repository.get_anomalies() == [anomaly]

    @pytest.mark.asyncio
    async def test_change_equal_to_threshold_is_not_anomalous(self, processor, base_time):
        await processor.process([make_snapshot(price=100)], base_time)
        result = await processor.process([make_snapshot(price=105)], base_time + timedelta(minutes=1))
        assert result.anomalies == []

    @pytest.mark.asyncio
    async def test_volume_change(self, processor, base_time):
        await processor.process([make_snapshot(volume=1_000)], base_time)
        result = await processor.process([make_snapshot(volume=700)], base_time + timedelta(minutes=1))

        assert [a.kind for a in result.anomalies] == [AnomalyKind.VOLUME]
        assert result.anomalies[0].percentage_change == pytest.approx(-30.0)

    @pytest.mark.asyncio
    async def test_zero_previous_value_skipped(self, processor, base_time):
        await processor.process([make_snapshot(price=0, volume=0)], base_time)
        result = await processor.process([make_snapshot(price=50, volume=500)], base_time + timedelta(minutes=1))
        assert result.anomalies == []

    @pytest.mark.asyncio
    async def test_previous_value_overwritten_each_cycle(self, processor, base_time):
        await processor.process([make_snapshot(price=100)], base_time)
        await processor.process([make_snapshot(price=110)], base_time + timedelta(minutes=1))
        result = await processor.process([make_snapshot(price=112)], base_time + timedelta(minutes=2))

        assert result.anomalies == []
        assert processor.previous_values["bitcoin"] == (112, 1_000.0)

    @pytest.mark.asyncio
    async def test_anomalies_published(self, processor, bus, base_time):
        handler = AsyncMock()
        bus.subscribe(AnomaliesDetected, handler)

        await processor.process([make_snapshot(price=100)], base_time)
        await processor.process([make_snapshot(price=80)], base_time + timedelta(minutes=1))

        handler.assert_awaited_once()
        event = handler.await_args.args[0]
        assert event.anomalies[0].percentage_change == pytest.approx(-20.0)
        assert event.timestamp == base_time + timedelta(minutes=1)


class TestProcessingStats:
    """Tests for statistics and queries."""

    @pytest.mark.asyncio
    async def test_stats(self, processor, base_time):
        await processor.process([make_snapshot(price=100)], base_time)
        await processor.process([make_snapshot(price=120)], base_time + timedelta(minutes=1))

        stats = await processor.get_processing_stats()
        latest = await processor.get_latest_anomalies(limit=5)

        assert stats["assets"] == 1
        assert stats["cycles"] == 2
        assert stats["price_points_written"] == 2
        assert stats["anomalies_found"] == 1
        assert len(latest) == 1
