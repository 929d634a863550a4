"""
Tests for alert generation, deduplication and notification.
"""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from market_pulse.alerts import AlertService
from market_pulse.events import NewAlerts
from market_pulse.indicators import IndicatorResult, Interpretation, MacdResult, RsiResult
from market_pulse.models import AlertKind, AlertSeverity, Anomaly, AnomalyKind, Signal

from conftest import make_snapshot


def anomaly(change, kind=AnomalyKind.PRICE, asset_id="bitcoin", old=100.0):
    return Anomaly(
        asset_id=asset_id,
        kind=kind,
        old_value=old,
        new_value=old * (1 + change / 100),
        percentage_change=change,
        description=f"Significant change: {change:+.2f}%",
        timestamp=None,
    )


@pytest.fixture
def service(config, repository, bus):
    return AlertService(config, repository, bus)


class TestClassification:
    """Tests for severity and kind assignment."""

    @pytest.mark.parametrize("change,kind,severity", [
        (6.0, AlertKind.PRICE_INCREASE, AlertSeverity.MEDIUM),
        (-6.0, AlertKind.PRICE_DECREASE, AlertSeverity.MEDIUM),
        (10.0, AlertKind.PRICE_SURGE, AlertSeverity.HIGH),
        (-12.0, AlertKind.PRICE_DROP, AlertSeverity.HIGH),
    ])
    def test_price(self, service, change, kind, severity):
        assert service.classify_anomaly(anomaly(change)) == (kind, severity)

    def test_volume(self, service):
        assert service.classify_anomaly(anomaly(25.0, AnomalyKind.VOLUME)) == \
            (AlertKind.VOLUME_CHANGE, AlertSeverity.MEDIUM)
        assert service.classify_anomaly(anomaly(-45.0, AnomalyKind.VOLUME)) == \
            (AlertKind.VOLUME_SPIKE, AlertSeverity.HIGH)


class TestAnomalyAlerts:
    """Tests for alerts created from anomalies."""

    @pytest.mark.asyncio
    async def test_alert_carries_anomaly_values(self, service, repository, base_time):
        alert = await service.from_anomaly(anomaly(6.0), base_time)

        assert alert.kind == AlertKind.PRICE_INCREASE
        assert alert.old_value == 100.0
        assert alert.percentage_change == 6.0
        assert alert.timestamp == base_time
        assert alert.message == "Significant change: +6.00%"
        assert repository.alerts == [alert]

    @pytest.mark.asyncio
    async def test_duplicate_in_same_bucket_suppressed(self, service, repository, base_time):
        first = await service.from_anomaly(anomaly(6.0), base_time)
        second = await service.from_anomaly(anomaly(7.0), base_time + timedelta(seconds=30))

        assert first is not None
        assert second is None
        assert len(repository.alerts) == 1

    @pytest.mark.asyncio
    async def test_next_bucket_alerts_again(self, service, repository, base_time):
        await service.from_anomaly(anomaly(6.0), base_time)
        await service.from_anomaly(anomaly(6.0), base_time + timedelta(seconds=60))

        assert len(repository.alerts) == 2

    @pytest.mark.asyncio
    async def test_different_kind_or_asset_not_deduplicated(self, service, repository, base_time):
        await service.from_anomaly(anomaly(6.0), base_time)
        await service.from_anomaly(anomaly(-6.0), base_time)
        await service.from_anomaly(anomaly(6.0, asset_id="ethereum"), base_time)

        assert len(repository.alerts) == 3

    @pytest.mark.asyncio
    async def test_old_dedup_entries_pruned(self, service, base_time):
        await service.from_anomaly(anomaly(6.0), base_time)
        await service.from_anomaly(anomaly(6.0, asset_id="ethereum"), base_time + timedelta(hours=2))

        assert len(service.recently_sent) == 1

    @pytest.mark.asyncio
    async def test_batch_publishes_new_alerts(self, service, bus, base_time):
        handler = AsyncMock()
        bus.subscribe(NewAlerts, handler)

        alerts = await service.process_anomalies([anomaly(6.0), anomaly(6.0), anomaly(30.0, AnomalyKind.VOLUME)], base_time)

        assert len(alerts) == 2
        handler.assert_awaited_once()
        assert handler.await_args.args[0].alerts == alerts

    @pytest.mark.asyncio
    async def test_nothing_published_when_all_suppressed(self, service, bus, base_time):
        await service.process_anomalies([anomaly(6.0)], base_time)
        handler = AsyncMock()
        bus.subscribe(NewAlerts, handler)

        assert await service.process_anomalies([anomaly(6.0)], base_time) == []
        handler.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_storage_failure_drops_alert(self, service, repository, base_time):
        repository.add_alert = AsyncMock(side_effect=RuntimeError("db down"))

        assert await service.from_anomaly(anomaly(6.0), base_time) is None


def indicator_state(rsi_value, condition, macd_signal, sma_trend, overall, strength, now):
    result = IndicatorResult(asset_id="bitcoin", timestamp=now, data_points=60)
    result.rsi = RsiResult(14, [rsi_value], condition)
    result.macd = MacdResult(12, 26, 9, line=[0.5, 1.5], signal=[1.0, 1.0], histogram=[-0.5, 0.5],
                             crossover=macd_signal)
    interpretation = Interpretation(
        overall=overall,
        strength=strength,
        sma_trend=sma_trend,
        rsi_condition=condition,
        rsi_signal=Signal.BUY if condition == "oversold" else Signal.NEUTRAL,
        macd_signal=macd_signal,
    )
    return result, interpretation


class TestIndicatorAlerts:
    """Tests for alerts from indicator signals."""

    @pytest.mark.asyncio
    async def test_full_buy_setup(self, service, repository, base_time):
        await repository.upsert_asset(make_snapshot("bitcoin"), base_time)
        result, interpretation = indicator_state(
            25.0, "oversold", Signal.BUY, Signal.BUY, Signal.BUY, 1.0, base_time
        )

        alerts = await service.from_indicator_signal("bitcoin", result, interpretation, base_time)

        kinds = [a.kind for a in alerts]
        assert kinds == [
            AlertKind.RSI_OVERSOLD,
            AlertKind.MACD_BULLISH_CROSS,
            AlertKind.SMA_BULLISH_CROSS,
            AlertKind.STRONG_BUY_SIGNAL,
        ]
        assert alerts[0].message == "RSI for Bitcoin (BIT) is oversold (25.00)"
        assert alerts[0].new_value == 25.0
        assert alerts[3].severity == AlertSeverity.HIGH

    @pytest.mark.asyncio
    async def test_unknown_asset_uses_id(self, service, base_time):
        result, interpretation = indicator_state(
            80.0, "overbought", Signal.NEUTRAL, Signal.NEUTRAL, Signal.NEUTRAL, 0.0, base_time
        )

        alerts = await service.from_indicator_signal("bitcoin", result, interpretation, base_time)

        assert [a.kind for a in alerts] == [AlertKind.RSI_OVERBOUGHT]
        assert alerts[0].message.startswith("RSI for bitcoin is overbought")

    @pytest.mark.asyncio
    async def test_weak_signal_has_no_strong_alert(self, service, base_time):
        result, interpretation = indicator_state(
            50.0, "neutral", Signal.SELL, Signal.SELL, Signal.SELL, 2 / 3, base_time
        )

        alerts = await service.from_indicator_signal("bitcoin", result, interpretation, base_time)

        assert [a.kind for a in alerts] == [AlertKind.MACD_BEARISH_CROSS, AlertKind.SMA_BEARISH_CROSS]

    @pytest.mark.asyncio
    async def test_indicator_alerts_deduplicated_hourly(self, service, base_time):
        result, interpretation = indicator_state(
            80.0, "overbought", Signal.NEUTRAL, Signal.NEUTRAL, Signal.NEUTRAL, 0.0, base_time
        )

        await service.from_indicator_signal("bitcoin", result, interpretation, base_time)
        repeat = await service.from_indicator_signal(
            "bitcoin", result, interpretation, base_time + timedelta(minutes=30)
        )
        later = await service.from_indicator_signal(
            "bitcoin", result, interpretation, base_time + timedelta(hours=1)
        )

        assert repeat == []
        assert len(later) == 1


class TestNotificationChannels:
    """Tests for notification channels and queries."""

    @pytest.mark.asyncio
    async def test_custom_channels_receive_alerts(self, service, base_time):
        sync_channel = MagicMock()
        async_channel = AsyncMock()
        service.add_notification_channel("webhook", sync_channel)
        service.add_notification_channel("email", async_channel)

        alert = await service.from_anomaly(anomaly(6.0), base_time)

        sync_channel.assert_called_once_with(alert)
        async_channel.assert_awaited_once_with(alert)

    @pytest.mark.asyncio
    async def test_failing_channel_does_not_block_alert(self, service, repository, base_time):
        service.add_notification_channel("broken", MagicMock(side_effect=RuntimeError("smtp")))

        alert = await service.from_anomaly(anomaly(6.0), base_time)

        assert alert is not None
        assert repository.alerts == [alert]

    @pytest.mark.asyncio
    async def test_removed_channel_not_called(self, service, base_time):
        channel = MagicMock()
        service.add_notification_channel("webhook", channel)
        service.remove_notification_channel("webhook")

        await service.from_anomaly(anomaly(6.0), base_time)

        channel.assert_not_called()
        assert "webhook" not in service.enabled_channels

    @pytest.mark.asyncio
    async def test_queries(self, service, base_time):
        await service.from_anomaly(anomaly(12.0), base_time)
        await service.from_anomaly(anomaly(6.0, asset_id="ethereum"), base_time + timedelta(minutes=1))

        latest = await service.get_latest_alerts()
        high = await service.get_latest_alerts(severity=AlertSeverity.HIGH)
        eth = await service.get_alerts_for_asset("ethereum")
        window = await service.get_alerts_between(base_time, base_time + timedelta(seconds=30))

        assert [a.asset_id for a in latest] == ["ethereum", "bitcoin"]
        assert [a.kind for a in high] == [AlertKind.PRICE_SURGE]
        assert len(eth) == 1
        assert [a.asset_id for a in window] == ["bitcoin"]
