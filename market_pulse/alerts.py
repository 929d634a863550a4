"""
Alert generation.

This module handles:
- Classifying anomalies and indicator signals into alerts
- Severity assignment
- Time-bucket deduplication
- Alert notification through named channels
"""

import inspect
import math
import uuid
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from .config import Config
from .events import EventBus, NewAlerts
from .indicators import IndicatorResult, Interpretation, OVERBOUGHT, OVERSOLD
from .models import Alert, AlertKind, AlertSeverity, Anomaly, AnomalyKind, Signal
from .storage import MarketRepository
from .utils import utc_now

logger = logging.getLogger(__name__)

DedupKey = Tuple[str, AlertKind, int]


class AlertService:
    """
    Turns anomalies and indicator signals into persisted alerts.

    Features:
    - One alert per (asset, kind, time bucket)
    - Multiple notification channels
    - Alert history queries through the repository
    """

    def __init__(
        self,
        config: Config,
        repository: MarketRepository,
        bus: Optional[EventBus] = None
    ):
        self.settings = config.alerts
        self.price_threshold = config.anomaly.price_threshold_pct
        self.volume_threshold = config.anomaly.volume_threshold_pct
        self.repository = repository
        self.bus = bus

        # Dedup key -> epoch seconds it was first sent
        self.recently_sent: Dict[DedupKey, float] = {}

        # Notification channels
        self.enabled_channels = list(self.settings.channels)
        self.channels: Dict[str, Callable[[Alert], Any]] = {
            "log": self._log_notification,
        }

        logger.info("Initialized AlertService")

    def _bucket(self, now: datetime, bucket_seconds: int) -> int:
        return math.floor(now.timestamp() / bucket_seconds)

    def _claim(self, asset_id: str, kind: AlertKind, bucket_seconds: int, now: datetime) -> bool:
        """Reserve the dedup slot; False when this alert was already sent in the bucket."""
        key = (asset_id, kind, self._bucket(now, bucket_seconds))
        if key in self.recently_sent:
            logger.debug(f"Suppressing duplicate {kind.value} alert for {asset_id}")
            return False

        cutoff = now.timestamp() - self.settings.sent_retention_seconds
        for old_key in [k for k, sent_at in self.recently_sent.items() if sent_at < cutoff]:
            del self.recently_sent[old_key]

        self.recently_sent[key] = now.timestamp()
        return True

    def classify_anomaly(self, anomaly: Anomaly) -> Tuple[AlertKind, AlertSeverity]:
        change = anomaly.percentage_change
        if anomaly.kind == AnomalyKind.PRICE:
            if abs(change) >= 2 * self.price_threshold:
                kind = AlertKind.PRICE_SURGE if change > 0 else AlertKind.PRICE_DROP
                return kind, AlertSeverity.HIGH
            kind = AlertKind.PRICE_INCREASE if change > 0 else AlertKind.PRICE_DECREASE
            return kind, AlertSeverity.MEDIUM

        if abs(change) >= 2 * self.volume_threshold:
            return AlertKind.VOLUME_SPIKE, AlertSeverity.HIGH
        return AlertKind.VOLUME_CHANGE, AlertSeverity.MEDIUM

    async def from_anomaly(self, anomaly: Anomaly, now: Optional[datetime] = None) -> Optional[Alert]:
        """
        Create and persist the alert for one anomaly.

        Returns:
            The alert, or None when it was deduplicated or could not be stored
        """
        now = now or utc_now()
        kind, severity = self.classify_anomaly(anomaly)
        if not self._claim(anomaly.asset_id, kind, self.settings.anomaly_bucket_seconds, now):
            return None

        alert = Alert(
            id=str(uuid.uuid4()),
            asset_id=anomaly.asset_id,
            kind=kind,
            message=anomaly.description,
            severity=severity,
            timestamp=now,
            old_value=anomaly.old_value,
            new_value=anomaly.new_value,
            percentage_change=anomaly.percentage_change,
        )
        return await self._store(alert)

    async def process_anomalies(self, anomalies: List[Anomaly], now: Optional[datetime] = None) -> List[Alert]:
        """Alert on a batch of anomalies and broadcast the new ones."""
        alerts = []
        for anomaly in anomalies:
            alert = await self.from_anomaly(anomaly, now)
            if alert is not None:
                alerts.append(alert)

        await self._publish(alerts)
        return alerts

    async def _asset_label(self, asset_id: str) -> str:
        try:
            asset = await self.repository.get_asset(asset_id)
        except Exception as e:
            logger.warning(f"Asset lookup failed for {asset_id}: {str(e)}")
            asset = None
        if asset is None:
            return asset_id
        return f"{asset.name} ({asset.symbol.upper()})"

    async def from_indicator_signal(
        self,
        asset_id: str,
        indicators: IndicatorResult,
        interpretation: Interpretation,
        now: Optional[datetime] = None
    ) -> List[Alert]:
        """
        Alert on RSI extremes, MACD crossovers, SMA trend and strong combined signals.

        Indicator alerts share an hourly dedup bucket per asset and kind.
        """
        now = now or utc_now()
        label = await self._asset_label(asset_id)
        candidates = []

        if interpretation.rsi_condition in (OVERBOUGHT, OVERSOLD) and indicators.rsi is not None:
            value = indicators.rsi.current
            kind = AlertKind.RSI_OVERBOUGHT if interpretation.rsi_condition == OVERBOUGHT else AlertKind.RSI_OVERSOLD
            candidates.append((
                kind, AlertSeverity.MEDIUM, value,
                f"RSI for {label} is {interpretation.rsi_condition} ({value:.2f})"
            ))

        if interpretation.macd_signal in (Signal.BUY, Signal.SELL):
            bullish = interpretation.macd_signal == Signal.BUY
            candidates.append((
                AlertKind.MACD_BULLISH_CROSS if bullish else AlertKind.MACD_BEARISH_CROSS,
                AlertSeverity.MEDIUM,
                indicators.macd.current_line if indicators.macd else None,
                f"MACD for {label} crossed {'above' if bullish else 'below'} its signal line"
            ))

        if interpretation.sma_trend in (Signal.BUY, Signal.SELL):
            bullish = interpretation.sma_trend == Signal.BUY
            candidates.append((
                AlertKind.SMA_BULLISH_CROSS if bullish else AlertKind.SMA_BEARISH_CROSS,
                AlertSeverity.MEDIUM,
                None,
                f"SMA for {label} shows a {'bullish' if bullish else 'bearish'} crossover"
            ))

        if (interpretation.overall in (Signal.BUY, Signal.SELL)
                and interpretation.strength >= self.settings.strong_signal_threshold):
            buy = interpretation.overall == Signal.BUY
            candidates.append((
                AlertKind.STRONG_BUY_SIGNAL if buy else AlertKind.STRONG_SELL_SIGNAL,
                AlertSeverity.HIGH,
                interpretation.strength,
                f"Strong {'buy' if buy else 'sell'} signal for {label} from technical indicators"
            ))

        alerts = []
        for kind, severity, value, message in candidates:
            if not self._claim(asset_id, kind, self.settings.indicator_bucket_seconds, now):
                continue
            alert = await self._store(Alert(
                id=str(uuid.uuid4()),
                asset_id=asset_id,
                kind=kind,
                message=message,
                severity=severity,
                timestamp=now,
                new_value=value,
            ))
            if alert is not None:
                alerts.append(alert)

        await self._publish(alerts)
        return alerts

    async def _store(self, alert: Alert) -> Optional[Alert]:
        try:
            await self.repository.add_alert(alert)
        except Exception as e:
            logger.error(f"Failed to persist {alert.kind.value} alert for {alert.asset_id}: {str(e)}")
            return None

        await self._send_notification(alert)
        return alert

    async def _publish(self, alerts: List[Alert]):
        if alerts and self.bus is not None:
            await self.bus.publish(NewAlerts(alerts=list(alerts)))

    def add_notification_channel(self, name: str, callback: Callable[[Alert], Any]):
        """Add and enable a notification channel. Callbacks may be coroutines."""
        self.channels[name] = callback
        if name not in self.enabled_channels:
            self.enabled_channels.append(name)
        logger.info(f"Added notification channel: {name}")

    def remove_notification_channel(self, name: str):
        self.channels.pop(name, None)
        if name in self.enabled_channels:
            self.enabled_channels.remove(name)

    async def _send_notification(self, alert: Alert):
        """Send alert notification through configured channels."""
        for channel_name in self.enabled_channels:
            callback = self.channels.get(channel_name)
            if callback is None:
                continue
            try:
                result = callback(alert)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Error sending notification via {channel_name}: {str(e)}")

    def _log_notification(self, alert: Alert):
        """Log notification handler."""
        log_method = {
            AlertSeverity.LOW: logger.info,
            AlertSeverity.MEDIUM: logger.warning,
            AlertSeverity.HIGH: logger.error,
        }[alert.severity]

        log_method(f"ALERT [{alert.severity.value.upper()}] {alert.kind.value} {alert.asset_id}: {alert.message}")

    async def get_latest_alerts(
        self,
        limit: int = 20,
        severity: Optional[AlertSeverity] = None,
        kind: Optional[AlertKind] = None
    ) -> List[Alert]:
        return await self.repository.get_alerts(severity=severity, kind=kind, limit=limit)

    async def get_alerts_for_asset(self, asset_id: str, limit: int = 20) -> List[Alert]:
        return await self.repository.get_alerts(asset_id=asset_id, limit=limit)

    async def get_alerts_between(self, start: datetime, end: datetime) -> List[Alert]:
        return await self.repository.get_alerts(start=start, end=end)
