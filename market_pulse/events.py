"""
Typed events and the in-process event bus.

Provides:
- Event dataclasses for everything the pipeline broadcasts
- Per-type handler subscription
- Bounded queue channels for a transport layer
"""

import asyncio
import inspect
import logging
from collections import defaultdict
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Type, Union

from .indicators import Interpretation
from .models import Alert, Anomaly, AssetSnapshot, CorrelationEdge, IndicatorValue, Signal
from .utils import utc_now

logger = logging.getLogger(__name__)


@dataclass
class MarketUpdate:
    """Fresh market snapshot after an ingestion cycle."""
    type = "market_update"
    assets: List[AssetSnapshot]
    stale: bool = False
    timestamp: datetime = field(default_factory=utc_now)


@dataclass
class TechnicalIndicatorsUpdate:
    """Indicator results for one asset."""
    type = "technical_indicators_update"
    asset_id: str
    indicators: List[IndicatorValue]
    overall_signal: Signal
    strength: float
    interpretation: Optional[Interpretation] = None
    timestamp: datetime = field(default_factory=utc_now)


@dataclass
class CorrelationsUpdate:
    type = "correlations_update"
    asset_ids: List[str]
    edges: List[CorrelationEdge]
    timeframe: str
    timestamp: datetime = field(default_factory=utc_now)


@dataclass
class NewAlerts:
    type = "new_alerts"
    alerts: List[Alert]
    timestamp: datetime = field(default_factory=utc_now)


@dataclass
class AnomaliesDetected:
    """Internal: anomalies found by the processor, routed to alerting."""
    type = "anomalies_detected"
    anomalies: List[Anomaly]
    timestamp: datetime = field(default_factory=utc_now)


Event = Union[MarketUpdate, TechnicalIndicatorsUpdate, CorrelationsUpdate, NewAlerts, AnomaliesDetected]

OUTBOUND_EVENTS = (MarketUpdate, TechnicalIndicatorsUpdate, CorrelationsUpdate, NewAlerts)

Handler = Callable[[Any], Any]


def event_to_dict(event: Event) -> Dict[str, Any]:
    """Plain dict form with a ``type`` tag, for JSON transports."""
    return {"type": event.type, **asdict(event)}


class EventChannel:
    """
    Bounded queue fed by the bus.

    When the queue is full the new event is dropped with a warning.
    """

    def __init__(self, bus: 'EventBus', maxsize: int, event_types: tuple):
        self.bus = bus
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.event_types = event_types
        self.dropped = 0
        self.closed = False

    def offer(self, event: Event) -> bool:
        if self.closed or not isinstance(event, self.event_types):
            return False
        try:
            self.queue.put_nowait(event)
            return True
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(f"Channel full, dropping {event.type} event ({self.dropped} dropped)")
            return False

    async def get(self) -> Event:
        return await self.queue.get()

    def get_nowait(self) -> Event:
        return self.queue.get_nowait()

    def qsize(self) -> int:
        return self.queue.qsize()

    def close(self):
        self.closed = True
        self.bus.close_channel(self)


class EventBus:
    """
    Delivers events to handlers subscribed by event type, and to open channels.

    Nothing is retained: a subscriber only sees events published after it
    subscribed. A failing handler is logged and does not affect the others.
    """

    def __init__(self):
        self._handlers: Dict[Type, List[Handler]] = defaultdict(list)
        self._channels: List[EventChannel] = []
        self.published = 0

    def subscribe(self, event_type: Type, handler: Handler):
        """Register a sync or async handler for ``event_type``."""
        self._handlers[event_type].append(handler)

    def unsubscribe(self, event_type: Type, handler: Handler):
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    def open_channel(self, maxsize: int = 100, event_types: Optional[tuple] = None) -> EventChannel:
        """Open a bounded channel receiving outbound events (or ``event_types``)."""
        channel = EventChannel(self, maxsize, event_types or OUTBOUND_EVENTS)
        self._channels.append(channel)
        return channel

    def close_channel(self, channel: EventChannel):
        if channel in self._channels:
            self._channels.remove(channel)

    async def publish(self, event: Event):
        self.published += 1

        for channel in list(self._channels):
            channel.offer(event)

        for handler in list(self._handlers.get(type(event), [])):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Handler {getattr(handler, '__name__', handler)} failed for {event.type}: {e}")

    def handler_count(self, event_type: Type) -> int:
        return len(self._handlers.get(event_type, []))
