"""Pytest configuration and fixtures."""

from datetime import datetime, timedelta, timezone

import pytest

from market_pulse.config import Config
from market_pulse.events import EventBus
from market_pulse.models import AssetSnapshot, PricePoint
from market_pulse.storage import InMemoryRepository


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeDateClock:
    """Manually advanced UTC datetime clock."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


BASE_TIME = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def config():
    """Default configuration with fast retries."""
    cfg = Config()
    cfg.retry.base_delay = 2.0
    cfg.retry.backoff_factor = 2.0
    cfg.retry.max_retries = 3
    cfg.fetch.detail_pause = 0.0
    return cfg


@pytest.fixture
def repository():
    return InMemoryRepository()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def base_time():
    return BASE_TIME


def make_snapshot(asset_id: str = "bitcoin", price: float = 100.0, volume: float = 1_000.0, **kwargs) -> AssetSnapshot:
    defaults = dict(
        id=asset_id,
        symbol=asset_id[:3],
        name=asset_id.capitalize(),
        current_price=price,
        total_volume=volume,
        market_cap=price * 1_000 if price is not None else None,
        market_cap_rank=1,
    )
    defaults.update(kwargs)
    return AssetSnapshot(**defaults)


def market_row(asset_id: str = "bitcoin", price: float = 100.0, volume: float = 1_000.0, rank: int = 1) -> dict:
    return {
        "id": asset_id,
        "symbol": asset_id[:3],
        "name": asset_id.capitalize(),
        "image": f"https://img.example/{asset_id}.png",
        "current_price": price,
        "market_cap": price * 1_000,
        "market_cap_rank": rank,
        "total_volume": volume,
        "high_24h": price * 1.05,
        "low_24h": price * 0.95,
        "price_change_24h": 1.5,
        "price_change_percentage_24h": 1.2,
        "circulating_supply": 19_000_000,
        "total_supply": 21_000_000,
        "max_supply": 21_000_000,
        "last_updated": "2024-03-01T12:00:00.000Z",
    }


async def seed_prices(repository, asset_id, prices, start=BASE_TIME, step=timedelta(hours=1)):
    """Append one price point per ``step`` starting at ``start``."""
    for i, price in enumerate(prices):
        await repository.add_price_point(PricePoint(
            asset_id=asset_id,
            price=price,
            market_cap=None,
            volume=None,
            timestamp=start + i * step,
        ))
