"""
Pytest configuration and shared fixtures.
"""

from datetime import datetime, timedelta

import pytest

from eventwatch.data.fetcher import ObservationSnapshot
from eventwatch.data.news import Headline, NewsContext
from eventwatch.database.connection import Database


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def db():
    """Initialized in-memory database."""
    database = Database(":memory:")
    database.initialize()
    yield database
    database.close()


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 3, 12, 14, 30))


@pytest.fixture
def sample_stock_info():
    """Sample Yahoo Finance stock info response."""
    return {
        "regularMarketPrice": 175.50,
        "previousClose": 173.25,
        "open": 174.00,
        "dayHigh": 176.00,
        "dayLow": 173.50,
        "volume": 50_000_000,
        "marketCap": 2_800_000_000_000,
        "shortName": "Apple Inc.",
        "exchange": "NASDAQ",
    }


@pytest.fixture
def sample_discord_webhook_url():
    """Sample Discord webhook URL for testing."""
    return "https://discord.com/api/webhooks/123456789/abcdefghijklmnop"


def _observation(
    symbol: str = "AAPL",
    day: float = 0.0,
    intraday: float = None,
    gap: float = 0.0,
    price: float = 100.0,
) -> ObservationSnapshot:
    """Snapshot with explicit percentage moves."""
    return ObservationSnapshot(
        symbol=symbol,
        price=price,
        day_change_pct=day,
        intraday_change_pct=day if intraday is None else intraday,
        gap_pct=gap,
    )


def _news(count: int = 0, avg: float = 1.0, current: float = 0.0, previous: float = 0.0) -> NewsContext:
    """News context with ``count`` recent Reuters headlines."""
    return NewsContext(
        count_recent=count,
        avg_per_window=avg,
        headlines=[
            Headline(headline=f"Headline {i}", source="Reuters") for i in range(min(count, 3))
        ],
        sentiment_current=current,
        sentiment_previous=previous,
    )


@pytest.fixture
def make_observation():
    return _observation


@pytest.fixture
def make_news():
    return _news
