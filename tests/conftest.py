"""Shared pytest fixtures for index-feed."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path

import pytest

from index_feed.core.config import FeedConfig, FreshnessConfig
from index_feed.core.models import Quote
from index_feed.sources.memory import StaticIndexSource

DATA_DIR = Path(__file__).parent / "data"

IBEX = "^IBEX"


def utc(year: int, month: int, day: int, hour: int = 0, minute: int = 0) -> datetime:
    return datetime(year, month, day, hour, minute, tzinfo=timezone.utc)


def make_quote(day: date | datetime, price, index_id: str = IBEX, **kwargs) -> Quote:
    return Quote(index_id=index_id, timestamp=day, price=price, **kwargs)


class FixedClock:
    """A controllable ``now`` for freshness tests."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(utc(2024, 1, 5, 12))


@pytest.fixture
def scenario_quotes() -> list[Quote]:
    """Three daily closes, 2024-01-02..04."""
    return [
        make_quote(date(2024, 1, 2), 100),
        make_quote(date(2024, 1, 3), 101),
        make_quote(date(2024, 1, 4), 99),
    ]


@pytest.fixture
def ibex_source(scenario_quotes: list[Quote]) -> StaticIndexSource:
    return StaticIndexSource({IBEX: scenario_quotes})


@pytest.fixture
def feed_config() -> FeedConfig:
    return FeedConfig(
        freshness=FreshnessConfig(
            max_age_seconds=900,
            refresh_timeout_seconds=5,
            initial_lookback_days=30,
            refresh_overlap_days=2,
        )
    )


@pytest.fixture
def ramp_quotes() -> list[Quote]:
    """Thirty rising daily closes starting 2024-01-01 at 100."""
    start = date(2024, 1, 1)
    return [
        make_quote(start + timedelta(days=i), Decimal(100) + i)
        for i in range(30)
    ]


@pytest.fixture
def data_dir() -> Path:
    return DATA_DIR
