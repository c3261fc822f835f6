"""Integration test fixtures — real files and SQLite but no network."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

import pytest

from index_feed.core.config import (
    FeedConfig,
    FreshnessConfig,
    SourceConfig,
    SourceProvider,
    StorageConfig,
)
from index_feed.sources import build_source


class SessionClock:
    """Pinned to the evening after the last CSV fixture row."""

    def __init__(self) -> None:
        self.now = datetime(2024, 1, 10, 12, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def session_clock() -> SessionClock:
    return SessionClock()


@pytest.fixture
def csv_config(tmp_path: Path, data_dir: Path) -> FeedConfig:
    return FeedConfig(
        freshness=FreshnessConfig(
            max_age_seconds=900,
            refresh_timeout_seconds=5,
            initial_lookback_days=30,
            refresh_overlap_days=2,
        ),
        source=SourceConfig(
            provider=SourceProvider.CSV,
            csv_dir=str(data_dir / "csv"),
            max_retries=1,
            retry_base_delay=0.01,
        ),
        storage=StorageConfig(sqlite_path=str(tmp_path / "integration.db")),
        catalog_path=str(data_dir / "ibex35.yml"),
    )


@pytest.fixture
async def csv_source(csv_config: FeedConfig):
    source = build_source(csv_config.source)
    yield source
    await source.close()
