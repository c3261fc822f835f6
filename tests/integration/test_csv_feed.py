"""End-to-end: CSV files -> facade -> analytics -> SQLite snapshot."""

from __future__ import annotations

import asyncio
from datetime import date, datetime, timezone
from decimal import Decimal

from index_feed.catalog import load_index_catalog
from index_feed.core.models import (
    AnalyticsKind,
    AnalyticsParams,
    Coverage,
    FreshnessState,
    TimeRange,
)
from index_feed.facade import IndexFacade
from index_feed.series import SqliteSeriesSnapshot

IBEX = "^IBEX"


def _facade(source, config, clock) -> IndexFacade:
    descriptor = load_index_catalog(config.catalog_path)[IBEX]
    return IndexFacade(IBEX, source, config=config, descriptor=descriptor, clock=clock)


class TestCsvFeed:
    async def test_full_session(self, csv_source, csv_config, session_clock):
        ibex = _facade(csv_source, csv_config, session_clock)

        price = await ibex.current_price()
        assert price.price == Decimal("10120.7")
        assert ibex.state == FreshnessState.FRESH
        assert ibex.metadata.last_coverage == Coverage.PARTIAL

        week = await ibex.history(TimeRange(start=date(2024, 1, 2), end=date(2024, 1, 10)))
        assert len(week) == 6
        assert week.partial is False
        assert week.quotes[3].volume is None

        ret = await ibex.analytics(AnalyticsKind.SIMPLE_RETURN)
        assert ret.value == (Decimal("10120.7") - Decimal("10150.3")) / Decimal("10150.3")

        ma = await ibex.analytics(AnalyticsKind.MOVING_AVERAGE, AnalyticsParams(window=2))
        assert ma.points[0].value == (Decimal("10150.3") + Decimal("10045.8")) / 2

        drawdown = await ibex.analytics(AnalyticsKind.MAX_DRAWDOWN)
        assert drawdown.value == Decimal("10030.4") / Decimal("10150.3") - 1

        assert ibex.metadata.refresh_count == 1

    async def test_concurrent_queries_share_one_refresh(self, csv_source, csv_config, session_clock):
        ibex = _facade(csv_source, csv_config, session_clock)

        results = await asyncio.gather(*(ibex.current_price() for _ in range(25)))

        assert {r.price for r in results} == {Decimal("10120.7")}
        assert ibex.metadata.refresh_count == 1

    async def test_history_before_trading_started_is_partial(self, csv_source, csv_config, session_clock):
        ibex = _facade(csv_source, csv_config, session_clock)

        result = await ibex.history(TimeRange(start=date(2023, 12, 1), end=date(2024, 1, 4)))

        assert result.partial is True
        assert [q.timestamp.day for q in result.quotes] == [2, 3]

    async def test_snapshot_warms_next_session(self, csv_source, csv_config, session_clock):
        snapshots = SqliteSeriesSnapshot(csv_config.storage.sqlite_path)
        first = _facade(csv_source, csv_config, session_clock)
        await first.current_price()
        assert await snapshots.save(first.store) == 6

        second = _facade(csv_source, csv_config, session_clock)
        restored = await snapshots.restore(second.store)
        assert restored.inserted == 6
        assert second.store.snapshot() == first.store.snapshot()

        report = await second.refresh()
        assert report.inserted == 0
        assert report.corrected == 0

    async def test_trading_hours_from_catalog(self, csv_source, csv_config, session_clock):
        ibex = _facade(csv_source, csv_config, session_clock)
        assert ibex.descriptor.is_open(datetime(2024, 1, 10, 12, tzinfo=timezone.utc))
        assert not ibex.descriptor.is_open(datetime(2024, 1, 13, 12, tzinfo=timezone.utc))
