"""Tests for index_feed.facade (IndexFacade)."""

from __future__ import annotations

import asyncio
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from index_feed.analytics import volatility
from index_feed.catalog import load_index_catalog
from index_feed.core.config import FeedConfig, FreshnessConfig, RetentionConfig
from index_feed.core.exceptions import (
    EmptyRange,
    InsufficientData,
    SourceUnreachable,
    UnknownIndex,
)
from index_feed.core.models import (
    AnalyticsKind,
    AnalyticsParams,
    FreshnessState,
    Quote,
    TimeRange,
)
from index_feed.facade import IndexFacade, open_index
from index_feed.sources.memory import StaticIndexSource

IBEX = "^IBEX"


class ToggleSource:
    """Static quotes that can be switched to failing, with an optional gate."""

    name = "toggle"

    def __init__(self, quotes: list[Quote]) -> None:
        self._inner = StaticIndexSource({IBEX: quotes})
        self.gate = asyncio.Event()
        self.gate.set()
        self.fail = False

    async def fetch(self, index_id, time_range):
        await self.gate.wait()
        if self.fail:
            raise SourceUnreachable("connection reset", context={"source": self.name})
        return await self._inner.fetch(index_id, time_range)


class FailingSource:
    name = "failing"

    async def fetch(self, index_id, time_range):
        raise SourceUnreachable("connection refused")


@pytest.fixture
def facade(ibex_source, feed_config, clock) -> IndexFacade:
    return IndexFacade(IBEX, ibex_source, config=feed_config, clock=clock)


async def _settle(ticks: int = 20) -> None:
    for _ in range(ticks):
        await asyncio.sleep(0)


class TestCurrentPrice:
    async def test_first_query_refreshes(self, facade, ibex_source):
        result = await facade.current_price()

        assert result.price == Decimal(99)
        assert result.timestamp == datetime(2024, 1, 4, tzinfo=timezone.utc)
        assert result.stale is False
        assert facade.state == FreshnessState.FRESH
        assert len(ibex_source.calls) == 1

    async def test_cached_while_fresh(self, facade, ibex_source, clock):
        await facade.current_price()
        clock.advance(seconds=600)
        await facade.current_price()
        assert len(ibex_source.calls) == 1

    async def test_expired_series_picks_up_new_quotes(self, facade, ibex_source, clock):
        await facade.current_price()
        ibex_source.publish(IBEX, Quote(index_id=IBEX, timestamp=date(2024, 1, 5), price=102))
        clock.advance(seconds=901)

        result = await facade.current_price()

        assert result.price == Decimal(102)
        assert len(ibex_source.calls) == 2

    async def test_failed_refresh_on_empty_store(self, feed_config, clock):
        facade = IndexFacade(IBEX, FailingSource(), config=feed_config, clock=clock)

        with pytest.raises(SourceUnreachable) as exc_info:
            await facade.current_price()

        assert len(facade.store) == 0
        assert facade.state == FreshnessState.STALE
        assert exc_info.value.context["index"] == IBEX
        assert exc_info.value.context["operation"] == "current_price"
        assert facade.metadata.failure_count == 1

    async def test_non_blocking_on_empty_store(self, facade):
        with pytest.raises(EmptyRange):
            await facade.current_price(blocking=False)

        await _settle()
        result = await facade.current_price(blocking=False)
        assert result.price == Decimal(99)
        assert result.stale is False

    async def test_non_blocking_serves_stale(self, facade, ibex_source, clock):
        await facade.current_price()
        ibex_source.publish(IBEX, Quote(index_id=IBEX, timestamp=date(2024, 1, 5), price=102))
        facade.invalidate()

        result = await facade.current_price(blocking=False)

        assert result.price == Decimal(99)
        assert result.stale is True
        await _settle()
        assert (await facade.current_price()).price == Decimal(102)

    async def test_joined_waiter_gets_stale_data_on_failure(self, scenario_quotes, feed_config, clock):
        source = ToggleSource(scenario_quotes)
        facade = IndexFacade(IBEX, source, config=feed_config, clock=clock)
        await facade.current_price()

        source.fail = True
        source.gate.clear()
        facade.invalidate()
        owner = asyncio.create_task(facade.current_price())
        joiner = asyncio.create_task(facade.current_price())
        await _settle()
        source.gate.set()

        with pytest.raises(SourceUnreachable):
            await owner
        served = await joiner
        assert served.price == Decimal(99)
        assert served.stale is True
        assert facade.state == FreshnessState.STALE

    async def test_shared_failure_keeps_each_callers_operation(self, scenario_quotes, feed_config, clock):
        source = ToggleSource(scenario_quotes)
        source.fail = True
        source.gate.clear()
        facade = IndexFacade(IBEX, source, config=feed_config, clock=clock)

        owner = asyncio.create_task(facade.current_price())
        await _settle()
        joiner = asyncio.create_task(
            facade.history(TimeRange(start=date(2024, 1, 2), end=date(2024, 1, 5)))
        )
        await _settle()
        source.gate.set()
        owner_error, joiner_error = await asyncio.gather(owner, joiner, return_exceptions=True)

        assert isinstance(owner_error, SourceUnreachable)
        assert isinstance(joiner_error, SourceUnreachable)
        assert owner_error is not joiner_error
        assert joiner_error.__cause__ is owner_error
        assert owner_error.context["operation"] == "current_price"
        assert joiner_error.context["operation"] == "history"
        assert joiner_error.context["index"] == IBEX

    async def test_unknown_index(self, feed_config, clock):
        facade = IndexFacade("^NOPE", StaticIndexSource(), config=feed_config, clock=clock)
        with pytest.raises(UnknownIndex) as exc_info:
            await facade.current_price()
        assert exc_info.value.context["index"] == "^NOPE"


class TestHistory:
    async def test_range_is_half_open(self, facade):
        result = await facade.history(TimeRange(start=date(2024, 1, 3), end=date(2024, 1, 5)))

        assert [q.price for q in result.quotes] == [101, 99]
        assert len(result) == 2
        assert result.partial is False
        assert result.stale is False
        assert result.index_id == IBEX

    async def test_earlier_start_extends_fetch(self, facade, ibex_source):
        await facade.current_price()
        await facade.history(TimeRange(start=date(2023, 10, 1), end=date(2024, 1, 5)))

        assert len(ibex_source.calls) == 2
        _, window = ibex_source.calls[-1]
        assert window.start == datetime(2023, 10, 1, tzinfo=timezone.utc)

    async def test_partial_when_upstream_cannot_vouch(self, scenario_quotes, feed_config, clock):
        source = StaticIndexSource(
            {IBEX: scenario_quotes},
            availability={IBEX: TimeRange(start=date(2024, 1, 2), end=date(2024, 1, 5))},
        )
        facade = IndexFacade(IBEX, source, config=feed_config, clock=clock)

        result = await facade.history(TimeRange(start=date(2024, 1, 1), end=date(2024, 1, 4)))

        assert result.partial is True
        assert [q.price for q in result.quotes] == [100, 101]
        inside = await facade.history(TimeRange(start=date(2024, 1, 3), end=date(2024, 1, 5)))
        assert inside.partial is False

    async def test_range_older_than_retention_is_refetched_and_flagged(self, clock):
        quotes = [
            Quote(index_id=IBEX, timestamp=date(2023, 1, 1) + timedelta(days=i), price=100 + i)
            for i in range(370)
        ]
        source = StaticIndexSource({IBEX: quotes})
        config = FeedConfig(
            freshness=FreshnessConfig(max_age_seconds=900, initial_lookback_days=400),
            retention=RetentionConfig(horizon_days=30),
        )
        facade = IndexFacade(IBEX, source, config=config, clock=clock)
        await facade.current_price()
        assert facade.store.first().timestamp == datetime(2023, 12, 7, tzinfo=timezone.utc)

        result = await facade.history(TimeRange(start=date(2023, 1, 1), end=date(2023, 6, 1)))

        assert len(source.calls) == 2
        assert source.calls[-1][1].start == datetime(2023, 1, 1, tzinfo=timezone.utc)
        assert result.quotes == ()
        assert result.partial is True

    async def test_empty_range_is_not_an_error(self, facade):
        result = await facade.history(TimeRange(start=date(2024, 1, 5), end=date(2024, 1, 6)))
        assert result.quotes == ()

    async def test_error_context_names_operation(self, feed_config, clock):
        facade = IndexFacade(IBEX, StaticIndexSource(), config=feed_config, clock=clock)
        with pytest.raises(UnknownIndex) as exc_info:
            await facade.history(TimeRange(start=date(2024, 1, 1), end=date(2024, 1, 5)))
        assert exc_info.value.context["operation"] == "history"


class TestAnalytics:
    async def test_simple_return(self, feed_config, clock):
        source = StaticIndexSource(
            {
                IBEX: [
                    Quote(index_id=IBEX, timestamp=date(2024, 1, 1), price=100),
                    Quote(index_id=IBEX, timestamp=date(2024, 1, 2), price=102),
                ]
            }
        )
        facade = IndexFacade(IBEX, source, config=feed_config, clock=clock)

        result = await facade.analytics(AnalyticsKind.SIMPLE_RETURN)

        assert result.value == Decimal("0.02")
        assert result.observations == 2
        assert result.window is None

    async def test_volatility_needs_window_plus_one_points(self, facade):
        with pytest.raises(InsufficientData) as exc_info:
            await facade.analytics(AnalyticsKind.VOLATILITY, AnalyticsParams(window=5))

        assert exc_info.value.context["required"] == 6
        assert exc_info.value.context["available"] == 3
        assert exc_info.value.context["operation"] == "analytics:volatility"

    async def test_moving_average_series(self, ramp_quotes, feed_config, clock):
        clock.now = datetime(2024, 1, 30, 12, tzinfo=timezone.utc)
        facade = IndexFacade(IBEX, StaticIndexSource({IBEX: ramp_quotes}), config=feed_config, clock=clock)

        result = await facade.analytics("moving_average", AnalyticsParams(window=5))

        assert result.kind == AnalyticsKind.MOVING_AVERAGE
        assert result.window == 5
        assert len(result.points) == 26
        assert result.value == Decimal(127)
        assert result.points[0].timestamp == datetime(2024, 1, 5, tzinfo=timezone.utc)

    async def test_moving_average_window_from_config(self, facade):
        with pytest.raises(InsufficientData) as exc_info:
            await facade.analytics(AnalyticsKind.MOVING_AVERAGE)
        assert exc_info.value.context == {
            "required": 20,
            "available": 3,
            "index": IBEX,
            "operation": "analytics:moving_average",
        }

    async def test_volatility_window_of_one_is_typed(self, facade):
        with pytest.raises(InsufficientData) as exc_info:
            await facade.analytics(AnalyticsKind.VOLATILITY, AnalyticsParams(window=1))

        context = exc_info.value.context
        assert context["window"] == 1
        assert context["required"] == 3
        assert context["available"] == 3
        assert context["index"] == IBEX
        assert context["operation"] == "analytics:volatility"

    async def test_volatility_over_ramp(self, ramp_quotes, feed_config, clock):
        clock.now = datetime(2024, 1, 30, 12, tzinfo=timezone.utc)
        facade = IndexFacade(IBEX, StaticIndexSource({IBEX: ramp_quotes}), config=feed_config, clock=clock)

        result = await facade.analytics(AnalyticsKind.VOLATILITY, AnalyticsParams(window=5))

        assert result.value == volatility(ramp_quotes, 5)
        assert result.value > 0

    async def test_max_drawdown(self, facade):
        result = await facade.analytics(AnalyticsKind.MAX_DRAWDOWN)
        assert result.value == Decimal(99) / Decimal(101) - 1

    async def test_time_range_restricts_input(self, facade):
        params = AnalyticsParams(time_range=TimeRange(start=date(2024, 1, 2), end=date(2024, 1, 4)))
        result = await facade.analytics(AnalyticsKind.SIMPLE_RETURN, params)
        assert result.value == Decimal("0.01")
        assert result.observations == 2

    async def test_empty_range(self, facade):
        params = AnalyticsParams(time_range=TimeRange(start=date(2024, 1, 5), end=date(2024, 1, 6)))
        with pytest.raises(EmptyRange):
            await facade.analytics(AnalyticsKind.MAX_DRAWDOWN, params)

    async def test_unknown_kind(self, facade):
        with pytest.raises(ValueError):
            await facade.analytics("sharpe_ratio")


class TestControl:
    async def test_forced_refresh_reports_correction(self, facade, ibex_source):
        await facade.current_price()
        ibex_source.publish(IBEX, Quote(index_id=IBEX, timestamp=date(2024, 1, 4), price=105))

        report = await facade.refresh()

        assert report.corrected == 1
        assert report.inserted == 0
        assert facade.store.latest().price == Decimal(105)

    async def test_invalidate(self, facade, ibex_source):
        await facade.current_price()
        facade.invalidate()
        assert facade.state == FreshnessState.STALE
        await facade.current_price()
        assert len(ibex_source.calls) == 2

    async def test_descriptor_and_repr(self, ibex_source, data_dir):
        descriptor = load_index_catalog(data_dir / "ibex35.yml")[IBEX]
        facade = open_index(IBEX, ibex_source, descriptor=descriptor)

        assert facade.index_id == IBEX
        assert facade.descriptor.currency == "EUR"
        assert facade.source is ibex_source
        assert "^IBEX" in repr(facade)
        assert len(ibex_source.calls) == 0
