"""Index Facade — the public query surface for one index.

Each query asks the freshness controller first, then reads the series
store, then (for analytics) hands the quotes to the analytics engine::

    source = YahooIndexSource()
    ibex = open_index("^IBEX", source)
    price = await ibex.current_price()
    month = await ibex.history(TimeRange.trailing(timedelta(days=30)))
    vol = await ibex.analytics(AnalyticsKind.VOLATILITY, AnalyticsParams(window=10))

A facade owns its store and controller. The source is injected and can be
shared by any number of facades.
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import date, datetime

from index_feed import analytics as engine
from index_feed.catalog import IndexDescriptor
from index_feed.core.config import FeedConfig
from index_feed.core.exceptions import EmptyRange, IndexFeedError, InsufficientData
from index_feed.core.models import (
    AnalyticsKind,
    AnalyticsParams,
    AnalyticsResult,
    FreshnessState,
    HistoryResult,
    IndexId,
    MergeReport,
    PriceResult,
    Quote,
    TimeRange,
)
from index_feed.freshness import Clock, FreshnessCheck, FreshnessController, FreshnessMetadata
from index_feed.series.store import SeriesStore
from index_feed.sources.base import IndexDataSource

logger = logging.getLogger(__name__)


class IndexFacade:
    """Cached, self-refreshing access to one index.

    Parameters
    ----------
    index_id : str
        Identifier understood by ``source`` (e.g. "^IBEX").
    source : IndexDataSource
        Upstream for refreshes.
    config : FeedConfig | None
        Freshness, merge, retention and analytics settings. Defaults if None.
    descriptor : IndexDescriptor | None
        Optional catalog entry (constituents, trading hours).
    clock : Callable[[], datetime] | None
        Injectable "now" for the freshness controller.
    """

    def __init__(
        self,
        index_id: IndexId,
        source: IndexDataSource,
        config: FeedConfig | None = None,
        descriptor: IndexDescriptor | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._config = config or FeedConfig()
        self._source = source
        self._descriptor = descriptor
        self._store = SeriesStore(
            index_id,
            price_tolerance=self._config.merge.price_tolerance,
            policy=self._config.merge.policy,
            retention=self._config.retention.horizon,
        )
        self._controller = FreshnessController(
            self._store,
            source,
            config=self._config.freshness,
            retention=self._config.retention.horizon,
            clock=clock,
        )

    def __repr__(self) -> str:
        return f"IndexFacade(index_id={self.index_id!r}, state={self.state}, size={len(self._store)})"

    @property
    def index_id(self) -> IndexId:
        return self._store.index_id

    @property
    def store(self) -> SeriesStore:
        return self._store

    @property
    def source(self) -> IndexDataSource:
        return self._source

    @property
    def descriptor(self) -> IndexDescriptor | None:
        return self._descriptor

    @property
    def state(self) -> FreshnessState:
        return self._controller.state

    @property
    def metadata(self) -> FreshnessMetadata:
        return self._controller.metadata

    # --- Queries ---

    async def current_price(
        self,
        *,
        blocking: bool = True,
        timeout: float | None = None,
    ) -> PriceResult:
        """The most recent stored quote, refreshed first if stale.

        Raises
        ------
        EmptyRange
            No quote exists (a non-blocking call on an empty series, or an
            upstream with no data).
        SourceError, RefreshTimeout
            The refresh this call triggered failed and nothing is stored.
        """
        with self._operation("current_price"):
            check = await self._controller.ensure_fresh(blocking=blocking, timeout=timeout)
            latest = self._store.latest()
            self._raise_if_unserved(check, have_data=latest is not None)
            if latest is None:
                raise EmptyRange(f"No quotes stored for {self.index_id}")
            return PriceResult(quote=latest, stale=check.stale)

    async def history(
        self,
        time_range: TimeRange,
        *,
        blocking: bool = True,
        timeout: float | None = None,
    ) -> HistoryResult:
        """Stored quotes inside ``time_range``, oldest first.

        ``partial`` is set when fetches so far do not vouch for the whole
        range; the quotes returned are still every quote held for it.
        """
        with self._operation("history"):
            check = await self._controller.ensure_fresh(
                blocking=blocking, since=time_range.start, timeout=timeout
            )
            quotes = self._store.range(time_range.start, time_range.end)
            self._raise_if_unserved(check, have_data=bool(quotes))
            return HistoryResult(
                index_id=self.index_id,
                requested=time_range,
                quotes=tuple(quotes),
                partial=not self._controller.covers(time_range),
                stale=check.stale,
            )

    async def analytics(
        self,
        kind: AnalyticsKind | str,
        params: AnalyticsParams | None = None,
        *,
        blocking: bool = True,
        timeout: float | None = None,
    ) -> AnalyticsResult:
        """Compute a derived metric over the stored series.

        Without ``params.time_range`` the whole stored series is used.
        Windows default to the configured analytics windows.
        """
        kind = AnalyticsKind(kind)
        params = params or AnalyticsParams()
        with self._operation(f"analytics:{kind}"):
            since = params.time_range.start if params.time_range is not None else None
            check = await self._controller.ensure_fresh(
                blocking=blocking, since=since, timeout=timeout
            )
            if params.time_range is not None:
                quotes = self._store.range(params.time_range.start, params.time_range.end)
            else:
                quotes = list(self._store.snapshot())
            self._raise_if_unserved(check, have_data=bool(quotes))
            return self._compute(kind, params, quotes, stale=check.stale)

    # --- Control ---

    async def refresh(
        self,
        *,
        since: date | datetime | None = None,
        timeout: float | None = None,
    ) -> MergeReport:
        """Refresh from the source now, even if the series is fresh."""
        with self._operation("refresh"):
            return await self._controller.refresh(since=since, timeout=timeout)

    def invalidate(self) -> None:
        """Mark the series stale so the next query refreshes."""
        self._controller.invalidate()

    # --- Internals ---

    def _compute(
        self,
        kind: AnalyticsKind,
        params: AnalyticsParams,
        quotes: list[Quote],
        stale: bool,
    ) -> AnalyticsResult:
        window: int | None = None
        value = None
        points: tuple = ()

        if kind == AnalyticsKind.SIMPLE_RETURN:
            value = engine.range_return(quotes)
        elif kind == AnalyticsKind.MOVING_AVERAGE:
            window = params.window or self._config.analytics.moving_average_window
            if not quotes:
                raise EmptyRange("No quotes in range", context={"required": window, "available": 0})
            if len(quotes) < window:
                raise InsufficientData(
                    f"Need {window} quotes for a {window}-point moving average, have {len(quotes)}",
                    context={"required": window, "available": len(quotes)},
                )
            points = tuple(engine.moving_average(quotes, window))
            value = points[-1].value
        elif kind == AnalyticsKind.VOLATILITY:
            window = params.window or self._config.analytics.volatility_window
            if window < 2:
                raise InsufficientData(
                    f"Volatility needs a window of at least 2 returns, got {window}",
                    context={"required": 3, "available": len(quotes), "window": window},
                )
            value = engine.volatility(quotes, window)
        elif kind == AnalyticsKind.MAX_DRAWDOWN:
            value = engine.max_drawdown(quotes)

        return AnalyticsResult(
            index_id=self.index_id,
            kind=kind,
            window=window,
            value=value,
            points=points,
            observations=len(quotes),
            stale=stale,
        )

    def _raise_if_unserved(self, check: FreshnessCheck, have_data: bool) -> None:
        # A joined refresh failed: serve what we hold (already flagged stale),
        # or surface the failure when there is nothing to serve. The refresh
        # owner raises the original, so each joiner gets its own copy to tag.
        if check.error is None or have_data:
            return
        logger.warning("Nothing to serve for %s after a failed refresh", self.index_id)
        error = copy.copy(check.error)
        if isinstance(error, IndexFeedError):
            error.context = dict(check.error.context)
        raise error from check.error

    @contextmanager
    def _operation(self, name: str) -> Iterator[None]:
        try:
            yield
        except IndexFeedError as e:
            e.context.setdefault("index", self.index_id)
            e.context["operation"] = name
            raise


def open_index(
    index_id: IndexId,
    source: IndexDataSource,
    config: FeedConfig | None = None,
    descriptor: IndexDescriptor | None = None,
) -> IndexFacade:
    """Create a facade for ``index_id`` backed by ``source``.

    Nothing is fetched until the first query.
    """
    return IndexFacade(index_id, source, config=config, descriptor=descriptor)
