"""Per-index cache freshness and single-flight refresh.

State machine
-------------
::

    Stale ──query/refresh──▶ Refreshing ──success──▶ Fresh
      ▲                          │                     │
      └────────failure/timeout───┘◀──max_age/invalidate┘

A refresh is one ``asyncio.Task`` shared by every caller that arrives while
it runs. Callers await it through ``asyncio.shield``: a waiter that times out
or is cancelled stops waiting, the refresh itself keeps going and still
merges its result for everyone else.

The controller is bound to the event loop that created its refresh task.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone

from index_feed.core.config import FreshnessConfig
from index_feed.core.exceptions import IndexFeedError, MalformedUpstreamData, RefreshTimeout
from index_feed.core.models import (
    Coverage,
    FetchResult,
    FreshnessState,
    IndexId,
    MergeReport,
    TimeRange,
    as_utc,
)
from index_feed.series.store import SeriesStore
from index_feed.sources.base import IndexDataSource

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class FreshnessMetadata:
    """Bookkeeping for one index. Mutated only by its controller."""

    last_refresh_at: datetime | None = None
    last_response_seconds: float | None = None
    in_flight: bool = False
    invalidated: bool = False
    fetched_from: datetime | None = None
    covered: TimeRange | None = None
    last_coverage: Coverage | None = None
    last_error: str | None = None
    refresh_count: int = 0
    failure_count: int = 0


@dataclass(frozen=True)
class FreshnessCheck:
    """Outcome of ``ensure_fresh`` for one caller.

    ``error`` is set only for callers that joined a refresh someone else
    started and that refresh failed; the caller that started it gets the
    exception raised instead.
    """

    state: FreshnessState
    stale: bool
    refreshed: bool = False
    error: Exception | None = None


class FreshnessController:
    """Decides when a series needs refreshing and runs the refresh.

    Parameters
    ----------
    store : SeriesStore
        The series this controller keeps fresh.
    source : IndexDataSource
        Where refreshes fetch from. May be shared with other controllers.
    config : FreshnessConfig | None
        Ages, timeouts and fetch windows. Defaults if None.
    retention : timedelta | None
        Horizon applied to the store after each successful merge.
    clock : Callable[[], datetime] | None
        Source of "now" as an aware datetime. Wall clock if None.
    """

    def __init__(
        self,
        store: SeriesStore,
        source: IndexDataSource,
        config: FreshnessConfig | None = None,
        retention: timedelta | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._store = store
        self._source = source
        self._config = config or FreshnessConfig()
        self._retention = retention
        self._clock = clock or _utcnow
        self._meta = FreshnessMetadata()
        self._inflight: asyncio.Task[MergeReport] | None = None

    @property
    def index_id(self) -> IndexId:
        return self._store.index_id

    @property
    def metadata(self) -> FreshnessMetadata:
        """A copy of the current bookkeeping."""
        return dataclasses.replace(self._meta)

    @property
    def state(self) -> FreshnessState:
        if self._inflight is not None:
            return FreshnessState.REFRESHING
        if self.is_stale():
            return FreshnessState.STALE
        return FreshnessState.FRESH

    def is_stale(self, since: date | datetime | None = None) -> bool:
        """Whether a query needing data from ``since`` onwards must refresh first."""
        meta = self._meta
        if meta.last_refresh_at is None or meta.invalidated:
            return True
        if self._clock() - meta.last_refresh_at > self._config.max_age:
            return True
        if since is not None:
            if meta.fetched_from is None or as_utc(since) < meta.fetched_from:
                return True
        return False

    def covers(self, time_range: TimeRange) -> bool:
        """Whether successful fetches so far vouch for all of ``time_range``.

        The tracked coverage is the span of every covered range, so a gap
        between two separate fetches is not detected here.
        """
        covered = self._meta.covered
        if covered is None or time_range.start < covered.start:
            return False
        if time_range.end > covered.end and self._meta.last_coverage == Coverage.PARTIAL:
            return False
        return True

    def invalidate(self) -> None:
        """Force the next query to refresh."""
        self._meta.invalidated = True
        logger.debug("Invalidated %s", self.index_id)

    async def ensure_fresh(
        self,
        *,
        blocking: bool = True,
        since: date | datetime | None = None,
        timeout: float | None = None,
    ) -> FreshnessCheck:
        """Make sure the series is fresh enough to answer a query.

        Parameters
        ----------
        blocking : bool
            Wait for the refresh. When False, a background refresh is
            started (if none runs) and the call returns at once.
        since : date | datetime | None
            Earliest instant the query needs. Earlier than anything fetched
            so far counts as stale.
        timeout : float | None
            Seconds this caller is willing to wait.

        Raises
        ------
        RefreshTimeout
            This caller's wait or the refresh it started ran out of time.
        SourceError
            The refresh this caller started failed.
        """
        if self._inflight is None and not self.is_stale(since):
            return FreshnessCheck(state=FreshnessState.FRESH, stale=False)

        if not blocking:
            self._start(since, timeout)
            return FreshnessCheck(state=self.state, stale=True)

        # A joined refresh may have fetched a shorter window than ``since``
        # needs; at most one more refresh is started for it.
        for _ in range(2):
            task, owner = self._start(since, timeout)
            try:
                await self._wait(task, None if owner else timeout)
            except Exception as e:
                # still running means this caller's own wait expired
                if owner or not task.done():
                    raise
                return FreshnessCheck(state=self.state, stale=True, error=e)
            if owner or not self.is_stale(since):
                return FreshnessCheck(state=self.state, stale=False, refreshed=True)

        return FreshnessCheck(state=self.state, stale=self.is_stale(since), refreshed=True)

    async def refresh(
        self,
        *,
        since: date | datetime | None = None,
        timeout: float | None = None,
    ) -> MergeReport:
        """Refresh now, regardless of freshness.

        Joins the in-flight refresh if there is one and returns its report.
        """
        task, owner = self._start(since, timeout)
        return await self._wait(task, None if owner else timeout)

    def _start(
        self,
        since: date | datetime | None,
        timeout: float | None,
    ) -> tuple[asyncio.Task[MergeReport], bool]:
        """Return the in-flight refresh, starting one if needed.

        The second element is True when this call started the task.
        """
        if self._inflight is not None:
            return self._inflight, False

        window = self._fetch_window(since)
        deadline = _earliest(self._config.refresh_timeout_seconds, timeout)
        task = asyncio.get_running_loop().create_task(
            self._run(window, deadline),
            name=f"refresh:{self.index_id}",
        )
        self._inflight = task
        self._meta.in_flight = True
        task.add_done_callback(self._consume_result)
        return task, True

    async def _wait(self, task: asyncio.Task[MergeReport], timeout: float | None) -> MergeReport:
        if timeout is None:
            return await asyncio.shield(task)
        try:
            return await asyncio.wait_for(asyncio.shield(task), timeout)
        except asyncio.TimeoutError as e:
            raise RefreshTimeout(
                f"Gave up waiting for {self.index_id} refresh after {timeout}s",
                context={"index": self.index_id, "operation": "refresh", "timeout": timeout},
            ) from e

    def _fetch_window(self, since: date | datetime | None) -> TimeRange:
        now = self._clock()
        latest = self._store.latest()
        if self._meta.fetched_from is None:
            start = now - self._config.initial_lookback
        elif latest is not None:
            start = latest.timestamp - self._config.refresh_overlap
        else:
            start = self._meta.fetched_from
        if since is not None:
            start = min(start, as_utc(since))
        # clock skew can leave the latest point in the future
        start = min(start, now - timedelta(seconds=1))
        return TimeRange(start=start, end=now)

    async def _run(self, window: TimeRange, deadline: float | None) -> MergeReport:
        index_id = self.index_id
        logger.info(
            "Refreshing %s from %s over [%s, %s)",
            index_id, self._source.name, window.start.isoformat(), window.end.isoformat(),
        )
        started = time.monotonic()
        try:
            result = await self._fetch(window, deadline)
            report = self._store.merge(result.quotes)
            evicted = self._store.retain(self._retention, now=self._clock()) if self._retention else 0
        except Exception as e:
            self._meta.invalidated = True
            self._meta.last_error = f"{type(e).__name__}: {e}"
            self._meta.failure_count += 1
            if isinstance(e, IndexFeedError):
                e.context.setdefault("index", index_id)
                e.context.setdefault("source", self._source.name)
                e.context.setdefault("operation", "refresh")
            logger.warning("Refresh of %s failed: %s", index_id, e)
            raise
        else:
            self._record_success(window, result, time.monotonic() - started)
            if evicted:
                self._clip_to_store()
            logger.info(
                "Refreshed %s: %d fetched (%s), %d inserted, %d corrected, %d evicted",
                index_id, len(result.quotes), result.coverage,
                report.inserted, report.corrected, evicted,
            )
            return report
        finally:
            self._inflight = None
            self._meta.in_flight = False

    async def _fetch(self, window: TimeRange, deadline: float | None) -> FetchResult:
        try:
            if deadline is None:
                result = await self._source.fetch(self.index_id, window)
            else:
                result = await asyncio.wait_for(self._source.fetch(self.index_id, window), deadline)
        except asyncio.TimeoutError as e:
            raise RefreshTimeout(
                f"Refresh of {self.index_id} timed out after {deadline}s",
                context={"index": self.index_id, "operation": "refresh", "timeout": deadline},
            ) from e
        if result.index_id != self.index_id:
            raise MalformedUpstreamData(
                f"Source answered {result.index_id!r} for a {self.index_id!r} request",
                context={"index": self.index_id, "source": self._source.name},
            )
        return result

    def _record_success(self, window: TimeRange, result: FetchResult, elapsed: float) -> None:
        meta = self._meta
        meta.last_refresh_at = self._clock()
        meta.last_response_seconds = elapsed
        meta.invalidated = False
        meta.last_error = None
        meta.refresh_count += 1
        meta.last_coverage = result.coverage
        if meta.fetched_from is None or window.start < meta.fetched_from:
            meta.fetched_from = window.start
        covered = result.covered_range
        if covered is not None:
            meta.covered = covered if meta.covered is None else meta.covered.union_span(covered)

    def _clip_to_store(self) -> None:
        # evicted quotes are no longer vouched for, so queries reaching back refetch
        first = self._store.first()
        if first is None:
            return
        meta = self._meta
        if meta.fetched_from is not None and meta.fetched_from < first.timestamp:
            meta.fetched_from = first.timestamp
        covered = meta.covered
        if covered is not None and covered.start < first.timestamp:
            meta.covered = (
                TimeRange(start=first.timestamp, end=covered.end)
                if first.timestamp < covered.end
                else None
            )

    def _consume_result(self, task: asyncio.Task[MergeReport]) -> None:
        # Background refreshes may have no awaiter; failures were logged in _run.
        if not task.cancelled():
            task.exception()


def _earliest(*timeouts: float | None) -> float | None:
    values = [t for t in timeouts if t is not None]
    return min(values) if values else None
