"""Bounded exponential-backoff wrapper around any index data source.

The core never retries on its own; wrapping a source opts in explicitly:

    source = RetryingSource(YahooIndexSource(), max_retries=3)

Only transient failures are retried. ``UnknownIndex`` and
``MalformedUpstreamData`` are raised on the first occurrence.
"""

from __future__ import annotations

import asyncio
import logging
import random

from index_feed.core.exceptions import SourceRateLimited, SourceUnreachable
from index_feed.core.models import FetchResult, IndexId, TimeRange
from index_feed.sources.base import IndexDataSource

logger = logging.getLogger(__name__)


class RetryingSource:
    """Retries transient source failures with capped exponential backoff.

    Parameters
    ----------
    source : IndexDataSource
        The wrapped source.
    max_retries : int
        Retries after the first attempt. Default: 3.
    base_delay : float
        Delay before the first retry, doubled on each further retry.
    max_delay : float
        Upper bound for any single wait, including ``retry_after`` hints.
    jitter : bool
        Add up to 10% random jitter to computed delays.
    """

    def __init__(
        self,
        source: IndexDataSource,
        max_retries: int = 3,
        base_delay: float = 0.5,
        max_delay: float = 30.0,
        jitter: bool = True,
    ) -> None:
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        self._source = source
        self._max_retries = max_retries
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._jitter = jitter
        self.name = f"retrying({source.name})"

    @property
    def wrapped(self) -> IndexDataSource:
        return self._source

    async def close(self) -> None:
        close = getattr(self._source, "close", None)
        if close is not None:
            await close()

    async def fetch(self, index_id: IndexId, time_range: TimeRange) -> FetchResult:
        for attempt in range(self._max_retries + 1):
            try:
                return await self._source.fetch(index_id, time_range)
            except SourceRateLimited as e:
                if attempt >= self._max_retries:
                    raise
                delay = self._delay(attempt, hint=e.retry_after)
                logger.warning(
                    "Rate limited fetching %s, waiting %.2fs (attempt %d/%d)",
                    index_id, delay, attempt + 1, self._max_retries,
                )
            except SourceUnreachable:
                if attempt >= self._max_retries:
                    raise
                delay = self._delay(attempt)
                logger.warning(
                    "Source unreachable for %s, retrying in %.2fs (attempt %d/%d)",
                    index_id, delay, attempt + 1, self._max_retries,
                )
            await asyncio.sleep(delay)

        # the loop either returns or re-raises on its last iteration
        raise AssertionError("unreachable")

    def _delay(self, attempt: int, hint: float | None = None) -> float:
        if hint is not None:
            return min(hint, self._max_delay)
        delay = self._base_delay * (2**attempt)
        if self._jitter:
            delay += random.uniform(0, delay * 0.1)
        return min(delay, self._max_delay)
