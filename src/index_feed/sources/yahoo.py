"""Yahoo Finance index source — direct HTTP implementation.

Uses the unauthenticated ``/v8/finance/chart/`` endpoint via httpx.
Index symbols use Yahoo's caret convention (``^IBEX``, ``^GSPC``, ``^STOXX50E``).

Daily bars are stamped by Yahoo with the session's open time, and the bar
for a session still in progress carries the time of the last trade. Both
are normalized to midnight UTC of the exchange-local trading date, so
repeated refreshes of the same session collide on one timestamp instead of
piling up near-duplicates.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
from aiolimiter import AsyncLimiter
from pydantic import ValidationError

from index_feed.core.exceptions import (
    MalformedUpstreamData,
    SourceRateLimited,
    SourceUnreachable,
    UnknownIndex,
)
from index_feed.core.models import FetchResult, IndexId, Quote, TimeRange
from index_feed.sources.base import build_fetch_result

logger = logging.getLogger(__name__)

_BASE_URL = "https://query2.finance.yahoo.com"
_CHART_PATH = "/v8/finance/chart"
_USER_AGENT = "Mozilla/5.0 (compatible; index-feed/0.1)"

_DAILY_INTERVALS = {"1d", "5d", "1wk", "1mo", "3mo"}


class YahooChartAdapter:
    """Transforms a Yahoo Finance chart result into Quote records.

    Parameters
    ----------
    interval : str
        The bar interval the payload was requested with. Daily and coarser
        intervals are stamped at midnight UTC of the local trading date.
    """

    def __init__(self, interval: str = "1d") -> None:
        self._interval = interval

    def adapt(self, raw_data: Any, index_id: IndexId) -> list[Quote]:
        """Parse the ``chart.result[0]`` object into quotes.

        Bars with a null close (holidays, halted sessions) are skipped.
        """
        timestamps: list[int] = raw_data.get("timestamp") or []
        if not timestamps:
            return []

        quote_block = (raw_data.get("indicators", {}).get("quote") or [{}])[0]
        closes: list[float | None] = quote_block.get("close") or []
        volumes: list[int | None] = quote_block.get("volume") or []
        gmtoffset = int(raw_data.get("meta", {}).get("gmtoffset") or 0)
        daily = self._interval in _DAILY_INTERVALS

        quotes: list[Quote] = []
        for i, ts in enumerate(timestamps):
            close = closes[i] if i < len(closes) else None
            if close is None:
                continue
            volume = volumes[i] if i < len(volumes) else None
            quotes.append(
                Quote(
                    index_id=index_id,
                    timestamp=self._stamp(ts, gmtoffset, daily),
                    price=close,
                    volume=int(volume) if volume is not None else None,
                    source="yahoo_finance",
                )
            )

        return sorted(quotes, key=lambda q: q.timestamp)

    @staticmethod
    def _stamp(ts: int, gmtoffset: int, daily: bool) -> datetime:
        if not daily:
            return datetime.fromtimestamp(ts, tz=timezone.utc)
        local_date = datetime.fromtimestamp(ts + gmtoffset, tz=timezone.utc).date()
        return datetime(local_date.year, local_date.month, local_date.day, tzinfo=timezone.utc)

    @staticmethod
    def first_trade(raw_data: Any) -> datetime | None:
        """Earliest instant the upstream has data for, from chart metadata."""
        first = raw_data.get("meta", {}).get("firstTradeDate")
        if first is None:
            return None
        day = datetime.fromtimestamp(int(first), tz=timezone.utc).date()
        return datetime(day.year, day.month, day.day, tzinfo=timezone.utc)


class YahooIndexSource:
    """Fetches index quotes from Yahoo Finance's chart API.

    One ``httpx.AsyncClient`` and one rate limiter are shared by all
    concurrent fetches, so a single instance can back many facades.

    Parameters
    ----------
    base_url : str
        Override base URL (useful for testing).
    timeout : float
        HTTP request timeout in seconds. Default: 15.0.
    rate_limit : float
        Maximum requests per second. Default: 2.0.
    interval : str
        Yahoo bar interval. Default: "1d".
    adapter : YahooChartAdapter | None
        Custom adapter instance. Uses default if None.
    """

    name = "yahoo_finance"

    def __init__(
        self,
        base_url: str = _BASE_URL,
        timeout: float = 15.0,
        rate_limit: float = 2.0,
        interval: str = "1d",
        adapter: YahooChartAdapter | None = None,
    ) -> None:
        self._base_url = base_url
        self._interval = interval
        self._adapter = adapter or YahooChartAdapter(interval)
        self._limiter = AsyncLimiter(max_rate=rate_limit, time_period=1.0)
        self._client = httpx.AsyncClient(
            headers={"User-Agent": _USER_AGENT},
            timeout=httpx.Timeout(timeout),
            follow_redirects=True,
        )

    async def __aenter__(self) -> YahooIndexSource:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the underlying HTTP client. Called automatically by __aexit__."""
        await self._client.aclose()

    async def fetch(self, index_id: IndexId, time_range: TimeRange) -> FetchResult:
        """Fetch daily closes for ``index_id`` over ``time_range``."""
        raw = await self._fetch_chart(index_id, time_range)

        try:
            quotes = self._adapter.adapt(raw, index_id)
            first_trade = self._adapter.first_trade(raw)
        except (ValidationError, ValueError, TypeError, KeyError, IndexError, AttributeError) as e:
            raise MalformedUpstreamData(
                f"Unparsable Yahoo Finance chart for {index_id}: {e}",
                context={"index": index_id, "source": self.name, "cause": str(e)},
            ) from e

        available = None
        if first_trade is not None and first_trade > time_range.start:
            available = TimeRange(
                start=first_trade,
                end=max(time_range.end, first_trade + timedelta(seconds=1)),
            )
        return build_fetch_result(index_id, time_range, quotes, available=available, source=self.name)

    async def _fetch_chart(self, index_id: IndexId, time_range: TimeRange) -> dict:
        """Fetch the raw ``chart.result[0]`` object for one index."""
        url = f"{self._base_url}{_CHART_PATH}/{index_id}"
        params = {
            "interval": self._interval,
            "period1": str(int(time_range.start.timestamp())),
            "period2": str(int(time_range.end.timestamp())),
        }
        context = {"index": index_id, "source": self.name, "url": url}

        try:
            await self._limiter.acquire()
            resp = await self._client.get(url, params=params)
        except httpx.RequestError as e:
            logger.error("Yahoo Finance request error for %s: %s", index_id, e)
            raise SourceUnreachable(
                f"Could not reach Yahoo Finance for {index_id}: {e}",
                context={**context, "cause": str(e)},
            ) from e

        if resp.status_code == 404:
            raise UnknownIndex(f"Yahoo Finance does not know {index_id!r}", context=context)

        if resp.status_code == 429:
            retry_after = _parse_retry_after(resp.headers.get("Retry-After"))
            logger.warning("Yahoo Finance rate limited %s (retry after %s)", index_id, retry_after)
            raise SourceRateLimited(
                f"Yahoo Finance rate limited {index_id}",
                context={**context, "retry_after": retry_after},
            )

        if resp.status_code != 200:
            logger.error(
                "Yahoo Finance HTTP error for %s: %s %s",
                index_id, resp.status_code, resp.text[:200],
            )
            raise SourceUnreachable(
                f"Yahoo Finance returned HTTP {resp.status_code} for {index_id}",
                context={**context, "status_code": resp.status_code},
            )

        try:
            data = resp.json()
        except ValueError as e:
            raise MalformedUpstreamData(
                f"Yahoo Finance returned non-JSON payload for {index_id}",
                context={**context, "cause": str(e)},
            ) from e

        chart = data.get("chart") if isinstance(data, dict) else None
        if not isinstance(chart, dict):
            raise MalformedUpstreamData(
                f"Yahoo Finance payload for {index_id} has no chart object",
                context=context,
            )

        if chart.get("error"):
            err = chart["error"]
            code = err.get("code") if isinstance(err, dict) else str(err)
            description = err.get("description") if isinstance(err, dict) else None
            logger.error("Yahoo Finance API error for %s: %s — %s", index_id, code, description)
            if code == "Not Found":
                raise UnknownIndex(
                    f"Yahoo Finance does not know {index_id!r}",
                    context={**context, "cause": description},
                )
            raise MalformedUpstreamData(
                f"Yahoo Finance API error for {index_id}: {code}",
                context={**context, "cause": description},
            )

        results = chart.get("result")
        if not results or not isinstance(results[0], dict):
            raise MalformedUpstreamData(
                f"Yahoo Finance returned no chart result for {index_id}",
                context=context,
            )
        return results[0]


def _parse_retry_after(value: str | None) -> float | None:
    if value is None:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None
