"""Index data source and adapter protocols — the source-agnostic interface layer.

Architecture
------------
The feed uses an adapter pattern to decouple upstream providers from the
series cache:

    Upstream → QuoteAdapter → list[Quote] → IndexDataSource → FetchResult → Facade

- **IndexDataSource** is the capability the rest of the system depends on.
  Any transport (HTTP API, CSV files, a replay buffer) that can answer
  ``fetch(index_id, time_range)`` can back an index.

- **QuoteAdapter** turns a provider's raw payload into ``Quote`` records.

- ``build_fetch_result`` is the shared normalization step every source runs
  before returning: range filtering, ordering, ownership checks and coverage
  classification.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any, Protocol, runtime_checkable

from index_feed.core.exceptions import MalformedUpstreamData
from index_feed.core.models import Coverage, FetchResult, IndexId, Quote, TimeRange


@runtime_checkable
class QuoteAdapter(Protocol):
    """Transforms raw data from one provider into Quote records.

    Parameters
    ----------
    raw_data : Any
        The raw response from the provider (JSON dict, CSV rows, ...).
        The adapter knows the expected shape.
    index_id : str
        The index the data belongs to.

    Returns
    -------
    list[Quote]
        Quotes sorted by timestamp ascending.
    """

    def adapt(self, raw_data: Any, index_id: IndexId) -> list[Quote]: ...


@runtime_checkable
class IndexDataSource(Protocol):
    """Fetches quotes for one index over a half-open time range.

    Implementations must be safe to call concurrently and must never
    silently truncate: when only part of the range is available the result
    is ``Coverage.PARTIAL`` with the covered sub-range.

    Raises
    ------
    SourceUnreachable
        Transport or connection failure.
    SourceRateLimited
        Upstream throttled the request; ``retry_after`` may carry a hint.
    UnknownIndex
        The identifier is not known to this source.
    MalformedUpstreamData
        The upstream payload could not be parsed.
    """

    name: str

    async def fetch(self, index_id: IndexId, time_range: TimeRange) -> FetchResult: ...


def build_fetch_result(
    index_id: IndexId,
    requested: TimeRange,
    candidates: Iterable[Quote],
    available: TimeRange | None = None,
    source: str = "unknown",
) -> FetchResult:
    """Normalize raw candidates into a FetchResult.

    Parameters
    ----------
    index_id : str
        The index that was requested. Candidates for any other index mean
        the upstream answered the wrong question.
    requested : TimeRange
        The range the caller asked for.
    candidates : Iterable[Quote]
        Parsed quotes in arrival order. Same-timestamp candidates keep their
        relative order so later arrivals still win at merge time.
    available : TimeRange | None
        The span the provider says it has data for. None means the provider
        claims the full requested range.
    source : str
        Adapter name recorded on the result.
    """
    kept: list[Quote] = []
    for quote in candidates:
        if quote.index_id != index_id:
            raise MalformedUpstreamData(
                f"Upstream returned a quote for {quote.index_id!r} when {index_id!r} was requested",
                context={"index": index_id, "source": source, "got": quote.index_id},
            )
        if requested.contains(quote.timestamp):
            kept.append(quote)
    kept.sort(key=lambda q: q.timestamp)

    if not kept:
        return FetchResult(
            index_id=index_id,
            requested=requested,
            coverage=Coverage.EMPTY,
            source=source,
        )

    covered = requested if available is None else requested.intersection(available)
    if covered is None:
        # Availability metadata disagrees with the data; trust the quotes.
        covered = TimeRange(start=kept[0].timestamp, end=requested.end)

    if covered == requested:
        return FetchResult(
            index_id=index_id,
            requested=requested,
            quotes=tuple(kept),
            coverage=Coverage.COMPLETE,
            source=source,
        )
    return FetchResult(
        index_id=index_id,
        requested=requested,
        quotes=tuple(kept),
        coverage=Coverage.PARTIAL,
        covered=covered,
        source=source,
    )
