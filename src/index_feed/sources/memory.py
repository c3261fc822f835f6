"""In-memory index source for replays, demos and tests."""

from __future__ import annotations

from collections.abc import Iterable

from index_feed.core.exceptions import UnknownIndex
from index_feed.core.models import FetchResult, IndexId, Quote, TimeRange
from index_feed.sources.base import build_fetch_result


class StaticIndexSource:
    """Serves a fixed set of quotes per index.

    Parameters
    ----------
    quotes : dict[str, Iterable[Quote]] | None
        Initial quotes keyed by index identifier.
    availability : dict[str, TimeRange] | None
        Optional span each index claims to cover. Requests reaching outside
        it come back as partial coverage.
    """

    name = "static"

    def __init__(
        self,
        quotes: dict[IndexId, Iterable[Quote]] | None = None,
        availability: dict[IndexId, TimeRange] | None = None,
    ) -> None:
        self._quotes: dict[IndexId, list[Quote]] = {
            index_id: list(items) for index_id, items in (quotes or {}).items()
        }
        self._availability = dict(availability or {})
        self.calls: list[tuple[IndexId, TimeRange]] = []

    def publish(self, index_id: IndexId, *quotes: Quote) -> None:
        """Append quotes for an index, as an upstream would when new data lands."""
        self._quotes.setdefault(index_id, []).extend(quotes)

    async def fetch(self, index_id: IndexId, time_range: TimeRange) -> FetchResult:
        self.calls.append((index_id, time_range))
        if index_id not in self._quotes:
            raise UnknownIndex(
                f"Unknown index {index_id!r}",
                context={"index": index_id, "source": self.name},
            )
        return build_fetch_result(
            index_id,
            time_range,
            list(self._quotes[index_id]),
            available=self._availability.get(index_id),
            source=self.name,
        )
