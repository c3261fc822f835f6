"""In-memory ordered quote series for a single index.

The store keeps an immutable tuple of quotes sorted by timestamp. Merges
build a new tuple under a writer lock and swap it in with one assignment,
so readers holding the previous tuple never observe a half-applied merge.
"""

from __future__ import annotations

import logging
import threading
from bisect import bisect_left
from collections.abc import Iterable, Iterator
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

from index_feed.core.models import (
    Correction,
    IndexId,
    MergePolicy,
    MergeReport,
    Quote,
    as_utc,
)

logger = logging.getLogger(__name__)


class SeriesStore:
    """Sorted, duplicate-free quote series for one index.

    Parameters
    ----------
    index_id : str
        The only index whose quotes this store accepts.
    price_tolerance : Decimal
        Two prices at the same timestamp whose difference is within this
        tolerance are treated as the same observation.
    policy : MergePolicy
        What to do when a colliding candidate differs beyond tolerance.
    retention : timedelta | None
        Default horizon for ``retain``. None keeps everything.
    """

    def __init__(
        self,
        index_id: IndexId,
        price_tolerance: Decimal = Decimal("0"),
        policy: MergePolicy = MergePolicy.TOLERANCE,
        retention: timedelta | None = None,
    ) -> None:
        if price_tolerance < 0:
            raise ValueError("price_tolerance must be >= 0")
        self._index_id = index_id
        self._tolerance = price_tolerance
        self._policy = policy
        self._retention = retention
        self._quotes: tuple[Quote, ...] = ()
        self._write_lock = threading.Lock()

    @property
    def index_id(self) -> IndexId:
        return self._index_id

    @property
    def policy(self) -> MergePolicy:
        return self._policy

    def __len__(self) -> int:
        return len(self._quotes)

    def __iter__(self) -> Iterator[Quote]:
        return iter(self._quotes)

    def __repr__(self) -> str:
        return f"SeriesStore(index_id={self._index_id!r}, size={len(self._quotes)})"

    def snapshot(self) -> tuple[Quote, ...]:
        """The current sequence. Safe to hold while merges happen."""
        return self._quotes

    def latest(self) -> Quote | None:
        quotes = self._quotes
        return quotes[-1] if quotes else None

    def first(self) -> Quote | None:
        quotes = self._quotes
        return quotes[0] if quotes else None

    def range(self, start: date | datetime, end: date | datetime) -> list[Quote]:
        """Quotes with ``start <= timestamp < end``, in order.

        Out-of-bounds or inverted ranges yield an empty list.
        """
        quotes = self._quotes
        lo_ts = as_utc(start)
        hi_ts = as_utc(end)
        if not quotes or hi_ts <= lo_ts:
            return []
        keys = [q.timestamp for q in quotes]
        lo = bisect_left(keys, lo_ts)
        hi = bisect_left(keys, hi_ts, lo)
        return list(quotes[lo:hi])

    def merge(self, candidates: Iterable[Quote]) -> MergeReport:
        """Insert candidates at their sorted positions.

        Collisions are resolved in arrival order: a later candidate for the
        same timestamp is compared against whatever is stored at that point,
        including quotes inserted earlier in the same batch.
        """
        with self._write_lock:
            quotes = list(self._quotes)
            keys = [q.timestamp for q in quotes]
            inserted = duplicates = rejected = 0
            corrections: list[Correction] = []

            for candidate in candidates:
                if candidate.index_id != self._index_id:
                    raise ValueError(
                        f"quote for {candidate.index_id!r} cannot be merged "
                        f"into series {self._index_id!r}"
                    )
                pos = bisect_left(keys, candidate.timestamp)
                if pos == len(keys) or keys[pos] != candidate.timestamp:
                    keys.insert(pos, candidate.timestamp)
                    quotes.insert(pos, candidate)
                    inserted += 1
                    continue

                existing = quotes[pos]
                if self._same_observation(existing, candidate):
                    duplicates += 1
                elif self._policy == MergePolicy.KEEP:
                    rejected += 1
                else:
                    quotes[pos] = candidate
                    corrections.append(
                        Correction(
                            timestamp=candidate.timestamp,
                            previous_price=existing.price,
                            new_price=candidate.price,
                        )
                    )

            self._quotes = tuple(quotes)

        for c in corrections:
            logger.info(
                "Corrected %s at %s: %s -> %s",
                self._index_id, c.timestamp.isoformat(), c.previous_price, c.new_price,
            )
        return MergeReport(
            inserted=inserted,
            corrected=len(corrections),
            duplicates_ignored=duplicates,
            rejected=rejected,
            corrections=tuple(corrections),
        )

    def _same_observation(self, existing: Quote, candidate: Quote) -> bool:
        diff = abs(existing.price - candidate.price)
        if self._policy == MergePolicy.REPLACE:
            return diff == 0
        return diff <= self._tolerance

    def retain(
        self,
        horizon: timedelta | None = None,
        now: datetime | None = None,
    ) -> int:
        """Evict quotes older than ``now - horizon``.

        Falls back to the configured retention horizon; does nothing when
        neither is set. The most recent quote is always kept.

        Returns
        -------
        int
            Number of quotes evicted.
        """
        horizon = horizon if horizon is not None else self._retention
        if horizon is None:
            return 0
        now_ts = as_utc(now) if now is not None else datetime.now(timezone.utc)
        cutoff = now_ts - horizon

        with self._write_lock:
            quotes = self._quotes
            if len(quotes) <= 1:
                return 0
            keys = [q.timestamp for q in quotes]
            cut = min(bisect_left(keys, cutoff), len(quotes) - 1)
            if cut == 0:
                return 0
            self._quotes = quotes[cut:]

        logger.info("Evicted %d quotes older than %s from %s", cut, cutoff.isoformat(), self._index_id)
        return cut
