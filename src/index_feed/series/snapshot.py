"""SQLite-backed series snapshots.

Persists a SeriesStore's sorted, deduplicated sequence so a process can warm
its cache on start. Prices are stored as decimal text and timestamps as
ISO-8601 UTC, so a save/load cycle reproduces the sequence exactly.
"""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from pathlib import Path

import aiosqlite

from index_feed.core.exceptions import StorageError
from index_feed.core.models import IndexId, MergeReport, Quote
from index_feed.series.store import SeriesStore

logger = logging.getLogger(__name__)


class SqliteSeriesSnapshot:
    """Snapshot persistence for quote series.

    Parameters
    ----------
    db_path : str
        Path to the SQLite database file.
        Created automatically if it doesn't exist.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path
        self._initialized = False

    async def _ensure_table(self) -> None:
        """Create the quotes table if it doesn't exist."""
        if self._initialized:
            return

        Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        async with aiosqlite.connect(self._db_path) as db:
            await db.execute(
                """CREATE TABLE IF NOT EXISTS quotes (
                    index_id TEXT NOT NULL,
                    ts TEXT NOT NULL,
                    price TEXT NOT NULL,
                    volume INTEGER,
                    source TEXT NOT NULL DEFAULT 'unknown',
                    PRIMARY KEY (index_id, ts)
                )"""
            )
            await db.commit()
        self._initialized = True

    async def save(self, store: SeriesStore) -> int:
        """Replace the stored snapshot for ``store.index_id``.

        Returns the number of quotes written.
        """
        quotes = store.snapshot()
        try:
            await self._ensure_table()
            async with aiosqlite.connect(self._db_path) as db:
                await db.execute("DELETE FROM quotes WHERE index_id = ?", (store.index_id,))
                await db.executemany(
                    """INSERT INTO quotes (index_id, ts, price, volume, source)
                       VALUES (?, ?, ?, ?, ?)""",
                    [
                        (
                            q.index_id,
                            q.timestamp.isoformat(),
                            str(q.price),
                            q.volume,
                            q.source,
                        )
                        for q in quotes
                    ],
                )
                await db.commit()
        except Exception as e:
            raise StorageError(
                f"Failed to save snapshot: {e}",
                context={"operation": "save", "index": store.index_id, "path": self._db_path},
            ) from e

        logger.info("Saved %d quotes for %s", len(quotes), store.index_id)
        return len(quotes)

    async def load(self, index_id: IndexId) -> list[Quote]:
        """Return the stored quotes for an index, sorted by timestamp."""
        try:
            await self._ensure_table()
            async with aiosqlite.connect(self._db_path) as db:
                cursor = await db.execute(
                    """SELECT index_id, ts, price, volume, source
                       FROM quotes WHERE index_id = ? ORDER BY ts""",
                    (index_id,),
                )
                rows = await cursor.fetchall()
        except Exception as e:
            raise StorageError(
                f"Failed to load snapshot: {e}",
                context={"operation": "load", "index": index_id, "path": self._db_path},
            ) from e

        quotes = [
            Quote(
                index_id=row[0],
                timestamp=datetime.fromisoformat(row[1]),
                price=Decimal(row[2]),
                volume=row[3],
                source=row[4],
            )
            for row in rows
        ]
        # ISO strings with equal offsets sort lexically, but be explicit
        quotes.sort(key=lambda q: q.timestamp)
        return quotes

    async def restore(self, store: SeriesStore) -> MergeReport:
        """Merge the stored snapshot into ``store``."""
        quotes = await self.load(store.index_id)
        return store.merge(quotes)

    async def indexes(self) -> list[IndexId]:
        """Return all index identifiers with a stored snapshot."""
        try:
            await self._ensure_table()
            async with aiosqlite.connect(self._db_path) as db:
                cursor = await db.execute(
                    "SELECT DISTINCT index_id FROM quotes ORDER BY index_id"
                )
                rows = await cursor.fetchall()
        except Exception as e:
            raise StorageError(
                f"Failed to list snapshots: {e}",
                context={"operation": "list", "path": self._db_path},
            ) from e
        return [row[0] for row in rows]
