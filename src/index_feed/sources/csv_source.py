"""CSV index source — serves quotes from one CSV file per index.

Useful for back-filled vendor exports and offline replays. Any file with a
date column and a close (or price) column works; column names are
auto-detected unless given explicitly.
"""

from __future__ import annotations

import csv
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from index_feed.core.exceptions import MalformedUpstreamData, SourceUnreachable, UnknownIndex
from index_feed.core.models import FetchResult, IndexId, Quote, TimeRange
from index_feed.sources.base import build_fetch_result

logger = logging.getLogger(__name__)

# Common column name mappings for auto-detection
_DATE_ALIASES = {"date", "Date", "DATE", "timestamp", "Timestamp", "datetime"}
_PRICE_ALIASES = {"close", "Close", "CLOSE", "price", "Price", "last", "Last"}
_VOLUME_ALIASES = {"volume", "Volume", "VOLUME", "vol", "Vol"}


def _find_column(headers: list[str], aliases: set[str]) -> str | None:
    """Find the first header that matches any alias."""
    for h in headers:
        if h in aliases:
            return h
    return None


def _parse_timestamp(value: str, date_format: str) -> datetime:
    """Parse a CSV date/datetime cell. Naive values are taken as UTC."""
    text = value.strip()
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        parsed = datetime.strptime(text, date_format)
    if len(text) <= 10 and parsed.time() == datetime.min.time():
        # date-only cell
        return datetime.combine(parsed.date(), datetime.min.time(), tzinfo=timezone.utc)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed


class CSVQuoteAdapter:
    """Transforms CSV rows into Quote records.

    Parameters
    ----------
    date_col : str | None
        Name of the date column. Auto-detected if None.
    price_col : str | None
        Name of the closing level column. Auto-detected if None.
    volume_col : str | None
        Name of the volume column. Auto-detected if None.
    date_format : str
        strptime fallback when a cell is not ISO-8601.
    """

    def __init__(
        self,
        date_col: str | None = None,
        price_col: str | None = None,
        volume_col: str | None = None,
        date_format: str = "%d/%m/%Y",
    ) -> None:
        self._date_col = date_col
        self._price_col = price_col
        self._volume_col = volume_col
        self._date_format = date_format

    def adapt(self, raw_data: Any, index_id: IndexId) -> list[Quote]:
        """Parse CSV rows (list of dicts from csv.DictReader) into quotes.

        Rows with an unparseable date or an empty price are skipped with a
        warning. Missing date or price columns raise ValueError.
        """
        if not raw_data:
            return []

        headers = list(raw_data[0].keys())
        date_col = self._date_col or _find_column(headers, _DATE_ALIASES)
        price_col = self._price_col or _find_column(headers, _PRICE_ALIASES)
        volume_col = self._volume_col or _find_column(headers, _VOLUME_ALIASES)

        if date_col is None:
            raise ValueError(f"Cannot find date column in headers: {headers}")
        if price_col is None:
            raise ValueError(f"Cannot find price column in headers: {headers}")

        quotes: list[Quote] = []
        for row in raw_data:
            try:
                ts = _parse_timestamp(row[date_col], self._date_format)
            except (ValueError, KeyError, TypeError):
                logger.warning("Skipping row with unparseable date: %s", row.get(date_col))
                continue

            price = (row.get(price_col) or "").strip()
            if not price:
                logger.warning("Skipping %s row without a price", ts.date().isoformat())
                continue

            volume = (row.get(volume_col) or "").strip() if volume_col else ""
            quotes.append(
                Quote(
                    index_id=index_id,
                    timestamp=ts,
                    price=price,
                    volume=int(float(volume)) if volume else None,
                    source="csv",
                )
            )

        return sorted(quotes, key=lambda q: q.timestamp)


class CSVIndexSource:
    """Serves index quotes from ``<directory>/<index>.csv`` files.

    A leading caret in the identifier is dropped when looking up the file,
    so ``^IBEX`` reads ``IBEX.csv``.

    Parameters
    ----------
    directory : str
        Folder holding one CSV per index.
    adapter : CSVQuoteAdapter | None
        Custom adapter instance. Uses default if None.
    bar_length : timedelta
        Span each row stands for; the file's coverage ends one bar after
        its last row.
    """

    name = "csv"

    def __init__(
        self,
        directory: str,
        adapter: CSVQuoteAdapter | None = None,
        bar_length: timedelta = timedelta(days=1),
    ) -> None:
        self._directory = Path(directory)
        self._adapter = adapter or CSVQuoteAdapter()
        self._bar_length = bar_length

    def path_for(self, index_id: IndexId) -> Path:
        return self._directory / f"{index_id.lstrip('^')}.csv"

    async def fetch(self, index_id: IndexId, time_range: TimeRange) -> FetchResult:
        path = self.path_for(index_id)
        context = {"index": index_id, "source": self.name, "path": str(path)}
        if not path.exists():
            raise UnknownIndex(f"No CSV file for {index_id!r}", context=context)

        try:
            with open(path, newline="") as f:
                rows = list(csv.DictReader(f))
        except OSError as e:
            raise SourceUnreachable(
                f"Could not read {path}: {e}", context={**context, "cause": str(e)}
            ) from e
        except csv.Error as e:
            raise MalformedUpstreamData(
                f"Corrupt CSV for {index_id}: {e}", context={**context, "cause": str(e)}
            ) from e

        try:
            quotes = self._adapter.adapt(rows, index_id)
        except (ValidationError, ValueError) as e:
            raise MalformedUpstreamData(
                f"Unparsable CSV for {index_id}: {e}", context={**context, "cause": str(e)}
            ) from e

        available = None
        if quotes:
            available = TimeRange(
                start=quotes[0].timestamp,
                end=quotes[-1].timestamp + self._bar_length,
            )
        return build_fetch_result(index_id, time_range, quotes, available=available, source=self.name)


def load_csv_quotes(filepath: str, index_id: IndexId, **adapter_kwargs: Any) -> list[Quote]:
    """Convenience function: load quotes from a CSV file.

    Parameters
    ----------
    filepath : str
        Path to the CSV file.
    index_id : str
        Index identifier for the data.
    **adapter_kwargs
        Passed to CSVQuoteAdapter constructor.
    """
    path = Path(filepath)
    if not path.exists():
        raise FileNotFoundError(f"CSV file not found: {filepath}")

    with open(path, newline="") as f:
        rows = list(csv.DictReader(f))

    return CSVQuoteAdapter(**adapter_kwargs).adapt(rows, index_id)

