"""index_feed.series — the per-index quote series and its snapshots."""

from index_feed.series.snapshot import SqliteSeriesSnapshot
from index_feed.series.store import SeriesStore

__all__ = ["SeriesStore", "SqliteSeriesSnapshot"]
