"""Source-agnostic index data acquisition.

Architecture
------------
Uses the adapter pattern to decouple upstream providers from the cache:

    Upstream → QuoteAdapter → list[Quote] → IndexDataSource → FetchResult

Key abstractions:

- ``IndexDataSource``: the capability every source implements.
- ``QuoteAdapter``: parses a provider's raw payload into ``Quote`` records.
- ``build_fetch_result``: shared normalization and coverage classification.

Built-in implementations:

- ``YahooIndexSource``: Yahoo Finance chart API over httpx.
- ``CSVIndexSource``: one CSV export per index.
- ``StaticIndexSource``: in-memory quotes.
- ``RetryingSource``: bounded exponential backoff around any source.

Adding a new source:
1. Write an adapter that implements ``QuoteAdapter.adapt(raw_data, index_id)``.
2. Write a source whose ``fetch`` calls it and returns ``build_fetch_result(...)``.
"""

from __future__ import annotations

from index_feed.core.config import SourceConfig, SourceProvider
from index_feed.sources.base import IndexDataSource, QuoteAdapter, build_fetch_result
from index_feed.sources.csv_source import CSVIndexSource, CSVQuoteAdapter, load_csv_quotes
from index_feed.sources.memory import StaticIndexSource
from index_feed.sources.retry import RetryingSource
from index_feed.sources.yahoo import YahooChartAdapter, YahooIndexSource


def build_source(config: SourceConfig) -> IndexDataSource:
    """Create the configured source, wrapped in retries when enabled."""
    source: IndexDataSource
    if config.provider == SourceProvider.CSV:
        source = CSVIndexSource(config.csv_dir or ".")
    else:
        source = YahooIndexSource(
            base_url=config.base_url,
            timeout=config.request_timeout,
            rate_limit=config.rate_limit,
        )
    if config.max_retries > 0:
        source = RetryingSource(
            source,
            max_retries=config.max_retries,
            base_delay=config.retry_base_delay,
        )
    return source


__all__ = [
    # Protocols
    "IndexDataSource",
    "QuoteAdapter",
    "build_fetch_result",
    # Yahoo Finance
    "YahooChartAdapter",
    "YahooIndexSource",
    # CSV
    "CSVQuoteAdapter",
    "CSVIndexSource",
    "load_csv_quotes",
    # In-memory
    "StaticIndexSource",
    # Wrappers
    "RetryingSource",
    "build_source",
]
