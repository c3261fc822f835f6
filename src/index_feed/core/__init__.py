"""index_feed.core — Foundation types, config, and exceptions."""

from index_feed.core.config import (
    AnalyticsConfig,
    FeedConfig,
    FreshnessConfig,
    MergeConfig,
    RetentionConfig,
    SourceConfig,
    SourceProvider,
    StorageConfig,
    load_config,
)
from index_feed.core.exceptions import (
    AnalyticsError,
    ConfigError,
    EmptyRange,
    IndexFeedError,
    InsufficientData,
    MalformedUpstreamData,
    RefreshTimeout,
    SourceError,
    SourceRateLimited,
    SourceUnreachable,
    StorageError,
    UnknownIndex,
)
from index_feed.core.models import (
    AnalyticsKind,
    AnalyticsParams,
    AnalyticsResult,
    Correction,
    Coverage,
    FetchResult,
    FreshnessState,
    HistoryResult,
    IndexId,
    MergePolicy,
    MergeReport,
    MovingAveragePoint,
    PriceResult,
    Quote,
    TimeRange,
)

__all__ = [
    # Type aliases
    "IndexId",
    # Enums
    "Coverage",
    "MergePolicy",
    "FreshnessState",
    "AnalyticsKind",
    "SourceProvider",
    # Quote models
    "Quote",
    "TimeRange",
    "FetchResult",
    # Merge models
    "Correction",
    "MergeReport",
    # Query results
    "PriceResult",
    "HistoryResult",
    "AnalyticsParams",
    "AnalyticsResult",
    "MovingAveragePoint",
    # Config
    "FeedConfig",
    "FreshnessConfig",
    "MergeConfig",
    "RetentionConfig",
    "AnalyticsConfig",
    "SourceConfig",
    "StorageConfig",
    "load_config",
    # Exceptions
    "IndexFeedError",
    "ConfigError",
    "SourceError",
    "SourceUnreachable",
    "SourceRateLimited",
    "UnknownIndex",
    "MalformedUpstreamData",
    "RefreshTimeout",
    "AnalyticsError",
    "InsufficientData",
    "EmptyRange",
    "StorageError",
]
