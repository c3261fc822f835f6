"""Custom exception hierarchy for index-feed."""

from typing import Any


class IndexFeedError(Exception):
    """Base exception for all index-feed errors.

    All exceptions carry an optional `context` dict for structured error
    metadata that can be logged or serialized without parsing the message.
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.context = context or {}


class ConfigError(IndexFeedError):
    """Invalid or missing configuration.

    Raised by load_config() and load_index_catalog(). Should be treated as fatal.

    Context keys:
        field: str — the config field that failed validation
        value: Any — the invalid value
    """


class SourceError(IndexFeedError):
    """An index data source failed to answer a fetch.

    Policy: caught at the freshness controller, which marks the series stale
    and re-raises to the caller that triggered the refresh. Stored quotes are
    never touched.

    Context keys:
        index: str — the index identifier requested
        source: str — the adapter name
        cause: str — the underlying transport/parse error
    """


class SourceUnreachable(SourceError):
    """Transport or connection failure (including upstream 5xx)."""


class SourceRateLimited(SourceError):
    """Upstream refused the request because of rate limiting (HTTP 429).

    Context keys:
        retry_after: float | None — seconds the upstream asked us to wait
    """

    @property
    def retry_after(self) -> float | None:
        value = self.context.get("retry_after")
        return float(value) if value is not None else None


class UnknownIndex(SourceError):
    """The source does not know the requested index identifier."""


class MalformedUpstreamData(SourceError):
    """The source returned a payload that could not be parsed into quotes."""


class RefreshTimeout(IndexFeedError):
    """A refresh did not complete within its deadline.

    Policy: the series goes back to stale, nothing fetched is merged.

    Context keys:
        index: str
        timeout: float — the deadline in seconds
    """


class AnalyticsError(IndexFeedError):
    """A derived metric could not be computed from the available quotes.

    Policy: always reported to the caller, never defaulted to zero.
    """


class InsufficientData(AnalyticsError):
    """Too few points (or a zero base price) for the requested metric.

    Context keys:
        required: int — points needed
        available: int — points present
    """


class EmptyRange(AnalyticsError):
    """The requested range holds no quotes at all."""


class StorageError(IndexFeedError):
    """Series snapshot persistence failed.

    Policy: raise immediately. Data integrity is critical.

    Context keys:
        operation: str — "save", "load", etc.
        index: str
    """
