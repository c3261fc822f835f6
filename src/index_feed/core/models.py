"""Pydantic data models — the system's type contracts."""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from decimal import ROUND_HALF_EVEN, Decimal, InvalidOperation
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, field_validator, model_validator

# --- Type Aliases ---

IndexId = str

# Index levels are quoted to at most four decimal places.
PRICE_QUANTUM = Decimal("0.0001")


def as_utc(value: date | datetime) -> datetime:
    """Normalize a date or aware datetime to an aware UTC datetime.

    A bare ``date`` maps to midnight UTC. Naive datetimes are rejected
    because their instant is ambiguous.
    """
    if isinstance(value, datetime):
        if value.tzinfo is None or value.utcoffset() is None:
            raise ValueError(f"timestamp must be timezone-aware, got naive {value!r}")
        return value.astimezone(timezone.utc)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    raise TypeError(f"expected date or datetime, got {type(value).__name__}")


def to_price(value: Any) -> Decimal:
    """Convert a raw price to a quantized Decimal.

    Floats go through ``str`` so binary noise never reaches comparisons.
    """
    if isinstance(value, bool):
        raise ValueError("price must be numeric, got bool")
    try:
        if isinstance(value, float):
            dec = Decimal(str(value))
        elif isinstance(value, (Decimal, int, str)):
            dec = Decimal(value)
        else:
            raise ValueError(f"price must be numeric, got {type(value).__name__}")
    except InvalidOperation as e:
        raise ValueError(f"price is not a number: {value!r}") from e
    if not dec.is_finite():
        raise ValueError(f"price must be finite, got {value!r}")
    return dec.quantize(PRICE_QUANTUM, rounding=ROUND_HALF_EVEN)


# --- Enumerations ---


class Coverage(StrEnum):
    """How much of a requested range a source could serve."""

    COMPLETE = "complete"
    PARTIAL = "partial"
    EMPTY = "empty"


class MergePolicy(StrEnum):
    """Collision handling when a merged quote hits an existing timestamp."""

    TOLERANCE = "tolerance"
    REPLACE = "replace"
    KEEP = "keep"


class FreshnessState(StrEnum):
    """Per-index cache states."""

    FRESH = "fresh"
    STALE = "stale"
    REFRESHING = "refreshing"


class AnalyticsKind(StrEnum):
    """Derived metrics the facade can compute."""

    SIMPLE_RETURN = "simple_return"
    MOVING_AVERAGE = "moving_average"
    VOLATILITY = "volatility"
    MAX_DRAWDOWN = "max_drawdown"


# --- Quote Models ---


class Quote(BaseModel):
    """One observed index level at one instant.

    Two quotes are equal when index, timestamp and price match; volume and
    source are informational only.
    """

    model_config = ConfigDict(frozen=True)

    index_id: IndexId
    timestamp: datetime
    price: Decimal
    volume: int | None = None
    source: str = "unknown"

    @field_validator("index_id")
    @classmethod
    def index_id_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("index_id must not be blank")
        return v.strip()

    @field_validator("timestamp", mode="before")
    @classmethod
    def date_to_datetime(cls, v: Any) -> Any:
        if isinstance(v, date) and not isinstance(v, datetime):
            return as_utc(v)
        return v

    @field_validator("timestamp")
    @classmethod
    def timestamp_is_aware(cls, v: datetime) -> datetime:
        return as_utc(v)

    @field_validator("price", mode="before")
    @classmethod
    def price_as_decimal(cls, v: Any) -> Decimal:
        return to_price(v)

    @field_validator("price")
    @classmethod
    def price_non_negative(cls, v: Decimal) -> Decimal:
        if v < 0:
            raise ValueError(f"price must be >= 0, got {v}")
        return v

    @field_validator("volume")
    @classmethod
    def volume_non_negative(cls, v: int | None) -> int | None:
        if v is not None and v < 0:
            raise ValueError(f"volume must be >= 0, got {v}")
        return v

    def _identity(self) -> tuple[str, datetime, Decimal]:
        return (self.index_id, self.timestamp, self.price)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Quote):
            return NotImplemented
        return self._identity() == other._identity()

    def __hash__(self) -> int:
        return hash(self._identity())


class TimeRange(BaseModel):
    """Half-open interval ``[start, end)`` of aware UTC datetimes."""

    model_config = ConfigDict(frozen=True)

    start: datetime
    end: datetime

    @field_validator("start", "end", mode="before")
    @classmethod
    def date_to_datetime(cls, v: Any) -> Any:
        if isinstance(v, date) and not isinstance(v, datetime):
            return as_utc(v)
        return v

    @field_validator("start", "end")
    @classmethod
    def bounds_are_aware(cls, v: datetime) -> datetime:
        return as_utc(v)

    @model_validator(mode="after")
    def end_after_start(self) -> TimeRange:
        if self.end <= self.start:
            raise ValueError(f"end ({self.end}) must be after start ({self.start})")
        return self

    @classmethod
    def trailing(cls, delta: timedelta, now: datetime | None = None) -> TimeRange:
        """The window of length ``delta`` ending at ``now``."""
        end = as_utc(now) if now is not None else datetime.now(timezone.utc)
        return cls(start=end - delta, end=end)

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def contains(self, ts: datetime) -> bool:
        return self.start <= ts < self.end

    def covers(self, other: TimeRange) -> bool:
        """True when ``other`` lies entirely inside this range."""
        return self.start <= other.start and other.end <= self.end

    def intersection(self, other: TimeRange) -> TimeRange | None:
        start = max(self.start, other.start)
        end = min(self.end, other.end)
        if end <= start:
            return None
        return TimeRange(start=start, end=end)

    def union_span(self, other: TimeRange) -> TimeRange:
        """Smallest range spanning both (gaps between them are not tracked)."""
        return TimeRange(start=min(self.start, other.start), end=max(self.end, other.end))


class FetchResult(BaseModel):
    """Normalized answer of an index data source to one fetch."""

    model_config = ConfigDict(frozen=True)

    index_id: IndexId
    requested: TimeRange
    quotes: tuple[Quote, ...] = ()
    coverage: Coverage
    covered: TimeRange | None = None
    source: str = "unknown"

    @model_validator(mode="after")
    def coverage_consistent(self) -> FetchResult:
        if self.coverage == Coverage.EMPTY:
            if self.quotes:
                raise ValueError("an empty fetch result cannot carry quotes")
            if self.covered is not None:
                raise ValueError("an empty fetch result has no covered range")
        elif self.coverage == Coverage.PARTIAL:
            if self.covered is None:
                raise ValueError("a partial fetch result must declare its covered range")
            if not self.requested.covers(self.covered):
                raise ValueError("covered range must lie inside the requested range")
        elif self.covered is not None and self.covered != self.requested:
            raise ValueError("a complete fetch result covers exactly the requested range")
        return self

    @property
    def covered_range(self) -> TimeRange | None:
        """The range the source vouched for, if any."""
        if self.coverage == Coverage.COMPLETE:
            return self.requested
        return self.covered


# --- Merge Models ---


class Correction(BaseModel):
    """A stored quote overwritten by a later arrival for the same timestamp."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    previous_price: Decimal
    new_price: Decimal


class MergeReport(BaseModel):
    """Outcome of merging one batch of candidates into a series."""

    model_config = ConfigDict(frozen=True)

    inserted: int = 0
    corrected: int = 0
    duplicates_ignored: int = 0
    rejected: int = 0
    corrections: tuple[Correction, ...] = ()

    @property
    def changed(self) -> bool:
        return self.inserted > 0 or self.corrected > 0

    @property
    def total(self) -> int:
        return self.inserted + self.corrected + self.duplicates_ignored + self.rejected


# --- Query Result Models ---


class PriceResult(BaseModel):
    """Answer to ``current_price``."""

    model_config = ConfigDict(frozen=True)

    quote: Quote
    stale: bool = False

    @property
    def price(self) -> Decimal:
        return self.quote.price

    @property
    def timestamp(self) -> datetime:
        return self.quote.timestamp


class HistoryResult(BaseModel):
    """Answer to ``history``: ordered quotes inside the requested range."""

    model_config = ConfigDict(frozen=True)

    index_id: IndexId
    requested: TimeRange
    quotes: tuple[Quote, ...] = ()
    partial: bool = False
    stale: bool = False

    def __len__(self) -> int:
        return len(self.quotes)


class AnalyticsParams(BaseModel):
    """Parameters for an analytics query. Unset fields fall back to config."""

    model_config = ConfigDict(frozen=True)

    window: int | None = None
    time_range: TimeRange | None = None

    @field_validator("window")
    @classmethod
    def window_positive(cls, v: int | None) -> int | None:
        if v is not None and v < 1:
            raise ValueError(f"window must be >= 1, got {v}")
        return v


class MovingAveragePoint(BaseModel):
    """One moving-average output aligned to the input point it ends on."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    value: Decimal


class AnalyticsResult(BaseModel):
    """Answer to ``analytics``."""

    model_config = ConfigDict(frozen=True)

    index_id: IndexId
    kind: AnalyticsKind
    window: int | None = None
    value: Decimal | None = None
    points: tuple[MovingAveragePoint, ...] = ()
    observations: int = 0
    stale: bool = False
