"""Index catalog: what an index is made of and when it trades.

Descriptors are read from a YAML file keyed by index identifier::

    indexes:
      "^IBEX":
        name: BME Ibex35 Index
        open_time: "08:00:00"     # UTC
        close_time: "16:30:00"    # UTC
        currency: EUR
        constituents:
          AENA:
            full_name: AENA S.A.
            short_name: AENA
            isin: ES0105046009
            extra_id: A86212420

The constituent's key is its ticker unless a ``ticker`` field overrides it.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, time
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator, model_validator

from index_feed.core.exceptions import ConfigError
from index_feed.core.models import IndexId, as_utc

logger = logging.getLogger(__name__)


class Constituent(BaseModel):
    """A company listed in an index.

    ``extra_id`` holds a national registry number where one applies (the
    Spanish NIF, for example); companies registered abroad have none.
    """

    model_config = ConfigDict(frozen=True)

    full_name: str | None = None
    short_name: str
    ticker: str
    isin: str
    extra_id: str | None = None

    @field_validator("ticker", "short_name")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be blank")
        return v.strip()

    @field_validator("isin")
    @classmethod
    def isin_format(cls, v: str) -> str:
        v = v.strip().upper()
        if len(v) != 12 or not v.isalnum():
            raise ValueError(f"ISIN must be 12 alphanumeric characters, got {v!r}")
        return v

    @property
    def name(self) -> str:
        return self.short_name

    def __str__(self) -> str:
        return f"{self.ticker}: {self.short_name}"


class IndexDescriptor(BaseModel):
    """Static description of a market index."""

    model_config = ConfigDict(frozen=True)

    index_id: IndexId
    name: str
    open_time: time
    close_time: time
    currency: str
    constituents: dict[str, Constituent] = {}

    @field_validator("currency")
    @classmethod
    def currency_code(cls, v: str) -> str:
        v = v.strip().upper()
        if len(v) != 3 or not v.isalpha():
            raise ValueError(f"currency must be an ISO 4217 code, got {v!r}")
        return v

    @model_validator(mode="after")
    def hours_ordered(self) -> IndexDescriptor:
        if self.close_time <= self.open_time:
            raise ValueError("close_time must be after open_time")
        return self

    def __str__(self) -> str:
        return self.name

    def list_tickers(self) -> list[str]:
        return sorted(self.constituents)

    def stock_by_ticker(self, ticker: str) -> Constituent | None:
        """Exact ticker lookup; partial tickers do not match."""
        return self.constituents.get(ticker)

    def stock_by_name(self, name: str) -> list[Constituent]:
        """Constituents whose short name contains ``name``, ignoring case.

        A vague name such as "bank" may match several companies.
        """
        needle = name.lower()
        return [c for c in self.companies() if needle in c.short_name.lower()]

    def companies(self) -> list[Constituent]:
        return [self.constituents[t] for t in self.list_tickers()]

    def is_open(self, at: date | datetime) -> bool:
        """Whether ``at`` falls in a weekday session. Holidays are not modelled."""
        ts = as_utc(at)
        if ts.weekday() >= 5:
            return False
        return self.open_time <= ts.time() < self.close_time


def load_index_catalog(path: str | Path) -> dict[IndexId, IndexDescriptor]:
    """Load every index descriptor from a YAML catalog.

    Raises
    ------
    ConfigError
        The file is missing, unparsable, or an entry fails validation.
    """
    p = Path(path)
    if not p.exists():
        raise ConfigError(
            f"Index catalog not found: {p}",
            context={"field": "catalog_path", "value": str(p)},
        )

    try:
        with open(p) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(
            f"Failed to parse index catalog: {e}",
            context={"field": "catalog_path", "value": str(p)},
        ) from e

    entries = data.get("indexes") if isinstance(data, dict) else None
    if not isinstance(entries, dict):
        raise ConfigError(
            "Index catalog must have an 'indexes' mapping",
            context={"field": "indexes", "value": str(p)},
        )

    catalog: dict[IndexId, IndexDescriptor] = {}
    for index_id, entry in entries.items():
        try:
            catalog[index_id] = _build_descriptor(str(index_id), entry)
        except (ValidationError, ValueError, TypeError, AttributeError) as e:
            raise ConfigError(
                f"Invalid catalog entry {index_id!r}: {e}",
                context={"field": f"indexes.{index_id}", "value": str(p)},
            ) from e

    logger.info("Loaded %d index descriptors from %s", len(catalog), p)
    return catalog


def _build_descriptor(index_id: str, entry: dict[str, Any]) -> IndexDescriptor:
    constituents: dict[str, Constituent] = {}
    for key, raw in (entry.get("constituents") or {}).items():
        company = Constituent.model_validate({"ticker": str(key), **raw})
        constituents[company.ticker] = company
    return IndexDescriptor.model_validate(
        {**entry, "index_id": index_id, "constituents": constituents}
    )
