"""Configuration loading, validation, and access."""

from __future__ import annotations

import os
from datetime import timedelta
from decimal import Decimal
from enum import StrEnum
from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, field_validator, model_validator

from index_feed.core.exceptions import ConfigError
from index_feed.core.models import MergePolicy


class SourceProvider(StrEnum):
    """Built-in index data sources selectable from config."""

    YAHOO = "yahoo"
    CSV = "csv"


class FreshnessConfig(BaseModel):
    """Cache freshness and refresh behaviour."""

    model_config = ConfigDict(frozen=True)

    max_age_seconds: float = 900.0
    refresh_timeout_seconds: float | None = 30.0
    initial_lookback_days: int = 365
    refresh_overlap_days: int = 5

    @field_validator("max_age_seconds")
    @classmethod
    def max_age_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("max_age_seconds must be > 0")
        return v

    @field_validator("refresh_timeout_seconds")
    @classmethod
    def timeout_positive(cls, v: float | None) -> float | None:
        if v is not None and v <= 0:
            raise ValueError("refresh_timeout_seconds must be > 0")
        return v

    @field_validator("initial_lookback_days")
    @classmethod
    def lookback_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("initial_lookback_days must be >= 1")
        return v

    @field_validator("refresh_overlap_days")
    @classmethod
    def overlap_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("refresh_overlap_days must be >= 0")
        return v

    @property
    def max_age(self) -> timedelta:
        return timedelta(seconds=self.max_age_seconds)

    @property
    def initial_lookback(self) -> timedelta:
        return timedelta(days=self.initial_lookback_days)

    @property
    def refresh_overlap(self) -> timedelta:
        return timedelta(days=self.refresh_overlap_days)


class MergeConfig(BaseModel):
    """Collision policy for merging fetched quotes into a series."""

    model_config = ConfigDict(frozen=True)

    price_tolerance: Decimal = Decimal("0.0001")
    policy: MergePolicy = MergePolicy.TOLERANCE

    @field_validator("price_tolerance", mode="before")
    @classmethod
    def tolerance_from_text(cls, v: object) -> object:
        # YAML and env values arrive as float; keep the decimal digits as written
        if isinstance(v, float):
            return Decimal(str(v))
        return v

    @field_validator("price_tolerance")
    @classmethod
    def tolerance_non_negative(cls, v: Decimal) -> Decimal:
        if v < 0:
            raise ValueError("price_tolerance must be >= 0")
        return v


class RetentionConfig(BaseModel):
    """Optional bound on how much history a series keeps in memory."""

    model_config = ConfigDict(frozen=True)

    horizon_days: int | None = None

    @field_validator("horizon_days")
    @classmethod
    def horizon_positive(cls, v: int | None) -> int | None:
        if v is not None and v < 1:
            raise ValueError("horizon_days must be >= 1")
        return v

    @property
    def horizon(self) -> timedelta | None:
        return timedelta(days=self.horizon_days) if self.horizon_days else None


class AnalyticsConfig(BaseModel):
    """Default window sizes for analytics queries."""

    model_config = ConfigDict(frozen=True)

    moving_average_window: int = 20
    volatility_window: int = 20

    @field_validator("moving_average_window")
    @classmethod
    def ma_window_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("moving_average_window must be >= 1")
        return v

    @field_validator("volatility_window")
    @classmethod
    def vol_window_min(cls, v: int) -> int:
        if v < 2:
            raise ValueError("volatility_window must be >= 2 (sample variance)")
        return v


class SourceConfig(BaseModel):
    """Which upstream feeds the series and how it is reached."""

    model_config = ConfigDict(frozen=True)

    provider: SourceProvider = SourceProvider.YAHOO
    base_url: str = "https://query2.finance.yahoo.com"
    request_timeout: float = 15.0
    rate_limit: float = 2.0
    csv_dir: str | None = None
    max_retries: int = 3
    retry_base_delay: float = 0.5

    @field_validator("rate_limit")
    @classmethod
    def rate_limit_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("rate_limit must be > 0")
        return v

    @field_validator("max_retries")
    @classmethod
    def retries_bounded(cls, v: int) -> int:
        if v < 0 or v > 10:
            raise ValueError("max_retries must be between 0 and 10")
        return v

    @model_validator(mode="after")
    def csv_dir_required_for_csv(self) -> SourceConfig:
        if self.provider == SourceProvider.CSV and not self.csv_dir:
            raise ValueError("csv_dir is required when provider is 'csv'")
        return self


class StorageConfig(BaseModel):
    """Optional snapshot persistence for series."""

    model_config = ConfigDict(frozen=True)

    sqlite_path: str | None = None


class FeedConfig(BaseModel):
    """Root configuration for index-feed."""

    model_config = ConfigDict(frozen=True)

    freshness: FreshnessConfig = FreshnessConfig()
    merge: MergeConfig = MergeConfig()
    retention: RetentionConfig = RetentionConfig()
    analytics: AnalyticsConfig = AnalyticsConfig()
    source: SourceConfig = SourceConfig()
    storage: StorageConfig = StorageConfig()
    catalog_path: str | None = None


def load_config(
    config_path: str | None = None,
    env_prefix: str = "INDEX_FEED_",
) -> FeedConfig:
    """Load configuration from environment + YAML file + defaults.

    Resolution order (highest priority first):
    1. Environment variables (INDEX_FEED_FRESHNESS__MAX_AGE_SECONDS, etc.)
    2. YAML file at config_path
    3. Built-in defaults

    Nested keys use double-underscore in env vars:
        INDEX_FEED_MERGE__POLICY=keep  ->  merge.policy = "keep"
    """
    try:
        yaml_path = _resolve_config_path(config_path)
        base: dict = {}
        if yaml_path is not None:
            base = _load_yaml(yaml_path)

        merged = _merge_env_vars(base, env_prefix)
        return FeedConfig.model_validate(merged)
    except Exception as e:
        if isinstance(e, ConfigError):
            raise
        raise ConfigError(str(e), context={"source": "load_config"}) from e


_DEFAULT_CONFIG_FILE = "index-feed.yml"

# env values that clear an optional setting (e.g. retention horizon, timeout)
_ENV_NULLS = frozenset({"", "none", "null"})


def _resolve_config_path(explicit: str | None) -> Path | None:
    """Pick the config file: argument, then $INDEX_FEED_CONFIG, then ./index-feed.yml.

    A path that was asked for but does not exist is an error; a missing
    default file just means "no file".
    """
    requested = (
        (explicit, "config_path"),
        (os.environ.get("INDEX_FEED_CONFIG"), "INDEX_FEED_CONFIG"),
    )
    for value, field in requested:
        if not value:
            continue
        path = Path(value)
        if not path.is_file():
            raise ConfigError(
                f"Config file not found: {value}",
                context={"field": field, "value": value},
            )
        return path

    default = Path(_DEFAULT_CONFIG_FILE)
    return default if default.is_file() else None


def _load_yaml(path: Path) -> dict:
    """Read the config file into a plain dict (empty file -> {})."""
    try:
        data = yaml.safe_load(path.read_text())
    except yaml.YAMLError as e:
        raise ConfigError(
            f"Failed to parse YAML config: {e}",
            context={"field": "config_file", "value": str(path)},
        ) from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(
            f"YAML config must be a mapping, got {type(data).__name__}",
            context={"field": "config_file", "value": str(path)},
        )
    return data


def _merge_env_vars(base: dict, prefix: str) -> dict:
    """Overlay ``<prefix>SECTION__KEY`` environment variables onto ``base``.

    ``base`` is not modified. Values stay strings so pydantic coerces them to
    the field's own type; a Decimal tolerance such as "0.00005" is never
    routed through float.
    """
    result = dict(base)

    for key, raw in os.environ.items():
        if not key.startswith(prefix):
            continue
        parts = [p.lower() for p in key[len(prefix) :].split("__")]
        if parts == ["config"]:
            continue

        section = result
        for part in parts[:-1]:
            nested = section.get(part)
            section[part] = dict(nested) if isinstance(nested, dict) else {}
            section = section[part]
        section[parts[-1]] = _env_value(raw)

    return result


def _env_value(raw: str) -> str | None:
    """Env value as handed to validation: the raw text, or None for "none"/"null"/""."""
    value = raw.strip()
    if value.lower() in _ENV_NULLS:
        return None
    return value
