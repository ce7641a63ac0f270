"""Recorder configuration models and layered loading.

Configuration is assembled from, highest precedence first:

1. CLI overrides
2. Environment (RETRIEVAL_RECORDER_DB_DSN for the database URL)
3. YAML config file
4. Built-in defaults

and validated into frozen Pydantic models.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field

from retrieval_recorder.aggregation.table import DEFAULT_RETRIEVAL_TIMEOUT_SEC
from retrieval_recorder.providers.resolver import (
    DEFAULT_CACHE_SIZE,
    DEFAULT_HEYFIL_ENDPOINT,
    DEFAULT_LOOKUP_TIMEOUT_SEC,
    DEFAULT_MAX_WORKERS,
)

DATABASE_URL_ENV = "RETRIEVAL_RECORDER_DB_DSN"


class ServerConfig(BaseModel):
    """HTTP listener binding."""

    model_config = {"frozen": True, "extra": "forbid"}

    host: str = Field(
        default="0.0.0.0",
        description="Host address to bind to",
    )
    port: int = Field(
        default=8080,
        gt=0,
        le=65535,
        description="Port to listen on",
    )


class DatabaseConfig(BaseModel):
    """Event log persistence."""

    model_config = {"frozen": True, "extra": "forbid"}

    url: str | None = Field(
        default=None,
        description="SQLAlchemy database URL. Persistence is disabled when unset.",
    )


class AggregationConfig(BaseModel):
    """In-memory per-retrieval aggregation."""

    model_config = {"frozen": True, "extra": "forbid"}

    retrieval_timeout_sec: float = Field(
        default=DEFAULT_RETRIEVAL_TIMEOUT_SEC,
        gt=0,
        description="Fixed lifetime of in-flight retrieval state, from its first event",
    )
    state_pool_size: int = Field(
        default=1024,
        ge=0,
        description="Recycled state objects kept for reuse",
    )


class ProviderResolutionConfig(BaseModel):
    """Storage provider registry lookups for aggregate records."""

    model_config = {"frozen": True, "extra": "forbid"}

    enabled: bool = Field(
        default=True,
        description="Resolve provider peer ids to registry ids",
    )
    endpoint: str = Field(
        default=DEFAULT_HEYFIL_ENDPOINT,
        description="Registry base URL",
    )
    timeout_sec: float = Field(
        default=DEFAULT_LOOKUP_TIMEOUT_SEC,
        gt=0,
        description="Per-lookup HTTP timeout",
    )
    cache_size: int = Field(
        default=DEFAULT_CACHE_SIZE,
        gt=0,
        description="Resolved ids kept in the LRU cache",
    )
    max_workers: int = Field(
        default=DEFAULT_MAX_WORKERS,
        gt=0,
        description="Concurrent lookups per aggregate record",
    )


class MetricsConfig(BaseModel):
    """Metrics export."""

    model_config = {"frozen": True, "extra": "forbid"}

    prometheus: bool = Field(
        default=True,
        description="Expose metrics in Prometheus text format at /metrics",
    )
    meter_name: str = Field(
        default="retrieval-recorder",
        description="OpenTelemetry instrumentation scope name",
    )


class LoggingConfig(BaseModel):
    """Log output."""

    model_config = {"frozen": True, "extra": "forbid"}

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Root log level",
    )
    json_output: bool = Field(
        default=False,
        description="Emit JSON lines instead of console output",
    )


class RecorderConfig(BaseModel):
    """Complete recorder configuration."""

    model_config = {"frozen": True, "extra": "forbid"}

    server: ServerConfig = Field(default_factory=ServerConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    aggregation: AggregationConfig = Field(default_factory=AggregationConfig)
    providers: ProviderResolutionConfig = Field(default_factory=ProviderResolutionConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def deep_merge(base: dict[str, Any], override: Mapping[str, Any]) -> dict[str, Any]:
    """Deep merge two dicts, with override taking precedence.

    Returns a new dict; inputs are not mutated.
    """
    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, Mapping):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def load_config_file(config_file: Path) -> dict[str, Any]:
    """Read a YAML config file into a raw dict.

    Raises:
        FileNotFoundError: If the file does not exist.
        yaml.YAMLError: If the YAML is malformed.
        ValueError: If the document is not a mapping.
    """
    if not config_file.exists():
        raise FileNotFoundError(f"Config file not found: {config_file}")
    with config_file.open() as f:
        loaded = yaml.safe_load(f) or {}
    if not isinstance(loaded, dict):
        raise ValueError(f"Config file '{config_file}' must be a YAML mapping, got {type(loaded).__name__}")
    return loaded


def load_config(
    *,
    config_file: Path | None = None,
    cli_overrides: Mapping[str, Any] | None = None,
    environ: Mapping[str, str] | None = None,
) -> RecorderConfig:
    """Load recorder configuration with precedence handling.

    Args:
        config_file: Optional YAML configuration file.
        cli_overrides: Nested dict of overrides from CLI flags.
        environ: Environment to read from (defaults to os.environ).

    Returns:
        Validated RecorderConfig.

    Raises:
        FileNotFoundError: If config_file does not exist.
        yaml.YAMLError: If the YAML is malformed.
        pydantic.ValidationError: If the merged configuration is invalid.
    """
    env = os.environ if environ is None else environ
    config_dict: dict[str, Any] = {}

    if config_file is not None:
        config_dict = load_config_file(config_file)

    database_url = env.get(DATABASE_URL_ENV)
    if database_url:
        config_dict = deep_merge(config_dict, {"database": {"url": database_url}})

    if cli_overrides is not None:
        config_dict = deep_merge(config_dict, cli_overrides)

    return RecorderConfig(**config_dict)
