"""Configuration system for the validation platform."""

from __future__ import annotations

import os
from collections.abc import Mapping, Sequence
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Deployment environments supported by the platform."""

    DEV = "dev"
    STAGING = "staging"
    PROD = "prod"


class TelemetrySettings(BaseModel):
    """Configuration block for OpenTelemetry export."""

    exporter: str = Field(default="console", description="Target exporter type")
    endpoint: str | None = Field(default=None, description="Exporter endpoint")
    sample_ratio: float = Field(default=0.1, ge=0.0, le=1.0)


class LoggingSettings(BaseModel):
    """Structured logging configuration."""

    level: str = Field(default="INFO", description="Log level for application output")
    scrub_fields: Sequence[str] = Field(
        default_factory=lambda: ["password", "token", "secret", "authorization"],
        description="Fields that should be redacted in logs",
    )


class ObservabilitySettings(BaseModel):
    """Aggregate observability configuration."""

    logging: LoggingSettings = Field(default_factory=LoggingSettings)


class CacheLayerToggles(BaseModel):
    """Which cache tiers participate in lookups and writes."""

    memory: bool = True
    database: bool = False
    filesystem: bool = False


class CacheTTLSettings(BaseModel):
    """Time-to-live per cache category, in seconds."""

    validation: float = Field(default=300.0, ge=0.0, description="Validation results (5 min)")
    profile: float = Field(default=1800.0, ge=0.0, description="Profiles (30 min)")
    terminology: float = Field(default=3600.0, ge=0.0, description="Terminology (1 hr)")
    ig_package: float = Field(default=86400.0, ge=0.0, description="IG packages (24 hr)")


class CacheLimitSettings(BaseModel):
    """Capacity limits for the bounded memory tier."""

    memory_max_entries: int = Field(default=1000, ge=1)
    memory_max_bytes: int = Field(default=100 * 1024 * 1024, ge=1)


class CacheSettings(BaseModel):
    """Process-wide configuration of the three-tier validation cache."""

    layers: CacheLayerToggles = Field(default_factory=CacheLayerToggles)
    ttl: CacheTTLSettings = Field(default_factory=CacheTTLSettings)
    limits: CacheLimitSettings = Field(default_factory=CacheLimitSettings)
    filesystem_path: Path = Field(
        default=Path("./cache/validation"), description="Root directory of the filesystem tier"
    )
    redis_url: str = Field(
        default="redis://redis:6379/0", description="Redis URL backing the database tier"
    )
    redis_key_prefix: str = Field(default="fhir_validation:cache", description="Redis key prefix")
    cleanup_interval_seconds: float | None = Field(
        default=None,
        gt=0,
        description="Interval for the periodic expiry sweep; disabled when unset",
    )


class ErrorClassificationSettings(BaseModel):
    """Message fragments used to classify validator exceptions."""

    timeout_patterns: Sequence[str] = Field(default_factory=lambda: ["timeout", "timed out"])
    network_patterns: Sequence[str] = Field(
        default_factory=lambda: [
            "ECONNREFUSED",
            "ETIMEDOUT",
            "ECONNRESET",
            "ENOTFOUND",
            "connection refused",
            "network is unreachable",
        ]
    )


DEFAULT_ASPECT_TIMEOUTS_MS: Mapping[str, int] = {
    "structural": 5_000,
    "profile": 45_000,
    "terminology": 60_000,
    "reference": 30_000,
    "businessRule": 30_000,
    "metadata": 5_000,
}


class EngineSettings(BaseModel):
    """Runtime behaviour of the validation engine."""

    parallel: bool = Field(default=True, description="Run enabled aspects concurrently")
    fhir_version: str = Field(default="R4", description="FHIR release used in cache keys")
    cache_results: bool = Field(default=True, description="Cache executed aspect results")
    aspect_timeouts_ms: dict[str, int] = Field(
        default_factory=lambda: dict(DEFAULT_ASPECT_TIMEOUTS_MS),
        description="Default per-aspect timeout budgets in milliseconds",
    )
    error_classification: ErrorClassificationSettings = Field(
        default_factory=ErrorClassificationSettings
    )

    @model_validator(mode="before")
    @classmethod
    def _merge_timeouts(cls, values: Any) -> Any:
        if not isinstance(values, Mapping):
            return values
        overrides = values.get("aspect_timeouts_ms")
        if not isinstance(overrides, Mapping):
            return values
        merged = dict(DEFAULT_ASPECT_TIMEOUTS_MS)
        merged.update({str(key): int(value) for key, value in overrides.items()})
        return {**values, "aspect_timeouts_ms": merged}


class BatchSettings(BaseModel):
    """Batch/streaming coordinator configuration."""

    max_concurrent: int = Field(default=5, ge=1, description="Chunk size for batch validation")
    event_queue_size: int = Field(
        default=1000, ge=1, description="Bound of each event subscription queue"
    )


class AppSettings(BaseSettings):
    """Top-level application settings."""

    environment: Environment = Environment.DEV
    debug: bool = False
    service_name: str = "fhir-validation"
    telemetry: TelemetrySettings = Field(default_factory=TelemetrySettings)
    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    engine: EngineSettings = Field(default_factory=EngineSettings)
    batch: BatchSettings = Field(default_factory=BatchSettings)

    model_config = SettingsConfigDict(env_prefix="FV_", env_nested_delimiter="__")


ENVIRONMENT_DEFAULTS: Mapping[Environment, dict[str, Any]] = {
    Environment.DEV: {
        "debug": True,
        "telemetry": {"exporter": "console"},
    },
    Environment.STAGING: {
        "telemetry": {"exporter": "otlp", "sample_ratio": 0.25},
        "cache": {"layers": {"database": True}},
    },
    Environment.PROD: {
        "telemetry": {"exporter": "otlp", "sample_ratio": 0.05},
        "cache": {"layers": {"database": True, "filesystem": True}},
    },
}


def _deep_update(target: dict[str, Any], updates: Mapping[str, Any]) -> dict[str, Any]:
    for key, value in updates.items():
        current = target.get(key)
        if isinstance(current, dict) and isinstance(value, Mapping):
            target[key] = _deep_update(dict(current), value)
        else:
            target[key] = value
    return target


def load_settings(environment: str | None = None) -> AppSettings:
    """Load application settings with environment specific defaults applied."""
    env_value = (environment or os.getenv("FV_ENV", "dev")).lower()
    env = Environment(env_value)
    defaults = ENVIRONMENT_DEFAULTS.get(env, {})
    try:
        base_settings = AppSettings()
    except ValidationError as err:
        raise RuntimeError(f"Invalid configuration: {err}") from err
    merged = _deep_update(dict(defaults), base_settings.model_dump(exclude_unset=True))
    merged = _deep_update(base_settings.model_dump(), merged)
    merged["environment"] = env
    return AppSettings.model_validate(merged)


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    """Cached accessor used by entry points."""
    return load_settings()
