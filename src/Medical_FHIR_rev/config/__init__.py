"""Lightweight configuration package exports."""

from __future__ import annotations

from .settings import (
    DEFAULT_ASPECT_TIMEOUTS_MS,
    AppSettings,
    BatchSettings,
    CacheLayerToggles,
    CacheLimitSettings,
    CacheSettings,
    CacheTTLSettings,
    EngineSettings,
    Environment,
    ErrorClassificationSettings,
    LoggingSettings,
    ObservabilitySettings,
    TelemetrySettings,
    get_settings,
    load_settings,
)

__all__ = [
    "DEFAULT_ASPECT_TIMEOUTS_MS",
    "AppSettings",
    "BatchSettings",
    "CacheLayerToggles",
    "CacheLimitSettings",
    "CacheSettings",
    "CacheTTLSettings",
    "EngineSettings",
    "Environment",
    "ErrorClassificationSettings",
    "LoggingSettings",
    "ObservabilitySettings",
    "TelemetrySettings",
    "get_settings",
    "load_settings",
]
