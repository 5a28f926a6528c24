"""Domain models for validation results, settings and cache entries."""

from .aspect import ValidationAspect
from .cache import (
    CacheCategory,
    CacheEntry,
    CacheLayerName,
    CacheMetadata,
    CacheStats,
    LayerStats,
    OverallStats,
    WarmupReport,
)
from .settings import AspectSettings, ValidationSettings
from .validation import (
    AspectStatus,
    IssueSeverity,
    ValidationAspectResult,
    ValidationIssue,
    ValidationRequest,
    ValidationResult,
)

__all__ = [
    "AspectSettings",
    "AspectStatus",
    "CacheCategory",
    "CacheEntry",
    "CacheLayerName",
    "CacheMetadata",
    "CacheStats",
    "IssueSeverity",
    "LayerStats",
    "OverallStats",
    "ValidationAspect",
    "ValidationAspectResult",
    "ValidationIssue",
    "ValidationRequest",
    "ValidationResult",
    "ValidationSettings",
    "WarmupReport",
]
