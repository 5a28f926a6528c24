"""FHIR validation platform core.

Key Responsibilities:
    - Validate FHIR resources across six independent aspects
    - Cache validation results, profiles and terminology in three tiers
    - Drive validation over batches with progress events and cancellation

Collaborators:
    - Upstream: HTTP layers, workers and the ``fhir-validate`` CLI
    - Downstream: Aspect validators, Redis and the local filesystem

Example:
    >>> from Medical_FHIR_rev import ValidationEngine, ValidationRequest
    >>> engine = ValidationEngine()
    >>> result = await engine.validate_resource(
    ...     ValidationRequest(resource={"resourceType": "Patient", "id": "p1"})
    ... )
"""

from .caching.cache_manager import ValidationCacheManager, create_cache_manager
from .models import (
    AspectSettings,
    AspectStatus,
    CacheCategory,
    IssueSeverity,
    ValidationAspect,
    ValidationAspectResult,
    ValidationIssue,
    ValidationRequest,
    ValidationResult,
    ValidationSettings,
)
from .validation import (
    BatchCoordinator,
    StaticSettingsProvider,
    ValidationEngine,
    ValidationEventBus,
)

__all__ = [
    "AspectSettings",
    "AspectStatus",
    "BatchCoordinator",
    "CacheCategory",
    "IssueSeverity",
    "StaticSettingsProvider",
    "ValidationAspect",
    "ValidationAspectResult",
    "ValidationCacheManager",
    "ValidationEngine",
    "ValidationEventBus",
    "ValidationIssue",
    "ValidationRequest",
    "ValidationResult",
    "ValidationSettings",
    "create_cache_manager",
]
