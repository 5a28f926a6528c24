"""Validation engine, batch coordination and the default aspect validators."""

from .aspects import AspectContext, AspectValidator, build_dispatch_table
from .batch import BatchCoordinator, BatchSummary
from .engine import ValidationEngine
from .errors import AspectTimeoutError, EngineIssueCode, ErrorClassifier, ValidationEngineError
from .events import (
    BatchCancelled,
    BatchCompleted,
    BatchFailed,
    BatchItemFailed,
    BatchItemValidated,
    BatchProgress,
    BatchProgressSnapshot,
    BatchStarted,
    EventSubscription,
    ValidationCompleted,
    ValidationEvent,
    ValidationEventBus,
    ValidationFailed,
)
from .fhir import MetadataValidator, StructuralValidator, default_validators
from .settings_provider import SettingsProvider, StaticSettingsProvider

__all__ = [
    "AspectContext",
    "AspectTimeoutError",
    "AspectValidator",
    "BatchCancelled",
    "BatchCompleted",
    "BatchCoordinator",
    "BatchFailed",
    "BatchItemFailed",
    "BatchItemValidated",
    "BatchProgress",
    "BatchProgressSnapshot",
    "BatchStarted",
    "BatchSummary",
    "EngineIssueCode",
    "ErrorClassifier",
    "EventSubscription",
    "MetadataValidator",
    "SettingsProvider",
    "StaticSettingsProvider",
    "StructuralValidator",
    "ValidationCompleted",
    "ValidationEngine",
    "ValidationEngineError",
    "ValidationEvent",
    "ValidationEventBus",
    "ValidationFailed",
    "build_dispatch_table",
    "default_validators",
]
