"""Validation result models shared by the engine, the cache and the batch coordinator.

Every validation reports on the same six aspects in the same order, so the
declaration order of :class:`ValidationAspect` doubles as the canonical
aspect order of :attr:`ValidationResult.aspects`.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .aspect import ValidationAspect
from .settings import ValidationSettings


class IssueSeverity(str, Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class AspectStatus(str, Enum):
    """Outcome of a single aspect within one validation."""

    EXECUTED = "executed"
    SKIPPED = "skipped"
    DISABLED = "disabled"
    FAILED = "failed"


class ValidationModel(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class ValidationIssue(ValidationModel):
    """A single finding raised by an aspect validator."""

    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)

    aspect: ValidationAspect
    severity: IssueSeverity = IssueSeverity.ERROR
    message: str
    code: str
    path: str | None = None


class ValidationAspectResult(ValidationModel):
    """Result of one aspect. Placeholders (skipped/disabled) carry no issues."""

    aspect: ValidationAspect
    is_valid: bool
    issues: list[ValidationIssue] = Field(default_factory=list)
    execution_time_ms: float = Field(default=0.0, ge=0.0)
    status: AspectStatus
    reason: str | None = None
    cached: bool = False

    @property
    def ran(self) -> bool:
        """True when the aspect contributes to overall validity."""
        return self.status in (AspectStatus.EXECUTED, AspectStatus.FAILED)


class ValidationResult(ValidationModel):
    """Aggregated result across all six aspects."""

    resource_id: str | None = None
    resource_type: str
    is_valid: bool
    issues: list[ValidationIssue] = Field(default_factory=list)
    aspects: list[ValidationAspectResult]
    validated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    total_time_ms: float = Field(default=0.0, ge=0.0)
    fhir_version: str = "R4"
    settings_hash: str | None = None

    @field_validator("aspects")
    @classmethod
    def _ensure_canonical(
        cls, value: list[ValidationAspectResult]
    ) -> list[ValidationAspectResult]:
        if [item.aspect for item in value] != list(ValidationAspect.ordered()):
            raise ValueError("aspects must list all six aspects in canonical order")
        return value

    @property
    def error_count(self) -> int:
        return sum(1 for issue in self.issues if issue.severity is IssueSeverity.ERROR)

    @property
    def warning_count(self) -> int:
        return sum(1 for issue in self.issues if issue.severity is IssueSeverity.WARNING)

    @property
    def executed_aspects(self) -> list[ValidationAspect]:
        return [item.aspect for item in self.aspects if item.status is AspectStatus.EXECUTED]

    def aspect(self, aspect: ValidationAspect) -> ValidationAspectResult:
        for item in self.aspects:
            if item.aspect is aspect:
                return item
        raise KeyError(aspect)


class ValidationRequest(ValidationModel):
    """A single resource submitted for validation."""

    resource: dict[str, Any]
    resource_type: str | None = None
    profile_url: str | None = None
    requested_aspects: frozenset[ValidationAspect] | None = None
    settings: ValidationSettings | None = None

    @field_validator("requested_aspects", mode="before")
    @classmethod
    def _normalise_aspects(cls, value: Any) -> Any:
        if value is None:
            return None
        if isinstance(value, (str, ValidationAspect)):
            value = [value]
        if not isinstance(value, (Sequence, set, frozenset)):
            raise ValueError("requested_aspects must be a collection of aspect names")
        parsed = (ValidationAspect.parse(item) for item in value)
        return frozenset(item for item in parsed if item is not None)

    @property
    def effective_resource_type(self) -> str:
        if self.resource_type:
            return self.resource_type
        declared = self.resource.get("resourceType")
        return declared if isinstance(declared, str) and declared else "Unknown"

    @property
    def resource_id(self) -> str | None:
        value = self.resource.get("id")
        return str(value) if value is not None else None

    @classmethod
    def from_resource(cls, resource: Mapping[str, Any], **kwargs: Any) -> ValidationRequest:
        return cls(resource=dict(resource), **kwargs)


__all__ = [
    "AspectStatus",
    "IssueSeverity",
    "ValidationAspect",
    "ValidationAspectResult",
    "ValidationIssue",
    "ValidationRequest",
    "ValidationResult",
]
