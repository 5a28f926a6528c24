from __future__ import annotations

import asyncio
from collections.abc import Mapping
from typing import Any

import pytest
import structlog

from Medical_FHIR_rev.models import (
    IssueSeverity,
    ValidationAspect,
    ValidationIssue,
    ValidationSettings,
)
from Medical_FHIR_rev.validation.aspects import AspectContext


class FakeClock:
    """Manually advanced epoch clock for expiry tests."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingValidator:
    """Aspect validator returning canned issues and counting calls."""

    def __init__(
        self,
        aspect: ValidationAspect,
        *,
        errors: int = 0,
        warnings: int = 0,
        delay: float = 0.0,
    ) -> None:
        self.aspect = aspect
        self.errors = errors
        self.warnings = warnings
        self.delay = delay
        self.calls = 0
        self.contexts: list[AspectContext] = []

    async def validate(
        self, resource: Mapping[str, Any], resource_type: str, context: AspectContext
    ) -> list[ValidationIssue]:
        self.calls += 1
        self.contexts.append(context)
        if self.delay:
            await asyncio.sleep(self.delay)
        issues = [
            ValidationIssue(
                aspect=self.aspect,
                severity=IssueSeverity.ERROR,
                message=f"{self.aspect.value} error {index}",
                code="TEST_ERROR",
            )
            for index in range(self.errors)
        ]
        issues.extend(
            ValidationIssue(
                aspect=self.aspect,
                severity=IssueSeverity.WARNING,
                message=f"{self.aspect.value} warning {index}",
                code="TEST_WARNING",
            )
            for index in range(self.warnings)
        )
        return issues


class HangingValidator:
    """Never completes unless cancelled."""

    def __init__(self) -> None:
        self.cancelled = False

    async def validate(
        self, resource: Mapping[str, Any], resource_type: str, context: AspectContext
    ) -> list[ValidationIssue]:
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        return []


class RaisingValidator:
    def __init__(self, error: BaseException) -> None:
        self.error = error

    async def validate(
        self, resource: Mapping[str, Any], resource_type: str, context: AspectContext
    ) -> list[ValidationIssue]:
        raise self.error


def recording_validators(**overrides: RecordingValidator) -> dict[ValidationAspect, Any]:
    validators: dict[ValidationAspect, Any] = {
        aspect: RecordingValidator(aspect) for aspect in ValidationAspect.ordered()
    }
    for name, validator in overrides.items():
        validators[ValidationAspect.parse(name)] = validator
    return validators


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
def _reset_structlog():
    """Drop logger configuration bound to streams of finished tests."""
    yield
    structlog.reset_defaults()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def patient_resource() -> dict[str, Any]:
    return {"resourceType": "Patient", "id": "p1", "name": [{"family": "Smith"}]}


@pytest.fixture
def all_enabled() -> ValidationSettings:
    return ValidationSettings()
