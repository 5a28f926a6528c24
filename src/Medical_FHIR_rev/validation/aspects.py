"""Aspect validator contract and the enum-indexed dispatch table."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from ..models.aspect import ValidationAspect
from ..models.settings import ValidationSettings
from ..models.validation import ValidationIssue


@dataclass(slots=True, frozen=True)
class AspectContext:
    """Per-call context handed to every aspect validator."""

    aspect: ValidationAspect
    settings: ValidationSettings
    profile_url: str | None = None
    fhir_version: str = "R4"
    resource_id: str | None = None


@runtime_checkable
class AspectValidator(Protocol):
    """Async callable returning the issues found for one aspect."""

    async def validate(
        self,
        resource: Mapping[str, Any],
        resource_type: str,
        context: AspectContext,
    ) -> list[ValidationIssue]: ...


AspectDispatchTable = Mapping[ValidationAspect, AspectValidator]


def build_dispatch_table(
    validators: Mapping[ValidationAspect | str, AspectValidator],
) -> dict[ValidationAspect, AspectValidator]:
    """Normalise validator registrations keyed by aspect name or member.

    Raises:
        ValueError: If a key does not name one of the six aspects.
    """
    table: dict[ValidationAspect, AspectValidator] = {}
    for key, validator in validators.items():
        aspect = ValidationAspect.parse(key)
        if aspect is None:
            raise ValueError(f"Unknown validation aspect '{key}'")
        table[aspect] = validator
    return table


__all__ = [
    "AspectContext",
    "AspectDispatchTable",
    "AspectValidator",
    "build_dispatch_table",
]
