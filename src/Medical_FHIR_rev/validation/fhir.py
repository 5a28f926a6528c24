"""Default FHIR aspect validators built on JSON Schema.

This module provides the two validators shipped with the engine:
- StructuralValidator: Draft 2020-12 JSON Schema checks for common resource
  types plus coding system/code sanity checks
- MetadataValidator: checks on ``meta.lastUpdated``, ``meta.versionId`` and
  ``meta.profile``

Neither validator is a FHIR conformance implementation; profile, terminology,
reference and business-rule validators are supplied by the host application.

Thread Safety:
    Thread-safe: Validator instances are stateless after construction.

Performance:
    Schema compilation happens once during initialization.

Example:
    >>> validator = StructuralValidator()
    >>> context = AspectContext(aspect=ValidationAspect.STRUCTURAL, settings=ValidationSettings())
    >>> await validator.validate({"resourceType": "Patient"}, "Patient", context)
    []
"""

from __future__ import annotations

# ==============================================================================
# IMPORTS
# ==============================================================================
from collections.abc import Iterable, Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from jsonschema import Draft202012Validator

from ..models.aspect import ValidationAspect
from ..models.validation import IssueSeverity, ValidationIssue
from .aspects import AspectContext, AspectValidator

# ==============================================================================
# DATA MODELS
# ==============================================================================


@dataclass
class _CompiledSchema:
    """Internal data model for compiled schema information.

    Attributes:
        validator: Compiled JSON Schema validator.
        resource_type: FHIR resource type name.
    """

    validator: Draft202012Validator
    resource_type: str


_DRAFT = "https://json-schema.org/draft/2020-12/schema"

_CODING_SCHEMA: dict[str, object] = {
    "type": "object",
    "required": ["system", "code"],
    "properties": {
        "system": {"type": "string"},
        "code": {"type": "string"},
        "display": {"type": "string"},
    },
}

_CODEABLE_CONCEPT_SCHEMA: dict[str, object] = {
    "type": "object",
    "properties": {
        "coding": {
            "type": "array",
            "minItems": 1,
            "items": _CODING_SCHEMA,
        },
        "text": {"type": "string"},
    },
}

_REFERENCE_SCHEMA: dict[str, object] = {
    "type": "object",
    "required": ["reference"],
    "properties": {"reference": {"type": "string"}, "display": {"type": "string"}},
}

_ID_SCHEMA: dict[str, object] = {"type": "string", "pattern": r"^[A-Za-z0-9\-\.]{1,64}$"}

_DEFINITIONS: dict[str, object] = {
    "CodeableConcept": _CODEABLE_CONCEPT_SCHEMA,
    "Coding": _CODING_SCHEMA,
    "Reference": _REFERENCE_SCHEMA,
}

GENERIC_RESOURCE_SCHEMA: dict[str, object] = {
    "$id": "https://example.org/fhir/Resource",
    "$schema": _DRAFT,
    "type": "object",
    "required": ["resourceType"],
    "properties": {
        "resourceType": {"type": "string", "pattern": "^[A-Z][A-Za-z]+$"},
        "id": _ID_SCHEMA,
        "meta": {"type": "object"},
    },
}

FHIR_SCHEMAS: dict[str, dict[str, object]] = {
    "Patient": {
        "$id": "https://example.org/fhir/Patient",
        "$schema": _DRAFT,
        "type": "object",
        "required": ["resourceType"],
        "properties": {
            "resourceType": {"const": "Patient"},
            "id": _ID_SCHEMA,
            "active": {"type": "boolean"},
            "name": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "use": {"type": "string"},
                        "family": {"type": "string"},
                        "given": {"type": "array", "items": {"type": "string"}},
                        "text": {"type": "string"},
                    },
                },
            },
            "gender": {"enum": ["male", "female", "other", "unknown"]},
            "birthDate": {
                "type": "string",
                "pattern": r"^\d{4}(-\d{2}(-\d{2})?)?$",
            },
            "identifier": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "system": {"type": "string"},
                        "value": {"type": "string"},
                    },
                },
            },
        },
        "definitions": _DEFINITIONS,
    },
    "Observation": {
        "$id": "https://example.org/fhir/Observation",
        "$schema": _DRAFT,
        "type": "object",
        "required": ["resourceType", "status", "code"],
        "properties": {
            "resourceType": {"const": "Observation"},
            "id": _ID_SCHEMA,
            "status": {
                "enum": [
                    "registered",
                    "preliminary",
                    "final",
                    "amended",
                    "corrected",
                    "cancelled",
                    "entered-in-error",
                    "unknown",
                ]
            },
            "code": {"$ref": "#/definitions/CodeableConcept"},
            "subject": {"$ref": "#/definitions/Reference"},
            "valueQuantity": {
                "type": "object",
                "properties": {
                    "value": {"type": "number"},
                    "unit": {"type": "string"},
                    "system": {"type": "string"},
                    "code": {"type": "string"},
                },
            },
        },
        "definitions": _DEFINITIONS,
    },
    "Evidence": {
        "$id": "https://example.org/fhir/Evidence",
        "$schema": _DRAFT,
        "type": "object",
        "required": ["resourceType", "status", "description", "outcome"],
        "properties": {
            "resourceType": {"const": "Evidence"},
            "status": {"type": "string"},
            "description": {"type": "string"},
            "outcome": {"$ref": "#/definitions/Reference"},
            "characteristic": {
                "type": "array",
                "items": {
                    "type": "object",
                    "required": ["code"],
                    "properties": {
                        "code": {"$ref": "#/definitions/CodeableConcept"},
                        "valueCodeableConcept": {"$ref": "#/definitions/CodeableConcept"},
                    },
                },
            },
        },
        "definitions": _DEFINITIONS,
    },
    "ResearchStudy": {
        "$id": "https://example.org/fhir/ResearchStudy",
        "$schema": _DRAFT,
        "type": "object",
        "required": ["resourceType", "status", "title", "identifier"],
        "properties": {
            "resourceType": {"const": "ResearchStudy"},
            "status": {"type": "string"},
            "title": {"type": "string"},
            "identifier": {
                "type": "array",
                "minItems": 1,
                "items": {
                    "type": "object",
                    "required": ["system", "value"],
                    "properties": {
                        "system": {"type": "string"},
                        "value": {"type": "string"},
                    },
                },
            },
            "phase": {"$ref": "#/definitions/CodeableConcept"},
            "category": {
                "type": "array",
                "items": {"$ref": "#/definitions/CodeableConcept"},
            },
        },
        "definitions": _DEFINITIONS,
    },
    "MedicationStatement": {
        "$id": "https://example.org/fhir/MedicationStatement",
        "$schema": _DRAFT,
        "type": "object",
        "required": ["resourceType", "status", "medication", "subject"],
        "properties": {
            "resourceType": {"const": "MedicationStatement"},
            "status": {"type": "string"},
            "medication": {
                "oneOf": [
                    {"$ref": "#/definitions/CodeableConcept"},
                    {"$ref": "#/definitions/Reference"},
                ]
            },
            "subject": {"$ref": "#/definitions/Reference"},
            "dosage": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "text": {"type": "string"},
                        "doseAndRate": {
                            "type": "array",
                            "items": {
                                "type": "object",
                                "properties": {
                                    "doseQuantity": {
                                        "type": "object",
                                        "required": ["value", "unit"],
                                        "properties": {
                                            "value": {"type": "number"},
                                            "unit": {"type": "string"},
                                        },
                                    }
                                },
                            },
                        },
                    },
                },
            },
        },
        "definitions": _DEFINITIONS,
    },
}


# ==============================================================================
# VALIDATOR IMPLEMENTATIONS
# ==============================================================================


def _issue(
    aspect: ValidationAspect,
    code: str,
    message: str,
    path: str | None = None,
    severity: IssueSeverity = IssueSeverity.ERROR,
) -> ValidationIssue:
    return ValidationIssue(aspect=aspect, severity=severity, message=message, code=code, path=path)


class StructuralValidator:
    """Validate resources against curated JSON Schemas.

    Resource types without a dedicated schema are checked against a generic
    resource schema. Every ``coding`` element found anywhere in the resource
    must carry a non-empty ``system`` and ``code``.
    """

    def __init__(self, *, schemas: Mapping[str, Mapping[str, object]] | None = None) -> None:
        """Initialize validator with schemas.

        Args:
            schemas: Optional custom schemas to use instead of defaults.
        """
        source = schemas or FHIR_SCHEMAS
        self._validators: MutableMapping[str, _CompiledSchema] = {}
        for resource_type, schema in source.items():
            self._validators[resource_type] = _CompiledSchema(
                validator=Draft202012Validator(schema), resource_type=resource_type
            )
        self._generic = _CompiledSchema(
            validator=Draft202012Validator(GENERIC_RESOURCE_SCHEMA), resource_type="Resource"
        )

    @property
    def supported_types(self) -> list[str]:
        return sorted(self._validators)

    async def validate(
        self,
        resource: Mapping[str, Any],
        resource_type: str,
        context: AspectContext,
    ) -> list[ValidationIssue]:
        aspect = ValidationAspect.STRUCTURAL
        declared = resource.get("resourceType")
        if not declared:
            return [_issue(aspect, "MISSING_RESOURCE_TYPE", "Missing resourceType")]
        issues: list[ValidationIssue] = []
        if resource_type and resource_type != "Unknown" and declared != resource_type:
            issues.append(
                _issue(
                    aspect,
                    "RESOURCE_TYPE_MISMATCH",
                    f"Declared resourceType '{declared}' does not match expected '{resource_type}'",
                    path="resourceType",
                )
            )
        compiled = self._validators.get(str(declared), self._generic)
        issues.extend(self._validate_schema(compiled, resource, str(declared)))
        issues.extend(self._validate_terminology(resource, str(declared)))
        return issues

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _validate_schema(
        self, compiled: _CompiledSchema, resource: Mapping[str, Any], resource_type: str
    ) -> list[ValidationIssue]:
        issues: list[ValidationIssue] = []
        errors = sorted(
            compiled.validator.iter_errors(resource),
            key=lambda error: [str(part) for part in error.path],
        )
        for error in errors:
            path = ".".join([resource_type, *(str(part) for part in error.path)])
            issues.append(
                _issue(ValidationAspect.STRUCTURAL, "SCHEMA_VIOLATION", error.message, path=path)
            )
        return issues

    def _validate_terminology(
        self, resource: Mapping[str, Any], resource_type: str
    ) -> list[ValidationIssue]:
        issues: list[ValidationIssue] = []
        for coding in self._iter_coding(resource):
            system = coding.get("system")
            code = coding.get("code")
            if not system or not isinstance(system, str):
                issues.append(
                    _issue(
                        ValidationAspect.STRUCTURAL,
                        "INVALID_CODING",
                        "Coding.system must be a non-empty string",
                        path=f"{resource_type}.coding",
                    )
                )
            if not code or not isinstance(code, str):
                issues.append(
                    _issue(
                        ValidationAspect.STRUCTURAL,
                        "INVALID_CODING",
                        "Coding.code must be a non-empty string",
                        path=f"{resource_type}.coding",
                    )
                )
        return issues

    def _iter_coding(self, resource: Mapping[str, Any]) -> Iterable[Mapping[str, Any]]:
        stack: list[object] = [resource]
        while stack:
            current = stack.pop()
            if isinstance(current, Mapping):
                if "coding" in current and isinstance(current["coding"], Sequence):
                    for entry in current["coding"]:
                        if isinstance(entry, Mapping):
                            yield entry
                stack.extend(current.values())
            elif isinstance(current, Sequence) and not isinstance(current, (str, bytes)):
                stack.extend(current)


def _is_instant(value: str) -> bool:
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return False
    return "T" in value and parsed.tzinfo is not None


class MetadataValidator:
    """Checks the ``meta`` element of a resource."""

    async def validate(
        self,
        resource: Mapping[str, Any],
        resource_type: str,
        context: AspectContext,
    ) -> list[ValidationIssue]:
        aspect = ValidationAspect.METADATA
        meta = resource.get("meta")
        if meta is None:
            return []
        if not isinstance(meta, Mapping):
            return [
                _issue(aspect, "INVALID_META", "meta must be an object", path=f"{resource_type}.meta")
            ]
        issues: list[ValidationIssue] = []
        last_updated = meta.get("lastUpdated")
        if last_updated is not None and not (
            isinstance(last_updated, str) and _is_instant(last_updated)
        ):
            issues.append(
                _issue(
                    aspect,
                    "INVALID_LAST_UPDATED",
                    "meta.lastUpdated must be an ISO-8601 instant with a timezone",
                    path=f"{resource_type}.meta.lastUpdated",
                )
            )
        version_id = meta.get("versionId")
        if version_id is not None and not isinstance(version_id, str):
            issues.append(
                _issue(
                    aspect,
                    "INVALID_VERSION_ID",
                    "meta.versionId must be a string",
                    path=f"{resource_type}.meta.versionId",
                )
            )
        profiles = meta.get("profile")
        if profiles is not None and not (
            isinstance(profiles, list) and all(isinstance(item, str) for item in profiles)
        ):
            issues.append(
                _issue(
                    aspect,
                    "INVALID_PROFILE",
                    "meta.profile must be a list of canonical URLs",
                    path=f"{resource_type}.meta.profile",
                )
            )
        elif (
            context.profile_url
            and isinstance(profiles, list)
            and context.profile_url not in profiles
        ):
            issues.append(
                _issue(
                    aspect,
                    "PROFILE_NOT_DECLARED",
                    f"Resource does not declare profile '{context.profile_url}' in meta.profile",
                    path=f"{resource_type}.meta.profile",
                    severity=IssueSeverity.INFO,
                )
            )
        return issues


# ==============================================================================
# FACTORY FUNCTIONS
# ==============================================================================


def default_validators() -> dict[ValidationAspect, AspectValidator]:
    """Dispatch table for the validators shipped with the engine."""
    return {
        ValidationAspect.STRUCTURAL: StructuralValidator(),
        ValidationAspect.METADATA: MetadataValidator(),
    }


__all__ = [
    "FHIR_SCHEMAS",
    "GENERIC_RESOURCE_SCHEMA",
    "MetadataValidator",
    "StructuralValidator",
    "default_validators",
]
