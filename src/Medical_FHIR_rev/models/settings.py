"""Strongly typed validation settings.

One :class:`AspectSettings` block per aspect; the settings hash feeds cache
keys and settings-based invalidation.
"""

from __future__ import annotations

from collections.abc import Iterable

from pydantic import BaseModel, ConfigDict, Field

from ..utils.identifiers import hash_payload
from .aspect import ValidationAspect


class AspectSettings(BaseModel):
    """Enable flag and optional timeout override for one aspect."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    enabled: bool = True
    timeout_ms: int | None = Field(default=None, gt=0)


_FIELD_BY_ASPECT: dict[ValidationAspect, str] = {
    ValidationAspect.STRUCTURAL: "structural",
    ValidationAspect.PROFILE: "profile",
    ValidationAspect.TERMINOLOGY: "terminology",
    ValidationAspect.REFERENCE: "reference",
    ValidationAspect.BUSINESS_RULE: "business_rule",
    ValidationAspect.METADATA: "metadata",
}


class ValidationSettings(BaseModel):
    """Active validation settings, validated when loaded."""

    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)

    structural: AspectSettings = Field(default_factory=AspectSettings)
    profile: AspectSettings = Field(default_factory=AspectSettings)
    terminology: AspectSettings = Field(default_factory=AspectSettings)
    reference: AspectSettings = Field(default_factory=AspectSettings)
    business_rule: AspectSettings = Field(default_factory=AspectSettings, alias="businessRule")
    metadata: AspectSettings = Field(default_factory=AspectSettings)

    @classmethod
    def only(cls, aspects: Iterable[ValidationAspect | str]) -> ValidationSettings:
        """Build settings enabling exactly ``aspects``; unknown names are ignored."""
        wanted = {ValidationAspect.parse(item) for item in aspects}
        return cls(
            **{
                field: AspectSettings(enabled=aspect in wanted)
                for aspect, field in _FIELD_BY_ASPECT.items()
            }
        )

    @classmethod
    def none_enabled(cls) -> ValidationSettings:
        return cls.only(())

    def for_aspect(self, aspect: ValidationAspect) -> AspectSettings:
        return getattr(self, _FIELD_BY_ASPECT[aspect])

    def enabled_aspects(self) -> tuple[ValidationAspect, ...]:
        return tuple(
            aspect for aspect in ValidationAspect.ordered() if self.for_aspect(aspect).enabled
        )

    def as_payload(self) -> dict[str, dict[str, object]]:
        """Aspect-keyed dump used for hashing and cache keys."""
        return {
            aspect.value: self.for_aspect(aspect).model_dump()
            for aspect in ValidationAspect.ordered()
        }

    def settings_hash(self) -> str:
        return hash_payload(self.as_payload())


__all__ = ["AspectSettings", "ValidationSettings"]
