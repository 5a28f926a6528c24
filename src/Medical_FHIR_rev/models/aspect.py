"""The closed set of validation aspects."""

from __future__ import annotations

from enum import Enum


class ValidationAspect(str, Enum):
    """The six independent validation dimensions.

    Declaration order is the canonical order used in every result.
    """

    STRUCTURAL = "structural"
    PROFILE = "profile"
    TERMINOLOGY = "terminology"
    REFERENCE = "reference"
    BUSINESS_RULE = "businessRule"
    METADATA = "metadata"

    @classmethod
    def ordered(cls) -> tuple[ValidationAspect, ...]:
        return tuple(cls)

    @classmethod
    def parse(cls, value: object) -> ValidationAspect | None:
        """Normalise loose spellings (``business-rule``, ``Business_Rules``) to a member."""
        if isinstance(value, ValidationAspect):
            return value
        if not isinstance(value, str):
            return None
        normalized = value.strip().lower().replace("-", "").replace("_", "")
        return _ASPECT_ALIASES.get(normalized)


_ASPECT_ALIASES: dict[str, ValidationAspect] = {
    "structural": ValidationAspect.STRUCTURAL,
    "profile": ValidationAspect.PROFILE,
    "terminology": ValidationAspect.TERMINOLOGY,
    "reference": ValidationAspect.REFERENCE,
    "businessrule": ValidationAspect.BUSINESS_RULE,
    "businessrules": ValidationAspect.BUSINESS_RULE,
    "metadata": ValidationAspect.METADATA,
}


__all__ = ["ValidationAspect"]
