"""Error taxonomy for aspect execution and engine failures."""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from enum import Enum

from ..config.settings import ErrorClassificationSettings
from ..utils.errors import FoundationError


class EngineIssueCode(str, Enum):
    """Stable issue codes produced by the engine itself."""

    TIMEOUT = "TIMEOUT"
    NETWORK_ERROR = "NETWORK_ERROR"
    ASPECT_ERROR = "ASPECT_ERROR"
    UNKNOWN_ASPECT = "UNKNOWN_ASPECT"
    VALIDATION_ERROR = "VALIDATION_ERROR"


class ValidationEngineError(FoundationError):
    """Raised when a validation cannot start, e.g. settings are unavailable."""

    def __init__(self, message: str, *, detail: str | None = None) -> None:
        super().__init__(message, status=503, detail=detail)


class AspectTimeoutError(FoundationError):
    """An aspect validator exceeded its time budget."""

    def __init__(self, aspect: str, timeout_ms: int) -> None:
        super().__init__(
            f"Aspect '{aspect}' timed out after {timeout_ms}ms",
            status=504,
            extra={"aspect": aspect, "timeout_ms": timeout_ms},
        )
        self.aspect = aspect
        self.timeout_ms = timeout_ms


class ErrorClassifier:
    """Maps validator exceptions to ``TIMEOUT``, ``NETWORK_ERROR`` or ``ASPECT_ERROR``.

    Exception types are checked first; message fragments from configuration
    are only consulted for exceptions whose type is not conclusive.
    """

    def __init__(self, settings: ErrorClassificationSettings | None = None) -> None:
        settings = settings or ErrorClassificationSettings()
        self.timeout_patterns = self._lower(settings.timeout_patterns)
        self.network_patterns = self._lower(settings.network_patterns)

    @staticmethod
    def _lower(patterns: Sequence[str]) -> tuple[str, ...]:
        return tuple(pattern.lower() for pattern in patterns)

    def classify(self, exc: BaseException) -> EngineIssueCode:
        if isinstance(exc, (TimeoutError, asyncio.TimeoutError, AspectTimeoutError)):
            return EngineIssueCode.TIMEOUT
        if isinstance(exc, ConnectionError):
            return EngineIssueCode.NETWORK_ERROR
        message = str(exc).lower()
        if any(pattern in message for pattern in self.timeout_patterns):
            return EngineIssueCode.TIMEOUT
        if any(pattern in message for pattern in self.network_patterns):
            return EngineIssueCode.NETWORK_ERROR
        return EngineIssueCode.ASPECT_ERROR


__all__ = [
    "AspectTimeoutError",
    "EngineIssueCode",
    "ErrorClassifier",
    "ValidationEngineError",
]
