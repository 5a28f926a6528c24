"""Multi-aspect validation engine.

Key Responsibilities:
    - Resolve which aspects run from the active settings and the request
    - Execute aspects in parallel or sequentially under per-aspect timeouts
    - Contain aspect failures as ``failed`` aspect results with stable codes
    - Cache executed aspect results and aggregate a six-aspect result

Collaborators:
    - Upstream: Callers, the CLI and :class:`BatchCoordinator`
    - Downstream: Aspect validators, :class:`SettingsProvider`,
      :class:`ValidationCacheManager`, :class:`ValidationEventBus`

Side Effects:
    - Publishes ``ValidationCompleted`` / ``ValidationFailed`` events
    - Emits Prometheus metrics and one OpenTelemetry span per resource
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Iterable, Mapping, Sequence

import structlog
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from pydantic import ValidationError

from ..caching.cache_manager import ValidationCacheManager
from ..config.settings import EngineSettings
from ..models.aspect import ValidationAspect
from ..models.cache import CacheCategory, CacheMetadata
from ..models.settings import ValidationSettings
from ..models.validation import (
    AspectStatus,
    IssueSeverity,
    ValidationAspectResult,
    ValidationIssue,
    ValidationRequest,
    ValidationResult,
)
from ..observability.metrics import (
    record_aspect_execution,
    record_aspect_failure,
    record_resource_validation,
)
from ..utils.identifiers import hash_payload, short_hash
from .aspects import AspectContext, AspectValidator, build_dispatch_table
from .errors import AspectTimeoutError, EngineIssueCode, ErrorClassifier, ValidationEngineError
from .events import ValidationCompleted, ValidationEventBus, ValidationFailed
from .fhir import default_validators
from .settings_provider import SettingsProvider, StaticSettingsProvider

logger = structlog.get_logger(__name__)

FILTERED_REASON = "Aspect filtered out by request or temporary override"
DISABLED_REASON = "Aspect disabled in validation settings"
ABORTED_REASON = "Validation was aborted before this aspect could execute"

_FALLBACK_TIMEOUT_MS = 30_000


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 3)


def _discard_outcome(task: asyncio.Future) -> None:
    if not task.cancelled():
        task.exception()


async def _within_timeout(
    call: Awaitable[Sequence[ValidationIssue]], aspect: ValidationAspect, timeout_ms: int
) -> Sequence[ValidationIssue]:
    """Await ``call`` for at most ``timeout_ms``.

    On timeout the validator task is cancelled and left to unwind on its own;
    a validator that ignores cancellation cannot hold the caller past its
    deadline.
    """
    task = asyncio.ensure_future(call)
    try:
        done, _ = await asyncio.wait({task}, timeout=timeout_ms / 1000)
    except asyncio.CancelledError:
        task.cancel()
        raise
    if not done:
        task.cancel()
        task.add_done_callback(_discard_outcome)
        raise AspectTimeoutError(aspect.value, timeout_ms)
    return task.result()


class ValidationEngine:
    """Validates FHIR resources across the six validation aspects.

    Args:
        validators: Validators keyed by aspect. Defaults to the structural and
            metadata validators from :func:`default_validators`.
        settings_provider: Source of the active :class:`ValidationSettings`
            when a request carries none.
        cache: Optional cache manager for executed aspect results.
        settings: Engine runtime configuration.
        events: Event bus receiving completion and failure events.
        classifier: Maps validator exceptions to issue codes.
    """

    def __init__(
        self,
        validators: Mapping[ValidationAspect | str, AspectValidator] | None = None,
        *,
        settings_provider: SettingsProvider | None = None,
        cache: ValidationCacheManager | None = None,
        settings: EngineSettings | None = None,
        events: ValidationEventBus | None = None,
        classifier: ErrorClassifier | None = None,
    ) -> None:
        self._validators = build_dispatch_table(
            validators if validators is not None else default_validators()
        )
        self._settings_provider = settings_provider or StaticSettingsProvider()
        self._cache = cache
        self._settings = settings or EngineSettings()
        self._parallel = self._settings.parallel
        self._events = events or ValidationEventBus()
        self._classifier = classifier or ErrorClassifier(self._settings.error_classification)
        self._tracer = trace.get_tracer(__name__)

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------
    @property
    def events(self) -> ValidationEventBus:
        return self._events

    @property
    def cache(self) -> ValidationCacheManager | None:
        return self._cache

    @property
    def parallel_execution(self) -> bool:
        return self._parallel

    def set_parallel_execution(self, enabled: bool) -> None:
        self._parallel = enabled
        logger.info("validation.engine.mode", parallel=enabled)

    def register_validator(
        self, aspect: ValidationAspect | str, validator: AspectValidator
    ) -> None:
        self._validators.update(build_dispatch_table({aspect: validator}))

    def timeout_ms_for(self, aspect: ValidationAspect, settings: ValidationSettings) -> int:
        override = settings.for_aspect(aspect).timeout_ms
        if override is not None:
            return override
        return self._settings.aspect_timeouts_ms.get(aspect.value, _FALLBACK_TIMEOUT_MS)

    @staticmethod
    def resolve_enabled_aspects(
        settings: ValidationSettings,
        requested_aspects: Iterable[ValidationAspect | str] | None = None,
    ) -> frozenset[ValidationAspect]:
        """Return the aspects to execute.

        A non-empty ``requested_aspects`` is intersected with the aspects
        enabled in ``settings``; otherwise the enabled aspects are returned.
        Settings enabling nothing yield an empty set.
        """
        enabled = frozenset(settings.enabled_aspects())
        requested = frozenset(
            aspect
            for aspect in (ValidationAspect.parse(item) for item in requested_aspects or ())
            if aspect is not None
        )
        if requested:
            return enabled & requested
        return enabled

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    async def validate_resource(self, request: ValidationRequest) -> ValidationResult:
        """Validate one resource and publish ``ValidationCompleted``.

        Raises:
            ValidationEngineError: If the active settings cannot be resolved.
        """
        resource_type = request.effective_resource_type
        started = time.perf_counter()
        with self._tracer.start_as_current_span("validation.validate_resource") as span:
            span.set_attribute("fhir.resource_type", resource_type)
            try:
                result = await self._validate(request, resource_type, started)
            except Exception as exc:
                span.record_exception(exc)
                span.set_status(Status(StatusCode.ERROR, str(exc)))
                logger.error(
                    "validation.resource.error",
                    resource_type=resource_type,
                    resource_id=request.resource_id,
                    error=str(exc),
                )
                self._events.publish(ValidationFailed(error=exc, resource_type=resource_type))
                raise
            span.set_attribute("fhir.valid", result.is_valid)
            span.set_attribute("fhir.issue_count", len(result.issues))
        record_resource_validation(resource_type, result.is_valid)
        logger.info(
            "validation.resource.completed",
            resource_type=resource_type,
            resource_id=result.resource_id,
            is_valid=result.is_valid,
            issues=len(result.issues),
            executed=[aspect.value for aspect in result.executed_aspects],
            total_time_ms=result.total_time_ms,
        )
        self._events.publish(ValidationCompleted(result=result))
        return result

    async def validate_resources(
        self, requests: Sequence[ValidationRequest]
    ) -> list[ValidationResult]:
        """Validate requests in order; a failing request yields a synthetic failed result."""
        results: list[ValidationResult] = []
        for index, request in enumerate(requests):
            try:
                results.append(await self.validate_resource(request))
            except Exception as exc:
                logger.warning(
                    "validation.resources.item_failed",
                    index=index,
                    resource_type=request.effective_resource_type,
                    error=str(exc),
                )
                results.append(self.aborted_result(request, exc))
        return results

    async def invalidate_cached_results(self, settings: ValidationSettings) -> int:
        """Drop cached aspect results computed under ``settings``."""
        if self._cache is None:
            return 0
        return await self._cache.invalidate_by_settings_hash(settings.settings_hash())

    def aborted_result(self, request: ValidationRequest, error: BaseException) -> ValidationResult:
        """Synthetic result for a request whose validation raised."""
        issue = ValidationIssue(
            aspect=ValidationAspect.STRUCTURAL,
            severity=IssueSeverity.ERROR,
            message=f"Validation failed: {error}",
            code=EngineIssueCode.VALIDATION_ERROR.value,
        )
        aspects = [
            ValidationAspectResult(
                aspect=ValidationAspect.STRUCTURAL,
                is_valid=False,
                issues=[issue],
                status=AspectStatus.FAILED,
                reason=str(error),
            )
        ]
        aspects.extend(
            ValidationAspectResult(
                aspect=aspect, is_valid=True, status=AspectStatus.SKIPPED, reason=ABORTED_REASON
            )
            for aspect in ValidationAspect.ordered()[1:]
        )
        return ValidationResult(
            resource_id=request.resource_id,
            resource_type=request.effective_resource_type,
            is_valid=False,
            issues=[issue],
            aspects=aspects,
            fhir_version=self._settings.fhir_version,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    async def _resolve_settings(self, request: ValidationRequest) -> ValidationSettings:
        if request.settings is not None:
            return request.settings
        try:
            return await self._settings_provider.get_active_settings()
        except Exception as exc:
            raise ValidationEngineError(
                "Unable to resolve active validation settings", detail=str(exc)
            ) from exc

    async def _validate(
        self, request: ValidationRequest, resource_type: str, started: float
    ) -> ValidationResult:
        settings = await self._resolve_settings(request)
        settings_hash = settings.settings_hash()
        enabled = self.resolve_enabled_aspects(settings)
        selected = self.resolve_enabled_aspects(settings, request.requested_aspects)
        to_run = [aspect for aspect in ValidationAspect.ordered() if aspect in selected]

        def run(aspect: ValidationAspect) -> Awaitable[ValidationAspectResult]:
            return self._execute_aspect(aspect, request, resource_type, settings, settings_hash)

        if len(to_run) == 1:
            executed = [await run(to_run[0])]
        elif self._parallel:
            executed = list(await asyncio.gather(*(run(aspect) for aspect in to_run)))
        else:
            executed = [await run(aspect) for aspect in to_run]

        by_aspect = {item.aspect: item for item in executed}
        aspects: list[ValidationAspectResult] = []
        for aspect in ValidationAspect.ordered():
            if aspect in by_aspect:
                aspects.append(by_aspect[aspect])
            elif aspect in enabled:
                aspects.append(
                    ValidationAspectResult(
                        aspect=aspect,
                        is_valid=True,
                        status=AspectStatus.SKIPPED,
                        reason=FILTERED_REASON,
                    )
                )
            else:
                aspects.append(
                    ValidationAspectResult(
                        aspect=aspect,
                        is_valid=True,
                        status=AspectStatus.DISABLED,
                        reason=DISABLED_REASON,
                    )
                )

        return ValidationResult(
            resource_id=request.resource_id,
            resource_type=resource_type,
            is_valid=all(item.is_valid for item in aspects if item.ran),
            issues=[issue for item in aspects for issue in item.issues],
            aspects=aspects,
            total_time_ms=_elapsed_ms(started),
            fhir_version=self._settings.fhir_version,
            settings_hash=settings_hash,
        )

    def _cache_key(
        self, aspect: ValidationAspect, request: ValidationRequest, settings: ValidationSettings
    ) -> str:
        return ValidationCacheManager.generate_key(
            request.resource,
            {
                "aspect": aspect.value,
                "profile_url": request.profile_url,
                "settings": settings.as_payload(),
            },
            self._settings.fhir_version,
            CacheCategory.VALIDATION,
        )

    async def _execute_aspect(
        self,
        aspect: ValidationAspect,
        request: ValidationRequest,
        resource_type: str,
        settings: ValidationSettings,
        settings_hash: str,
    ) -> ValidationAspectResult:
        use_cache = self._cache is not None and self._settings.cache_results
        cache_key = self._cache_key(aspect, request, settings) if use_cache else None
        if cache_key is not None:
            cached = await self._cache.get(cache_key, CacheCategory.VALIDATION)
            if cached is not None:
                try:
                    result = ValidationAspectResult.model_validate(cached)
                except ValidationError:
                    logger.warning("validation.aspect.cache_corrupt", aspect=aspect.value)
                else:
                    logger.debug(
                        "validation.aspect.cache_hit",
                        aspect=aspect.value,
                        key=short_hash(cache_key),
                    )
                    return result.model_copy(update={"cached": True})

        started = time.perf_counter()
        result = await self._run_validator(aspect, request, resource_type, settings, started)
        record_aspect_execution(aspect.value, result.status.value, result.execution_time_ms / 1000)

        if cache_key is not None and result.status is AspectStatus.EXECUTED:
            metadata = CacheMetadata(
                resource_hash=hash_payload(request.resource),
                settings_hash=settings_hash,
                fhir_version=self._settings.fhir_version,
                resource_type=resource_type,
                profile_url=request.profile_url,
            )
            await self._cache.set(
                cache_key, result.model_dump(mode="json"), CacheCategory.VALIDATION, metadata
            )
        return result

    async def _run_validator(
        self,
        aspect: ValidationAspect,
        request: ValidationRequest,
        resource_type: str,
        settings: ValidationSettings,
        started: float,
    ) -> ValidationAspectResult:
        validator = self._validators.get(aspect)
        if validator is None:
            logger.warning("validation.aspect.unknown", aspect=aspect.value)
            return self._failed(
                aspect,
                EngineIssueCode.UNKNOWN_ASPECT,
                f"No validator registered for aspect '{aspect.value}'",
                started,
            )

        timeout_ms = self.timeout_ms_for(aspect, settings)
        context = AspectContext(
            aspect=aspect,
            settings=settings,
            profile_url=request.profile_url,
            fhir_version=self._settings.fhir_version,
            resource_id=request.resource_id,
        )
        try:
            issues = await _within_timeout(
                validator.validate(request.resource, resource_type, context), aspect, timeout_ms
            )
        except AspectTimeoutError as exc:
            logger.warning(
                "validation.aspect.timeout", aspect=aspect.value, timeout_ms=exc.timeout_ms
            )
            return self._failed(
                aspect,
                self._classifier.classify(exc),
                f"{aspect.value} validation timed out after {exc.timeout_ms}ms",
                started,
            )
        except Exception as exc:
            code = self._classifier.classify(exc)
            logger.warning(
                "validation.aspect.failed",
                aspect=aspect.value,
                code=code.value,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return self._failed(aspect, code, f"{aspect.value} validation failed: {exc}", started)

        issues = list(issues or [])
        return ValidationAspectResult(
            aspect=aspect,
            is_valid=not issues,
            issues=issues,
            execution_time_ms=_elapsed_ms(started),
            status=AspectStatus.EXECUTED,
        )

    def _failed(
        self,
        aspect: ValidationAspect,
        code: EngineIssueCode,
        message: str,
        started: float,
    ) -> ValidationAspectResult:
        record_aspect_failure(aspect.value, code.value)
        return ValidationAspectResult(
            aspect=aspect,
            is_valid=False,
            issues=[
                ValidationIssue(
                    aspect=aspect,
                    severity=IssueSeverity.ERROR,
                    message=message,
                    code=code.value,
                )
            ],
            execution_time_ms=_elapsed_ms(started),
            status=AspectStatus.FAILED,
            reason=message,
        )


__all__ = [
    "ABORTED_REASON",
    "DISABLED_REASON",
    "FILTERED_REASON",
    "ValidationEngine",
]
