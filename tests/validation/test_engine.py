from __future__ import annotations

import asyncio

import pytest

from Medical_FHIR_rev.caching import ValidationCacheManager
from Medical_FHIR_rev.config.settings import CacheSettings, EngineSettings
from Medical_FHIR_rev.models import (
    AspectStatus,
    IssueSeverity,
    ValidationAspect,
    ValidationIssue,
    ValidationRequest,
    ValidationSettings,
)
from Medical_FHIR_rev.models.cache import CacheLayerName
from Medical_FHIR_rev.storage.cache import InMemoryCacheRecordStore
from Medical_FHIR_rev.validation import (
    AspectTimeoutError,
    EngineIssueCode,
    ErrorClassifier,
    StaticSettingsProvider,
    ValidationCompleted,
    ValidationEngine,
    ValidationEngineError,
    ValidationEventBus,
    ValidationFailed,
)
from Medical_FHIR_rev.validation.engine import (
    ABORTED_REASON,
    DISABLED_REASON,
    FILTERED_REASON,
)
from tests.conftest import (
    HangingValidator,
    RaisingValidator,
    RecordingValidator,
    recording_validators,
)


class BrokenSettingsProvider:
    async def get_active_settings(self) -> ValidationSettings:
        raise RuntimeError("settings store unavailable")


def _engine(validators=None, active: ValidationSettings | None = None, **kwargs):
    return ValidationEngine(
        validators if validators is not None else recording_validators(),
        settings_provider=StaticSettingsProvider(active or ValidationSettings()),
        **kwargs,
    )


@pytest.mark.anyio("asyncio")
async def test_structural_only_patient_executes_one_aspect(patient_resource):
    validators = recording_validators()
    engine = _engine(validators, ValidationSettings.only(["structural"]))
    result = await engine.validate_resource(ValidationRequest(resource=patient_resource))

    assert result.is_valid
    assert result.resource_id == "p1"
    assert result.resource_type == "Patient"
    assert [aspect.aspect for aspect in result.aspects] == list(ValidationAspect.ordered())
    assert result.aspect(ValidationAspect.STRUCTURAL).status is AspectStatus.EXECUTED
    for aspect in ValidationAspect.ordered()[1:]:
        placeholder = result.aspect(aspect)
        assert placeholder.status is AspectStatus.DISABLED
        assert placeholder.reason == DISABLED_REASON
        assert placeholder.is_valid
    assert validators[ValidationAspect.STRUCTURAL].calls == 1
    assert validators[ValidationAspect.PROFILE].calls == 0
    assert result.settings_hash == ValidationSettings.only(["structural"]).settings_hash()


@pytest.mark.anyio("asyncio")
async def test_errors_and_warnings_aggregate_across_aspects(patient_resource):
    validators = recording_validators(
        structural=RecordingValidator(ValidationAspect.STRUCTURAL, warnings=2),
        terminology=RecordingValidator(ValidationAspect.TERMINOLOGY, errors=1),
    )
    result = await _engine(validators).validate_resource(
        ValidationRequest(resource=patient_resource)
    )
    assert not result.is_valid
    assert result.error_count == 1
    assert result.warning_count == 2
    assert len(result.issues) == 3
    assert not result.aspect(ValidationAspect.STRUCTURAL).is_valid
    assert not result.aspect(ValidationAspect.TERMINOLOGY).is_valid
    assert [issue.aspect for issue in result.issues] == [
        ValidationAspect.STRUCTURAL,
        ValidationAspect.STRUCTURAL,
        ValidationAspect.TERMINOLOGY,
    ]


@pytest.mark.anyio("asyncio")
async def test_parallel_and_sequential_modes_agree(patient_resource):
    def build() -> dict:
        return recording_validators(
            profile=RecordingValidator(ValidationAspect.PROFILE, errors=1, delay=0.01),
            metadata=RecordingValidator(ValidationAspect.METADATA, warnings=1),
        )

    parallel = _engine(build())
    sequential = _engine(build())
    sequential.set_parallel_execution(False)
    assert parallel.parallel_execution and not sequential.parallel_execution

    request = ValidationRequest(resource=patient_resource)
    first = await parallel.validate_resource(request)
    second = await sequential.validate_resource(request)
    assert first.is_valid == second.is_valid
    assert [(a.aspect, a.status, a.is_valid) for a in first.aspects] == [
        (a.aspect, a.status, a.is_valid) for a in second.aspects
    ]
    assert [issue.code for issue in first.issues] == [issue.code for issue in second.issues]


@pytest.mark.anyio("asyncio")
@pytest.mark.parametrize("severity", [IssueSeverity.WARNING, IssueSeverity.INFO])
async def test_any_issue_makes_executed_aspect_invalid(patient_resource, severity):
    class SingleIssueValidator:
        async def validate(self, resource, resource_type, context):
            return [
                ValidationIssue(
                    aspect=ValidationAspect.STRUCTURAL,
                    severity=severity,
                    message="advisory finding",
                    code="ADVISORY",
                )
            ]

    engine = _engine(
        recording_validators(structural=SingleIssueValidator()),
        ValidationSettings.only(["structural"]),
    )
    result = await engine.validate_resource(ValidationRequest(resource=patient_resource))

    structural = result.aspect(ValidationAspect.STRUCTURAL)
    assert structural.status is AspectStatus.EXECUTED
    assert len(structural.issues) == 1
    assert not structural.is_valid
    assert result.is_valid == (len(structural.issues) == 0)
    assert result.error_count == 0


@pytest.mark.anyio("asyncio")
async def test_single_enabled_aspect_is_identical_in_both_modes(patient_resource):
    def build() -> dict:
        return recording_validators(
            structural=RecordingValidator(ValidationAspect.STRUCTURAL, errors=1, warnings=1)
        )

    active = ValidationSettings.only(["structural"])
    parallel = _engine(build(), active)
    sequential = _engine(build(), active)
    sequential.set_parallel_execution(False)

    request = ValidationRequest(resource=patient_resource)
    first = await parallel.validate_resource(request)
    second = await sequential.validate_resource(request)

    def shape(result):
        return [
            (aspect.aspect, aspect.status, aspect.is_valid, aspect.reason, aspect.issues)
            for aspect in result.aspects
        ]

    assert shape(first) == shape(second)
    assert first.is_valid is second.is_valid is False
    assert first.issues == second.issues
    assert first.settings_hash == second.settings_hash


@pytest.mark.anyio("asyncio")
async def test_no_enabled_aspects_marks_everything_disabled(patient_resource):
    validators = recording_validators()
    result = await _engine(validators, ValidationSettings.none_enabled()).validate_resource(
        ValidationRequest(resource=patient_resource)
    )
    assert result.is_valid
    assert result.executed_aspects == []
    assert all(aspect.status is AspectStatus.DISABLED for aspect in result.aspects)
    assert all(validator.calls == 0 for validator in validators.values())


@pytest.mark.anyio("asyncio")
async def test_requested_aspects_filter_enabled_ones(patient_resource):
    validators = recording_validators()
    engine = _engine(validators, ValidationSettings.only(["structural", "profile", "metadata"]))
    result = await engine.validate_resource(
        ValidationRequest(resource=patient_resource, requested_aspects=["metadata", "reference"])
    )
    assert result.executed_aspects == [ValidationAspect.METADATA]
    assert result.aspect(ValidationAspect.STRUCTURAL).status is AspectStatus.SKIPPED
    assert result.aspect(ValidationAspect.STRUCTURAL).reason == FILTERED_REASON
    assert result.aspect(ValidationAspect.REFERENCE).status is AspectStatus.DISABLED
    assert validators[ValidationAspect.REFERENCE].calls == 0


def test_resolve_enabled_aspects():
    settings = ValidationSettings.only(["structural", "metadata"])
    assert ValidationEngine.resolve_enabled_aspects(settings) == frozenset(
        {ValidationAspect.STRUCTURAL, ValidationAspect.METADATA}
    )
    assert ValidationEngine.resolve_enabled_aspects(settings, ["metadata", "profile"]) == (
        frozenset({ValidationAspect.METADATA})
    )
    assert ValidationEngine.resolve_enabled_aspects(settings, ["nonsense"]) == frozenset(
        {ValidationAspect.STRUCTURAL, ValidationAspect.METADATA}
    )


@pytest.mark.anyio("asyncio")
async def test_request_settings_override_provider(patient_resource):
    validators = recording_validators()
    engine = _engine(validators, ValidationSettings.none_enabled())
    result = await engine.validate_resource(
        ValidationRequest(
            resource=patient_resource, settings=ValidationSettings.only(["terminology"])
        )
    )
    assert result.executed_aspects == [ValidationAspect.TERMINOLOGY]


@pytest.mark.anyio("asyncio")
async def test_provider_updates_apply_to_next_validation(patient_resource):
    provider = StaticSettingsProvider(ValidationSettings.only(["structural"]))
    engine = ValidationEngine(recording_validators(), settings_provider=provider)
    request = ValidationRequest.from_resource(patient_resource)
    first = await engine.validate_resource(request)
    provider.update(ValidationSettings.only(["reference"]))
    second = await engine.validate_resource(request)
    assert first.executed_aspects == [ValidationAspect.STRUCTURAL]
    assert second.executed_aspects == [ValidationAspect.REFERENCE]
    assert first.settings_hash != second.settings_hash


@pytest.mark.anyio("asyncio")
async def test_hanging_aspect_times_out_without_affecting_others(patient_resource):
    hanging = HangingValidator()
    validators = recording_validators(profile=hanging)
    settings = ValidationSettings.model_validate({"profile": {"timeout_ms": 20}})
    result = await _engine(validators, settings).validate_resource(
        ValidationRequest(resource=patient_resource)
    )
    profile = result.aspect(ValidationAspect.PROFILE)
    assert profile.status is AspectStatus.FAILED
    assert not profile.is_valid
    assert profile.issues[0].code == EngineIssueCode.TIMEOUT.value
    assert profile.issues[0].message == "profile validation timed out after 20ms"
    await asyncio.sleep(0)
    assert hanging.cancelled
    assert not result.is_valid
    for aspect in ValidationAspect.ordered():
        if aspect is not ValidationAspect.PROFILE:
            assert result.aspect(aspect).status is AspectStatus.EXECUTED


@pytest.mark.anyio("asyncio")
async def test_timeout_does_not_wait_for_validator_ignoring_cancellation(patient_resource):
    class StubbornValidator:
        def __init__(self) -> None:
            self.release = asyncio.Event()
            self.finished = False

        async def validate(self, resource, resource_type, context):
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                await self.release.wait()
            self.finished = True
            return []

    stubborn = StubbornValidator()
    settings = ValidationSettings.model_validate({"structural": {"timeout_ms": 20}})
    engine = _engine(recording_validators(structural=stubborn), settings)

    result = await asyncio.wait_for(
        engine.validate_resource(ValidationRequest(resource=patient_resource)), timeout=1
    )

    structural = result.aspect(ValidationAspect.STRUCTURAL)
    assert structural.status is AspectStatus.FAILED
    assert structural.issues[0].code == EngineIssueCode.TIMEOUT.value
    assert not stubborn.finished
    stubborn.release.set()
    for _ in range(5):
        await asyncio.sleep(0)
    assert stubborn.finished


def test_timeout_resolution_prefers_aspect_override():
    engine = _engine(settings=EngineSettings(aspect_timeouts_ms={"profile": 100}))
    settings = ValidationSettings.model_validate({"terminology": {"timeout_ms": 5}})
    assert engine.timeout_ms_for(ValidationAspect.PROFILE, settings) == 100
    assert engine.timeout_ms_for(ValidationAspect.TERMINOLOGY, settings) == 5
    assert engine.timeout_ms_for(ValidationAspect.STRUCTURAL, settings) == 5_000


@pytest.mark.anyio("asyncio")
@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (ConnectionRefusedError("refused"), EngineIssueCode.NETWORK_ERROR),
        (RuntimeError("connect ECONNREFUSED 127.0.0.1:8080"), EngineIssueCode.NETWORK_ERROR),
        (TimeoutError(), EngineIssueCode.TIMEOUT),
        (RuntimeError("upstream request timed out"), EngineIssueCode.TIMEOUT),
        (ValueError("bad rule"), EngineIssueCode.ASPECT_ERROR),
    ],
)
async def test_validator_exceptions_are_classified(patient_resource, error, expected):
    validators = recording_validators(reference=RaisingValidator(error))
    result = await _engine(validators).validate_resource(
        ValidationRequest(resource=patient_resource)
    )
    reference = result.aspect(ValidationAspect.REFERENCE)
    assert reference.status is AspectStatus.FAILED
    assert reference.issues[0].code == expected.value
    assert result.aspect(ValidationAspect.METADATA).status is AspectStatus.EXECUTED


def test_classifier_checks_types_before_messages():
    classifier = ErrorClassifier()
    assert classifier.classify(ConnectionResetError("timeout")) is EngineIssueCode.NETWORK_ERROR
    assert classifier.classify(asyncio.TimeoutError()) is EngineIssueCode.TIMEOUT
    assert classifier.classify(AspectTimeoutError("profile", 10)) is EngineIssueCode.TIMEOUT
    assert classifier.classify(KeyError("x")) is EngineIssueCode.ASPECT_ERROR


@pytest.mark.anyio("asyncio")
async def test_missing_validator_reports_unknown_aspect(patient_resource):
    validators = recording_validators()
    del validators[ValidationAspect.BUSINESS_RULE]
    result = await _engine(validators).validate_resource(
        ValidationRequest(resource=patient_resource)
    )
    business = result.aspect(ValidationAspect.BUSINESS_RULE)
    assert business.status is AspectStatus.FAILED
    assert business.issues[0].code == EngineIssueCode.UNKNOWN_ASPECT.value


def test_register_validator_rejects_unknown_aspect():
    engine = _engine()
    with pytest.raises(ValueError):
        engine.register_validator("spelling", RecordingValidator(ValidationAspect.STRUCTURAL))


@pytest.mark.anyio("asyncio")
async def test_settings_failure_raises_and_publishes(patient_resource):
    bus = ValidationEventBus()
    failures: list[ValidationFailed] = []
    bus.add_listener(ValidationFailed, failures.append)
    engine = ValidationEngine(
        recording_validators(), settings_provider=BrokenSettingsProvider(), events=bus
    )
    with pytest.raises(ValidationEngineError):
        await engine.validate_resource(ValidationRequest(resource=patient_resource))
    assert len(failures) == 1
    assert failures[0].resource_type == "Patient"


@pytest.mark.anyio("asyncio")
async def test_validate_resources_continues_after_failure(patient_resource):
    engine = ValidationEngine(
        recording_validators(), settings_provider=BrokenSettingsProvider()
    )
    ok_request = ValidationRequest(
        resource=patient_resource, settings=ValidationSettings.only(["structural"])
    )
    results = await engine.validate_resources(
        [ValidationRequest(resource=patient_resource), ok_request]
    )
    assert len(results) == 2
    aborted, ok = results
    assert not aborted.is_valid
    assert aborted.issues[0].code == EngineIssueCode.VALIDATION_ERROR.value
    assert aborted.issues[0].message.startswith("Validation failed: ")
    assert aborted.aspect(ValidationAspect.STRUCTURAL).status is AspectStatus.FAILED
    assert aborted.aspect(ValidationAspect.METADATA).reason == ABORTED_REASON
    assert ok.is_valid


@pytest.mark.anyio("asyncio")
async def test_completed_event_published(patient_resource):
    bus = ValidationEventBus()
    engine = _engine(events=bus)
    async with bus.subscribe(event_types=[ValidationCompleted]) as subscription:
        result = await engine.validate_resource(ValidationRequest(resource=patient_resource))
        event = await anext(subscription)
    assert isinstance(event, ValidationCompleted)
    assert event.result == result


@pytest.mark.anyio("asyncio")
async def test_second_validation_is_served_from_cache(patient_resource, fake_clock):
    validators = recording_validators()
    cache = ValidationCacheManager(
        CacheSettings.model_validate({"layers": {"memory": True, "database": True}}),
        record_store=InMemoryCacheRecordStore(),
        clock=fake_clock,
    )
    engine = _engine(validators, ValidationSettings.only(["structural"]), cache=cache)
    request = ValidationRequest(resource=patient_resource)

    first = await engine.validate_resource(request)
    stats = await cache.get_stats()
    misses_after_first = stats.overall.total_misses
    hits_after_first = stats.overall.total_hits

    second = await engine.validate_resource(request)
    stats = await cache.get_stats()
    assert stats.overall.total_hits > hits_after_first
    assert stats.overall.total_misses == misses_after_first
    assert validators[ValidationAspect.STRUCTURAL].calls == 1
    assert not first.aspect(ValidationAspect.STRUCTURAL).cached
    assert second.aspect(ValidationAspect.STRUCTURAL).cached
    assert second.is_valid == first.is_valid
    assert stats.layers[CacheLayerName.DATABASE].entries == 1


@pytest.mark.anyio("asyncio")
async def test_failed_aspects_are_not_cached(patient_resource, fake_clock):
    cache = ValidationCacheManager(clock=fake_clock)
    validators = recording_validators(structural=RaisingValidator(ValueError("boom")))
    engine = _engine(validators, ValidationSettings.only(["structural"]), cache=cache)
    await engine.validate_resource(ValidationRequest(resource=patient_resource))
    stats = await cache.get_stats()
    assert stats.overall.total_entries == 0


@pytest.mark.anyio("asyncio")
async def test_invalidate_cached_results_uses_settings_hash(patient_resource, fake_clock):
    cache = ValidationCacheManager(clock=fake_clock)
    settings = ValidationSettings.only(["structural", "metadata"])
    engine = _engine(recording_validators(), settings, cache=cache)
    await engine.validate_resource(ValidationRequest(resource=patient_resource))
    assert await engine.invalidate_cached_results(ValidationSettings()) == 0
    assert await engine.invalidate_cached_results(settings) == 2


@pytest.mark.anyio("asyncio")
async def test_default_validators_run_structural_and_metadata():
    engine = ValidationEngine(
        settings_provider=StaticSettingsProvider(ValidationSettings.only(["structural", "metadata"]))
    )
    result = await engine.validate_resource(
        ValidationRequest(resource={"resourceType": "Observation", "status": "final"})
    )
    assert not result.is_valid
    assert result.aspect(ValidationAspect.STRUCTURAL).issues[0].code == "SCHEMA_VIOLATION"
    assert result.aspect(ValidationAspect.METADATA).is_valid
