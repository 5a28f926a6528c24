from __future__ import annotations

import asyncio

import pytest

from Medical_FHIR_rev.config.settings import BatchSettings
from Medical_FHIR_rev.models import ValidationAspect, ValidationRequest, ValidationSettings
from Medical_FHIR_rev.validation import (
    BatchCancelled,
    BatchCompleted,
    BatchCoordinator,
    BatchItemFailed,
    BatchItemValidated,
    BatchProgress,
    BatchStarted,
    StaticSettingsProvider,
    ValidationEngine,
    ValidationEvent,
)
from tests.conftest import RecordingValidator, recording_validators


class FlakyEngine(ValidationEngine):
    """Raises for requests whose resource id starts with ``boom``."""

    async def validate_resource(self, request):
        if str(request.resource_id).startswith("boom"):
            raise RuntimeError(f"cannot validate {request.resource_id}")
        return await super().validate_resource(request)


def _requests(count: int, prefix: str = "p") -> list[ValidationRequest]:
    return [
        ValidationRequest(resource={"resourceType": "Patient", "id": f"{prefix}{index}"})
        for index in range(count)
    ]


def _engine(cls=ValidationEngine, **validators) -> ValidationEngine:
    return cls(
        recording_validators(**validators),
        settings_provider=StaticSettingsProvider(ValidationSettings.only(["structural"])),
    )


@pytest.mark.anyio("asyncio")
async def test_batch_emits_events_in_order():
    engine = _engine()
    coordinator = BatchCoordinator(engine)
    seen: list[ValidationEvent] = []
    engine.events.add_listener(ValidationEvent, seen.append)

    summary = await coordinator.validate_batch(_requests(3), batch_id="b1", max_concurrent=2)

    batch_events = [event for event in seen if type(event).__name__.startswith("Batch")]
    assert isinstance(batch_events[0], BatchStarted)
    assert batch_events[0].total_resources == 3
    assert isinstance(batch_events[-1], BatchCompleted)
    assert sum(isinstance(event, BatchItemValidated) for event in batch_events) == 3
    progress = [event.progress for event in batch_events if isinstance(event, BatchProgress)]
    assert [snapshot.processed_resources for snapshot in progress] == [1, 2, 3]
    assert progress[-1].percentage == 100.0
    assert progress[-1].estimated_time_remaining_ms == 0.0

    assert summary.batch_id == "b1"
    assert summary.valid_resources == 3
    assert summary.processed_resources == 3
    assert [result.resource_id for result in summary.results] == ["p0", "p1", "p2"]
    assert not summary.cancelled


@pytest.mark.anyio("asyncio")
async def test_chunks_never_exceed_max_concurrent():
    running = 0
    peak = 0

    class CountingValidator(RecordingValidator):
        async def validate(self, resource, resource_type, context):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1
            return []

    engine = _engine(structural=CountingValidator(ValidationAspect.STRUCTURAL))
    coordinator = BatchCoordinator(engine, settings=BatchSettings(max_concurrent=2))
    summary = await coordinator.validate_batch(_requests(5))
    assert peak == 2
    assert summary.valid_resources == 5


@pytest.mark.anyio("asyncio")
async def test_item_failures_are_reported_and_batch_continues():
    engine = _engine(FlakyEngine)
    coordinator = BatchCoordinator(engine)
    failures: list[BatchItemFailed] = []
    engine.events.add_listener(BatchItemFailed, failures.append)

    requests = _requests(2) + _requests(1, prefix="boom")
    summary = await coordinator.validate_batch(requests)

    assert summary.valid_resources == 2
    assert summary.error_resources == 1
    assert summary.results[2] is None
    assert summary.errors == {2: "cannot validate boom0"}
    assert len(failures) == 1
    assert failures[0].index == 2


@pytest.mark.anyio("asyncio")
async def test_invalid_results_are_counted_separately():
    engine = _engine(structural=RecordingValidator(ValidationAspect.STRUCTURAL, errors=1))
    summary = await BatchCoordinator(engine).validate_batch(_requests(2))
    assert summary.invalid_resources == 2
    assert summary.valid_resources == 0


@pytest.mark.anyio("asyncio")
async def test_empty_batch_completes_immediately():
    engine = _engine()
    coordinator = BatchCoordinator(engine)
    completed: list[BatchCompleted] = []
    engine.events.add_listener(BatchCompleted, completed.append)
    summary = await coordinator.validate_batch([])
    assert summary.total_resources == 0
    assert summary.average_time_ms == 0.0
    assert len(completed) == 1


@pytest.mark.anyio("asyncio")
async def test_cancel_stops_scheduling_new_chunks():
    engine = _engine(structural=RecordingValidator(ValidationAspect.STRUCTURAL, delay=0.01))
    coordinator = BatchCoordinator(engine)
    seen: list[ValidationEvent] = []
    engine.events.add_listener(ValidationEvent, seen.append)

    def cancel_after_first(event: BatchProgress) -> None:
        coordinator.cancel(event.progress.batch_id)

    engine.events.add_listener(BatchProgress, cancel_after_first)
    summary = await coordinator.validate_batch(_requests(6), batch_id="b2", max_concurrent=2)

    assert summary.cancelled
    assert summary.processed_resources == 2
    assert summary.results[2:] == [None] * 4
    assert sum(isinstance(event, BatchCancelled) for event in seen) == 1
    assert not any(isinstance(event, BatchCompleted) for event in seen)
    assert coordinator.cancel("b2") is False


@pytest.mark.anyio("asyncio")
async def test_progress_is_only_available_while_running():
    engine = _engine(structural=RecordingValidator(ValidationAspect.STRUCTURAL, delay=0.05))
    coordinator = BatchCoordinator(engine)
    task = asyncio.create_task(coordinator.validate_batch(_requests(2), batch_id="live"))
    await asyncio.sleep(0.01)
    assert coordinator.active_batches() == ["live"]
    progress = coordinator.get_progress("live")
    assert progress is not None
    assert progress.total_resources == 2
    await task
    assert coordinator.get_progress("live") is None
    assert coordinator.active_batches() == []


@pytest.mark.anyio("asyncio")
async def test_duplicate_batch_id_and_bad_chunk_size_are_rejected():
    engine = _engine(structural=RecordingValidator(ValidationAspect.STRUCTURAL, delay=0.05))
    coordinator = BatchCoordinator(engine)
    task = asyncio.create_task(coordinator.validate_batch(_requests(1), batch_id="dup"))
    await asyncio.sleep(0.01)
    with pytest.raises(ValueError):
        await coordinator.validate_batch(_requests(1), batch_id="dup")
    await task
    with pytest.raises(ValueError):
        await coordinator.validate_batch(_requests(1), max_concurrent=-1)


@pytest.mark.anyio("asyncio")
async def test_subscription_receives_batch_stream():
    engine = _engine()
    coordinator = BatchCoordinator(engine)
    subscription = engine.events.subscribe(
        event_types=[BatchStarted, BatchItemValidated, BatchCompleted]
    )
    await coordinator.validate_batch(_requests(2), batch_id="stream")
    subscription.close()
    received = [event async for event in subscription]
    assert [type(event) for event in received] == [
        BatchStarted,
        BatchItemValidated,
        BatchItemValidated,
        BatchCompleted,
    ]


@pytest.mark.anyio("asyncio")
async def test_consumer_leaving_a_full_subscription_does_not_stall_batch():
    engine = _engine()
    coordinator = BatchCoordinator(engine)
    subscription = engine.events.subscribe(maxsize=1, event_types=[BatchProgress])

    async def read_one_then_leave() -> None:
        async with subscription:
            async for _event in subscription:
                await asyncio.sleep(0.05)
                break

    consumer = asyncio.create_task(read_one_then_leave())
    summary = await asyncio.wait_for(
        coordinator.validate_batch(_requests(5), batch_id="slow", max_concurrent=1),
        timeout=2,
    )
    await consumer

    assert summary.processed_resources == 5
    assert coordinator.active_batches() == []
    assert engine.events.subscriber_count == 0
