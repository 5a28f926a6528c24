"""Chunked batch validation with progress events and cancellation."""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime

import structlog

from ..config.settings import BatchSettings
from ..models.validation import ValidationRequest, ValidationResult
from ..observability.metrics import record_batch_item, set_active_batches
from ..utils.logging import correlation_scope
from ..utils.time import utc_now
from .engine import ValidationEngine
from .events import (
    BatchCancelled,
    BatchCompleted,
    BatchFailed,
    BatchItemFailed,
    BatchItemValidated,
    BatchProgress,
    BatchProgressSnapshot,
    BatchStarted,
    ValidationEventBus,
)

logger = structlog.get_logger(__name__)


@dataclass(slots=True)
class BatchSummary:
    """Final outcome of a batch; ``results`` holds ``None`` for failed items."""

    batch_id: str
    total_resources: int
    valid_resources: int
    invalid_resources: int
    error_resources: int
    results: list[ValidationResult | None]
    errors: dict[int, str]
    total_time_ms: float
    average_time_ms: float
    cancelled: bool = False

    @property
    def processed_resources(self) -> int:
        return self.valid_resources + self.invalid_resources + self.error_resources


@dataclass(slots=True)
class _BatchState:
    batch_id: str
    total: int
    started_at: datetime = field(default_factory=utc_now)
    started: float = field(default_factory=time.perf_counter)
    valid: int = 0
    invalid: int = 0
    errored: int = 0
    cancelled: bool = False
    results: dict[int, ValidationResult] = field(default_factory=dict)
    errors: dict[int, str] = field(default_factory=dict)

    @property
    def processed(self) -> int:
        return self.valid + self.invalid + self.errored

    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self.started) * 1000

    def snapshot(self) -> BatchProgressSnapshot:
        remaining: float | None = None
        if self.processed:
            average = self.elapsed_ms() / self.processed
            remaining = round(average * (self.total - self.processed), 3)
        return BatchProgressSnapshot(
            batch_id=self.batch_id,
            total_resources=self.total,
            processed_resources=self.processed,
            valid_resources=self.valid,
            invalid_resources=self.invalid,
            error_resources=self.errored,
            started_at=self.started_at,
            estimated_time_remaining_ms=remaining,
        )

    def summary(self) -> BatchSummary:
        total_time = round(self.elapsed_ms(), 3)
        return BatchSummary(
            batch_id=self.batch_id,
            total_resources=self.total,
            valid_resources=self.valid,
            invalid_resources=self.invalid,
            error_resources=self.errored,
            results=[self.results.get(index) for index in range(self.total)],
            errors=dict(self.errors),
            total_time_ms=total_time,
            average_time_ms=round(total_time / self.total, 3) if self.total else 0.0,
            cancelled=self.cancelled,
        )


class BatchCoordinator:
    """Drives :class:`ValidationEngine` over a collection of requests.

    Requests are processed in chunks of ``max_concurrent``; a chunk runs
    concurrently and the next chunk starts only once every item of the
    previous chunk has settled. Events are delivered with
    :meth:`ValidationEventBus.publish_wait` so slow subscribers throttle
    the batch.
    """

    def __init__(
        self,
        engine: ValidationEngine,
        *,
        events: ValidationEventBus | None = None,
        settings: BatchSettings | None = None,
    ) -> None:
        self._engine = engine
        self._events = events or engine.events
        self._settings = settings or BatchSettings()
        self._active: dict[str, _BatchState] = {}

    @property
    def events(self) -> ValidationEventBus:
        return self._events

    def active_batches(self) -> list[str]:
        return list(self._active)

    def get_progress(self, batch_id: str) -> BatchProgressSnapshot | None:
        """Live progress of a running batch; ``None`` once it has finished."""
        state = self._active.get(batch_id)
        return state.snapshot() if state is not None else None

    def cancel(self, batch_id: str) -> bool:
        """Stop reporting and scheduling for ``batch_id``; in-flight items still finish."""
        state = self._active.get(batch_id)
        if state is None or state.cancelled:
            return False
        state.cancelled = True
        logger.info("validation.batch.cancelled", batch_id=batch_id, processed=state.processed)
        self._events.publish(BatchCancelled(batch_id=batch_id, progress=state.snapshot()))
        return True

    async def validate_batch(
        self,
        requests: Sequence[ValidationRequest],
        *,
        batch_id: str | None = None,
        max_concurrent: int | None = None,
    ) -> BatchSummary:
        """Validate ``requests`` in bounded chunks and return the batch summary.

        Raises:
            ValueError: If ``batch_id`` is already running or the chunk size is invalid.
        """
        batch_id = batch_id or f"batch-{uuid.uuid4().hex[:12]}"
        if batch_id in self._active:
            raise ValueError(f"Batch '{batch_id}' is already running")
        chunk_size = max_concurrent or self._settings.max_concurrent
        if chunk_size < 1:
            raise ValueError("max_concurrent must be at least 1")

        items = list(requests)
        state = _BatchState(batch_id=batch_id, total=len(items))
        self._active[batch_id] = state
        set_active_batches(len(self._active))

        with correlation_scope(batch_id, batch_id=batch_id):
            try:
                logger.info("validation.batch.started", total=state.total, chunk_size=chunk_size)
                await self._events.publish_wait(
                    BatchStarted(
                        batch_id=batch_id,
                        total_resources=state.total,
                        started_at=state.started_at,
                    )
                )
                for offset in range(0, len(items), chunk_size):
                    if state.cancelled:
                        break
                    chunk = items[offset : offset + chunk_size]
                    await asyncio.gather(
                        *(
                            self._process_item(state, offset + position, request)
                            for position, request in enumerate(chunk)
                        )
                    )
                summary = state.summary()
                if not state.cancelled:
                    await self._events.publish_wait(
                        BatchCompleted(
                            batch_id=batch_id,
                            total_resources=summary.total_resources,
                            valid_resources=summary.valid_resources,
                            invalid_resources=summary.invalid_resources,
                            error_resources=summary.error_resources,
                            total_time_ms=summary.total_time_ms,
                            average_time_ms=summary.average_time_ms,
                        )
                    )
                logger.info(
                    "validation.batch.completed",
                    valid=summary.valid_resources,
                    invalid=summary.invalid_resources,
                    errors=summary.error_resources,
                    cancelled=summary.cancelled,
                    total_time_ms=summary.total_time_ms,
                )
                return summary
            except Exception as exc:
                logger.error("validation.batch.failed", error=str(exc))
                self._events.publish(BatchFailed(batch_id=batch_id, error=exc))
                raise
            finally:
                self._active.pop(batch_id, None)
                set_active_batches(len(self._active))

    async def _process_item(
        self, state: _BatchState, index: int, request: ValidationRequest
    ) -> None:
        try:
            result = await self._engine.validate_resource(request)
        except Exception as exc:
            state.errored += 1
            state.errors[index] = str(exc)
            record_batch_item("error")
            logger.warning("validation.batch.item_failed", index=index, error=str(exc))
            if state.cancelled:
                return
            await self._events.publish_wait(
                BatchItemFailed(batch_id=state.batch_id, index=index, request=request, error=exc)
            )
        else:
            state.results[index] = result
            if result.is_valid:
                state.valid += 1
            else:
                state.invalid += 1
            record_batch_item("valid" if result.is_valid else "invalid")
            if state.cancelled:
                return
            await self._events.publish_wait(
                BatchItemValidated(
                    batch_id=state.batch_id, index=index, request=request, result=result
                )
            )
        await self._events.publish_wait(BatchProgress(progress=state.snapshot()))


__all__ = ["BatchCoordinator", "BatchSummary"]
