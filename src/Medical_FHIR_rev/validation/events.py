"""Typed validation events and an in-process event bus.

Consumers either register synchronous callbacks per event type or open a
bounded subscription and iterate it asynchronously. ``publish`` never blocks
(a full subscription drops its oldest event); ``publish_wait`` waits for
queue space so slow consumers throttle the producer.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, TypeVar

import structlog

from ..models.validation import ValidationRequest, ValidationResult
from ..utils.time import utc_now

logger = structlog.get_logger(__name__)


# ==============================================================================
# EVENT TYPES
# ==============================================================================


@dataclass(slots=True, frozen=True, kw_only=True)
class ValidationEvent:
    emitted_at: datetime = field(default_factory=utc_now)


@dataclass(slots=True, frozen=True, kw_only=True)
class ValidationCompleted(ValidationEvent):
    result: ValidationResult


@dataclass(slots=True, frozen=True, kw_only=True)
class ValidationFailed(ValidationEvent):
    error: BaseException
    resource_type: str | None = None


@dataclass(slots=True, frozen=True, kw_only=True)
class BatchProgressSnapshot:
    """Aggregate progress of one batch."""

    batch_id: str
    total_resources: int
    processed_resources: int = 0
    valid_resources: int = 0
    invalid_resources: int = 0
    error_resources: int = 0
    started_at: datetime = field(default_factory=utc_now)
    estimated_time_remaining_ms: float | None = None

    @property
    def percentage(self) -> float:
        if self.total_resources == 0:
            return 100.0
        return round(self.processed_resources / self.total_resources * 100, 2)


@dataclass(slots=True, frozen=True, kw_only=True)
class BatchStarted(ValidationEvent):
    batch_id: str
    total_resources: int
    started_at: datetime


@dataclass(slots=True, frozen=True, kw_only=True)
class BatchItemValidated(ValidationEvent):
    batch_id: str
    index: int
    request: ValidationRequest
    result: ValidationResult


@dataclass(slots=True, frozen=True, kw_only=True)
class BatchItemFailed(ValidationEvent):
    batch_id: str
    index: int
    request: ValidationRequest
    error: BaseException


@dataclass(slots=True, frozen=True, kw_only=True)
class BatchProgress(ValidationEvent):
    progress: BatchProgressSnapshot


@dataclass(slots=True, frozen=True, kw_only=True)
class BatchCompleted(ValidationEvent):
    batch_id: str
    total_resources: int
    valid_resources: int
    invalid_resources: int
    error_resources: int
    total_time_ms: float
    average_time_ms: float


@dataclass(slots=True, frozen=True, kw_only=True)
class BatchCancelled(ValidationEvent):
    batch_id: str
    progress: BatchProgressSnapshot


@dataclass(slots=True, frozen=True, kw_only=True)
class BatchFailed(ValidationEvent):
    batch_id: str
    error: BaseException


# ==============================================================================
# EVENT BUS
# ==============================================================================

E = TypeVar("E", bound=ValidationEvent)

_CLOSED: Any = object()


class EventSubscription:
    """Bounded queue of events; iterate with ``async for``.

    The subscription is registered on creation, so events published before
    iteration starts are not lost.
    """

    def __init__(
        self,
        bus: ValidationEventBus,
        *,
        maxsize: int,
        event_types: tuple[type[ValidationEvent], ...] | None,
    ) -> None:
        self._bus = bus
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=maxsize)
        self._event_types = event_types
        self._closed = False
        self._closed_event = asyncio.Event()
        self.dropped = 0

    def accepts(self, event: ValidationEvent) -> bool:
        return self._event_types is None or isinstance(event, self._event_types)

    @property
    def closed(self) -> bool:
        return self._closed

    def qsize(self) -> int:
        return self._queue.qsize()

    def offer(self, event: ValidationEvent) -> None:
        if self._closed:
            return
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
        self._queue.put_nowait(event)

    async def put(self, event: ValidationEvent) -> None:
        """Wait for queue space; returns without delivering once the subscription closes."""
        if self._closed:
            return
        if not self._queue.full():
            self._queue.put_nowait(event)
            return
        put_task = asyncio.ensure_future(self._queue.put(event))
        closed_task = asyncio.ensure_future(self._closed_event.wait())
        try:
            await asyncio.wait({put_task, closed_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (put_task, closed_task):
                if not task.done():
                    task.cancel()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._bus._unsubscribe(self)
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
        self._queue.put_nowait(_CLOSED)
        self._closed_event.set()

    def __aiter__(self) -> EventSubscription:
        return self

    async def __anext__(self) -> ValidationEvent:
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item

    async def __aenter__(self) -> EventSubscription:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.close()


class ValidationEventBus:
    """Typed publish/subscribe hub shared by the engine and batch coordinator."""

    def __init__(self, *, default_maxsize: int = 1000) -> None:
        self._listeners: dict[type[ValidationEvent], list[Callable[[Any], None]]] = defaultdict(
            list
        )
        self._subscriptions: list[EventSubscription] = []
        self.default_maxsize = default_maxsize

    def add_listener(self, event_type: type[E], callback: Callable[[E], None]) -> None:
        """Register ``callback`` for ``event_type`` and its subclasses."""
        self._listeners[event_type].append(callback)

    def remove_listener(self, event_type: type[E], callback: Callable[[E], None]) -> None:
        listeners = self._listeners.get(event_type, [])
        if callback in listeners:
            listeners.remove(callback)

    def subscribe(
        self,
        *,
        maxsize: int | None = None,
        event_types: Iterable[type[ValidationEvent]] | None = None,
    ) -> EventSubscription:
        subscription = EventSubscription(
            self,
            maxsize=maxsize or self.default_maxsize,
            event_types=tuple(event_types) if event_types is not None else None,
        )
        self._subscriptions.append(subscription)
        return subscription

    def _unsubscribe(self, subscription: EventSubscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def _notify_listeners(self, event: ValidationEvent) -> None:
        for event_type, callbacks in list(self._listeners.items()):
            if not isinstance(event, event_type):
                continue
            for callback in list(callbacks):
                try:
                    callback(event)
                except Exception as exc:
                    logger.warning(
                        "validation.events.listener_error",
                        event_type=type(event).__name__,
                        error=str(exc),
                    )

    def publish(self, event: ValidationEvent) -> None:
        """Deliver ``event`` without waiting; full subscriptions drop their oldest item."""
        self._notify_listeners(event)
        for subscription in list(self._subscriptions):
            if subscription.accepts(event):
                subscription.offer(event)

    async def publish_wait(self, event: ValidationEvent) -> None:
        """Deliver ``event`` waiting for space in every matching subscription."""
        self._notify_listeners(event)
        for subscription in list(self._subscriptions):
            if subscription.accepts(event):
                await subscription.put(event)


__all__ = [
    "BatchCancelled",
    "BatchCompleted",
    "BatchFailed",
    "BatchItemFailed",
    "BatchItemValidated",
    "BatchProgress",
    "BatchProgressSnapshot",
    "BatchStarted",
    "EventSubscription",
    "ValidationCompleted",
    "ValidationEvent",
    "ValidationEventBus",
    "ValidationFailed",
]
