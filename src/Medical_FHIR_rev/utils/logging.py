"""Structured logging and tracing setup for the validation service.

Key Responsibilities:
    - Render stdlib and structlog output as single-line JSON on one stream
    - Redact configured secret fields and collapse FHIR resource payloads to
      ``{"resourceType", "id"}`` so patient data never reaches log sinks
    - Carry the batch correlation id across coroutines via ``contextvars``
    - Install the OpenTelemetry tracer provider used by engine spans

Collaborators:
    - Upstream: :mod:`Medical_FHIR_rev.cli` configures logging and tracing;
      :class:`BatchCoordinator` opens a :func:`correlation_scope` per batch
    - Downstream: ``logging``, ``structlog`` and the OpenTelemetry SDK

Thread Safety:
    - Configuration is process-global and meant to run once at start-up
    - Correlation scopes are task-local through ``contextvars``
"""

# ==============================================================================
# IMPORTS
# ==============================================================================

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, TextIO

import structlog
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
    SpanExporter,
)
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased

from Medical_FHIR_rev.config.settings import LoggingSettings, TelemetrySettings

_correlation_id: ContextVar[str | None] = ContextVar("correlation_id", default=None)

# LogRecord attributes that never belong in the JSON payload.
_RECORD_INTERNALS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {
    "message",
    "asctime",
    "taskName",
}

REDACTED = "***"


# ==============================================================================
# REDACTION
# ==============================================================================


class Redactor:
    """Masks secret fields and summarises embedded FHIR resources."""

    def __init__(self, scrub_fields: Iterable[str] | None = None) -> None:
        self.fields = frozenset(field.lower() for field in scrub_fields or ())

    def value(self, key: str, value: object) -> object:
        if key.lower() in self.fields:
            return REDACTED
        return self.clean(value)

    def clean(self, value: object) -> object:
        if isinstance(value, Mapping):
            if "resourceType" in value:
                return {"resourceType": value.get("resourceType"), "id": value.get("id")}
            return {str(key): self.value(str(key), item) for key, item in value.items()}
        if isinstance(value, (list, tuple)):
            return [self.clean(item) for item in value]
        return value

    def __call__(self, _: Any, __: str, event_dict: dict[str, Any]) -> dict[str, Any]:
        """Structlog processor entry point."""
        correlation_id = _correlation_id.get()
        if correlation_id:
            event_dict.setdefault("correlation_id", correlation_id)
        return {key: self.value(key, value) for key, value in event_dict.items()}


class JsonFormatter(logging.Formatter):
    """One JSON object per stdlib record, ``extra`` fields included."""

    def __init__(self, redactor: Redactor | None = None) -> None:
        super().__init__(datefmt="%Y-%m-%dT%H:%M:%S%z")
        self._redactor = redactor or Redactor()

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "time": self.formatTime(record, self.datefmt),
        }
        correlation_id = _correlation_id.get()
        if correlation_id:
            payload["correlation_id"] = correlation_id
        for key, value in record.__dict__.items():
            if key not in _RECORD_INTERNALS:
                payload[key] = self._redactor.value(key, value)
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, sort_keys=True, default=str)


# ==============================================================================
# CONFIGURATION
# ==============================================================================


def _level_value(level: int | str | None) -> int:
    if isinstance(level, int):
        return level
    if isinstance(level, str):
        resolved = logging.getLevelName(level.upper())
        if isinstance(resolved, int):
            return resolved
    return logging.INFO


def configure_logging(
    level: int | str | None = None,
    *,
    settings: LoggingSettings | None = None,
    stream: TextIO | None = None,
) -> None:
    """Route stdlib logging and structlog through the JSON renderers.

    ``settings`` wins over ``level`` when both are given. Output goes to
    ``stream`` (stdout by default); the CLI passes stderr so command output
    stays machine-readable. Pytest capture handlers are kept and re-formatted.
    """
    stream = stream or sys.stdout
    if settings is not None:
        level = settings.level
    redactor = Redactor(settings.scrub_fields if settings is not None else None)
    level_value = _level_value(level)

    handler = logging.StreamHandler(stream)
    handler.setFormatter(JsonFormatter(redactor))
    root = logging.getLogger()
    kept = [
        existing
        for existing in root.handlers
        if type(existing).__module__.startswith("_pytest.")
    ]
    for existing in kept:
        existing.setFormatter(JsonFormatter(redactor))
    logging.basicConfig(level=level_value, handlers=[*kept, handler], force=True)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            redactor,
            structlog.processors.JSONRenderer(sort_keys=True),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level_value),
        logger_factory=structlog.PrintLoggerFactory(file=stream),
        cache_logger_on_first_use=False,
    )


def configure_tracing(service_name: str, telemetry: TelemetrySettings) -> TracerProvider:
    """Install a sampled tracer provider exporting to the console or OTLP/HTTP."""
    provider = TracerProvider(
        resource=Resource(attributes={"service.name": service_name}),
        sampler=TraceIdRatioBased(telemetry.sample_ratio),
    )
    exporter: SpanExporter
    if telemetry.exporter.lower() == "otlp":
        exporter = (
            OTLPSpanExporter(endpoint=telemetry.endpoint)
            if telemetry.endpoint
            else OTLPSpanExporter()
        )
    else:
        exporter = ConsoleSpanExporter()
    provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    return provider


# ==============================================================================
# CORRELATION
# ==============================================================================


@contextmanager
def correlation_scope(correlation_id: str, **bound: Any) -> Iterator[str]:
    """Tag every log line emitted inside the block with ``correlation_id``.

    Extra keyword arguments are bound as structlog context variables for the
    same span and unbound on exit.
    """
    token = _correlation_id.set(correlation_id)
    try:
        with structlog.contextvars.bound_contextvars(correlation_id=correlation_id, **bound):
            yield correlation_id
    finally:
        _correlation_id.reset(token)


__all__ = [
    "JsonFormatter",
    "Redactor",
    "configure_logging",
    "configure_tracing",
    "correlation_scope",
]
