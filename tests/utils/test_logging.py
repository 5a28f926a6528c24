import json
import logging

import pytest
import structlog
from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider

from Medical_FHIR_rev.config import LoggingSettings, TelemetrySettings
from Medical_FHIR_rev.utils.logging import (
    Redactor,
    configure_logging,
    configure_tracing,
    correlation_scope,
)


def test_configure_logging_sets_root_level():
    configure_logging(level="debug")
    assert logging.getLogger().level == logging.DEBUG
    configure_logging(level="not-a-level")
    assert logging.getLogger().level == logging.INFO


def test_configure_tracing_console_exporter():
    provider = configure_tracing("fhir-validator", TelemetrySettings(exporter="console"))
    assert isinstance(provider, TracerProvider)
    assert isinstance(trace.get_tracer_provider(), TracerProvider)


def test_stdlib_records_carry_correlation_id_and_scrub_secrets(caplog):
    configure_logging(settings=LoggingSettings(scrub_fields=["token"]))
    logger = logging.getLogger("fhir.validation")
    with correlation_scope("batch-123"):
        logger.info("processed", extra={"token": "super-secret", "detail": "ok"})
    logger.info("after")

    first, second = (json.loads(line) for line in caplog.text.strip().splitlines())
    assert first["correlation_id"] == "batch-123"
    assert first["token"] == "***"
    assert first["detail"] == "ok"
    assert "correlation_id" not in second


def test_structlog_events_render_as_json(capsys):
    configure_logging(settings=LoggingSettings(scrub_fields=["secret"]))
    with correlation_scope("batch-9", batch_id="batch-9"):
        structlog.get_logger("cache").info("cache.cleared", removed=3, secret="hunter2")
    line = capsys.readouterr().out.strip().splitlines()[-1]
    payload = json.loads(line)
    assert payload["event"] == "cache.cleared"
    assert payload["removed"] == 3
    assert payload["secret"] == "***"
    assert payload["level"] == "info"
    assert payload["correlation_id"] == "batch-9"
    assert payload["batch_id"] == "batch-9"


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        (
            {"resourceType": "Patient", "id": "p1", "name": [{"family": "Doe"}]},
            {"resourceType": "Patient", "id": "p1"},
        ),
        (
            {"items": [{"resourceType": "Observation", "id": "o1", "valueString": "x"}]},
            {"items": [{"resourceType": "Observation", "id": "o1"}]},
        ),
        (
            {"Authorization": "Bearer x", "nested": {"password": "pw"}},
            {"Authorization": "***", "nested": {"password": "***"}},
        ),
    ],
)
def test_redactor_collapses_resources_and_masks_fields(value, expected):
    redactor = Redactor(["authorization", "password"])
    assert redactor.clean(value) == expected
