"""Prometheus metrics for validation, caching and batch processing.

Key Responsibilities:
    - Define Prometheus metrics for aspect execution and cache tiers
    - Provide small recording helpers so callers never touch metric objects

Collaborators:
    - Upstream: ValidationEngine, ValidationCacheManager, BatchCoordinator
    - Downstream: Prometheus monitoring system and Grafana dashboards

Thread Safety:
    - Thread-safe: All metric operations use atomic Prometheus operations

Example:
    >>> from Medical_FHIR_rev.observability.metrics import record_aspect_execution
    >>> record_aspect_execution("structural", "executed", 0.012)
"""

# ==============================================================================
# IMPORTS
# ==============================================================================

from __future__ import annotations

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram, generate_latest

# ==============================================================================
# METRIC DEFINITIONS
# ==============================================================================

ASPECT_DURATION_SECONDS = Histogram(
    "fhir_validation_aspect_duration_seconds",
    "Duration of individual aspect validations",
    ["aspect", "status"],
    buckets=[0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 15.0, 30.0, 60.0],
)

ASPECT_FAILURES_TOTAL = Counter(
    "fhir_validation_aspect_failures_total",
    "Aspect executions that ended in a failed status",
    ["aspect", "code"],
)

RESOURCE_VALIDATIONS_TOTAL = Counter(
    "fhir_validation_resources_total",
    "Resources validated by the engine",
    ["resource_type", "outcome"],
)

CACHE_LOOKUPS_TOTAL = Counter(
    "fhir_validation_cache_lookups_total",
    "Cache lookups per tier",
    ["layer", "result"],
)

CACHE_EVICTIONS_TOTAL = Counter(
    "fhir_validation_cache_evictions_total",
    "Entries evicted from capacity bounded tiers",
    ["layer"],
)

CACHE_LAYER_ERRORS_TOTAL = Counter(
    "fhir_validation_cache_layer_errors_total",
    "Backend errors absorbed by cache tiers",
    ["layer", "operation"],
)

BATCH_ITEMS_TOTAL = Counter(
    "fhir_validation_batch_items_total",
    "Batch items processed by outcome",
    ["outcome"],
)

ACTIVE_BATCHES = Gauge(
    "fhir_validation_active_batches",
    "Batches currently being processed",
)

# ==============================================================================
# RECORDING HELPERS
# ==============================================================================


def record_aspect_execution(aspect: str, status: str, duration_seconds: float) -> None:
    """Record the duration and outcome of one aspect execution."""
    ASPECT_DURATION_SECONDS.labels(aspect=aspect, status=status).observe(duration_seconds)


def record_aspect_failure(aspect: str, code: str) -> None:
    ASPECT_FAILURES_TOTAL.labels(aspect=aspect, code=code).inc()


def record_resource_validation(resource_type: str, is_valid: bool) -> None:
    RESOURCE_VALIDATIONS_TOTAL.labels(
        resource_type=resource_type, outcome="valid" if is_valid else "invalid"
    ).inc()


def record_cache_lookup(layer: str, hit: bool) -> None:
    """Record a cache lookup against ``layer``.

    Args:
        layer: Cache tier name (memory, database, filesystem).
        hit: Whether the lookup was served by the tier.
    """
    CACHE_LOOKUPS_TOTAL.labels(layer=layer, result="hit" if hit else "miss").inc()


def record_cache_eviction(layer: str, count: int = 1) -> None:
    if count:
        CACHE_EVICTIONS_TOTAL.labels(layer=layer).inc(count)


def record_cache_layer_error(layer: str, operation: str) -> None:
    CACHE_LAYER_ERRORS_TOTAL.labels(layer=layer, operation=operation).inc()


def record_batch_item(outcome: str) -> None:
    """Record a processed batch item (``valid``, ``invalid`` or ``error``)."""
    BATCH_ITEMS_TOTAL.labels(outcome=outcome).inc()


def set_active_batches(count: int) -> None:
    ACTIVE_BATCHES.set(count)


def render_latest(registry: CollectorRegistry = REGISTRY) -> str:
    """Return the Prometheus text exposition for ``registry``."""
    return generate_latest(registry).decode("utf-8")


__all__ = [
    "record_aspect_execution",
    "record_aspect_failure",
    "record_batch_item",
    "record_cache_eviction",
    "record_cache_layer_error",
    "record_cache_lookup",
    "record_resource_validation",
    "render_latest",
    "set_active_batches",
]
