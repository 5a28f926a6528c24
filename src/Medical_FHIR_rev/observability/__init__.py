"""Observability helpers (Prometheus metrics)."""

from .metrics import (
    record_aspect_execution,
    record_aspect_failure,
    record_batch_item,
    record_cache_eviction,
    record_cache_layer_error,
    record_cache_lookup,
    record_resource_validation,
    render_latest,
    set_active_batches,
)

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
