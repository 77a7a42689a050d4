"""Observability helpers."""

from visibility.observability.otel import (
    initialize,
    shutdown,
    start_span,
    record_recompute,
    record_coalesced_request,
    record_incremental_update,
)

__all__ = [
    "initialize",
    "shutdown",
    "start_span",
    "record_recompute",
    "record_coalesced_request",
    "record_incremental_update",
]
