"""OpenTelemetry + Prometheus fallback wiring for the visibility engine."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any

from visibility import config

logger = logging.getLogger("peek.observability")


_initialized = False
_enabled = False
_tracer: Any | None = None
_trace_provider: Any | None = None
_meter_provider: Any | None = None

_recompute_counter: Any | None = None
_recompute_latency_hist: Any | None = None
_exclusion_records_hist: Any | None = None
_coalesced_counter: Any | None = None
_incremental_counter: Any | None = None

_prom_enabled = False
_prom_recompute_counter: Any | None = None
_prom_recompute_latency_hist: Any | None = None
_prom_exclusion_records_hist: Any | None = None
_prom_coalesced_counter: Any | None = None
_prom_incremental_counter: Any | None = None


def _normalize_otlp_endpoint(base_endpoint: str, signal_path: str) -> str:
    endpoint = (base_endpoint or "").strip()
    if not endpoint:
        return ""
    if endpoint.endswith(signal_path):
        return endpoint
    if endpoint.endswith("/"):
        endpoint = endpoint[:-1]
    if endpoint.endswith("/v1"):
        return f"{endpoint}{signal_path[3:]}"
    return f"{endpoint}{signal_path}"


def initialize() -> None:
    global _initialized, _enabled, _tracer, _trace_provider, _meter_provider
    global _recompute_counter, _recompute_latency_hist, _exclusion_records_hist
    global _coalesced_counter, _incremental_counter
    global _prom_enabled, _prom_recompute_counter, _prom_recompute_latency_hist
    global _prom_exclusion_records_hist, _prom_coalesced_counter, _prom_incremental_counter

    if _initialized:
        return
    _initialized = True

    if not config.OTEL_ENABLED:
        logger.info("OpenTelemetry disabled (PEEK_OTEL_ENABLED=false)")
        return

    try:
        from opentelemetry import metrics, trace
        from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
        from opentelemetry.sdk.metrics import MeterProvider
        from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
    except ImportError as exc:
        logger.warning("OpenTelemetry dependencies unavailable: %s", exc)
        return

    service_name = config.OTEL_SERVICE_NAME or "peek-visibility"
    resource = Resource.create({"service.name": service_name, "service.namespace": "peek"})

    trace_provider = TracerProvider(resource=resource)
    trace_exporter = OTLPSpanExporter(
        endpoint=_normalize_otlp_endpoint(config.OTEL_ENDPOINT, "/v1/traces") or None
    )
    trace_provider.add_span_processor(BatchSpanProcessor(trace_exporter))
    trace.set_tracer_provider(trace_provider)

    metric_reader = PeriodicExportingMetricReader(
        OTLPMetricExporter(endpoint=_normalize_otlp_endpoint(config.OTEL_ENDPOINT, "/v1/metrics") or None)
    )
    meter_provider = MeterProvider(resource=resource, metric_readers=[metric_reader])
    metrics.set_meter_provider(meter_provider)
    meter = metrics.get_meter("peek.visibility")

    _recompute_counter = meter.create_counter(
        "peek_exclusion_recomputes_total",
        unit="1",
        description="Physical per-user exclusion recomputes by result",
    )
    _recompute_latency_hist = meter.create_histogram(
        "peek_exclusion_recompute_latency_ms",
        unit="ms",
        description="Latency of one per-user exclusion recompute",
    )
    _exclusion_records_hist = meter.create_histogram(
        "peek_exclusion_records",
        unit="1",
        description="Exclusion records written per recompute",
    )
    _coalesced_counter = meter.create_counter(
        "peek_exclusion_recompute_coalesced_total",
        unit="1",
        description="Recompute requests folded into a pending rerun",
    )
    _incremental_counter = meter.create_counter(
        "peek_exclusion_incremental_updates_total",
        unit="1",
        description="Incremental hide/unhide updates",
    )

    _trace_provider = trace_provider
    _meter_provider = meter_provider
    _tracer = trace.get_tracer("peek.visibility")
    _enabled = True

    if config.PROM_PORT > 0:
        try:
            from prometheus_client import Counter, Histogram, start_http_server

            start_http_server(config.PROM_PORT)
            _prom_recompute_counter = Counter(
                "peek_exclusion_recomputes_total",
                "Physical per-user exclusion recomputes by result",
                ["result"],
            )
            _prom_recompute_latency_hist = Histogram(
                "peek_exclusion_recompute_latency_ms",
                "Latency of one per-user exclusion recompute",
                ["result"],
            )
            _prom_exclusion_records_hist = Histogram(
                "peek_exclusion_records",
                "Exclusion records written per recompute",
            )
            _prom_coalesced_counter = Counter(
                "peek_exclusion_recompute_coalesced_total",
                "Recompute requests folded into a pending rerun",
            )
            _prom_incremental_counter = Counter(
                "peek_exclusion_incremental_updates_total",
                "Incremental hide/unhide updates",
                ["action"],
            )
            _prom_enabled = True
            logger.info("Prometheus fallback metrics server listening on port %s", config.PROM_PORT)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Prometheus fallback not started: %s", exc)
            _prom_enabled = False

    logger.info(
        "OpenTelemetry initialized (service=%s endpoint=%s)",
        service_name,
        config.OTEL_ENDPOINT,
    )


def shutdown() -> None:
    global _enabled
    if not _initialized:
        return
    for provider in (_meter_provider, _trace_provider):
        if provider is None:
            continue
        try:
            provider.shutdown()
        except Exception as exc:  # noqa: BLE001
            logger.debug("Telemetry provider shutdown failed: %s", exc)
    _enabled = False


@contextmanager
def start_span(name: str, attributes: dict[str, Any] | None = None):
    if not _enabled or _tracer is None:
        yield None
        return
    with _tracer.start_as_current_span(name) as span:
        if attributes:
            for key, value in attributes.items():
                if value is not None:
                    span.set_attribute(key, value)
        yield span


def record_recompute(result: str, duration_ms: float, *, record_count: int = 0) -> None:
    labels = {"result": result or "unknown"}
    duration = max(0.0, float(duration_ms))
    if _enabled and _recompute_counter is not None:
        _recompute_counter.add(1, labels)
    if _enabled and _recompute_latency_hist is not None:
        _recompute_latency_hist.record(duration, labels)
    if _enabled and _exclusion_records_hist is not None and result == "success":
        _exclusion_records_hist.record(max(0, int(record_count)))
    if _prom_enabled and _prom_recompute_counter is not None:
        _prom_recompute_counter.labels(**labels).inc()
    if _prom_enabled and _prom_recompute_latency_hist is not None:
        _prom_recompute_latency_hist.labels(**labels).observe(duration)
    if _prom_enabled and _prom_exclusion_records_hist is not None and result == "success":
        _prom_exclusion_records_hist.observe(max(0, int(record_count)))


def record_coalesced_request() -> None:
    if _enabled and _coalesced_counter is not None:
        _coalesced_counter.add(1)
    if _prom_enabled and _prom_coalesced_counter is not None:
        _prom_coalesced_counter.inc()


def record_incremental_update(action: str) -> None:
    labels = {"action": action or "unknown"}
    if _enabled and _incremental_counter is not None:
        _incremental_counter.add(1, labels)
    if _prom_enabled and _prom_incremental_counter is not None:
        _prom_incremental_counter.labels(**labels).inc()
