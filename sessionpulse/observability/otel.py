"""OpenTelemetry + Prometheus fallback wiring for sessionpulse."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any

from fastapi import FastAPI

from sessionpulse import config

logger = logging.getLogger("sessionpulse.observability")


_initialized = False
_enabled = False
_tracer: Any | None = None
_trace_provider: Any | None = None
_meter_provider: Any | None = None
_fastapi_instrumentor: Any | None = None

_ingestion_counter: Any | None = None
_ingestion_latency_hist: Any | None = None
_parser_failure_counter: Any | None = None
_transition_counter: Any | None = None
_session_event_counter: Any | None = None

_prom_enabled = False
_prom_ingestion_counter: Any | None = None
_prom_ingestion_latency_hist: Any | None = None
_prom_parser_failure_counter: Any | None = None
_prom_transition_counter: Any | None = None
_prom_session_event_counter: Any | None = None


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


def _prom_labels(**labels: str) -> dict[str, str]:
    return {key: (value or "").strip() or "unknown" for key, value in labels.items()}


def _start_prometheus() -> None:
    global _prom_enabled
    global _prom_ingestion_counter, _prom_ingestion_latency_hist, _prom_parser_failure_counter
    global _prom_transition_counter, _prom_session_event_counter

    try:
        from prometheus_client import Counter, Histogram, start_http_server

        start_http_server(config.PROM_PORT)
        _prom_ingestion_counter = Counter(
            "sessionpulse_records_ingested_total",
            "Log records read from session files",
            ["project"],
        )
        _prom_ingestion_latency_hist = Histogram(
            "sessionpulse_ingestion_latency_ms",
            "Latency of handling one session file change",
            ["project"],
        )
        _prom_parser_failure_counter = Counter(
            "sessionpulse_parser_failures_total",
            "Malformed records and signal files skipped",
            ["parser", "project"],
        )
        _prom_transition_counter = Counter(
            "sessionpulse_status_transitions_total",
            "Published status changes",
            ["from_status", "to_status"],
        )
        _prom_session_event_counter = Counter(
            "sessionpulse_session_events_total",
            "Published session events",
            ["type"],
        )
        _prom_enabled = True
        logger.info("Prometheus fallback metrics server listening on port %s", config.PROM_PORT)
    except Exception as exc:  # noqa: BLE001
        logger.warning("Prometheus fallback not started: %s", exc)
        _prom_enabled = False


def initialize(app: FastAPI | None = None) -> None:
    global _initialized, _enabled, _tracer, _trace_provider, _meter_provider, _fastapi_instrumentor
    global _ingestion_counter, _ingestion_latency_hist, _parser_failure_counter
    global _transition_counter, _session_event_counter

    if _initialized:
        if _enabled and app and _fastapi_instrumentor:
            _fastapi_instrumentor.instrument_app(app)
        return

    _initialized = True

    if not config.OTEL_ENABLED:
        logger.info("OpenTelemetry disabled (SESSIONPULSE_OTEL_ENABLED=false)")
        return

    try:
        from opentelemetry import metrics, trace
        from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
        from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
        from opentelemetry.sdk.metrics import MeterProvider
        from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
    except ImportError as exc:
        logger.warning("OpenTelemetry dependencies unavailable: %s", exc)
        return

    traces_endpoint = _normalize_otlp_endpoint(config.OTEL_ENDPOINT, "/v1/traces")
    metrics_endpoint = _normalize_otlp_endpoint(config.OTEL_ENDPOINT, "/v1/metrics")
    service_name = config.OTEL_SERVICE_NAME or "sessionpulse"

    resource = Resource.create(
        {
            "service.name": service_name,
            "service.namespace": "sessionpulse",
        }
    )

    trace_provider = TracerProvider(resource=resource)
    trace_provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=traces_endpoint or None)))
    trace.set_tracer_provider(trace_provider)
    tracer = trace.get_tracer("sessionpulse")

    metric_reader = PeriodicExportingMetricReader(
        OTLPMetricExporter(endpoint=metrics_endpoint or None)
    )
    meter_provider = MeterProvider(resource=resource, metric_readers=[metric_reader])
    metrics.set_meter_provider(meter_provider)
    meter = metrics.get_meter("sessionpulse")

    _ingestion_counter = meter.create_counter(
        "sessionpulse_records_ingested_total",
        unit="1",
        description="Log records read from session files",
    )
    _ingestion_latency_hist = meter.create_histogram(
        "sessionpulse_ingestion_latency_ms",
        unit="ms",
        description="Latency of handling one session file change",
    )
    _parser_failure_counter = meter.create_counter(
        "sessionpulse_parser_failures_total",
        unit="1",
        description="Malformed records and signal files skipped",
    )
    _transition_counter = meter.create_counter(
        "sessionpulse_status_transitions_total",
        unit="1",
        description="Published status changes",
    )
    _session_event_counter = meter.create_counter(
        "sessionpulse_session_events_total",
        unit="1",
        description="Published session events",
    )

    _trace_provider = trace_provider
    _meter_provider = meter_provider
    _tracer = tracer
    _fastapi_instrumentor = FastAPIInstrumentor()
    _enabled = True

    if app:
        _fastapi_instrumentor.instrument_app(app)

    if config.PROM_PORT > 0:
        _start_prometheus()

    logger.info(
        "OpenTelemetry initialized (service=%s endpoint=%s)",
        service_name,
        config.OTEL_ENDPOINT,
    )


def shutdown(app: FastAPI | None = None) -> None:
    global _enabled
    if not _initialized:
        return
    try:
        if app and _fastapi_instrumentor:
            _fastapi_instrumentor.uninstrument_app(app)
    except Exception:
        pass
    try:
        if _meter_provider is not None:
            _meter_provider.shutdown()
    except Exception:
        pass
    try:
        if _trace_provider is not None:
            _trace_provider.shutdown()
    except Exception:
        pass
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


def record_ingestion(records: int, duration_ms: float, *, project: str) -> None:
    labels = {"project": project or "unknown"}
    if _enabled and _ingestion_counter is not None and records > 0:
        _ingestion_counter.add(records, labels)
    if _enabled and _ingestion_latency_hist is not None:
        _ingestion_latency_hist.record(max(0.0, float(duration_ms)), labels)
    if _prom_enabled and _prom_ingestion_counter is not None and records > 0:
        _prom_ingestion_counter.labels(**_prom_labels(project=project)).inc(records)
    if _prom_enabled and _prom_ingestion_latency_hist is not None:
        _prom_ingestion_latency_hist.labels(**_prom_labels(project=project)).observe(max(0.0, float(duration_ms)))


def record_parser_failure(parser: str, *, project: str, count: int = 1) -> None:
    safe_count = max(0, int(count))
    if safe_count == 0:
        return
    labels = {"parser": parser or "unknown", "project": project or "unknown"}
    if _enabled and _parser_failure_counter is not None:
        _parser_failure_counter.add(safe_count, labels)
    if _prom_enabled and _prom_parser_failure_counter is not None:
        _prom_parser_failure_counter.labels(**_prom_labels(parser=parser, project=project)).inc(safe_count)


def record_status_transition(from_status: str, to_status: str) -> None:
    labels = {"from_status": from_status or "none", "to_status": to_status or "none"}
    if _enabled and _transition_counter is not None:
        _transition_counter.add(1, labels)
    if _prom_enabled and _prom_transition_counter is not None:
        _prom_transition_counter.labels(**_prom_labels(**labels)).inc()


def record_session_event(event_type: str) -> None:
    if _enabled and _session_event_counter is not None:
        _session_event_counter.add(1, {"type": event_type or "unknown"})
    if _prom_enabled and _prom_session_event_counter is not None:
        _prom_session_event_counter.labels(**_prom_labels(type=event_type)).inc()
