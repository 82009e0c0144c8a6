"""OpenTelemetry + Prometheus fallback wiring for Agent HQ."""
from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI

from agent_hq import config

logger = logging.getLogger("agent_hq.observability")


_initialized = False
_enabled = False
_meter_provider: Any | None = None
_fastapi_instrumentor: Any | None = None

_parser_failure_counter: Any | None = None
_tail_batch_counter: Any | None = None
_process_event_counter: Any | None = None

_prom_enabled = False
_prom_parser_failure_counter: Any | None = None
_prom_tail_batch_counter: Any | None = None
_prom_process_event_counter: Any | None = None


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


def _label(value: str) -> str:
    return (value or "").strip() or "unknown"


def initialize(app: FastAPI | None = None) -> None:
    global _initialized, _enabled, _meter_provider, _fastapi_instrumentor
    global _parser_failure_counter, _tail_batch_counter, _process_event_counter
    global _prom_enabled, _prom_parser_failure_counter, _prom_tail_batch_counter, _prom_process_event_counter

    if _initialized:
        if _enabled and app and _fastapi_instrumentor:
            _fastapi_instrumentor.instrument_app(app)
        return

    _initialized = True

    if not config.OTEL_ENABLED:
        logger.info("OpenTelemetry disabled (AGENT_HQ_OTEL_ENABLED=false)")
        return

    try:
        from opentelemetry import metrics
        from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter
        from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
        from opentelemetry.sdk.metrics import MeterProvider
        from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
        from opentelemetry.sdk.resources import Resource
    except ImportError as exc:
        logger.warning("OpenTelemetry dependencies unavailable: %s", exc)
        return

    metrics_endpoint = _normalize_otlp_endpoint(config.OTEL_ENDPOINT, "/v1/metrics")
    resource = Resource.create(
        {
            "service.name": config.OTEL_SERVICE_NAME or "agent-hq",
            "service.namespace": "agent-hq",
        }
    )

    metric_reader = PeriodicExportingMetricReader(
        OTLPMetricExporter(endpoint=metrics_endpoint or None)
    )
    meter_provider = MeterProvider(resource=resource, metric_readers=[metric_reader])
    metrics.set_meter_provider(meter_provider)
    meter = metrics.get_meter("agent_hq")

    _parser_failure_counter = meter.create_counter(
        "agent_hq_parser_failures_total",
        unit="1",
        description="Transcript lines skipped as malformed",
    )
    _tail_batch_counter = meter.create_counter(
        "agent_hq_tail_batches_total",
        unit="1",
        description="Incremental transcript reads by outcome",
    )
    _process_event_counter = meter.create_counter(
        "agent_hq_process_events_total",
        unit="1",
        description="Controlled subprocess lifecycle events",
    )

    _meter_provider = meter_provider
    _fastapi_instrumentor = FastAPIInstrumentor()
    _enabled = True

    if app:
        _fastapi_instrumentor.instrument_app(app)

    if config.PROM_PORT > 0:
        try:
            from prometheus_client import Counter, start_http_server

            start_http_server(config.PROM_PORT)
            _prom_enabled = True
            _prom_parser_failure_counter = Counter(
                "agent_hq_parser_failures_total",
                "Transcript lines skipped as malformed",
                ["source"],
            )
            _prom_tail_batch_counter = Counter(
                "agent_hq_tail_batches_total",
                "Incremental transcript reads by outcome",
                ["result"],
            )
            _prom_process_event_counter = Counter(
                "agent_hq_process_events_total",
                "Controlled subprocess lifecycle events",
                ["kind"],
            )
            logger.info("Prometheus fallback metrics server listening on port %s", config.PROM_PORT)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Prometheus fallback not started: %s", exc)
            _prom_enabled = False

    logger.info("OpenTelemetry initialized (endpoint=%s)", config.OTEL_ENDPOINT)


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
    _enabled = False


def record_parser_failure(source: str, count: int = 1) -> None:
    if count <= 0:
        return
    if _enabled and _parser_failure_counter is not None:
        _parser_failure_counter.add(count, {"source": _label(source)})
    if _prom_enabled and _prom_parser_failure_counter is not None:
        _prom_parser_failure_counter.labels(source=_label(source)).inc(count)


def record_tail_batch(result: str) -> None:
    if _enabled and _tail_batch_counter is not None:
        _tail_batch_counter.add(1, {"result": _label(result)})
    if _prom_enabled and _prom_tail_batch_counter is not None:
        _prom_tail_batch_counter.labels(result=_label(result)).inc()


def record_process_event(kind: str) -> None:
    if _enabled and _process_event_counter is not None:
        _process_event_counter.add(1, {"kind": _label(kind)})
    if _prom_enabled and _prom_process_event_counter is not None:
        _prom_process_event_counter.labels(kind=_label(kind)).inc()
