from __future__ import annotations

from dataclasses import dataclass, field
import logging
import os

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased

from domain_watch.core.config import Settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
CORRELATED_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s trace_id=%(trace_id)s span_id=%(span_id)s %(message)s"

_webhook_client_instrumentor = HTTPXClientInstrumentor()


class TraceContextFilter(logging.Filter):
    """Stamps ``trace_id``/``span_id`` of the active span onto every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        context = trace.get_current_span().get_span_context()
        record.trace_id = format(context.trace_id, "032x") if context.is_valid else "0" * 32
        record.span_id = format(context.span_id, "016x") if context.is_valid else "0" * 16
        return True


@dataclass(slots=True)
class TelemetryRuntime:
    enabled: bool
    provider: TracerProvider | None = None
    instrumented: list[str] = field(default_factory=list)


def configure_logging(*, correlate: bool = True) -> None:
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=logging.INFO, format=CORRELATED_LOG_FORMAT if correlate else LOG_FORMAT)
    if not correlate:
        return
    for handler in root.handlers:
        if not any(isinstance(existing, TraceContextFilter) for existing in handler.filters):
            handler.addFilter(TraceContextFilter())


def setup_telemetry(app: FastAPI, settings: Settings) -> TelemetryRuntime:
    configure_logging(correlate=settings.otel_log_correlation)
    if not settings.otel_enabled:
        return TelemetryRuntime(enabled=False)

    resource = Resource.create(
        {
            SERVICE_NAME: settings.otel_service_name,
            DEPLOYMENT_ENVIRONMENT: settings.environment,
        }
    )
    provider = TracerProvider(
        resource=resource,
        sampler=ParentBased(TraceIdRatioBased(settings.otel_trace_sample_ratio)),
    )
    exporter = _build_exporter(settings)
    if exporter is not None:
        provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)

    runtime = TelemetryRuntime(enabled=True, provider=provider)
    # Webhook POSTs become child spans of webhook.attempt.
    _webhook_client_instrumentor.instrument(tracer_provider=provider)
    runtime.instrumented.append("httpx")
    FastAPIInstrumentor.instrument_app(app, tracer_provider=provider, excluded_urls="healthz")
    runtime.instrumented.append("fastapi")
    return runtime


def shutdown_telemetry(app: FastAPI, runtime: TelemetryRuntime) -> None:
    if not runtime.enabled:
        return
    if "fastapi" in runtime.instrumented:
        FastAPIInstrumentor.uninstrument_app(app)
    if "httpx" in runtime.instrumented:
        _webhook_client_instrumentor.uninstrument()
    runtime.instrumented.clear()
    if runtime.provider is not None:
        runtime.provider.force_flush()
        runtime.provider.shutdown()


def _build_exporter(settings: Settings) -> OTLPSpanExporter | None:
    endpoint = _resolve_endpoint(settings)
    if endpoint is None:
        logging.getLogger(__name__).info(
            "no OTLP endpoint configured; webhook and watchlist spans stay in-process for service=%s",
            settings.otel_service_name,
        )
        return None
    headers = parse_header_pairs(settings.otel_exporter_otlp_headers or os.getenv("OTEL_EXPORTER_OTLP_HEADERS"))
    return OTLPSpanExporter(endpoint=endpoint, headers=headers or None)


def _resolve_endpoint(settings: Settings) -> str | None:
    for candidate in (
        settings.otel_exporter_otlp_endpoint,
        os.getenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT"),
        os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT"),
    ):
        if candidate and candidate.strip():
            return candidate.strip()
    return None


def parse_header_pairs(raw: str | None) -> dict[str, str]:
    """Parse ``key=value,key2=value2``; pairs without ``=`` or a key are dropped."""
    pairs: dict[str, str] = {}
    for item in (raw or "").split(","):
        key, separator, value = item.partition("=")
        if separator and key.strip():
            pairs[key.strip()] = value.strip()
    return pairs
