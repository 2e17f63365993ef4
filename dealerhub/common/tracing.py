"""OpenTelemetry wiring for the notification service.

Dispatch, reminder sweeps and HTTP requests all share the `dealerhub` tracer.
"""

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased

from dealerhub.common.config import settings


def setup_tracing(service_name: str) -> None:
    """Register the process tracer provider.

    Root spans are sampled at `otel_sample_ratio`; children follow their parent.
    An empty exporter endpoint keeps spans in-process only.
    """

    provider = TracerProvider(
        resource=Resource.create({"service.name": service_name, "service.namespace": "dealerhub"}),
        sampler=ParentBased(TraceIdRatioBased(settings.otel_sample_ratio)),
    )
    if settings.otel_exporter_otlp_endpoint:
        provider.add_span_processor(
            BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint))
        )
    trace.set_tracer_provider(provider)


def instrument_app(app: FastAPI) -> None:
    # Probe and scrape endpoints would dominate the trace volume.
    FastAPIInstrumentor.instrument_app(app, excluded_urls="health,metrics")


tracer = trace.get_tracer("dealerhub")
