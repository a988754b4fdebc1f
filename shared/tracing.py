from opentelemetry import context, trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.propagate import extract, inject
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor


def setup_tracing(service_name: str, otlp_endpoint: str, enabled: bool = True) -> None:
    if not enabled:
        return
    resource = Resource.create({"service.name": service_name})
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=otlp_endpoint)))
    trace.set_tracer_provider(provider)


def outgoing_headers(**fields: str) -> list[tuple[str, bytes]]:
    """Kafka headers carrying the W3C trace context plus the given fields."""
    carrier: dict[str, str] = {}
    inject(carrier)
    carrier.update({k.replace("_", "-"): v for k, v in fields.items() if v is not None})
    return [(k, v.encode()) for k, v in carrier.items()]


def decode_headers(headers) -> dict[str, str]:
    return {k: v.decode(errors="replace") for k, v in headers} if headers else {}


def incoming_context(headers: dict[str, str]) -> context.Context:
    return extract(headers)
