"""OpenTelemetry tracing setup and sync span helpers."""

from __future__ import annotations

import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider

logger = logging.getLogger(__name__)

_TRACER_NAME = "calhub"

_tracer_provider_installed: bool = False


def init_telemetry(service_name: str = "calhub") -> trace.Tracer:
    """Initialize OpenTelemetry tracing.

    When ``OTEL_EXPORTER_OTLP_ENDPOINT`` is set, installs a TracerProvider with
    an OTLP gRPC exporter on the first call. Otherwise spans are no-ops.
    """
    global _tracer_provider_installed

    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")
    if not endpoint:
        logger.info("OTEL_EXPORTER_OTLP_ENDPOINT not set, using no-op tracer")
        return trace.get_tracer(_TRACER_NAME)

    if _tracer_provider_installed:
        return trace.get_tracer(_TRACER_NAME)

    from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
    from opentelemetry.sdk.trace.export import BatchSpanProcessor

    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    trace.set_tracer_provider(provider)
    _tracer_provider_installed = True
    logger.info("Telemetry initialized: endpoint=%s", endpoint)
    return trace.get_tracer(_TRACER_NAME)


def get_tracer(name: str = _TRACER_NAME) -> trace.Tracer:
    return trace.get_tracer(name)


@contextmanager
def sync_span(name: str, **attributes: str | int | bool) -> Iterator[trace.Span]:
    """Start a span named ``calhub.sync.<name>``.

    Exceptions are recorded on the span and its status set to ERROR before
    the exception propagates.
    """
    tracer = get_tracer()
    with tracer.start_as_current_span(
        f"calhub.sync.{name}",
        record_exception=False,
        set_status_on_exception=False,
    ) as span:
        for key, value in attributes.items():
            span.set_attribute(key, value)
        try:
            yield span
        except Exception as exc:
            span.set_status(trace.StatusCode.ERROR, str(exc))
            span.record_exception(exc)
            raise
