"""OpenTelemetry metrics instruments for calendar sync.

Instruments are created lazily from the global MeterProvider, so callers do
not need to pass a Meter instance around.

Initialization
--------------
Call ``init_metrics(service_name)`` once on startup (alongside
``init_telemetry``).  When OTEL_EXPORTER_OTLP_ENDPOINT is not set, the global
no-op MeterProvider is used and all recordings are silent.

Instruments
-----------
  calhub.sync.runs              Counter  (labels: kind, outcome)
      Per-source sync attempts; outcome is success, unchanged or error.

  calhub.sync.duration_ms       Histogram (label: kind)
      Wall-clock duration of one source sync in milliseconds.

  calhub.sync.events_applied    Counter  (labels: kind, operation)
      Events upserted or deleted by reconciliation.
"""

from __future__ import annotations

import logging
import os

from opentelemetry import metrics

logger = logging.getLogger(__name__)

_METER_NAME = "calhub"


def init_metrics(service_name: str = "calhub") -> metrics.Meter:
    """Install a periodic OTLP metrics exporter when an endpoint is configured."""
    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")

    if not endpoint:
        logger.info("OTEL_EXPORTER_OTLP_ENDPOINT not set, using no-op meter")
        return metrics.get_meter(_METER_NAME)

    from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
    from opentelemetry.sdk.metrics import MeterProvider
    from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
    from opentelemetry.sdk.resources import Resource

    resource = Resource.create({"service.name": service_name})
    reader = PeriodicExportingMetricReader(
        OTLPMetricExporter(endpoint=endpoint), export_interval_millis=15_000
    )
    metrics.set_meter_provider(MeterProvider(resource=resource, metric_readers=[reader]))
    logger.info("Metrics initialized: service=%s, endpoint=%s", service_name, endpoint)
    return metrics.get_meter(_METER_NAME)


def get_meter() -> metrics.Meter:
    return metrics.get_meter(_METER_NAME)


class SyncMetrics:
    """Lazily created sync instruments.

    Safe to construct before ``init_metrics``; recordings are no-ops until a
    real provider is installed.
    """

    def __init__(self) -> None:
        self._runs: metrics.Counter | None = None
        self._duration: metrics.Histogram | None = None
        self._applied: metrics.Counter | None = None

    @property
    def runs(self) -> metrics.Counter:
        if self._runs is None:
            self._runs = get_meter().create_counter(
                name="calhub.sync.runs",
                description="Per-source calendar sync attempts by outcome",
                unit="runs",
            )
        return self._runs

    @property
    def duration(self) -> metrics.Histogram:
        if self._duration is None:
            self._duration = get_meter().create_histogram(
                name="calhub.sync.duration_ms",
                description="Duration of one source sync in milliseconds",
                unit="ms",
            )
        return self._duration

    @property
    def applied(self) -> metrics.Counter:
        if self._applied is None:
            self._applied = get_meter().create_counter(
                name="calhub.sync.events_applied",
                description="Events upserted or deleted during reconciliation",
                unit="events",
            )
        return self._applied

    def record_run(self, *, kind: str, outcome: str, duration_ms: float) -> None:
        self.runs.add(1, {"kind": kind, "outcome": outcome})
        self.duration.record(duration_ms, {"kind": kind})

    def record_applied(self, *, kind: str, upserted: int, deleted: int) -> None:
        if upserted:
            self.applied.add(upserted, {"kind": kind, "operation": "upsert"})
        if deleted:
            self.applied.add(deleted, {"kind": kind, "operation": "delete"})
