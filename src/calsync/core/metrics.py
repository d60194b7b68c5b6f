"""OpenTelemetry metrics instruments for the sync engine.

Instruments are created lazily from the global MeterProvider, so callers do
not need to pass a Meter instance around. Until a real provider is installed
(see ``init_metrics``) every recording is a silent no-op.

Instruments
-----------
  calsync.sync.passes_total       Counter  (label: outcome)
      Completed sync passes. ``outcome`` is one of success, failure,
      disconnected, offline or discarded.

  calsync.sync.errors_total       Counter  (label: code)
      Classified errors, labelled with the taxonomy code.

  calsync.sync.pass_duration_ms   Histogram
      Wall-clock duration of a sync pass in milliseconds.

All instruments carry an ``engine`` label.
"""

from __future__ import annotations

import logging
import os

from opentelemetry import metrics

logger = logging.getLogger(__name__)

_METER_NAME = "calsync"

OUTCOME_SUCCESS = "success"
OUTCOME_FAILURE = "failure"
OUTCOME_DISCONNECTED = "disconnected"
OUTCOME_OFFLINE = "offline"
OUTCOME_DISCARDED = "discarded"


def init_metrics(service_name: str) -> metrics.Meter:
    """Initialize OpenTelemetry metrics.

    When OTEL_EXPORTER_OTLP_ENDPOINT is set, configures a real MeterProvider
    with a periodic OTLP gRPC exporter.  Otherwise, the global no-op
    MeterProvider is used and all recordings are silent.
    """
    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")

    if not endpoint:
        logger.info("OTEL_EXPORTER_OTLP_ENDPOINT not set, using no-op meter")
        return metrics.get_meter(_METER_NAME)

    # Import SDK/exporter only when needed to avoid hard dependency at import time
    from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
    from opentelemetry.sdk.metrics import MeterProvider
    from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
    from opentelemetry.sdk.resources import Resource

    resource = Resource.create({"service.name": service_name})
    exporter = OTLPMetricExporter(endpoint=endpoint)
    reader = PeriodicExportingMetricReader(exporter, export_interval_millis=15_000)
    provider = MeterProvider(resource=resource, metric_readers=[reader])

    metrics.set_meter_provider(provider)
    logger.info("Metrics initialized: service=%s, endpoint=%s", service_name, endpoint)

    return metrics.get_meter(_METER_NAME)


def get_meter() -> metrics.Meter:
    """Return a Meter from the current global provider."""
    return metrics.get_meter(_METER_NAME)


def _passes_total() -> metrics.Counter:
    return get_meter().create_counter(
        name="calsync.sync.passes_total",
        description="Total completed sync passes by outcome",
        unit="passes",
    )


def _errors_total() -> metrics.Counter:
    return get_meter().create_counter(
        name="calsync.sync.errors_total",
        description="Total classified sync errors by taxonomy code",
        unit="errors",
    )


def _pass_duration_ms() -> metrics.Histogram:
    return get_meter().create_histogram(
        name="calsync.sync.pass_duration_ms",
        description="Sync pass duration in milliseconds",
        unit="ms",
    )


class SyncMetrics:
    """Convenience wrapper around the sync instruments for one engine.

    Instruments are created on first use, so it is safe to construct this
    object before ``init_metrics`` is called.
    """

    def __init__(self, engine_name: str) -> None:
        self._engine_name = engine_name
        self._attrs = {"engine": engine_name}
        self._passes: metrics.Counter | None = None
        self._errors: metrics.Counter | None = None
        self._duration: metrics.Histogram | None = None

    @property
    def engine_name(self) -> str:
        return self._engine_name

    def record_pass(self, outcome: str, duration_ms: float) -> None:
        if self._passes is None:
            self._passes = _passes_total()
        if self._duration is None:
            self._duration = _pass_duration_ms()
        self._passes.add(1, {**self._attrs, "outcome": outcome})
        self._duration.record(duration_ms, self._attrs)

    def record_error(self, code: str) -> None:
        if self._errors is None:
            self._errors = _errors_total()
        self._errors.add(1, {**self._attrs, "code": code})
