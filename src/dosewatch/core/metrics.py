"""OpenTelemetry metrics instruments for dose recording and reconciliation.

Instruments are created lazily from the global MeterProvider, so callers do
not need to pass a Meter instance around.

Initialization
--------------
Call ``init_metrics(service_name)`` once during server startup (alongside
``init_telemetry``).  When OTEL_EXPORTER_OTLP_ENDPOINT is not set, the SDK
falls back to a no-op MeterProvider and all recordings are silent no-ops.

Instruments
-----------
  dosewatch.recordings_total           Counter  (label: outcome=created|replayed|rejected)
      Administration recordings handled by the pipeline.

  dosewatch.bulk.items_total           Counter  (label: outcome=succeeded|failed)
      Per-animal outcomes of bulk recordings.

  dosewatch.cosign.transitions_total   Counter  (label: state=pending|confirmed|expired)
      Co-sign request state transitions.

  dosewatch.missed.materialized_total  Counter
      Synthetic missed records inserted.

  dosewatch.offline.flush_total        Counter  (label: outcome=applied|rejected|deferred)
      Offline queue replay outcomes (client side).

  dosewatch.record.latency_ms          Histogram
      End-to-end single-animal recording latency.
"""

from __future__ import annotations

import logging
import os

from opentelemetry import metrics

logger = logging.getLogger(__name__)

_METER_NAME = "dosewatch"


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
    """Return a Meter from the current global provider.

    Safe to call before initialization; returns a no-op meter in that case.
    """
    return metrics.get_meter(_METER_NAME)


def _recordings_total() -> metrics.Counter:
    return get_meter().create_counter(
        name="dosewatch.recordings_total",
        description="Administration recordings handled by the recording pipeline",
        unit="records",
    )


def _bulk_items_total() -> metrics.Counter:
    return get_meter().create_counter(
        name="dosewatch.bulk.items_total",
        description="Per-animal outcomes of bulk administration recordings",
        unit="items",
    )


def _cosign_transitions_total() -> metrics.Counter:
    return get_meter().create_counter(
        name="dosewatch.cosign.transitions_total",
        description="Co-sign request state transitions",
        unit="transitions",
    )


def _missed_materialized_total() -> metrics.Counter:
    return get_meter().create_counter(
        name="dosewatch.missed.materialized_total",
        description="Synthetic missed administration records inserted",
        unit="records",
    )


def _offline_flush_total() -> metrics.Counter:
    return get_meter().create_counter(
        name="dosewatch.offline.flush_total",
        description="Offline queue replay outcomes",
        unit="actions",
    )


def _record_latency_ms() -> metrics.Histogram:
    return get_meter().create_histogram(
        name="dosewatch.record.latency_ms",
        description="End-to-end administration recording latency in milliseconds",
        unit="ms",
    )


class DoseMetrics:
    """Convenience wrapper that caches dosewatch instruments.

    Instruments are lazily created on first use, so it is safe to construct
    this object at import time before ``init_metrics`` runs.
    """

    def __init__(self) -> None:
        self.__recordings: metrics.Counter | None = None
        self.__bulk: metrics.Counter | None = None
        self.__cosign: metrics.Counter | None = None
        self.__missed: metrics.Counter | None = None
        self.__flush: metrics.Counter | None = None
        self.__latency: metrics.Histogram | None = None

    @property
    def _recordings(self) -> metrics.Counter:
        if self.__recordings is None:
            self.__recordings = _recordings_total()
        return self.__recordings

    @property
    def _bulk(self) -> metrics.Counter:
        if self.__bulk is None:
            self.__bulk = _bulk_items_total()
        return self.__bulk

    @property
    def _cosign(self) -> metrics.Counter:
        if self.__cosign is None:
            self.__cosign = _cosign_transitions_total()
        return self.__cosign

    @property
    def _missed(self) -> metrics.Counter:
        if self.__missed is None:
            self.__missed = _missed_materialized_total()
        return self.__missed

    @property
    def _flush(self) -> metrics.Counter:
        if self.__flush is None:
            self.__flush = _offline_flush_total()
        return self.__flush

    @property
    def _latency(self) -> metrics.Histogram:
        if self.__latency is None:
            self.__latency = _record_latency_ms()
        return self.__latency

    def recording(self, outcome: str) -> None:
        """Count one recording with ``outcome`` created, replayed, rejected or error."""
        self._recordings.add(1, {"outcome": outcome})

    def bulk_item(self, outcome: str) -> None:
        self._bulk.add(1, {"outcome": outcome})

    def cosign_transition(self, state: str, count: int = 1) -> None:
        if count:
            self._cosign.add(count, {"state": state})

    def missed_materialized(self, count: int) -> None:
        if count:
            self._missed.add(count)

    def flush_outcome(self, outcome: str, count: int = 1) -> None:
        if count:
            self._flush.add(count, {"outcome": outcome})

    def record_latency(self, latency_ms: float) -> None:
        self._latency.record(latency_ms)


dose_metrics = DoseMetrics()
