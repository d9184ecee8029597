"""OpenTelemetry tracing and metrics for scheduler runs.

When ``OTEL_EXPORTER_OTLP_ENDPOINT`` is not set the global no-op providers are
used and every span or recording is silent.

Instruments
-----------
  cai.scheduler.runs            Counter  (label: outcome)
      Scheduler runs by outcome (completed, busy, skipped, failed).

  cai.scheduler.events_created  Counter  (label: category)
      Managed events created, per category.

  cai.scheduler.focus_seconds   Counter
      Focus seconds newly scheduled.
"""

from __future__ import annotations

import logging
import os

from opentelemetry import metrics, trace

logger = logging.getLogger(__name__)

_INSTRUMENTATION_NAME = "cai"

_providers_installed: bool = False


def init_telemetry(service_name: str = "cai") -> trace.Tracer:
    """Install OTLP trace and metric exporters when an endpoint is configured.

    Safe to call more than once; only the first call installs providers.
    """
    global _providers_installed

    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")
    if not endpoint:
        logger.info("OTEL_EXPORTER_OTLP_ENDPOINT not set, using no-op tracer and meter")
        return trace.get_tracer(service_name)

    if _providers_installed:
        return trace.get_tracer(service_name)

    # Import SDK/exporters only when needed
    from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
    from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
    from opentelemetry.sdk.metrics import MeterProvider
    from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
    from opentelemetry.sdk.resources import Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import BatchSpanProcessor

    resource = Resource.create({"service.name": service_name})

    tracer_provider = TracerProvider(resource=resource)
    tracer_provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    trace.set_tracer_provider(tracer_provider)

    reader = PeriodicExportingMetricReader(
        OTLPMetricExporter(endpoint=endpoint), export_interval_millis=15_000
    )
    metrics.set_meter_provider(MeterProvider(resource=resource, metric_readers=[reader]))

    _providers_installed = True
    logger.info("Telemetry initialized: endpoint=%s", endpoint)
    return trace.get_tracer(service_name)


def get_tracer() -> trace.Tracer:
    return trace.get_tracer(_INSTRUMENTATION_NAME)


def get_meter() -> metrics.Meter:
    return metrics.get_meter(_INSTRUMENTATION_NAME)


def record_run(outcome: str) -> None:
    get_meter().create_counter(
        name="cai.scheduler.runs",
        description="Scheduler runs by outcome",
        unit="runs",
    ).add(1, {"outcome": outcome})


def record_event_created(category: str) -> None:
    get_meter().create_counter(
        name="cai.scheduler.events_created",
        description="Managed calendar events created by the scheduler",
        unit="events",
    ).add(1, {"category": category})


def record_focus_seconds(seconds: float) -> None:
    get_meter().create_counter(
        name="cai.scheduler.focus_seconds",
        description="Focus seconds newly scheduled",
        unit="s",
    ).add(seconds)
