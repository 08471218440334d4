"""
OpenTelemetry setup for DAB.

The chat client and the bundled provider both export spans and metrics over
OTLP gRPC when observability is enabled. Spans cover chat turns, workflow
loops, approval requests, model completions and tool invocations.
"""

import logging
from typing import Optional

from opentelemetry import trace, metrics
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from opentelemetry.instrumentation.asyncio import AsyncioInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.trace import Status, StatusCode

from dab import __version__
from dab.lib.config import ObservabilityConfig


logger = logging.getLogger(__name__)

INSTRUMENTATION_NAME = "dab"
METRIC_EXPORT_INTERVAL_MS = 10000


class TelemetryManager:
    """Owns the tracer and meter providers for one DAB process."""

    def __init__(self, config: ObservabilityConfig, component: str):
        self.config = config
        self.component = component
        self.tracer_provider: Optional[TracerProvider] = None
        self.meter_provider: Optional[MeterProvider] = None

    @property
    def started(self) -> bool:
        return self.tracer_provider is not None

    def start(self) -> None:
        """Install OTLP-exporting providers as the global ones."""
        if self.started:
            logger.warning(f"Telemetry for {self.component} already started")
            return

        resource = Resource.create({
            "service.name": self.config.service_name,
            "service.version": self.config.service_version or __version__,
            "deployment.environment": self.config.environment,
            "dab.component": self.component,
            **self.config.resource_attributes
        })

        self.tracer_provider = TracerProvider(
            resource=resource,
            sampler=TraceIdRatioBased(self.config.trace_sampling_ratio)
        )
        self.tracer_provider.add_span_processor(BatchSpanProcessor(
            OTLPSpanExporter(endpoint=self.config.otlp_endpoint, timeout=self.config.export_timeout),
            export_timeout_millis=self.config.export_timeout * 1000
        ))
        trace.set_tracer_provider(self.tracer_provider)

        self.meter_provider = MeterProvider(
            resource=resource,
            metric_readers=[PeriodicExportingMetricReader(
                exporter=OTLPMetricExporter(endpoint=self.config.otlp_endpoint, timeout=self.config.export_timeout),
                export_interval_millis=METRIC_EXPORT_INTERVAL_MS
            )]
        )
        metrics.set_meter_provider(self.meter_provider)

        AsyncioInstrumentor().instrument()
        LoggingInstrumentor().instrument(set_logging_format=False)

        logger.info(f"Telemetry for {self.component} exporting to {self.config.otlp_endpoint}")

    def meter(self) -> metrics.Meter:
        if self.meter_provider is None:
            raise RuntimeError("Telemetry not started")
        return self.meter_provider.get_meter(INSTRUMENTATION_NAME)

    def shutdown(self) -> None:
        """Flush pending spans and metrics."""
        if not self.started:
            return
        try:
            self.tracer_provider.shutdown()
            self.meter_provider.shutdown()
            logger.info(f"Telemetry for {self.component} shut down")
        except Exception as e:
            logger.error(f"Error during telemetry shutdown: {e}")
        finally:
            self.tracer_provider = None
            self.meter_provider = None


_telemetry_manager: Optional[TelemetryManager] = None


def initialize_telemetry(config: ObservabilityConfig, component: str = "client") -> TelemetryManager:
    """Start the process-wide telemetry manager."""
    global _telemetry_manager

    _telemetry_manager = TelemetryManager(config, component)
    _telemetry_manager.start()
    return _telemetry_manager


def get_tracer() -> trace.Tracer:
    """Get a tracer.

    Before telemetry starts this is the API's no-op tracer, so callers can
    open spans unconditionally.
    """
    return trace.get_tracer(INSTRUMENTATION_NAME)


def record_failure(span: trace.Span, error: BaseException) -> None:
    """Mark ``span`` failed with ``error`` attached."""
    span.record_exception(error)
    span.set_status(Status(StatusCode.ERROR, str(error)))


def shutdown_telemetry() -> None:
    global _telemetry_manager
    if _telemetry_manager:
        _telemetry_manager.shutdown()
        _telemetry_manager = None
