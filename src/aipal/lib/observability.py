"""
OpenTelemetry configuration for aipal.

Provides tracing of agent turns and script runs plus a small set of
counters. Exporters are only attached when an OTLP endpoint is configured;
until ``initialize_telemetry`` runs, the OpenTelemetry API hands out no-op
tracers and meters so services can be used without any setup.
"""

import logging
from typing import Any, Dict, Optional

from opentelemetry import metrics, trace
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased


logger = logging.getLogger(__name__)

INSTRUMENTATION_NAME = "aipal"


class TelemetryManager:
    """Manages OpenTelemetry setup and lifecycle."""

    def __init__(self, config: Dict[str, Any]):
        self.service_name = config.get("service_name", "aipal")
        self.service_version = config.get("service_version", "1.0.0")
        self.environment = config.get("environment", "development")
        self.otlp_endpoint = config.get("otlp_endpoint")
        self.export_timeout = config.get("export_timeout", 30)
        self.trace_sampling_ratio = config.get("trace_sampling_ratio", 1.0)
        self._initialized = False
        self._tracer_provider: Optional[TracerProvider] = None
        self._meter_provider: Optional[MeterProvider] = None

    def initialize(self) -> None:
        """Initialize tracer and meter providers."""
        if self._initialized:
            logger.warning("Telemetry already initialized")
            return

        resource = Resource.create({
            "service.name": self.service_name,
            "service.version": self.service_version,
            "deployment.environment": self.environment,
        })

        self._tracer_provider = TracerProvider(
            resource=resource,
            sampler=TraceIdRatioBased(self.trace_sampling_ratio)
        )
        metric_readers = []

        if self.otlp_endpoint:
            from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
            from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter

            self._tracer_provider.add_span_processor(BatchSpanProcessor(
                OTLPSpanExporter(endpoint=self.otlp_endpoint, timeout=self.export_timeout)
            ))
            metric_readers.append(PeriodicExportingMetricReader(
                exporter=OTLPMetricExporter(endpoint=self.otlp_endpoint, timeout=self.export_timeout),
                export_interval_millis=10000
            ))

        self._meter_provider = MeterProvider(resource=resource, metric_readers=metric_readers)

        trace.set_tracer_provider(self._tracer_provider)
        metrics.set_meter_provider(self._meter_provider)
        self._initialized = True
        logger.info(
            f"OpenTelemetry initialized for service: {self.service_name}",
            extra={"otlp_endpoint": self.otlp_endpoint}
        )

    def shutdown(self) -> None:
        """Flush pending data and shut providers down."""
        if not self._initialized:
            return
        try:
            self._tracer_provider.shutdown()
            self._meter_provider.shutdown()
            logger.info("OpenTelemetry shutdown completed")
        except Exception as e:
            logger.error(f"Error during telemetry shutdown: {e}")
        finally:
            self._initialized = False


class BridgeMetrics:
    """Counters describing agent turns and sandbox activity."""

    def __init__(self, meter: Optional[metrics.Meter] = None):
        self.meter = meter or get_meter()
        self.turns = self.meter.create_counter(
            name="aipal.turns",
            description="Agent turns by agent and outcome",
            unit="1"
        )
        self.turn_timeouts = self.meter.create_counter(
            name="aipal.turn_timeouts",
            description="Agent turns that timed out waiting for markers",
            unit="1"
        )
        self.script_runs = self.meter.create_counter(
            name="aipal.script_runs",
            description="Slash-command script executions by outcome",
            unit="1"
        )
        self.artifacts_rejected = self.meter.create_counter(
            name="aipal.artifacts_rejected",
            description="Artifact references dropped for escaping the artifact root",
            unit="1"
        )

    def record_turn(self, agent_id: str, outcome: str) -> None:
        self.turns.add(1, {"agent_id": agent_id, "outcome": outcome})
        if outcome == "timeout":
            self.turn_timeouts.add(1, {"agent_id": agent_id})

    def record_script(self, name: str, outcome: str) -> None:
        self.script_runs.add(1, {"script": name, "outcome": outcome})

    def record_artifact_rejected(self, count: int = 1) -> None:
        self.artifacts_rejected.add(count)


_telemetry_manager: Optional[TelemetryManager] = None
_bridge_metrics: Optional[BridgeMetrics] = None


def initialize_telemetry(config: Dict[str, Any]) -> TelemetryManager:
    """Initialize global telemetry manager."""
    global _telemetry_manager, _bridge_metrics
    _telemetry_manager = TelemetryManager(config)
    _telemetry_manager.initialize()
    _bridge_metrics = None
    return _telemetry_manager


def shutdown_telemetry() -> None:
    """Shutdown global telemetry manager."""
    global _telemetry_manager
    if _telemetry_manager:
        _telemetry_manager.shutdown()
        _telemetry_manager = None


def get_tracer() -> trace.Tracer:
    return trace.get_tracer(INSTRUMENTATION_NAME)


def get_meter() -> metrics.Meter:
    return metrics.get_meter(INSTRUMENTATION_NAME)


def get_bridge_metrics() -> BridgeMetrics:
    """Get the shared metrics collector."""
    global _bridge_metrics
    if _bridge_metrics is None:
        _bridge_metrics = BridgeMetrics()
    return _bridge_metrics
