"""
Metrics collection for chat turns, tool calls and approvals.

Uses OpenTelemetry metric instruments. Collection is optional: callers use
``try_get_metrics_collector()`` and skip recording when it returns ``None``.
"""

import time
from dataclasses import dataclass
from typing import Optional

from opentelemetry import metrics


@dataclass
class ToolCallMetrics:
    """Metrics for one tool invocation."""
    provider_id: str
    tool_name: str
    duration_ms: int
    attempts: int
    success: bool
    error_type: Optional[str] = None


class MetricsCollector:
    """Collects and manages DAB metrics."""

    def __init__(self, meter: metrics.Meter):
        self.meter = meter
        self._setup_instruments()

    def _setup_instruments(self) -> None:
        """Setup OpenTelemetry metric instruments."""
        self.tool_calls = self.meter.create_counter(
            name="dab_tool_calls_total",
            description="Tool invocations by provider, tool and outcome",
            unit="1"
        )

        self.tool_duration = self.meter.create_histogram(
            name="dab_tool_duration_ms",
            description="Tool invocation duration including retries",
            unit="ms"
        )

        self.tool_retries = self.meter.create_counter(
            name="dab_tool_retries_total",
            description="Tool invocation attempts beyond the first",
            unit="1"
        )

        self.approval_requests = self.meter.create_counter(
            name="dab_approval_requests_total",
            description="Approval requests by decision",
            unit="1"
        )

        self.credential_rotations = self.meter.create_counter(
            name="dab_credential_rotations_total",
            description="Credential rotations after rate limit or quota errors",
            unit="1"
        )

        self.model_completions = self.meter.create_counter(
            name="dab_model_completions_total",
            description="Model completion requests by outcome",
            unit="1"
        )

        self.active_streams = self.meter.create_up_down_counter(
            name="dab_active_streams",
            description="Open progress stream subscriptions",
            unit="1"
        )

        self.workflow_iterations = self.meter.create_histogram(
            name="dab_workflow_iterations",
            description="Iterations used by workflow runs",
            unit="1"
        )

    def record_tool_call(self, call: ToolCallMetrics) -> None:
        attributes = {
            "provider_id": call.provider_id,
            "tool_name": call.tool_name,
            "success": str(call.success)
        }
        if call.error_type:
            attributes["error_type"] = call.error_type

        self.tool_calls.add(1, attributes)
        self.tool_duration.record(call.duration_ms, attributes)
        if call.attempts > 1:
            self.tool_retries.add(call.attempts - 1, attributes)

    def record_approval(self, decision: str) -> None:
        self.approval_requests.add(1, {"decision": decision})

    def record_credential_rotation(self, provider: str) -> None:
        self.credential_rotations.add(1, {"provider": provider})

    def record_model_completion(self, provider: str, success: bool) -> None:
        self.model_completions.add(1, {"provider": provider, "success": str(success)})

    def record_stream_opened(self) -> None:
        self.active_streams.add(1)

    def record_stream_closed(self) -> None:
        self.active_streams.add(-1)

    def record_workflow_run(self, workflow: str, iterations: int) -> None:
        self.workflow_iterations.record(iterations, {"workflow": workflow})


class ToolCallTimer:
    """Context manager for timing tool invocations."""

    def __init__(self, provider_id: str, tool_name: str):
        self.provider_id = provider_id
        self.tool_name = tool_name
        self.start_time: Optional[float] = None
        self.attempts = 0
        self.success = True
        self.error_type: Optional[str] = None

    def __enter__(self) -> "ToolCallTimer":
        self.start_time = time.time()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        collector = try_get_metrics_collector()
        if collector is None or self.start_time is None:
            return

        if exc_type is not None:
            self.success = False
            self.error_type = exc_type.__name__

        collector.record_tool_call(ToolCallMetrics(
            provider_id=self.provider_id,
            tool_name=self.tool_name,
            duration_ms=int((time.time() - self.start_time) * 1000),
            attempts=max(self.attempts, 1),
            success=self.success,
            error_type=self.error_type
        ))


# Global metrics collector instance
_metrics_collector: Optional[MetricsCollector] = None


def initialize_metrics(meter: metrics.Meter) -> MetricsCollector:
    """Initialize global metrics collector."""
    global _metrics_collector
    _metrics_collector = MetricsCollector(meter)
    return _metrics_collector


def try_get_metrics_collector() -> Optional[MetricsCollector]:
    """Get the global metrics collector, or ``None`` when metrics are off."""
    return _metrics_collector


def reset_metrics() -> None:
    global _metrics_collector
    _metrics_collector = None
