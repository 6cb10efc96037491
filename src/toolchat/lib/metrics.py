"""
Metrics collection for turn processing and tool result handling.

Uses OpenTelemetry metric instruments; until a meter provider is installed
the global no-op meter makes every recording a cheap call.
"""

import time
from contextlib import contextmanager
from typing import Optional

from opentelemetry import metrics


class MetricsCollector:
    """Collects and manages toolchat metrics."""

    def __init__(self, meter: metrics.Meter):
        self.meter = meter
        self._setup_instruments()

    def _setup_instruments(self) -> None:
        """Setup OpenTelemetry metric instruments."""
        self.turns_total = self.meter.create_counter(
            name="toolchat_turns_total",
            description="Turns by terminal state",
            unit="1"
        )

        self.turn_duration = self.meter.create_histogram(
            name="toolchat_turn_duration_ms",
            description="Wall-clock duration of streamed turns",
            unit="ms"
        )

        self.turn_steps = self.meter.create_histogram(
            name="toolchat_turn_steps",
            description="Model continuation steps used per turn",
            unit="1"
        )

        self.rejections_total = self.meter.create_counter(
            name="toolchat_rejections_total",
            description="Turns rejected before streaming, by error code",
            unit="1"
        )

        self.tool_calls_total = self.meter.create_counter(
            name="toolchat_tool_calls_total",
            description="Tool calls by outcome",
            unit="1"
        )

        self.tool_duration = self.meter.create_histogram(
            name="toolchat_tool_duration_ms",
            description="Tool execution duration",
            unit="ms"
        )

        self.sanitized_bytes_saved = self.meter.create_histogram(
            name="toolchat_sanitizer_bytes_saved",
            description="Bytes removed from tool results by the sanitizer",
            unit="By"
        )

    def record_turn_completed(self, state: str, model: Optional[str], duration_ms: float, steps: int) -> None:
        labels = {"state": state, "model": model or "unknown"}
        self.turns_total.add(1, labels)
        self.turn_duration.record(duration_ms, labels)
        self.turn_steps.record(steps, labels)

    def record_rejection(self, code: str) -> None:
        self.rejections_total.add(1, {"code": code})

    def record_tool_call(self, tool_slug: str, outcome: str, duration_ms: float) -> None:
        labels = {"tool": tool_slug, "outcome": outcome}
        self.tool_calls_total.add(1, labels)
        self.tool_duration.record(duration_ms, labels)

    def record_sanitization(self, tool_name: str, original_bytes: int, sanitized_bytes: int) -> None:
        self.sanitized_bytes_saved.record(
            max(original_bytes - sanitized_bytes, 0),
            {"tool": tool_name}
        )


class ToolTimer:
    """Context manager timing a single tool execution."""

    def __init__(self, collector: MetricsCollector, tool_slug: str):
        self.collector = collector
        self.tool_slug = tool_slug
        self.outcome = "success"
        self._start = 0.0

    def __enter__(self) -> "ToolTimer":
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if exc_type is not None:
            self.outcome = "exception"
        duration_ms = (time.perf_counter() - self._start) * 1000
        self.collector.record_tool_call(self.tool_slug, self.outcome, duration_ms)


# Global metrics collector instance
_metrics_collector: Optional[MetricsCollector] = None


def initialize_metrics(meter: metrics.Meter) -> MetricsCollector:
    """Initialize global metrics collector against a configured meter."""
    global _metrics_collector
    _metrics_collector = MetricsCollector(meter)
    return _metrics_collector


def get_metrics_collector() -> MetricsCollector:
    """Get the global metrics collector, bound to the global meter on first use."""
    global _metrics_collector
    if _metrics_collector is None:
        _metrics_collector = MetricsCollector(metrics.get_meter("toolchat"))
    return _metrics_collector


@contextmanager
def time_tool_call(tool_slug: str):
    """Time a tool call and record its outcome."""
    with ToolTimer(get_metrics_collector(), tool_slug) as timer:
        yield timer
