"""
OpenTelemetry configuration and the turn pipeline observer.

TelemetryManager wires OTLP exporters when telemetry is enabled. The
PipelineObserver is the single place where a turn reports its stage
transitions: one structured log record and one span event per transition.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Dict, Any, Optional

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

from toolchat.models.conversation import TurnState


logger = logging.getLogger(__name__)

TRACER_NAME = "toolchat"


class TelemetryManager:
    """Manages OpenTelemetry setup and lifecycle for toolchat."""

    def __init__(self, config: Dict[str, Any]):
        self.service_name = config.get("service_name", "toolchat")
        self.service_version = config.get("service_version", "0.1.0")
        self.environment = config.get("environment", "development")
        self.otlp_endpoint = config.get("otlp_endpoint", "http://localhost:4317")
        self.export_timeout = config.get("export_timeout", 30)
        self.trace_sampling_ratio = config.get("trace_sampling_ratio", 1.0)
        self.resource_attributes = config.get("resource_attributes", {})
        self._initialized = False

    def initialize(self) -> None:
        """Initialize OpenTelemetry with OTLP exporters."""
        if self._initialized:
            logger.warning("Telemetry already initialized")
            return

        resource = Resource.create({
            "service.name": self.service_name,
            "service.version": self.service_version,
            "deployment.environment": self.environment,
            **self.resource_attributes
        })

        tracer_provider = TracerProvider(
            resource=resource,
            sampler=TraceIdRatioBased(self.trace_sampling_ratio)
        )
        tracer_provider.add_span_processor(BatchSpanProcessor(
            OTLPSpanExporter(endpoint=self.otlp_endpoint, timeout=self.export_timeout)
        ))
        trace.set_tracer_provider(tracer_provider)

        metric_reader = PeriodicExportingMetricReader(
            exporter=OTLPMetricExporter(endpoint=self.otlp_endpoint, timeout=self.export_timeout),
            export_interval_millis=10000
        )
        metrics.set_meter_provider(MeterProvider(resource=resource, metric_readers=[metric_reader]))

        AsyncioInstrumentor().instrument()
        LoggingInstrumentor().instrument(set_logging_format=False)

        self._initialized = True
        logger.info(f"OpenTelemetry initialized for service: {self.service_name}")

    def get_meter(self) -> metrics.Meter:
        """Meter for toolchat instruments."""
        return metrics.get_meter(TRACER_NAME, self.service_version)

    def shutdown(self) -> None:
        """Gracefully shutdown telemetry and flush pending data."""
        if not self._initialized:
            return

        try:
            if hasattr(trace.get_tracer_provider(), 'shutdown'):
                trace.get_tracer_provider().shutdown()
            if hasattr(metrics.get_meter_provider(), 'shutdown'):
                metrics.get_meter_provider().shutdown()
            logger.info("OpenTelemetry shutdown completed")
        except Exception as e:
            logger.error(f"Error during telemetry shutdown: {e}")
        finally:
            self._initialized = False


# Global telemetry manager instance
_telemetry_manager: Optional[TelemetryManager] = None


def initialize_telemetry(config: Dict[str, Any]) -> TelemetryManager:
    """Initialize global telemetry manager."""
    global _telemetry_manager

    _telemetry_manager = TelemetryManager(config)
    _telemetry_manager.initialize()
    return _telemetry_manager


def shutdown_telemetry() -> None:
    """Shutdown global telemetry manager."""
    global _telemetry_manager
    if _telemetry_manager:
        _telemetry_manager.shutdown()
        _telemetry_manager = None


def get_tracer() -> trace.Tracer:
    """Tracer for toolchat spans; a no-op tracer until telemetry is initialized."""
    return trace.get_tracer(TRACER_NAME)


@dataclass
class TurnTrace:
    """Diagnostic fields carried across the stages of one turn."""

    chat_id: str
    user_id: Optional[str] = None
    agent_id: Optional[str] = None
    effective_model: Optional[str] = None
    prompt_length: Optional[int] = None
    state: TurnState = TurnState.VALIDATING
    started_at: float = field(default_factory=time.monotonic)
    span: Optional[trace.Span] = None

    def fields(self) -> Dict[str, Any]:
        return {
            "chat_id": self.chat_id,
            "user_id": self.user_id,
            "agent_id": self.agent_id,
            "effective_model": self.effective_model,
            "prompt_length": self.prompt_length,
        }

    @property
    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started_at) * 1000)


class PipelineObserver:
    """Reports turn stage transitions to logging and tracing."""

    def __init__(self, logger_name: str = "toolchat.pipeline"):
        self.logger = logging.getLogger(logger_name)

    def start_turn(self, chat_id: str, user_id: Optional[str] = None) -> TurnTrace:
        """Open the root span of a turn in the validating state."""
        span = get_tracer().start_span(
            name="chat.turn",
            attributes={"chat.id": chat_id, "chat.user_id": user_id or ""}
        )
        turn = TurnTrace(chat_id=chat_id, user_id=user_id, span=span)
        self._emit(turn, None, TurnState.VALIDATING, {})
        return turn

    def transition(self, turn: TurnTrace, state: TurnState, **extra: Any) -> None:
        """Record a move to a new pipeline stage."""
        previous = turn.state
        turn.state = state
        self._emit(turn, previous, state, extra)

        if state.is_terminal and turn.span is not None:
            if state == TurnState.ERRORED:
                turn.span.set_status(Status(StatusCode.ERROR, str(extra.get("reason", "error"))))
            turn.span.set_attribute("chat.terminal_state", state.value)
            turn.span.end()
            turn.span = None

    def _emit(
        self,
        turn: TurnTrace,
        previous: Optional[TurnState],
        state: TurnState,
        extra: Dict[str, Any]
    ) -> None:
        record = {
            **turn.fields(),
            "from_state": previous.value if previous else None,
            "to_state": state.value,
            "elapsed_ms": turn.elapsed_ms,
            **extra,
        }
        level = logging.WARNING if state == TurnState.ERRORED else logging.INFO
        self.logger.log(level, f"Turn {turn.chat_id} -> {state.value}", extra={"turn": record})

        if turn.span is not None:
            attributes = {
                f"turn.{key}": value
                for key, value in record.items()
                if isinstance(value, (str, bool, int, float))
            }
            turn.span.add_event(f"turn.{state.value}", attributes=attributes)
