"""OpenTelemetry tracing integration with no-op fallback."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Generator

from pipeline_control.config import TracingConfig

logger = logging.getLogger(__name__)

try:
	from opentelemetry import trace
	from opentelemetry.sdk.resources import Resource
	from opentelemetry.sdk.trace import TracerProvider
	from opentelemetry.sdk.trace.export import (
		ConsoleSpanExporter,
		SimpleSpanProcessor,
	)

	OTEL_AVAILABLE = True
except ImportError:
	OTEL_AVAILABLE = False


class NoOpSpan:
	"""A no-op span that acts as a context manager and attribute sink."""

	def set_attribute(self, key: str, value: Any) -> None:
		pass

	def record_exception(self, exception: BaseException) -> None:
		pass


class PipelineTracer:
	"""Session, phase and attempt spans; every span is a NoOpSpan when tracing is off."""

	def __init__(self, config: TracingConfig | None = None) -> None:
		self._config = config or TracingConfig()
		self._tracer: Any = None

		if not self._config.enabled or not OTEL_AVAILABLE:
			if self._config.enabled and not OTEL_AVAILABLE:
				logger.warning(
					"Tracing enabled but opentelemetry not installed. "
					"Install with: pip install pipeline-control[tracing]"
				)
			return

		resource = Resource.create({"service.name": self._config.service_name})
		provider = TracerProvider(resource=resource)

		if self._config.exporter == "otlp":
			try:
				from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
				provider.add_span_processor(
					SimpleSpanProcessor(OTLPSpanExporter(endpoint=self._config.otlp_endpoint))
				)
			except ImportError:
				logger.warning(
					"OTLP exporter not available. Install opentelemetry-exporter-otlp-proto-grpc"
				)
				provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
		else:
			provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))

		trace.set_tracer_provider(provider)
		self._tracer = trace.get_tracer("pipeline-control")

	@property
	def active(self) -> bool:
		return self._tracer is not None

	@contextmanager
	def _span(self, name: str, **attributes: Any) -> Generator[Any, None, None]:
		if not self.active:
			yield NoOpSpan()
			return
		with self._tracer.start_as_current_span(name) as span:
			for key, value in attributes.items():
				span.set_attribute(key, value)
			yield span

	def start_session_span(self, session_id: str, target: str) -> Any:
		return self._span("session", **{"session.id": session_id, "session.target": target})

	def start_phase_span(self, phase: str) -> Any:
		return self._span("phase", **{"phase.name": phase})

	def start_attempt_span(self, agent_name: str, attempt: int) -> Any:
		return self._span("attempt", **{"agent.name": agent_name, "attempt.number": attempt})


def get_current_trace_context() -> tuple[str, str]:
	"""Extract trace_id and span_id from the current OTEL context.

	Returns ("", "") if OTEL is not available or no active span.
	"""
	if not OTEL_AVAILABLE:
		return ("", "")
	span = trace.get_current_span()
	ctx = span.get_span_context()
	if ctx is None or ctx.trace_id == 0:
		return ("", "")
	return (
		format(ctx.trace_id, "032x"),
		format(ctx.span_id, "016x"),
	)
