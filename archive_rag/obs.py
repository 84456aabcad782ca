"""Tracing for the answering pipeline: Langfuse request traces and OpenTelemetry stage spans.

- Trace: one Langfuse trace per API request, carrying retrieval events, the generation,
  and the request latency. Every method is a no-op when Langfuse is missing or not
  configured, and a Langfuse failure never fails the request.
- span: context manager timing one pipeline stage. Emits an OpenTelemetry span through
  the globally configured tracer provider and always logs the stage duration at debug
  level. OTEL_CONSOLE_EXPORT=true installs a console-exporting provider.

Langfuse credentials are read from archive_rag.config.settings.
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

from archive_rag.config import settings

logger = logging.getLogger(__name__)

# Optional Langfuse (v2 client API)
try:
    from langfuse import Langfuse
    from langfuse.client import StatefulTraceClient
except Exception as e:  # pragma: no cover
    logger.debug("Langfuse tracing unavailable: %s", e)
    Langfuse = None
    StatefulTraceClient = None  # type: ignore

# Optional OpenTelemetry
try:
    from opentelemetry import trace
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
except Exception:  # pragma: no cover
    trace = None  # type: ignore
    TracerProvider = None  # type: ignore


_langfuse_client: Optional[Langfuse] = None
_tracer = None


def langfuse_enabled() -> bool:
    """Whether all three Langfuse settings are present and the client is importable."""
    return bool(
        Langfuse is not None
        and settings.LANGFUSE_HOST
        and settings.LANGFUSE_PUBLIC_KEY
        and settings.LANGFUSE_SECRET_KEY
    )


def _langfuse() -> Optional[Langfuse]:
    global _langfuse_client
    if _langfuse_client is None and langfuse_enabled():
        _langfuse_client = Langfuse(
            host=settings.LANGFUSE_HOST,
            public_key=settings.LANGFUSE_PUBLIC_KEY,
            secret_key=settings.LANGFUSE_SECRET_KEY,
        )
    return _langfuse_client


def _get_tracer():
    """Process tracer; a no-op tracer unless a provider is configured."""
    global _tracer
    if _tracer is None and trace is not None:
        if settings.OTEL_CONSOLE_EXPORT:
            provider = TracerProvider()
            provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
            trace.set_tracer_provider(provider)
        _tracer = trace.get_tracer("archive_rag")
    return _tracer


@contextmanager
def span(name: str, attributes: Optional[Dict[str, Any]] = None) -> Iterator[None]:
    """Time a pipeline stage.

    Args:
        name: Stage name, e.g. "retrieve".
        attributes: Span attributes (primitive values only).
    """
    tracer = _get_tracer()
    otel_span = tracer.start_span(name=name, attributes=attributes or {}) if tracer is not None else None
    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed_ms = (time.perf_counter() - start) * 1000
        logger.debug("Stage %s took %.1fms", name, elapsed_ms)
        if otel_span is not None:
            otel_span.set_attribute("duration_ms", elapsed_ms)
            otel_span.end()


class Trace:
    """Langfuse trace for one API request.

    Args:
        name: Endpoint name ("chat", "ask").
        input: Request payload recorded on the trace.
    """

    def __init__(self, name: str, input: Optional[Dict[str, Any]] = None):
        self.name = name
        self.started = time.perf_counter()
        self._trace: Optional[StatefulTraceClient] = None
        client = _langfuse()
        if client is not None:
            self._trace = self._safely("start", client.trace, name=name, input=input or {})

    @property
    def enabled(self) -> bool:
        return self._trace is not None

    def _safely(self, what: str, fn, **kwargs):
        try:
            return fn(**kwargs)
        except Exception:
            logger.debug("Langfuse %s failed for trace %s", what, self.name, exc_info=True)
            return None

    def event(self, name: str, data: Optional[Dict[str, Any]] = None) -> None:
        """Record a structured event, e.g. retrieval results or a stream error."""
        if self.enabled:
            self._safely("event", self._trace.event, name=name, input=data or {})

    def generation(
        self,
        name: str,
        prompt: str,
        output: str,
        model: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Record the model's answer for the user's prompt."""
        if self.enabled:
            self._safely(
                "generation",
                self._trace.generation,
                name=name,
                input=prompt,
                output=output,
                model=model or settings.OPENAI_MODEL,
                metadata=metadata or {},
            )

    def end(self, output: Optional[Dict[str, Any]] = None) -> None:
        """Finalize the trace with the output payload and request latency."""
        if self.enabled:
            payload = dict(output or {})
            payload["latency_ms"] = int((time.perf_counter() - self.started) * 1000)
            self._safely("update", self._trace.update, output=payload)
