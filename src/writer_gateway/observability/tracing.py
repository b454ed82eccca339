"""OpenTelemetry tracing for upstream calls."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from writer_gateway.types import GenerationResult

logger = logging.getLogger(__name__)

# ── Optional OTEL imports ───────────────────────────────────────
try:
    from opentelemetry import trace
    from opentelemetry.sdk.resources import Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import (
        ConsoleSpanExporter,
        SimpleSpanProcessor,
    )

    HAS_OTEL = True
except ImportError:
    HAS_OTEL = False

try:
    from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import (
        OTLPSpanExporter,
    )

    HAS_OTLP = True
except ImportError:
    HAS_OTLP = False


# Module-level tracer (None when tracing is disabled)
_tracer: Any = None


def configure_tracing(
    exporter: str = "none",
    endpoint: str = "http://localhost:4317",
    service_name: str = "writer-gateway",
) -> None:
    """Configure OpenTelemetry tracing.

    Args:
        exporter: One of "none", "console", "otlp".
        endpoint: OTLP collector endpoint (only used when exporter="otlp").
        service_name: Service name for spans.
    """
    global _tracer

    if exporter == "none" or not HAS_OTEL:
        _tracer = None
        return

    resource = Resource.create({"service.name": service_name})
    provider = TracerProvider(resource=resource)

    if exporter == "console":
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
    elif exporter == "otlp":
        if not HAS_OTLP:
            logger.warning("OTLP exporter requested but opentelemetry-exporter-otlp not installed")
            _tracer = None
            return
        provider.add_span_processor(
            SimpleSpanProcessor(OTLPSpanExporter(endpoint=endpoint, insecure=True))
        )

    trace.set_tracer_provider(provider)
    _tracer = trace.get_tracer("writer_gateway")
    logger.info("OTEL tracing configured: exporter=%s, service=%s", exporter, service_name)


def get_tracer() -> Any:
    """Return the configured tracer, or None if tracing is disabled."""
    return _tracer


def disable_tracing() -> None:
    """Disable tracing (useful for tests)."""
    global _tracer
    _tracer = None


@asynccontextmanager
async def traced_upstream_call(
    model: str,
    path: str,
    streaming: bool = False,
    operation: str = "gateway.upstream",
) -> AsyncGenerator[dict[str, Any], None]:
    """Context manager that creates an OTEL span for one upstream path attempt.

    Usage:
        async with traced_upstream_call("x/y", "primary") as span_data:
            result = await path.complete(request)
            span_data["result"] = result

    The span records ``gateway.model``, ``gateway.path`` and
    ``gateway.streaming``, token usage when a ``GenerationResult`` is attached,
    and error status if an exception escapes.
    """
    span_data: dict[str, Any] = {}

    if _tracer is None:
        yield span_data
        return

    with _tracer.start_as_current_span(operation) as span:
        span.set_attribute("gateway.model", model)
        span.set_attribute("gateway.path", path)
        span.set_attribute("gateway.streaming", streaming)

        try:
            yield span_data
        except Exception as exc:
            span.set_status(trace.StatusCode.ERROR, str(exc))
            span.record_exception(exc)
            raise
        else:
            result = span_data.get("result")
            if isinstance(result, GenerationResult):
                usage = result.usage
                span.set_attribute("gateway.prompt_tokens", int(usage.get("prompt_tokens") or 0))
                span.set_attribute(
                    "gateway.completion_tokens", int(usage.get("completion_tokens") or 0)
                )
                span.set_attribute("gateway.latency_ms", result.latency_ms)
