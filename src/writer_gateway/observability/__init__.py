"""Observability sub-package: tracing and logging."""

from writer_gateway.observability.logging import (
    bind_request_context,
    clear_request_context,
    configure_logging,
    get_logger,
)
from writer_gateway.observability.tracing import (
    configure_tracing,
    disable_tracing,
    get_tracer,
    traced_upstream_call,
)

__all__ = [
    "bind_request_context",
    "clear_request_context",
    "configure_logging",
    "configure_tracing",
    "disable_tracing",
    "get_logger",
    "get_tracer",
    "traced_upstream_call",
]
