"""writer-gateway: a cancellation-aware gateway in front of an LLM aggregation API.

Usage:
    from writer_gateway import Gateway, GenerationRequest

    gateway = Gateway()  # reads GATEWAY_* env vars
    request = GenerationRequest(model="anthropic/claude-3.7-sonnet", prompt="Hello")
    async with gateway.cancellation_scope(request) as scope:
        result = await gateway.generate(request, scope.token)
"""

from __future__ import annotations

from writer_gateway.account import AccountClient, AccountReader
from writer_gateway.admission import AdmissionGate, Allow, Deny
from writer_gateway.caching import CachePolicy, apply_prompt_caching, segment_messages
from writer_gateway.cancellation import (
    CancellationScope,
    CancellationToken,
    CancelReason,
    TokenState,
)
from writer_gateway.config import GatewayConfig
from writer_gateway.exceptions import (
    AdmissionDeniedError,
    GatewayError,
    GenerationError,
    InvalidRequestError,
    RequestCancelledError,
    StreamInterruptedError,
    TransportClosedError,
    UpstreamHTTPError,
)
from writer_gateway.executor import DualPathExecutor, TokenStream
from writer_gateway.gateway import Gateway
from writer_gateway.normalize import normalize
from writer_gateway.persistence import (
    BackgroundPersister,
    ConversationSink,
    InMemoryConversationStore,
)
from writer_gateway.providers.base import UpstreamPath
from writer_gateway.providers.sdk import SDKPath
from writer_gateway.providers.wire import WirePath
from writer_gateway.relay import EventTransport, RelayOutcome, StreamingRelay
from writer_gateway.types import (
    ChatMessage,
    ContentPart,
    ErrorType,
    GenerationRequest,
    GenerationResult,
    NormalizedError,
    RateLimitSnapshot,
    RoutingPreferences,
    SamplingParams,
)

__all__ = [
    # Core
    "Gateway",
    "GatewayConfig",
    # Types
    "ChatMessage",
    "ContentPart",
    "GenerationRequest",
    "GenerationResult",
    "SamplingParams",
    "RoutingPreferences",
    "RateLimitSnapshot",
    "NormalizedError",
    "ErrorType",
    # Pipeline
    "AdmissionGate",
    "Allow",
    "Deny",
    "DualPathExecutor",
    "TokenStream",
    "StreamingRelay",
    "RelayOutcome",
    "EventTransport",
    "CachePolicy",
    "apply_prompt_caching",
    "segment_messages",
    "normalize",
    # Cancellation
    "CancellationToken",
    "CancellationScope",
    "CancelReason",
    "TokenState",
    # Upstream
    "UpstreamPath",
    "SDKPath",
    "WirePath",
    "AccountClient",
    "AccountReader",
    # Persistence
    "ConversationSink",
    "InMemoryConversationStore",
    "BackgroundPersister",
    # Exceptions
    "GatewayError",
    "InvalidRequestError",
    "UpstreamHTTPError",
    "StreamInterruptedError",
    "RequestCancelledError",
    "TransportClosedError",
    "GenerationError",
    "AdmissionDeniedError",
]
