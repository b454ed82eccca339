"""Core data types for writer-gateway."""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal, TypedDict

from writer_gateway.exceptions import InvalidRequestError

Role = Literal["user", "assistant", "system", "tool"]
Endpoint = Literal["chat", "completion"]
PathName = Literal["primary", "fallback"]

_INTERVAL_RE = re.compile(r"(\d+)([smh])")
_INTERVAL_UNITS = {"s": 1, "m": 60, "h": 3600}


class CacheControl(TypedDict):
    type: Literal["ephemeral"]


class ContentPart(TypedDict, total=False):
    """A typed piece of message content (text or image reference)."""

    type: Literal["text", "image_url"]
    text: str
    image_url: dict[str, str]
    cache_control: CacheControl


class ChatMessage(TypedDict, total=False):
    """A single message in the conversation, in upstream wire shape."""

    role: Role
    content: str | list[ContentPart]
    name: str
    tool_call_id: str


# ── Request ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class SamplingParams:
    """Sampling parameters. ``None`` means "let the upstream decide"."""

    temperature: float | None = None
    max_tokens: int | None = None
    top_p: float | None = None
    top_k: int | None = None
    frequency_penalty: float | None = None
    presence_penalty: float | None = None
    repetition_penalty: float | None = None
    min_p: float | None = None
    top_a: float | None = None
    seed: int | None = None
    stop: str | list[str] | None = None
    logit_bias: dict[str, float] | None = None
    logprobs: bool | None = None
    top_logprobs: int | None = None


@dataclass(frozen=True)
class RoutingPreferences:
    """Provider routing and pricing preferences understood by the upstream."""

    models: list[str] | None = None
    route: Literal["fallback"] | None = None
    provider: dict[str, Any] | None = None
    transforms: list[str] | None = None
    max_price: dict[str, float] | None = None


@dataclass(frozen=True)
class GenerationRequest:
    """An immutable generation call, shared by both upstream paths.

    Either ``messages`` or ``prompt`` must be present. Chat requests with only
    a prompt are sent as a single user message; completion requests send the
    prompt verbatim.
    """

    model: str
    messages: tuple[ChatMessage, ...] = ()
    prompt: str | None = None
    endpoint: Endpoint = "chat"
    stream: bool = False
    enable_caching: bool = True
    sampling: SamplingParams = field(default_factory=SamplingParams)
    routing: RoutingPreferences = field(default_factory=RoutingPreferences)
    response_format: dict[str, Any] | None = None
    structured_outputs: bool | None = None
    tools: list[dict[str, Any]] | None = None
    tool_choice: str | dict[str, Any] | None = None
    prediction: dict[str, Any] | None = None
    conversation_id: str | None = None

    def __post_init__(self) -> None:
        if not self.model or not self.model.strip():
            raise InvalidRequestError("Model is required")
        if self.endpoint == "completion":
            if not self.prompt:
                raise InvalidRequestError("Prompt is required")
        elif not self.messages and not self.prompt:
            raise InvalidRequestError("Either messages or prompt is required")

        if self.response_format is not None:
            kind = self.response_format.get("type")
            schema = self.response_format.get("json_schema")
            if kind == "json_schema" and not (isinstance(schema, dict) and schema.get("schema")):
                raise InvalidRequestError(
                    "Invalid responseFormat. Must include json_schema with a valid schema."
                )
            if kind == "json_object" and schema:
                raise InvalidRequestError(
                    "For json_object response format, json_schema should not be provided."
                )

        if self.tools is not None:
            for tool in self.tools:
                function = tool.get("function") if isinstance(tool, dict) else None
                if (
                    not isinstance(tool, dict)
                    or tool.get("type") != "function"
                    or not isinstance(function, dict)
                    or not function.get("name")
                ):
                    raise InvalidRequestError(
                        'Invalid tools. Each tool must have type "function" '
                        "and a valid function object."
                    )

    @property
    def chat_messages(self) -> tuple[ChatMessage, ...]:
        """Messages to send, with a bare prompt promoted to a user message."""
        if self.messages:
            return self.messages
        return ({"role": "user", "content": self.prompt or ""},)

    @property
    def provider_family(self) -> str:
        """Provider prefix of the model id (``anthropic`` for ``anthropic/x``)."""
        return self.model.split("/")[0] if self.model else "unknown"


# ── Results ─────────────────────────────────────────────────────


@dataclass
class GenerationResult:
    """Buffered upstream response plus which path produced it."""

    payload: dict[str, Any]
    model: str
    path: PathName = "primary"
    latency_ms: float = 0.0

    @property
    def text(self) -> str:
        """Text of the first choice (chat message content or completion text)."""
        choices = self.payload.get("choices") or []
        if not choices:
            return ""
        first = choices[0] or {}
        message = first.get("message") or {}
        content = message.get("content")
        if content is None:
            content = first.get("text")
        return content if isinstance(content, str) else ""

    @property
    def usage(self) -> dict[str, Any]:
        """Upstream usage block, empty when absent."""
        return self.payload.get("usage") or {}

    def to_payload(self, *, caching_enabled: bool) -> dict[str, Any]:
        """Upstream JSON annotated with gateway metadata."""
        body = dict(self.payload)
        body["caching_enabled"] = caching_enabled
        body["provider"] = self.model.split("/")[0] if self.model else "unknown"
        if self.path == "fallback":
            body["fallback_method"] = "direct_api"
        return body


# ── Account ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class RateLimitSnapshot:
    """Current usage and limits of the upstream account."""

    label: str = ""
    usage: float = 0.0
    limit: float | None = None
    is_free_tier: bool = False
    requests: int = 0
    interval: str = ""

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> RateLimitSnapshot:
        """Build from the ``data`` object of the upstream ``/auth/key`` response."""
        rate_limit = data.get("rate_limit") or {}
        limit = data.get("limit")
        return cls(
            label=str(data.get("label") or ""),
            usage=float(data.get("usage") or 0.0),
            limit=float(limit) if limit is not None else None,
            is_free_tier=bool(data.get("is_free_tier", False)),
            requests=int(rate_limit.get("requests") or 0),
            interval=str(rate_limit.get("interval") or ""),
        )

    @property
    def remaining(self) -> float | None:
        """Remaining credits, or ``None`` for an unlimited account."""
        if self.limit is None:
            return None
        return max(0.0, self.limit - self.usage)

    @property
    def interval_seconds(self) -> int:
        """The rate-limit interval (``"10s"``, ``"1m"``, ``"2h"``) in seconds."""
        match = _INTERVAL_RE.search(self.interval)
        if match is None:
            return 0
        value, unit = match.groups()
        return int(value) * _INTERVAL_UNITS[unit]

    @property
    def effective_requests(self) -> int:
        """Request ceiling, reduced when fewer credits than requests remain."""
        remaining = self.remaining
        if remaining is None:
            return self.requests
        return min(self.requests, max(1, math.ceil(remaining)))

    @property
    def can_use_free_models(self) -> bool:
        remaining = self.remaining
        return self.is_free_tier or remaining is None or remaining > 0

    def to_payload(self) -> dict[str, Any]:
        """Limits summary served to the browser."""
        return {
            "label": self.label,
            "usage": self.usage,
            "limit": self.limit,
            "is_free_tier": self.is_free_tier,
            "rate_limit": {"requests": self.requests, "interval": self.interval},
            "remaining_credits": self.remaining,
            "effective_rate_limit": {
                "requests_per_second": self.effective_requests,
                "interval_seconds": self.interval_seconds,
            },
            "can_use_free_models": self.can_use_free_models,
        }


# ── Errors ──────────────────────────────────────────────────────


class ErrorType(str, Enum):
    """Canonical error taxonomy shared by every response path."""

    BAD_REQUEST = "bad_request"
    AUTHENTICATION = "authentication"
    INSUFFICIENT_CREDITS = "insufficient_credits"
    FORBIDDEN = "forbidden"
    MODERATION = "moderation"
    NOT_FOUND = "not_found"
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    PROVIDER_ERROR = "provider_error"
    NO_PROVIDER_AVAILABLE = "no_provider_available"
    SERVER_ERROR = "server_error"
    UNKNOWN = "unknown"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class NormalizedError:
    """Canonical shape of any upstream or gateway failure.

    Built once where a raw failure is caught and never mutated afterwards.
    """

    type: ErrorType
    code: int
    message: str
    provider: str | None = None
    reasons: tuple[str, ...] | None = None
    flagged_input: str | None = None
    raw: Any = None

    @property
    def http_status(self) -> int:
        """Status to respond with; codes outside 400-599 become 500."""
        return self.code if 400 <= self.code <= 599 else 500

    def to_payload(self) -> dict[str, Any]:
        """The ``error`` object of the JSON error envelope."""
        body: dict[str, Any] = {
            "message": self.message,
            "type": self.type.value,
            "code": self.code,
        }
        if self.provider is not None:
            body["provider"] = self.provider
        if self.reasons is not None:
            body["reasons"] = list(self.reasons)
        if self.flagged_input is not None:
            body["flagged_input"] = self.flagged_input
        if self.raw is not None:
            body["raw_provider_error"] = self.raw
        return body
