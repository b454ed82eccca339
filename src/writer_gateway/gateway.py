"""Gateway: the composition root that wires every stage of a generation call."""

from __future__ import annotations

import logging
from typing import Any

from writer_gateway.account import AccountClient, AccountReader
from writer_gateway.admission import AdmissionGate, Deny
from writer_gateway.caching import CachePolicy
from writer_gateway.cancellation import CancellationScope, CancellationToken
from writer_gateway.config import GatewayConfig
from writer_gateway.exceptions import GenerationError
from writer_gateway.executor import DualPathExecutor, TokenStream
from writer_gateway.normalize import normalize
from writer_gateway.observability.logging import configure_logging
from writer_gateway.observability.tracing import configure_tracing
from writer_gateway.persistence import BackgroundPersister, ConversationSink
from writer_gateway.providers.base import UpstreamPath
from writer_gateway.providers.sdk import SDKPath
from writer_gateway.providers.wire import WirePath
from writer_gateway.relay import EventTransport, RelayOutcome, StreamingRelay
from writer_gateway.types import (
    ErrorType,
    GenerationRequest,
    GenerationResult,
    NormalizedError,
    RateLimitSnapshot,
)

logger = logging.getLogger(__name__)


def _message_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(part.get("text", "") for part in content if isinstance(part, dict))
    return ""


class Gateway:
    """Admission, dual-path execution, relay and persistence behind one object.

    Usage:
        # Reads GATEWAY_* env vars automatically
        gateway = Gateway()

        # Or with injected collaborators (for testing)
        gateway = Gateway(primary=fake, fallback=fake, account=StaticSnapshotSource(...))

        request = GenerationRequest(model="x/y", prompt="Hello")
        async with gateway.cancellation_scope(request) as scope:
            result = await gateway.generate(request, scope.token)
        print(result.text)
    """

    def __init__(
        self,
        config: GatewayConfig | None = None,
        *,
        primary: UpstreamPath | None = None,
        fallback: UpstreamPath | None = None,
        account: AccountReader | None = None,
        sink: ConversationSink | None = None,
    ) -> None:
        self._config = config or GatewayConfig()
        self._primary = primary or SDKPath.from_config(self._config)
        self._fallback = fallback or WirePath.from_config(self._config)
        self._account = account or AccountClient.from_config(self._config)
        self._persister = BackgroundPersister(sink) if sink is not None else None
        self._closed = False

        self._admission = AdmissionGate(
            self._account.fetch_credit_snapshot,
            free_suffix=self._config.free_model_suffix,
        )
        self._executor = DualPathExecutor(
            self._primary,
            self._fallback,
            cache_policy=CachePolicy(
                min_chars=self._config.cache_min_chars,
                prefix_chars=self._config.cache_prefix_chars,
                model_prefixes=tuple(self._config.cache_model_prefixes),
            ),
        )
        self._relay = StreamingRelay(keepalive_interval=self._config.keepalive_interval_seconds)

        # Auto-configure observability
        configure_logging(
            level=self._config.log_level,
            fmt=self._config.log_format,
        )
        if self._config.trace_enabled:
            configure_tracing(
                exporter=self._config.trace_exporter,
                endpoint=self._config.trace_endpoint,
                service_name=self._config.trace_service_name,
            )

    @property
    def config(self) -> GatewayConfig:
        return self._config

    def cancellation_scope(
        self,
        request: GenerationRequest,
        token: CancellationToken | None = None,
    ) -> CancellationScope:
        """Scope with the streaming or buffered timeout ceiling for *request*."""
        timeout = (
            self._config.stream_timeout_seconds
            if request.stream
            else self._config.request_timeout_seconds
        )
        return CancellationScope(timeout_seconds=timeout, token=token)

    async def generate(
        self,
        request: GenerationRequest,
        token: CancellationToken,
    ) -> GenerationResult:
        """Run a buffered generation.

        Raises:
            AdmissionDeniedError: If the account is out of credits (no upstream call made).
            GenerationError: If the upstream call failed on every path tried.
            RequestCancelledError: If *token* fired; callers respond silently.
        """
        decision = await self._admission.admit(request, token)
        if isinstance(decision, Deny):
            raise decision.to_error()

        result = await self._executor.complete(request, token)
        self._persist_exchange(request, result.text)
        return result

    async def open_stream(
        self,
        request: GenerationRequest,
        token: CancellationToken,
    ) -> TokenStream:
        """Open an upstream stream without writing anything to the client."""
        decision = await self._admission.admit(request, token)
        if isinstance(decision, Deny):
            raise decision.to_error()
        return await self._executor.open_stream(request, token)

    async def stream(
        self,
        request: GenerationRequest,
        transport: EventTransport,
        token: CancellationToken,
    ) -> RelayOutcome:
        """Open a stream and relay it to *transport*.

        Setup failures raise before any byte reaches the transport, so callers
        can still answer with a plain JSON error.
        """
        stream = await self.open_stream(request, token)
        outcome = await self._relay.relay(stream, transport, token)
        if outcome is RelayOutcome.COMPLETED:
            self._persist_exchange(request, stream.text)
        return outcome

    async def limits(self) -> RateLimitSnapshot:
        """Current account usage and limits."""
        try:
            return await self._account.fetch_credit_snapshot()
        except Exception as exc:
            raise GenerationError(normalize(exc)) from exc

    async def generation_info(self, generation_id: str) -> dict[str, Any]:
        """Metadata of a finished generation (``{"data": {...}}``)."""
        try:
            info = await self._account.get_generation(generation_id)
        except Exception as exc:
            raise GenerationError(normalize(exc)) from exc
        if not info.get("data"):
            raise GenerationError(
                NormalizedError(
                    type=ErrorType.NOT_FOUND,
                    code=404,
                    message="Generation not found",
                )
            )
        return info

    def _persist_exchange(self, request: GenerationRequest, reply: str) -> None:
        if self._persister is None or not request.conversation_id:
            return
        if request.endpoint == "completion":
            prompt = request.prompt or ""
        else:
            prompt = next(
                (
                    _message_text(m.get("content"))
                    for m in reversed(request.chat_messages)
                    if m.get("role") == "user"
                ),
                "",
            )
        if prompt:
            self._persister.submit(request.conversation_id, "user", prompt)
        self._persister.submit(request.conversation_id, "assistant", reply)

    async def close(self) -> None:
        """Flush pending persistence and release every HTTP client."""
        if self._closed:
            return
        self._closed = True
        if self._persister is not None:
            logger.debug("gateway_closing", extra={"pending_writes": self._persister.pending})
            await self._persister.drain()
        await self._primary.close()
        await self._fallback.close()
        await self._account.close()

    async def __aenter__(self) -> Gateway:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()
