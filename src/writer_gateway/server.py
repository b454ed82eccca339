"""HTTP surface: FastAPI routes in front of a ``Gateway``."""

from __future__ import annotations

import logging
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any, Literal

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from starlette.responses import Response
from starlette.types import Message, Receive, Scope, Send

from writer_gateway.cancellation import CancelReason
from writer_gateway.config import GatewayConfig
from writer_gateway.exceptions import (
    GenerationError,
    InvalidRequestError,
    RequestCancelledError,
    TransportClosedError,
)
from writer_gateway.gateway import Gateway
from writer_gateway.normalize import normalize
from writer_gateway.observability.logging import bind_request_context, clear_request_context
from writer_gateway.types import (
    Endpoint,
    ErrorType,
    GenerationRequest,
    NormalizedError,
    RoutingPreferences,
    SamplingParams,
)

logger = logging.getLogger(__name__)

TIMEOUT_MESSAGE = "Request timed out"


# ── Request bodies ──────────────────────────────────────────────


class MessageBody(BaseModel):
    role: Literal["user", "assistant", "system", "tool"]
    content: str | list[dict[str, Any]]
    name: str | None = None
    tool_call_id: str | None = None


class GenerationBody(BaseModel):
    """JSON body accepted by every generation endpoint.

    Field names follow the upstream wire format; the browser client's
    camelCase spellings are accepted as aliases.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    model: str | None = None
    messages: list[MessageBody] | None = None
    prompt: str | None = None
    stream: bool = False

    temperature: float | None = None
    max_tokens: int | None = Field(
        default=None, validation_alias=AliasChoices("max_tokens", "maxTokens")
    )
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

    models: list[str] | None = None
    route: Literal["fallback"] | None = None
    provider: dict[str, Any] | None = None
    transforms: list[str] | None = None
    max_price: dict[str, float] | None = None

    response_format: dict[str, Any] | None = Field(
        default=None, validation_alias=AliasChoices("response_format", "responseFormat")
    )
    structured_outputs: bool | None = Field(
        default=None, validation_alias=AliasChoices("structured_outputs", "structuredOutputs")
    )
    tools: list[dict[str, Any]] | None = None
    tool_choice: str | dict[str, Any] | None = Field(
        default=None, validation_alias=AliasChoices("tool_choice", "toolChoice")
    )
    prediction: dict[str, Any] | None = None

    enable_caching: bool | None = Field(
        default=None, validation_alias=AliasChoices("enable_caching", "enableCaching")
    )
    conversation_id: str | None = Field(
        default=None, validation_alias=AliasChoices("conversation_id", "conversationId")
    )

    def to_request(self, config: GatewayConfig, endpoint: Endpoint) -> GenerationRequest:
        """Build the immutable request, applying chat defaults from *config*.

        Raises:
            InvalidRequestError: If the body violates the request invariants.
        """
        temperature = self.temperature
        max_tokens = self.max_tokens
        model = self.model or ""
        if endpoint == "chat":
            model = model or config.default_model
            if temperature is None:
                temperature = config.default_temperature
            if max_tokens is None:
                max_tokens = config.default_max_tokens

        messages = tuple(
            m.model_dump(exclude_none=True)  # type: ignore[misc]
            for m in self.messages or []
        )
        return GenerationRequest(
            model=model,
            messages=messages,
            prompt=self.prompt,
            endpoint=endpoint,
            stream=self.stream,
            enable_caching=(
                self.enable_caching if self.enable_caching is not None else config.enable_caching
            ),
            sampling=SamplingParams(
                temperature=temperature,
                max_tokens=max_tokens,
                top_p=self.top_p,
                top_k=self.top_k,
                frequency_penalty=self.frequency_penalty,
                presence_penalty=self.presence_penalty,
                repetition_penalty=self.repetition_penalty,
                min_p=self.min_p,
                top_a=self.top_a,
                seed=self.seed,
                stop=self.stop,
                logit_bias=self.logit_bias,
                logprobs=self.logprobs,
                top_logprobs=self.top_logprobs,
            ),
            routing=RoutingPreferences(
                models=self.models,
                route=self.route,
                provider=self.provider,
                transforms=self.transforms,
                max_price=self.max_price,
            ),
            response_format=self.response_format,
            structured_outputs=self.structured_outputs,
            tools=self.tools,
            tool_choice=self.tool_choice,
            prediction=self.prediction,
            conversation_id=self.conversation_id,
        )


# ── Responses ───────────────────────────────────────────────────


def error_response(error: NormalizedError, **extra: Any) -> JSONResponse:
    """Render *error* in the ``{"error": {...}}`` envelope."""
    body = error.to_payload()
    body.update(extra)
    return JSONResponse({"error": body}, status_code=error.http_status)


def cancelled_response(exc: RequestCancelledError) -> Response:
    """408 for a timeout; nothing at all for a disconnect or abort.

    A timeout is the one cancellation that still answers: the client is
    connected and waiting, so it gets a ``timeout`` error instead of a
    silently dropped request.
    """
    if exc.reason is CancelReason.TIMEOUT:
        return error_response(
            NormalizedError(type=ErrorType.TIMEOUT, code=408, message=TIMEOUT_MESSAGE)
        )
    return SilentResponse()


class SilentResponse(Response):
    """Ends a request without writing a status line or body."""

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        logger.debug("response_suppressed")


class ASGIEventTransport:
    """``EventTransport`` over a raw ASGI ``send`` callable."""

    def __init__(self, send: Send, status_code: int = 200) -> None:
        self._send = send
        self._status_code = status_code
        self._started = False
        self._closed = False

    @property
    def is_open(self) -> bool:
        return not self._closed

    @property
    def started(self) -> bool:
        return self._started

    async def _emit(self, message: Message) -> None:
        try:
            await self._send(message)
        except OSError as exc:
            self._closed = True
            raise TransportClosedError(str(exc)) from exc

    async def start(self, headers: dict[str, str]) -> None:
        if self._closed:
            raise TransportClosedError("transport closed before start")
        await self._emit(
            {
                "type": "http.response.start",
                "status": self._status_code,
                "headers": [
                    (name.lower().encode("latin-1"), value.encode("latin-1"))
                    for name, value in headers.items()
                ],
            }
        )
        self._started = True

    async def write(self, data: bytes) -> None:
        if self._closed:
            raise TransportClosedError("transport closed")
        await self._emit({"type": "http.response.body", "body": data, "more_body": True})

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if not self._started:
            return
        try:
            await self._send({"type": "http.response.body", "body": b"", "more_body": False})
        except OSError as exc:
            logger.debug("transport_close_failed", extra={"error": str(exc)})


class EventStreamResponse(Response):
    """Runs a streaming generation inside the ASGI call.

    The upstream stream is opened before any byte is written, so setup
    failures are still answered with a JSON error and its status.
    """

    media_type = "text/event-stream"

    def __init__(self, gateway: Gateway, request: GenerationRequest) -> None:
        super().__init__(status_code=200)
        self._gateway = gateway
        self._request = request

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        transport = ASGIEventTransport(send)
        response: Response
        async with self._gateway.cancellation_scope(self._request) as cancel_scope:
            cancel_scope.watch_disconnect(receive)
            try:
                await self._gateway.stream(self._request, transport, cancel_scope.token)
                return
            except GenerationError as exc:
                response = error_response(exc.error)
            except RequestCancelledError as exc:
                response = cancelled_response(exc)
        await response(scope, receive, send)


# ── Routes ──────────────────────────────────────────────────────


def get_gateway(request: Request) -> Gateway:
    gateway: Gateway = request.app.state.gateway
    return gateway


async def _generate(
    gateway: Gateway,
    request: Request,
    body: GenerationBody,
    endpoint: Endpoint,
) -> Response:
    clear_request_context()
    generation_request = body.to_request(gateway.config, endpoint)
    bind_request_context(
        request_id=uuid.uuid4().hex,
        model=generation_request.model,
        endpoint=endpoint,
        stream=generation_request.stream,
    )

    if generation_request.stream:
        return EventStreamResponse(gateway, generation_request)

    async with gateway.cancellation_scope(generation_request) as cancel_scope:
        cancel_scope.watch_disconnect(request.receive)
        result = await gateway.generate(generation_request, cancel_scope.token)

    if endpoint == "completion":
        return JSONResponse(result.payload)
    return JSONResponse(result.to_payload(caching_enabled=generation_request.enable_caching))


router = APIRouter(prefix="/api/ai")


@router.post("/chat/completions")
async def chat_completions(
    body: GenerationBody,
    request: Request,
    gateway: Gateway = Depends(get_gateway),
) -> Response:
    return await _generate(gateway, request, body, "chat")


@router.post("/generate")
async def generate(
    body: GenerationBody,
    request: Request,
    gateway: Gateway = Depends(get_gateway),
) -> Response:
    return await _generate(gateway, request, body, "chat")


@router.post("/completions")
async def completions(
    body: GenerationBody,
    request: Request,
    gateway: Gateway = Depends(get_gateway),
) -> Response:
    return await _generate(gateway, request, body, "completion")


@router.get("/limits")
async def limits(gateway: Gateway = Depends(get_gateway)) -> dict[str, Any]:
    snapshot = await gateway.limits()
    return snapshot.to_payload()


@router.get("/generation/{generation_id}")
async def generation(generation_id: str, gateway: Gateway = Depends(get_gateway)) -> dict[str, Any]:
    return await gateway.generation_info(generation_id)


# ── Exception handlers ──────────────────────────────────────────


async def _handle_generation_error(request: Request, exc: Exception) -> Response:
    assert isinstance(exc, GenerationError)
    return JSONResponse({"error": exc.to_payload()}, status_code=exc.error.http_status)


async def _handle_invalid_request(request: Request, exc: Exception) -> Response:
    return error_response(normalize(exc))


async def _handle_validation_error(request: Request, exc: Exception) -> Response:
    assert isinstance(exc, RequestValidationError)
    details = "; ".join(
        f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg', '')}"
        for err in exc.errors()
    )
    return error_response(
        NormalizedError(
            type=ErrorType.BAD_REQUEST,
            code=400,
            message=f"Invalid request body: {details}" if details else "Invalid request body",
        )
    )


async def _handle_cancelled(request: Request, exc: Exception) -> Response:
    assert isinstance(exc, RequestCancelledError)
    return cancelled_response(exc)


# ── App factory ─────────────────────────────────────────────────


def create_app(gateway: Gateway | None = None) -> FastAPI:
    """Build the FastAPI app.

    When *gateway* is omitted, one is built from the environment at startup
    and closed at shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        owned = getattr(app.state, "gateway", None) is None
        if owned:
            app.state.gateway = Gateway()
        try:
            yield
        finally:
            if owned:
                await app.state.gateway.close()

    app = FastAPI(title="writer-gateway", lifespan=lifespan)
    if gateway is not None:
        app.state.gateway = gateway

    app.include_router(router)
    app.add_exception_handler(GenerationError, _handle_generation_error)
    app.add_exception_handler(InvalidRequestError, _handle_invalid_request)
    app.add_exception_handler(RequestValidationError, _handle_validation_error)
    app.add_exception_handler(RequestCancelledError, _handle_cancelled)

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    return app


def main() -> None:
    """Serve the gateway with uvicorn."""
    config = GatewayConfig()
    uvicorn.run(create_app(), host=config.host, port=config.port, log_config=None)
