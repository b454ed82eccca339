"""Dual-path executor: call the upstream via the primary path, fall back to the wire path."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from typing import Any

from writer_gateway.caching import DEFAULT_POLICY, CachePolicy, apply_prompt_caching
from writer_gateway.cancellation import CancellationToken
from writer_gateway.exceptions import (
    GenerationError,
    RequestCancelledError,
    StreamInterruptedError,
)
from writer_gateway.normalize import extract_status, normalize
from writer_gateway.observability.tracing import traced_upstream_call
from writer_gateway.providers.base import UpstreamPath
from writer_gateway.types import GenerationRequest, GenerationResult

logger = logging.getLogger(__name__)


class TokenStream:
    """Lazy, finite, non-restartable sequence of upstream chunks.

    ``receive()`` returns the next chunk or ``None`` once the upstream is
    exhausted. A failure after the stream was opened is raised as
    ``StreamInterruptedError`` and is never retried on another path.
    """

    def __init__(
        self,
        chunks: AsyncIterator[dict[str, Any]],
        *,
        path: str,
        model: str,
    ) -> None:
        self._chunks = chunks
        self.path = path
        self.model = model
        self.chunk_count = 0
        self._parts: list[str] = []
        self._exhausted = False

    @property
    def exhausted(self) -> bool:
        return self._exhausted

    @property
    def text(self) -> str:
        """Text accumulated from every chunk received so far."""
        return "".join(self._parts)

    async def receive(self) -> dict[str, Any] | None:
        if self._exhausted:
            return None
        try:
            chunk = await self._chunks.__anext__()
        except StopAsyncIteration:
            self._exhausted = True
            return None
        except (asyncio.CancelledError, RequestCancelledError):
            self._exhausted = True
            raise
        except Exception as exc:
            self._exhausted = True
            raise StreamInterruptedError(self.path, exc) from exc

        self.chunk_count += 1
        self._accumulate(chunk)
        return chunk

    def _accumulate(self, chunk: dict[str, Any]) -> None:
        for choice in chunk.get("choices") or []:
            delta = choice.get("delta") or {}
            content = delta.get("content")
            if content is None:
                content = choice.get("text")
            if isinstance(content, str):
                self._parts.append(content)

    def __aiter__(self) -> TokenStream:
        return self

    async def __anext__(self) -> dict[str, Any]:
        chunk = await self.receive()
        if chunk is None:
            raise StopAsyncIteration
        return chunk

    async def aclose(self) -> None:
        """Stop consuming and release the upstream connection."""
        self._exhausted = True
        aclose = getattr(self._chunks, "aclose", None)
        if aclose is not None:
            await aclose()


class DualPathExecutor:
    """Runs one generation call against the primary path with a single fallback.

    The fallback fires only when the primary fails before producing a response
    and the failure carries no upstream HTTP status (connection errors, client
    library faults). An upstream status is the upstream's answer and is
    normalized as-is. Nothing here retries beyond that one fallback.
    """

    def __init__(
        self,
        primary: UpstreamPath,
        fallback: UpstreamPath,
        cache_policy: CachePolicy = DEFAULT_POLICY,
    ) -> None:
        self._primary = primary
        self._fallback = fallback
        self._cache_policy = cache_policy

    async def execute(
        self,
        request: GenerationRequest,
        token: CancellationToken,
    ) -> GenerationResult | TokenStream:
        """Buffered result for ``stream=False``, a ``TokenStream`` otherwise."""
        if request.stream:
            return await self.open_stream(request, token)
        return await self.complete(request, token)

    def _should_fall_back(self, exc: BaseException, token: CancellationToken) -> bool:
        return not token.cancelled and extract_status(exc) is None

    # ── Buffered ────────────────────────────────────────────────

    async def complete(
        self,
        request: GenerationRequest,
        token: CancellationToken,
    ) -> GenerationResult:
        """Run a buffered call.

        Raises:
            RequestCancelledError: If the token fired first.
            GenerationError: With the normalized failure of the last path tried.
        """
        prepared = apply_prompt_caching(request, self._cache_policy)

        try:
            return await self._complete_on(self._primary, prepared, token)
        except RequestCancelledError:
            raise
        except Exception as exc:
            if not self._should_fall_back(exc, token):
                raise self._failure(self._primary, prepared, exc) from exc
            logger.warning(
                "primary_path_failed_falling_back",
                extra={"model": prepared.model, "error": str(exc), "streaming": False},
            )

        try:
            return await self._complete_on(self._fallback, prepared, token)
        except RequestCancelledError:
            raise
        except Exception as exc:
            raise self._failure(self._fallback, prepared, exc) from exc

    async def _complete_on(
        self,
        path: UpstreamPath,
        request: GenerationRequest,
        token: CancellationToken,
    ) -> GenerationResult:
        started = time.monotonic()
        async with traced_upstream_call(request.model, path.name) as span_data:
            payload = await token.guard(path.complete(request))
            result = GenerationResult(
                payload=payload,
                model=request.model,
                path=path.name,  # type: ignore[arg-type]
                latency_ms=(time.monotonic() - started) * 1000,
            )
            span_data["result"] = result

        logger.info(
            "generation_completed",
            extra={
                "model": request.model,
                "path": path.name,
                "latency_ms": round(result.latency_ms, 1),
            },
        )
        return result

    # ── Streaming ───────────────────────────────────────────────

    async def open_stream(
        self,
        request: GenerationRequest,
        token: CancellationToken,
    ) -> TokenStream:
        """Establish a streaming call; the fallback covers setup failures only.

        Raises:
            RequestCancelledError: If the token fired before the stream opened.
            GenerationError: If neither path could open the stream.
        """
        prepared = apply_prompt_caching(request, self._cache_policy)

        try:
            return await self._open_on(self._primary, prepared, token)
        except RequestCancelledError:
            raise
        except Exception as exc:
            if not self._should_fall_back(exc, token):
                raise self._failure(self._primary, prepared, exc) from exc
            logger.warning(
                "primary_path_failed_falling_back",
                extra={"model": prepared.model, "error": str(exc), "streaming": True},
            )

        try:
            return await self._open_on(self._fallback, prepared, token)
        except RequestCancelledError:
            raise
        except Exception as exc:
            raise self._failure(self._fallback, prepared, exc) from exc

    async def _open_on(
        self,
        path: UpstreamPath,
        request: GenerationRequest,
        token: CancellationToken,
    ) -> TokenStream:
        async with traced_upstream_call(request.model, path.name, streaming=True):
            chunks = await token.guard(path.open_stream(request))

        stream = TokenStream(chunks, path=path.name, model=request.model)
        if token.cancelled:
            await stream.aclose()
            token.raise_if_cancelled()
        return stream

    @staticmethod
    def _failure(
        path: UpstreamPath,
        request: GenerationRequest,
        exc: BaseException,
    ) -> GenerationError:
        error = normalize(exc)
        logger.error(
            "upstream_path_failed",
            extra={
                "model": request.model,
                "path": path.name,
                "error_type": error.type.value,
                "code": error.code,
            },
        )
        return GenerationError(error)
