"""Testing utilities shipped with writer-gateway.

Provides in-memory stand-ins for the gateway's collaborators so consumers can
exercise admission, fallback, streaming and cancellation without a network.

Usage::

    from writer_gateway import Gateway, GatewayConfig, GenerationRequest
    from writer_gateway.testing import FakeUpstreamPath, StaticSnapshotSource

    primary = FakeUpstreamPath(error=ConnectionError("boom"))
    fallback = FakeUpstreamPath("fallback", text="hi there")

    gateway = Gateway(
        GatewayConfig(api_key="not-needed"),
        primary=primary,
        fallback=fallback,
        account=StaticSnapshotSource(),
    )
    request = GenerationRequest(model="x/y", prompt="Hello")
    async with gateway.cancellation_scope(request) as scope:
        result = await gateway.generate(request, scope.token)
    assert result.path == "fallback"
    assert primary.call_count == fallback.call_count == 1
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass, field
from typing import Any

from writer_gateway.exceptions import TransportClosedError
from writer_gateway.providers.base import ChunkStream
from writer_gateway.types import GenerationRequest, RateLimitSnapshot


def chat_completion_payload(text: str, model: str = "x/y") -> dict[str, Any]:
    """A minimal buffered chat completion in upstream shape."""
    return {
        "id": "gen-fake",
        "object": "chat.completion",
        "model": model,
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": text},
                "finish_reason": "stop",
            }
        ],
        "usage": {"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15},
    }


def chat_chunk_payload(text: str, model: str = "x/y") -> dict[str, Any]:
    """One streamed chat completion chunk in upstream shape."""
    return {
        "id": "gen-fake",
        "object": "chat.completion.chunk",
        "model": model,
        "choices": [{"index": 0, "delta": {"content": text}, "finish_reason": None}],
    }


def _split_words(text: str) -> list[str]:
    words = text.split(" ")
    return [w + " " for w in words[:-1]] + words[-1:]


@dataclass
class FakeCall:
    """Record of a single call made to a ``FakeUpstreamPath``."""

    request: GenerationRequest
    streaming: bool


class FakeUpstreamPath:
    """Scripted upstream path. Implements the ``UpstreamPath`` Protocol.

    Args:
        name: ``"primary"`` or ``"fallback"``.
        text: Reply text used to build the default payload and chunks.
        payload: Buffered response returned by ``complete()``.
        chunks: Chunks yielded by the stream returned from ``open_stream()``.
        error: Raised by ``complete()`` and ``open_stream()`` before any output.
        stream_error: Raised by the stream after every chunk was yielded.
        delay: Seconds to wait before answering (or failing).
        chunk_delay: Seconds to wait before each chunk.
    """

    def __init__(
        self,
        name: str = "primary",
        *,
        text: str = "fake response",
        payload: dict[str, Any] | None = None,
        chunks: Sequence[dict[str, Any]] | None = None,
        error: BaseException | None = None,
        stream_error: BaseException | None = None,
        delay: float = 0.0,
        chunk_delay: float = 0.0,
    ) -> None:
        self.name = name
        self._payload = payload if payload is not None else chat_completion_payload(text)
        self._chunks = (
            list(chunks)
            if chunks is not None
            else [chat_chunk_payload(piece) for piece in _split_words(text)]
        )
        self._error = error
        self._stream_error = stream_error
        self._delay = delay
        self._chunk_delay = chunk_delay
        self.calls: list[FakeCall] = []
        self.chunks_sent = 0
        self.stream_closed = False
        self.closed = False

    @property
    def call_count(self) -> int:
        return len(self.calls)

    @property
    def last_request(self) -> GenerationRequest | None:
        return self.calls[-1].request if self.calls else None

    async def complete(self, request: GenerationRequest) -> dict[str, Any]:
        self.calls.append(FakeCall(request=request, streaming=False))
        if self._delay:
            await asyncio.sleep(self._delay)
        if self._error is not None:
            raise self._error
        return dict(self._payload)

    async def open_stream(self, request: GenerationRequest) -> AsyncIterator[dict[str, Any]]:
        self.calls.append(FakeCall(request=request, streaming=True))
        if self._delay:
            await asyncio.sleep(self._delay)
        if self._error is not None:
            raise self._error
        return ChunkStream(self._iter_chunks(), release=self._release_stream)

    async def _iter_chunks(self) -> AsyncIterator[dict[str, Any]]:
        try:
            for chunk in self._chunks:
                if self._chunk_delay:
                    await asyncio.sleep(self._chunk_delay)
                self.chunks_sent += 1
                yield chunk
            if self._stream_error is not None:
                raise self._stream_error
        finally:
            self.stream_closed = True

    async def _release_stream(self) -> None:
        self.stream_closed = True

    async def close(self) -> None:
        self.closed = True


class RecordingTransport:
    """In-memory ``EventTransport`` that records every frame written.

    ``disconnect_after`` makes the transport fail like a departed client once
    that many frames have been written.
    """

    def __init__(self, disconnect_after: int | None = None) -> None:
        self.frames: list[bytes] = []
        self.headers: dict[str, str] | None = None
        self.start_count = 0
        self.close_count = 0
        self._disconnect_after = disconnect_after
        self._open = True

    @property
    def is_open(self) -> bool:
        return self._open

    @property
    def started(self) -> bool:
        return self.headers is not None

    async def start(self, headers: dict[str, str]) -> None:
        self.start_count += 1
        self.headers = dict(headers)

    async def write(self, data: bytes) -> None:
        if not self._open:
            raise TransportClosedError("client disconnected")
        if self._disconnect_after is not None and len(self.frames) >= self._disconnect_after:
            self._open = False
            raise TransportClosedError("client disconnected")
        self.frames.append(data)

    async def close(self) -> None:
        self.close_count += 1
        self._open = False

    @property
    def data_frames(self) -> list[bytes]:
        """Frames carrying a ``data:`` field (keep-alive comments excluded)."""
        return [f for f in self.frames if f.startswith(b"data:")]

    @property
    def payloads(self) -> list[Any]:
        """Decoded JSON of every data frame except the ``[DONE]`` sentinel."""
        decoded = []
        for frame in self.data_frames:
            data = frame[len(b"data:") :].strip()
            if data != b"[DONE]":
                decoded.append(json.loads(data))
        return decoded

    @property
    def terminal_frames(self) -> list[bytes]:
        """The ``[DONE]`` sentinel and error frames written."""
        return [f for f in self.data_frames if f == b"data: [DONE]\n\n" or b'"error"' in f]


@dataclass
class StaticSnapshotSource:
    """Account reader that serves a fixed snapshot. Implements ``AccountReader``.

    Set ``error`` to make every snapshot fetch fail.
    """

    snapshot: RateLimitSnapshot = field(
        default_factory=lambda: RateLimitSnapshot(label="test", usage=0.0, limit=None)
    )
    error: BaseException | None = None
    generations: dict[str, dict[str, Any]] = field(default_factory=dict)
    fetch_count: int = 0
    closed: bool = False

    async def fetch_credit_snapshot(self) -> RateLimitSnapshot:
        self.fetch_count += 1
        if self.error is not None:
            raise self.error
        return self.snapshot

    async def get_generation(self, generation_id: str) -> dict[str, Any]:
        data = self.generations.get(generation_id)
        return {"data": data} if data is not None else {}

    async def close(self) -> None:
        self.closed = True
