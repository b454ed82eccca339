"""Upstream path protocol: the contract both call strategies satisfy."""

from __future__ import annotations

import dataclasses
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any, Protocol, runtime_checkable

from writer_gateway.types import GenerationRequest, SamplingParams

CHAT_PATH = "/chat/completions"
COMPLETION_PATH = "/completions"


class ChunkStream:
    """Chunk iterator that owns the upstream connection behind it.

    ``aclose()`` runs *release* even when iteration never started; an
    unstarted async generator skips its own ``finally`` on ``aclose()``.
    """

    def __init__(
        self,
        chunks: AsyncIterator[dict[str, Any]],
        release: Callable[[], Awaitable[None]],
    ) -> None:
        self._chunks = chunks
        self._release = release
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def __aiter__(self) -> ChunkStream:
        return self

    async def __anext__(self) -> dict[str, Any]:
        return await self._chunks.__anext__()

    async def aclose(self) -> None:
        """Stop the iterator and release the connection. Idempotent."""
        if self._closed:
            return
        self._closed = True
        try:
            aclose = getattr(self._chunks, "aclose", None)
            if aclose is not None:
                await aclose()
        finally:
            await self._release()


@runtime_checkable
class UpstreamPath(Protocol):
    """Protocol that both upstream call strategies implement.

    A path serializes a ``GenerationRequest`` into its own call shape and
    returns upstream JSON as plain dicts, so the executor and relay never see
    library-specific objects.
    """

    name: str

    async def complete(self, request: GenerationRequest) -> dict[str, Any]:
        """Issue a buffered call and return the decoded upstream response."""
        ...

    async def open_stream(self, request: GenerationRequest) -> AsyncIterator[dict[str, Any]]:
        """Establish a streaming call and return its chunk iterator.

        Must raise if the connection cannot be set up; once it returns, the
        upstream has accepted the request.
        """
        ...

    async def close(self) -> None:
        """Release HTTP connections."""
        ...


def endpoint_path(request: GenerationRequest) -> str:
    """Upstream URL path for *request*."""
    return COMPLETION_PATH if request.endpoint == "completion" else CHAT_PATH


def optional_fields(request: GenerationRequest) -> dict[str, Any]:
    """Every optional parameter that is set, keyed by its upstream wire name.

    Unset parameters are omitted rather than sent as ``null``; the upstream
    treats omission as "use the default". Empty lists count as unset.
    """
    fields: dict[str, Any] = {}

    for f in dataclasses.fields(SamplingParams):
        value = getattr(request.sampling, f.name)
        if value is not None:
            fields[f.name] = value

    routing = request.routing
    if routing.models:
        fields["models"] = routing.models
    if routing.route:
        fields["route"] = routing.route
    if routing.provider:
        fields["provider"] = routing.provider
    if routing.transforms:
        fields["transforms"] = routing.transforms
    if routing.max_price:
        fields["max_price"] = routing.max_price

    if request.endpoint == "chat":
        if request.response_format:
            fields["response_format"] = request.response_format
        if request.structured_outputs is not None:
            fields["structured_outputs"] = request.structured_outputs
        if request.tools:
            fields["tools"] = request.tools
        if request.tool_choice:
            fields["tool_choice"] = request.tool_choice
        if request.prediction:
            fields["prediction"] = request.prediction

    return fields
