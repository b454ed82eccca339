"""Primary path: the upstream API through the OpenAI-compatible client library."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from typing import Any

import httpx
from openai import AsyncOpenAI

from writer_gateway.config import GatewayConfig
from writer_gateway.providers.base import ChunkStream, optional_fields
from writer_gateway.types import GenerationRequest

logger = logging.getLogger(__name__)

# Parameters the client library accepts as keyword arguments. Everything else
# the upstream understands (top_k, routing, max_price, ...) goes in extra_body.
_CHAT_KWARGS = frozenset(
    {
        "temperature",
        "max_tokens",
        "top_p",
        "frequency_penalty",
        "presence_penalty",
        "seed",
        "stop",
        "logit_bias",
        "logprobs",
        "top_logprobs",
        "response_format",
        "tools",
        "tool_choice",
        "prediction",
    }
)
_COMPLETION_KWARGS = frozenset(
    {
        "temperature",
        "max_tokens",
        "top_p",
        "frequency_penalty",
        "presence_penalty",
        "seed",
        "stop",
        "logit_bias",
    }
)


def build_sdk_kwargs(request: GenerationRequest) -> dict[str, Any]:
    """Serialize *request* into ``create()`` keyword arguments."""
    kwargs: dict[str, Any] = {"model": request.model}
    if request.endpoint == "completion":
        kwargs["prompt"] = request.prompt
        native = _COMPLETION_KWARGS
    else:
        kwargs["messages"] = list(request.chat_messages)
        native = _CHAT_KWARGS

    extra_body: dict[str, Any] = {}
    for name, value in optional_fields(request).items():
        if name in native:
            kwargs[name] = value
        else:
            extra_body[name] = value
    if extra_body:
        kwargs["extra_body"] = extra_body
    return kwargs


class SDKPath:
    """Upstream path backed by ``openai.AsyncOpenAI``.

    Library retries are disabled: the executor's single fallback is the only
    retry a generation call ever gets.
    """

    name = "primary"

    def __init__(
        self,
        api_key: str,
        base_url: str,
        headers: dict[str, str] | None = None,
        timeout_seconds: float = 300.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._client = AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
            default_headers=headers,
            timeout=timeout_seconds,
            max_retries=0,
            http_client=http_client,
        )

    @classmethod
    def from_config(
        cls,
        config: GatewayConfig,
        http_client: httpx.AsyncClient | None = None,
    ) -> SDKPath:
        """Factory method used by the gateway."""
        return cls(
            api_key=config.get_api_key(),
            base_url=config.base_url,
            headers=config.attribution_headers,
            timeout_seconds=config.upstream_timeout_seconds,
            http_client=http_client,
        )

    def _create(self, request: GenerationRequest) -> Any:
        if request.endpoint == "completion":
            return self._client.completions.create
        return self._client.chat.completions.create

    async def complete(self, request: GenerationRequest) -> dict[str, Any]:
        """Call the upstream and return the response as a plain dict."""
        result = await self._create(request)(**build_sdk_kwargs(request))
        payload: dict[str, Any] = result.model_dump(mode="json", exclude_unset=True)

        usage = payload.get("usage") or {}
        if "cache_discount" in usage:
            logger.info(
                "cache_usage",
                extra={
                    "prompt_tokens": usage.get("prompt_tokens"),
                    "completion_tokens": usage.get("completion_tokens"),
                    "cache_discount": usage.get("cache_discount"),
                },
            )
        return payload

    async def open_stream(self, request: GenerationRequest) -> AsyncIterator[dict[str, Any]]:
        """Open a streaming call; connection errors surface here, not mid-stream."""
        stream = await self._create(request)(**build_sdk_kwargs(request), stream=True)
        return ChunkStream(self._iter_chunks(stream), release=stream.close)

    @staticmethod
    async def _iter_chunks(stream: Any) -> AsyncIterator[dict[str, Any]]:
        try:
            async for chunk in stream:
                yield chunk.model_dump(mode="json", exclude_unset=True)
        finally:
            await stream.close()

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.close()
