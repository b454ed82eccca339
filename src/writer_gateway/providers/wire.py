"""Fallback path: raw HTTP calls against the upstream wire API."""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from typing import Any

import httpx

from writer_gateway.config import GatewayConfig
from writer_gateway.exceptions import UpstreamHTTPError
from writer_gateway.providers.base import ChunkStream, endpoint_path, optional_fields
from writer_gateway.types import GenerationRequest

logger = logging.getLogger(__name__)

DONE_MARKER = "[DONE]"


def build_wire_body(request: GenerationRequest, *, stream: bool) -> dict[str, Any]:
    """Serialize *request* into the upstream JSON body, omitting unset fields."""
    body: dict[str, Any] = {"model": request.model}
    if request.endpoint == "completion":
        body["prompt"] = request.prompt
    else:
        body["messages"] = list(request.chat_messages)
    body.update(optional_fields(request))
    body["stream"] = stream
    return body


async def iter_sse_data(lines: AsyncIterator[str]) -> AsyncIterator[str]:
    """Yield the ``data`` payload of each Server-Sent Event in *lines*.

    Comment lines (``: keep-alive``) and non-data fields are skipped; multi-line
    data fields are joined with newlines.
    """
    data: list[str] = []
    async for line in lines:
        if not line:
            if data:
                yield "\n".join(data)
                data = []
            continue
        if line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "data":
            data.append(value)
    if data:
        yield "\n".join(data)


def _decode_error_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


class WirePath:
    """Upstream path that talks to the wire API with ``httpx`` directly."""

    name = "fallback"

    def __init__(
        self,
        api_key: str,
        base_url: str,
        headers: dict[str, str] | None = None,
        timeout_seconds: float = 300.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
            **(headers or {}),
        }
        self._client = http_client or httpx.AsyncClient(timeout=timeout_seconds)

    @classmethod
    def from_config(
        cls,
        config: GatewayConfig,
        http_client: httpx.AsyncClient | None = None,
    ) -> WirePath:
        """Factory method used by the gateway."""
        return cls(
            api_key=config.get_api_key(),
            base_url=config.base_url,
            headers=config.attribution_headers,
            timeout_seconds=config.upstream_timeout_seconds,
            http_client=http_client,
        )

    def _url(self, request: GenerationRequest) -> str:
        return f"{self._base_url}{endpoint_path(request)}"

    async def complete(self, request: GenerationRequest) -> dict[str, Any]:
        """POST a buffered request and return the decoded response."""
        response = await self._client.post(
            self._url(request),
            json=build_wire_body(request, stream=False),
            headers=self._headers,
        )
        if response.status_code >= 400:
            raise UpstreamHTTPError(response.status_code, _decode_error_body(response))

        payload: dict[str, Any] = response.json()
        usage = payload.get("usage") or {}
        if "cache_discount" in usage:
            logger.info("cache_usage", extra={"cache_discount": usage["cache_discount"]})
        return payload

    async def open_stream(self, request: GenerationRequest) -> AsyncIterator[dict[str, Any]]:
        """POST a streaming request; returns once the upstream accepted it."""
        upstream_request = self._client.build_request(
            "POST",
            self._url(request),
            json=build_wire_body(request, stream=True),
            headers=self._headers,
        )
        response = await self._client.send(upstream_request, stream=True)
        if response.status_code >= 400:
            try:
                await response.aread()
                payload = _decode_error_body(response)
            finally:
                await response.aclose()
            raise UpstreamHTTPError(response.status_code, payload)
        return ChunkStream(self._iter_events(response), release=response.aclose)

    @staticmethod
    async def _iter_events(response: httpx.Response) -> AsyncIterator[dict[str, Any]]:
        try:
            async for data in iter_sse_data(response.aiter_lines()):
                if data.strip() == DONE_MARKER:
                    return
                try:
                    payload = json.loads(data)
                except json.JSONDecodeError:
                    logger.debug("sse_decode_skipped", extra={"data": data[:200]})
                    continue
                if isinstance(payload, dict) and isinstance(payload.get("error"), dict):
                    code = payload["error"].get("code")
                    status = code if isinstance(code, int) and not isinstance(code, bool) else 500
                    raise UpstreamHTTPError(status, payload)
                yield payload
        finally:
            await response.aclose()

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()
