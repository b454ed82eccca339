"""Upstream account reads: the credit snapshot and generation metadata."""

from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from writer_gateway.config import GatewayConfig
from writer_gateway.exceptions import UpstreamHTTPError
from writer_gateway.types import RateLimitSnapshot

logger = logging.getLogger(__name__)


class AccountReader(Protocol):
    """Read-only view of the upstream account used by the gateway."""

    async def fetch_credit_snapshot(self) -> RateLimitSnapshot: ...

    async def get_generation(self, generation_id: str) -> dict[str, Any]: ...

    async def close(self) -> None: ...


class AccountClient:
    """Read-only client for the upstream account endpoints.

    Holds no state besides the HTTP client: every call reflects the latest
    remote value, so concurrent requests may share one instance.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str,
        headers: dict[str, str] | None = None,
        timeout_seconds: float = 10.0,
        max_retries: int = 3,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._headers = {"Authorization": f"Bearer {api_key}", **(headers or {})}
        self._client = http_client or httpx.AsyncClient(timeout=timeout_seconds)
        self._max_retries = max_retries

    @classmethod
    def from_config(
        cls,
        config: GatewayConfig,
        http_client: httpx.AsyncClient | None = None,
    ) -> AccountClient:
        """Factory method used by the gateway."""
        return cls(
            api_key=config.get_api_key(),
            base_url=config.base_url,
            headers=config.attribution_headers,
            max_retries=config.account_max_retries,
            http_client=http_client,
        )

    async def _get(self, path: str, params: dict[str, str] | None = None) -> Any:
        response = await self._client.get(
            f"{self._base_url}{path}",
            params=params,
            headers=self._headers,
        )
        if response.status_code >= 400:
            try:
                payload: Any = response.json()
            except ValueError:
                payload = response.text
            raise UpstreamHTTPError(response.status_code, payload)
        return response.json()

    async def fetch_credit_snapshot(self) -> RateLimitSnapshot:
        """Fetch current usage and limits from ``GET /auth/key``.

        Not retried: the admission gate fails open on any error.
        """
        body = await self._get("/auth/key")
        return RateLimitSnapshot.from_payload(body.get("data") or {})

    async def get_generation(self, generation_id: str) -> dict[str, Any]:
        """Fetch metadata (cost, tokens, latency) for a finished generation.

        Idempotent, so transport errors are retried with backoff.
        """

        @retry(
            retry=retry_if_exception_type(httpx.TransportError),
            stop=stop_after_attempt(self._max_retries + 1),
            wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        async def _do_get() -> dict[str, Any]:
            result: dict[str, Any] = await self._get("/generation", {"id": generation_id})
            return result

        return await _do_get()

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()
