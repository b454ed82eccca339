"""Gateway configuration via environment variables."""

from __future__ import annotations

import os

from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings


class GatewayConfig(BaseSettings):
    """Writer gateway configuration.

    All fields are read from environment variables with the ``GATEWAY_`` prefix.
    Example: ``GATEWAY_DEFAULT_MODEL=openai/gpt-4o`` sets ``default_model``.
    """

    model_config = {"env_prefix": "GATEWAY_", "env_file": ".env", "extra": "ignore"}

    # ── Upstream ────────────────────────────────────────────────
    api_key: SecretStr | None = Field(
        default=None,
        description="Upstream API key. Falls back to OPENROUTER_API_KEY if unset.",
    )
    base_url: str = Field(
        default="https://openrouter.ai/api/v1",
        description="Base URL of the upstream aggregation API.",
    )
    referer: str = Field(
        default="https://openwriter.app",
        description="Sent as HTTP-Referer for upstream attribution.",
    )
    app_title: str = Field(
        default="OpenWriter",
        description="Sent as X-Title for upstream attribution.",
    )
    upstream_timeout_seconds: float = Field(default=300.0, gt=0)
    account_max_retries: int = Field(default=3, ge=0)

    # ── Request defaults ────────────────────────────────────────
    default_model: str = Field(default="anthropic/claude-3.7-sonnet")
    default_temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    default_max_tokens: int = Field(default=1000, ge=1)

    # ── Prompt caching ──────────────────────────────────────────
    enable_caching: bool = Field(default=True)
    cache_min_chars: int = Field(
        default=1000,
        ge=1,
        description="Text content longer than this is split into cacheable parts.",
    )
    cache_prefix_chars: int = Field(default=100, ge=1)
    cache_model_prefixes: list[str] = Field(
        default_factory=lambda: ["anthropic/"],
        description="Model id prefixes whose providers honor cache_control hints.",
    )

    # ── Admission & cancellation ────────────────────────────────
    free_model_suffix: str = Field(
        default=":free",
        description="Model ids ending with this suffix bypass the credit check.",
    )
    stream_timeout_seconds: float = Field(default=120.0, gt=0)
    request_timeout_seconds: float = Field(default=300.0, gt=0)
    keepalive_interval_seconds: float = Field(default=15.0, gt=0)

    # ── Server ──────────────────────────────────────────────────
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=8000, ge=1, le=65535)

    # ── Observability ───────────────────────────────────────────
    trace_enabled: bool = Field(default=False)
    trace_exporter: str = Field(
        default="none",
        description="Trace exporter: 'none', 'console', 'otlp'.",
    )
    trace_endpoint: str = Field(default="http://localhost:4317")
    trace_service_name: str = Field(default="writer-gateway")

    log_level: str = Field(default="INFO")
    log_format: str = Field(
        default="json",
        description="Log format: 'json' or 'console'.",
    )

    @model_validator(mode="after")
    def _resolve_api_key(self) -> GatewayConfig:
        """Fall back to OPENROUTER_API_KEY if GATEWAY_API_KEY is unset."""
        if self.api_key is not None:
            return self

        value = os.environ.get("OPENROUTER_API_KEY")
        if value:
            self.api_key = SecretStr(value)

        return self

    def get_api_key(self) -> str:
        """Return the resolved API key as a plain string.

        Raises:
            ValueError: If no API key is configured.
        """
        if self.api_key is None:
            msg = (
                "No upstream API key configured. "
                "Set GATEWAY_API_KEY or OPENROUTER_API_KEY."
            )
            raise ValueError(msg)
        return self.api_key.get_secret_value()

    @property
    def attribution_headers(self) -> dict[str, str]:
        """The fixed referrer/title pair the upstream uses for attribution."""
        return {"HTTP-Referer": self.referer, "X-Title": self.app_title}
