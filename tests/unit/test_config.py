"""Tests for GatewayConfig."""

from __future__ import annotations

import pytest

from writer_gateway.config import GatewayConfig


@pytest.mark.unit
class TestGatewayConfig:
    def test_defaults(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Default config loads without errors."""
        monkeypatch.delenv("GATEWAY_API_KEY", raising=False)
        monkeypatch.delenv("OPENROUTER_API_KEY", raising=False)
        config = GatewayConfig()
        assert config.base_url == "https://openrouter.ai/api/v1"
        assert config.default_model == "anthropic/claude-3.7-sonnet"
        assert config.default_temperature == 0.7
        assert config.default_max_tokens == 1000
        assert config.free_model_suffix == ":free"
        assert config.stream_timeout_seconds == 120.0
        assert config.request_timeout_seconds == 300.0
        assert config.keepalive_interval_seconds == 15.0

    def test_env_override(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """GATEWAY_ prefixed env vars override defaults."""
        monkeypatch.setenv("GATEWAY_DEFAULT_MODEL", "openai/gpt-4o")
        monkeypatch.setenv("GATEWAY_STREAM_TIMEOUT_SECONDS", "30")
        monkeypatch.setenv("GATEWAY_CACHE_MODEL_PREFIXES", '["anthropic/", "google/"]')
        config = GatewayConfig()
        assert config.default_model == "openai/gpt-4o"
        assert config.stream_timeout_seconds == 30.0
        assert config.cache_model_prefixes == ["anthropic/", "google/"]

    def test_api_key_from_prefixed_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("GATEWAY_API_KEY", "sk-gateway")
        monkeypatch.setenv("OPENROUTER_API_KEY", "sk-or-ignored")
        config = GatewayConfig()
        assert config.get_api_key() == "sk-gateway"

    def test_api_key_fallback_openrouter(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Falls back to OPENROUTER_API_KEY when GATEWAY_API_KEY is not set."""
        monkeypatch.delenv("GATEWAY_API_KEY", raising=False)
        monkeypatch.setenv("OPENROUTER_API_KEY", "sk-or-test")
        config = GatewayConfig()
        assert config.get_api_key() == "sk-or-test"

    def test_get_api_key_raises_when_missing(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """ValueError when no API key is configured."""
        monkeypatch.delenv("GATEWAY_API_KEY", raising=False)
        monkeypatch.delenv("OPENROUTER_API_KEY", raising=False)
        config = GatewayConfig()
        with pytest.raises(ValueError, match="No upstream API key"):
            config.get_api_key()

    def test_api_key_not_exposed_in_repr(self, test_config: GatewayConfig) -> None:
        assert "test-key-fake" not in repr(test_config)

    def test_attribution_headers(self, test_config: GatewayConfig) -> None:
        assert test_config.attribution_headers == {
            "HTTP-Referer": "https://openwriter.app",
            "X-Title": "OpenWriter",
        }

    def test_rejects_non_positive_timeout(self) -> None:
        with pytest.raises(ValueError):
            GatewayConfig(stream_timeout_seconds=0)
