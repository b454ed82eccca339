"""Tests for core types."""

from __future__ import annotations

import dataclasses

import pytest

from writer_gateway.exceptions import InvalidRequestError
from writer_gateway.types import (
    ErrorType,
    GenerationRequest,
    GenerationResult,
    NormalizedError,
    RateLimitSnapshot,
)


@pytest.mark.unit
class TestGenerationRequest:
    def test_prompt_only_chat_becomes_user_message(self) -> None:
        request = GenerationRequest(model="x/y", prompt="Hello")
        assert request.chat_messages == ({"role": "user", "content": "Hello"},)

    def test_messages_take_precedence_over_prompt(self) -> None:
        request = GenerationRequest(
            model="x/y",
            messages=({"role": "system", "content": "Be brief"},),
            prompt="ignored",
        )
        assert request.chat_messages == ({"role": "system", "content": "Be brief"},)

    def test_is_immutable(self) -> None:
        request = GenerationRequest(model="x/y", prompt="Hello")
        with pytest.raises(dataclasses.FrozenInstanceError):
            request.model = "other"  # type: ignore[misc]

    @pytest.mark.parametrize("model", ["", "   "])
    def test_model_required(self, model: str) -> None:
        with pytest.raises(InvalidRequestError, match="Model is required"):
            GenerationRequest(model=model, prompt="Hello")

    def test_messages_or_prompt_required(self) -> None:
        with pytest.raises(InvalidRequestError, match="Either messages or prompt"):
            GenerationRequest(model="x/y")

    def test_completion_requires_prompt(self) -> None:
        with pytest.raises(InvalidRequestError, match="Prompt is required"):
            GenerationRequest(
                model="x/y",
                endpoint="completion",
                messages=({"role": "user", "content": "hi"},),
            )

    def test_json_schema_format_requires_schema(self) -> None:
        with pytest.raises(InvalidRequestError, match="Invalid responseFormat"):
            GenerationRequest(
                model="x/y",
                prompt="Hello",
                response_format={"type": "json_schema", "json_schema": {"name": "x"}},
            )

    def test_json_schema_format_accepted(self) -> None:
        request = GenerationRequest(
            model="x/y",
            prompt="Hello",
            response_format={
                "type": "json_schema",
                "json_schema": {"name": "answer", "schema": {"type": "object"}},
            },
        )
        assert request.response_format is not None

    def test_json_object_format_rejects_schema(self) -> None:
        with pytest.raises(InvalidRequestError, match="json_object"):
            GenerationRequest(
                model="x/y",
                prompt="Hello",
                response_format={"type": "json_object", "json_schema": {"schema": {}}},
            )

    @pytest.mark.parametrize(
        "tool",
        [
            {"type": "retrieval"},
            {"type": "function"},
            {"type": "function", "function": {"description": "no name"}},
        ],
    )
    def test_invalid_tools_rejected(self, tool: dict) -> None:  # type: ignore[type-arg]
        with pytest.raises(InvalidRequestError, match="Invalid tools"):
            GenerationRequest(model="x/y", prompt="Hello", tools=[tool])

    def test_provider_family(self) -> None:
        assert GenerationRequest(model="anthropic/claude", prompt="a").provider_family == "anthropic"
        assert GenerationRequest(model="local", prompt="a").provider_family == "local"


@pytest.mark.unit
class TestGenerationResult:
    def _payload(self) -> dict:  # type: ignore[type-arg]
        return {
            "id": "gen-1",
            "choices": [{"message": {"role": "assistant", "content": "Hi!"}}],
            "usage": {"prompt_tokens": 3, "completion_tokens": 2},
        }

    def test_text_and_usage(self) -> None:
        result = GenerationResult(payload=self._payload(), model="anthropic/claude")
        assert result.text == "Hi!"
        assert result.usage["completion_tokens"] == 2

    def test_completion_text(self) -> None:
        result = GenerationResult(payload={"choices": [{"text": "done"}]}, model="x/y")
        assert result.text == "done"

    def test_empty_choices(self) -> None:
        result = GenerationResult(payload={}, model="x/y")
        assert result.text == ""
        assert result.usage == {}

    def test_payload_metadata_primary(self) -> None:
        body = GenerationResult(payload=self._payload(), model="anthropic/claude").to_payload(
            caching_enabled=True
        )
        assert body["caching_enabled"] is True
        assert body["provider"] == "anthropic"
        assert "fallback_method" not in body
        assert body["id"] == "gen-1"

    def test_payload_metadata_fallback(self) -> None:
        result = GenerationResult(payload=self._payload(), model="x/y", path="fallback")
        body = result.to_payload(caching_enabled=False)
        assert body["fallback_method"] == "direct_api"
        assert body["caching_enabled"] is False


@pytest.mark.unit
class TestRateLimitSnapshot:
    def test_from_payload(self) -> None:
        snapshot = RateLimitSnapshot.from_payload(
            {
                "label": "sk-or-...",
                "usage": 2.5,
                "limit": 10,
                "is_free_tier": False,
                "rate_limit": {"requests": 20, "interval": "10s"},
            }
        )
        assert snapshot.limit == 10.0
        assert snapshot.remaining == 7.5
        assert snapshot.requests == 20
        assert snapshot.interval_seconds == 10

    def test_unlimited_account(self) -> None:
        snapshot = RateLimitSnapshot(usage=100.0, limit=None, requests=50, interval="1m")
        assert snapshot.remaining is None
        assert snapshot.effective_requests == 50
        assert snapshot.can_use_free_models is True

    def test_remaining_never_negative(self) -> None:
        assert RateLimitSnapshot(usage=12.0, limit=10.0).remaining == 0.0

    @pytest.mark.parametrize(
        ("interval", "seconds"),
        [("10s", 10), ("1m", 60), ("2h", 7200), ("", 0), ("weekly", 0)],
    )
    def test_interval_seconds(self, interval: str, seconds: int) -> None:
        assert RateLimitSnapshot(interval=interval).interval_seconds == seconds

    def test_effective_requests_capped_by_credits(self) -> None:
        snapshot = RateLimitSnapshot(usage=7.6, limit=10.0, requests=20)
        assert snapshot.effective_requests == 3

    def test_effective_requests_at_least_one(self) -> None:
        snapshot = RateLimitSnapshot(usage=10.0, limit=10.0, requests=20)
        assert snapshot.effective_requests == 1

    def test_free_tier_can_use_free_models(self) -> None:
        snapshot = RateLimitSnapshot(usage=10.0, limit=10.0, is_free_tier=True)
        assert snapshot.can_use_free_models is True
        assert RateLimitSnapshot(usage=10.0, limit=10.0).can_use_free_models is False

    def test_to_payload(self) -> None:
        payload = RateLimitSnapshot(
            label="key", usage=4.0, limit=10.0, requests=5, interval="10s"
        ).to_payload()
        assert payload["remaining_credits"] == 6.0
        assert payload["effective_rate_limit"] == {
            "requests_per_second": 5,
            "interval_seconds": 10,
        }
        assert payload["rate_limit"] == {"requests": 5, "interval": "10s"}
        assert payload["can_use_free_models"] is True


@pytest.mark.unit
class TestNormalizedError:
    def test_http_status_passthrough(self) -> None:
        error = NormalizedError(type=ErrorType.RATE_LIMIT, code=429, message="x")
        assert error.http_status == 429

    @pytest.mark.parametrize("code", [200, 302, 600, 0])
    def test_http_status_defaults_to_500(self, code: int) -> None:
        error = NormalizedError(type=ErrorType.UNKNOWN, code=code, message="x")
        assert error.http_status == 500

    def test_payload_omits_unset_fields(self) -> None:
        payload = NormalizedError(type=ErrorType.NOT_FOUND, code=404, message="gone").to_payload()
        assert payload == {"message": "gone", "type": "not_found", "code": 404}

    def test_payload_includes_moderation_extras(self) -> None:
        payload = NormalizedError(
            type=ErrorType.MODERATION,
            code=403,
            message="flagged",
            provider="openai",
            reasons=("violence",),
            flagged_input="bad words",
            raw={"detail": 1},
        ).to_payload()
        assert payload["reasons"] == ["violence"]
        assert payload["flagged_input"] == "bad words"
        assert payload["provider"] == "openai"
        assert payload["raw_provider_error"] == {"detail": 1}
