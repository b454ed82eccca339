"""Tests for the error normalizer."""

from __future__ import annotations

import asyncio
from typing import Any

import httpx
import openai
import pytest

from writer_gateway.cancellation import CancelReason
from writer_gateway.exceptions import (
    GenerationError,
    InvalidRequestError,
    RequestCancelledError,
    StreamInterruptedError,
    UpstreamHTTPError,
)
from writer_gateway.normalize import classify_status, extract_status, normalize
from writer_gateway.types import ErrorType, NormalizedError

_REQUEST = httpx.Request("POST", "https://openrouter.ai/api/v1/chat/completions")


def _sdk_status_error(status: int, body: Any) -> openai.APIStatusError:
    response = httpx.Response(status, request=_REQUEST, json=body)
    return openai.APIStatusError(f"Error code: {status}", response=response, body=body)


def _httpx_status_error(status: int, body: Any) -> httpx.HTTPStatusError:
    response = httpx.Response(status, request=_REQUEST, json=body)
    return httpx.HTTPStatusError("upstream failed", request=_REQUEST, response=response)


@pytest.mark.unit
class TestClassifyStatus:
    @pytest.mark.parametrize(
        ("status", "expected"),
        [
            (400, ErrorType.BAD_REQUEST),
            (401, ErrorType.AUTHENTICATION),
            (402, ErrorType.INSUFFICIENT_CREDITS),
            (403, ErrorType.FORBIDDEN),
            (404, ErrorType.NOT_FOUND),
            (408, ErrorType.TIMEOUT),
            (429, ErrorType.RATE_LIMIT),
            (502, ErrorType.PROVIDER_ERROR),
            (503, ErrorType.NO_PROVIDER_AVAILABLE),
            (500, ErrorType.UNKNOWN),
            (418, ErrorType.UNKNOWN),
        ],
    )
    def test_status_table(self, status: int, expected: ErrorType) -> None:
        assert classify_status(status) is expected

    def test_403_with_moderation_metadata(self) -> None:
        assert classify_status(403, {"reasons": ["hate"]}) is ErrorType.MODERATION

    def test_403_with_empty_reasons_is_forbidden(self) -> None:
        assert classify_status(403, {"reasons": []}) is ErrorType.FORBIDDEN


@pytest.mark.unit
class TestNormalizeShapes:
    """The three raw shapes collapse to the same canonical error."""

    BODY = {"error": {"code": 429, "message": "Rate limit exceeded"}}

    def test_library_client_error(self) -> None:
        error = normalize(_sdk_status_error(429, self.BODY))
        assert error.type is ErrorType.RATE_LIMIT
        assert error.code == 429
        assert error.message == "Rate limit exceeded"

    def test_raw_http_error(self) -> None:
        error = normalize(UpstreamHTTPError(429, self.BODY))
        assert error == normalize(_sdk_status_error(429, self.BODY))

    def test_httpx_status_error(self) -> None:
        error = normalize(_httpx_status_error(429, self.BODY))
        assert error == normalize(UpstreamHTTPError(429, self.BODY))

    def test_is_deterministic(self) -> None:
        body = {"error": {"code": 503, "message": "No providers"}}
        assert normalize(UpstreamHTTPError(503, body)) == normalize(UpstreamHTTPError(503, body))

    def test_body_code_wins_over_status(self) -> None:
        body = {"error": {"code": 402, "message": "Insufficient credits"}}
        error = normalize(UpstreamHTTPError(400, body))
        assert error.type is ErrorType.INSUFFICIENT_CREDITS
        assert error.code == 402

    def test_moderation_extras(self) -> None:
        body = {
            "error": {
                "code": 403,
                "message": "Input was flagged",
                "metadata": {
                    "reasons": ["violence", "hate"],
                    "flagged_input": "some text...",
                    "provider_name": "openai",
                    "model_slug": "openai/gpt-4o",
                },
            }
        }
        error = normalize(_sdk_status_error(403, body))
        assert error.type is ErrorType.MODERATION
        assert error.reasons == ("violence", "hate")
        assert error.flagged_input == "some text..."
        assert error.provider == "openai"
        assert error.raw is None

    def test_provider_error_extras(self) -> None:
        raw = {"type": "overloaded_error", "message": "Overloaded"}
        body = {
            "error": {
                "code": 502,
                "message": "Provider returned error",
                "metadata": {"provider_name": "Anthropic", "raw": raw},
            }
        }
        error = normalize(UpstreamHTTPError(502, body))
        assert error.type is ErrorType.PROVIDER_ERROR
        assert error.provider == "Anthropic"
        assert error.raw == raw
        assert error.to_payload()["raw_provider_error"] == raw

    def test_text_body_uses_exception_message(self) -> None:
        error = normalize(UpstreamHTTPError(500, "Internal Server Error"))
        assert error.type is ErrorType.UNKNOWN
        assert error.code == 500
        assert "Internal Server Error" in error.message

    def test_in_band_sdk_error(self) -> None:
        body = {"code": 502, "message": "Provider disconnected"}
        exc = openai.APIError("Provider disconnected", _REQUEST, body=body)
        error = normalize(exc)
        assert error.type is ErrorType.PROVIDER_ERROR
        assert error.code == 502


@pytest.mark.unit
class TestNormalizeTransportFailures:
    @pytest.mark.parametrize(
        "exc",
        [
            openai.APITimeoutError(request=_REQUEST),
            httpx.ReadTimeout("read timed out", request=_REQUEST),
            TimeoutError(),
        ],
    )
    def test_timeouts(self, exc: BaseException) -> None:
        error = normalize(exc)
        assert error.type is ErrorType.TIMEOUT
        assert error.code == 408

    @pytest.mark.parametrize(
        "exc",
        [
            openai.APIConnectionError(request=_REQUEST),
            httpx.ConnectError("connection refused", request=_REQUEST),
            ConnectionResetError("reset"),
        ],
    )
    def test_connection_failures(self, exc: BaseException) -> None:
        error = normalize(exc)
        assert error.type is ErrorType.SERVER_ERROR
        assert error.code == 500

    def test_unexpected_exception(self) -> None:
        error = normalize(RuntimeError("kaboom"))
        assert error.type is ErrorType.SERVER_ERROR
        assert error.message == "kaboom"


@pytest.mark.unit
class TestNormalizeGatewayErrors:
    def test_cancellation(self) -> None:
        for exc in (RequestCancelledError(CancelReason.DISCONNECT), asyncio.CancelledError()):
            error = normalize(exc)
            assert error.type is ErrorType.CANCELLED
            assert error.code == 499

    def test_invalid_request(self) -> None:
        error = normalize(InvalidRequestError("Model is required"))
        assert error.type is ErrorType.BAD_REQUEST
        assert error.code == 400
        assert error.message == "Model is required"

    def test_generation_error_passthrough(self) -> None:
        original = NormalizedError(type=ErrorType.NOT_FOUND, code=404, message="gone")
        assert normalize(GenerationError(original)) is original

    def test_stream_interrupted_without_status(self) -> None:
        error = normalize(StreamInterruptedError("primary", ConnectionResetError("reset")))
        assert error.type is ErrorType.SERVER_ERROR
        assert error.message == "Stream interrupted"

    def test_stream_interrupted_with_in_band_status(self) -> None:
        body = {"error": {"code": 502, "message": "Provider died mid-stream"}}
        error = normalize(StreamInterruptedError("fallback", UpstreamHTTPError(502, body)))
        assert error.type is ErrorType.PROVIDER_ERROR
        assert error.message == "Provider died mid-stream"

    def test_never_raises(self) -> None:
        class Hostile(Exception):
            def __str__(self) -> str:
                raise RuntimeError("cannot render")

        error = normalize(Hostile())
        assert error.type is ErrorType.UNKNOWN
        assert error.code == 500


@pytest.mark.unit
class TestExtractStatus:
    def test_statusless_failures(self) -> None:
        assert extract_status(ConnectionError("down")) is None
        assert extract_status(openai.APIConnectionError(request=_REQUEST)) is None

    def test_status_from_each_shape(self) -> None:
        assert extract_status(UpstreamHTTPError(401)) == 401
        assert extract_status(_sdk_status_error(404, {})) == 404
        assert extract_status(_httpx_status_error(503, {})) == 503

    def test_status_from_cause_chain(self) -> None:
        try:
            try:
                raise UpstreamHTTPError(429)
            except UpstreamHTTPError as inner:
                raise RuntimeError("wrapped") from inner
        except RuntimeError as outer:
            assert extract_status(outer) == 429
