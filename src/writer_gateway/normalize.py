"""Error normalizer: collapses every raw failure shape into a NormalizedError.

Three families of raw failures reach this module:

- library-client errors raised by the ``openai`` SDK on the primary path
  (``APIStatusError`` with a decoded body, ``APIConnectionError``);
- raw-HTTP errors from the wire path (``UpstreamHTTPError``, or a plain
  ``httpx.HTTPStatusError``);
- generic network/transport errors (``httpx.TransportError``,
  ``TimeoutError``, ``OSError``).

``normalize`` is pure and total: it never raises, and equal inputs give
structurally equal outputs.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterator
from typing import Any

import httpx
import openai

from writer_gateway.exceptions import (
    GenerationError,
    InvalidRequestError,
    RequestCancelledError,
    StreamInterruptedError,
    UpstreamHTTPError,
)
from writer_gateway.types import ErrorType, NormalizedError

logger = logging.getLogger(__name__)

_STATUS_TYPES: dict[int, ErrorType] = {
    400: ErrorType.BAD_REQUEST,
    401: ErrorType.AUTHENTICATION,
    402: ErrorType.INSUFFICIENT_CREDITS,
    403: ErrorType.FORBIDDEN,
    404: ErrorType.NOT_FOUND,
    408: ErrorType.TIMEOUT,
    429: ErrorType.RATE_LIMIT,
    502: ErrorType.PROVIDER_ERROR,
    503: ErrorType.NO_PROVIDER_AVAILABLE,
}

CANCELLED_CODE = 499


def classify_status(status: int, metadata: dict[str, Any] | None = None) -> ErrorType:
    """Map an upstream status (plus optional error metadata) to an ErrorType."""
    if status == 403 and metadata and metadata.get("reasons"):
        return ErrorType.MODERATION
    return _STATUS_TYPES.get(status, ErrorType.UNKNOWN)


def _walk_chain(exc: BaseException) -> Iterator[BaseException]:
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        if isinstance(current, StreamInterruptedError):
            current = current.original
        else:
            current = current.__cause__ or current.__context__


def extract_status(exc: BaseException) -> int | None:
    """Return the upstream HTTP status carried by *exc* or its causes, if any."""
    for e in _walk_chain(exc):
        if isinstance(e, UpstreamHTTPError):
            return e.status_code
        if isinstance(e, openai.APIStatusError):
            return e.status_code
        if isinstance(e, httpx.HTTPStatusError):
            return e.response.status_code
        if isinstance(e, openai.APIError) and not isinstance(e, openai.APIConnectionError):
            code = _body_code(e.body)
            if code is not None:
                return code
    return None


def _body_code(body: Any) -> int | None:
    """Numeric ``code`` of an in-band upstream error object, if it has one."""
    error_obj = _error_object(body) or {}
    code = error_obj.get("code")
    if isinstance(code, int) and not isinstance(code, bool):
        return code
    return None


def _error_object(body: Any) -> dict[str, Any] | None:
    """Unwrap the upstream ``{"error": {...}}`` envelope (or accept the inner object)."""
    if not isinstance(body, dict):
        return None
    inner = body.get("error")
    if isinstance(inner, dict):
        return inner
    return body


def _from_status(status: int, body: Any, fallback_message: str) -> NormalizedError:
    error_obj = _error_object(body) or {}

    code = status
    upstream_code = error_obj.get("code")
    if isinstance(upstream_code, int) and not isinstance(upstream_code, bool):
        code = upstream_code

    raw_metadata = error_obj.get("metadata")
    metadata = raw_metadata if isinstance(raw_metadata, dict) else None
    error_type = classify_status(code, metadata)

    message = error_obj.get("message") or fallback_message or "Unknown error"

    provider: str | None = None
    reasons: tuple[str, ...] | None = None
    flagged_input: str | None = None
    raw: Any = None
    if metadata is not None:
        if error_type is ErrorType.MODERATION:
            reasons = tuple(str(r) for r in metadata.get("reasons") or ())
            flagged_input = metadata.get("flagged_input")
            provider = metadata.get("provider_name")
        elif error_type is ErrorType.PROVIDER_ERROR:
            provider = metadata.get("provider_name")
            raw = metadata.get("raw")

    return NormalizedError(
        type=error_type,
        code=code,
        message=str(message),
        provider=provider,
        reasons=reasons,
        flagged_input=flagged_input,
        raw=raw,
    )


def _decode_response(response: httpx.Response) -> Any:
    try:
        return response.json()
    except (ValueError, httpx.ResponseNotRead):
        return None


def _normalize(failure: BaseException) -> NormalizedError:
    if isinstance(failure, GenerationError):
        return failure.error

    if isinstance(failure, (RequestCancelledError, asyncio.CancelledError)):
        return NormalizedError(
            type=ErrorType.CANCELLED,
            code=CANCELLED_CODE,
            message="Request cancelled",
        )

    if isinstance(failure, InvalidRequestError):
        return NormalizedError(
            type=ErrorType.BAD_REQUEST,
            code=400,
            message=str(failure),
        )

    if isinstance(failure, StreamInterruptedError):
        if extract_status(failure.original) is not None:
            return _normalize(failure.original)
        return NormalizedError(
            type=ErrorType.SERVER_ERROR,
            code=500,
            message="Stream interrupted",
        )

    # Library-client shape
    if isinstance(failure, openai.APIStatusError):
        return _from_status(failure.status_code, failure.body, failure.message)
    if isinstance(failure, openai.APIError) and not isinstance(
        failure, openai.APIConnectionError
    ):
        # In-band stream error: no HTTP status, the code lives in the body.
        in_band_code = _body_code(failure.body)
        if in_band_code is not None:
            return _from_status(in_band_code, failure.body, failure.message)

    # Raw-HTTP shapes
    if isinstance(failure, UpstreamHTTPError):
        return _from_status(failure.status_code, failure.payload, str(failure))
    if isinstance(failure, httpx.HTTPStatusError):
        return _from_status(
            failure.response.status_code,
            _decode_response(failure.response),
            str(failure),
        )

    # Network/transport shapes
    if isinstance(failure, (openai.APITimeoutError, httpx.TimeoutException, TimeoutError)):
        return NormalizedError(
            type=ErrorType.TIMEOUT,
            code=408,
            message="Request timed out. Please try again.",
        )
    if isinstance(failure, (openai.APIConnectionError, httpx.TransportError, OSError)):
        return NormalizedError(
            type=ErrorType.SERVER_ERROR,
            code=500,
            message=str(failure) or "Upstream connection failed",
        )

    return NormalizedError(
        type=ErrorType.SERVER_ERROR,
        code=500,
        message=str(failure) or "Failed to generate text",
    )


def normalize(failure: BaseException) -> NormalizedError:
    """Convert any raw failure into the canonical NormalizedError.

    Never raises: a failure while inspecting *failure* yields ``unknown``.
    """
    try:
        return _normalize(failure)
    except Exception:
        logger.exception("error_normalization_failed")
        return NormalizedError(
            type=ErrorType.UNKNOWN,
            code=500,
            message="Unknown error",
        )
