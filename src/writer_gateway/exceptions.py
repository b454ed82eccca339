"""Exception hierarchy for writer-gateway."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from writer_gateway.cancellation import CancelReason
    from writer_gateway.types import NormalizedError


class GatewayError(Exception):
    """Base exception for all writer-gateway errors."""


class InvalidRequestError(GatewayError):
    """Raised when an inbound request violates the request invariants."""


class UpstreamHTTPError(GatewayError):
    """Raised by the raw wire path when the upstream answers with an error.

    ``payload`` is the decoded JSON body (usually ``{"error": {...}}``) or the
    raw text when the body was not JSON.
    """

    def __init__(self, status_code: int, payload: Any = None) -> None:
        self.status_code = status_code
        self.payload = payload
        detail = ""
        if isinstance(payload, dict) and isinstance(payload.get("error"), dict):
            detail = str(payload["error"].get("message") or "")
        elif isinstance(payload, str):
            detail = payload[:200]
        super().__init__(
            f"Upstream returned HTTP {status_code}" + (f": {detail}" if detail else "")
        )


class StreamInterruptedError(GatewayError):
    """Raised when a token stream fails after it started producing chunks."""

    def __init__(self, path: str, original: BaseException) -> None:
        self.path = path
        self.original = original
        super().__init__(f"Stream interrupted on {path} path: {original}")


class RequestCancelledError(GatewayError):
    """Raised when a request's cancellation token fires.

    Callers treat this as a silent terminal state, never as an error response.
    """

    def __init__(self, reason: CancelReason | None) -> None:
        self.reason = reason
        label = reason.value if reason is not None else "unknown"
        super().__init__(f"Request cancelled ({label})")


class TransportClosedError(GatewayError):
    """Raised when writing to a client transport that has gone away."""


class GenerationError(GatewayError):
    """A failure that has already been normalized and is ready to render."""

    def __init__(self, error: NormalizedError) -> None:
        self.error = error
        super().__init__(error.message)

    def to_payload(self) -> dict[str, Any]:
        """The ``error`` object of the JSON error envelope."""
        return self.error.to_payload()


class AdmissionDeniedError(GenerationError):
    """Raised when the admission gate refuses a paid request."""

    def __init__(self, error: NormalizedError, remaining_credits: float = 0) -> None:
        self.remaining_credits = remaining_credits
        super().__init__(error)

    def to_payload(self) -> dict[str, Any]:
        body = super().to_payload()
        body["remaining_credits"] = self.remaining_credits
        return body
