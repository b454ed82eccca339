"""Admission gate: refuse paid requests up front when the account is out of credits."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from writer_gateway.cancellation import CancellationToken
from writer_gateway.exceptions import AdmissionDeniedError, RequestCancelledError
from writer_gateway.types import (
    ErrorType,
    GenerationRequest,
    NormalizedError,
    RateLimitSnapshot,
)

logger = logging.getLogger(__name__)

SnapshotSource = Callable[[], Awaitable[RateLimitSnapshot]]

INSUFFICIENT_CREDITS_MESSAGE = (
    "Insufficient credits for this model. Please add credits to your account "
    "or use a free model variant."
)


@dataclass(frozen=True)
class Allow:
    """The request may proceed. ``checked`` is False when the check was skipped."""

    checked: bool = True


@dataclass(frozen=True)
class Deny:
    """The request must not reach the upstream."""

    reason: ErrorType = ErrorType.INSUFFICIENT_CREDITS
    remaining_credits: float = 0

    def to_error(self) -> AdmissionDeniedError:
        return AdmissionDeniedError(
            NormalizedError(
                type=self.reason,
                code=402,
                message=INSUFFICIENT_CREDITS_MESSAGE,
            ),
            remaining_credits=self.remaining_credits,
        )


Admission = Allow | Deny


class AdmissionGate:
    """Fast-path credit check run before any billable upstream call.

    The upstream call itself remains the authoritative credit check, so the
    gate fails open whenever the snapshot cannot be fetched.
    """

    def __init__(self, snapshot_source: SnapshotSource, free_suffix: str = ":free") -> None:
        self._snapshot_source = snapshot_source
        self._free_suffix = free_suffix

    def is_free_model(self, model: str) -> bool:
        return model.endswith(self._free_suffix)

    async def admit(
        self,
        request: GenerationRequest,
        token: CancellationToken | None = None,
    ) -> Admission:
        """Decide whether *request* may proceed.

        Raises:
            RequestCancelledError: If *token* fires while the snapshot is fetched.
        """
        # Streams carry their own downstream accounting.
        if request.stream or self.is_free_model(request.model):
            return Allow(checked=False)

        try:
            if token is not None:
                snapshot = await token.guard(self._snapshot_source())
            else:
                snapshot = await self._snapshot_source()
        except RequestCancelledError:
            raise
        except Exception as exc:
            logger.warning(
                "credit_check_failed_open",
                extra={"model": request.model, "error": str(exc)},
            )
            return Allow(checked=False)

        remaining = snapshot.remaining
        if remaining is not None and remaining <= 0 and not snapshot.is_free_tier:
            logger.info(
                "admission_denied",
                extra={"model": request.model, "usage": snapshot.usage, "limit": snapshot.limit},
            )
            return Deny(remaining_credits=0)

        return Allow()
