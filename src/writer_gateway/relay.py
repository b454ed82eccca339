"""Server-Sent Events relay from an upstream token stream to a client transport."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
from collections.abc import Callable
from enum import Enum
from typing import Any, Protocol

from writer_gateway.cancellation import CancellationToken, CancelReason
from writer_gateway.exceptions import RequestCancelledError, TransportClosedError
from writer_gateway.executor import TokenStream
from writer_gateway.normalize import normalize
from writer_gateway.types import NormalizedError

logger = logging.getLogger(__name__)

EVENT_STREAM_HEADERS = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

KEEP_ALIVE_FRAME = b": OPENROUTER PROCESSING\n\n"
DONE_FRAME = b"data: [DONE]\n\n"


def format_data(payload: dict[str, Any]) -> bytes:
    """Encode *payload* as one SSE ``data:`` frame."""
    return f"data: {json.dumps(payload, separators=(',', ':'))}\n\n".encode()


class EventTransport(Protocol):
    """Client side of a streaming response."""

    @property
    def is_open(self) -> bool:
        """False once the client went away or ``close()`` ran."""
        ...

    async def start(self, headers: dict[str, str]) -> None:
        """Send the response status and headers."""
        ...

    async def write(self, data: bytes) -> None:
        """Send raw bytes. Raises ``TransportClosedError`` if the client left."""
        ...

    async def close(self) -> None:
        """End the response. Safe to call more than once."""
        ...


class RelayOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class _RelayState:
    def __init__(self, transport: EventTransport, now: float) -> None:
        self.transport = transport
        self.last_activity = now
        self.terminated = False
        self.data_frames = 0
        self._lock = asyncio.Lock()

    async def write(self, frame: bytes) -> None:
        async with self._lock:
            await self.transport.write(frame)


class StreamingRelay:
    """Writes chunks as ``data:`` frames with a keep-alive comment on idle.

    Exactly one terminal action happens per relay: the ``[DONE]`` frame on
    exhaustion, one error frame on failure, or a silent close on
    cancellation.
    """

    def __init__(
        self,
        keepalive_interval: float = 15.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._interval = keepalive_interval
        self._clock = clock

    async def relay(
        self,
        stream: TokenStream,
        transport: EventTransport,
        token: CancellationToken,
    ) -> RelayOutcome:
        """Pump *stream* into *transport* until exhaustion, failure or cancellation."""
        state = _RelayState(transport, self._clock())
        outcome = RelayOutcome.CANCELLED
        error: NormalizedError | None = None
        keep_alive: asyncio.Task[None] | None = None

        try:
            token.raise_if_cancelled()
            await transport.start(EVENT_STREAM_HEADERS)
            keep_alive = asyncio.create_task(self._keep_alive(state, token))

            while True:
                chunk = await token.guard(stream.receive())
                if chunk is None:
                    break
                token.raise_if_cancelled()
                await state.write(format_data(chunk))
                state.data_frames += 1
                state.last_activity = self._clock()
            outcome = RelayOutcome.COMPLETED
        except RequestCancelledError:
            outcome = RelayOutcome.CANCELLED
        except TransportClosedError:
            token.cancel(CancelReason.DISCONNECT)
            outcome = RelayOutcome.CANCELLED
        except Exception as exc:
            if token.cancelled:
                outcome = RelayOutcome.CANCELLED
            else:
                error = normalize(exc)
                outcome = RelayOutcome.FAILED
                logger.warning(
                    "stream_interrupted",
                    extra={
                        "model": stream.model,
                        "path": stream.path,
                        "chunks": stream.chunk_count,
                        "error_type": error.type.value,
                        "code": error.code,
                    },
                )
        finally:
            if keep_alive is not None:
                keep_alive.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await keep_alive
            await stream.aclose()
            await self._terminate(state, outcome, error)

        logger.debug(
            "stream_finished",
            extra={"outcome": outcome.value, "frames": state.data_frames, "path": stream.path},
        )
        return outcome

    async def _keep_alive(self, state: _RelayState, token: CancellationToken) -> None:
        while True:
            await asyncio.sleep(self._interval)
            if state.terminated or token.cancelled:
                return
            if self._clock() - state.last_activity < self._interval:
                continue
            try:
                await state.write(KEEP_ALIVE_FRAME)
            except TransportClosedError:
                token.cancel(CancelReason.DISCONNECT)
                return
            state.last_activity = self._clock()

    async def _terminate(
        self,
        state: _RelayState,
        outcome: RelayOutcome,
        error: NormalizedError | None,
    ) -> None:
        if state.terminated:
            return
        state.terminated = True
        transport = state.transport
        try:
            if transport.is_open and outcome is RelayOutcome.COMPLETED:
                await state.write(DONE_FRAME)
            elif transport.is_open and outcome is RelayOutcome.FAILED and error is not None:
                await state.write(format_data({"error": error.to_payload()}))
        except TransportClosedError:
            logger.debug("terminal_frame_dropped", extra={"outcome": outcome.value})
        finally:
            await transport.close()
