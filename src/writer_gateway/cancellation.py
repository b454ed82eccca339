"""Per-request cancellation: one token armed by disconnect, abort, or timeout."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any, TypeVar

from writer_gateway.exceptions import RequestCancelledError

logger = logging.getLogger(__name__)

T = TypeVar("T")

Receive = Callable[[], Awaitable[dict[str, Any]]]


class CancelReason(str, Enum):
    DISCONNECT = "disconnect"
    ABORT = "abort"
    TIMEOUT = "timeout"


class TokenState(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class CancellationToken:
    """A single cancellation signal for one inbound request.

    The token ends in exactly one terminal state: ``COMPLETED`` (via
    ``complete()``) or ``CANCELLED`` (via ``cancel()``). Whichever happens
    first wins; later calls are no-ops.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._state = TokenState.PENDING
        self._reason: CancelReason | None = None
        self._callbacks: list[Callable[[CancelReason], None]] = []

    @property
    def state(self) -> TokenState:
        return self._state

    @property
    def cancelled(self) -> bool:
        return self._state is TokenState.CANCELLED

    @property
    def reason(self) -> CancelReason | None:
        return self._reason

    def cancel(self, reason: CancelReason) -> bool:
        """Arm the token. Returns False if it already reached a terminal state."""
        if self._state is not TokenState.PENDING:
            return False
        self._state = TokenState.CANCELLED
        self._reason = reason
        self._event.set()
        logger.debug("request_cancelled", extra={"reason": reason.value})
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback(reason)
        return True

    def abort(self) -> bool:
        """Explicit caller-issued cancellation."""
        return self.cancel(CancelReason.ABORT)

    def complete(self) -> bool:
        """Mark natural completion. Returns False if the token was already cancelled."""
        if self._state is not TokenState.PENDING:
            return False
        self._state = TokenState.COMPLETED
        self._callbacks.clear()
        return True

    def add_callback(self, callback: Callable[[CancelReason], None]) -> None:
        """Run *callback* when the token arms (immediately if it already has)."""
        if self._state is TokenState.CANCELLED:
            assert self._reason is not None
            callback(self._reason)
        elif self._state is TokenState.PENDING:
            self._callbacks.append(callback)

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise RequestCancelledError(self._reason)

    async def wait(self) -> CancelReason | None:
        """Suspend until the token arms."""
        await self._event.wait()
        return self._reason

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await *awaitable*, abandoning it as soon as the token arms.

        The in-flight work is cancelled in the same loop iteration the token
        fires, which closes any HTTP connection it holds.

        Raises:
            RequestCancelledError: If the token armed first.
        """
        if self.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            self.raise_if_cancelled()
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not work.done():
                work.cancel()
                with contextlib.suppress(asyncio.CancelledError, Exception):
                    await work
        if work.cancelled():
            raise RequestCancelledError(self._reason)
        if self.cancelled and work.exception() is not None:
            raise RequestCancelledError(self._reason)
        return work.result()


class CancellationScope:
    """Owns a token plus the timer and watcher tasks that can arm it.

    Usage::

        async with CancellationScope(timeout_seconds=300) as scope:
            scope.watch_disconnect(receive)
            await scope.token.guard(do_work())

    Leaving the block marks the token completed (if still pending) and
    releases the timer and every watcher task.
    """

    def __init__(
        self,
        timeout_seconds: float,
        token: CancellationToken | None = None,
    ) -> None:
        self._timeout = timeout_seconds
        self.token = token or CancellationToken()
        self._timer: asyncio.TimerHandle | None = None
        self._watchers: set[asyncio.Task[None]] = set()

    async def __aenter__(self) -> CancellationScope:
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self._timeout, self.token.cancel, CancelReason.TIMEOUT)
        self.token.add_callback(lambda _reason: self._release_timer())
        return self

    async def __aexit__(self, *exc: object) -> None:
        self.token.complete()
        await self.close()

    @property
    def active(self) -> bool:
        """True while a timer or watcher is still held."""
        return self._timer is not None or bool(self._watchers)

    def watch_disconnect(self, receive: Receive) -> None:
        """Arm the token when the ASGI server reports ``http.disconnect``."""
        task = asyncio.create_task(self._listen_for_disconnect(receive))
        self._watchers.add(task)
        task.add_done_callback(self._watchers.discard)

    async def _listen_for_disconnect(self, receive: Receive) -> None:
        while True:
            message = await receive()
            if message["type"] == "http.disconnect":
                self.token.cancel(CancelReason.DISCONNECT)
                return

    def _release_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    async def close(self) -> None:
        """Release the timer and stop every watcher task."""
        self._release_timer()
        watchers = list(self._watchers)
        for task in watchers:
            task.cancel()
        for task in watchers:
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task
        self._watchers.clear()
