"""Cancellation primitives for a single send request.

A ``CancellationToken`` is created per request and set once the client is
known to be gone. It is terminal: once cancelled it never resets. Work that
suspends (provider calls, backoff sleeps) races against the token so that it
is abandoned promptly instead of running to completion.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Protocol, TypeVar

from app.exceptions.base import RequestAbortedError

logger = logging.getLogger(__name__)

T = TypeVar("T")

Receive = Callable[[], Awaitable[dict[str, Any]]]


class CancellationToken:
    """One-shot cancellation flag that can be awaited."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RequestAbortedError(f"Request aborted: {self.reason}")


class Liveness(Protocol):
    """Answers "is this request still wanted" and exposes its token."""

    token: CancellationToken

    def is_live(self) -> bool: ...


class StaticLiveness:
    """Liveness driven only by its token; used outside an HTTP request."""

    def __init__(self, token: CancellationToken | None = None) -> None:
        self.token = token or CancellationToken()

    def is_live(self) -> bool:
        return not self.token.cancelled


class RequestLiveness:
    """Tracks an ASGI client connection.

    A watcher task waits on the ASGI ``receive`` channel; the request body has
    already been consumed, so the next message the server delivers is
    ``http.disconnect``. When it arrives the token is cancelled. Checking
    liveness is then a synchronous read of the token.
    """

    def __init__(self, receive: Receive, token: CancellationToken | None = None) -> None:
        self.token = token or CancellationToken()
        self._receive = receive
        self._watcher: asyncio.Task | None = None

    def is_live(self) -> bool:
        return not self.token.cancelled

    def start(self) -> "RequestLiveness":
        if self._watcher is None:
            self._watcher = asyncio.create_task(self._watch())
        return self

    async def stop(self) -> None:
        if self._watcher is None:
            return
        self._watcher.cancel()
        try:
            await self._watcher
        except asyncio.CancelledError:
            pass
        self._watcher = None

    async def __aenter__(self) -> "RequestLiveness":
        return self.start()

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()

    async def _watch(self) -> None:
        while not self.token.cancelled:
            message = await self._receive()
            if message.get("type") == "http.disconnect":
                logger.info("Client disconnected before the response was sent")
                self.token.cancel("client disconnected")
                return


async def cancellable_sleep(delay: float, token: CancellationToken) -> None:
    """Sleep for ``delay`` seconds unless the token fires first.

    Raises ``RequestAbortedError`` if cancelled before or during the wait.
    """
    token.raise_if_cancelled()
    try:
        await asyncio.wait_for(token.wait(), timeout=delay)
    except TimeoutError:
        return
    token.raise_if_cancelled()


async def run_cancellable(
    operation: Awaitable[T],
    token: CancellationToken,
    timeout: float | None = None,
) -> T:
    """Await ``operation`` racing it against the token and an optional deadline.

    Raises ``RequestAbortedError`` when the token wins and ``TimeoutError``
    when the deadline passes. In both cases the operation is cancelled and
    awaited before returning so nothing is left running.
    """
    work = asyncio.ensure_future(operation)
    if token.cancelled:
        await _discard(work)
        token.raise_if_cancelled()

    waiter = asyncio.create_task(token.wait())
    try:
        done, _ = await asyncio.wait({work, waiter}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        await _discard(work)
        raise
    finally:
        waiter.cancel()

    # A cancelled token wins even if the operation finished in the same tick
    if token.cancelled:
        await _discard(work)
        token.raise_if_cancelled()
    if work in done:
        return work.result()

    await _discard(work)
    raise TimeoutError(f"Operation exceeded {timeout}s deadline")


async def _discard(task: asyncio.Future) -> None:
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    except Exception as e:
        logger.debug(f"Discarded operation raised after cancellation: {e!r}")
