"""Cooperative cancellation for requests.

An :class:`AbortSignal` is owned by the caller and may be shared by any
number of requests. An :class:`AbortScope` is created per request from the
signal and the request timeout; the transport and the chunk framer race
every await against it.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from typing import TypeVar

from genstream.errors import AbortedError

T = TypeVar("T")


class AbortSignal:
    """Caller-controlled cancellation flag.

    Example::

        signal = AbortSignal()
        stream = await model.generate_content_stream(
            "Tell me a story", RequestOptions(signal=signal),
        )
        ...
        signal.abort("user pressed stop")
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    def abort(self, reason: str = "Request aborted") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


class AbortScope:
    """Cancellation state of a single request.

    Args:
        signal: Optional caller signal.
        timeout: Seconds from scope creation until the request is aborted.
    """

    def __init__(
        self,
        signal: AbortSignal | None = None,
        timeout: float | None = None,
    ):
        self.signal = signal
        self._deadline = None
        if timeout is not None:
            self._deadline = asyncio.get_running_loop().time() + timeout
        self._timed_out = False
        # Set once the scope has actually cut a request short.
        self.interrupted = False

    @property
    def aborted(self) -> bool:
        if self.signal is not None and self.signal.aborted:
            return True
        if self._deadline is not None and self._remaining() <= 0:
            self._timed_out = True
        return self._timed_out

    def error(self, partial=None) -> AbortedError:
        if self.signal is not None and self.signal.aborted:
            return AbortedError(self.signal.reason or "Request aborted", partial)
        return AbortedError("Request timed out", partial)

    def _remaining(self) -> float | None:
        if self._deadline is None:
            return None
        return self._deadline - asyncio.get_running_loop().time()

    async def run(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the scope aborts first.

        Raises:
            AbortedError: If the signal fires or the deadline passes while
                waiting. The pending awaitable is cancelled.
        """
        if self.aborted:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            self.interrupted = True
            raise self.error()
        if self.signal is None and self._deadline is None:
            return await awaitable

        task = asyncio.ensure_future(awaitable)
        waiters: set[asyncio.Future] = {task}
        abort_waiter = None
        if self.signal is not None:
            abort_waiter = asyncio.ensure_future(self.signal.wait())
            waiters.add(abort_waiter)
        try:
            done, _ = await asyncio.wait(
                waiters,
                timeout=self._remaining(),
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            # The awaitable must have stopped before the caller unwinds,
            # or closing its source would race a still-running read.
            await _cancel_and_wait(task)
            raise
        finally:
            if abort_waiter is not None:
                abort_waiter.cancel()

        if task in done:
            return task.result()

        await _cancel_and_wait(task)
        if not done:
            self._timed_out = True
        self.interrupted = True
        raise self.error()


async def _cancel_and_wait(task: asyncio.Future) -> None:
    task.cancel()
    await asyncio.wait({task})
    if not task.cancelled():
        # Mark a failure that raced the cancellation as retrieved.
        task.exception()
