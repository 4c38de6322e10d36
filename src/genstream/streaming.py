"""Streaming results.

A :class:`GenerateContentStream` offers two views of one streamed
response: an async iterator of cumulative snapshots, and an awaitable for
the sealed aggregate. Both views pull from the same fold, so awaiting only
the final response still consumes the whole stream, and chunks read
meanwhile stay available to the iterator.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import AsyncIterator
from typing import Any

from genstream import instrumentation
from genstream.accumulator import ResponseAccumulator
from genstream.errors import AbortedError, GenerativeError
from genstream.response import GenerateContentResponse
from genstream.signals import AbortScope

logger = logging.getLogger(__name__)


class GenerateContentStream:
    """A streamed response.

    Args:
        chunks: Decoded JSON chunks in arrival order, usually from
            :func:`genstream.framing.frame_chunks`.
        scope: Cancellation scope of the request. When it has aborted by
            the time ``chunks`` ends, the stream fails with
            :class:`AbortedError` instead of sealing.
        span: Optional tracing span ended when the stream settles.

    Example::

        stream = await model.generate_content_stream("Write a haiku")
        async for snapshot in stream:
            print(snapshot.text)
        response = await stream.get_response()
    """

    def __init__(
        self,
        chunks: AsyncIterator[dict[str, Any]],
        scope: AbortScope | None = None,
        span=None,
    ):
        self._chunks = chunks
        self._scope = scope
        self._span = span
        self._accumulator = ResponseAccumulator()
        # Folded chunks the iterator has not delivered yet. The iterator
        # builds its snapshots from these with its own accumulator, so
        # only deltas are held while nobody iterates.
        self._unread: deque[GenerateContentResponse] = deque()
        self._view: ResponseAccumulator | None = None
        self._lock = asyncio.Lock()
        self._final: GenerateContentResponse | None = None
        self._error: BaseException | None = None

    @property
    def done(self) -> bool:
        return self._final is not None or self._error is not None

    @property
    def chunk_count(self) -> int:
        """Number of chunks folded so far."""
        return self._accumulator.chunk_count

    @property
    def partial(self) -> GenerateContentResponse | None:
        """Latest cumulative snapshot, or None before the first chunk."""
        if self._accumulator.chunk_count == 0:
            return None
        return self._accumulator.snapshot()

    def __aiter__(self) -> AsyncIterator[GenerateContentResponse]:
        return self._iter_snapshots()

    async def _iter_snapshots(self) -> AsyncIterator[GenerateContentResponse]:
        if self._view is None:
            self._view = ResponseAccumulator()
        while True:
            if self._unread:
                yield self._view.feed(self._unread.popleft())
                continue
            if self._error is not None:
                raise self._error
            if self._final is not None:
                return
            await self._advance()

    async def get_response(self) -> GenerateContentResponse:
        """Drive the stream to its end and return the sealed aggregate.

        Raises:
            ParseError: The byte stream could not be framed or a chunk was
                malformed.
            TransportError: The connection failed mid-stream.
            AbortedError: The request was aborted or timed out.
        """
        while not self.done:
            await self._advance()
        if self._error is not None:
            raise self._error
        return self._final

    async def _advance(self) -> None:
        """Fold one more chunk, or settle the stream if none remain.

        Returns without reading when another caller folded a chunk while
        this one waited for the lock.
        """
        seen = self._accumulator.chunk_count
        async with self._lock:
            if self.done or self._accumulator.chunk_count != seen:
                return
            try:
                chunk = await self._chunks.__anext__()
            except StopAsyncIteration:
                self._seal()
                return
            except asyncio.CancelledError:
                self._fail(AbortedError("Stream consumer was cancelled", self.partial))
                raise
            except Exception as e:
                self._fail(self._read_error(e))
                return
            try:
                folded = self._accumulator.add(chunk)
            except GenerativeError as e:
                self._fail(e)
                aclose = getattr(self._chunks, "aclose", None)
                if aclose is not None:
                    await aclose()
                return
            self._unread.append(folded)

    def _read_error(self, error: Exception) -> BaseException:
        partial = self.partial
        if (
            self._scope is not None
            and self._scope.interrupted
            and not isinstance(error, AbortedError)
        ):
            # Whatever the read raised while being cut short, the request
            # was aborted.
            aborted = self._scope.error(partial=partial)
            aborted.__cause__ = error
            return aborted
        if isinstance(error, GenerativeError) and error.response is None:
            error.response = partial
        if isinstance(error, AbortedError) and error.partial is None:
            error.partial = partial
        return error

    def _seal(self) -> None:
        if self._scope is not None and self._scope.interrupted:
            self._fail(self._scope.error(partial=self.partial))
            return
        self._final = self._accumulator.finalize()
        logger.debug(f"Stream sealed after {self._accumulator.chunk_count} chunks")
        instrumentation.end_span(self._span, response=self._final)
        self._span = None

    def _fail(self, error: BaseException) -> None:
        self._error = error
        logger.debug(f"Stream failed: {error!r}")
        instrumentation.end_span(self._span, error=error)
        self._span = None
