"""Chunk framing for streamed responses.

The service streams a sequence of JSON objects, but the network delivers
bytes in arbitrary pieces: a read may end in the middle of an object, in
the middle of a string, or in the middle of a multi-byte character.
:class:`ChunkFramer` buffers what it has not consumed yet and emits an
object only once it is structurally complete. Boundaries are found by
tracking brace depth and string/escape state, so framing never depends on
where line breaks fall.
"""

from __future__ import annotations

import codecs
import json
import logging
from collections.abc import AsyncIterable, AsyncIterator
from enum import Enum
from typing import Any

from genstream.errors import AbortedError, ParseError
from genstream.signals import AbortScope

logger = logging.getLogger(__name__)

_WHITESPACE = " \t\r\n"
_ASCII_DIGITS = "0123456789"
_RECORD_SEPARATOR = "\x1e"
_SSE_DATA = "data:"
_SSE_DONE = "[DONE]"


class Framing(Enum):
    SSE = "sse"
    JSON_ARRAY = "json_array"
    JSON_SEQ = "json_seq"
    LENGTH_PREFIXED = "length_prefixed"


class ChunkFramer:
    """Incremental parser turning raw reads into JSON object chunks.

    Args:
        framing: Delimiting convention of the stream.
        encoding: Text encoding of byte input.
    """

    def __init__(self, framing: Framing = Framing.SSE, encoding: str = "utf-8"):
        self.framing = framing
        self.encoding = encoding
        self._decoder = codecs.getincrementaldecoder(encoding)()
        self._buffer = ""
        # Object scan state. ``_start`` is None between objects.
        self._start: int | None = None
        self._scan_pos = 0
        self._depth = 0
        self._in_string = False
        self._escape = False
        # Framing-specific state.
        self._array_opened = False
        self._array_closed = False
        self._declared_length: int | None = None
        self._closed = False

    @property
    def buffer(self) -> str:
        """Text received but not yet consumed."""
        return self._buffer

    def feed(self, data: bytes | str) -> list[dict[str, Any]]:
        """Consume one read and return the chunks it completed."""
        if self._closed:
            raise RuntimeError("feed() called on a closed ChunkFramer")
        if isinstance(data, bytes):
            try:
                text = self._decoder.decode(data)
            except UnicodeDecodeError as e:
                raise ParseError(
                    f"Invalid {self.encoding} in stream: {e}", buffer=self._buffer,
                ) from e
        else:
            text = data
        self._buffer += text
        return self._drain()

    def close(self) -> list[dict[str, Any]]:
        """Signal end of stream and return any final chunks.

        Raises:
            ParseError: If undecoded bytes or an incomplete object remain.
        """
        if self._closed:
            return []
        try:
            tail = self._decoder.decode(b"", final=True)
        except UnicodeDecodeError as e:
            raise ParseError(
                f"Stream ended inside a {self.encoding} sequence", buffer=self._buffer,
            ) from e
        self._buffer += tail
        if self.framing is Framing.SSE and self._start is None:
            # Terminate a last field line that had no trailing newline.
            self._buffer += "\n"
        chunks = self._drain()
        self._closed = True

        if self._start is not None:
            raise ParseError("Stream ended inside a JSON object", buffer=self._buffer)
        if self._buffer.strip(_WHITESPACE):
            raise ParseError("Unexpected trailing data at end of stream", buffer=self._buffer)
        if self._array_opened and not self._array_closed:
            raise ParseError("Stream ended before the response array was closed", buffer=self._buffer)
        if self._declared_length is not None:
            raise ParseError("Stream ended after a length prefix", buffer=self._buffer)
        return chunks

    # ------------------------------------------------------------------
    # Scanning
    # ------------------------------------------------------------------

    def _drain(self) -> list[dict[str, Any]]:
        chunks = []
        while True:
            if self._start is None and not self._seek_object():
                return chunks
            end = self._scan_object()
            if end is None:
                return chunks
            raw = self._buffer[self._start:end]
            self._buffer = self._buffer[end:]
            self._start = None
            chunks.append(self._decode(raw))

    def _scan_object(self) -> int | None:
        """Advance the scan; return the end offset of a complete object."""
        buf = self._buffer
        depth = self._depth
        in_string = self._in_string
        escape = self._escape
        for i in range(self._scan_pos, len(buf)):
            c = buf[i]
            if in_string:
                if escape:
                    escape = False
                elif c == "\\":
                    escape = True
                elif c == '"':
                    in_string = False
            elif c == '"':
                in_string = True
            elif c == "{" or c == "[":
                depth += 1
            elif c == "}" or c == "]":
                depth -= 1
                if depth == 0:
                    self._depth = 0
                    self._in_string = False
                    self._escape = False
                    return i + 1
        self._scan_pos = len(buf)
        self._depth = depth
        self._in_string = in_string
        self._escape = escape
        return None

    def _begin_object(self, offset: int) -> bool:
        self._buffer = self._buffer[offset:]
        self._start = 0
        self._scan_pos = 0
        self._depth = 0
        return True

    def _seek_object(self) -> bool:
        """Skip separators up to the next object start.

        Returns False when more data is needed.
        """
        if self.framing is Framing.SSE:
            return self._seek_sse()
        if self.framing is Framing.JSON_ARRAY:
            return self._seek_array()
        if self.framing is Framing.LENGTH_PREFIXED:
            return self._seek_length_prefixed()
        return self._seek_sequence()

    def _seek_sequence(self) -> bool:
        self._buffer = self._buffer.lstrip(_WHITESPACE + _RECORD_SEPARATOR)
        if not self._buffer:
            return False
        if self._buffer[0] != "{":
            raise ParseError(
                f"Unexpected {self._buffer[0]!r} between chunks", buffer=self._buffer,
            )
        return self._begin_object(0)

    def _seek_array(self) -> bool:
        while True:
            self._buffer = self._buffer.lstrip(_WHITESPACE)
            if not self._buffer:
                return False
            c = self._buffer[0]
            if self._array_closed:
                raise ParseError("Unexpected data after the response array", buffer=self._buffer)
            if not self._array_opened:
                if c != "[":
                    raise ParseError(
                        f"Expected '[' to open the response array, got {c!r}",
                        buffer=self._buffer,
                    )
                self._array_opened = True
            elif c == "{":
                return self._begin_object(0)
            elif c == "]":
                self._array_closed = True
            elif c != ",":
                raise ParseError(f"Unexpected {c!r} in response array", buffer=self._buffer)
            self._buffer = self._buffer[1:]

    def _seek_length_prefixed(self) -> bool:
        self._buffer = self._buffer.lstrip(_WHITESPACE)
        if not self._buffer:
            return False
        if self._declared_length is None:
            digits = 0
            while digits < len(self._buffer) and self._buffer[digits] in _ASCII_DIGITS:
                digits += 1
            if digits == len(self._buffer):
                return False
            if digits == 0:
                raise ParseError(
                    f"Expected a length prefix, got {self._buffer[0]!r}", buffer=self._buffer,
                )
            self._declared_length = int(self._buffer[:digits])
            self._buffer = self._buffer[digits:].lstrip(_WHITESPACE)
            if not self._buffer:
                return False
        if self._buffer[0] != "{":
            raise ParseError(
                f"Expected an object after the length prefix, got {self._buffer[0]!r}",
                buffer=self._buffer,
            )
        return self._begin_object(0)

    def _seek_sse(self) -> bool:
        while True:
            self._buffer = self._buffer.lstrip(_WHITESPACE)
            if not self._buffer:
                return False
            if self._buffer.startswith(_SSE_DATA):
                value = self._buffer[len(_SSE_DATA):]
                offset = len(_SSE_DATA)
                stripped = value.lstrip(" ")
                offset += len(value) - len(stripped)
                value = stripped
                if value.startswith("{"):
                    return self._begin_object(offset)
                newline = value.find("\n")
                if newline < 0:
                    # Could still become an object or a sentinel.
                    return False
                line = value[:newline].strip()
                if line and line != _SSE_DONE:
                    raise ParseError(
                        f"Error parsing JSON response: {line!r}", buffer=self._buffer,
                    )
                self._buffer = value[newline + 1:]
                continue
            if _SSE_DATA.startswith(self._buffer):
                return False
            if self._buffer[0] in "{[":
                raise ParseError(
                    "Expected a 'data:' field before the JSON chunk", buffer=self._buffer,
                )
            newline = self._buffer.find("\n")
            if newline < 0:
                return False
            # Comments, event/id/retry fields and unknown fields carry no chunk.
            logger.debug(f"Skipping SSE line {self._buffer[:newline]!r}")
            self._buffer = self._buffer[newline + 1:]

    def _decode(self, raw: str) -> dict[str, Any]:
        if self._declared_length is not None:
            size = len(raw.encode(self.encoding))
            declared = self._declared_length
            self._declared_length = None
            if size != declared:
                raise ParseError(
                    f"Chunk is {size} bytes but its prefix declared {declared}", buffer=raw,
                )
        try:
            value = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ParseError(f"Error parsing JSON response: {e}", buffer=raw) from e
        if not isinstance(value, dict):
            raise ParseError("Stream chunk is not a JSON object", buffer=raw)
        return value


async def frame_chunks(
    source: AsyncIterable[bytes | str],
    framing: Framing = Framing.SSE,
    scope: AbortScope | None = None,
) -> AsyncIterator[dict[str, Any]]:
    """Yield the JSON object chunks of ``source`` in arrival order.

    When ``scope`` aborts, no further bytes are requested, the source is
    closed and the sequence ends without yielding anything else. The
    caller inspects ``scope.interrupted`` to tell an abort from a clean end.
    """
    framer = ChunkFramer(framing)
    iterator = source.__aiter__()
    try:
        while True:
            try:
                if scope is None:
                    data = await iterator.__anext__()
                else:
                    data = await scope.run(iterator.__anext__())
            except StopAsyncIteration:
                break
            except AbortedError:
                if scope is None or not scope.interrupted:
                    raise
                logger.debug("Stream aborted while waiting for data")
                return
            for chunk in framer.feed(data):
                yield chunk
        for chunk in framer.close():
            yield chunk
    finally:
        await _aclose(iterator)
        if source is not iterator:
            await _aclose(source)


async def _aclose(obj: Any) -> None:
    aclose = getattr(obj, "aclose", None)
    if aclose is not None:
        await aclose()
