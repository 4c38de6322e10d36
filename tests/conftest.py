import asyncio
import json
from collections.abc import Awaitable, Callable

import pytest

from genstream.framing import Framing
from genstream.model import GenerativeModel
from genstream.transport import ByteStream, Transport


# ---------------------------------------------------------------------------
# Chunk builders (mirror the service's wire shape)
# ---------------------------------------------------------------------------

def make_chunk(
    text: str | None = None,
    *,
    index: int = 0,
    parts: list[dict] | None = None,
    finish_reason: str | None = None,
    usage: dict | None = None,
    role: str | None = "model",
    **extra,
) -> dict:
    """One streamed response chunk with a single candidate."""
    if parts is None:
        parts = [{"text": text}] if text is not None else []
    candidate: dict = {"index": index}
    if parts:
        content = {"parts": parts}
        if role is not None:
            content["role"] = role
        candidate["content"] = content
    if finish_reason is not None:
        candidate["finishReason"] = finish_reason
    chunk: dict = {"candidates": [candidate], **extra}
    if usage is not None:
        chunk["usageMetadata"] = usage
    return chunk


def make_function_call_chunk(name: str, args: dict, index: int = 0) -> dict:
    return make_chunk(parts=[{"functionCall": {"name": name, "args": args}}], index=index)


def make_blocked_prompt_chunk(reason: str = "SAFETY") -> dict:
    return {"promptFeedback": {"blockReason": reason}}


def sse_bytes(*chunks: dict) -> bytes:
    """Encode chunks the way the service frames ``?alt=sse`` responses."""
    return b"".join(
        f"data: {json.dumps(chunk)}\r\n\r\n".encode() for chunk in chunks
    )


def json_array_bytes(*chunks: dict) -> bytes:
    return ("[" + ",\r\n".join(json.dumps(c) for c in chunks) + "]").encode()


def split_every(data: bytes, size: int) -> list[bytes]:
    return [data[i:i + size] for i in range(0, len(data), size)]


async def byte_source(pieces):
    """Async iterable of raw reads."""
    for piece in pieces:
        yield piece


# ---------------------------------------------------------------------------
# Scripted transport
# ---------------------------------------------------------------------------

class ScriptedStream(ByteStream):
    """Response body that replays a script of steps.

    Each step is ``bytes`` (delivered as one read), an ``asyncio.Event``
    (the stream stalls until it is set) or an exception (raised mid-body).
    """

    def __init__(self, *steps):
        self.steps = list(steps)
        self.reads = 0
        self.closed = False

    async def __aiter__(self):
        for step in self.steps:
            if isinstance(step, asyncio.Event):
                await step.wait()
            elif isinstance(step, BaseException):
                raise step
            else:
                self.reads += 1
                yield step

    async def aclose(self) -> None:
        self.closed = True


def text_stream(*texts: str, finish_reason: str = "STOP") -> ScriptedStream:
    """A stream delivering one text delta per read, finishing on the last."""
    chunks = [make_chunk(t) for t in texts]
    if chunks:
        chunks[-1]["candidates"][0]["finishReason"] = finish_reason
    return ScriptedStream(*(sse_bytes(c) for c in chunks))


class FakeTransport(Transport):
    """Transport returning pre-queued results. No network calls.

    ``responses`` feeds :meth:`request` and ``streams`` feeds
    :meth:`open_stream`, in call order. Items that are exceptions are
    raised instead. ``handler``, when set, answers :meth:`request`
    calls from the payload instead of the queue.
    """

    def __init__(self, framing: Framing = Framing.SSE):
        self.framing = framing
        self.responses: list = []
        self.streams: list = []
        self.handler: Callable[[dict], Awaitable[dict]] | None = None
        self.call_log: list[dict] = []
        self.closed = False

    async def request(self, model, task, payload, options):
        self.call_log.append({"model": model, "task": task, "payload": payload, "options": options})
        if self.handler is not None:
            return await self.handler(payload)
        item = self.responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item

    async def open_stream(self, model, task, payload, options):
        self.call_log.append({"model": model, "task": task, "payload": payload, "options": options})
        item = self.streams.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item

    async def aclose(self) -> None:
        self.closed = True


def last_user_text(payload: dict) -> str:
    """Text of the final entry of a request payload's contents."""
    return payload["contents"][-1]["parts"][0]["text"]


@pytest.fixture
def fake_transport():
    return FakeTransport()


@pytest.fixture
def make_model(fake_transport):
    """Factory fixture building a model on the fake transport."""
    def _make(name="test-model", transport=None, **kwargs):
        return GenerativeModel(name, transport=transport or fake_transport, **kwargs)
    return _make
