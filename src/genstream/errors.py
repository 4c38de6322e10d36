"""Error taxonomy for genstream.

Every error raised by the library derives from :class:`GenerativeError`
and carries whatever partial state was available when it happened, so
callers can inspect what the service sent before things went wrong.
"""

from __future__ import annotations

from typing import Any


class GenerativeError(Exception):
    """Base error with optional response context."""

    def __init__(self, message: str, response: Any = None):
        super().__init__(message)
        self.response = response


class RequestError(GenerativeError):
    """The caller supplied content the service would reject."""


class ParseError(GenerativeError):
    """A streamed chunk could not be framed or decoded.

    ``buffer`` holds the unconsumed text (or the offending chunk) at the
    point of failure.
    """

    def __init__(self, message: str, buffer: Any = None, response: Any = None):
        super().__init__(message, response=response)
        self.buffer = buffer


class BlockedContentError(GenerativeError):
    """The service blocked the prompt or the candidate.

    Raised on text extraction from a blocked response, and by chat turns
    whose response was blocked.
    """


class TransportError(GenerativeError):
    """HTTP-level failure talking to the service."""

    def __init__(
        self,
        message: str,
        status: int | None = None,
        status_text: str | None = None,
        error_details: list[dict] | None = None,
    ):
        super().__init__(message)
        self.status = status
        self.status_text = status_text
        self.error_details = error_details or []


class AbortedError(GenerativeError):
    """The request was cancelled or its timeout elapsed.

    ``partial`` is the last cumulative snapshot seen before the abort, if
    any. ``half_committed`` is set by a chat session when the user entry of
    the aborted turn was already committed to history.
    """

    def __init__(
        self,
        reason: str = "Request aborted",
        partial: Any = None,
    ):
        super().__init__(reason, response=partial)
        self.reason = reason
        self.partial = partial
        self.half_committed = False
