"""Transport layer: moves request payloads to the service and bytes back.

The rest of the library only depends on :class:`Transport`. The default
:class:`HttpTransport` talks to the REST endpoint with ``httpx``.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from enum import Enum
from typing import Any

import httpx

from genstream import __version__
from genstream.config import ClientConfig, RequestOptions
from genstream.errors import AbortedError, TransportError
from genstream.framing import Framing

logger = logging.getLogger(__name__)

API_CLIENT_HEADER = f"genstream/{__version__}"


class Task(Enum):
    GENERATE_CONTENT = "generateContent"
    STREAM_GENERATE_CONTENT = "streamGenerateContent"
    COUNT_TOKENS = "countTokens"
    EMBED_CONTENT = "embedContent"
    BATCH_EMBED_CONTENTS = "batchEmbedContents"


class ByteStream(ABC):
    """An open streamed response body."""

    @abstractmethod
    def __aiter__(self) -> AsyncIterator[bytes]:
        ...

    async def aclose(self) -> None:
        """Release the underlying connection."""


class Transport(ABC):
    """Sends prepared payloads to the service.

    Implementations raise :class:`TransportError` for service or network
    failures and :class:`AbortedError` for timeouts.
    """

    framing: Framing = Framing.SSE

    @abstractmethod
    async def request(
        self,
        model: str,
        task: Task,
        payload: dict[str, Any],
        options: RequestOptions,
    ) -> dict[str, Any]:
        """Send a payload and return the decoded JSON response."""
        ...

    @abstractmethod
    async def open_stream(
        self,
        model: str,
        task: Task,
        payload: dict[str, Any],
        options: RequestOptions,
    ) -> ByteStream:
        """Send a payload and return the response body as it arrives.

        Returns once response headers arrive; a non-success status
        raises here rather than mid-stream.
        """
        ...

    async def aclose(self) -> None:
        """Release transport resources."""


class _HttpxByteStream(ByteStream):

    def __init__(self, response: httpx.Response):
        self._response = response

    async def __aiter__(self) -> AsyncIterator[bytes]:
        try:
            async for data in self._response.aiter_bytes():
                yield data
        except httpx.TimeoutException as e:
            raise AbortedError(f"Stream timed out: {e}") from e
        except httpx.HTTPError as e:
            raise TransportError(f"Stream error: {e}") from e

    async def aclose(self) -> None:
        await self._response.aclose()


class HttpTransport(Transport):
    """REST transport built on ``httpx.AsyncClient``.

    Args:
        config: Credentials and endpoint settings.
        client: Optional preconfigured client, e.g. one using
            ``httpx.MockTransport`` in tests. The transport closes it
            on :meth:`aclose`.
    """

    def __init__(
        self,
        config: ClientConfig,
        client: httpx.AsyncClient | None = None,
    ):
        self.config = config
        self.framing = config.framing
        self.client = client or httpx.AsyncClient(timeout=config.timeout)

    async def __aenter__(self) -> HttpTransport:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self.client.aclose()

    def url(self, model: str, task: Task, options: RequestOptions, stream: bool = False) -> str:
        base_url = (options.base_url or self.config.base_url).rstrip("/")
        api_version = options.api_version or self.config.api_version
        url = f"{base_url}/{api_version}/models/{model}:{task.value}"
        if stream and self.framing is Framing.SSE:
            url += "?alt=sse"
        return url

    def headers(self, options: RequestOptions) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "x-goog-api-client": API_CLIENT_HEADER,
            "x-goog-api-key": self.config.api_key,
            **self.config.headers,
            **options.custom_headers,
        }

    async def request(self, model, task, payload, options):
        response = await self._send(model, task, payload, options, stream=False)
        try:
            return response.json()
        except json.JSONDecodeError as e:
            raise TransportError(
                f"Invalid JSON in response from {response.request.url}: {e}",
                status=response.status_code,
            ) from e

    async def open_stream(self, model, task, payload, options):
        response = await self._send(model, task, payload, options, stream=True)
        return _HttpxByteStream(response)

    async def _send(
        self,
        model: str,
        task: Task,
        payload: dict[str, Any],
        options: RequestOptions,
        stream: bool,
    ) -> httpx.Response:
        url = self.url(model, task, options, stream=stream)
        request = self.client.build_request(
            "POST", url, headers=self.headers(options), json=payload,
        )
        logger.debug(f"POST {url}")
        try:
            response = await self.client.send(request, stream=stream)
        except httpx.TimeoutException as e:
            raise AbortedError(f"Request to {url} timed out: {e}") from e
        except httpx.HTTPError as e:
            raise TransportError(f"Error fetching from {url}: {e}") from e

        if response.is_success:
            return response

        try:
            await response.aread()
        finally:
            await response.aclose()
        raise _error_from_response(url, response)


def _error_from_response(url: str, response: httpx.Response) -> TransportError:
    message = ""
    details = None
    try:
        error = response.json()["error"]
        message = error.get("message", "")
        details = error.get("details")
        if details:
            message += f" {json.dumps(details)}"
    except (json.JSONDecodeError, KeyError, TypeError, AttributeError):
        message = response.text
    return TransportError(
        f"Error fetching from {url}: "
        f"[{response.status_code} {response.reason_phrase}] {message}".rstrip(),
        status=response.status_code,
        status_text=response.reason_phrase,
        error_details=details,
    )
