"""Unit tests for the httpx transport, using ``httpx.MockTransport``."""

import json

import httpx
import pytest

from genstream.config import ClientConfig, RequestOptions
from genstream.errors import AbortedError, TransportError
from genstream.framing import Framing
from genstream.transport import API_CLIENT_HEADER, HttpTransport, Task

from tests.conftest import make_chunk, sse_bytes


def make_transport(handler, **config) -> HttpTransport:
    config = ClientConfig(api_key="test-key", **config)
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpTransport(config, client=client)


class TestUrlAndHeaders:
    def test_stream_url_requests_sse(self):
        transport = make_transport(lambda r: httpx.Response(200))
        url = transport.url("m", Task.STREAM_GENERATE_CONTENT, RequestOptions(), stream=True)
        assert url == (
            "https://generativelanguage.googleapis.com/v1beta/"
            "models/m:streamGenerateContent?alt=sse"
        )

    def test_json_array_stream_url(self):
        transport = make_transport(lambda r: httpx.Response(200), framing=Framing.JSON_ARRAY)
        url = transport.url("m", Task.STREAM_GENERATE_CONTENT, RequestOptions(), stream=True)
        assert url.endswith("models/m:streamGenerateContent")

    def test_options_override_endpoint(self):
        transport = make_transport(lambda r: httpx.Response(200))
        options = RequestOptions(base_url="http://local/", api_version="v1")
        url = transport.url("m", Task.GENERATE_CONTENT, options)
        assert url == "http://local/v1/models/m:generateContent"

    def test_headers(self):
        transport = make_transport(lambda r: httpx.Response(200), headers={"x-a": "1"})
        headers = transport.headers(RequestOptions(custom_headers={"x-b": "2"}))
        assert headers["x-goog-api-key"] == "test-key"
        assert headers["x-goog-api-client"] == API_CLIENT_HEADER
        assert headers["x-a"] == "1"
        assert headers["x-b"] == "2"


class TestRequest:
    @pytest.mark.asyncio
    async def test_posts_payload_and_decodes(self):
        seen = {}

        def handler(request: httpx.Request):
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            seen["key"] = request.headers["x-goog-api-key"]
            return httpx.Response(200, json={"totalTokens": 3})

        async with make_transport(handler) as transport:
            data = await transport.request(
                "m", Task.COUNT_TOKENS, {"contents": []}, RequestOptions(),
            )

        assert data == {"totalTokens": 3}
        assert seen["url"].endswith("/models/m:countTokens")
        assert seen["body"] == {"contents": []}
        assert seen["key"] == "test-key"

    @pytest.mark.asyncio
    async def test_error_status_raises_with_details(self):
        details = [{"reason": "API_KEY_INVALID"}]

        def handler(request):
            return httpx.Response(400, json={
                "error": {"code": 400, "message": "API key not valid", "details": details},
            })

        transport = make_transport(handler)
        with pytest.raises(TransportError) as exc_info:
            await transport.request("m", Task.GENERATE_CONTENT, {}, RequestOptions())

        error = exc_info.value
        assert error.status == 400
        assert error.status_text == "Bad Request"
        assert error.error_details == details
        assert "[400 Bad Request] API key not valid" in str(error)
        assert "API_KEY_INVALID" in str(error)

    @pytest.mark.asyncio
    async def test_error_status_with_plain_body(self):
        transport = make_transport(lambda r: httpx.Response(503, text="overloaded"))
        with pytest.raises(TransportError, match=r"\[503 Service Unavailable\] overloaded"):
            await transport.request("m", Task.GENERATE_CONTENT, {}, RequestOptions())

    @pytest.mark.asyncio
    async def test_invalid_json_raises(self):
        transport = make_transport(lambda r: httpx.Response(200, text="not json"))
        with pytest.raises(TransportError, match="Invalid JSON"):
            await transport.request("m", Task.GENERATE_CONTENT, {}, RequestOptions())

    @pytest.mark.asyncio
    async def test_connection_error_raises(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        transport = make_transport(handler)
        with pytest.raises(TransportError, match="refused"):
            await transport.request("m", Task.GENERATE_CONTENT, {}, RequestOptions())

    @pytest.mark.asyncio
    async def test_timeout_raises_aborted(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        transport = make_transport(handler)
        with pytest.raises(AbortedError, match="timed out"):
            await transport.request("m", Task.GENERATE_CONTENT, {}, RequestOptions())


class TestOpenStream:
    @pytest.mark.asyncio
    async def test_streams_body(self):
        body = sse_bytes(make_chunk("a"), make_chunk("b"))
        transport = make_transport(lambda r: httpx.Response(200, content=body))

        stream = await transport.open_stream(
            "m", Task.STREAM_GENERATE_CONTENT, {}, RequestOptions(),
        )
        received = b"".join([data async for data in stream])
        await stream.aclose()

        assert received == body

    @pytest.mark.asyncio
    async def test_error_status_raises_before_streaming(self):
        transport = make_transport(lambda r: httpx.Response(429, json={
            "error": {"message": "Resource exhausted"},
        }))
        with pytest.raises(TransportError) as exc_info:
            await transport.open_stream("m", Task.STREAM_GENERATE_CONTENT, {}, RequestOptions())
        assert exc_info.value.status == 429
        assert "Resource exhausted" in str(exc_info.value)
