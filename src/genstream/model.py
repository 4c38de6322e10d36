from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

from pydantic import ValidationError

from genstream import instrumentation
from genstream.config import (
    BatchEmbedContentsRequest,
    ClientConfig,
    CountTokensRequest,
    EmbedContentRequest,
    GenerateContentRequest,
    GenerationConfig,
    RequestOptions,
    SafetySetting,
)
from genstream.content import Content
from genstream.errors import GenerativeError, ParseError, RequestError
from genstream.formatting import (
    ContentInput,
    PartLike,
    format_count_tokens_input,
    format_embed_content_input,
    format_generate_content_input,
    format_system_instruction,
)
from genstream.framing import frame_chunks
from genstream.response import (
    BatchEmbedContentsResponse,
    CountTokensResponse,
    EmbedContentResponse,
    GenerateContentResponse,
)
from genstream.session import ChatSession
from genstream.signals import AbortScope
from genstream.streaming import GenerateContentStream
from genstream.transport import HttpTransport, Task, Transport

logger = logging.getLogger(__name__)


class GenerativeModel:
    """Entry point for generation calls against one model.

    Model-level settings (generation config, safety settings, system
    instruction, tools) are merged into every request that does not set
    them itself.

    Args:
        model: Model name, with or without the ``models/`` prefix.
        config: Connection settings. Read from the environment when
            neither ``config`` nor ``transport`` is given.
        transport: Transport to send requests through. Defaults to an
            :class:`HttpTransport` built from ``config``.
        request_options: Defaults for every request, overridable per call.

    Example::

        model = GenerativeModel("gemini-2.0-flash")
        response = await model.generate_content("Why is the sky blue?")
        print(response.text)
    """

    def __init__(
        self,
        model: str,
        config: ClientConfig | None = None,
        transport: Transport | None = None,
        generation_config: GenerationConfig | dict | None = None,
        safety_settings: Sequence[SafetySetting | dict] | None = None,
        system_instruction: str | Content | Sequence[PartLike] | None = None,
        tools: list[dict[str, Any]] | None = None,
        tool_config: dict[str, Any] | None = None,
        request_options: RequestOptions | None = None,
    ):
        self.model = model.removeprefix("models/")
        if transport is None:
            transport = HttpTransport(config or ClientConfig.from_env())
        self.transport = transport
        if isinstance(generation_config, dict):
            generation_config = GenerationConfig.model_validate(generation_config)
        self.generation_config = generation_config
        self.safety_settings = [
            SafetySetting.model_validate(s) if isinstance(s, dict) else s
            for s in safety_settings or []
        ] or None
        self.system_instruction = format_system_instruction(system_instruction)
        self.tools = tools
        self.tool_config = tool_config
        self.request_options = request_options or RequestOptions()

    async def __aenter__(self) -> GenerativeModel:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.transport.aclose()

    def build_request(
        self, request: GenerateContentRequest | dict | ContentInput,
    ) -> GenerateContentRequest:
        """Format ``request`` and fill in model-level defaults."""
        formatted = format_generate_content_input(request)
        defaults = {
            "generation_config": self.generation_config,
            "safety_settings": self.safety_settings,
            "system_instruction": self.system_instruction,
            "tools": self.tools,
            "tool_config": self.tool_config,
        }
        updates = {
            name: value for name, value in defaults.items()
            if value is not None and getattr(formatted, name) is None
        }
        return formatted.model_copy(update=updates) if updates else formatted

    async def generate_content(
        self,
        request: GenerateContentRequest | dict | ContentInput,
        options: RequestOptions | None = None,
    ) -> GenerateContentResponse:
        """Make a single non-streaming call."""
        return await self.send_request(self.build_request(request), options)

    async def generate_content_stream(
        self,
        request: GenerateContentRequest | dict | ContentInput,
        options: RequestOptions | None = None,
    ) -> GenerateContentStream:
        """Make a streaming call.

        Returns once the service has accepted the request; chunks are
        read as the stream is consumed.
        """
        return await self.open_stream(self.build_request(request), options)

    async def count_tokens(
        self,
        request: CountTokensRequest | GenerateContentRequest | dict | ContentInput,
        options: RequestOptions | None = None,
    ) -> CountTokensResponse:
        if isinstance(request, CountTokensRequest) or (
            isinstance(request, dict) and "generateContentRequest" in request
        ):
            formatted = format_count_tokens_input(request, self.model)
        else:
            formatted = format_count_tokens_input(self.build_request(request), self.model)
        data = await self._unary(Task.COUNT_TOKENS, formatted.to_wire(), options)
        return _validate_response(CountTokensResponse, data)

    async def embed_content(
        self,
        request: EmbedContentRequest | dict | ContentInput,
        options: RequestOptions | None = None,
    ) -> EmbedContentResponse:
        """Embed one piece of content."""
        formatted = format_embed_content_input(request)
        data = await self._unary(Task.EMBED_CONTENT, formatted.to_wire(), options)
        return _validate_response(EmbedContentResponse, data)

    async def batch_embed_contents(
        self,
        request: BatchEmbedContentsRequest | dict,
        options: RequestOptions | None = None,
    ) -> BatchEmbedContentsResponse:
        """Embed several pieces of content in one call.

        Each request in the batch is sent with this model's name.
        """
        if isinstance(request, dict):
            try:
                request = BatchEmbedContentsRequest.model_validate(request)
            except ValidationError as e:
                raise RequestError(f"Invalid batch embed request: {e}") from e
        batch = BatchEmbedContentsRequest(requests=[
            r.model_copy(update={"model": f"models/{self.model}"})
            for r in request.requests
        ])
        data = await self._unary(Task.BATCH_EMBED_CONTENTS, batch.to_wire(), options)
        return _validate_response(BatchEmbedContentsResponse, data)

    def start_chat(
        self,
        history: Sequence[Content | dict] | None = None,
        generation_config: GenerationConfig | dict | None = None,
        safety_settings: Sequence[SafetySetting | dict] | None = None,
        system_instruction: str | Content | Sequence[PartLike] | None = None,
        tools: list[dict[str, Any]] | None = None,
        tool_config: dict[str, Any] | None = None,
        request_options: RequestOptions | None = None,
    ) -> ChatSession:
        """Start a :class:`ChatSession` on this model.

        Settings given here override the model's for every turn of the
        session; anything left unset falls back to the model.
        """
        return ChatSession(
            self,
            history=history,
            generation_config=generation_config,
            safety_settings=safety_settings,
            system_instruction=system_instruction,
            tools=tools,
            tool_config=tool_config,
            request_options=request_options,
        )

    # ------------------------------------------------------------------
    # Prepared-request entry points, shared with ChatSession
    # ------------------------------------------------------------------

    async def send_request(
        self,
        request: GenerateContentRequest,
        options: RequestOptions | None = None,
    ) -> GenerateContentResponse:
        options = self.request_options.merged(options)
        scope = AbortScope(options.signal, options.timeout)
        async with instrumentation.generate_span(self.model) as span:
            try:
                data = await scope.run(self.transport.request(
                    self.model, Task.GENERATE_CONTENT, request.to_wire(), options,
                ))
                response = _validate_response(GenerateContentResponse, data)
            except GenerativeError as e:
                instrumentation.record_error(span, e)
                raise
            instrumentation.record_usage(span, response.usage_metadata, response.model_version)
        return response

    async def _unary(
        self, task: Task, payload: dict[str, Any], options: RequestOptions | None,
    ) -> dict[str, Any]:
        options = self.request_options.merged(options)
        scope = AbortScope(options.signal, options.timeout)
        return await scope.run(self.transport.request(self.model, task, payload, options))

    async def open_stream(
        self,
        request: GenerateContentRequest,
        options: RequestOptions | None = None,
    ) -> GenerateContentStream:
        options = self.request_options.merged(options)
        scope = AbortScope(options.signal, options.timeout)
        span = instrumentation.start_stream_span(self.model)
        try:
            body = await scope.run(self.transport.open_stream(
                self.model, Task.STREAM_GENERATE_CONTENT, request.to_wire(), options,
            ))
        except GenerativeError as e:
            instrumentation.end_span(span, error=e)
            raise
        chunks = frame_chunks(body, self.transport.framing, scope)
        return GenerateContentStream(chunks, scope=scope, span=span)


def _validate_response(response_type, data):
    try:
        return response_type.model_validate(data)
    except ValidationError as e:
        raise ParseError(f"Malformed response: {e}", buffer=data) from e
