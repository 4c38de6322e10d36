from __future__ import annotations

import os
from typing import Any

from pydantic import BaseModel

from genstream.content import Content, WireModel
from genstream.errors import RequestError
from genstream.framing import Framing
from genstream.signals import AbortSignal

DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com"
DEFAULT_API_VERSION = "v1beta"


class ClientConfig(BaseModel):
    """Connection settings handed to the transport at construction.

    Args:
        api_key: Key sent as ``x-goog-api-key``.
        base_url: Service root, without the API version.
        api_version: Path segment inserted before ``models/``.
        framing: How streamed responses are delimited. ``SSE`` requests
            ``?alt=sse``; ``JSON_ARRAY`` reads the service's default
            streamed array.
        timeout: httpx client timeout in seconds.
        headers: Extra headers sent with every request.
    """

    api_key: str
    base_url: str = DEFAULT_BASE_URL
    api_version: str = DEFAULT_API_VERSION
    framing: Framing = Framing.SSE
    timeout: float = 600.0
    headers: dict[str, str] = {}

    @classmethod
    def from_env(cls, **overrides: Any) -> ClientConfig:
        """Build a config from ``GEMINI_API_KEY`` (or ``GOOGLE_API_KEY``)."""
        values: dict[str, Any] = {}
        api_key = os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY")
        if api_key:
            values["api_key"] = api_key
        if base_url := os.getenv("GENSTREAM_BASE_URL"):
            values["base_url"] = base_url
        if api_version := os.getenv("GENSTREAM_API_VERSION"):
            values["api_version"] = api_version
        values.update(overrides)
        if not values.get("api_key"):
            raise RequestError(
                "No API key found. Pass api_key or set GEMINI_API_KEY."
            )
        return cls(**values)


class RequestOptions(BaseModel):
    """Per-request overrides.

    ``timeout`` is measured from the moment the request is issued and
    covers the whole stream, not each read.
    """

    model_config = {"arbitrary_types_allowed": True}

    timeout: float | None = None
    signal: AbortSignal | None = None
    api_version: str | None = None
    base_url: str | None = None
    custom_headers: dict[str, str] = {}

    def merged(self, other: RequestOptions | None) -> RequestOptions:
        """Overlay ``other`` on top of these options."""
        if other is None:
            return self
        values = {name: getattr(self, name) for name in self.model_fields_set}
        values.update(
            (name, getattr(other, name)) for name in other.model_fields_set
        )
        values["custom_headers"] = {**self.custom_headers, **other.custom_headers}
        return RequestOptions(**values)


class GenerationConfig(WireModel):
    candidate_count: int | None = None
    stop_sequences: list[str] | None = None
    max_output_tokens: int | None = None
    temperature: float | None = None
    top_p: float | None = None
    top_k: int | None = None
    response_mime_type: str | None = None
    response_schema: dict[str, Any] | None = None
    response_logprobs: bool | None = None
    logprobs: int | None = None


class SafetySetting(WireModel):
    category: str
    threshold: str


class GenerateContentRequest(WireModel):
    """Canonical request body for ``generateContent``."""

    contents: list[Content]
    model: str | None = None
    generation_config: GenerationConfig | None = None
    safety_settings: list[SafetySetting] | None = None
    system_instruction: Content | None = None
    tools: list[dict[str, Any]] | None = None
    tool_config: dict[str, Any] | None = None
    cached_content: str | None = None


class CountTokensRequest(WireModel):
    contents: list[Content] | None = None
    generate_content_request: GenerateContentRequest | None = None


class EmbedContentRequest(WireModel):
    """Request body for ``embedContent``.

    ``model`` is only needed inside a batch, where each request names the
    model it is for.
    """

    content: Content
    task_type: str | None = None
    title: str | None = None
    output_dimensionality: int | None = None
    model: str | None = None


class BatchEmbedContentsRequest(WireModel):
    requests: list[EmbedContentRequest]
