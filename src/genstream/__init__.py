"""Streaming client for generative content services."""

__version__ = "0.1.0"

from genstream.accumulator import ResponseAccumulator, aggregate_responses
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
from genstream.content import (
    Content,
    FunctionCall,
    FunctionCallPart,
    FunctionResponse,
    FunctionResponsePart,
    HistoryEntry,
    Part,
    Role,
    TextPart,
)
from genstream.errors import (
    AbortedError,
    BlockedContentError,
    GenerativeError,
    ParseError,
    RequestError,
    TransportError,
)
from genstream.framing import ChunkFramer, Framing, frame_chunks
from genstream.instrumentation import instrument, uninstrument
from genstream.model import GenerativeModel
from genstream.response import (
    BatchEmbedContentsResponse,
    Candidate,
    ContentEmbedding,
    CountTokensResponse,
    EmbedContentResponse,
    GenerateContentResponse,
)
from genstream.session import ChatSession, ChatStream
from genstream.signals import AbortSignal
from genstream.streaming import GenerateContentStream
from genstream.transport import HttpTransport, Transport

__all__ = [
    "AbortSignal",
    "AbortedError",
    "BatchEmbedContentsRequest",
    "BatchEmbedContentsResponse",
    "BlockedContentError",
    "Candidate",
    "ChatSession",
    "ChatStream",
    "ChunkFramer",
    "ClientConfig",
    "Content",
    "ContentEmbedding",
    "CountTokensRequest",
    "CountTokensResponse",
    "EmbedContentRequest",
    "EmbedContentResponse",
    "Framing",
    "FunctionCall",
    "FunctionCallPart",
    "FunctionResponse",
    "FunctionResponsePart",
    "GenerateContentRequest",
    "GenerateContentResponse",
    "GenerateContentStream",
    "GenerationConfig",
    "GenerativeError",
    "GenerativeModel",
    "HistoryEntry",
    "HttpTransport",
    "ParseError",
    "Part",
    "RequestError",
    "RequestOptions",
    "ResponseAccumulator",
    "Role",
    "SafetySetting",
    "TextPart",
    "Transport",
    "TransportError",
    "aggregate_responses",
    "frame_chunks",
    "instrument",
    "uninstrument",
]
