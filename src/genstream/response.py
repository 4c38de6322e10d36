"""Response models and text-extraction helpers.

A streamed chunk and the merged aggregate share one type,
:class:`GenerateContentResponse`, so the same helpers work on partial
snapshots and on the sealed result.
"""

from __future__ import annotations

import logging
from typing import Any

from pydantic import Field

from genstream.content import (
    Content,
    FunctionCall,
    FunctionCallPart,
    TextPart,
    WireModel,
)
from genstream.errors import BlockedContentError

logger = logging.getLogger(__name__)

# Finish reasons that mean the candidate was withheld by the service.
BLOCKING_FINISH_REASONS = frozenset({
    "SAFETY",
    "RECITATION",
    "LANGUAGE",
    "BLOCKLIST",
    "PROHIBITED_CONTENT",
    "SPII",
})


class SafetyRating(WireModel):
    category: str
    probability: str | None = None
    blocked: bool | None = None


class CitationSource(WireModel):
    start_index: int | None = None
    end_index: int | None = None
    uri: str | None = None
    license: str | None = None


class CitationMetadata(WireModel):
    citation_sources: list[CitationSource] = []


class GroundingMetadata(WireModel):
    web_search_queries: list[str] | None = None
    grounding_chunks: list[dict[str, Any]] | None = None
    grounding_supports: list[dict[str, Any]] | None = None
    search_entry_point: dict[str, Any] | None = None


class LogprobsResult(WireModel):
    top_candidates: list[dict[str, Any]] = []
    chosen_candidates: list[dict[str, Any]] = []


class Candidate(WireModel):
    index: int = 0
    content: Content | None = None
    finish_reason: str | None = None
    finish_message: str | None = None
    safety_ratings: list[SafetyRating] | None = None
    citation_metadata: CitationMetadata | None = None
    grounding_metadata: GroundingMetadata | None = None
    logprobs_result: LogprobsResult | None = None
    avg_logprobs: float | None = None
    token_count: int | None = None

    @property
    def blocked(self) -> bool:
        return self.finish_reason in BLOCKING_FINISH_REASONS


class PromptFeedback(WireModel):
    block_reason: str | None = None
    block_reason_message: str | None = None
    safety_ratings: list[SafetyRating] = []


class UsageMetadata(WireModel):
    prompt_token_count: int | None = None
    candidates_token_count: int | None = None
    total_token_count: int | None = None
    cached_content_token_count: int | None = None
    thoughts_token_count: int | None = None


class GenerateContentResponse(WireModel):
    candidates: list[Candidate] = []
    prompt_feedback: PromptFeedback | None = None
    usage_metadata: UsageMetadata | None = None
    model_version: str | None = None
    # Set by the stream merger when the very first chunk reported a
    # blocked prompt. Never sent or received on the wire.
    prompt_blocked: bool = Field(default=False, exclude=True)

    @property
    def blocked(self) -> bool:
        """True if the prompt or the first candidate was blocked."""
        if not self.candidates:
            if self.prompt_blocked:
                return True
            return bool(self.prompt_feedback and self.prompt_feedback.block_reason)
        return self.candidates[0].blocked

    @property
    def text(self) -> str:
        """Concatenated text of the first candidate.

        Raises:
            BlockedContentError: If the prompt was blocked, or the first
                candidate finished for a blocking reason.
        """
        if not self.candidates:
            if self.prompt_blocked or self.prompt_feedback is not None:
                raise BlockedContentError(
                    f"Text not available. {self.block_message()}".rstrip(),
                    response=self,
                )
            return ""
        if len(self.candidates) > 1:
            logger.warning(
                f"This response had {len(self.candidates)} candidates. "
                "Returning text from the first candidate only. "
                "Access response.candidates directly to use the other candidates."
            )
        first = self.candidates[0]
        if first.blocked:
            raise BlockedContentError(self.block_message(), response=self)
        if first.content is None:
            return ""
        return "".join(
            part.text for part in first.content.parts
            if isinstance(part, TextPart) and not part.thought
        )

    @property
    def function_calls(self) -> list[FunctionCall]:
        """Function calls requested by the first candidate, in order."""
        if not self.candidates or self.candidates[0].content is None:
            return []
        return [
            part.function_call for part in self.candidates[0].content.parts
            if isinstance(part, FunctionCallPart)
        ]

    def block_message(self) -> str:
        """Describe why this response was blocked, or ``""`` if it was not."""
        message = ""
        if not self.candidates and self.prompt_feedback is not None:
            message = "Response was blocked"
            if self.prompt_feedback.block_reason:
                message += f" due to {self.prompt_feedback.block_reason}"
            if self.prompt_feedback.block_reason_message:
                message += f": {self.prompt_feedback.block_reason_message}"
        elif not self.candidates and self.prompt_blocked:
            message = "Response was blocked"
        elif self.candidates and self.candidates[0].blocked:
            first = self.candidates[0]
            message = f"Candidate was blocked due to {first.finish_reason}"
            if first.finish_message:
                message += f": {first.finish_message}"
        return message


class CountTokensResponse(WireModel):
    total_tokens: int = 0
    cached_content_token_count: int | None = None


class ContentEmbedding(WireModel):
    values: list[float] = []


class EmbedContentResponse(WireModel):
    embedding: ContentEmbedding | None = None


class BatchEmbedContentsResponse(WireModel):
    embeddings: list[ContentEmbedding] = []
