"""Merging of streamed response chunks.

The service streams a response as a sequence of partial
``GenerateContentResponse`` chunks. :class:`ResponseAccumulator` folds them
into one aggregate: text deltas of a candidate are concatenated, structured
parts are appended whole, and metadata is last-write-wins.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError

from genstream.content import Content, Part, Role, TextPart
from genstream.errors import ParseError
from genstream.response import Candidate, GenerateContentResponse

# Candidate fields that are replaced by the latest chunk carrying them.
_CANDIDATE_OVERRIDES = (
    "finish_reason",
    "finish_message",
    "safety_ratings",
    "citation_metadata",
    "grounding_metadata",
    "logprobs_result",
    "avg_logprobs",
    "token_count",
)


@dataclass
class _CandidateState:
    """Mutable accumulation for one candidate index."""

    index: int
    role: Role | None = None
    has_content: bool = False
    parts: list[Part] = field(default_factory=list)
    overrides: dict[str, Any] = field(default_factory=dict)

    def add_part(self, part: Part) -> None:
        last = self.parts[-1] if self.parts else None
        if (
            isinstance(part, TextPart)
            and isinstance(last, TextPart)
            and bool(part.thought) == bool(last.thought)
        ):
            self.parts[-1] = last.model_copy(update={"text": last.text + part.text})
        else:
            self.parts.append(part)

    def build(self) -> Candidate:
        content = None
        if self.has_content:
            content = Content(role=self.role or Role.MODEL, parts=list(self.parts))
        return Candidate(index=self.index, content=content, **self.overrides)


class ResponseAccumulator:
    """Folds response chunks into one aggregate response.

    ``feed()`` returns a cumulative snapshot after every chunk;
    ``finalize()`` seals the accumulator and returns the aggregate.
    """

    def __init__(self) -> None:
        self._candidates: dict[int, _CandidateState] = {}
        self._top_level: dict[str, Any] = {}
        self._chunk_count = 0
        self._prompt_blocked = False
        self._sealed: GenerateContentResponse | None = None

    @property
    def chunk_count(self) -> int:
        return self._chunk_count

    @property
    def sealed(self) -> bool:
        return self._sealed is not None

    def feed(
        self, chunk: GenerateContentResponse | dict[str, Any],
    ) -> GenerateContentResponse:
        self.add(chunk)
        return self.snapshot()

    def add(
        self, chunk: GenerateContentResponse | dict[str, Any],
    ) -> GenerateContentResponse:
        """Fold ``chunk`` without building a snapshot.

        Returns the validated chunk.
        """
        if self._sealed is not None:
            raise RuntimeError("feed() called on a sealed ResponseAccumulator")
        if isinstance(chunk, dict):
            try:
                chunk = GenerateContentResponse.model_validate(chunk)
            except ValidationError as e:
                raise ParseError(
                    f"Malformed response chunk: {e}", buffer=chunk,
                    response=self.snapshot(),
                ) from e

        if (
            self._chunk_count == 0
            and not chunk.candidates
            and chunk.prompt_feedback is not None
            and chunk.prompt_feedback.block_reason
        ):
            self._prompt_blocked = True
        self._chunk_count += 1

        for candidate in chunk.candidates:
            state = self._candidates.get(candidate.index)
            if state is None:
                state = self._candidates[candidate.index] = _CandidateState(
                    index=candidate.index,
                )
            if candidate.content is not None:
                state.has_content = True
                if state.role is None and candidate.content.role is not None:
                    state.role = candidate.content.role
                for part in candidate.content.parts:
                    state.add_part(part)
            for name in _CANDIDATE_OVERRIDES:
                value = getattr(candidate, name)
                if value is not None:
                    state.overrides[name] = value
            if candidate.model_extra:
                state.overrides.update(candidate.model_extra)

        for name in ("prompt_feedback", "usage_metadata", "model_version"):
            value = getattr(chunk, name)
            if value is not None:
                self._top_level[name] = value
        if chunk.model_extra:
            self._top_level.update(chunk.model_extra)

        return chunk

    def snapshot(self) -> GenerateContentResponse:
        """Cumulative response for everything fed so far."""
        if self._sealed is not None:
            return self._sealed
        return GenerateContentResponse(
            candidates=[
                self._candidates[i].build() for i in sorted(self._candidates)
            ],
            prompt_blocked=self._prompt_blocked,
            **self._top_level,
        )

    def finalize(self) -> GenerateContentResponse:
        """Seal and return the aggregate. Idempotent."""
        if self._sealed is None:
            self._sealed = self.snapshot()
        return self._sealed


def aggregate_responses(
    chunks: Iterable[GenerateContentResponse | dict[str, Any]],
) -> GenerateContentResponse:
    """Fold a complete chunk sequence into its sealed aggregate."""
    accumulator = ResponseAccumulator()
    for chunk in chunks:
        accumulator.feed(chunk)
    return accumulator.finalize()
