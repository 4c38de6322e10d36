"""Request formatting: turns caller shorthand into canonical contents."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from typing import Any, Union

from pydantic import TypeAdapter, ValidationError

from genstream.config import CountTokensRequest, EmbedContentRequest, GenerateContentRequest
from genstream.content import (
    Content,
    FunctionResponsePart,
    Part,
    Role,
    TextPart,
    part_kind,
)
from genstream.errors import RequestError

PartLike = Union[str, Part, dict[str, Any]]
ContentInput = Union[str, Sequence[PartLike]]

_part_adapter = TypeAdapter(Part)

# Part kinds a history entry may carry, per role.
VALID_PARTS_PER_ROLE: dict[Role, frozenset[str]] = {
    Role.USER: frozenset({"text", "inline_data", "file_data"}),
    Role.MODEL: frozenset({
        "text", "function_call", "executable_code", "code_execution_result",
    }),
    Role.FUNCTION: frozenset({"function_response"}),
    Role.SYSTEM: frozenset({"text"}),
}


def to_part(value: PartLike) -> Part:
    if isinstance(value, str):
        return TextPart(text=value)
    try:
        return _part_adapter.validate_python(value)
    except ValidationError as e:
        raise RequestError(f"Invalid part {value!r}: {e}") from e


def format_new_content(request: ContentInput, role: Role | None = None) -> Content:
    """Build one ``Content`` from a string or a list of strings and parts.

    When ``role`` is omitted it is ``function`` if every part is a function
    response and ``user`` otherwise.

    Raises:
        RequestError: If function responses are mixed with other parts.
    """
    if isinstance(request, str):
        parts = [TextPart(text=request)]
    else:
        parts = [to_part(p) for p in request]
    if not parts:
        raise RequestError("Content must have at least one part")
    if role is None:
        role = _infer_role(parts)
    return Content(role=role, parts=parts)


def _infer_role(parts: list[Part]) -> Role:
    function_parts = sum(isinstance(p, FunctionResponsePart) for p in parts)
    if function_parts == 0:
        return Role.USER
    if function_parts == len(parts):
        return Role.FUNCTION
    raise RequestError(
        "Within a single message, function responses cannot be mixed "
        "with other types of part."
    )


def format_system_instruction(
    instruction: str | Content | Sequence[PartLike] | dict | None,
) -> Content | None:
    if instruction is None or isinstance(instruction, Content):
        return instruction
    if isinstance(instruction, dict):
        return Content.model_validate(instruction)
    return format_new_content(instruction, Role.SYSTEM)


def format_generate_content_input(
    request: GenerateContentRequest | dict[str, Any] | ContentInput,
) -> GenerateContentRequest:
    """Accept a full request, a request dict, or content shorthand."""
    if isinstance(request, GenerateContentRequest):
        return request
    if isinstance(request, dict) and "contents" in request:
        try:
            return GenerateContentRequest.model_validate(request)
        except ValidationError as e:
            raise RequestError(f"Invalid request: {e}") from e
    return GenerateContentRequest(contents=[format_new_content(request)])


def format_count_tokens_input(
    request: CountTokensRequest | GenerateContentRequest | dict[str, Any] | ContentInput,
    model: str,
) -> CountTokensRequest:
    if isinstance(request, CountTokensRequest):
        return request
    if isinstance(request, dict) and "generateContentRequest" in request:
        return CountTokensRequest.model_validate(request)
    formatted = format_generate_content_input(request)
    # A bare contents list cannot carry system instruction or tools, so
    # send the full request instead.
    payload = formatted.model_copy(update={"model": f"models/{model}"})
    return CountTokensRequest(generate_content_request=payload)


def format_embed_content_input(
    request: EmbedContentRequest | dict[str, Any] | ContentInput,
) -> EmbedContentRequest:
    """Accept a full embed request, a request dict, or content shorthand."""
    if isinstance(request, EmbedContentRequest):
        return request
    if isinstance(request, dict) and "content" in request:
        try:
            return EmbedContentRequest.model_validate(request)
        except ValidationError as e:
            raise RequestError(f"Invalid embed request: {e}") from e
    return EmbedContentRequest(content=format_new_content(request))


def validate_chat_history(history: Iterable[Content]) -> list[Content]:
    """Check that ``history`` is a well-formed conversation.

    Raises:
        RequestError: If the first entry is not from the user, an entry has
            no role or no parts, or a role carries a part kind it may not.
    """
    validated = []
    for position, entry in enumerate(history):
        if isinstance(entry, dict):
            try:
                entry = Content.model_validate(entry)
            except ValidationError as e:
                raise RequestError(f"Invalid history item {entry!r}: {e}") from e
        if entry.role is None:
            raise RequestError(f"Missing role for history item: {entry.to_wire()}")
        if position == 0 and entry.role is not Role.USER:
            raise RequestError(
                f"First content should be with role 'user', got {entry.role.value}"
            )
        if not entry.parts:
            raise RequestError("Each Content should have at least one part")
        allowed = VALID_PARTS_PER_ROLE[entry.role]
        for part in entry.parts:
            kind = part_kind(part)
            if kind != "opaque" and kind not in allowed:
                raise RequestError(
                    f"Content with role '{entry.role.value}' can't contain '{kind}' part"
                )
        validated.append(entry)
    return validated
