from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Union

from pydantic import BaseModel, ConfigDict, Discriminator, Tag, field_serializer
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    """Base for every model exchanged with the service.

    Fields are snake_case in Python and camelCase on the wire. Unknown
    fields sent by the service are kept rather than dropped.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="allow",
    )

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class Role(Enum):
    USER = "user"
    MODEL = "model"
    FUNCTION = "function"
    SYSTEM = "system"


class Blob(WireModel):
    mime_type: str
    data: str  # base64


class FileData(WireModel):
    mime_type: str | None = None
    file_uri: str


class FunctionCall(WireModel):
    name: str
    args: dict[str, Any] = {}
    id: str | None = None


class FunctionResponse(WireModel):
    name: str
    response: dict[str, Any] = {}
    id: str | None = None


class ExecutableCode(WireModel):
    language: str
    code: str


class CodeExecutionResult(WireModel):
    outcome: str
    output: str | None = None


class TextPart(WireModel):
    text: str
    thought: bool | None = None


class InlineDataPart(WireModel):
    inline_data: Blob


class FileDataPart(WireModel):
    file_data: FileData


class FunctionCallPart(WireModel):
    function_call: FunctionCall


class FunctionResponsePart(WireModel):
    function_response: FunctionResponse


class ExecutableCodePart(WireModel):
    executable_code: ExecutableCode


class CodeExecutionResultPart(WireModel):
    code_execution_result: CodeExecutionResult


class OpaquePart(WireModel):
    """A part shape this library does not model. Kept verbatim."""


# Wire key -> (tag, class). Order matters only for malformed parts that
# carry several payload keys; the first match wins.
_PART_KINDS: list[tuple[str, str, type[WireModel]]] = [
    ("text", "text", TextPart),
    ("inlineData", "inline_data", InlineDataPart),
    ("fileData", "file_data", FileDataPart),
    ("functionCall", "function_call", FunctionCallPart),
    ("functionResponse", "function_response", FunctionResponsePart),
    ("executableCode", "executable_code", ExecutableCodePart),
    ("codeExecutionResult", "code_execution_result", CodeExecutionResultPart),
]
_TAG_BY_CLASS = {cls: tag for _, tag, cls in _PART_KINDS}
_TAG_BY_CLASS[OpaquePart] = "opaque"


def part_kind(value: Any) -> str:
    """Return the variant tag of a part given as a dict or a model."""
    if isinstance(value, BaseModel):
        return _TAG_BY_CLASS.get(type(value), "opaque")
    if isinstance(value, dict):
        for wire_key, tag, _ in _PART_KINDS:
            if wire_key in value or tag in value:
                return tag
    return "opaque"


Part = Annotated[
    Union[
        Annotated[TextPart, Tag("text")],
        Annotated[InlineDataPart, Tag("inline_data")],
        Annotated[FileDataPart, Tag("file_data")],
        Annotated[FunctionCallPart, Tag("function_call")],
        Annotated[FunctionResponsePart, Tag("function_response")],
        Annotated[ExecutableCodePart, Tag("executable_code")],
        Annotated[CodeExecutionResultPart, Tag("code_execution_result")],
        Annotated[OpaquePart, Tag("opaque")],
    ],
    Discriminator(part_kind),
]


class Content(WireModel):
    """One turn of a conversation. Used both in requests and in history."""

    role: Role | None = None
    parts: list[Part] = []

    @field_serializer("role")
    def serialize_role(self, role: Role | None, _info) -> str | None:
        return role.value if role is not None else None


# A committed chat turn.
HistoryEntry = Content
