"""
Inbound turn validation.

Two wire formats are accepted: the current one, which carries the whole
message list, and the legacy single-message format. Validators are tried
in order and the first success is normalised to a TurnRequest. When
nothing validates, a ValidationRejection lists every failed field path of
every format.
"""

import logging
from typing import Annotated, Any, Callable, Dict, List, Literal, Optional, Tuple, Type, Union
from uuid import UUID, uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Discriminator,
    Field,
    HttpUrl,
    Tag,
    ValidationError,
)

from toolchat.models import (
    FileReferencePart,
    Message,
    MessageRole,
    StepBoundaryPart,
    TextPart,
    ToolCallPart,
    ToolCallState,
)


logger = logging.getLogger(__name__)

CHAT_MODEL_IDS = ("chat-model", "chat-model-reasoning")
DEFAULT_CHAT_MODEL = "chat-model"
DEFAULT_VISIBILITY = "private"
FALLBACK_SUMMARY = "request body does not match any supported format"

TOOL_STATE_MAP = {
    None: ToolCallState.PENDING,
    "partial-call": ToolCallState.PENDING,
    "call": ToolCallState.PENDING,
    "result": ToolCallState.RESULT,
    "output-available": ToolCallState.RESULT,
    "output-error": ToolCallState.ERROR,
}


# Wire models

class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class WireTextPart(_WireModel):
    type: Literal["text"]
    text: str = Field(..., min_length=1, max_length=2000)
    state: Optional[str] = None


class WireFilePart(_WireModel):
    type: Literal["file"]
    media_type: Literal["image/jpeg", "image/png"] = Field(..., alias="mediaType")
    name: str = Field(..., min_length=1, max_length=100)
    url: HttpUrl


class WireStepStartPart(_WireModel):
    type: Literal["step-start"]


class WireToolPart(_WireModel):
    type: str = Field(..., pattern=r"^tool-[A-Za-z0-9_\-]+$")
    tool_call_id: Optional[str] = Field(None, alias="toolCallId")
    state: Optional[
        Literal["partial-call", "call", "result", "output-available", "output-error"]
    ] = None
    input: Any = None
    output: Any = None


def _part_tag(value: Any) -> Optional[str]:
    part_type = value.get("type") if isinstance(value, dict) else getattr(value, "type", None)
    if not isinstance(part_type, str):
        return None
    if part_type.startswith("tool-"):
        return "tool"
    if part_type in ("text", "file", "step-start"):
        return part_type
    return None


WirePart = Annotated[
    Union[
        Annotated[WireTextPart, Tag("text")],
        Annotated[WireFilePart, Tag("file")],
        Annotated[WireStepStartPart, Tag("step-start")],
        Annotated[WireToolPart, Tag("tool")],
    ],
    Discriminator(_part_tag),
]


class WireMessage(_WireModel):
    id: UUID
    role: Literal["user", "assistant"]
    parts: List[WirePart] = Field(..., min_length=1)


class WireUserMessage(WireMessage):
    role: Literal["user"]


class CurrentRequestBody(_WireModel):
    """Current wire format carrying the full message list."""

    id: UUID
    messages: List[WireMessage] = Field(..., min_length=1)
    selected_chat_model: Optional[Literal["chat-model", "chat-model-reasoning"]] = Field(
        None, alias="selectedChatModel"
    )
    selected_visibility_type: Optional[Literal["public", "private"]] = Field(
        None, alias="selectedVisibilityType"
    )
    selected_agent_id: Optional[UUID] = Field(None, alias="selectedAgentId")
    trigger: Optional[str] = None


class LegacyRequestBody(_WireModel):
    """Legacy single-message wire format."""

    id: UUID
    message: WireUserMessage
    selected_chat_model: Literal["chat-model", "chat-model-reasoning"] = Field(
        ..., alias="selectedChatModel"
    )
    selected_visibility_type: Literal["public", "private"] = Field(
        ..., alias="selectedVisibilityType"
    )
    selected_agent_id: Optional[UUID] = Field(None, alias="selectedAgentId")


# Results

class TurnRequest(BaseModel):
    """Normalised inbound turn."""

    id: str
    latest_message: Message
    history: List[Message] = Field(default_factory=list)
    selected_chat_model: str = DEFAULT_CHAT_MODEL
    selected_visibility_type: str = DEFAULT_VISIBILITY
    selected_agent_id: Optional[str] = None
    schema_name: str = Field(..., description="Wire format that validated")


class Issue(BaseModel):
    """One violated constraint at one field path."""

    path: str
    constraint: str
    message: str


class ValidationRejection(BaseModel):
    """Structured rejection listing the issues of every attempted format."""

    issues: Dict[str, List[Issue]]
    summary: str

    def issues_payload(self) -> Dict[str, List[Dict[str, str]]]:
        return {
            schema: [issue.model_dump() for issue in issues]
            for schema, issues in self.issues.items()
        }


# Normalisation

def _to_part(part: BaseModel):
    if isinstance(part, WireTextPart):
        return TextPart(text=part.text)
    if isinstance(part, WireFilePart):
        return FileReferencePart(media_type=part.media_type, name=part.name, url=str(part.url))
    if isinstance(part, WireStepStartPart):
        return StepBoundaryPart()
    return ToolCallPart(
        tool_name=part.type[len("tool-"):],
        call_id=part.tool_call_id or str(uuid4()),
        state=TOOL_STATE_MAP[part.state],
        input=part.input,
        output=part.output,
    )


def _to_message(wire: WireMessage, chat_id: str) -> Message:
    return Message(
        id=str(wire.id),
        chat_id=chat_id,
        role=MessageRole(wire.role),
        parts=[_to_part(part) for part in wire.parts],
    )


def _normalize_current(body: CurrentRequestBody) -> TurnRequest:
    chat_id = str(body.id)
    messages = [_to_message(m, chat_id) for m in body.messages]
    return TurnRequest(
        id=chat_id,
        latest_message=messages[-1],
        history=messages[:-1],
        selected_chat_model=body.selected_chat_model or DEFAULT_CHAT_MODEL,
        selected_visibility_type=body.selected_visibility_type or DEFAULT_VISIBILITY,
        selected_agent_id=str(body.selected_agent_id) if body.selected_agent_id else None,
        schema_name="current",
    )


def _normalize_legacy(body: LegacyRequestBody) -> TurnRequest:
    chat_id = str(body.id)
    return TurnRequest(
        id=chat_id,
        latest_message=_to_message(body.message, chat_id),
        history=[],
        selected_chat_model=body.selected_chat_model,
        selected_visibility_type=body.selected_visibility_type,
        selected_agent_id=str(body.selected_agent_id) if body.selected_agent_id else None,
        schema_name="legacy",
    )


REQUEST_SCHEMAS: List[Tuple[str, Type[BaseModel], Callable[[Any], TurnRequest]]] = [
    ("current", CurrentRequestBody, _normalize_current),
    ("legacy", LegacyRequestBody, _normalize_legacy),
]


# Issue reporting

_CONSTRAINTS = {
    "missing": "missing field",
    "uuid_parsing": "malformed UUID",
    "uuid_type": "malformed UUID",
    "uuid_version": "malformed UUID",
    "literal_error": "invalid value",
    "enum": "invalid value",
    "union_tag_invalid": "invalid value",
    "union_tag_not_found": "invalid value",
    "string_pattern_mismatch": "invalid value",
    "string_too_long": "too long",
    "string_too_short": "too short",
    "url_parsing": "malformed URL",
    "url_scheme": "malformed URL",
    "url_type": "malformed URL",
    "model_type": "not an object",
    "model_attributes_type": "not an object",
    "dict_type": "not an object",
}


def _format_path(loc: Tuple[Any, ...]) -> str:
    return ".".join(str(item) for item in loc) or "(root)"


def _constraint_for(error: Dict[str, Any]) -> str:
    error_type = error["type"]
    if error_type == "too_short":
        return "array of parts empty" if error["loc"] and error["loc"][-1] == "parts" else "empty array"
    if error_type == "too_long":
        return "too long"
    return _CONSTRAINTS.get(error_type, "wrong type")


def _issues_from(exc: ValidationError) -> List[Issue]:
    return [
        Issue(
            path=_format_path(error["loc"]),
            constraint=_constraint_for(error),
            message=error["msg"],
        )
        for error in exc.errors(include_url=False)
    ]


_SUMMARY_CATEGORIES = [
    ("malformed chat id", lambda path: path == "id"),
    ("malformed message parts", lambda path: ".parts" in path or path.endswith("parts")),
    ("malformed agent id", lambda path: path.startswith("selectedAgentId")),
    ("invalid model selection", lambda path: path.startswith("selectedChatModel")),
]


def summarize_issues(issues: Dict[str, List[Issue]]) -> str:
    """Short human-readable summary of the known failure categories."""
    paths = [issue.path for schema_issues in issues.values() for issue in schema_issues]
    found = [
        label
        for label, matches in _SUMMARY_CATEGORIES
        if any(matches(path) for path in paths)
    ]
    if not found:
        return FALLBACK_SUMMARY
    return "Invalid request: " + ", ".join(found)


def validate_turn_request(raw: Any) -> Union[TurnRequest, ValidationRejection]:
    """Validate a raw request body against every supported wire format.

    Args:
        raw: Decoded request body of any shape

    Returns:
        The first successful normalisation, or a rejection whose issue
        lists are non-empty. Never raises.
    """
    collected: Dict[str, List[Issue]] = {}

    for schema_name, model, normalize in REQUEST_SCHEMAS:
        try:
            body = model.model_validate(raw)
        except ValidationError as e:
            collected[schema_name] = _issues_from(e)
            continue

        logger.debug(f"Request validated against {schema_name} format")
        return normalize(body)

    rejection = ValidationRejection(issues=collected, summary=summarize_issues(collected))
    logger.info(
        f"Request rejected: {rejection.summary}",
        extra={"validation": {s: len(i) for s, i in collected.items()}}
    )
    return rejection
