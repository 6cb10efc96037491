"""Request and event models exchanged with the inference provider."""

from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field

from .chat_message import Message


class ToolDeclaration(BaseModel):
    """Tool offered to the model, in normalised form."""

    name: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    input_schema: Dict[str, Any] = Field(default_factory=lambda: {"type": "object", "properties": {}})
    connection_id: Optional[str] = Field(None, description="Account reference used when executing")


class ToolResultMessage(BaseModel):
    """Tool outcome fed back to the model on the following step."""

    role: Literal["tool"] = "tool"
    call_id: str
    tool_name: str
    output: Any = None
    is_error: bool = False


class ModelRequest(BaseModel):
    """Everything the provider needs for one model continuation."""

    model_id: str
    system_prompt: str
    messages: List[Union[Message, ToolResultMessage]] = Field(default_factory=list)
    tools: List[ToolDeclaration] = Field(default_factory=list)
    step: int = Field(default=1, ge=1)
    max_steps: int = Field(default=5, ge=1)


class TextDelta(BaseModel):
    kind: Literal["text"] = "text"
    text: str


class ReasoningDelta(BaseModel):
    kind: Literal["reasoning"] = "reasoning"
    text: str


class ToolCallRequest(BaseModel):
    """The model asks for a tool to be executed."""

    kind: Literal["tool-call"] = "tool-call"
    call_id: str
    tool_name: str
    input: Dict[str, Any] = Field(default_factory=dict)


class StepFinish(BaseModel):
    kind: Literal["finish"] = "finish"
    finish_reason: str = "stop"


ModelEvent = Union[TextDelta, ReasoningDelta, ToolCallRequest, StepFinish]
