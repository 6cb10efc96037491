"""Chat message model with tagged part variants."""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, List, Literal, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


class MessageRole(str, Enum):
    """Message role enumeration."""

    USER = "user"
    ASSISTANT = "assistant"


class ToolCallState(str, Enum):
    """Lifecycle of a tool call part."""

    PENDING = "pending"
    RESULT = "result"
    ERROR = "error"


class TextPart(BaseModel):
    """Plain text content."""

    type: Literal["text"] = "text"
    text: str = Field(..., description="Text content")


class FileReferencePart(BaseModel):
    """Reference to an uploaded file."""

    type: Literal["file-reference"] = "file-reference"
    media_type: str = Field(..., description="MIME type of the referenced file")
    name: str = Field(..., description="Display name of the file")
    url: str = Field(..., description="Location of the file")


class StepBoundaryPart(BaseModel):
    """Marks the start of a model continuation step."""

    type: Literal["step-boundary"] = "step-boundary"


class ToolCallPart(BaseModel):
    """A tool invocation requested by the model and its outcome."""

    model_config = ConfigDict(use_enum_values=True)

    type: Literal["tool-call"] = "tool-call"
    tool_name: str = Field(..., min_length=1, description="Slug of the invoked tool")
    call_id: str = Field(default_factory=lambda: str(uuid4()), description="Provider call identifier")
    state: ToolCallState = Field(default=ToolCallState.PENDING, description="Call lifecycle state")
    input: Any = Field(default=None, description="Arguments passed to the tool")
    output: Any = Field(default=None, description="Parsed tool result")

    def transition(self, state: ToolCallState, output: Any = None) -> None:
        """Move a pending call to its terminal state.

        Raises:
            ValueError: If the call already left the pending state or the
                target state is not terminal.
        """
        target = ToolCallState(state)
        if self.state != ToolCallState.PENDING.value:
            raise ValueError(f"Tool call {self.call_id} already in state {self.state}")
        if target == ToolCallState.PENDING:
            raise ValueError("Tool call can only transition to result or error")

        self.state = target.value
        self.output = output


Part = Annotated[
    Union[TextPart, FileReferencePart, StepBoundaryPart, ToolCallPart],
    Field(discriminator="type"),
]


class Message(BaseModel):
    """A single chat message made of ordered parts."""

    model_config = ConfigDict(use_enum_values=True)

    id: str = Field(default_factory=lambda: str(uuid4()), description="Message identifier")
    chat_id: Optional[str] = Field(None, description="Owning conversation")
    role: MessageRole = Field(..., description="Author role")
    parts: List[Part] = Field(..., min_length=1, description="Ordered message parts")
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="Creation timestamp"
    )

    def text_content(self) -> str:
        """Concatenate the text parts of the message."""
        return "".join(part.text for part in self.parts if isinstance(part, TextPart))

    def tool_calls(self) -> List[ToolCallPart]:
        """Return the tool call parts in order."""
        return [part for part in self.parts if isinstance(part, ToolCallPart)]
