"""Conversation, stream session and turn state models."""

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


class Visibility(str, Enum):
    """Conversation visibility."""

    PUBLIC = "public"
    PRIVATE = "private"


class Conversation(BaseModel):
    """Parent record of a chat; owns its messages and stream sessions."""

    model_config = ConfigDict(use_enum_values=True)

    id: str = Field(..., description="Conversation identifier chosen by the client")
    user_id: str = Field(..., description="Owner of the conversation")
    title: str = Field(default="New chat", max_length=200)
    visibility: Visibility = Field(default=Visibility.PRIVATE)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def is_readable_by(self, user_id: Optional[str]) -> bool:
        return self.visibility == Visibility.PUBLIC.value or self.user_id == user_id


class StreamSession(BaseModel):
    """Durable pointer used to resume a streamed turn."""

    model_config = ConfigDict(frozen=True)

    stream_id: str = Field(default_factory=lambda: str(uuid4()))
    chat_id: str = Field(...)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class TurnState(str, Enum):
    """Pipeline states of a single turn."""

    VALIDATING = "validating"
    RESOLVING = "resolving"
    COMPOSING = "composing"
    STREAMING = "streaming"
    FINISHED = "finished"
    ERRORED = "errored"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (TurnState.FINISHED, TurnState.ERRORED, TurnState.CANCELLED)


class FrameType(str, Enum):
    """Typed frames of the turn event stream."""

    TEXT_DELTA = "text-delta"
    REASONING_DELTA = "reasoning-delta"
    TOOL_CALL_START = "tool-call-start"
    TOOL_CALL_RESULT = "tool-call-result"
    ERROR = "error"
    DONE = "done"


class StreamFrame(BaseModel):
    """One event of the line-delimited stream protocol."""

    model_config = ConfigDict(use_enum_values=True)

    seq: int = Field(default=0, ge=0, description="Position in the stream, starting at 1")
    type: FrameType
    data: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_done(self) -> bool:
        return self.type == FrameType.DONE.value

    def to_sse(self) -> Dict[str, str]:
        """Render as an sse-starlette event dict."""
        return {
            "event": self.type,
            "id": str(self.seq),
            "data": json.dumps({"type": self.type, **self.data}, default=str),
        }
