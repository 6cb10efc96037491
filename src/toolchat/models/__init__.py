"""toolchat data models.

Messages and their part variants, conversations and stream sessions,
agents and tool enablement, and the provider-facing inference events.
"""

from .chat_message import (
    Message,
    MessageRole,
    Part,
    TextPart,
    FileReferencePart,
    StepBoundaryPart,
    ToolCallPart,
    ToolCallState,
)
from .conversation import (
    Conversation,
    Visibility,
    StreamSession,
    StreamFrame,
    FrameType,
    TurnState,
)
from .agent import (
    Identity,
    Agent,
    AvailableTool,
    ToolEnablement,
    ToolScope,
    ToolScopeKind,
    ConnectedToolkit,
    toolkit_of,
)
from .inference import (
    ModelRequest,
    ModelEvent,
    TextDelta,
    ReasoningDelta,
    ToolCallRequest,
    StepFinish,
    ToolDeclaration,
    ToolResultMessage,
)

__all__ = [
    # Messages
    "Message",
    "MessageRole",
    "Part",
    "TextPart",
    "FileReferencePart",
    "StepBoundaryPart",
    "ToolCallPart",
    "ToolCallState",
    # Conversations and streams
    "Conversation",
    "Visibility",
    "StreamSession",
    "StreamFrame",
    "FrameType",
    "TurnState",
    # Agents and tools
    "Identity",
    "Agent",
    "AvailableTool",
    "ToolEnablement",
    "ToolScope",
    "ToolScopeKind",
    "ConnectedToolkit",
    "toolkit_of",
    # Inference
    "ModelRequest",
    "ModelEvent",
    "TextDelta",
    "ReasoningDelta",
    "ToolCallRequest",
    "StepFinish",
    "ToolDeclaration",
    "ToolResultMessage",
]
