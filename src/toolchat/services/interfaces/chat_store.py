"""Abstract interface for the durable chat store.

Conversations, messages, stream sessions, agents and tool enablement are
persisted by an external store; the orchestrator and resolver only see
this interface.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional

from toolchat.models import (
    Agent,
    AvailableTool,
    ConnectedToolkit,
    Conversation,
    Identity,
    Message,
    StreamSession,
    ToolEnablement,
    ToolScope,
)


class ChatStore(ABC):
    """Abstract interface for chat persistence."""

    # Conversations

    @abstractmethod
    async def get_conversation(self, chat_id: str) -> Optional[Conversation]:
        """Retrieve a conversation by id."""
        pass

    @abstractmethod
    async def save_conversation(self, conversation: Conversation) -> None:
        """Create or replace a conversation record."""
        pass

    @abstractmethod
    async def delete_conversation(self, chat_id: str) -> Optional[Conversation]:
        """Delete a conversation with its messages and stream sessions."""
        pass

    # Messages

    @abstractmethod
    async def get_messages(self, chat_id: str) -> List[Message]:
        """Messages of a conversation in creation order."""
        pass

    @abstractmethod
    async def save_messages(self, messages: List[Message]) -> None:
        """Persist a batch of messages atomically."""
        pass

    @abstractmethod
    async def count_user_messages(self, user_id: str, since: datetime) -> int:
        """Count user-role messages sent by a user since a point in time."""
        pass

    # Stream sessions

    @abstractmethod
    async def create_stream_session(self, session: StreamSession) -> None:
        pass

    @abstractmethod
    async def get_stream_session(self, stream_id: str) -> Optional[StreamSession]:
        pass

    @abstractmethod
    async def get_stream_sessions(self, chat_id: str) -> List[StreamSession]:
        """Stream sessions of a conversation, oldest first."""
        pass

    # Agents and tools

    @abstractmethod
    async def get_agent(self, agent_id: str) -> Optional[Agent]:
        pass

    @abstractmethod
    async def get_available_tools(self) -> List[AvailableTool]:
        """Catalogue of tools offered by the tool provider."""
        pass

    @abstractmethod
    async def get_tool_enablement(self, scope: ToolScope) -> List[ToolEnablement]:
        """Enablement records of one user or agent scope."""
        pass

    @abstractmethod
    async def get_connected_toolkits(self, identity: Identity) -> List[ConnectedToolkit]:
        """Third-party connections held by the identity."""
        pass
