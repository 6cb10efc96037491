"""In-memory chat store for development and tests."""

import asyncio
import logging
from datetime import datetime
from typing import Dict, List, Optional

from toolchat.models import (
    Agent,
    AvailableTool,
    ConnectedToolkit,
    Conversation,
    Identity,
    Message,
    MessageRole,
    StreamSession,
    ToolEnablement,
    ToolScope,
)
from toolchat.services.interfaces import ChatStore


logger = logging.getLogger(__name__)


class InMemoryChatStore(ChatStore):
    """Dictionary-backed ChatStore.

    State lives for the lifetime of the process. Seeding helpers
    (``add_agent``, ``add_tool``, ``set_enablement``, ``add_connection``)
    stand in for the management screens of a real deployment.
    """

    def __init__(self):
        self._conversations: Dict[str, Conversation] = {}
        self._messages: Dict[str, List[Message]] = {}
        self._stream_sessions: Dict[str, StreamSession] = {}
        self._agents: Dict[str, Agent] = {}
        self._tools: Dict[str, AvailableTool] = {}
        self._enablement: Dict[ToolScope, Dict[str, ToolEnablement]] = {}
        self._connections: Dict[str, List[ConnectedToolkit]] = {}
        self._lock = asyncio.Lock()

    # Conversations

    async def get_conversation(self, chat_id: str) -> Optional[Conversation]:
        return self._conversations.get(chat_id)

    async def save_conversation(self, conversation: Conversation) -> None:
        self._conversations[conversation.id] = conversation
        self._messages.setdefault(conversation.id, [])

    async def delete_conversation(self, chat_id: str) -> Optional[Conversation]:
        async with self._lock:
            conversation = self._conversations.pop(chat_id, None)
            if conversation is None:
                return None

            self._messages.pop(chat_id, None)
            for stream_id in [
                s.stream_id for s in self._stream_sessions.values() if s.chat_id == chat_id
            ]:
                del self._stream_sessions[stream_id]

        logger.debug(f"Deleted conversation {chat_id}")
        return conversation

    # Messages

    async def get_messages(self, chat_id: str) -> List[Message]:
        return list(self._messages.get(chat_id, []))

    async def save_messages(self, messages: List[Message]) -> None:
        async with self._lock:
            for message in messages:
                if message.chat_id is None:
                    raise ValueError(f"Message {message.id} has no chat_id")
                self._messages.setdefault(message.chat_id, []).append(message)

    async def count_user_messages(self, user_id: str, since: datetime) -> int:
        owned = {cid for cid, conv in self._conversations.items() if conv.user_id == user_id}
        return sum(
            1
            for chat_id in owned
            for message in self._messages.get(chat_id, [])
            if message.role == MessageRole.USER.value and message.created_at >= since
        )

    # Stream sessions

    async def create_stream_session(self, session: StreamSession) -> None:
        self._stream_sessions[session.stream_id] = session

    async def get_stream_session(self, stream_id: str) -> Optional[StreamSession]:
        return self._stream_sessions.get(stream_id)

    async def get_stream_sessions(self, chat_id: str) -> List[StreamSession]:
        sessions = [s for s in self._stream_sessions.values() if s.chat_id == chat_id]
        return sorted(sessions, key=lambda s: s.created_at)

    # Agents and tools

    async def get_agent(self, agent_id: str) -> Optional[Agent]:
        return self._agents.get(agent_id)

    async def get_available_tools(self) -> List[AvailableTool]:
        return list(self._tools.values())

    async def get_tool_enablement(self, scope: ToolScope) -> List[ToolEnablement]:
        return list(self._enablement.get(scope, {}).values())

    async def get_connected_toolkits(self, identity: Identity) -> List[ConnectedToolkit]:
        return list(self._connections.get(identity.user_id, []))

    # Seeding helpers

    def add_agent(self, agent: Agent) -> Agent:
        self._agents[agent.id] = agent
        return agent

    def add_tool(self, tool: AvailableTool) -> AvailableTool:
        self._tools[tool.slug] = tool
        return tool

    def set_enablement(self, scope: ToolScope, tool_slug: str, is_enabled: bool = True) -> None:
        self._enablement.setdefault(scope, {})[tool_slug] = ToolEnablement(
            scope=scope, tool_slug=tool_slug, is_enabled=is_enabled
        )

    def add_connection(self, user_id: str, connection: ConnectedToolkit) -> None:
        self._connections.setdefault(user_id, []).append(connection)
