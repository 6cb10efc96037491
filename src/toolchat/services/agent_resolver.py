"""
Agent and tool resolution for a turn.

Decides which persona (system prompt and model) answers a turn and which
tools are offered to the model. Problems with the selected agent never
abort a turn: the resolver logs them and falls back to the caller's own
defaults.
"""

import logging
from collections import defaultdict
from typing import Dict, FrozenSet, List, Optional, Set

from pydantic import BaseModel, Field

from toolchat.lib.config import ToolchatConfig
from toolchat.lib.logging_config import get_audit_logger
from toolchat.models import Agent, AvailableTool, Identity, ToolScope
from toolchat.services.interfaces import ChatStore


logger = logging.getLogger(__name__)


class ResolvedTurnConfig(BaseModel):
    """Persona, model and tool set that apply to one turn."""

    effective_model: str = Field(..., description="Model the turn runs on")
    effective_system_prompt: Optional[str] = Field(None, description="Persona instructions, if an agent applied")
    enabled_tool_slugs: FrozenSet[str] = Field(default_factory=frozenset)
    connections: Dict[str, str] = Field(
        default_factory=dict,
        description="Active connection id per toolkit"
    )
    agent_id: Optional[str] = None
    scope: ToolScope

    def connection_for(self, toolkit: str) -> Optional[str]:
        return self.connections.get(toolkit.upper())


class AgentResolver:
    """Resolves the persona and enabled, connected tools of a turn."""

    def __init__(self, store: ChatStore, config: ToolchatConfig):
        self.store = store
        self.config = config
        self.audit = get_audit_logger()

    async def resolve(
        self,
        identity: Identity,
        selected_agent_id: Optional[str],
        selected_chat_model: str
    ) -> ResolvedTurnConfig:
        """Resolve the turn configuration for an identity.

        Args:
            identity: Authenticated caller
            selected_agent_id: Agent chosen by the caller, if any
            selected_chat_model: Model chosen by the caller

        Returns:
            ResolvedTurnConfig; agent failures fall back to the no-agent path
        """
        effective_model = self._entitled_model(identity, selected_chat_model)
        system_prompt = None
        scope = ToolScope.for_user(identity.user_id)

        agent = await self._load_agent(identity, selected_agent_id) if selected_agent_id else None
        if agent is not None:
            effective_model = agent.model_id
            system_prompt = agent.system_prompt
            scope = ToolScope.for_agent(agent.id)
            logger.info(
                f"Agent configuration applied: {agent.name}",
                extra={"agent_id": agent.id, "effective_model": effective_model}
            )

        if effective_model in self.config.chat.tool_free_models:
            logger.debug(f"Model {effective_model} runs without tools")
            enabled: FrozenSet[str] = frozenset()
            connections: Dict[str, str] = {}
        else:
            enabled, connections = await self._resolve_tools(identity, scope)

        return ResolvedTurnConfig(
            effective_model=effective_model,
            effective_system_prompt=system_prompt,
            enabled_tool_slugs=enabled,
            connections=connections,
            agent_id=agent.id if agent else None,
            scope=scope,
        )

    def _entitled_model(self, identity: Identity, selected_chat_model: str) -> str:
        entitlement = self.config.entitlement_for(identity.user_type)
        if selected_chat_model in entitlement.available_chat_model_ids:
            return selected_chat_model

        fallback = self.config.chat.default_chat_model
        logger.info(
            f"Model {selected_chat_model} not available to {identity.user_type} users, using {fallback}"
        )
        return fallback

    async def _load_agent(self, identity: Identity, agent_id: str) -> Optional[Agent]:
        try:
            agent = await self.store.get_agent(agent_id)
        except Exception as e:
            logger.error(f"Agent retrieval failed for {agent_id}: {e}", exc_info=True)
            return None

        if agent is None:
            logger.warning(f"Agent not found: {agent_id}")
            self.audit.log_security_event(
                event_type="agent_not_found",
                severity="low",
                description="Selected agent does not exist; continuing without agent",
                user_id=identity.user_id,
                agent_id=agent_id
            )
            return None

        if not agent.is_visible_to(identity):
            logger.warning(f"Agent {agent_id} is not visible to user {identity.user_id}")
            self.audit.log_security_event(
                event_type="agent_access_denied",
                severity="medium",
                description="Selected agent belongs to another owner; continuing without agent",
                user_id=identity.user_id,
                agent_id=agent_id,
                metadata={"agent_owner": agent.user_id}
            )
            return None

        return agent

    async def _resolve_tools(self, identity: Identity, scope: ToolScope):
        catalogue: Dict[str, AvailableTool] = {
            tool.slug: tool for tool in await self.store.get_available_tools() if tool.is_active
        }
        enabled: Set[str] = {
            record.tool_slug
            for record in await self.store.get_tool_enablement(scope)
            if record.is_enabled and record.tool_slug in catalogue
        }

        if self.config.chat.enablement_granularity == "toolkit":
            enabled = self._fully_enabled_toolkits(catalogue, enabled)

        connections = {
            connection.toolkit.upper(): connection.connection_id
            for connection in await self.store.get_connected_toolkits(identity)
            if connection.is_active
        }

        connected = {slug for slug in enabled if catalogue[slug].toolkit_name in connections}
        dropped = enabled - connected
        if dropped:
            logger.debug(f"Dropping {len(dropped)} enabled tools without an active connection: {sorted(dropped)}")

        used_toolkits = {catalogue[slug].toolkit_name for slug in connected}
        return (
            frozenset(connected),
            {toolkit: cid for toolkit, cid in connections.items() if toolkit in used_toolkits},
        )

    @staticmethod
    def _fully_enabled_toolkits(catalogue: Dict[str, AvailableTool], enabled: Set[str]) -> Set[str]:
        by_toolkit: Dict[str, List[str]] = defaultdict(list)
        for tool in catalogue.values():
            by_toolkit[tool.toolkit_name].append(tool.slug)

        result: Set[str] = set()
        for slugs in by_toolkit.values():
            if all(slug in enabled for slug in slugs):
                result.update(slugs)
        return result
