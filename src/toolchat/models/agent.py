"""Identity, agent persona and tool enablement models."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


class Identity(BaseModel):
    """Authenticated caller as issued by the identity provider."""

    user_id: str = Field(..., min_length=1, description="Opaque user identifier")
    organization_id: Optional[str] = Field(None, description="Active organization")
    organization_role: Optional[str] = Field(None, description="Role claim within the organization")
    user_type: str = Field(default="regular", description="Entitlement tier")

    @property
    def is_org_admin(self) -> bool:
        return self.organization_role == "org:admin"


class Agent(BaseModel):
    """Owned persona binding a system prompt to a model."""

    id: str = Field(default_factory=lambda: str(uuid4()), description="Agent identifier")
    user_id: str = Field(..., description="Owner of the agent")
    organization_id: Optional[str] = Field(None, description="Organization the agent belongs to")
    name: str = Field(..., min_length=1, max_length=100, description="Display name")
    description: Optional[str] = Field(None, description="Short description")
    system_prompt: str = Field(..., min_length=1, description="Persona instructions")
    model_id: str = Field(default="chat-model", description="Model the persona runs on")
    is_global: bool = Field(default=False, description="Visible to every user")
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def is_visible_to(self, identity: Identity) -> bool:
        """Check whether the identity may use this agent."""
        if self.user_id == identity.user_id or self.is_global:
            return True
        return bool(self.organization_id) and self.organization_id == identity.organization_id

    def public_view(self) -> Dict[str, Any]:
        """Serialize the agent without its system prompt."""
        return self.model_dump(exclude={"system_prompt"}, mode="json")


class ToolScopeKind(str, Enum):
    """Owner kind of a tool enablement record."""

    USER = "user"
    AGENT = "agent"


class ToolScope(BaseModel):
    """Either a user's default tool set or one agent's tool set."""

    model_config = ConfigDict(use_enum_values=True, frozen=True)

    kind: ToolScopeKind
    id: str = Field(..., min_length=1)

    @classmethod
    def for_user(cls, user_id: str) -> "ToolScope":
        return cls(kind=ToolScopeKind.USER, id=user_id)

    @classmethod
    def for_agent(cls, agent_id: str) -> "ToolScope":
        return cls(kind=ToolScopeKind.AGENT, id=agent_id)


def toolkit_of(tool_slug: str) -> str:
    """Derive the toolkit name from a tool slug (text before the first underscore)."""
    return tool_slug.split("_", 1)[0].upper()


class AvailableTool(BaseModel):
    """Catalogue entry for a tool offered by an external provider."""

    slug: str = Field(..., min_length=1, description="Tool slug, e.g. NOTION_ADD_PAGE_CONTENT")
    toolkit: Optional[str] = Field(None, description="Toolkit name; derived from the slug when absent")
    description: Optional[str] = None
    is_active: bool = True

    @property
    def toolkit_name(self) -> str:
        return (self.toolkit or toolkit_of(self.slug)).upper()


class ToolEnablement(BaseModel):
    """Boolean association between a scope and a tool slug."""

    scope: ToolScope
    tool_slug: str = Field(..., min_length=1)
    is_enabled: bool = True


class ConnectedToolkit(BaseModel):
    """A third-party connection held by an identity."""

    toolkit: str = Field(..., description="Toolkit name, upper-cased")
    connection_id: str = Field(..., description="Account reference passed to the tool executor")
    status: str = Field(default="ACTIVE", description="Connection status reported by the provider")

    @property
    def is_active(self) -> bool:
        return self.status.upper() == "ACTIVE"
