"""Abstract interface for the external tool-execution provider."""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from toolchat.models import Identity


class ToolExecutor(ABC):
    """Executes tools against third-party services."""

    @abstractmethod
    async def get_tool_declarations(
        self,
        identity: Identity,
        tool_slugs: List[str]
    ) -> List[Dict[str, Any]]:
        """Raw declarations (name, description, parameters) for the given slugs."""
        pass

    @abstractmethod
    async def execute(
        self,
        tool_slug: str,
        arguments: Dict[str, Any],
        connection_id: Optional[str] = None
    ) -> Any:
        """Run one tool and return its raw JSON result."""
        pass
