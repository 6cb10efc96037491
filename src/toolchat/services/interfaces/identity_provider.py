"""Abstract interface for the identity provider."""

from abc import ABC, abstractmethod
from typing import Any, Optional

from toolchat.models import Identity


class IdentityProvider(ABC):
    """Resolves the authenticated caller of a request."""

    @abstractmethod
    async def current_identity(self, request: Any) -> Optional[Identity]:
        """Return the caller's identity, or None when unauthenticated."""
        pass
