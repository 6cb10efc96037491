"""Collaborator interfaces consumed by the chat pipeline."""

from .chat_store import ChatStore
from .identity_provider import IdentityProvider
from .inference_provider import InferenceProvider
from .tool_executor import ToolExecutor

__all__ = ["ChatStore", "IdentityProvider", "InferenceProvider", "ToolExecutor"]
