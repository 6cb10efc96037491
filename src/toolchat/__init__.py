"""
toolchat - chat-turn orchestration with tool result sanitization.

Validates inbound chat turns, resolves the agent persona and tool set,
streams model output over resumable server-sent events and keeps external
tool results within a bounded token budget.
"""

__version__ = "0.1.0"

__all__ = [
    "models",
    "services",
    "lib",
    "api",
    "cli"
]
