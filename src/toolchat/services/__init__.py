"""Chat pipeline services.

Request validation, agent and tool resolution, prompt composition, the
streaming orchestrator, resumable stream context and tool result handling.
"""

from .agent_resolver import AgentResolver, ResolvedTurnConfig
from .chat_orchestrator import ChatOrchestrator, PreparedTurn
from .memory_store import InMemoryChatStore
from .prompt_composer import RequestHints, compose_system_prompt
from .request_validator import TurnRequest, ValidationRejection, validate_turn_request
from .result_sanitizer import sanitize_tool_result, sanitize_value
from .stream_context import ResumableStreamContext, StreamContextProvider, StreamStoreUnavailable
from .tool_parsers import TOOL_PARSERS, parse_tool_response, register_parser

__all__ = [
    "AgentResolver",
    "ResolvedTurnConfig",
    "ChatOrchestrator",
    "PreparedTurn",
    "InMemoryChatStore",
    "RequestHints",
    "compose_system_prompt",
    "TurnRequest",
    "ValidationRejection",
    "validate_turn_request",
    "sanitize_tool_result",
    "sanitize_value",
    "ResumableStreamContext",
    "StreamContextProvider",
    "StreamStoreUnavailable",
    "TOOL_PARSERS",
    "parse_tool_response",
    "register_parser",
]
