"""Shared fixtures: scripted collaborators, an in-memory store and a test config."""

import asyncio
import uuid
from typing import Any, Dict, List, Optional

import pytest

from toolchat.lib.config import ChatConfig, StreamConfig, ToolchatConfig
from toolchat.models import Identity, ModelRequest, StepFinish, TextDelta
from toolchat.services.chat_orchestrator import ChatOrchestrator
from toolchat.services.interfaces import InferenceProvider, ToolExecutor
from toolchat.services.memory_store import InMemoryChatStore
from toolchat.services.stream_context import StreamContextProvider


class ScriptedInferenceProvider(InferenceProvider):
    """Replays one scripted event list per step and records every request.

    ``error`` is raised after the events of step ``fail_on_step`` have been
    yielded; ``delay`` pauses before each event.
    """

    def __init__(
        self,
        steps: Optional[List[List[Any]]] = None,
        error: Optional[Exception] = None,
        fail_on_step: int = 1,
        delay: float = 0.0
    ):
        self.steps = steps or [[TextDelta(text="Hello there, friend.")]]
        self.error = error
        self.fail_on_step = fail_on_step
        self.delay = delay
        self.requests: List[ModelRequest] = []

    async def stream(self, request: ModelRequest):
        self.requests.append(request)
        events = self.steps[min(request.step, len(self.steps)) - 1]
        for event in events:
            if self.delay:
                await asyncio.sleep(self.delay)
            yield event
        if self.error is not None and request.step == self.fail_on_step:
            raise self.error
        yield StepFinish()


class ScriptedToolExecutor(ToolExecutor):
    """Returns canned raw results per slug and records executed calls."""

    def __init__(
        self,
        results: Optional[Dict[str, Any]] = None,
        failing: Optional[set] = None,
        declarations_error: Optional[Exception] = None
    ):
        self.results = results or {}
        self.failing = failing or set()
        self.declarations_error = declarations_error
        self.calls: List[Dict[str, Any]] = []

    async def get_tool_declarations(self, identity: Identity, tool_slugs: List[str]) -> List[Dict[str, Any]]:
        if self.declarations_error is not None:
            raise self.declarations_error
        return [
            {
                "name": slug,
                "description": f"Run {slug}",
                "parameters": {"properties": {"query": {"type": "string"}}},
            }
            for slug in tool_slugs
        ]

    async def execute(self, tool_slug: str, arguments: Dict[str, Any], connection_id: Optional[str] = None) -> Any:
        self.calls.append({"slug": tool_slug, "arguments": arguments, "connection_id": connection_id})
        if tool_slug in self.failing:
            raise RuntimeError(f"{tool_slug} exploded")
        return self.results.get(tool_slug, {"successful": True, "data": {"ok": True}})


@pytest.fixture
def config() -> ToolchatConfig:
    return ToolchatConfig(
        chat=ChatConfig(chunk_delay_ms=0, max_turn_duration_seconds=5),
        streams=StreamConfig(enabled=False),
    )


@pytest.fixture
def store() -> InMemoryChatStore:
    return InMemoryChatStore()


@pytest.fixture
def identity() -> Identity:
    return Identity(user_id="user-1")


@pytest.fixture
def inference() -> ScriptedInferenceProvider:
    return ScriptedInferenceProvider()


@pytest.fixture
def tools() -> ScriptedToolExecutor:
    return ScriptedToolExecutor()


@pytest.fixture
def orchestrator(store, inference, tools, config) -> ChatOrchestrator:
    return ChatOrchestrator(
        store=store,
        inference=inference,
        tools=tools,
        config=config,
        streams=StreamContextProvider(None),
    )


@pytest.fixture
def make_body():
    """Build a request body in the current wire format."""

    def build(text: str = "hi", chat_id: Optional[str] = None, **selections: Any) -> Dict[str, Any]:
        body = {
            "id": chat_id or str(uuid.uuid4()),
            "messages": [
                {
                    "id": str(uuid.uuid4()),
                    "role": "user",
                    "parts": [{"type": "text", "text": text}],
                }
            ],
            "selectedChatModel": "chat-model",
            "selectedVisibilityType": "private",
        }
        body.update(selections)
        return body

    return build


@pytest.fixture
def collect():
    """Drain an async frame iterator into a list."""

    async def drain(frames) -> list:
        return [frame async for frame in frames]

    return drain
