"""
Unit tests for the chat orchestrator.

Drives turns end to end against the in-memory store with scripted
inference and tool providers: preparation failures, terminal stream
behaviour, the tool step loop, resumption and deletion.
"""

import asyncio
import uuid

import pytest

from toolchat.lib.errors import (
    ForbiddenError,
    NotFoundError,
    RateLimitedError,
    UnauthorizedError,
    UpstreamUnavailableError,
    ValidationFailedError,
)
from toolchat.models import (
    AvailableTool,
    ConnectedToolkit,
    Conversation,
    Identity,
    Message,
    MessageRole,
    ReasoningDelta,
    StepBoundaryPart,
    TextDelta,
    TextPart,
    ToolCallPart,
    ToolCallRequest,
    ToolResultMessage,
    ToolScope,
)
from toolchat.services.chat_orchestrator import (
    GENERIC_ERROR_TEXT,
    TIMEOUT_ERROR_TEXT,
    ChatOrchestrator,
    derive_title,
    normalize_tool_declaration,
    smooth_text,
)
from toolchat.services.stream_context import StreamContextProvider


NOTION_SLUG = "NOTION_FETCH_BLOCK_CONTENTS"


@pytest.fixture
def notion_enabled(store):
    store.add_tool(AvailableTool(slug=NOTION_SLUG))
    store.set_enablement(ToolScope.for_user("user-1"), NOTION_SLUG)
    store.add_connection("user-1", ConnectedToolkit(toolkit="NOTION", connection_id="conn-notion"))
    return store


def _types(frames):
    return [frame.type for frame in frames]


class TestPrepareTurn:
    """Checks that run before any model call."""

    @pytest.mark.asyncio
    async def test_requires_identity(self, orchestrator, make_body):
        with pytest.raises(UnauthorizedError):
            await orchestrator.prepare_turn(make_body(), None)

    @pytest.mark.asyncio
    async def test_validation_failure_is_itemised(self, orchestrator, identity, make_body):
        with pytest.raises(ValidationFailedError) as exc_info:
            await orchestrator.prepare_turn(make_body(chat_id="bad-id"), identity)

        error = exc_info.value
        assert "malformed chat id" in error.message
        assert set(error.to_response()["issues"]) == {"current", "legacy"}

    @pytest.mark.asyncio
    async def test_creates_conversation_and_persists_user_message(self, orchestrator, store, identity, make_body):
        body = make_body("Plan a trip to Porto", selectedVisibilityType="public")
        prepared = await orchestrator.prepare_turn(body, identity)

        conversation = await store.get_conversation(body["id"])
        assert conversation.user_id == "user-1"
        assert conversation.title == "Plan a trip to Porto"
        assert conversation.visibility == "public"

        messages = await store.get_messages(body["id"])
        assert [m.role for m in messages] == ["user"]
        assert await store.get_stream_session(prepared.stream_id) is not None

    @pytest.mark.asyncio
    async def test_history_comes_from_store(self, orchestrator, store, identity, make_body):
        chat_id = str(uuid.uuid4())
        await orchestrator.prepare_turn(make_body("first", chat_id=chat_id), identity)
        prepared = await orchestrator.prepare_turn(make_body("second", chat_id=chat_id), identity)

        assert [m.text_content() for m in prepared.history] == ["first", "second"]

    @pytest.mark.asyncio
    async def test_foreign_conversation_forbidden(self, orchestrator, store, identity, make_body):
        chat_id = str(uuid.uuid4())
        await store.save_conversation(Conversation(id=chat_id, user_id="someone-else"))

        with pytest.raises(ForbiddenError):
            await orchestrator.prepare_turn(make_body(chat_id=chat_id), identity)
        assert await store.get_messages(chat_id) == []

    @pytest.mark.asyncio
    async def test_quota_exceeded(self, orchestrator, config, identity, make_body):
        config.entitlements["regular"].max_messages_per_day = 1

        await orchestrator.prepare_turn(make_body(), identity)
        with pytest.raises(RateLimitedError):
            await orchestrator.prepare_turn(make_body(), identity)

    @pytest.mark.asyncio
    async def test_tool_provider_outage(self, orchestrator, notion_enabled, tools, identity, make_body):
        tools.declarations_error = ConnectionError("provider down")

        with pytest.raises(UpstreamUnavailableError):
            await orchestrator.prepare_turn(make_body(), identity)

    @pytest.mark.asyncio
    async def test_tool_declarations_and_prompt(self, orchestrator, notion_enabled, identity, make_body):
        prepared = await orchestrator.prepare_turn(make_body(), identity)

        assert [tool.name for tool in prepared.tools] == [NOTION_SLUG]
        assert prepared.tools[0].connection_id == "conn-notion"
        assert prepared.tools[0].input_schema["type"] == "object"
        assert "**Notion Tool Guidelines:**" in prepared.system_prompt

    @pytest.mark.asyncio
    async def test_missing_agent_does_not_abort(self, orchestrator, identity, make_body):
        prepared = await orchestrator.prepare_turn(make_body(selectedAgentId=str(uuid.uuid4())), identity)

        assert prepared.resolved.agent_id is None
        assert prepared.resolved.effective_model == "chat-model"


class TestStreamTurn:
    """Terminal behaviour of the streaming phase."""

    @pytest.mark.asyncio
    async def test_finished_turn(self, orchestrator, store, identity, make_body, collect):
        body = make_body("hi")
        prepared = await orchestrator.prepare_turn(body, identity)
        frames = await collect(orchestrator.open_stream(prepared))

        assert frames[0].type == "text-delta"
        assert frames[-1].type == "done"
        assert [f.seq for f in frames] == list(range(1, len(frames) + 1))
        assert "".join(f.data["delta"] for f in frames if f.type == "text-delta") == "Hello there, friend."

        messages = await store.get_messages(body["id"])
        assert [m.role for m in messages] == ["user", "assistant"]
        assert isinstance(messages[1].parts[0], StepBoundaryPart)
        assert messages[1].text_content() == "Hello there, friend."

    @pytest.mark.asyncio
    async def test_reasoning_frames(self, orchestrator, inference, identity, make_body, collect):
        inference.steps = [[ReasoningDelta(text="thinking"), TextDelta(text="answer")]]
        prepared = await orchestrator.prepare_turn(make_body(), identity)
        frames = await collect(orchestrator.stream_turn(prepared))

        assert _types(frames) == ["reasoning-delta", "text-delta", "done"]

    @pytest.mark.asyncio
    async def test_provider_error_is_generic(self, orchestrator, inference, store, identity, make_body, collect):
        inference.error = RuntimeError("secret internal detail")
        body = make_body()
        prepared = await orchestrator.prepare_turn(body, identity)
        frames = await collect(orchestrator.stream_turn(prepared))

        assert _types(frames)[-2:] == ["error", "done"]
        assert frames[-2].data == {"errorText": GENERIC_ERROR_TEXT}
        assert _types(frames).count("error") == 1
        assert all("secret" not in str(f.data) for f in frames)

        messages = await store.get_messages(body["id"])
        assert [m.role for m in messages] == ["user"]

    @pytest.mark.asyncio
    async def test_turn_deadline(self, orchestrator, inference, config, store, identity, make_body, collect):
        config.chat.max_turn_duration_seconds = 0.05
        inference.delay = 0.5
        body = make_body()
        prepared = await orchestrator.prepare_turn(body, identity)
        frames = await collect(orchestrator.stream_turn(prepared))

        assert _types(frames) == ["error", "done"]
        assert frames[0].data == {"errorText": TIMEOUT_ERROR_TEXT}
        assert [m.role for m in await store.get_messages(body["id"])] == ["user"]

    @pytest.mark.asyncio
    async def test_disconnect_discards_partial_output(self, orchestrator, inference, store, identity, make_body):
        inference.steps = [[TextDelta(text="one "), TextDelta(text="two "), TextDelta(text="three ")]]
        inference.delay = 0.01
        body = make_body()
        prepared = await orchestrator.prepare_turn(body, identity)

        stream = orchestrator.stream_turn(prepared)
        first = await stream.__anext__()
        await stream.aclose()

        assert first.type == "text-delta"
        assert [m.role for m in await store.get_messages(body["id"])] == ["user"]

    @pytest.mark.asyncio
    async def test_tool_step_loop(
        self, orchestrator, notion_enabled, inference, tools, store, identity, make_body, collect
    ):
        inference.steps = [
            [ToolCallRequest(call_id="call-1", tool_name=NOTION_SLUG, input={"block_id": "b1"})],
            [TextDelta(text="Your page says hello.")],
        ]
        tools.results[NOTION_SLUG] = {
            "successful": True,
            "data": {"results": [{"id": "b1", "type": "paragraph", "paragraph": {"rich_text": [{"plain_text": "hello"}]}}]},
        }
        body = make_body("What is on my page?")
        prepared = await orchestrator.prepare_turn(body, identity)
        frames = await collect(orchestrator.stream_turn(prepared))

        assert _types(frames)[:2] == ["tool-call-start", "tool-call-result"]
        assert _types(frames)[-1] == "done"
        result = frames[1].data
        assert result["toolCallId"] == "call-1"
        assert result["state"] == "result"
        assert result["output"]["data"]["blocks"][0]["text"] == "hello"

        assert tools.calls == [{"slug": NOTION_SLUG, "arguments": {"block_id": "b1"}, "connection_id": "conn-notion"}]
        second_request = inference.requests[1]
        assert isinstance(second_request.messages[-1], ToolResultMessage)
        assert second_request.step == 2

        assistant = (await store.get_messages(body["id"]))[-1]
        assert assistant.role == "assistant"
        assert [p.type for p in assistant.parts] == ["step-boundary", "tool-call", "step-boundary", "text"]

    @pytest.mark.asyncio
    async def test_tool_exception_is_tool_level_failure(
        self, orchestrator, notion_enabled, inference, tools, identity, make_body, collect
    ):
        inference.steps = [
            [ToolCallRequest(call_id="call-1", tool_name=NOTION_SLUG, input={})],
            [TextDelta(text="Sorry, that failed.")],
        ]
        tools.failing.add(NOTION_SLUG)
        prepared = await orchestrator.prepare_turn(make_body(), identity)
        frames = await collect(orchestrator.stream_turn(prepared))

        result = frames[1].data
        assert result["state"] == "error"
        assert result["output"] == {"successful": False, "error": "Tool execution failed"}
        assert "error" not in _types(frames)
        assert len(inference.requests) == 2

    @pytest.mark.asyncio
    async def test_unavailable_tool_not_executed(self, orchestrator, inference, tools, identity, make_body, collect):
        inference.steps = [
            [ToolCallRequest(call_id="call-1", tool_name="GMAIL_SEND_EMAIL", input={})],
            [TextDelta(text="I cannot send email.")],
        ]
        prepared = await orchestrator.prepare_turn(make_body(), identity)
        frames = await collect(orchestrator.stream_turn(prepared))

        assert frames[1].data["state"] == "error"
        assert tools.calls == []

    @pytest.mark.asyncio
    async def test_step_limit(self, orchestrator, notion_enabled, inference, config, identity, make_body, collect):
        config.chat.max_steps = 2
        inference.steps = [[ToolCallRequest(call_id="loop", tool_name=NOTION_SLUG, input={})]]
        prepared = await orchestrator.prepare_turn(make_body(), identity)
        frames = await collect(orchestrator.stream_turn(prepared))

        assert len(inference.requests) == 2
        assert _types(frames).count("tool-call-start") == 2
        assert frames[-1].type == "done"


class TestResumption:

    @pytest.mark.asyncio
    async def test_unknown_stream_is_empty_completion(self, orchestrator, identity, collect):
        frames = await collect(await orchestrator.resume_stream("unknown-stream", identity))
        assert _types(frames) == ["done"]

    @pytest.mark.asyncio
    async def test_resume_requires_identity(self, orchestrator):
        with pytest.raises(UnauthorizedError):
            await orchestrator.resume_stream("any", None)

    @pytest.mark.asyncio
    async def test_private_stream_owner_only(self, orchestrator, identity, make_body):
        prepared = await orchestrator.prepare_turn(make_body(), identity)

        with pytest.raises(ForbiddenError):
            await orchestrator.resume_stream(prepared.stream_id, Identity(user_id="intruder"))

    @pytest.mark.asyncio
    async def test_public_stream_readable(self, orchestrator, identity, make_body, collect):
        prepared = await orchestrator.prepare_turn(make_body(selectedVisibilityType="public"), identity)
        frames = await collect(await orchestrator.resume_stream(prepared.stream_id, Identity(user_id="reader")))
        assert _types(frames) == ["done"]

    @pytest.mark.asyncio
    async def test_resumable_stream_then_finished(
        self, store, inference, tools, config, identity, make_body, collect, tmp_path
    ):
        streams = StreamContextProvider.from_config(True, str(tmp_path))
        orchestrator = ChatOrchestrator(store, inference, tools, config, streams=streams)
        body = make_body()
        prepared = await orchestrator.prepare_turn(body, identity)

        frames = await collect(orchestrator.open_stream(prepared))
        assert frames[-1].type == "done"
        assert (tmp_path / f"{prepared.stream_id}.jsonl").exists()

        context = streams.get()
        for _ in range(200):
            if context.active_streams == 0:
                break
            await asyncio.sleep(0.01)
        resumed = await collect(await orchestrator.resume_latest(body["id"], identity, last_event_id=len(frames)))
        assert _types(resumed) == ["done"]
        assert resumed[0].seq == len(frames) + 1

    @pytest.mark.asyncio
    async def test_disconnected_turn_resumes_within_grace_period(
        self, store, inference, tools, config, identity, make_body, collect, tmp_path
    ):
        inference.steps = [[TextDelta(text="word0 "), TextDelta(text="word1 "), TextDelta(text="word2 ")]]
        inference.delay = 0.05
        streams = StreamContextProvider.from_config(True, str(tmp_path), detach_grace_seconds=5)
        orchestrator = ChatOrchestrator(store, inference, tools, config, streams=streams)
        prepared = await orchestrator.prepare_turn(make_body(), identity)

        reader = orchestrator.open_stream(prepared)
        first = await reader.__anext__()
        await reader.aclose()
        assert first.type == "text-delta"

        resumed = await collect(await orchestrator.resume_stream(prepared.stream_id, identity, first.seq))

        assert all(frame.seq > first.seq for frame in resumed)
        assert "".join(f.data["delta"] for f in resumed if f.type == "text-delta") == "word1 word2 "
        assert resumed[-1].type == "done"

        context = streams.get()
        for _ in range(200):
            if context.active_streams == 0:
                break
            await asyncio.sleep(0.01)
        assert [m.role for m in store._messages[prepared.chat_id]] == ["user", "assistant"]

    @pytest.mark.asyncio
    async def test_resume_latest_unknown_chat(self, orchestrator, identity):
        with pytest.raises(NotFoundError):
            await orchestrator.resume_latest(str(uuid.uuid4()), identity)


class TestDeleteConversation:

    @pytest.mark.asyncio
    async def test_owner_deletes(self, orchestrator, store, identity, make_body):
        body = make_body()
        prepared = await orchestrator.prepare_turn(body, identity)

        deleted = await orchestrator.delete_conversation(body["id"], identity)

        assert deleted.id == body["id"]
        assert await store.get_conversation(body["id"]) is None
        assert await store.get_stream_session(prepared.stream_id) is None
        with pytest.raises(NotFoundError):
            await orchestrator.delete_conversation(body["id"], identity)

    @pytest.mark.asyncio
    async def test_non_owner_forbidden(self, orchestrator, identity, make_body):
        body = make_body()
        await orchestrator.prepare_turn(body, identity)

        with pytest.raises(ForbiddenError):
            await orchestrator.delete_conversation(body["id"], Identity(user_id="intruder"))

    @pytest.mark.asyncio
    async def test_journals_removed_with_conversation(
        self, store, inference, tools, config, identity, make_body, collect, tmp_path
    ):
        streams = StreamContextProvider.from_config(True, str(tmp_path))
        orchestrator = ChatOrchestrator(store, inference, tools, config, streams=streams)
        body = make_body()
        prepared = await orchestrator.prepare_turn(body, identity)
        await collect(orchestrator.open_stream(prepared))

        context = streams.get()
        for _ in range(200):
            if context.active_streams == 0:
                break
            await asyncio.sleep(0.01)
        journal = tmp_path / f"{prepared.stream_id}.jsonl"
        assert journal.exists()

        await orchestrator.delete_conversation(body["id"], identity)

        assert not journal.exists()
        assert list(tmp_path.glob("*.jsonl")) == []

    @pytest.mark.asyncio
    async def test_requires_identity(self, orchestrator):
        with pytest.raises(UnauthorizedError):
            await orchestrator.delete_conversation("any", None)


class TestHelpers:

    @pytest.mark.asyncio
    async def test_smooth_text_rechunks_at_word_boundaries(self, collect):
        async def events():
            yield TextDelta(text="Hel")
            yield TextDelta(text="lo wor")
            yield TextDelta(text="ld again")
            yield ReasoningDelta(text="hmm")
            yield TextDelta(text=" tail")

        chunks = await collect(smooth_text(events()))
        assert [(type(c).__name__, c.text) for c in chunks] == [
            ("TextDelta", "Hello "),
            ("TextDelta", "world "),
            ("TextDelta", "again"),
            ("ReasoningDelta", "hmm"),
            ("TextDelta", " tail"),
        ]

    def test_derive_title(self):
        long_text = "word " * 40
        message = Message(role=MessageRole.USER, parts=[TextPart(text=long_text)])
        title = derive_title(message, 80)

        assert len(title) <= 80
        assert title.endswith("...")
        assert derive_title(Message(role=MessageRole.USER, parts=[StepBoundaryPart()])) == "New chat"

    def test_normalize_tool_declaration(self):
        assert normalize_tool_declaration({"name": "X_TOOL"}) is None
        normalized = normalize_tool_declaration({"slug": "X_TOOL", "description": "d", "parameters": {"required": []}})
        assert normalized == {
            "name": "X_TOOL",
            "description": "d",
            "input_schema": {"required": [], "type": "object", "properties": {}},
        }

    def test_tool_call_part_transition(self):
        part = ToolCallPart(tool_name=NOTION_SLUG)
        part.transition("result", {"ok": True})

        assert part.state == "result"
        with pytest.raises(ValueError):
            part.transition("error")
