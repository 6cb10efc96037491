"""
Unit tests for inbound turn validation.

Covers both wire formats, normalisation defaults and the itemised
rejection reported when nothing validates.
"""

import uuid

import pytest

from toolchat.models import FileReferencePart, StepBoundaryPart, TextPart, ToolCallPart
from toolchat.services.request_validator import (
    FALLBACK_SUMMARY,
    TurnRequest,
    ValidationRejection,
    validate_turn_request,
)


def _message(role="user", parts=None):
    return {
        "id": str(uuid.uuid4()),
        "role": role,
        "parts": parts if parts is not None else [{"type": "text", "text": "hi"}],
    }


class TestCurrentFormat:
    """Requests carrying the full message list."""

    def test_valid_request_normalised(self, make_body):
        body = make_body("hello")
        result = validate_turn_request(body)

        assert isinstance(result, TurnRequest)
        assert result.schema_name == "current"
        assert result.id == body["id"]
        assert result.latest_message.text_content() == "hello"
        assert result.latest_message.chat_id == body["id"]
        assert result.history == []

    def test_selections_default_when_absent(self):
        body = {"id": str(uuid.uuid4()), "messages": [_message()]}
        result = validate_turn_request(body)

        assert isinstance(result, TurnRequest)
        assert result.selected_chat_model == "chat-model"
        assert result.selected_visibility_type == "private"
        assert result.selected_agent_id is None

    def test_last_message_is_latest_and_rest_is_history(self):
        first = _message("user", [{"type": "text", "text": "first"}])
        reply = _message("assistant", [{"type": "step-start"}, {"type": "text", "text": "answer"}])
        last = _message("user", [{"type": "text", "text": "second"}])
        body = {"id": str(uuid.uuid4()), "messages": [first, reply, last]}

        result = validate_turn_request(body)

        assert result.latest_message.id == last["id"]
        assert [m.id for m in result.history] == [first["id"], reply["id"]]
        assert isinstance(result.history[1].parts[0], StepBoundaryPart)

    def test_agent_id_is_carried(self, make_body):
        agent_id = str(uuid.uuid4())
        result = validate_turn_request(make_body(selectedAgentId=agent_id))
        assert result.selected_agent_id == agent_id

    def test_file_part_normalised(self):
        parts = [
            {"type": "file", "mediaType": "image/png", "name": "cat.png", "url": "https://example.com/cat.png"},
            {"type": "text", "text": "what is this?"},
        ]
        result = validate_turn_request({"id": str(uuid.uuid4()), "messages": [_message(parts=parts)]})

        file_part = result.latest_message.parts[0]
        assert isinstance(file_part, FileReferencePart)
        assert file_part.media_type == "image/png"
        assert file_part.url == "https://example.com/cat.png"

    @pytest.mark.parametrize("wire_state,expected", [
        ("call", "pending"),
        ("partial-call", "pending"),
        ("result", "result"),
        ("output-available", "result"),
        ("output-error", "error"),
    ])
    def test_tool_part_states(self, wire_state, expected):
        parts = [{
            "type": "tool-NOTION_FETCH_BLOCK_CONTENTS",
            "toolCallId": "call-1",
            "state": wire_state,
            "input": {"block_id": "b1"},
            "output": {"successful": True},
        }]
        body = {"id": str(uuid.uuid4()), "messages": [_message(), _message("assistant", parts), _message()]}

        result = validate_turn_request(body)
        part = result.history[1].parts[0]

        assert isinstance(part, ToolCallPart)
        assert part.tool_name == "NOTION_FETCH_BLOCK_CONTENTS"
        assert part.call_id == "call-1"
        assert part.state == expected


class TestLegacyFormat:
    """Single-message requests."""

    def test_valid_legacy_request(self):
        body = {
            "id": str(uuid.uuid4()),
            "message": _message(),
            "selectedChatModel": "chat-model-reasoning",
            "selectedVisibilityType": "public",
        }
        result = validate_turn_request(body)

        assert isinstance(result, TurnRequest)
        assert result.schema_name == "legacy"
        assert result.history == []
        assert result.selected_chat_model == "chat-model-reasoning"
        assert result.selected_visibility_type == "public"

    def test_legacy_requires_selections(self):
        body = {"id": str(uuid.uuid4()), "message": _message()}
        result = validate_turn_request(body)

        assert isinstance(result, ValidationRejection)
        legacy_paths = {issue.path for issue in result.issues["legacy"]}
        assert "selectedChatModel" in legacy_paths
        assert "selectedVisibilityType" in legacy_paths

    def test_legacy_rejects_assistant_message(self):
        body = {
            "id": str(uuid.uuid4()),
            "message": _message("assistant"),
            "selectedChatModel": "chat-model",
            "selectedVisibilityType": "private",
        }
        assert isinstance(validate_turn_request(body), ValidationRejection)


class TestRejection:
    """Itemised rejection when no format validates."""

    @pytest.mark.parametrize("raw", [None, "hello", 42, [], {}, {"id": "x"}])
    def test_never_raises_and_lists_issues(self, raw):
        result = validate_turn_request(raw)

        assert isinstance(result, ValidationRejection)
        assert set(result.issues) == {"current", "legacy"}
        assert all(result.issues[name] for name in result.issues)

    def test_malformed_chat_id(self, make_body):
        result = validate_turn_request(make_body(chat_id="not-a-uuid"))

        assert isinstance(result, ValidationRejection)
        assert "malformed chat id" in result.summary
        constraints = {(i.path, i.constraint) for i in result.issues["current"]}
        assert ("id", "malformed UUID") in constraints

    def test_empty_parts(self):
        body = {"id": str(uuid.uuid4()), "messages": [_message(parts=[])]}
        result = validate_turn_request(body)

        assert isinstance(result, ValidationRejection)
        assert "malformed message parts" in result.summary
        assert any(i.constraint == "array of parts empty" for i in result.issues["current"])

    def test_empty_message_list(self):
        result = validate_turn_request({"id": str(uuid.uuid4()), "messages": []})
        assert any(
            i.path == "messages" and i.constraint == "empty array"
            for i in result.issues["current"]
        )

    def test_invalid_model_and_agent(self, make_body):
        result = validate_turn_request(make_body(selectedChatModel="gpt-9", selectedAgentId="nope"))

        assert isinstance(result, ValidationRejection)
        assert "invalid model selection" in result.summary
        assert "malformed agent id" in result.summary

    def test_text_too_long(self, make_body):
        result = validate_turn_request(make_body("x" * 2001))
        assert any(i.constraint == "too long" for i in result.issues["current"])

    def test_unsupported_file_type(self):
        parts = [{"type": "file", "mediaType": "application/pdf", "name": "a.pdf", "url": "https://e.com/a.pdf"}]
        result = validate_turn_request({"id": str(uuid.uuid4()), "messages": [_message(parts=parts)]})
        assert isinstance(result, ValidationRejection)

    def test_unmatched_body_uses_fallback_summary(self):
        result = validate_turn_request("hello")
        assert result.summary == FALLBACK_SUMMARY

    def test_issues_payload_is_serialisable(self, make_body):
        result = validate_turn_request(make_body(chat_id="bad"))
        payload = result.issues_payload()

        assert set(payload) == {"current", "legacy"}
        assert {"path", "constraint", "message"} <= set(payload["current"][0])


def test_text_part_round_trip(make_body):
    result = validate_turn_request(make_body("plain"))
    part = result.latest_message.parts[0]
    assert isinstance(part, TextPart)
    assert part.text == "plain"
