"""
Integration tests for the HTTP surface.

Drives the FastAPI application through TestClient with the in-memory
store and scripted providers, decoding the server-sent event stream.
"""

import json
import uuid

import pytest
from fastapi.testclient import TestClient

from toolchat.api.server import HeaderIdentityProvider, create_app
from toolchat.models import AvailableTool, ConnectedToolkit, Conversation, ToolCallRequest, TextDelta, ToolScope


pytestmark = pytest.mark.integration

OWNER = {"x-user-id": "user-1"}


def parse_sse(text):
    """Decode an event stream body into a list of {event, id, data} dicts."""
    events, current = [], {}
    for line in text.splitlines():
        if not line:
            if current:
                events.append(current)
                current = {}
            continue
        if line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        current[field] = value[1:] if value.startswith(" ") else value
    if current:
        events.append(current)

    for event in events:
        if "data" in event:
            event["data"] = json.loads(event["data"])
    return events


@pytest.fixture(autouse=True)
def reset_sse_app_status():
    # sse-starlette keeps a process-wide exit event bound to the first event loop
    from sse_starlette.sse import AppStatus

    if hasattr(AppStatus, "should_exit_event"):
        AppStatus.should_exit_event = None
    yield


@pytest.fixture
def client(orchestrator, config):
    app = create_app(orchestrator, HeaderIdentityProvider(), config)
    with TestClient(app) as test_client:
        yield test_client


class TestSubmitTurn:

    def test_streams_frames_and_persists(self, client, store, make_body):
        body = make_body("hi")
        response = client.post("/api/chat", json=body, headers=OWNER)

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert response.headers["x-stream-id"]

        events = parse_sse(response.text)
        assert events[0]["event"] == "text-delta"
        assert events[-1]["event"] == "done"
        assert [int(e["id"]) for e in events] == list(range(1, len(events) + 1))
        assert events[0]["data"]["type"] == "text-delta"

        conversation = store._conversations[body["id"]]
        assert conversation.user_id == "user-1"
        assert [m.role for m in store._messages[body["id"]]] == ["user", "assistant"]

    def test_requires_identity(self, client, make_body):
        response = client.post("/api/chat", json=make_body())

        assert response.status_code == 401
        assert response.json()["code"] == "unauthorized"

    def test_malformed_json(self, client):
        response = client.post(
            "/api/chat",
            content=b"{not json",
            headers={**OWNER, "content-type": "application/json"},
        )

        assert response.status_code == 400
        assert response.json()["code"] == "validation_failed"

    def test_identity_checked_before_body(self, client):
        response = client.post(
            "/api/chat",
            content=b"{not json",
            headers={"content-type": "application/json"},
        )

        assert response.status_code == 401
        assert response.json()["code"] == "unauthorized"

    def test_invalid_body_lists_issues(self, client, make_body):
        response = client.post("/api/chat", json=make_body(chat_id="nope"), headers=OWNER)

        assert response.status_code == 400
        payload = response.json()
        assert payload["code"] == "validation_failed"
        assert "malformed chat id" in payload["message"]
        assert payload["issues"]["current"]

    def test_foreign_conversation(self, client, store, make_body):
        chat_id = str(uuid.uuid4())
        store._conversations[chat_id] = Conversation(id=chat_id, user_id="someone-else")

        response = client.post("/api/chat", json=make_body(chat_id=chat_id), headers=OWNER)
        assert response.status_code == 403

    def test_provider_error_becomes_error_frame(self, client, inference, make_body):
        inference.error = RuntimeError("connection reset by model host")
        response = client.post("/api/chat", json=make_body(), headers=OWNER)

        events = parse_sse(response.text)
        assert response.status_code == 200
        assert [e["event"] for e in events][-2:] == ["error", "done"]
        assert "connection reset" not in response.text

    def test_tool_round_trip(self, client, store, inference, tools, make_body):
        slug = "REDDIT_SEARCH_ACROSS_SUBREDDITS"
        store.add_tool(AvailableTool(slug=slug))
        store.set_enablement(ToolScope.for_user("user-1"), slug)
        store.add_connection("user-1", ConnectedToolkit(toolkit="REDDIT", connection_id="conn-reddit"))
        inference.steps = [
            [ToolCallRequest(call_id="call-1", tool_name=slug, input={"query": "python"})],
            [TextDelta(text="Found nothing useful.")],
        ]
        tools.results[slug] = {"successful": False, "error": "rate limited", "data": {"raw": "x" * 20000}}

        events = parse_sse(client.post("/api/chat", json=make_body(), headers=OWNER).text)
        result = next(e for e in events if e["event"] == "tool-call-result")

        assert result["data"]["state"] == "error"
        assert result["data"]["output"] == {"successful": False, "error": "rate limited"}
        assert events[-1]["event"] == "done"


class TestResumeStream:

    def test_unknown_stream_is_empty_completion(self, client):
        response = client.get("/api/streams/does-not-exist", headers=OWNER)

        assert response.status_code == 200
        assert [e["event"] for e in parse_sse(response.text)] == ["done"]

    def test_finished_stream_honours_last_event_id(self, client, make_body):
        body = make_body()
        submitted = client.post("/api/chat", json=body, headers=OWNER)
        stream_id = submitted.headers["x-stream-id"]
        last_id = parse_sse(submitted.text)[-1]["id"]

        response = client.get(
            f"/api/streams/{stream_id}",
            headers={**OWNER, "last-event-id": last_id},
        )
        events = parse_sse(response.text)

        assert [e["event"] for e in events] == ["done"]
        assert int(events[0]["id"]) == int(last_id) + 1

    def test_private_stream_hidden_from_others(self, client, make_body):
        body = make_body()
        stream_id = client.post("/api/chat", json=body, headers=OWNER).headers["x-stream-id"]

        response = client.get(f"/api/streams/{stream_id}", headers={"x-user-id": "intruder"})
        assert response.status_code == 403

    def test_resume_by_chat_id(self, client, make_body):
        body = make_body()
        client.post("/api/chat", json=body, headers=OWNER)

        response = client.get(f"/api/chat/{body['id']}/stream", headers=OWNER)
        assert parse_sse(response.text)[-1]["event"] == "done"

        missing = client.get(f"/api/chat/{uuid.uuid4()}/stream", headers=OWNER)
        assert missing.status_code == 404

    def test_requires_identity(self, client):
        assert client.get("/api/streams/anything").status_code == 401


class TestDeleteConversation:

    def test_owner_deletes(self, client, make_body):
        body = make_body()
        client.post("/api/chat", json=body, headers=OWNER)

        response = client.delete("/api/chat", params={"id": body["id"]}, headers=OWNER)
        assert response.status_code == 200
        assert response.json()["id"] == body["id"]

        again = client.delete("/api/chat", params={"id": body["id"]}, headers=OWNER)
        assert again.status_code == 404

    def test_non_owner_forbidden(self, client, make_body):
        body = make_body()
        client.post("/api/chat", json=body, headers=OWNER)

        response = client.delete("/api/chat", params={"id": body["id"]}, headers={"x-user-id": "intruder"})
        assert response.status_code == 403
        assert response.json()["code"] == "forbidden"

    def test_missing_id(self, client):
        response = client.delete("/api/chat", headers=OWNER)
        assert response.status_code == 400

        anonymous = client.delete("/api/chat")
        assert anonymous.status_code == 401


def test_health(client):
    payload = client.get("/api/health").json()

    assert payload["status"] == "healthy"
    assert payload["resumable_streams"] is False
