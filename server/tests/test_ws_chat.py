"""End-to-end tests for the /ws/chat endpoint through the FastAPI TestClient."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from config import Settings


def _no_upstream(request: httpx.Request) -> httpx.Response:
    raise AssertionError(f"Unexpected HTTP call to {request.url}")


@pytest.fixture
def app(session_factory):
    """The real app with collaborators bound to the test database."""
    from main import app as _app, init_state

    settings = Settings(OPENROUTER_API_KEY="", MOCK_STREAM_DELAY_SECONDS=0, TOOLS_ENABLED=False)
    http = httpx.AsyncClient(transport=httpx.MockTransport(_no_upstream))
    init_state(_app, session_factory=session_factory, http_client=http, app_settings=settings)
    yield _app


@pytest.fixture
def client(app):
    return TestClient(app)


def _url(api_key) -> str:
    return f"/ws/chat?token={api_key.key}"


def _receive_until(ws, predicate, limit=500):
    events = []
    for _ in range(limit):
        event = ws.receive_json()
        events.append(event)
        if predicate(event):
            return events
    raise AssertionError("expected event never arrived")


def _assistant_saved(event) -> bool:
    return event["type"] == "message_saved" and event["message"]["role"] == "assistant"


class TestHandshake:
    def test_missing_token_closes_1008(self, client):
        with pytest.raises(WebSocketDisconnect) as exc:
            with client.websocket_connect("/ws/chat") as ws:
                ws.receive_json()
        assert exc.value.code == 1008

    def test_invalid_token_closes_1008(self, client, api_key):
        with pytest.raises(WebSocketDisconnect) as exc:
            with client.websocket_connect("/ws/chat?token=wrong") as ws:
                ws.receive_json()
        assert exc.value.code == 1008

    def test_verifier_failure_closes_1011(self, client, app, api_key):
        app.state.token_verifier = MagicMock()
        app.state.token_verifier.verify.side_effect = RuntimeError("db down")
        with pytest.raises(WebSocketDisconnect) as exc:
            with client.websocket_connect(_url(api_key)) as ws:
                ws.receive_json()
        assert exc.value.code == 1011

    def test_connected_event_via_query(self, client, app, api_key):
        with client.websocket_connect(_url(api_key)) as ws:
            event = ws.receive_json()
            assert event["type"] == "connected"
            assert event["sessionId"].startswith("session_")
            assert event["sessionId"] in app.state.sessions

    def test_connected_event_via_header(self, client, api_key):
        with client.websocket_connect("/ws/chat", headers={"Authorization": f"Bearer {api_key.key}"}) as ws:
            assert ws.receive_json()["type"] == "connected"

    def test_session_discarded_when_client_closes(self, client, app, api_key):
        with client.websocket_connect(_url(api_key)) as ws:
            sid = ws.receive_json()["sessionId"]
            assert sid in app.state.sessions
        assert sid not in app.state.sessions
        assert len(app.state.sessions) == 0

    def test_setup_failure_closes_1011_and_cleans_up(self, client, app, api_key, monkeypatch):
        import ws.chat as chat_module

        def _broken_bind(connection_id, user_id):
            raise RuntimeError("context unavailable")

        monkeypatch.setattr(chat_module, "bind_connection", _broken_bind)
        with pytest.raises(WebSocketDisconnect) as exc:
            with client.websocket_connect(_url(api_key)) as ws:
                ws.receive_json()
        assert exc.value.code == 1011
        assert len(app.state.sessions) == 0


class TestChatTurn:
    def test_hello_scenario(self, client, api_key, free_usage):
        with client.websocket_connect(_url(api_key)) as ws:
            session_id = ws.receive_json()["sessionId"]
            ws.send_json({"type": "chat", "content": "Hello"})
            events = _receive_until(ws, _assistant_saved)

        types = [e["type"] for e in events]
        assert types[0] == "message_saved"
        assert events[0]["message"]["role"] == "user"
        assert types[-2:] == ["complete", "message_saved"]
        tokens = [e["content"] for e in events if e["type"] == "token"]
        assert tokens
        assert "".join(tokens) == events[-1]["message"]["content"]
        assert "error" not in types
        assert all(e["sessionId"] == session_id for e in events)

    def test_rate_limited_turn(self, client, db, api_key, free_usage):
        free_usage.daily_interactions = 5
        db.commit()

        with client.websocket_connect(_url(api_key)) as ws:
            ws.receive_json()
            ws.send_json({"type": "chat", "content": "Hello"})
            event = ws.receive_json()

        assert event["type"] == "rate_limit_exceeded"
        assert event["reason"] == "daily_limit_reached"
        assert event["upgradeUrl"] == "/settings/billing"

    def test_empty_content_is_an_error(self, client, api_key, free_usage):
        with client.websocket_connect(_url(api_key)) as ws:
            ws.receive_json()
            ws.send_json({"type": "chat", "content": "   "})
            event = ws.receive_json()
        assert event["type"] == "error"
        assert event["error"].startswith("Invalid chat message")

    def test_turn_failure_reports_error_and_keeps_socket(self, client, app, api_key):
        app.state.completion_bridge = MagicMock()
        app.state.completion_bridge.run_turn = AsyncMock(side_effect=RuntimeError("boom"))

        with client.websocket_connect(_url(api_key)) as ws:
            ws.receive_json()
            ws.send_json({"type": "chat", "content": "Hello"})
            assert ws.receive_json()["error"] == "Failed to process chat message"

            ws.send_json({"type": "get_history", "workflowId": "wf-1"})
            assert ws.receive_json()["type"] == "history"


class TestProtocolErrors:
    def test_unknown_type_then_history(self, client, api_key):
        with client.websocket_connect(_url(api_key)) as ws:
            ws.receive_json()
            ws.send_json({"type": "frobnicate"})
            event = ws.receive_json()
            assert event["type"] == "error"
            assert event["error"] == "Unrecognized message type: frobnicate"

            ws.send_json({"type": "get_history", "workflowId": "wf-1"})
            event = ws.receive_json()
            assert event["type"] == "history"
            assert event["history"] == []

    def test_non_json_frame(self, client, api_key):
        with client.websocket_connect(_url(api_key)) as ws:
            ws.receive_json()
            ws.send_text("this is not json")
            assert ws.receive_json()["error"] == "Invalid message format"

    @pytest.mark.parametrize("payload", ['["chat"]', '{"content": "no type"}', '{"type": 5}'])
    def test_malformed_objects(self, client, api_key, payload):
        with client.websocket_connect(_url(api_key)) as ws:
            ws.receive_json()
            ws.send_text(payload)
            assert ws.receive_json()["error"] == "Invalid message format"

    def test_history_requires_workflow_id(self, client, api_key):
        with client.websocket_connect(_url(api_key)) as ws:
            ws.receive_json()
            ws.send_json({"type": "get_history"})
            event = ws.receive_json()
        assert event["type"] == "error"
        assert "workflowId" in event["error"]


class TestHistoryAndClear:
    def test_history_after_turn_then_clear(self, client, api_key, free_usage):
        with client.websocket_connect(_url(api_key)) as ws:
            ws.receive_json()
            ws.send_json({"type": "chat", "content": "Hello", "workflowId": "wf-1"})
            _receive_until(ws, _assistant_saved)

            ws.send_json({"type": "get_history", "workflowId": "wf-1"})
            history = ws.receive_json()["history"]
            assert [m["role"] for m in history] == ["user", "assistant"]
            assert history[0]["content"] == "Hello"

            ws.send_json({"type": "get_history", "workflowId": "wf-1", "limit": 1})
            assert [m["role"] for m in ws.receive_json()["history"]] == ["assistant"]

            ws.send_json({"type": "clear_chat", "workflowId": "wf-1"})
            event = ws.receive_json()
            assert event["type"] == "chat_cleared"
            assert event["workflowId"] == "wf-1"

            ws.send_json({"type": "get_history", "workflowId": "wf-1"})
            assert ws.receive_json()["history"] == []

    def test_clear_unknown_workflow_succeeds(self, client, api_key):
        with client.websocket_connect(_url(api_key)) as ws:
            ws.receive_json()
            ws.send_json({"type": "clear_chat", "workflowId": "never-used"})
            assert ws.receive_json()["type"] == "chat_cleared"

    def test_clear_failure_reports_error(self, client, app, api_key):
        app.state.conversations = MagicMock()
        app.state.conversations.clear_conversation.side_effect = RuntimeError("locked")
        with client.websocket_connect(_url(api_key)) as ws:
            ws.receive_json()
            ws.send_json({"type": "clear_chat", "workflowId": "wf-1"})
            assert ws.receive_json()["error"] == "Failed to clear chat history"
