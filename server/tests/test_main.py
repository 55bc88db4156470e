"""Tests for main.py — app wiring and shutdown."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import httpx
from starlette.websockets import WebSocketState

from config import Settings


def _run(coro):
    """Run an async coroutine synchronously."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def test_app_routes():
    from main import app

    paths = {route.path for route in app.routes}
    assert "/health" in paths
    assert "/ws/chat" in paths
    assert "/api/v1/usage/" in paths
    assert "/api/v1/workflows/{workflow_id}/chat/history" in paths
    assert "/api/v1/workflows/{workflow_id}/details" in paths


def test_init_state_builds_collaborators(session_factory):
    from fastapi import FastAPI
    from main import init_state

    app = FastAPI()
    http = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200)))
    init_state(app, session_factory=session_factory, http_client=http,
               app_settings=Settings(TOOLS_ENABLED=True))

    assert app.state.tool_invoker.connected is True
    assert app.state.completion_bridge.tool_invoker is app.state.tool_invoker
    assert app.state.completion_bridge.conversations is app.state.conversations
    assert len(app.state.sessions) == 0


def test_tools_disabled(session_factory):
    from fastapi import FastAPI
    from main import init_state

    app = FastAPI()
    init_state(app, session_factory=session_factory, http_client=MagicMock(),
               app_settings=Settings(TOOLS_ENABLED=False))
    assert app.state.tool_invoker.connected is False


def test_shutdown_closes_sockets_with_1001(session_factory):
    from fastapi import FastAPI
    from main import init_state, shutdown_state

    app = FastAPI()
    http = MagicMock()
    http.aclose = AsyncMock()
    init_state(app, session_factory=session_factory, http_client=http,
               app_settings=Settings(TOOLS_ENABLED=True))

    ws = MagicMock()
    ws.client_state = WebSocketState.CONNECTED
    ws.close = AsyncMock()
    app.state.sessions.create(1, "tok", ws)

    _run(shutdown_state(app))

    ws.close.assert_awaited_once_with(code=1001, reason="Server shutting down")
    assert len(app.state.sessions) == 0
    assert app.state.tool_invoker.connected is False
    http.aclose.assert_awaited_once()
