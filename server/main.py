"""FastAPI application entry point."""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from pathlib import Path

# Ensure server/ is on sys.path for absolute imports
_server_dir = str(Path(__file__).resolve().parent)
if _server_dir not in sys.path:  # pragma: no cover
    sys.path.insert(0, _server_dir)

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.websockets import WebSocketState

from api import api_router, health_router
from auth import TokenVerifier
from config import settings
from database import SessionLocal, create_tables
from services.completion import CompletionBridge
from services.conversations import ConversationStore
from services.n8n_client import N8nClient
from services.rate_limiter import RateLimiter, seed_plan_configs
from services.tools import ToolInvoker
from ws import ws_router
from ws.sessions import SessionStore

__version__ = "1.0.0"

logger = logging.getLogger(__name__)


def init_state(app: FastAPI, session_factory=SessionLocal, http_client: httpx.AsyncClient | None = None,
               app_settings=settings) -> None:
    """Build every collaborator once and hang it on ``app.state``."""
    if http_client is None:
        http_client = httpx.AsyncClient(timeout=app_settings.HTTP_TIMEOUT_SECONDS)

    conversations = ConversationStore(session_factory)
    rate_limiter = RateLimiter(session_factory, upgrade_url=app_settings.UPGRADE_URL)
    n8n_client = N8nClient(http_client, session_factory, timeout=app_settings.N8N_TIMEOUT_SECONDS)
    tool_invoker = ToolInvoker(n8n_client)
    if app_settings.TOOLS_ENABLED:
        tool_invoker.connect()

    app.state.settings = app_settings
    app.state.http_client = http_client
    app.state.sessions = SessionStore()
    app.state.token_verifier = TokenVerifier(session_factory)
    app.state.conversations = conversations
    app.state.rate_limiter = rate_limiter
    app.state.n8n_client = n8n_client
    app.state.tool_invoker = tool_invoker
    app.state.completion_bridge = CompletionBridge(
        conversations, rate_limiter, tool_invoker, http_client, app_settings
    )


async def shutdown_state(app: FastAPI) -> None:
    for session in app.state.sessions.all():
        ws = session.websocket
        if ws is not None and ws.client_state == WebSocketState.CONNECTED:
            try:
                await ws.close(code=1001, reason="Server shutting down")
            except RuntimeError:
                logger.debug("Socket %s already closed", session.connection_id)
        app.state.sessions.discard(session.connection_id)

    app.state.tool_invoker.disconnect()
    await app.state.http_client.aclose()


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Configure unified logging before anything else
    from logging_config import setup_logging
    setup_logging("Server")

    # Startup: create tables if they don't exist
    create_tables()

    try:
        added = seed_plan_configs()
        if added:
            logger.info("Seeded %d plan configs", added)
    except Exception:
        logger.exception("Failed to seed plan configs on startup")

    init_state(app)
    if not settings.OPENROUTER_API_KEY:
        logger.warning("OPENROUTER_API_KEY not set, chat turns use local echo responses")
    logger.info("Chat server started (tools %s)", "enabled" if app.state.tool_invoker.connected else "disabled")

    yield

    await shutdown_state(app)
    logger.info("Chat server stopped")


app = FastAPI(title="MyWorkflows Chat API", version=__version__, lifespan=lifespan)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.CORS_ALLOW_ALL_ORIGINS else settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health_router)
app.include_router(api_router)
app.include_router(ws_router)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=True, log_config=None)
