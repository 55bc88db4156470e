"""Authenticated chat WebSocket: one socket, one Session, sequential turns."""

from __future__ import annotations

import asyncio
import json
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError
from starlette.websockets import WebSocketState

from auth import extract_token
from logging_config import bind_connection, unbind_connection
from schemas.chat import ChatRequest, ClearChatRequest, HistoryRequest

logger = logging.getLogger(__name__)

router = APIRouter()

NORMAL_CLOSE_CODES = (1000, 1001)


def _describe(exc: ValidationError) -> str:
    first = exc.errors()[0]
    field = ".".join(str(p) for p in first.get("loc", ())) or "message"
    return f"{field}: {first.get('msg', 'invalid')}"


@router.websocket("/ws/chat")
async def chat_ws(websocket: WebSocket):
    state = websocket.app.state
    token = extract_token(websocket.headers, websocket.query_params)

    try:
        user_id = await asyncio.to_thread(state.token_verifier.verify, token) if token else None
    except Exception:
        logger.exception("Token verification failed")
        await websocket.close(code=1011, reason="Internal error")
        return
    if user_id is None:
        await websocket.close(code=1008, reason="Invalid or missing token")
        return

    session = None
    sid = ""
    log_tokens = None
    closed = False

    async def emit(event: dict) -> None:
        nonlocal closed
        if closed or websocket.client_state != WebSocketState.CONNECTED:
            return
        try:
            await websocket.send_json(event)
        except (WebSocketDisconnect, RuntimeError):
            # Client went away mid-turn; the turn still finishes and persists
            closed = True
            logger.debug("Dropped %s event, socket closed", event.get("type"))

    async def error(message: str) -> None:
        await emit({"type": "error", "error": message, "sessionId": sid})

    async def handle_chat(msg: dict) -> None:
        try:
            request = ChatRequest.model_validate(msg)
        except ValidationError as exc:
            await error(f"Invalid chat message ({_describe(exc)})")
            return
        try:
            await state.completion_bridge.run_turn(session, request, emit)
        except Exception:
            logger.exception("Chat turn failed")
            await error("Failed to process chat message")

    async def handle_history(msg: dict) -> None:
        try:
            request = HistoryRequest.model_validate(msg)
        except ValidationError as exc:
            await error(f"Invalid get_history message ({_describe(exc)})")
            return
        limit = request.limit if "limit" in request.model_fields_set else state.settings.HISTORY_DEFAULT_LIMIT
        try:
            history = await asyncio.to_thread(
                state.conversations.workflow_history, session.user_id, request.workflow_id, limit
            )
        except Exception:
            logger.exception("Loading history for workflow %s failed", request.workflow_id)
            await error("Failed to load chat history")
            return
        await emit({"type": "history", "history": history, "sessionId": sid})

    async def handle_clear(msg: dict) -> None:
        try:
            request = ClearChatRequest.model_validate(msg)
        except ValidationError as exc:
            await error(f"Invalid clear_chat message ({_describe(exc)})")
            return
        try:
            await asyncio.to_thread(state.conversations.clear_conversation, session.user_id, request.workflow_id)
        except Exception:
            logger.exception("Clearing chat for workflow %s failed", request.workflow_id)
            await error("Failed to clear chat history")
            return
        await emit({"type": "chat_cleared", "workflowId": request.workflow_id, "sessionId": sid})

    handlers = {
        "chat": handle_chat,
        "get_history": handle_history,
        "clear_chat": handle_clear,
    }

    try:
        await websocket.accept()
        session = state.sessions.create(user_id, token, websocket)
        sid = session.connection_id
        log_tokens = bind_connection(sid, user_id)
        logger.info("Chat socket connected")

        await emit({
            "type": "connected",
            "content": "Connected to the MyWorkflows AI agent",
            "sessionId": sid,
        })

        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000))

            raw = message.get("text")
            if raw is None:
                await error("Invalid message format")
                continue

            try:
                msg = json.loads(raw)
            except json.JSONDecodeError:
                await error("Invalid message format")
                continue
            if not isinstance(msg, dict) or not isinstance(msg.get("type"), str):
                await error("Invalid message format")
                continue

            handler = handlers.get(msg["type"])
            if handler is None:
                await error(f"Unrecognized message type: {msg['type']}")
                continue
            await handler(msg)

    except WebSocketDisconnect as exc:
        if exc.code in NORMAL_CLOSE_CODES:
            logger.debug("Chat socket closed (%s)", exc.code)
        else:
            logger.warning("Chat socket closed abnormally (%s)", exc.code)
    except Exception:
        logger.exception("Chat socket failed")
        if websocket.application_state != WebSocketState.DISCONNECTED:
            try:
                await websocket.close(code=1011)
            except RuntimeError:
                logger.debug("Socket already closed")
    finally:
        closed = True
        if session is not None:
            state.sessions.discard(sid)
        if log_tokens is not None:
            unbind_connection(log_tokens)
