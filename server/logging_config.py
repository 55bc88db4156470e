"""Centralised logging configuration for the chat server.

Usage:
    from logging_config import setup_logging, bind_connection, unbind_connection

    # At process startup:
    setup_logging("Server")

    # Inside the WebSocket handler, for the lifetime of one socket:
    tokens = bind_connection(session.connection_id, session.user_id)
    ...
    unbind_connection(tokens)

The completion bridge additionally sets ``workflow_id_var`` once a turn is
bound to a workflow. Plain ``logging.getLogger(__name__).info(...)`` calls
pick all of this up through ContextFilter.
"""

from __future__ import annotations

import logging
import logging.handlers
import sys
from contextvars import ContextVar, Token
from pathlib import Path

# ── Context variables (set per WebSocket connection) ───────────────────────

connection_id_var: ContextVar[str] = ContextVar("connection_id_var", default="")
user_id_var: ContextVar[str] = ContextVar("user_id_var", default="")
workflow_id_var: ContextVar[str] = ContextVar("workflow_id_var", default="")


def bind_connection(connection_id: str, user_id) -> tuple[Token, Token, Token]:
    return (
        connection_id_var.set(connection_id),
        user_id_var.set(str(user_id)),
        workflow_id_var.set(""),
    )


def unbind_connection(tokens: tuple[Token, Token, Token]) -> None:
    conn_token, user_token, wf_token = tokens
    workflow_id_var.reset(wf_token)
    user_id_var.reset(user_token)
    connection_id_var.reset(conn_token)


# ── Filter: stamps context onto every LogRecord ────────────────────────────

class ContextFilter(logging.Filter):
    """Injects ``role``, ``connection_id``, ``user_id`` and ``workflow_id``."""

    def __init__(self, role: str) -> None:
        super().__init__()
        self.role = role

    def filter(self, record: logging.LogRecord) -> bool:
        record.role = self.role  # type: ignore[attr-defined]
        record.connection_id = connection_id_var.get("")  # type: ignore[attr-defined]
        record.user_id = user_id_var.get("")  # type: ignore[attr-defined]
        record.workflow_id = workflow_id_var.get("")  # type: ignore[attr-defined]
        return True


# ── Formatter: builds [Role][Conn][User][WF][LEVEL] prefix ─────────────────

class ContextFormatter(logging.Formatter):
    """Produces lines like:

    2026-02-17 14:30:00 [Server][INFO] main:48 - Tool invoker connected
    2026-02-17 14:30:01 [Server][Conn a1b2c3d4][User 7][WF wf-1][INFO] services.completion:210 - Turn complete
    """

    def format(self, record: logging.LogRecord) -> str:
        role = getattr(record, "role", "")
        connection_id = getattr(record, "connection_id", "")
        user_id = getattr(record, "user_id", "")
        workflow_id = getattr(record, "workflow_id", "")

        parts = [f"[{role}]"] if role else []
        if connection_id:
            # Connection ids are "session_<hex>..."; skip the common prefix
            parts.append(f"[Conn {connection_id.removeprefix('session_')[:8]}]")
        if user_id:
            parts.append(f"[User {user_id}]")
        if workflow_id:
            parts.append(f"[WF {workflow_id[:12]}]")
        parts.append(f"[{record.levelname}]")

        prefix = "".join(parts)
        timestamp = self.formatTime(record, self.datefmt)
        location = f"{record.name}:{record.lineno}"
        message = record.getMessage()

        formatted = f"{timestamp} {prefix} {location} - {message}"
        if record.exc_info and not record.exc_text:
            record.exc_text = self.formatException(record.exc_info)
        if record.exc_text:
            formatted += "\n" + record.exc_text
        if record.stack_info:
            formatted += "\n" + record.stack_info
        return formatted


# ── Setup function ─────────────────────────────────────────────────────────

def setup_logging(role: str) -> None:
    """Configure the root logger for *role* (e.g. ``"Server"``).

    - Adds a stderr StreamHandler (always).
    - Adds a RotatingFileHandler when ``settings.LOG_FILE`` is set.
    - Tames noisy third-party loggers.
    - Makes uvicorn loggers propagate through root (when role is Server).

    Safe to call multiple times (idempotent via handler name check).
    """
    from config import settings

    root = logging.getLogger()

    if any(getattr(h, "name", None) == "_chat_stream" for h in root.handlers):
        return

    root.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))

    ctx_filter = ContextFilter(role)
    formatter = ContextFormatter(datefmt="%Y-%m-%d %H:%M:%S")

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.name = "_chat_stream"
    stream_handler.addFilter(ctx_filter)
    stream_handler.setFormatter(formatter)
    root.addHandler(stream_handler)

    if settings.LOG_FILE:
        log_path = Path(settings.LOG_FILE)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            str(log_path),
            maxBytes=settings.LOG_MAX_BYTES,
            backupCount=settings.LOG_BACKUP_COUNT,
            encoding="utf-8",
        )
        file_handler.name = "_chat_file"
        file_handler.addFilter(ctx_filter)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    for name in ("httpx", "httpcore", "urllib3", "websockets", "hpack"):
        logging.getLogger(name).setLevel(logging.WARNING)

    if "server" in role.lower():
        for name in ("uvicorn", "uvicorn.access", "uvicorn.error"):
            uv_logger = logging.getLogger(name)
            uv_logger.handlers.clear()
            uv_logger.propagate = True
