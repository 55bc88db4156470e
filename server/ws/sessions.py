"""In-memory registry of open chat sockets."""

from __future__ import annotations

import logging
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger(__name__)


@dataclass
class Session:
    connection_id: str
    user_id: int
    auth_token: str
    bound_workflow_id: str | None = None
    chat_session_id: str | None = None
    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    websocket: Any = field(default=None, repr=False, compare=False)


class SessionStore:
    """Connection id -> Session. Each socket only touches its own entry."""

    def __init__(self):
        self._sessions: dict[str, Session] = {}
        self._started = time.monotonic()

    def _new_connection_id(self) -> str:
        while True:
            cid = f"session_{secrets.token_hex(6)}{int(time.time() * 1000)}"
            if cid not in self._sessions:
                return cid

    def create(self, user_id: int, auth_token: str, websocket=None) -> Session:
        session = Session(
            connection_id=self._new_connection_id(),
            user_id=user_id,
            auth_token=auth_token,
            websocket=websocket,
        )
        self._sessions[session.connection_id] = session
        logger.debug("Session %s opened for user %s (%d active)", session.connection_id, user_id, len(self))
        return session

    def get(self, connection_id: str) -> Session | None:
        return self._sessions.get(connection_id)

    def discard(self, connection_id: str) -> None:
        if self._sessions.pop(connection_id, None) is not None:
            logger.debug("Session %s closed (%d active)", connection_id, len(self))

    def all(self) -> list[Session]:
        return list(self._sessions.values())

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, connection_id: object) -> bool:
        return connection_id in self._sessions

    def stats(self) -> dict:
        return {
            "activeSessions": len(self._sessions),
            "uptime": round(time.monotonic() - self._started, 3),
        }
