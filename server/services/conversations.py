"""Conversation store — one chat session per (user, workflow), ordered messages."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from database import SessionLocal
from models.conversation import MESSAGE_ROLES, ChatMessage, Conversation

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 50


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _iso(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    return dt.isoformat() + "Z"


def serialize_message(msg: ChatMessage) -> dict:
    return {
        "id": msg.id,
        "session_id": msg.session_id,
        "role": msg.role,
        "content": msg.content,
        "metadata": msg.metadata_ or {},
        "created_at": _iso(msg.created_at),
    }


class ConversationStore:

    def __init__(self, session_factory=SessionLocal):
        self._session_factory = session_factory

    def _lookup(self, db, user_id: int, workflow_id: str) -> Conversation | None:
        return (
            db.query(Conversation)
            .filter(Conversation.user_profile_id == user_id, Conversation.workflow_id == workflow_id)
            .first()
        )

    def find_conversation(self, user_id: int, workflow_id: str) -> str | None:
        with self._session_factory() as db:
            conv = self._lookup(db, user_id, workflow_id)
            return conv.id if conv else None

    def get_or_create_conversation(self, user_id: int, workflow_id: str) -> str:
        """Return the conversation id for the pair, creating it on first use."""
        with self._session_factory() as db:
            conv = self._lookup(db, user_id, workflow_id)
            if conv:
                conv.updated_at = _utcnow()
                db.commit()
                logger.debug("Reusing conversation %s for workflow %s", conv.id, workflow_id)
                return conv.id

            conv = Conversation(user_profile_id=user_id, workflow_id=workflow_id)
            db.add(conv)
            try:
                db.commit()
            except IntegrityError:
                # Lost the race against a concurrent first turn for the same pair
                db.rollback()
                existing = self._lookup(db, user_id, workflow_id)
                if existing is None:
                    raise
                logger.info("Conversation for workflow %s created concurrently, reusing %s",
                            workflow_id, existing.id)
                return existing.id

            logger.info("Created conversation %s for user %s, workflow %s", conv.id, user_id, workflow_id)
            return conv.id

    def append_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        metadata: dict | None = None,
        message_id: str | None = None,
    ) -> dict:
        """Insert a message and return it serialized."""
        if role not in MESSAGE_ROLES:
            raise ValueError(f"Invalid message role: {role!r}")

        with self._session_factory() as db:
            created_at = _utcnow()
            latest = (
                db.query(func.max(ChatMessage.created_at))
                .filter(ChatMessage.session_id == conversation_id)
                .scalar()
            )
            # Keep created_at strictly increasing within a conversation
            if latest is not None and created_at <= latest:
                created_at = latest + timedelta(microseconds=1)

            msg = ChatMessage(
                session_id=conversation_id,
                role=role,
                content=content or "",
                metadata_=metadata or {},
                created_at=created_at,
            )
            if message_id:
                msg.id = message_id
            db.add(msg)
            db.commit()
            logger.debug("Saved %s message %s", role, msg.id)
            return serialize_message(msg)

    def list_messages(
        self,
        conversation_id: str,
        limit: int = DEFAULT_HISTORY_LIMIT,
        include_tool: bool = True,
    ) -> list[dict]:
        """The most recent *limit* messages, oldest first."""
        with self._session_factory() as db:
            q = db.query(ChatMessage).filter(ChatMessage.session_id == conversation_id)
            if not include_tool:
                q = q.filter(ChatMessage.role != "tool")
            rows = q.order_by(ChatMessage.created_at.desc()).limit(limit).all()
            return [serialize_message(m) for m in reversed(rows)]

    def workflow_history(self, user_id: int, workflow_id: str, limit: int = DEFAULT_HISTORY_LIMIT) -> list[dict]:
        """Chat-visible history for the pair; tool messages are never surfaced."""
        conversation_id = self.find_conversation(user_id, workflow_id)
        if conversation_id is None:
            return []
        return self.list_messages(conversation_id, limit=limit, include_tool=False)

    def clear_conversation(self, user_id: int, workflow_id: str) -> bool:
        """Delete the pair's messages, keeping the conversation row."""
        with self._session_factory() as db:
            conv = self._lookup(db, user_id, workflow_id)
            if conv is None:
                return True
            deleted = (
                db.query(ChatMessage)
                .filter(ChatMessage.session_id == conv.id)
                .delete(synchronize_session=False)
            )
            db.commit()
            logger.info("Cleared %d messages from conversation %s", deleted, conv.id)
            return True

    def update_message_metadata(self, message_id: str, metadata: dict) -> bool:
        """Merge *metadata* into a message's metadata. False if the message is gone."""
        with self._session_factory() as db:
            msg = db.get(ChatMessage, message_id)
            if msg is None:
                return False
            msg.metadata_ = {**(msg.metadata_ or {}), **metadata}
            db.commit()
            return True

    def conversation_stats(self, conversation_id: str) -> dict:
        with self._session_factory() as db:
            rows = (
                db.query(ChatMessage.role, func.count(ChatMessage.id))
                .filter(ChatMessage.session_id == conversation_id)
                .group_by(ChatMessage.role)
                .all()
            )
        counts = dict(rows)
        return {
            "total": sum(counts.values()),
            "user_messages": counts.get("user", 0),
            "assistant_messages": counts.get("assistant", 0),
            "tool_messages": counts.get("tool", 0),
        }
