"""Tests for ws/sessions.py."""

from __future__ import annotations

import re

from ws.sessions import SessionStore


class TestSessionStore:
    def test_create_registers_session(self):
        store = SessionStore()
        session = store.create(7, "tok")
        assert session.connection_id in store
        assert store.get(session.connection_id) is session
        assert session.user_id == 7
        assert session.bound_workflow_id is None
        assert session.chat_session_id is None
        assert len(store) == 1

    def test_connection_id_format(self):
        session = SessionStore().create(1, "tok")
        assert re.fullmatch(r"session_[0-9a-f]{12}\d+", session.connection_id)

    def test_ids_unique(self):
        store = SessionStore()
        ids = {store.create(1, "tok").connection_id for _ in range(200)}
        assert len(ids) == 200

    def test_discard_is_idempotent(self):
        store = SessionStore()
        session = store.create(1, "tok")
        store.discard(session.connection_id)
        store.discard(session.connection_id)
        assert session.connection_id not in store
        assert store.get(session.connection_id) is None
        assert len(store) == 0

    def test_stats(self):
        store = SessionStore()
        store.create(1, "a")
        store.create(2, "b")
        stats = store.stats()
        assert stats["activeSessions"] == 2
        assert stats["uptime"] >= 0
        assert len(store.all()) == 2
