"""Tests for the encrypted n8n key column and database helpers."""

from __future__ import annotations

from sqlalchemy import inspect, text

from database import build_engine, create_tables
from models.encrypted import mask_secret


class TestEncryptedString:
    def test_key_is_encrypted_at_rest(self, db, n8n_connection):
        raw = db.execute(
            text("SELECT n8n_api_key FROM n8n_connections WHERE id = :id"), {"id": n8n_connection.id}
        ).scalar()
        assert raw != "n8n-secret-key"
        assert "n8n-secret-key" not in raw

    def test_key_decrypts_on_load(self, db, n8n_connection):
        from models.workflow import N8nConnection

        db.expire_all()
        loaded = db.get(N8nConnection, n8n_connection.id)
        assert loaded.n8n_api_key == "n8n-secret-key"

    def test_plaintext_rows_are_returned_as_is(self, db, n8n_connection):
        from models.workflow import N8nConnection

        db.execute(
            text("UPDATE n8n_connections SET n8n_api_key = 'legacy-plain' WHERE id = :id"),
            {"id": n8n_connection.id},
        )
        db.commit()
        db.expire_all()
        assert db.get(N8nConnection, n8n_connection.id).n8n_api_key == "legacy-plain"


class TestMaskSecret:
    def test_shows_only_the_tail(self):
        assert mask_secret("n8n-secret-key") == "...-key"

    def test_short_and_empty(self):
        assert mask_secret("abc") == "***"
        assert mask_secret("") == ""
        assert mask_secret(None) == ""


class TestDatabaseHelpers:
    def test_create_tables_on_fresh_engine(self):
        eng = build_engine("sqlite:///:memory:")
        create_tables(eng)
        tables = set(inspect(eng).get_table_names())
        assert {"chat_sessions", "chat_messages", "user_usage", "n8n_connections", "workflows"} <= tables
        eng.dispose()

    def test_sqlite_pragmas_applied(self):
        eng = build_engine("sqlite:///:memory:")
        with eng.connect() as conn:
            assert conn.execute(text("PRAGMA foreign_keys")).scalar() == 1
            assert conn.execute(text("PRAGMA busy_timeout")).scalar() == 5000
        eng.dispose()
