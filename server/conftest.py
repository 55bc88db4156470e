"""Root conftest — shared fixtures for all chat server tests."""

from __future__ import annotations

import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Ensure server/ is on sys.path
_server_dir = str(Path(__file__).resolve().parent)
if _server_dir not in sys.path:
    sys.path.insert(0, _server_dir)

# Set secrets for tests so config never writes a .env file
if not os.environ.get("FIELD_ENCRYPTION_KEY"):
    from cryptography.fernet import Fernet
    os.environ["FIELD_ENCRYPTION_KEY"] = Fernet.generate_key().decode()
os.environ.setdefault("SECRET_KEY", "test-secret-key")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import Base
import models  # noqa: F401  registers all models with Base

# Use in-memory SQLite for tests; StaticPool ensures all connections share the same DB
TEST_ENGINE = create_engine(
    "sqlite:///:memory:",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestSession = sessionmaker(bind=TEST_ENGINE, autoflush=False, expire_on_commit=False)


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


@pytest.fixture(autouse=True)
def _setup_db():
    """Create all tables before each test, drop after."""
    Base.metadata.create_all(bind=TEST_ENGINE)
    yield
    Base.metadata.drop_all(bind=TEST_ENGINE)


@pytest.fixture
def db():
    """Yield a test database session."""
    session = TestSession()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def user_profile(db):
    from models.user import UserProfile

    profile = UserProfile(username="testuser", email="test@example.com", plan_type="free")
    db.add(profile)
    db.commit()
    db.refresh(profile)
    return profile


@pytest.fixture
def pro_profile(db):
    from models.user import UserProfile

    profile = UserProfile(username="prouser", email="pro@example.com", plan_type="pro")
    db.add(profile)
    db.commit()
    db.refresh(profile)
    return profile


@pytest.fixture
def api_key(db, user_profile):
    from models.user import APIKey

    key = APIKey(user_id=user_profile.id)
    db.add(key)
    db.commit()
    db.refresh(key)
    return key


@pytest.fixture
def plan_configs(db):
    from services.rate_limiter import seed_plan_configs

    seed_plan_configs(TestSession)
    return db


@pytest.fixture
def free_usage(db, user_profile, plan_configs):
    """Free user with an open 24h window and no interactions yet."""
    from models.usage import UserUsage

    usage = UserUsage(
        user_id=user_profile.id,
        daily_interactions=0,
        daily_reset_at=utcnow() + timedelta(hours=12),
    )
    db.add(usage)
    db.commit()
    db.refresh(usage)
    return usage


@pytest.fixture
def pro_usage(db, pro_profile, plan_configs):
    from models.usage import UserUsage

    usage = UserUsage(
        user_id=pro_profile.id,
        monthly_credits_used=0,
        monthly_credits_limit=500,
        credits_reset_at=utcnow() + timedelta(days=20),
    )
    db.add(usage)
    db.commit()
    db.refresh(usage)
    return usage


@pytest.fixture
def n8n_connection(db, user_profile):
    from models.workflow import N8nConnection

    conn = N8nConnection(
        user_id=user_profile.id,
        name="Production n8n",
        n8n_url="https://n8n.example.com",
        n8n_api_key="n8n-secret-key",
        active=True,
    )
    db.add(conn)
    db.commit()
    db.refresh(conn)
    return conn


@pytest.fixture
def workflow(db, user_profile, n8n_connection):
    from models.workflow import Workflow

    wf = Workflow(
        user_id=user_profile.id,
        connection_id=n8n_connection.id,
        n8n_workflow_id="n8n-42",
        name="Lead intake",
        active=True,
    )
    db.add(wf)
    db.commit()
    db.refresh(wf)
    return wf


@pytest.fixture(autouse=True)
def _offline_tokenizer(monkeypatch):
    """Token counts use the character heuristic so tests never fetch BPE files."""
    import services.token_usage as token_usage

    monkeypatch.setattr(token_usage, "_get_encoding", lambda: None)


@pytest.fixture
def session_factory():
    """Sessionmaker bound to the in-memory test engine, for service constructors."""
    return TestSession
