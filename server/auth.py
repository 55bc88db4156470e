"""Bearer token authentication.

Tokens are issued elsewhere; this side only verifies them against the
``api_keys`` table. ``TokenVerifier`` serves the WebSocket handshake,
``get_current_user`` is the FastAPI dependency for REST routes.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from database import SessionLocal, get_db
from models.user import APIKey, UserProfile

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer()


def extract_token(headers: Mapping[str, str], query: Mapping[str, str]) -> str:
    """Bearer credential from the Authorization header, else the ``token`` query param."""
    auth = headers.get("authorization") or ""
    if auth.lower().startswith("bearer "):
        token = auth[7:].strip()
        if token:
            return token
    return (query.get("token") or "").strip()


class TokenVerifier:
    """Resolves a bearer token to a user id (None when unknown)."""

    def __init__(self, session_factory=SessionLocal):
        self._session_factory = session_factory

    def verify(self, token: str) -> int | None:
        if not token:
            return None
        with self._session_factory() as db:
            api_key = db.query(APIKey).filter(APIKey.key == token).first()
            if not api_key:
                logger.info("Rejected unknown token")
                return None
            return api_key.user_id


def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme),
    db: Session = Depends(get_db),
) -> UserProfile:
    """FastAPI dependency: validate Bearer token and return UserProfile."""
    token = credentials.credentials
    api_key = db.query(APIKey).filter(APIKey.key == token).first()
    if not api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key.",
        )
    user = db.query(UserProfile).filter(UserProfile.id == api_key.user_id).first()
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found.",
        )
    return user
