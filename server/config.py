"""Pydantic settings loaded from .env."""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import ConfigDict
from pydantic_settings import BaseSettings

BASE_DIR = Path(__file__).resolve().parent


# ---------------------------------------------------------------------------
# Secret auto-generation
# ---------------------------------------------------------------------------


def _ensure_secrets(env_file: Path) -> None:
    """Generate FIELD_ENCRYPTION_KEY and SECRET_KEY if missing, append to .env."""
    from cryptography.fernet import Fernet
    import secrets as _secrets

    lines_to_append: list[str] = []

    if not os.environ.get("FIELD_ENCRYPTION_KEY"):
        key = Fernet.generate_key().decode()
        os.environ["FIELD_ENCRYPTION_KEY"] = key
        lines_to_append.append(f"FIELD_ENCRYPTION_KEY={key}")

    if not os.environ.get("SECRET_KEY"):
        key = _secrets.token_urlsafe(32)
        os.environ["SECRET_KEY"] = key
        lines_to_append.append(f"SECRET_KEY={key}")

    if lines_to_append:
        env_file.parent.mkdir(parents=True, exist_ok=True)
        with open(env_file, "a") as f:
            f.write("\n" + "\n".join(lines_to_append) + "\n")


# ---------------------------------------------------------------------------
# Bootstrap: load .env, generate secrets
# ---------------------------------------------------------------------------

_env_file = BASE_DIR.parent / ".env"
load_dotenv(_env_file)
_ensure_secrets(_env_file)


class Settings(BaseSettings):
    SECRET_KEY: str = "change-me-in-production"
    DEBUG: bool = False

    DATABASE_URL: str = f"sqlite:///{BASE_DIR / 'db.sqlite3'}"

    FIELD_ENCRYPTION_KEY: str = ""

    CORS_ALLOW_ALL_ORIGINS: bool = True
    CORS_ORIGINS: str = "http://localhost:8080,http://localhost:3000"

    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = ""
    LOG_MAX_BYTES: int = 10_485_760
    LOG_BACKUP_COUNT: int = 5

    # Upstream completion API (OpenRouter). Empty key = local echo responses.
    OPENROUTER_API_KEY: str = ""
    OPENROUTER_BASE_URL: str = "https://openrouter.ai/api/v1"
    OPENROUTER_REFERER: str = "https://myworkflows.ai"
    OPENROUTER_TITLE: str = "MyWorkflows AI Agent"
    DEFAULT_MODEL: str = "anthropic/claude-3-haiku"
    COMPLETION_MAX_TOKENS: int = 1000
    HTTP_TIMEOUT_SECONDS: float = 120.0
    MOCK_STREAM_DELAY_SECONDS: float = 0.05

    # n8n REST API
    N8N_TIMEOUT_SECONDS: float = 30.0
    TOOLS_ENABLED: bool = True

    # Chat history
    HISTORY_CONTEXT_MESSAGES: int = 10
    HISTORY_DEFAULT_LIMIT: int = 50

    UPGRADE_URL: str = "/settings/billing"

    model_config = ConfigDict(
        env_file=str(BASE_DIR.parent / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def cors_origins_list(self) -> list[str]:
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]


settings = Settings()
