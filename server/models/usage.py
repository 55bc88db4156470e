"""Usage ledger models: per-user counters, plan configs, and the audit log."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, DateTime, ForeignKey, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base

# Seed values for plan_configs; the table is the source of truth at runtime.
DEFAULT_PLAN_CONFIGS: dict[str, dict] = {
    "free": {
        "credits": {"type": "daily_limit", "amount": 5, "reset_type": "24h_after_first"},
        "limits": {"max_connections": 1, "workflows_per_connection": 3, "history_retention_days": 7},
    },
    "pro": {
        "credits": {"type": "monthly_credits", "amount": 500, "reset_type": "monthly"},
        "limits": {"max_connections": 3, "workflows_per_connection": -1, "history_retention_days": 180},
    },
}


class UserUsage(Base):
    __tablename__ = "user_usage"

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(
        ForeignKey("user_profiles.id", ondelete="CASCADE"), unique=True
    )

    # Free tier
    daily_interactions: Mapped[int] = mapped_column(Integer, default=0)
    daily_reset_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Paid tier
    monthly_credits_used: Mapped[int] = mapped_column(Integer, default=0)
    monthly_credits_limit: Mapped[int] = mapped_column(Integer, default=0)
    credits_reset_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    total_tokens_used: Mapped[int] = mapped_column(Integer, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), onupdate=func.now()
    )

    user: Mapped[UserProfile] = relationship("UserProfile", back_populates="usage")

    def __repr__(self):
        return f"<UserUsage user_id={self.user_id}>"


class PlanConfig(Base):
    __tablename__ = "plan_configs"

    id: Mapped[int] = mapped_column(primary_key=True)
    plan_type: Mapped[str] = mapped_column(String(20), unique=True)
    config: Mapped[dict] = mapped_column(JSON, default=dict)


class UsageLog(Base):
    __tablename__ = "usage_logs"

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("user_profiles.id", ondelete="CASCADE"))
    action_type: Mapped[str] = mapped_column(String(50), default="chat_interaction")
    model_used: Mapped[str | None] = mapped_column(String(255), nullable=True)
    workflow_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    session_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    message_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    input_tokens: Mapped[int] = mapped_column(Integer, default=0)
    output_tokens: Mapped[int] = mapped_column(Integer, default=0)
    credits_used: Mapped[int] = mapped_column(Integer, default=0)
    metadata_: Mapped[dict] = mapped_column("metadata", JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
