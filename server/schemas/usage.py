"""Usage status schemas."""

from datetime import datetime

from pydantic import BaseModel


class UsageStatusOut(BaseModel):
    user_id: int
    plan_type: str
    daily_interactions: int = 0
    daily_reset_at: datetime | None = None
    monthly_credits_used: int = 0
    monthly_credits_limit: int = 0
    credits_reset_at: datetime | None = None
    total_tokens_used: int = 0
