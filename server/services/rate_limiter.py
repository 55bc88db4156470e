"""Usage-based rate limiting against the user_usage ledger.

Two regimes, selected by the user's plan type:

- ``free``: a daily interaction counter with a rolling 24h window that starts
  at the first recorded interaction.
- anything else (paid): a monthly credit allowance.

``check_limits`` only reads. Window resets are applied lazily by
``record_usage`` inside the same atomic UPDATE that increments the counters.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import and_, case, or_, update
from sqlalchemy.exc import SQLAlchemyError

from config import settings
from database import SessionLocal
from models.usage import PlanConfig, UsageLog, UserUsage
from models.user import UserProfile
from schemas.chat import RateLimitResult

logger = logging.getLogger(__name__)

DAILY_WINDOW = timedelta(hours=24)
MONTHLY_WINDOW = timedelta(days=30)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class RateLimiter:

    def __init__(self, session_factory=SessionLocal, upgrade_url: str | None = None, clock=_utcnow):
        self._session_factory = session_factory
        self.upgrade_url = upgrade_url if upgrade_url is not None else settings.UPGRADE_URL
        self._clock = clock

    # ── Read side ──────────────────────────────────────────────────────────

    def check_limits(self, user_id: int, estimated_cost: int = 1) -> RateLimitResult:
        """Decide whether *user_id* may spend *estimated_cost* credits now."""
        try:
            with self._session_factory() as db:
                return self._check(db, user_id, estimated_cost)
        except SQLAlchemyError:
            logger.exception("Rate limit check failed for user %s", user_id)
            return RateLimitResult(allowed=False, reason="internal_error")

    def _check(self, db, user_id: int, estimated_cost: int) -> RateLimitResult:
        profile = db.get(UserProfile, user_id)
        if not profile:
            logger.error("No profile for user %s", user_id)
            return RateLimitResult(allowed=False, reason="user_not_found")

        usage = db.query(UserUsage).filter(UserUsage.user_id == user_id).first()
        if not usage:
            logger.error("No usage row for user %s", user_id)
            return RateLimitResult(allowed=False, reason="usage_not_found")

        plan = db.query(PlanConfig).filter(PlanConfig.plan_type == profile.plan_type).first()
        if not plan:
            logger.error("No plan config for plan type %r", profile.plan_type)
            return RateLimitResult(allowed=False, reason="plan_config_not_found")

        now = self._clock()

        if profile.plan_type == "free":
            amount = int((plan.config or {}).get("credits", {}).get("amount", 0))
            if usage.daily_reset_at is None or now > usage.daily_reset_at:
                # Window elapsed: the counter is reset by the next record_usage
                return RateLimitResult(
                    allowed=True,
                    remaining_credits=amount,
                    reset_at=now + DAILY_WINDOW,
                )
            remaining = amount - usage.daily_interactions
            if remaining <= 0:
                return RateLimitResult(
                    allowed=False,
                    reason="daily_limit_reached",
                    remaining_credits=0,
                    reset_at=usage.daily_reset_at,
                    upgrade_url=self.upgrade_url,
                )
            return RateLimitResult(allowed=True, remaining_credits=remaining, reset_at=usage.daily_reset_at)

        remaining = usage.monthly_credits_limit - usage.monthly_credits_used
        reset_at = usage.credits_reset_at or now + MONTHLY_WINDOW
        if remaining < estimated_cost:
            return RateLimitResult(
                allowed=False,
                reason="insufficient_credits",
                remaining_credits=remaining,
                reset_at=reset_at,
                upgrade_url=self.upgrade_url,
            )
        return RateLimitResult(allowed=True, remaining_credits=remaining, reset_at=reset_at)

    def get_usage_status(self, user_id: int) -> dict | None:
        """Usage row merged with the user's plan type; None without a usage row."""
        try:
            with self._session_factory() as db:
                usage = db.query(UserUsage).filter(UserUsage.user_id == user_id).first()
                if not usage:
                    return None
                profile = db.get(UserProfile, user_id)
                return {
                    "user_id": user_id,
                    "plan_type": profile.plan_type if profile else "free",
                    "daily_interactions": usage.daily_interactions,
                    "daily_reset_at": usage.daily_reset_at,
                    "monthly_credits_used": usage.monthly_credits_used,
                    "monthly_credits_limit": usage.monthly_credits_limit,
                    "credits_reset_at": usage.credits_reset_at,
                    "total_tokens_used": usage.total_tokens_used,
                }
        except SQLAlchemyError:
            logger.exception("Failed to load usage status for user %s", user_id)
            return None

    # ── Write side ─────────────────────────────────────────────────────────

    def record_usage(
        self,
        user_id: int,
        credits_used: int,
        tokens_used: int,
        metadata: dict | None = None,
    ) -> None:
        """Increment the ledger and append a usage log entry. Never raises."""
        metadata = dict(metadata or {})
        try:
            with self._session_factory() as db:
                profile = db.get(UserProfile, user_id)
                plan_type = profile.plan_type if profile else "free"
                values = self._increment_values(plan_type, credits_used, tokens_used)

                result = db.execute(
                    update(UserUsage)
                    .where(UserUsage.user_id == user_id)
                    .values(values)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    db.rollback()
                    logger.warning("No usage row for user %s, usage not recorded", user_id)
                    return

                db.add(UsageLog(
                    user_id=user_id,
                    action_type=metadata.get("action_type") or "chat_interaction",
                    model_used=metadata.get("model_used"),
                    workflow_id=metadata.get("workflow_id"),
                    session_id=metadata.get("session_id"),
                    message_id=metadata.get("message_id"),
                    input_tokens=metadata.get("input_tokens") or tokens_used,
                    output_tokens=metadata.get("output_tokens") or 0,
                    credits_used=credits_used,
                    metadata_=metadata,
                ))
                db.commit()
        except Exception:
            logger.exception("Failed to record usage for user %s", user_id)

    def _increment_values(self, plan_type: str, credits_used: int, tokens_used: int) -> dict:
        """Column -> SQL expression map for a single atomic UPDATE."""
        now = self._clock()
        values: dict = {UserUsage.total_tokens_used: UserUsage.total_tokens_used + tokens_used}

        if plan_type == "free":
            window_elapsed = or_(UserUsage.daily_reset_at.is_(None), UserUsage.daily_reset_at < now)
            values[UserUsage.daily_interactions] = case(
                (window_elapsed, 1), else_=UserUsage.daily_interactions + 1
            )
            values[UserUsage.daily_reset_at] = case(
                (window_elapsed, now + DAILY_WINDOW), else_=UserUsage.daily_reset_at
            )
        else:
            window_elapsed = and_(UserUsage.credits_reset_at.is_not(None), UserUsage.credits_reset_at < now)
            values[UserUsage.monthly_credits_used] = case(
                (window_elapsed, credits_used), else_=UserUsage.monthly_credits_used + credits_used
            )
            values[UserUsage.credits_reset_at] = case(
                (window_elapsed, now + MONTHLY_WINDOW), else_=UserUsage.credits_reset_at
            )
        return values


def seed_plan_configs(session_factory=SessionLocal) -> int:
    """Insert any missing default plan configs. Returns how many were added."""
    from models.usage import DEFAULT_PLAN_CONFIGS

    added = 0
    with session_factory() as db:
        existing = {p.plan_type for p in db.query(PlanConfig).all()}
        for plan_type, config in DEFAULT_PLAN_CONFIGS.items():
            if plan_type not in existing:
                db.add(PlanConfig(plan_type=plan_type, config=config))
                added += 1
        if added:
            db.commit()
    return added
