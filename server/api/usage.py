"""Usage API — current plan counters for the caller."""

from __future__ import annotations

import asyncio

from fastapi import APIRouter, Depends, HTTPException, Request

from auth import get_current_user
from models.user import UserProfile
from schemas.usage import UsageStatusOut

router = APIRouter()


@router.get("/", response_model=UsageStatusOut)
async def get_usage(request: Request, user: UserProfile = Depends(get_current_user)):
    status = await asyncio.to_thread(request.app.state.rate_limiter.get_usage_status, user.id)
    if status is None:
        raise HTTPException(status_code=404, detail="No usage data for this user.")
    return status
