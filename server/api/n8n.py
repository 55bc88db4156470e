"""n8n API — read-only views of the caller's n8n instance."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request

from auth import get_current_user
from models.user import UserProfile
from services.tools import ToolError

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/workflows")
async def list_n8n_workflows(request: Request, profile: UserProfile = Depends(get_current_user)):
    try:
        workflows = await request.app.state.n8n_client.list_workflows(profile.id)
    except ToolError as exc:
        logger.warning("Listing n8n workflows failed: %s", exc)
        raise HTTPException(status_code=502, detail=str(exc))
    return {"items": workflows, "total": len(workflows)}


@router.get("/connection")
async def check_n8n_connection(request: Request, profile: UserProfile = Depends(get_current_user)):
    ok = await request.app.state.n8n_client.test_connection(profile.id)
    return {"connected": ok}
