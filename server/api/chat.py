"""Chat history and workflow detail endpoints, nested under /workflows."""

from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from auth import get_current_user
from models.user import UserProfile
from schemas.chat import ChatHistoryOut
from services.tools import ToolError

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/{workflow_id}/chat/history", response_model=ChatHistoryOut)
async def get_chat_history(
    workflow_id: str,
    request: Request,
    limit: int = Query(default=50, ge=1, le=500),
    profile: UserProfile = Depends(get_current_user),
):
    """User and assistant messages for the workflow, oldest first."""
    messages = await asyncio.to_thread(
        request.app.state.conversations.workflow_history, profile.id, workflow_id, limit
    )
    return ChatHistoryOut(workflow_id=workflow_id, messages=messages)


@router.delete("/{workflow_id}/chat/history", status_code=204)
async def delete_chat_history(
    workflow_id: str,
    request: Request,
    profile: UserProfile = Depends(get_current_user),
):
    await asyncio.to_thread(request.app.state.conversations.clear_conversation, profile.id, workflow_id)


@router.get("/{workflow_id}/details")
async def get_workflow_details(
    workflow_id: str,
    request: Request,
    profile: UserProfile = Depends(get_current_user),
):
    """Live workflow definition from the user's n8n instance."""
    try:
        return await request.app.state.n8n_client.get_workflow(workflow_id, profile.id)
    except ToolError as exc:
        logger.warning("Workflow details for %s unavailable: %s", workflow_id, exc)
        raise HTTPException(status_code=502, detail=str(exc))
