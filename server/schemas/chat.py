"""WebSocket chat protocol schemas."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Attachment(BaseModel):
    id: str
    name: str
    type: Literal["document", "execution"]


class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    type: Literal["chat"] = "chat"
    content: str
    workflow_id: str | None = Field(default=None, alias="workflowId")
    model: str | None = None
    attachments: list[Attachment] = []

    @field_validator("content")
    @classmethod
    def _content_not_blank(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("content must not be empty")
        return v


class HistoryRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    type: Literal["get_history"] = "get_history"
    workflow_id: str = Field(alias="workflowId", min_length=1)
    limit: int = Field(default=50, ge=1, le=500)


class ClearChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    type: Literal["clear_chat"] = "clear_chat"
    workflow_id: str = Field(alias="workflowId", min_length=1)


class RateLimitResult(BaseModel):
    allowed: bool
    reason: str | None = None
    remaining_credits: int | None = None
    reset_at: datetime | None = None
    upgrade_url: str | None = None


class ChatMessageOut(BaseModel):
    id: str
    session_id: str
    role: str
    content: str
    metadata: dict = {}
    created_at: str | None = None


class ChatHistoryOut(BaseModel):
    workflow_id: str
    messages: list[ChatMessageOut] = []
