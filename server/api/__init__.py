"""FastAPI router aggregation."""

from fastapi import APIRouter

from api.chat import router as chat_router
from api.health import router as health_router
from api.n8n import router as n8n_router
from api.usage import router as usage_router

api_router = APIRouter(prefix="/api/v1")

api_router.include_router(usage_router, prefix="/usage", tags=["usage"])
api_router.include_router(chat_router, prefix="/workflows", tags=["chat"])
api_router.include_router(n8n_router, prefix="/n8n", tags=["n8n"])

__all__ = ["api_router", "health_router"]
