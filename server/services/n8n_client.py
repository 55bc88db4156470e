"""n8n REST API client — reads workflows from the user's own n8n instance."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone

import httpx

from config import settings
from database import SessionLocal
from models.encrypted import mask_secret
from models.workflow import N8nConnection, Workflow
from services.tools import ToolError

logger = logging.getLogger(__name__)

USER_AGENT = "MyWorkflows-Agent/1.0"


def _sanitize_api_key(key: str) -> str:
    """Strip whitespace and non-ASCII characters pasted along with the key."""
    return key.strip().encode("ascii", "ignore").decode()


class N8nClient:

    def __init__(self, http_client: httpx.AsyncClient, session_factory=SessionLocal, timeout: float | None = None):
        self._http = http_client
        self._session_factory = session_factory
        self.timeout = timeout if timeout is not None else settings.N8N_TIMEOUT_SECONDS

    # ── DB lookups (sync, run in a worker thread) ─────────────────────────

    def _active_connection(self, user_id: int) -> dict | None:
        with self._session_factory() as db:
            conn = (
                db.query(N8nConnection)
                .filter(N8nConnection.user_id == user_id, N8nConnection.active == True)  # noqa: E712
                .order_by(N8nConnection.id)
                .first()
            )
            if not conn:
                return None
            return {"url": conn.n8n_url, "api_key": conn.n8n_api_key, "name": conn.name}

    def _workflow_row(self, workflow_id: str, user_id: int) -> dict | None:
        with self._session_factory() as db:
            wf = (
                db.query(Workflow)
                .filter(Workflow.id == workflow_id, Workflow.user_id == user_id)
                .first()
            )
            if not wf:
                return None
            return {"n8n_workflow_id": wf.n8n_workflow_id, "name": wf.name}

    async def _require_connection(self, user_id: int) -> dict:
        connection = await asyncio.to_thread(self._active_connection, user_id)
        if not connection:
            raise ToolError("No active n8n connection found for this user")
        return connection

    def _headers(self, connection: dict) -> dict:
        return {
            "X-N8N-API-KEY": _sanitize_api_key(connection["api_key"]),
            "Accept": "application/json",
            "User-Agent": USER_AGENT,
        }

    async def _get(self, connection: dict, path: str, params: dict | None = None) -> httpx.Response:
        url = f"{connection['url'].rstrip('/')}{path}"
        try:
            return await self._http.get(url, headers=self._headers(connection), params=params, timeout=self.timeout)
        except httpx.HTTPError as exc:
            logger.warning("n8n request to %s failed: %s", url, exc)
            raise ToolError(f"Could not connect to n8n: {exc}") from exc

    # ── Public API ─────────────────────────────────────────────────────────

    async def get_workflow(self, workflow_id: str, user_id: int) -> dict:
        """Full n8n workflow JSON plus our own identifiers."""
        connection = await self._require_connection(user_id)

        row = await asyncio.to_thread(self._workflow_row, workflow_id, user_id)
        if not row:
            raise ToolError(f"Workflow {workflow_id} not found in the system")
        n8n_id = row["n8n_workflow_id"]

        resp = await self._get(connection, f"/api/v1/workflows/{n8n_id}")
        if resp.status_code == 401:
            logger.warning("n8n rejected API key %s for connection %s",
                           mask_secret(connection["api_key"]), connection["name"])
            raise ToolError("Invalid or expired n8n API key")
        if resp.status_code == 403:
            raise ToolError("No permission to access this workflow in n8n")
        if resp.status_code == 404:
            raise ToolError(f"Workflow {n8n_id} not found in n8n")
        if resp.status_code >= 400:
            raise ToolError(f"n8n API error: {resp.status_code} - {resp.text[:200]}")

        data = resp.json()
        logger.info("Fetched n8n workflow %s (%d nodes)", n8n_id, len(data.get("nodes") or []))
        return {
            "systemId": workflow_id,
            "systemName": row["name"],
            "n8nId": n8n_id,
            "connectionName": connection["name"],
            **data,
            "fetchedAt": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        }

    async def list_workflows(self, user_id: int) -> list[dict]:
        connection = await self._require_connection(user_id)
        resp = await self._get(connection, "/api/v1/workflows")
        if resp.status_code >= 400:
            raise ToolError(f"n8n API error: {resp.status_code}")
        body = resp.json()
        return body.get("data", []) if isinstance(body, dict) else body

    async def test_connection(self, user_id: int) -> bool:
        try:
            connection = await self._require_connection(user_id)
            resp = await self._get(connection, "/api/v1/workflows", params={"limit": 1})
        except ToolError:
            return False
        return resp.status_code < 400
