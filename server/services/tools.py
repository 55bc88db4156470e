"""Tool invoker — the single "fetch workflow detail" capability.

The completion bridge never lets the model request a tool mid-stream; it
decides up front (via a ``text -> bool`` predicate such as
``wants_workflow_detail``) and calls ``ToolInvoker.invoke`` before the
completion request.
"""

from __future__ import annotations

import json
import logging
import re

logger = logging.getLogger(__name__)

GET_WORKFLOW_TOOL = "get_workflow"

TOOL_DEFINITIONS: list[dict] = [
    {
        "name": GET_WORKFLOW_TOOL,
        "description": "Fetch the full definition of a workflow from the user's n8n instance",
        "inputSchema": {
            "type": "object",
            "properties": {
                "workflowId": {"type": "string", "description": "Workflow id in MyWorkflows"},
                "userId": {"type": "string", "description": "Owner of the workflow"},
            },
            "required": ["workflowId", "userId"],
        },
    },
]

# English plus the Portuguese terms used by most of the product's users
WORKFLOW_DETAIL_KEYWORDS: tuple[str, ...] = (
    "workflow", "node", "trigger", "credential", "config", "setting", "webhook",
    "fluxo", "nó", "gatilho", "credencia", "configura",
)

_KEYWORD_RE = re.compile(
    r"\b(?:" + "|".join(re.escape(k) for k in WORKFLOW_DETAIL_KEYWORDS) + ")",
    re.IGNORECASE,
)


class ToolError(Exception):
    """A tool invocation failed. The message is safe to show to the user."""


def wants_workflow_detail(text: str) -> bool:
    """Keyword heuristic: does the user's text ask about workflow internals?"""
    return bool(text) and _KEYWORD_RE.search(text) is not None


def format_workflow_summary(workflow: dict) -> str:
    """Short human-readable summary of an n8n workflow payload."""
    nodes = workflow.get("nodes") or []
    status = "Active" if workflow.get("active") else "Inactive"

    lines = [
        f"**{workflow.get('name') or workflow.get('systemName') or 'Unnamed workflow'}**",
        f"Status: {status}",
        f"Nodes: {len(nodes)}",
        f"System ID: {workflow.get('systemId', '')}",
        f"n8n ID: {workflow.get('n8nId', '')}",
        f"Connection: {workflow.get('connectionName', '')}",
        f"Updated: {workflow.get('updatedAt') or workflow.get('fetchedAt', '')}",
    ]

    if nodes:
        lines.append("")
        lines.append("**Nodes:**")
        for i, node in enumerate(nodes, start=1):
            node_type = (node.get("type") or "Unknown").replace("n8n-nodes-base.", "")
            lines.append(f"{i}. {node.get('name', '')} ({node_type})")

    settings = workflow.get("settings")
    if settings:
        lines.append("")
        lines.append("**Settings:**")
        for key, value in settings.items():
            lines.append(f"- {key}: {value}")

    return "\n".join(lines)


class ToolInvoker:
    """Uniform call interface over the n8n client.

    ``connected`` is set once at startup by ``connect()``; callers check it
    before deciding to invoke and it is not re-checked against n8n per call.
    """

    def __init__(self, n8n_client):
        self._n8n = n8n_client
        self.connected = False

    def connect(self) -> None:
        self.connected = True
        logger.info("Tool invoker connected, tools: %s", ", ".join(t["name"] for t in TOOL_DEFINITIONS))

    def disconnect(self) -> None:
        self.connected = False
        logger.info("Tool invoker disconnected")

    def list_tools(self) -> list[dict]:
        if not self.connected:
            raise ToolError("Tool invoker is not connected")
        return TOOL_DEFINITIONS

    async def invoke(self, name: str, args: dict) -> dict:
        """Run tool *name*; returns ``{"content": text}`` or raises ToolError."""
        if not self.connected:
            raise ToolError("Tool invoker is not connected")
        if name != GET_WORKFLOW_TOOL:
            raise ToolError(f"Tool '{name}' is not implemented")

        missing = [k for k in ("workflowId", "userId") if not args.get(k)]
        if missing:
            raise ToolError(f"Missing required arguments: {', '.join(missing)}")

        logger.info("Invoking %s for workflow %s", name, args["workflowId"])
        workflow = await self._n8n.get_workflow(args["workflowId"], args["userId"])
        summary = format_workflow_summary(workflow)
        raw = json.dumps(workflow, indent=2, default=str)
        return {"content": f"Workflow fetched from the n8n API.\n\n{summary}\n\nFull JSON:\n{raw}"}
