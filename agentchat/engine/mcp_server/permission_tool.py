"""The ``permission_prompt`` tool called by ``--permission-prompt-tool``.

Request: ``{"tool_name": str, "input": object}``.
Response (JSON text): ``{"behavior": "allow", "updatedInput": input}``
or ``{"behavior": "deny", "message": reason}``. ``updatedInput`` is the
tool's own input passed back unchanged, never the wrapper arguments.
"""
from __future__ import annotations

import logging
from typing import Any

from agentchat.shared.formatters import describe_tool_call

from ..models import PermissionResult
from .router import PermissionRequest, ToolRouter

logger = logging.getLogger(__name__)

PERMISSION_TOOL_NAME = "permission_prompt"
PERMISSION_TOOL_DESCRIPTION = "Request permission from the user for an action"
DEFAULT_DENY_MESSAGE = "User denied permission"
MISSING_AGENT_MESSAGE = "Missing X-Agent-ID header"


def build_permission_request(
    tool_name: str | None, tool_input: dict[str, Any] | None,
) -> PermissionRequest:
    name = tool_name or "unknown_tool"
    args = tool_input if isinstance(tool_input, dict) else {}
    return PermissionRequest(
        action=name,
        description=describe_tool_call(name, args),
        details=args,
    )


def to_tool_response(
    result: PermissionResult, tool_input: dict[str, Any] | None,
) -> dict[str, Any]:
    if result.approved:
        return {"behavior": "allow", "updatedInput": tool_input or {}}
    return {"behavior": "deny", "message": result.reason or DEFAULT_DENY_MESSAGE}


async def handle_permission_prompt(
    router: ToolRouter,
    agent_id: str | None,
    tool_name: str | None,
    tool_input: dict[str, Any] | None,
) -> dict[str, Any]:
    """Resolve one permission tool call to its response payload."""
    if not agent_id:
        logger.warning("permission_prompt call without agent id (tool=%s)", tool_name)
        return to_tool_response(PermissionResult(False, MISSING_AGENT_MESSAGE), tool_input)

    request = build_permission_request(tool_name, tool_input)
    logger.debug(
        "permission_prompt: agent=%s tool=%s input=%s",
        agent_id, request.action, request.details,
    )
    result = await router.route_permission(agent_id, request)
    return to_tool_response(result, tool_input)
