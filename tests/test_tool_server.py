"""Permission tool: routing by agent id and the allow/deny payloads."""

from __future__ import annotations

from unittest.mock import MagicMock, PropertyMock

import pytest

from agentchat.engine.mcp_server.permission_tool import (
    MISSING_AGENT_MESSAGE,
    build_permission_request,
    handle_permission_prompt,
    to_tool_response,
)
from agentchat.engine.mcp_server.router import PermissionRequest, ToolRouter
from agentchat.engine.models import PermissionResult


class StubHandler:
    def __init__(self, result: PermissionResult | None = None, error: Exception | None = None):
        self.result = result or PermissionResult(True)
        self.error = error
        self.requests: list[PermissionRequest] = []

    async def handle_permission(self, request: PermissionRequest) -> PermissionResult:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return self.result


# ── ToolRouter ──


def test_register_and_unregister():
    router = ToolRouter()
    handler = StubHandler()
    router.register("swift-fox", handler)
    assert router.has("swift-fox")
    assert router.registered_agents() == ["swift-fox"]

    router.unregister("swift-fox")
    assert router.get("swift-fox") is None
    router.unregister("swift-fox")


def test_stale_handler_cannot_unregister_replacement():
    router = ToolRouter()
    old, new = StubHandler(), StubHandler()
    router.register("swift-fox", old)
    router.register("swift-fox", new)

    router.unregister("swift-fox", old)
    assert router.get("swift-fox") is new

    router.unregister("swift-fox", new)
    assert not router.has("swift-fox")


@pytest.mark.asyncio
async def test_route_to_unknown_agent_is_denied():
    result = await ToolRouter().route_permission("ghost-goat", PermissionRequest("Bash", "x"))
    assert result.approved is False
    assert result.reason == "No handler registered for agent: ghost-goat"


@pytest.mark.asyncio
async def test_handler_exception_is_denied():
    router = ToolRouter()
    router.register("swift-fox", StubHandler(error=RuntimeError("boom")))
    result = await router.route_permission("swift-fox", PermissionRequest("Bash", "x"))
    assert result.approved is False
    assert result.reason == "Error handling permission: boom"


# ── Payloads ──


def test_allow_echoes_the_tool_input():
    tool_input = {"command": "ls -la"}
    assert to_tool_response(PermissionResult(True), tool_input) == {
        "behavior": "allow", "updatedInput": {"command": "ls -la"},
    }


def test_deny_carries_reason():
    assert to_tool_response(PermissionResult(False, "timeout"), {}) == {
        "behavior": "deny", "message": "timeout",
    }
    assert to_tool_response(PermissionResult(False), {})["message"] == "User denied permission"


def test_build_permission_request_describes_tool():
    request = build_permission_request("Bash", {"command": "npm test"})
    assert request.action == "Bash"
    assert request.description == "Run command: npm test"
    assert request.details == {"command": "npm test"}

    fallback = build_permission_request(None, None)
    assert fallback.action == "unknown_tool"
    assert fallback.details == {}


@pytest.mark.asyncio
async def test_missing_agent_id_is_denied_without_routing():
    router = ToolRouter()
    handler = StubHandler()
    router.register("swift-fox", handler)

    response = await handle_permission_prompt(router, None, "Bash", {"command": "ls"})

    assert response == {"behavior": "deny", "message": MISSING_AGENT_MESSAGE}
    assert handler.requests == []


@pytest.mark.asyncio
async def test_prompt_routes_to_agent_handler():
    router = ToolRouter()
    handler = StubHandler()
    router.register("swift-fox", handler)

    tool_input = {"file_path": "/tmp/a.txt", "content": "hi"}
    response = await handle_permission_prompt(router, "swift-fox", "Write", tool_input)

    assert response == {"behavior": "allow", "updatedInput": tool_input}
    assert handler.requests[0].description == "Write file: /tmp/a.txt"


# ── Server wiring ──


def test_agent_id_from_request_headers():
    from agentchat.engine.mcp_server.server import agent_id_from_context

    ctx = MagicMock()
    ctx.request_context.request.headers = {"x-agent-id": "swift-fox"}
    assert agent_id_from_context(ctx) == "swift-fox"

    ctx.request_context.request.headers = {}
    assert agent_id_from_context(ctx) is None
    assert agent_id_from_context(None) is None


def test_agent_id_outside_request_is_none():
    from agentchat.engine.mcp_server.server import agent_id_from_context

    ctx = MagicMock()
    type(ctx).request_context = PropertyMock(side_effect=ValueError("no request"))
    assert agent_id_from_context(ctx) is None


@pytest.mark.asyncio
async def test_mcp_app_exposes_permission_tool():
    from agentchat.engine.mcp_server.server import ToolServer

    server = ToolServer(ToolRouter(), "127.0.0.1", 3999)
    tools = await server.mcp.list_tools()

    assert [t.name for t in tools] == ["permission_prompt"]
    assert server.url == "http://127.0.0.1:3999/mcp"
