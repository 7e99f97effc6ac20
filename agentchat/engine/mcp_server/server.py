"""Shared MCP tool server for all agent subprocesses.

One FastMCP instance served over streamable HTTP at ``/mcp``. Every
agent's MCP config points here with its own ``X-Agent-ID`` header;
tool calls are dispatched to that agent's bridge through ToolRouter.
"""
from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import Iterator
from typing import Any

import uvicorn
from mcp.server.fastmcp import Context, FastMCP

from .permission_tool import (
    PERMISSION_TOOL_DESCRIPTION,
    PERMISSION_TOOL_NAME,
    handle_permission_prompt,
)
from .router import ToolRouter

logger = logging.getLogger(__name__)

SERVER_NAME = "agent_chat"
AGENT_ID_HEADER = "x-agent-id"


def agent_id_from_context(ctx: Context | None) -> str | None:
    """Read ``X-Agent-ID`` from the HTTP request behind a tool call."""
    if ctx is None:
        return None
    try:
        request_context = ctx.request_context
    except ValueError:
        # Called outside an HTTP request (e.g. in-process call_tool).
        return None
    request = getattr(request_context, "request", None)
    if request is None:
        return None
    headers = getattr(request, "headers", None)
    if headers is None:
        return None
    return headers.get(AGENT_ID_HEADER) or None


def build_mcp_server(
    router: ToolRouter, *, host: str = "127.0.0.1", port: int = 3001,
) -> FastMCP:
    """FastMCP app exposing ``permission_prompt``."""
    mcp = FastMCP(SERVER_NAME, host=host, port=port)

    @mcp.tool(name=PERMISSION_TOOL_NAME, description=PERMISSION_TOOL_DESCRIPTION)
    async def permission_prompt(
        tool_name: str,
        input: dict[str, Any],
        tool_use_id: str | None = None,
        ctx: Context = None,
    ) -> str:
        agent_id = agent_id_from_context(ctx)
        response = await handle_permission_prompt(router, agent_id, tool_name, input)
        logger.info(
            "permission_prompt: agent=%s tool=%s behavior=%s",
            agent_id, tool_name, response["behavior"],
        )
        return json.dumps(response)

    return mcp


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves process signal handling to the host."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield


class ToolServer:
    """Runs the MCP app under uvicorn inside the service's event loop."""

    def __init__(self, router: ToolRouter, host: str = "127.0.0.1", port: int = 3001) -> None:
        self._router = router
        self._host = host
        self._port = port
        self._mcp = build_mcp_server(router, host=host, port=port)
        self._server: uvicorn.Server | None = None
        self._task: asyncio.Task | None = None

    @property
    def url(self) -> str:
        return f"http://{self._host}:{self._port}{self._mcp.settings.streamable_http_path}"

    @property
    def mcp(self) -> FastMCP:
        return self._mcp

    async def start(self) -> None:
        if self._task is not None:
            return
        config = uvicorn.Config(
            self._mcp.streamable_http_app(),
            host=self._host,
            port=self._port,
            log_level="warning",
            lifespan="on",
        )
        self._server = _EmbeddedServer(config)
        self._task = asyncio.create_task(self._server.serve(), name="tool-server")
        # Wait until the socket is bound, or surface a startup failure.
        while not self._server.started:
            if self._task.done():
                exc = self._task.exception()
                self._task = None
                raise RuntimeError(
                    f"Tool server failed to start on {self._host}:{self._port}"
                ) from exc
            await asyncio.sleep(0.05)
        logger.info("Tool server listening on %s", self.url)

    async def stop(self) -> None:
        if self._server is None or self._task is None:
            return
        self._server.should_exit = True
        try:
            await asyncio.wait_for(self._task, timeout=5.0)
        except asyncio.TimeoutError:
            logger.warning("Tool server did not stop in time, cancelling")
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        finally:
            self._task = None
            self._server = None
        logger.info("Tool server stopped")
