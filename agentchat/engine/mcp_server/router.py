"""Agent id -> permission handler routing for the shared tool server.

All subprocesses call one HTTP endpoint. The endpoint knows only the
``X-Agent-ID`` header, so each live bridge registers itself here under
its agent id and the tool handler dispatches through this map.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from ..models import PermissionResult

logger = logging.getLogger(__name__)


@dataclass
class PermissionRequest:
    action: str
    description: str
    details: dict[str, Any] = field(default_factory=dict)


class PermissionHandler(Protocol):
    async def handle_permission(self, request: PermissionRequest) -> PermissionResult:
        ...


class ToolRouter:
    """Explicit map of agent id to the handler serving it."""

    def __init__(self) -> None:
        self._handlers: dict[str, PermissionHandler] = {}

    def register(self, agent_id: str, handler: PermissionHandler) -> None:
        if agent_id in self._handlers and self._handlers[agent_id] is not handler:
            logger.warning("Replacing tool handler for agent %s", agent_id)
        self._handlers[agent_id] = handler
        logger.info("Registered tool handler for agent %s", agent_id)

    def unregister(self, agent_id: str, handler: PermissionHandler | None = None) -> None:
        """Drop the handler for ``agent_id``.

        With ``handler`` given, only that exact handler is removed, so a
        stale session cannot unregister its replacement.
        """
        current = self._handlers.get(agent_id)
        if current is None:
            return
        if handler is not None and current is not handler:
            return
        del self._handlers[agent_id]
        logger.info("Unregistered tool handler for agent %s", agent_id)

    def get(self, agent_id: str) -> PermissionHandler | None:
        return self._handlers.get(agent_id)

    def has(self, agent_id: str) -> bool:
        return agent_id in self._handlers

    def registered_agents(self) -> list[str]:
        return list(self._handlers)

    async def route_permission(
        self, agent_id: str, request: PermissionRequest,
    ) -> PermissionResult:
        handler = self._handlers.get(agent_id)
        if handler is None:
            logger.warning("Permission request for unregistered agent %s", agent_id)
            return PermissionResult(
                False, f"No handler registered for agent: {agent_id}",
            )
        try:
            return await handler.handle_permission(request)
        except Exception as exc:
            logger.exception("Permission handler for %s failed", agent_id)
            return PermissionResult(False, f"Error handling permission: {exc}")
