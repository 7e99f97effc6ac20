"""Adapter registry: maps agent kinds to AgentAdapter instances."""
from __future__ import annotations

import logging

from ..models import AgentKind
from .base import AgentAdapter

logger = logging.getLogger(__name__)


class AdapterRegistry:
    """Registry of subprocess adapters keyed by AgentKind."""

    def __init__(self) -> None:
        self._adapters: dict[AgentKind, AgentAdapter] = {}

    def register(self, adapter: AgentAdapter) -> None:
        self._adapters[adapter.kind] = adapter
        logger.info(
            "Adapter registered: %s (available=%s)",
            adapter.kind.value, adapter.is_available(),
        )

    def get(self, kind: AgentKind | str) -> AgentAdapter:
        """Adapter for ``kind``; KeyError when none is registered."""
        adapter = self._adapters.get(AgentKind(kind))
        if adapter is None:
            available = ", ".join(k.value for k in self._adapters)
            raise KeyError(
                f"No adapter for agent kind '{AgentKind(kind).value}'. "
                f"Available: {available or 'none'}"
            )
        return adapter

    def kinds(self) -> list[AgentKind]:
        return list(self._adapters)
