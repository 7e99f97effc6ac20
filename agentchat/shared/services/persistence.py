"""Service state persistence.

Storage layout:
    ~/.agent-chat/state.json

    {
      "agents": [ {AgentRecord.to_dict()}, ... ],
      "config": {"workBasePath": ..., "xmppDomain": ..., "managerJid": ...}
    }

Every mutation rewrites the whole file atomically before returning.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from agentchat.engine.models import AgentRecord, AgentStatus
from agentchat.shared.services.durable_write import atomic_write_json

logger = logging.getLogger(__name__)

DEFAULT_STATE_PATH = Path("~/.agent-chat/state.json")


@dataclass
class ServiceState:
    agents: list[AgentRecord] = field(default_factory=list)
    config: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "agents": [a.to_dict() for a in self.agents],
            "config": dict(self.config),
        }


class StatePersistence:
    """Load and save ServiceState to a single JSON file."""

    def __init__(self, path: Path | str | None = None) -> None:
        self._path = Path(path or DEFAULT_STATE_PATH).expanduser()
        self._state = ServiceState()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def state(self) -> ServiceState:
        return self._state

    def load(self) -> ServiceState:
        """Read the state file. Missing or corrupt files load as empty."""
        if not self._path.exists():
            logger.info("No state file at %s, starting empty", self._path)
            self._state = ServiceState()
            return self._state
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.error("Failed to read state file %s: %s", self._path, exc)
            self._state = ServiceState()
            return self._state

        agents: list[AgentRecord] = []
        for entry in raw.get("agents", []):
            try:
                agents.append(AgentRecord.from_dict(entry))
            except (KeyError, ValueError, TypeError) as exc:
                logger.warning("Skipping invalid agent entry %r: %s", entry, exc)
        self._state = ServiceState(
            agents=agents, config=dict(raw.get("config") or {}),
        )
        logger.info(
            "Loaded %d agent(s) from %s", len(agents), self._path,
        )
        return self._state

    def save(self) -> None:
        self._write(self._state)

    def _write(self, state: ServiceState) -> None:
        # Owner-only: the file lives next to credentials in config.
        atomic_write_json(self._path, state.to_dict(), mode=0o600)

    def _replace_agents(self, agents: list[AgentRecord]) -> None:
        """Write ``agents`` and adopt them only once the write succeeded."""
        state = ServiceState(agents=agents, config=self._state.config)
        self._write(state)
        self._state = state

    def upsert(self, record: AgentRecord) -> None:
        agents = list(self._state.agents)
        for i, existing in enumerate(agents):
            if existing.id == record.id:
                agents[i] = record
                break
        else:
            agents.append(record)
        self._replace_agents(agents)

    def remove(self, agent_id: str) -> None:
        agents = [a for a in self._state.agents if a.id != agent_id]
        if len(agents) != len(self._state.agents):
            self._replace_agents(agents)

    def mark_all_stopped(self) -> dict[str, int]:
        """Force every agent to stopped and clear its pid.

        Subprocesses never survive a service restart. Returns the pids
        that were recorded before clearing, keyed by agent id.
        """
        stale_pids: dict[str, int] = {}
        changed = False
        for record in self._state.agents:
            if record.os_process_id:
                stale_pids[record.id] = record.os_process_id
            if record.status != AgentStatus.STOPPED or record.os_process_id:
                changed = True
            record.status = AgentStatus.STOPPED
            record.os_process_id = None
        if changed:
            self.save()
        return stale_pids

    def update_config(self, **values: Any) -> None:
        self._state.config.update(values)
        self.save()
