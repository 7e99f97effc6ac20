"""Agent registry: the single source of truth for agent records.

Every mutation goes through ``update``/``register``/``remove`` and is
persisted before it becomes visible in memory. Callers re-read with ``get`` after
any await instead of holding on to a status.
"""
from __future__ import annotations

import logging
import random
from dataclasses import replace
from typing import Any

from agentchat.shared.services.persistence import StatePersistence

from .errors import AgentNotFoundError, DuplicateAgentError, IdGenerationError
from .lifecycle import validate_transition
from .models import AgentRecord, AgentStatus

logger = logging.getLogger(__name__)

ADJECTIVES = (
    "swift", "clever", "bold", "calm", "eager", "gentle", "happy", "keen",
    "lucky", "mighty", "noble", "quick", "sharp", "wise", "brave", "bright",
    "cool", "fair", "grand", "jolly",
)
ANIMALS = (
    "fox", "owl", "bear", "wolf", "hawk", "deer", "lynx", "seal", "crow",
    "dove", "hare", "lion", "otter", "panda", "raven", "tiger", "viper",
    "whale", "zebra", "badger",
)
ID_ATTEMPTS = 10

ACTIVE_STATUSES = frozenset({AgentStatus.STARTING, AgentStatus.RUNNING})

_UPDATABLE = frozenset({
    "status", "resume_token", "os_process_id", "last_error",
    "session_address", "work_directory",
})


class AgentRegistry:
    """In-memory map of AgentRecord backed by StatePersistence."""

    def __init__(
        self,
        persistence: StatePersistence,
        rng: random.Random | None = None,
    ) -> None:
        self._persistence = persistence
        self._rng = rng or random.SystemRandom()
        self._agents: dict[str, AgentRecord] = {}
        self._reserved: set[str] = set()

    def load(self) -> dict[str, int]:
        """Load persisted agents and force them all to stopped.

        Returns pids recorded by the previous run, keyed by agent id,
        so the caller can reap leftovers.
        """
        state = self._persistence.load()
        stale_pids = self._persistence.mark_all_stopped()
        self._agents = {a.id: a for a in state.agents}
        logger.info(
            "Registry loaded %d agent(s), %d with stale pids",
            len(self._agents), len(stale_pids),
        )
        return stale_pids

    # ── Queries ──

    def get(self, agent_id: str) -> AgentRecord | None:
        return self._agents.get(agent_id)

    def require(self, agent_id: str) -> AgentRecord:
        record = self._agents.get(agent_id)
        if record is None:
            raise AgentNotFoundError(agent_id)
        return record

    def list_agents(self) -> list[AgentRecord]:
        return sorted(self._agents.values(), key=lambda a: a.created_at)

    def active(self) -> list[AgentRecord]:
        return [a for a in self.list_agents() if a.status in ACTIVE_STATUSES]

    def find_by_address(self, address: str) -> AgentRecord | None:
        bare = address.split("/", 1)[0].lower()
        for record in self._agents.values():
            if record.session_address.lower() == bare:
                return record
        return None

    def __contains__(self, agent_id: object) -> bool:
        return agent_id in self._agents

    def __len__(self) -> int:
        return len(self._agents)

    # ── Mutations ──

    def generate_id(self) -> str:
        """Draw and reserve an ``adjective-animal`` id.

        The id stays reserved until it is registered or ``release``d, so
        creations running concurrently never share one.
        """
        for _ in range(ID_ATTEMPTS):
            candidate = (
                f"{self._rng.choice(ADJECTIVES)}-{self._rng.choice(ANIMALS)}"
            )
            if candidate not in self._agents and candidate not in self._reserved:
                self._reserved.add(candidate)
                return candidate
            logger.debug("Agent id collision on %s, retrying", candidate)
        raise IdGenerationError(ID_ATTEMPTS)

    def release(self, agent_id: str) -> None:
        """Drop an unused reservation from ``generate_id``."""
        self._reserved.discard(agent_id)

    def register(self, record: AgentRecord) -> AgentRecord:
        if record.id in self._agents:
            raise DuplicateAgentError(record.id)
        self._persistence.upsert(record)
        self._agents[record.id] = record
        self._reserved.discard(record.id)
        logger.info(
            "Registered agent %s (%s) in %s",
            record.id, record.kind.value, record.work_directory,
        )
        return record

    def update(self, agent_id: str, **changes: Any) -> AgentRecord:
        """Apply field changes to one record and persist.

        Raises AgentNotFoundError for unknown ids and ValueError for
        illegal status transitions or unknown fields.
        """
        record = self.require(agent_id)
        unknown = set(changes) - _UPDATABLE
        if unknown:
            raise ValueError(f"Cannot update field(s): {', '.join(sorted(unknown))}")

        if "status" in changes:
            target = AgentStatus(changes["status"])
            validate_transition(record.status, target)
            changes["status"] = target

        updated = replace(record, **changes)
        self._persistence.upsert(updated)
        self._agents[agent_id] = updated
        if "status" in changes and record.status != updated.status:
            logger.info(
                "Agent %s: %s -> %s",
                agent_id, record.status.value, updated.status.value,
            )
        return updated

    def set_status(self, agent_id: str, status: AgentStatus, **changes: Any) -> AgentRecord:
        return self.update(agent_id, status=status, **changes)

    def remove(self, agent_id: str) -> AgentRecord:
        record = self.require(agent_id)
        self._persistence.remove(agent_id)
        del self._agents[agent_id]
        logger.info("Removed agent %s", agent_id)
        return record
