"""Agent lifecycle state machine.

Defines valid status transitions and enforces them. Invalid
transitions raise ValueError rather than silently proceeding.

State Diagram:

    STARTING ──> RUNNING ──> STOPPING ──> STOPPED
       │  ^         │                        │
       │  └─────────┘ (recovery)             │
       └──────────────────> STOPPED ─────────┘──> STARTING (recovery)
"""
from __future__ import annotations

from .models import AgentStatus

VALID_TRANSITIONS: dict[AgentStatus, set[AgentStatus]] = {
    AgentStatus.STARTING: {
        AgentStatus.RUNNING,
        AgentStatus.STOPPING,
        AgentStatus.STOPPED,
    },
    AgentStatus.RUNNING: {
        AgentStatus.STARTING,  # recovery respawn
        AgentStatus.STOPPING,
        AgentStatus.STOPPED,
    },
    AgentStatus.STOPPING: {
        AgentStatus.STOPPED,
    },
    AgentStatus.STOPPED: {
        AgentStatus.STARTING,  # recovery respawn
    },
}


def validate_transition(current: AgentStatus, target: AgentStatus) -> None:
    """Validate a status transition. Raises ValueError if invalid.

    Re-asserting the current status is always allowed.
    """
    if current == target:
        return
    allowed = VALID_TRANSITIONS.get(current, set())
    if target not in allowed:
        allowed_str = ", ".join(sorted(s.value for s in allowed)) or "none"
        raise ValueError(
            f"Invalid status transition: {current.value} -> {target.value}. "
            f"Allowed from {current.value}: {allowed_str}"
        )
