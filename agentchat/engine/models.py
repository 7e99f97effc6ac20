"""Core data models for the agent bridge.

All dataclasses and enums live here so the rest of the package can
import them without circular dependencies.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class AgentStatus(str, Enum):
    """Agent lifecycle states. See lifecycle.py for transition rules."""
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


class AgentKind(str, Enum):
    """Which coding-agent CLI backs an agent."""
    CLAUDE_CODE = "claude-code"


class ConversationStep(str, Enum):
    """Steps of the manager's create-agent dialogue."""
    IDLE = "idle"
    AWAITING_TYPE = "awaiting_type"
    AWAITING_REPO = "awaiting_repo"
    AWAITING_TASK = "awaiting_task"


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# Keys written by older state files, mapped to current field names.
_LEGACY_KEYS = {
    "jid": "sessionAddress",
    "workDir": "workDirectory",
    "sessionId": "resumeToken",
    "pid": "osProcessId",
    "type": "kind",
}


@dataclass
class AgentRecord:
    """One registered agent.

    Owned by AgentRegistry. Mutate through ``AgentRegistry.update`` so
    every change is persisted.
    """
    id: str
    session_address: str
    work_directory: str
    created_by: str
    kind: AgentKind = AgentKind.CLAUDE_CODE
    status: AgentStatus = AgentStatus.STARTING
    created_at: str = field(default_factory=utcnow_iso)
    resume_token: str | None = None
    os_process_id: int | None = None
    last_error: str | None = None

    @property
    def jid(self) -> str:
        return self.session_address

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "kind": self.kind.value,
            "sessionAddress": self.session_address,
            "workDirectory": self.work_directory,
            "createdAt": self.created_at,
            "createdBy": self.created_by,
            "status": self.status.value,
        }
        if self.resume_token:
            data["resumeToken"] = self.resume_token
        if self.os_process_id is not None:
            data["osProcessId"] = self.os_process_id
        if self.last_error:
            data["lastError"] = self.last_error
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AgentRecord:
        norm = dict(data)
        for old, new in _LEGACY_KEYS.items():
            if old in norm and new not in norm:
                norm[new] = norm.pop(old)
        return cls(
            id=norm["id"],
            kind=AgentKind(norm.get("kind", AgentKind.CLAUDE_CODE.value)),
            session_address=norm["sessionAddress"],
            work_directory=norm["workDirectory"],
            created_at=norm.get("createdAt") or utcnow_iso(),
            created_by=norm.get("createdBy", ""),
            status=AgentStatus(norm.get("status", AgentStatus.STOPPED.value)),
            resume_token=norm.get("resumeToken") or None,
            os_process_id=norm.get("osProcessId"),
            last_error=norm.get("lastError") or None,
        )


@dataclass
class PermissionResult:
    approved: bool
    reason: str | None = None


@dataclass
class PendingPermission:
    """A permission request waiting on the operator.

    ``future`` resolves exactly once; ``timer`` is the timeout handle
    and is cancelled on every resolution path.
    """
    id: str
    agent_id: str
    action: str
    description: str
    details: dict[str, Any]
    created_at: float
    seq: int
    future: asyncio.Future = field(repr=False)
    timer: asyncio.TimerHandle | None = field(default=None, repr=False)


@dataclass
class QueuedOutputMessage:
    recipient: str
    body: str
    enqueued_at: float = field(default_factory=time.monotonic)


@dataclass
class ConversationState:
    """Per-operator progress through the create-agent dialogue."""
    step: ConversationStep = ConversationStep.IDLE
    agent_kind: AgentKind | None = None
    repo: str | None = None
    repos: list[str] = field(default_factory=list)

    def reset(self) -> None:
        self.step = ConversationStep.IDLE
        self.agent_kind = None
        self.repo = None
        self.repos = []


@dataclass(frozen=True)
class ExitDecision:
    should_recover: bool
    reason: str


@dataclass
class RecoveryResult:
    success: bool
    resumed: bool = False
    process: Any = field(default=None, repr=False)
    error: str | None = None


@dataclass
class OutputChunk:
    """One decoded event from an agent subprocess.

    ``type`` is ``"text"`` (operator-visible ``content``) or
    ``"structured"`` (``data`` with its own ``type`` key).
    """
    type: str
    content: str = ""
    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def text(cls, content: str) -> OutputChunk:
        return cls(type="text", content=content)

    @classmethod
    def structured(cls, kind: str, **payload: Any) -> OutputChunk:
        return cls(type="structured", data={"type": kind, **payload})
