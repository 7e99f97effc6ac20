"""Crash recovery for agent subprocesses.

Decides from the exit code whether a dead subprocess is worth
respawning and, if so, respawns it, resuming the previous session
when a resume token is known. ``recover`` is the only path that puts
an agent back into STARTING after its initial creation.
"""
from __future__ import annotations

import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable

from .errors import AgentChatError
from .models import AgentRecord, AgentStatus, ExitDecision, RecoveryResult
from .providers.base import SpawnConfig
from .providers.registry import AdapterRegistry
from .registry import AgentRegistry

logger = logging.getLogger(__name__)

# Signature: async def notify(agent_id, text) -> None
NotifyFn = Callable[[str, str], Awaitable[None]]

EXIT_COMMAND_NOT_FOUND = 127
EXIT_SIGNAL_BASE = 128

CONTEXT_LOST_MESSAGE = (
    "I crashed and had no session to resume, so I restarted fresh. "
    "Earlier conversation context is lost."
)


def classify_exit(exit_code: int | None) -> ExitDecision:
    """Map a normalised exit code to a recover / don't-recover decision."""
    if exit_code is None:
        return ExitDecision(False, "Process was killed intentionally")
    if exit_code == 0:
        return ExitDecision(False, "Process exited normally")
    if exit_code >= EXIT_SIGNAL_BASE:
        return ExitDecision(
            False, f"Process terminated by signal (exit code {exit_code})",
        )
    if exit_code == EXIT_COMMAND_NOT_FOUND:
        return ExitDecision(
            False, "executable not found - check the agent CLI installation",
        )
    return ExitDecision(True, f"Process crashed with exit code {exit_code}")


class RecoveryManager:
    """Respawns crashed agents, with a crash-loop guard."""

    def __init__(
        self,
        adapters: AdapterRegistry,
        registry: AgentRegistry,
        tool_server_url: str,
        *,
        notify: NotifyFn | None = None,
        max_attempts: int = 3,
        attempt_window: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._adapters = adapters
        self._registry = registry
        self._tool_server_url = tool_server_url
        self._notify = notify
        self._max_attempts = max_attempts
        self._attempt_window = attempt_window
        self._clock = clock
        self._attempts: dict[str, deque[float]] = {}

    def classify_exit(self, exit_code: int | None) -> ExitDecision:
        return classify_exit(exit_code)

    def decide(self, agent_id: str, exit_code: int | None) -> ExitDecision:
        """classify_exit plus the per-agent attempt limit."""
        decision = classify_exit(exit_code)
        if not decision.should_recover or self._max_attempts <= 0:
            return decision
        now = self._clock()
        history = self._attempts.setdefault(agent_id, deque())
        while history and history[0] <= now - self._attempt_window:
            history.popleft()
        if len(history) >= self._max_attempts:
            return ExitDecision(
                False,
                f"Recovery limit reached ({self._max_attempts} restarts "
                f"in {self._attempt_window:.0f}s); last: {decision.reason}",
            )
        return decision

    def forget(self, agent_id: str) -> None:
        self._attempts.pop(agent_id, None)

    async def recover(self, record: AgentRecord) -> RecoveryResult:
        """Respawn ``record``'s subprocess and update the registry."""
        agent_id = record.id
        self._attempts.setdefault(agent_id, deque()).append(self._clock())
        resumed = bool(record.resume_token)
        logger.info(
            "Recovering agent %s (%s)",
            agent_id, "resume" if resumed else "fresh start",
        )
        self._registry.set_status(agent_id, AgentStatus.STARTING)
        try:
            adapter = self._adapters.get(record.kind)
            process = await adapter.spawn(SpawnConfig(
                agent_id=agent_id,
                work_directory=record.work_directory,
                tool_server_url=self._tool_server_url,
                resume_token=record.resume_token,
            ))
        except (AgentChatError, KeyError, OSError) as exc:
            logger.error("Failed to recover agent %s: %s", agent_id, exc)
            self._registry.set_status(
                agent_id, AgentStatus.STOPPED,
                os_process_id=None, last_error=str(exc),
            )
            return RecoveryResult(success=False, error=str(exc))

        self._registry.set_status(
            agent_id, AgentStatus.RUNNING,
            resume_token=process.session_token or record.resume_token,
            os_process_id=process.pid,
            last_error=None,
        )
        logger.info(
            "Recovered agent %s (%s)",
            agent_id, "resumed session" if resumed else "fresh start",
        )
        if not resumed and self._notify is not None:
            await self._notify(agent_id, CONTEXT_LOST_MESSAGE)
        return RecoveryResult(success=True, resumed=resumed, process=process)

    async def attempt_auto_recovery(
        self, record: AgentRecord, exit_code: int | None,
    ) -> tuple[ExitDecision, RecoveryResult | None]:
        """Recover when the exit warrants it; otherwise mark stopped.

        The result is None when no recovery was attempted.
        """
        decision = self.decide(record.id, exit_code)
        if not decision.should_recover:
            logger.info("Not recovering agent %s: %s", record.id, decision.reason)
            self._registry.set_status(
                record.id, AgentStatus.STOPPED,
                os_process_id=None,
                last_error=None if exit_code in (None, 0) else decision.reason,
            )
            return decision, None
        logger.info("Auto-recovering agent %s: %s", record.id, decision.reason)
        return decision, await self.recover(record)
