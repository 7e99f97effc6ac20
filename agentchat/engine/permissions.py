"""Permission correlation: match operator replies to pending tool requests.

A subprocess asks for permission through the tool server; the request
is parked here under a short hex id until the operator answers in the
agent's chat, the timeout fires, or the agent shuts down. Each pending
entry resolves exactly once whichever of those happens first.
"""
from __future__ import annotations

import asyncio
import itertools
import logging
import random
import time
from collections.abc import Awaitable, Callable
from typing import Any

from agentchat.shared.commands import parse_permission_reply
from agentchat.shared.formatters import format_permission_prompt

from .errors import PermissionIdExhaustedError
from .models import PendingPermission, PermissionResult
from .registry import ACTIVE_STATUSES, AgentRegistry

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("agentchat.audit")

# Signature: async def send(agent_id, text) -> None
SendMessageFn = Callable[[str, str], Awaitable[None]]

DEFAULT_TIMEOUT_SECONDS = 300.0
ID_ATTEMPTS = 100

REASON_TIMEOUT = "timeout"
REASON_CANCELLED = "cancelled"
REASON_USER_DENIED = "user denied"
REASON_AGENT_NOT_FOUND = "agent not found"
REASON_SEND_FAILED = "failed to send permission request"


class PermissionEngine:
    """Holds pending permission requests for every agent."""

    def __init__(
        self,
        registry: AgentRegistry,
        send_message: SendMessageFn,
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        rng: random.Random | None = None,
    ) -> None:
        self._registry = registry
        self._send_message = send_message
        self._timeout = timeout_seconds
        self._rng = rng or random.Random()
        self._pending: dict[str, PendingPermission] = {}
        self._seq = itertools.count()

    @property
    def timeout_seconds(self) -> float:
        return self._timeout

    async def request(
        self,
        agent_id: str,
        action: str,
        description: str,
        details: dict[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> PermissionResult:
        """Ask the operator and wait for their decision."""
        record = self._registry.get(agent_id)
        if record is None or record.status not in ACTIVE_STATUSES:
            logger.warning(
                "Permission request from unknown or inactive agent %s", agent_id,
            )
            return PermissionResult(False, REASON_AGENT_NOT_FOUND)

        details = details or {}
        request_id = self._generate_id()
        loop = asyncio.get_running_loop()
        pending = PendingPermission(
            id=request_id,
            agent_id=agent_id,
            action=action,
            description=description,
            details=details,
            created_at=loop.time(),
            seq=next(self._seq),
            future=loop.create_future(),
        )
        # Claim the id before the first await so concurrent requests cannot draw it.
        self._pending[request_id] = pending
        wait = self._timeout if timeout is None else timeout
        if wait > 0:
            pending.timer = loop.call_later(wait, self._on_timeout, pending)

        text = format_permission_prompt(request_id, action, description, details)
        try:
            await self._send_message(agent_id, text)
        except asyncio.CancelledError:
            self._finish(pending, PermissionResult(False, REASON_CANCELLED))
            raise
        except Exception as exc:
            logger.error(
                "Failed to send permission request %s for agent %s: %s",
                request_id, agent_id, exc,
            )
            self._finish(pending, PermissionResult(False, REASON_SEND_FAILED))
            return pending.future.result()
        logger.info(
            "Permission request %s sent: agent=%s action=%s",
            request_id, agent_id, action,
        )

        try:
            return await pending.future
        except asyncio.CancelledError:
            # Caller went away (tool call aborted); drop the entry.
            self._finish(pending, PermissionResult(False, REASON_CANCELLED))
            raise

    def resolve(self, agent_id: str, reply_text: str) -> bool:
        """Try to consume ``reply_text`` as a permission reply.

        Returns False when the text is not shaped like a reply. A reply
        that matches nothing is still consumed (returns True) so it is
        never forwarded to the subprocess.
        """
        reply = parse_permission_reply(reply_text)
        if reply is None:
            return False

        if reply.request_id is not None:
            pending = self._pending.get(reply.request_id)
            if pending is None or pending.agent_id != agent_id:
                logger.warning(
                    "Permission reply for unknown or mismatched request %s "
                    "from agent %s", reply.request_id, agent_id,
                )
                return True
        else:
            candidates = self.pending_for(agent_id)
            if not candidates:
                logger.warning(
                    "Permission reply from agent %s with nothing pending", agent_id,
                )
                return True
            pending = candidates[0]

        if reply.approved:
            self._finish(pending, PermissionResult(True))
        else:
            self._finish(pending, PermissionResult(False, REASON_USER_DENIED))
        return True

    def cancel_all(self, agent_id: str) -> int:
        """Deny every pending request for ``agent_id`` as cancelled."""
        cancelled = self.pending_for(agent_id)
        for pending in cancelled:
            logger.info(
                "Permission request %s cancelled: agent=%s action=%s",
                pending.id, agent_id, pending.action,
            )
            self._finish(pending, PermissionResult(False, REASON_CANCELLED))
        return len(cancelled)

    def pending_for(self, agent_id: str) -> list[PendingPermission]:
        """Pending requests for one agent, oldest first."""
        return sorted(
            (p for p in self._pending.values() if p.agent_id == agent_id),
            key=lambda p: (p.created_at, p.seq),
        )

    def has_pending(self, request_id: str) -> bool:
        return request_id in self._pending

    # ── Internals ──

    def _on_timeout(self, pending: PendingPermission) -> None:
        if self._pending.get(pending.id) is not pending:
            return
        logger.info(
            "Permission request %s timed out: agent=%s action=%s",
            pending.id, pending.agent_id, pending.action,
        )
        pending.timer = None
        self._finish(pending, PermissionResult(False, REASON_TIMEOUT))

    def _finish(self, pending: PendingPermission, result: PermissionResult) -> None:
        if self._pending.get(pending.id) is pending:
            del self._pending[pending.id]
        if pending.timer is not None:
            pending.timer.cancel()
            pending.timer = None
        if pending.future.done():
            return
        if result.approved:
            audit_logger.info(
                "Permission granted: agent=%s action=%s details=%s",
                pending.agent_id, pending.action, pending.details,
            )
        else:
            audit_logger.info(
                "Permission denied: agent=%s action=%s reason=%s",
                pending.agent_id, pending.action, result.reason,
            )
        pending.future.set_result(result)

    def _generate_id(self) -> str:
        for _ in range(ID_ATTEMPTS):
            candidate = f"{self._rng.randrange(0x10000):04x}"
            if candidate not in self._pending:
                return candidate
        fallback = f"{int(time.time() * 1000):x}"[-4:]
        if fallback in self._pending:
            raise PermissionIdExhaustedError(len(self._pending))
        return fallback
