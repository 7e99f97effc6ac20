"""Per-agent bridge between one chat session and one subprocess.

AgentBridge owns the agent's subprocess handle, its chat transport and
its output queue, and wires them together:

- operator messages -> reserved commands, permission replies, or a
  new turn for the subprocess;
- subprocess text output -> output queue -> operator;
- permission tool calls (via ToolRouter) -> PermissionEngine, which
  prompts in this same chat;
- subprocess exit -> RecoveryManager, swapping in the respawned
  process while keeping the chat session and queue.
"""
from __future__ import annotations

import asyncio
import contextlib
import functools
import logging
from collections.abc import Awaitable, Callable

from agentchat.engine.conversation import AccountProvisioner
from agentchat.engine.errors import AgentChatError, AgentProcessError
from agentchat.engine.mcp_server.router import PermissionRequest, ToolRouter
from agentchat.engine.models import AgentRecord, AgentStatus, OutputChunk, PermissionResult
from agentchat.engine.output_queue import OutputQueue
from agentchat.engine.permissions import PermissionEngine
from agentchat.engine.providers.base import AgentProcess
from agentchat.engine.recovery import RecoveryManager
from agentchat.engine.registry import ACTIVE_STATUSES, AgentRegistry
from agentchat.shared.commands import AgentCommand, parse_agent_command
from agentchat.shared.formatters import format_agent_help, format_error, format_status

from .xmpp_client import ChatTransport

logger = logging.getLogger(__name__)

# Signature: async def on_stopped(agent_id, reason) -> None
StoppedCallback = Callable[[str, str], Awaitable[None]]

SHUTDOWN_MESSAGE = "Shutting down..."
PUMP_JOIN_TIMEOUT = 5.0


def greeting_for(record: AgentRecord) -> str:
    return (
        f"Hi! I'm your coding agent ({record.id}), working in "
        f"{record.work_directory}. I'm processing your request now..."
    )


class AgentBridge:
    """Runtime owner of one agent: subprocess, chat session, output queue."""

    def __init__(
        self,
        record: AgentRecord,
        process: AgentProcess,
        transport: ChatTransport,
        output_queue: OutputQueue,
        *,
        registry: AgentRegistry,
        permissions: PermissionEngine,
        router: ToolRouter,
        recovery: RecoveryManager | None = None,
        provisioner: AccountProvisioner | None = None,
        on_stopped: StoppedCallback | None = None,
        flush_timeout: float = 5.0,
    ) -> None:
        self._agent_id = record.id
        self._operator = record.created_by.split("/", 1)[0]
        self._record = record
        self._process = process
        self._transport = transport
        self._queue = output_queue
        self._registry = registry
        self._permissions = permissions
        self._router = router
        self._recovery = recovery
        self._provisioner = provisioner
        self._on_stopped = on_stopped
        self._flush_timeout = flush_timeout
        self._pump_task: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()
        self._started = False
        self._stopping = False
        self._stopped = asyncio.Event()

    @property
    def agent_id(self) -> str:
        return self._agent_id

    @property
    def process(self) -> AgentProcess:
        return self._process

    @property
    def operator(self) -> str:
        return self._operator

    @property
    def is_running(self) -> bool:
        return self._started and not self._stopping

    @property
    def stopped(self) -> asyncio.Event:
        return self._stopped

    # ── Lifecycle ──

    async def start(self, initial_task: str | None = None) -> None:
        """Route tool calls here, start pumping output, greet the operator.

        ``initial_task`` is sent as the first turn once the bridge can
        answer permission prompts for it.
        """
        if self._started:
            return
        self._started = True
        self._router.register(self._agent_id, self)
        self._transport.on_message(self._on_message)
        self._queue.enqueue(greeting_for(self._record))
        self._queue.start()
        self._attach(self._process)
        logger.info("Bridge started for agent %s (operator %s)", self._agent_id, self._operator)
        if initial_task:
            await self._process.send(initial_task)

    async def stop(self, *, flush: bool = True, reason: str = "stopped") -> None:
        """Tear down the bridge: process, queue, routing and chat session.

        Idempotent. Leaves the registry record to the caller.
        """
        if self._stopping:
            await self._stopped.wait()
            return
        self._stopping = True
        logger.info("Stopping bridge for agent %s (%s)", self._agent_id, reason)
        cancelled = self._permissions.cancel_all(self._agent_id)
        if cancelled:
            logger.info("Cancelled %d pending permission(s) for %s", cancelled, self._agent_id)
        try:
            await self._process.terminate()
        except Exception:
            logger.exception("Failed to terminate process for %s", self._agent_id)
        await self._teardown(flush=flush, reason=reason)

    async def _teardown(self, *, flush: bool, reason: str) -> None:
        await self._cancel_pump()
        await self._queue.stop(flush=flush, timeout=self._flush_timeout)
        self._router.unregister(self._agent_id, self)
        try:
            await self._transport.disconnect()
        except Exception:
            logger.exception("Failed to disconnect chat session for %s", self._agent_id)
        for task in list(self._tasks):
            if task is not asyncio.current_task():
                task.cancel()
        self._stopped.set()
        if self._on_stopped is not None:
            try:
                await self._on_stopped(self._agent_id, reason)
            except Exception:
                logger.exception("on_stopped callback failed for %s", self._agent_id)

    # ── Outbound ──

    async def send_to_operator(self, text: str) -> None:
        """Queue ``text`` for the operator in this agent's chat."""
        self._queue.enqueue(text)

    async def handle_permission(self, request: PermissionRequest) -> PermissionResult:
        return await self._permissions.request(
            self._agent_id, request.action, request.description, request.details,
        )

    # ── Inbound ──

    async def _on_message(self, sender: str, body: str) -> None:
        if self._stopping:
            return
        if sender.lower() != self._operator.lower():
            logger.warning(
                "Agent %s ignoring message from %s (expected %s)",
                self._agent_id, sender, self._operator,
            )
            return
        text = body.strip()
        if not text:
            return

        command = parse_agent_command(text)
        if command is AgentCommand.QUIT:
            self._spawn(self.quit(), "quit")
            return
        if command is AgentCommand.STATUS:
            record = self._registry.get(self._agent_id) or self._record
            self._queue.enqueue(format_status(record))
            return
        if command is AgentCommand.HELP:
            self._queue.enqueue(format_agent_help())
            return

        if self._permissions.resolve(self._agent_id, text):
            return

        try:
            await self._process.send(text)
        except AgentProcessError as exc:
            logger.error("Failed to send message to agent %s: %s", self._agent_id, exc)
            self._queue.enqueue(format_error(f"Failed to send message to agent: {exc.reason}"))

    async def quit(self) -> None:
        """Operator-requested shutdown from inside the agent's chat."""
        if self._stopping:
            return
        logger.info("Operator requested shutdown of agent %s", self._agent_id)
        self._queue.enqueue(SHUTDOWN_MESSAGE)
        self._set_status(AgentStatus.STOPPING)
        self._stopping = True
        self._permissions.cancel_all(self._agent_id)
        try:
            await self._process.terminate()
        except Exception:
            logger.exception("Failed to terminate process for %s", self._agent_id)
        self._set_status(AgentStatus.STOPPED, os_process_id=None)
        await self._teardown(flush=True, reason="user quit")
        if self._provisioner is not None:
            try:
                await self._provisioner.delete(self._agent_id)
            except AgentChatError as exc:
                logger.error("Failed to release account for %s: %s", self._agent_id, exc)

    # ── Subprocess output ──

    def _attach(self, process: AgentProcess) -> None:
        self._process = process
        process.on_exit(functools.partial(self._on_process_exit, process))
        self._pump_task = asyncio.create_task(
            self._pump(process), name=f"output-pump-{self._agent_id}",
        )

    async def _cancel_pump(self) -> None:
        task, self._pump_task = self._pump_task, None
        if task is None or task is asyncio.current_task():
            return
        if not task.done():
            task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _drain_pump(self) -> None:
        """Let the pump read an exited process's stdout to end of stream."""
        task = self._pump_task
        if task is None or task.done() or task is asyncio.current_task():
            return
        done, _ = await asyncio.wait({task}, timeout=PUMP_JOIN_TIMEOUT)
        if not done:
            logger.warning(
                "Output pump for agent %s still reading %.0fs after exit",
                self._agent_id, PUMP_JOIN_TIMEOUT,
            )
        await self._cancel_pump()

    async def _pump(self, process: AgentProcess) -> None:
        new_turn = True
        try:
            async for chunk in process.events():
                if self._stopping:
                    break
                if new_turn and not self._is_turn_complete(chunk):
                    new_turn = False
                    self._transport.send_typing(self._operator)
                if chunk.type == "text":
                    self._queue.enqueue(chunk.content)
                    continue
                self._handle_structured(chunk)
                if self._is_turn_complete(chunk):
                    new_turn = True
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Output pump failed for agent %s", self._agent_id)
            self._queue.enqueue(format_error(f"Agent output failed: {exc}"))
        logger.debug("Output pump finished for agent %s", self._agent_id)

    @staticmethod
    def _is_turn_complete(chunk: OutputChunk) -> bool:
        return chunk.type == "structured" and chunk.data.get("type") == "turn_complete"

    def _handle_structured(self, chunk: OutputChunk) -> None:
        kind = chunk.data.get("type")
        logger.debug("Agent %s structured output: %s", self._agent_id, kind)
        if kind in ("session_started", "turn_complete"):
            token = chunk.data.get("session_id")
            record = self._registry.get(self._agent_id)
            if token and record is not None and record.resume_token != token:
                self._registry.update(self._agent_id, resume_token=token)

    # ── Exit handling ──

    async def _on_process_exit(self, process: AgentProcess, exit_code: int | None) -> None:
        if self._stopping or process is not self._process:
            return
        logger.info("Agent %s process exited with %s", self._agent_id, exit_code)
        # Output written just before exit may still be buffered.
        await self._drain_pump()
        if self._stopping or process is not self._process:
            return
        record = self._registry.get(self._agent_id)
        if record is None:
            return

        if self._recovery is None:
            self._set_status(AgentStatus.STOPPED, os_process_id=None)
            await self._stop_after_exit(f"Process exited with code {exit_code}")
            return

        decision, result = await self._recovery.attempt_auto_recovery(record, exit_code)
        if result is not None and result.success and result.process is not None:
            await self._cancel_pump()
            self._attach(result.process)
            if result.resumed:
                self._queue.enqueue(
                    "The agent process crashed and was restarted; "
                    "the previous session was resumed."
                )
            logger.info("Agent %s recovered in place", self._agent_id)
            return
        reason = result.error if result is not None and result.error else decision.reason
        await self._stop_after_exit(reason)

    async def _stop_after_exit(self, reason: str) -> None:
        self._stopping = True
        self._permissions.cancel_all(self._agent_id)
        self._queue.enqueue(f"Agent stopped: {reason}")
        await self._teardown(flush=True, reason=reason)

    # ── Helpers ──

    def _set_status(self, status: AgentStatus, **changes) -> None:
        record = self._registry.get(self._agent_id)
        if record is None:
            return
        if status is AgentStatus.STOPPING and record.status not in ACTIVE_STATUSES:
            return
        try:
            self._registry.update(self._agent_id, status=status, **changes)
        except ValueError as exc:
            logger.error("Agent %s: %s", self._agent_id, exc)

    def _spawn(self, coro: Awaitable[None], label: str) -> None:
        task = asyncio.ensure_future(coro)
        task.set_name(f"{label}-{self._agent_id}")
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Agent %s background task %s failed: %s",
                self._agent_id, task.get_name(), exc,
            )
