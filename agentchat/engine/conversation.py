"""Manager-side "create new agent" dialogue.

One ConversationState per operator JID walks through
idle -> awaiting_type -> awaiting_repo -> awaiting_task -> idle.
Every call returns the reply text for the operator; the manager bot
decides how to deliver it.

Finishing the dialogue is all-or-nothing from the operator's side:
allocate an id, provision the chat account, register the record, then
await every agent-created handler. If any step fails, the earlier ones
are undone and the dialogue resets to idle.
"""
from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from .models import AgentKind, AgentRecord, ConversationState, ConversationStep
from .registry import AgentRegistry

logger = logging.getLogger(__name__)

CANCEL_WORD = "cancel"

TYPE_PROMPT = "What type of agent?\n[1] Claude Code"
TASK_PROMPT = "Great! What's the initial task for the agent?"
CANCELLED_MESSAGE = "Agent creation cancelled."
INVALID_TYPE_MESSAGE = (
    "Invalid selection. Please enter '1' for Claude Code or type 'cancel' to abort."
)
INVALID_REPO_MESSAGE = (
    "Invalid selection. Please enter a number from the list or type 'cancel' to abort."
)
EMPTY_TASK_MESSAGE = (
    "Please describe the initial task, or type 'cancel' to abort."
)


@dataclass
class AgentCreatedEvent:
    record: AgentRecord
    initial_task: str
    # Chat account password; the composition root logs the agent in with it.
    password: str


AgentCreatedHandler = Callable[[AgentCreatedEvent], Awaitable[None]]


class AccountProvisioner(Protocol):
    async def create(self, username: str, password: str) -> str: ...

    async def delete(self, username: str) -> None: ...


def list_repos(base_path: Path) -> list[str]:
    """Immediate, non-hidden subdirectories of ``base_path``, sorted."""
    try:
        entries = list(base_path.iterdir())
    except OSError as exc:
        logger.error("Failed to read work base path %s: %s", base_path, exc)
        return []
    return sorted(
        e.name for e in entries
        if e.is_dir() and not e.name.startswith(".")
    )


def format_repo_prompt(repos: list[str]) -> str:
    listing = "\n".join(f"[{i}] {name}" for i, name in enumerate(repos, start=1))
    return f"Available repos:\n{listing}\n\nSelect a number or type a repo name:"


class ManagerConversation:
    """Per-operator state machine for agent creation."""

    def __init__(
        self,
        registry: AgentRegistry,
        provisioner: AccountProvisioner,
        *,
        work_base_path: Path,
        password_factory: Callable[[], str],
        max_concurrent: int = 5,
    ) -> None:
        self._registry = registry
        self._provisioner = provisioner
        self._work_base = work_base_path
        self._password_factory = password_factory
        self._max_concurrent = max_concurrent
        self._states: dict[str, ConversationState] = {}
        self._handlers: list[AgentCreatedHandler] = []

    def on_agent_created(self, handler: AgentCreatedHandler) -> None:
        self._handlers.append(handler)

    def state_for(self, operator: str) -> ConversationState:
        return self._states.setdefault(operator, ConversationState())

    def is_active(self, operator: str) -> bool:
        state = self._states.get(operator)
        return state is not None and state.step != ConversationStep.IDLE

    def repos(self) -> list[str]:
        return list_repos(self._work_base)

    # ── Dialogue ──

    def begin(self, operator: str) -> str:
        state = self.state_for(operator)
        running = len(self._registry.active())
        if running >= self._max_concurrent:
            state.reset()
            return (
                f"Maximum number of concurrent agents reached "
                f"({self._max_concurrent}). Kill an agent before creating a new one."
            )
        state.reset()
        state.step = ConversationStep.AWAITING_TYPE
        return TYPE_PROMPT

    def cancel(self, operator: str) -> str:
        state = self.state_for(operator)
        if state.step == ConversationStep.IDLE:
            return "Nothing to cancel."
        state.reset()
        logger.info("Agent creation cancelled by %s", operator)
        return CANCELLED_MESSAGE

    async def handle(self, operator: str, text: str) -> str:
        """Feed one message to an in-progress dialogue."""
        state = self.state_for(operator)
        text = text.strip()
        if text.lower() == CANCEL_WORD:
            return self.cancel(operator)

        if state.step == ConversationStep.AWAITING_TYPE:
            return self._select_type(state, text)
        if state.step == ConversationStep.AWAITING_REPO:
            return self._select_repo(state, text)
        if state.step == ConversationStep.AWAITING_TASK:
            return await self._complete(operator, state, text)
        return self.begin(operator)

    def _select_type(self, state: ConversationState, text: str) -> str:
        if text != "1" and "claude" not in text.lower():
            return INVALID_TYPE_MESSAGE
        repos = self.repos()
        if not repos:
            state.reset()
            return (
                f"No repositories found in {self._work_base}. "
                "Please add some repositories first."
            )
        state.agent_kind = AgentKind.CLAUDE_CODE
        state.repos = repos
        state.step = ConversationStep.AWAITING_REPO
        return format_repo_prompt(repos)

    def _select_repo(self, state: ConversationState, text: str) -> str:
        repos = state.repos or self.repos()
        selected: str | None = None
        if text.isdigit() and 1 <= int(text) <= len(repos):
            selected = repos[int(text) - 1]
        else:
            lowered = text.lower()
            selected = next((r for r in repos if r.lower() == lowered), None)
        if selected is None:
            return INVALID_REPO_MESSAGE
        state.repo = selected
        state.step = ConversationStep.AWAITING_TASK
        return TASK_PROMPT

    async def _complete(self, operator: str, state: ConversationState, task: str) -> str:
        if not task:
            return EMPTY_TASK_MESSAGE
        try:
            record = await self.create_agent(
                operator,
                kind=state.agent_kind or AgentKind.CLAUDE_CODE,
                repo=state.repo or "",
                task=task,
            )
        except Exception as exc:
            logger.error("Failed to create agent for %s: %s", operator, exc)
            return f"Failed to create agent: {exc}"
        finally:
            state.reset()
        return f"Agent {record.id} created. Chat at {record.session_address}"

    # ── Creation ──

    async def create_agent(
        self, operator: str, *, kind: AgentKind, repo: str, task: str,
    ) -> AgentRecord:
        """Allocate, provision, register and announce one agent.

        Undoes completed steps and re-raises if a later one fails.
        """
        # Reserved until registered; released below on every other path.
        agent_id = self._registry.generate_id()
        work_dir = self._work_base / repo
        password = self._password_factory()
        provisioned = registered = False
        try:
            jid = await self._provisioner.create(agent_id, password)
            provisioned = True
            record = self._registry.register(AgentRecord(
                id=agent_id,
                session_address=jid,
                work_directory=str(work_dir),
                created_by=operator,
                kind=kind,
            ))
            registered = True
            logger.info("Agent registered: %s (%s) in %s", agent_id, jid, work_dir)
            event = AgentCreatedEvent(record=record, initial_task=task, password=password)
            for handler in list(self._handlers):
                await handler(event)
        except Exception:
            await self._rollback(agent_id, provisioned=provisioned, registered=registered)
            raise
        finally:
            self._registry.release(agent_id)
        return self._registry.get(agent_id) or record

    async def _rollback(self, agent_id: str, *, provisioned: bool, registered: bool) -> None:
        if not (provisioned or registered):
            return
        logger.warning("Rolling back creation of agent %s", agent_id)
        if registered and agent_id in self._registry:
            self._registry.remove(agent_id)
        if provisioned:
            try:
                await self._provisioner.delete(agent_id)
            except Exception as exc:
                logger.error("Failed to release account for %s: %s", agent_id, exc)
