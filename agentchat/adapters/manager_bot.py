"""The operator's manager chat session.

Commands: ``new``, ``list``, ``kill <id>``, ``kill-all``, ``status <id>``,
``repos``, ``help``. While an operator is inside the create-agent
dialogue, their messages go to ManagerConversation instead.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from agentchat.engine.conversation import ManagerConversation
from agentchat.engine.errors import AgentChatError
from agentchat.engine.registry import AgentRegistry
from agentchat.shared.commands import ManagerCommand, parse_manager_command
from agentchat.shared.formatters import (
    format_agent_list,
    format_detailed_status,
    format_manager_help,
    format_repo_list,
)

from .xmpp_client import ChatTransport

logger = logging.getLogger(__name__)

# Signature: async def kill(agent_id) -> None; raises AgentNotFoundError
KillFn = Callable[[str], Awaitable[None]]

UNKNOWN_COMMAND_MESSAGE = "Unknown command. Type 'help' to see available commands."


class ManagerBot:
    """Command handler bound to the manager's chat account."""

    def __init__(
        self,
        transport: ChatTransport,
        conversation: ManagerConversation,
        registry: AgentRegistry,
        kill_agent: KillFn,
    ) -> None:
        self._transport = transport
        self._conversation = conversation
        self._registry = registry
        self._kill_agent = kill_agent

    @property
    def jid(self) -> str:
        return self._transport.jid

    async def start(self) -> None:
        self._transport.on_message(self.handle_message)
        await self._transport.connect()
        logger.info("Manager bot online as %s", self._transport.jid)

    async def stop(self) -> None:
        await self._transport.disconnect()
        logger.info("Manager bot stopped")

    async def handle_message(self, sender: str, body: str) -> None:
        operator = sender.split("/", 1)[0]
        text = body.strip()
        if not text:
            return
        logger.info("Manager received from %s: %s", operator, text)
        try:
            reply = await self._dispatch(operator, text)
        except Exception as exc:
            logger.exception("Manager command failed for %s", operator)
            reply = f"Error: {exc}"
        if reply:
            await self._reply(operator, reply)

    async def _dispatch(self, operator: str, text: str) -> str:
        if self._conversation.is_active(operator):
            return await self._conversation.handle(operator, text)

        parsed = parse_manager_command(text)
        if parsed is None:
            return UNKNOWN_COMMAND_MESSAGE

        command = parsed.command
        if command is ManagerCommand.NEW:
            return self._conversation.begin(operator)
        if command is ManagerCommand.CANCEL:
            return self._conversation.cancel(operator)
        if command is ManagerCommand.LIST:
            return format_agent_list(self._registry.list_agents())
        if command is ManagerCommand.REPOS:
            repos = self._conversation.repos()
            if not repos:
                return "No repositories found."
            return "Available repositories:\n" + format_repo_list(repos)
        if command is ManagerCommand.HELP:
            return format_manager_help()
        if command is ManagerCommand.STATUS:
            if not parsed.args:
                return "Usage: status <agent-id>"
            record = self._registry.get(parsed.args[0])
            if record is None:
                return f"Agent not found: {parsed.args[0]}"
            return format_detailed_status(record)
        if command is ManagerCommand.KILL:
            if not parsed.args:
                return "Usage: kill <agent-id>"
            return await self._kill(parsed.args[0])
        if command is ManagerCommand.KILL_ALL:
            return await self._kill_all()
        return UNKNOWN_COMMAND_MESSAGE

    async def _kill(self, agent_id: str) -> str:
        if agent_id not in self._registry:
            return f"Agent not found: {agent_id}"
        try:
            await self._kill_agent(agent_id)
        except AgentChatError as exc:
            logger.error("Failed to kill agent %s: %s", agent_id, exc)
            return f"Failed to kill agent {agent_id}: {exc}"
        return f"Agent {agent_id} killed and removed."

    async def _kill_all(self) -> str:
        agent_ids = [r.id for r in self._registry.list_agents()]
        if not agent_ids:
            return "No agents to kill."
        results = await asyncio.gather(
            *(self._kill_agent(agent_id) for agent_id in agent_ids),
            return_exceptions=True,
        )
        failed = [
            f"{agent_id}: {result}"
            for agent_id, result in zip(agent_ids, results)
            if isinstance(result, BaseException)
        ]
        if failed:
            logger.error("kill-all failures: %s", "; ".join(failed))
            return "Some agents could not be killed:\n" + "\n".join(failed)
        return f"All agents killed ({len(agent_ids)})."

    async def _reply(self, operator: str, text: str) -> None:
        try:
            await self._transport.send_message(operator, text)
        except Exception as exc:
            logger.error("Failed to reply to %s: %s", operator, exc)
