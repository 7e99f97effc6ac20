"""ManagerBot command dispatch over a fake chat transport."""

from __future__ import annotations

import pytest

from agentchat.adapters.manager_bot import UNKNOWN_COMMAND_MESSAGE, ManagerBot
from agentchat.engine.conversation import TYPE_PROMPT, ManagerConversation
from agentchat.engine.errors import AgentNotFoundError, ProvisioningError
from agentchat.engine.models import AgentRecord, AgentStatus
from agentchat.engine.registry import AgentRegistry
from agentchat.shared.services.persistence import StatePersistence

OPERATOR = "op@example.org"


class FakeTransport:
    def __init__(self) -> None:
        self.jid = "manager@example.org"
        self.is_connected = False
        self.handler = None
        self.sent: list[tuple[str, str]] = []

    def on_message(self, handler) -> None:
        self.handler = handler

    async def send_message(self, to: str, body: str) -> None:
        self.sent.append((to, body))

    def send_typing(self, to: str) -> None:
        pass

    async def connect(self) -> None:
        self.is_connected = True

    async def disconnect(self) -> None:
        self.is_connected = False


class FakeProvisioner:
    async def create(self, username: str, password: str) -> str:
        return f"{username}@example.org"

    async def delete(self, username: str) -> None:
        pass


class Killer:
    """Stands in for AgentChatServer.kill_agent."""

    def __init__(self, registry: AgentRegistry, failing: set[str] | None = None) -> None:
        self.registry = registry
        self.failing = failing or set()
        self.killed: list[str] = []

    async def __call__(self, agent_id: str) -> None:
        if agent_id not in self.registry:
            raise AgentNotFoundError(agent_id)
        if agent_id in self.failing:
            raise ProvisioningError("delete", f"{agent_id}@example.org", 500)
        self.killed.append(agent_id)
        self.registry.remove(agent_id)


@pytest.fixture
def env(tmp_path):
    work = tmp_path / "work"
    (work / "proj-x").mkdir(parents=True)
    registry = AgentRegistry(StatePersistence(tmp_path / "state.json"))
    conversation = ManagerConversation(
        registry, FakeProvisioner(),
        work_base_path=work,
        password_factory=lambda: "pw",
    )
    transport = FakeTransport()
    killer = Killer(registry)
    bot = ManagerBot(transport, conversation, registry, killer)
    return bot, transport, registry, killer


def _add(registry: AgentRegistry, agent_id: str, status=AgentStatus.RUNNING) -> None:
    registry.register(AgentRecord(
        id=agent_id,
        session_address=f"{agent_id}@example.org",
        work_directory="/work/proj-x",
        created_by=OPERATOR,
        status=status,
    ))


async def _ask(bot: ManagerBot, transport: FakeTransport, text: str) -> str:
    before = len(transport.sent)
    await bot.handle_message(OPERATOR + "/laptop", text)
    assert len(transport.sent) == before + 1
    to, body = transport.sent[-1]
    assert to == OPERATOR
    return body


@pytest.mark.asyncio
async def test_start_connects_and_registers_handler(env):
    bot, transport, _, _ = env
    await bot.start()
    assert transport.is_connected
    assert transport.handler == bot.handle_message
    await bot.stop()
    assert not transport.is_connected


@pytest.mark.asyncio
async def test_help_and_unknown(env):
    bot, transport, _, _ = env
    assert (await _ask(bot, transport, "help")).startswith("Manager Commands:")
    assert await _ask(bot, transport, "launch the missiles") == UNKNOWN_COMMAND_MESSAGE


@pytest.mark.asyncio
async def test_blank_message_gets_no_reply(env):
    bot, transport, _, _ = env
    await bot.handle_message(OPERATOR, "   ")
    assert transport.sent == []


@pytest.mark.asyncio
async def test_list_and_status(env):
    bot, transport, registry, _ = env
    assert await _ask(bot, transport, "list") == "No agents registered."

    _add(registry, "swift-fox")
    assert "swift-fox - running - proj-x" in await _ask(bot, transport, "list")

    status = await _ask(bot, transport, "status swift-fox")
    assert "Agent: swift-fox" in status
    assert "JID: swift-fox@example.org" in status
    assert await _ask(bot, transport, "status") == "Usage: status <agent-id>"
    assert await _ask(bot, transport, "status ghost-goat") == "Agent not found: ghost-goat"


@pytest.mark.asyncio
async def test_repos(env):
    bot, transport, _, _ = env
    assert await _ask(bot, transport, "repos") == "Available repositories:\n[1] proj-x"


@pytest.mark.asyncio
async def test_new_routes_following_messages_to_dialogue(env):
    bot, transport, _, _ = env
    assert await _ask(bot, transport, "new") == TYPE_PROMPT
    # "help" is a dialogue answer now, not a command.
    assert (await _ask(bot, transport, "help")).startswith("Invalid selection")
    assert (await _ask(bot, transport, "1")).startswith("Available repos:")
    assert await _ask(bot, transport, "cancel") == "Agent creation cancelled."
    assert (await _ask(bot, transport, "help")).startswith("Manager Commands:")


@pytest.mark.asyncio
async def test_kill(env):
    bot, transport, registry, killer = env
    _add(registry, "swift-fox")

    assert await _ask(bot, transport, "kill") == "Usage: kill <agent-id>"
    assert await _ask(bot, transport, "kill ghost-goat") == "Agent not found: ghost-goat"
    assert await _ask(bot, transport, "kill swift-fox") == "Agent swift-fox killed and removed."
    assert killer.killed == ["swift-fox"]
    assert "swift-fox" not in registry


@pytest.mark.asyncio
async def test_kill_failure_is_reported(env):
    bot, transport, registry, killer = env
    _add(registry, "swift-fox")
    killer.failing.add("swift-fox")

    reply = await _ask(bot, transport, "kill swift-fox")
    assert reply.startswith("Failed to kill agent swift-fox:")
    assert "HTTP 500" in reply


@pytest.mark.asyncio
async def test_kill_all(env):
    bot, transport, registry, killer = env
    assert await _ask(bot, transport, "kill-all") == "No agents to kill."

    _add(registry, "swift-fox")
    _add(registry, "bold-bear", status=AgentStatus.STOPPED)
    assert await _ask(bot, transport, "kill-all") == "All agents killed (2)."
    assert sorted(killer.killed) == ["bold-bear", "swift-fox"]
    assert len(registry) == 0


@pytest.mark.asyncio
async def test_kill_all_partial_failure(env):
    bot, transport, registry, killer = env
    _add(registry, "swift-fox")
    _add(registry, "bold-bear")
    killer.failing.add("bold-bear")

    reply = await _ask(bot, transport, "killall")
    assert reply.startswith("Some agents could not be killed:")
    assert "bold-bear:" in reply
    assert killer.killed == ["swift-fox"]


@pytest.mark.asyncio
async def test_unexpected_error_is_replied(env):
    bot, transport, registry, _ = env

    def broken():
        raise RuntimeError("disk on fire")

    registry.list_agents = broken
    assert await _ask(bot, transport, "list") == "Error: disk on fire"
