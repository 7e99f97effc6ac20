"""AgentChatServer wiring: create, kill and shut down agents end to end."""

from __future__ import annotations

import asyncio

import pytest

from agentchat.engine.config import ServiceConfig
from agentchat.engine.errors import AgentNotFoundError, AgentSpawnError, TransportError
from agentchat.engine.models import AgentKind, AgentStatus
from agentchat.engine.providers.base import AgentAdapter, AgentProcess
from agentchat.engine.providers.registry import AdapterRegistry
from agentchat.server import AgentChatServer

OPERATOR = "op@example.org"


class FakeTransport:
    def __init__(self, jid: str) -> None:
        self.jid = jid
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


class FakeSessions:
    def __init__(self) -> None:
        self.created: dict[str, FakeTransport] = {}

    def create(self, jid: str, password: str) -> FakeTransport:
        transport = FakeTransport(jid)
        self.created[jid] = transport
        return transport


class FakeProvisioner:
    def __init__(self) -> None:
        self.accounts: set[str] = set()
        self.closed = False

    async def create(self, username: str, password: str) -> str:
        self.accounts.add(username)
        return f"{username}@example.org"

    async def delete(self, username: str) -> None:
        self.accounts.discard(username)

    async def close(self) -> None:
        self.closed = True


class FakeProcess(AgentProcess):
    def __init__(self, agent_id: str) -> None:
        self._agent_id = agent_id
        self._alive = True
        self._done = asyncio.Event()
        self.sent: list[str] = []

    @property
    def agent_id(self):
        return self._agent_id

    @property
    def pid(self):
        return 31337 if self._alive else None

    @property
    def is_alive(self):
        return self._alive

    @property
    def session_token(self):
        return None

    async def send(self, text):
        self.sent.append(text)

    def events(self):
        return self._iter()

    async def _iter(self):
        await self._done.wait()
        return
        yield

    async def terminate(self):
        self._alive = False
        self._done.set()

    def on_exit(self, callback):
        pass


class FakeAdapter(AgentAdapter):
    def __init__(self) -> None:
        self.processes: list[FakeProcess] = []
        self.fail = False

    @property
    def kind(self):
        return AgentKind.CLAUDE_CODE

    def is_available(self):
        return True

    async def spawn(self, config):
        if self.fail:
            raise AgentSpawnError(config.agent_id, "command not found: claude")
        process = FakeProcess(config.agent_id)
        self.processes.append(process)
        return process


@pytest.fixture
def server(tmp_path):
    (tmp_path / "work" / "proj-x").mkdir(parents=True)
    config = ServiceConfig()
    config.xmpp.domain = "example.org"
    config.work.base_path = str(tmp_path / "work")
    config.state_path = str(tmp_path / "state.json")
    adapters = AdapterRegistry()
    adapters.register(FakeAdapter())
    return AgentChatServer(
        config,
        sessions=FakeSessions(),
        provisioner=FakeProvisioner(),
        adapters=adapters,
    )


async def _create(server: AgentChatServer, task: str = "Fix the failing test") -> str:
    conv = server.conversation
    conv.begin(OPERATOR)
    await conv.handle(OPERATOR, "1")
    await conv.handle(OPERATOR, "1")
    return await conv.handle(OPERATOR, task)


@pytest.mark.asyncio
async def test_create_agent_starts_bridge(server):
    reply = await _create(server)

    record = server.registry.list_agents()[0]
    assert reply == f"Agent {record.id} created. Chat at {record.id}@example.org"
    assert record.status is AgentStatus.RUNNING
    assert record.os_process_id == 31337

    bridge = server.bridges[record.id]
    assert bridge.is_running
    assert bridge.process.sent == ["Fix the failing test"]
    assert server.router.get(record.id) is bridge
    assert server.sessions.created[record.session_address].is_connected
    assert record.id in server.provisioner.accounts

    await server.shutdown()


@pytest.mark.asyncio
async def test_spawn_failure_rolls_everything_back(server):
    server.adapters.get(AgentKind.CLAUDE_CODE).fail = True

    reply = await _create(server)

    assert reply.startswith("Failed to create agent:")
    assert "command not found" in reply
    assert len(server.registry) == 0
    assert server.provisioner.accounts == set()
    assert server.bridges == {}
    assert all(not t.is_connected for t in server.sessions.created.values())


@pytest.mark.asyncio
async def test_kill_agent_removes_everything(server):
    await _create(server)
    agent_id = server.registry.list_agents()[0].id
    transport = server.sessions.created[f"{agent_id}@example.org"]

    await server.kill_agent(agent_id)

    assert agent_id not in server.registry
    assert agent_id not in server.bridges
    assert agent_id not in server.provisioner.accounts
    assert not server.router.has(agent_id)
    assert not transport.is_connected

    with pytest.raises(AgentNotFoundError):
        await server.kill_agent(agent_id)


@pytest.mark.asyncio
async def test_agent_chat_send_without_bridge_fails(tmp_path):
    config = ServiceConfig()
    config.state_path = str(tmp_path / "state.json")
    server = AgentChatServer(
        config, sessions=FakeSessions(), provisioner=FakeProvisioner(),
        adapters=AdapterRegistry(),
    )
    with pytest.raises(TransportError):
        await server._send_to_agent_chat("ghost-goat", "hello")


@pytest.mark.asyncio
async def test_shutdown_stops_bridges_and_keeps_records(server):
    await _create(server)
    agent_id = server.registry.list_agents()[0].id

    await server.shutdown()
    await server.shutdown()

    assert server.bridges == {}
    assert server.registry.require(agent_id).status is AgentStatus.STOPPED
    assert server.provisioner.closed
    assert not server.sessions.created[server.config.manager_jid].is_connected
