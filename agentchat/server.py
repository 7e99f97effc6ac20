"""Process-wide composition root.

AgentChatServer builds every long-lived component from one
ServiceConfig, boots them in order, starts a bridge for each newly
created agent, and shuts everything down on SIGINT/SIGTERM.
"""
from __future__ import annotations

import asyncio
import logging
import signal

from agentchat.adapters.agent_bridge import AgentBridge
from agentchat.adapters.manager_bot import ManagerBot
from agentchat.adapters.provisioning import XmppProvisioner, generate_password
from agentchat.adapters.xmpp_client import XmppSessionFactory
from agentchat.engine.config import ServiceConfig
from agentchat.engine.conversation import AgentCreatedEvent, ManagerConversation
from agentchat.engine.errors import AgentNotFoundError, TransportError
from agentchat.engine.mcp_server.router import ToolRouter
from agentchat.engine.mcp_server.server import ToolServer
from agentchat.engine.models import AgentKind, AgentStatus
from agentchat.engine.output_queue import OutputQueue
from agentchat.engine.permissions import PermissionEngine
from agentchat.engine.providers.base import SpawnConfig
from agentchat.engine.providers.claude_code import ClaudeCodeAdapter
from agentchat.engine.providers.registry import AdapterRegistry
from agentchat.engine.recovery import RecoveryManager
from agentchat.engine.registry import ACTIVE_STATUSES, AgentRegistry
from agentchat.shared.services.persistence import StatePersistence
from agentchat.shared.services.process_cleanup import reap_stale_agents

logger = logging.getLogger(__name__)


class AgentChatServer:
    """Owns the registry, tool server, manager bot and all bridges."""

    def __init__(
        self,
        config: ServiceConfig,
        *,
        sessions: XmppSessionFactory | None = None,
        provisioner: XmppProvisioner | None = None,
        adapters: AdapterRegistry | None = None,
    ) -> None:
        self.config = config
        xmpp = config.xmpp
        self.persistence = StatePersistence(config.resolved_state_path)
        self.registry = AgentRegistry(self.persistence)
        self.router = ToolRouter()
        self.tool_server = ToolServer(
            self.router, config.tool_server.host, config.tool_server.port,
        )
        if adapters is None:
            adapters = AdapterRegistry()
            adapters.register(ClaudeCodeAdapter(
                config.agents.command,
                terminate_grace=config.agents.terminate_grace_seconds,
            ))
        self.adapters = adapters
        self.sessions = sessions or XmppSessionFactory(
            xmpp.host, xmpp.port,
            use_tls=xmpp.tls,
            verify_certificates=xmpp.verify_certificates,
        )
        self.provisioner = provisioner or XmppProvisioner(
            xmpp.admin_base_url,
            xmpp.effective_domain,
            xmpp.admin_username,
            xmpp.admin_password,
        )
        self.permissions = PermissionEngine(
            self.registry,
            self._send_to_agent_chat,
            timeout_seconds=config.tool_server.permission_timeout_seconds,
        )
        self.recovery = RecoveryManager(
            self.adapters,
            self.registry,
            config.tool_server.url,
            notify=self._send_to_agent_chat,
            max_attempts=config.recovery.max_attempts,
            attempt_window=config.recovery.attempt_window_seconds,
        )
        self.conversation = ManagerConversation(
            self.registry,
            self.provisioner,
            work_base_path=config.work.resolved_base_path,
            password_factory=generate_password,
            max_concurrent=config.agents.max_concurrent,
        )
        self.conversation.on_agent_created(self._on_agent_created)
        self.manager = ManagerBot(
            self.sessions.create(config.manager_jid, config.manager.password),
            self.conversation,
            self.registry,
            self.kill_agent,
        )
        self._bridges: dict[str, AgentBridge] = {}
        self._shutting_down = False

    @property
    def bridges(self) -> dict[str, AgentBridge]:
        return dict(self._bridges)

    # ── Boot / shutdown ──

    async def start(self) -> None:
        stale = self.registry.load()
        if stale:
            reaped = await asyncio.to_thread(
                reap_stale_agents, stale, command=self.config.agents.command,
            )
            if reaped:
                logger.warning("Reaped %d stale agent process(es) at startup", len(reaped))
        if not self.adapters.get(AgentKind.CLAUDE_CODE).is_available():
            logger.warning(
                "Agent command %r not found on PATH; spawns will fail",
                self.config.agents.command,
            )
        await self.tool_server.start()
        await self.manager.start()
        logger.info(
            "agentchat ready: manager=%s tool_server=%s work=%s",
            self.config.manager_jid, self.tool_server.url,
            self.config.work.resolved_base_path,
        )

    async def shutdown(self) -> None:
        if self._shutting_down:
            return
        self._shutting_down = True
        logger.info("Shutting down (%d active bridge(s))", len(self._bridges))
        bridges = list(self._bridges.values())
        await asyncio.gather(
            *(self._stop_bridge(b, reason="service shutdown") for b in bridges),
            return_exceptions=True,
        )
        for step in (self.manager.stop, self.tool_server.stop, self.provisioner.close):
            try:
                await step()
            except Exception:
                logger.exception("Shutdown step %s failed", getattr(step, "__qualname__", step))
        logger.info("Shutdown complete")

    async def run(self) -> None:
        """Run until SIGINT or SIGTERM."""
        loop = asyncio.get_running_loop()
        stop = asyncio.Event()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop.set)
        try:
            await self.start()
            await stop.wait()
            logger.info("Signal received, stopping")
        finally:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)
            await self.shutdown()

    # ── Agents ──

    async def _on_agent_created(self, event: AgentCreatedEvent) -> None:
        record = event.record
        transport = self.sessions.create(record.session_address, event.password)
        await transport.connect()
        try:
            adapter = self.adapters.get(record.kind)
            process = await adapter.spawn(SpawnConfig(
                agent_id=record.id,
                work_directory=record.work_directory,
                tool_server_url=self.tool_server.url,
            ))
        except Exception:
            await transport.disconnect()
            raise

        record = self.registry.set_status(
            record.id, AgentStatus.RUNNING,
            os_process_id=process.pid,
            resume_token=process.session_token,
        )
        output = self.config.output
        queue = OutputQueue(
            transport.send_message,
            record.created_by,
            max_message_size=output.max_message_size,
            rate_limit=output.rate_limit,
            rate_window=output.rate_window_seconds,
            retry_delay=output.retry_delay_seconds,
            name=record.id,
        )
        bridge = AgentBridge(
            record, process, transport, queue,
            registry=self.registry,
            permissions=self.permissions,
            router=self.router,
            recovery=self.recovery,
            provisioner=self.provisioner,
            on_stopped=self._on_bridge_stopped,
            flush_timeout=output.flush_timeout_seconds,
        )
        self._bridges[record.id] = bridge
        try:
            await bridge.start(initial_task=event.initial_task)
        except Exception:
            self._bridges.pop(record.id, None)
            await bridge.stop(flush=False, reason="start failed")
            raise

    async def _on_bridge_stopped(self, agent_id: str, reason: str) -> None:
        self._bridges.pop(agent_id, None)
        logger.info("Bridge for agent %s stopped: %s", agent_id, reason)

    async def _send_to_agent_chat(self, agent_id: str, text: str) -> None:
        bridge = self._bridges.get(agent_id)
        if bridge is None or not bridge.is_running:
            raise TransportError(agent_id, "no active chat session for agent")
        await bridge.send_to_operator(text)

    async def _stop_bridge(self, bridge: AgentBridge, *, reason: str) -> None:
        record = self.registry.get(bridge.agent_id)
        if record is not None and record.status in ACTIVE_STATUSES:
            self.registry.set_status(bridge.agent_id, AgentStatus.STOPPING)
        await bridge.stop(flush=True, reason=reason)
        if bridge.agent_id in self.registry:
            self.registry.set_status(bridge.agent_id, AgentStatus.STOPPED, os_process_id=None)

    async def kill_agent(self, agent_id: str) -> None:
        """Stop an agent, release its chat account and forget it."""
        if agent_id not in self.registry:
            raise AgentNotFoundError(agent_id)
        bridge = self._bridges.get(agent_id)
        if bridge is not None:
            await self._stop_bridge(bridge, reason="killed")
        await self.provisioner.delete(agent_id)
        self.registry.remove(agent_id)
        self.recovery.forget(agent_id)
        logger.info("Agent %s killed", agent_id)
