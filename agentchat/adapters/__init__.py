"""Adapters package: XMPP sessions, account provisioning, and the
per-agent and manager chat bridges."""
from __future__ import annotations

__all__ = [
    "AgentBridge",
    "ManagerBot",
    "XmppProvisioner",
    "XmppSession",
    "XmppSessionFactory",
]

from agentchat.adapters.xmpp_client import XmppSession, XmppSessionFactory
from agentchat.adapters.provisioning import XmppProvisioner
from agentchat.adapters.agent_bridge import AgentBridge
from agentchat.adapters.manager_bot import ManagerBot
