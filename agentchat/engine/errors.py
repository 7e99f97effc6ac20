"""Exception hierarchy for the agent bridge.

One exception per failure mode. Transport hiccups are retried by the
callers that own them; everything here is meant to propagate.
"""
from __future__ import annotations


class AgentChatError(Exception):
    """Base exception for all agentchat errors."""


class AgentNotFoundError(AgentChatError):
    """Registry lookup or update on an id that is not registered."""
    def __init__(self, agent_id: str):
        self.agent_id = agent_id
        super().__init__(f"Agent not found: {agent_id}")


class DuplicateAgentError(AgentChatError):
    """An agent with the same id is already registered."""
    def __init__(self, agent_id: str):
        self.agent_id = agent_id
        super().__init__(f"Agent {agent_id} already exists")


class IdGenerationError(AgentChatError):
    """No unused agent id could be drawn."""
    def __init__(self, attempts: int):
        self.attempts = attempts
        super().__init__(
            f"Failed to generate unique agent ID after {attempts} attempts"
        )


class PermissionIdExhaustedError(AgentChatError):
    """Every candidate permission id collided with a pending one."""
    def __init__(self, pending_count: int):
        self.pending_count = pending_count
        super().__init__(
            f"Cannot allocate permission id ({pending_count} pending)"
        )


class AgentSpawnError(AgentChatError):
    """Failed to start an agent subprocess."""
    def __init__(self, agent_id: str, reason: str):
        self.agent_id = agent_id
        self.reason = reason
        super().__init__(f"Failed to spawn agent {agent_id}: {reason}")


class AgentProcessError(AgentChatError):
    """Operation on an agent subprocess that is no longer usable."""
    def __init__(self, agent_id: str, reason: str):
        self.agent_id = agent_id
        self.reason = reason
        super().__init__(f"Agent {agent_id} process error: {reason}")


class ProvisioningError(AgentChatError):
    """The directory server refused a user create/delete call."""
    def __init__(self, operation: str, jid: str, status: int, detail: str = ""):
        self.operation = operation
        self.jid = jid
        self.status = status
        self.detail = detail
        msg = f"Failed to {operation} user {jid}: HTTP {status}"
        if detail:
            msg += f" {detail}"
        super().__init__(msg)


class TransportError(AgentChatError):
    """A chat message could not be handed to the XMPP session."""
    def __init__(self, jid: str, reason: str):
        self.jid = jid
        self.reason = reason
        super().__init__(f"Transport error for {jid}: {reason}")
