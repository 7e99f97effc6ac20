"""Chat command grammar for agent and manager sessions."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum


class AgentCommand(str, Enum):
    QUIT = "quit"
    STATUS = "status"
    HELP = "help"


class ManagerCommand(str, Enum):
    NEW = "new"
    LIST = "list"
    KILL = "kill"
    KILL_ALL = "kill-all"
    STATUS = "status"
    REPOS = "repos"
    HELP = "help"
    CANCEL = "cancel"


_AGENT_COMMANDS: dict[str, AgentCommand] = {
    "quit": AgentCommand.QUIT,
    "exit": AgentCommand.QUIT,
    "/quit": AgentCommand.QUIT,
    "status": AgentCommand.STATUS,
    "/status": AgentCommand.STATUS,
    "help": AgentCommand.HELP,
    "/help": AgentCommand.HELP,
    "?": AgentCommand.HELP,
}

_MANAGER_WORDS: dict[str, ManagerCommand] = {
    "new": ManagerCommand.NEW,
    "new agent": ManagerCommand.NEW,
    "create": ManagerCommand.NEW,
    "list": ManagerCommand.LIST,
    "agents": ManagerCommand.LIST,
    "kill": ManagerCommand.KILL,
    "kill-all": ManagerCommand.KILL_ALL,
    "killall": ManagerCommand.KILL_ALL,
    "status": ManagerCommand.STATUS,
    "repos": ManagerCommand.REPOS,
    "help": ManagerCommand.HELP,
    "?": ManagerCommand.HELP,
    "cancel": ManagerCommand.CANCEL,
}

# Optional 4-hex permission id, then an approve/deny word.
PERMISSION_REPLY_RE = re.compile(
    r"^(?:([a-f0-9]{4})\s+)?(yes|y|ok|approve|allow|no|n|deny|reject)$"
)
APPROVE_WORDS = frozenset({"yes", "y", "ok", "approve", "allow"})


@dataclass
class ParsedManagerCommand:
    command: ManagerCommand
    args: list[str]
    raw: str


@dataclass(frozen=True)
class PermissionReply:
    approved: bool
    request_id: str | None = None


def parse_agent_command(text: str) -> AgentCommand | None:
    """Reserved per-agent command, or None for anything else."""
    return _AGENT_COMMANDS.get(text.strip().lower())


def parse_manager_command(text: str) -> ParsedManagerCommand | None:
    """Parse a manager-session command such as ``kill swift-fox``.

    Returns None when the text is not a known command.
    """
    stripped = text.strip()
    lowered = stripped.lower()
    if lowered in _MANAGER_WORDS:
        return ParsedManagerCommand(_MANAGER_WORDS[lowered], [], stripped)
    parts = stripped.split()
    if not parts:
        return None
    command = _MANAGER_WORDS.get(parts[0].lower())
    if command in (ManagerCommand.KILL, ManagerCommand.STATUS):
        return ParsedManagerCommand(command, parts[1:], stripped)
    return None


def parse_permission_reply(text: str) -> PermissionReply | None:
    """Parse ``yes`` / ``n`` / ``a1b2 approve`` style replies."""
    match = PERMISSION_REPLY_RE.match(text.strip().lower())
    if match is None:
        return None
    return PermissionReply(
        approved=match.group(2) in APPROVE_WORDS,
        request_id=match.group(1),
    )


AGENT_COMMAND_HELP: dict[str, str] = {
    "quit/exit": "Shut down this agent",
    "status": "Show agent status",
    "help/?": "Show this help",
}

MANAGER_COMMAND_HELP: dict[str, str] = {
    "new": "Create a new agent",
    "list": "List all agents",
    "kill <id>": "Stop and delete an agent",
    "kill-all": "Stop and delete all agents",
    "status <id>": "Show agent status",
    "repos": "List available repositories",
    "cancel": "Abort agent creation",
    "help": "Show this help",
}
