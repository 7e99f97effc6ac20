"""Abstract base for coding-agent subprocess adapters.

Each adapter wraps one agent CLI. ``spawn`` starts a subprocess bound
to a work directory and returns an AgentProcess, which the bridge uses
to send user turns and consume decoded output events.
"""
from __future__ import annotations

import abc
import logging
import shutil
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass

from ..models import AgentKind, OutputChunk

logger = logging.getLogger(__name__)

# Receives the normalised exit code; None means killed on purpose.
ExitCallback = Callable[[int | None], Awaitable[None] | None]


@dataclass
class SpawnConfig:
    """Everything an adapter needs to start one agent subprocess."""
    agent_id: str
    work_directory: str
    tool_server_url: str
    resume_token: str | None = None
    initial_task: str | None = None


class AgentProcess(abc.ABC):
    """Handle to one running agent subprocess."""

    @property
    @abc.abstractmethod
    def agent_id(self) -> str:
        """Agent this process belongs to."""

    @property
    @abc.abstractmethod
    def pid(self) -> int | None:
        """OS process id, or None once the process is gone."""

    @property
    @abc.abstractmethod
    def is_alive(self) -> bool:
        """True until the OS process has exited."""

    @property
    @abc.abstractmethod
    def session_token(self) -> str | None:
        """Latest resume token reported by the subprocess."""

    @abc.abstractmethod
    async def send(self, text: str) -> None:
        """Send one user turn.

        Turns are serialised: a turn sent while another is in flight is
        queued until the current one completes.
        """

    @abc.abstractmethod
    def events(self) -> AsyncIterator[OutputChunk]:
        """Single-consumer stream of decoded output.

        Ends when the subprocess closes stdout. Calling it a second
        time raises RuntimeError.
        """

    @abc.abstractmethod
    async def terminate(self) -> None:
        """Stop the subprocess. Idempotent; returns once it has exited."""

    @abc.abstractmethod
    def on_exit(self, callback: ExitCallback) -> None:
        """Register a callback for the (normalised) exit code."""


class AgentAdapter(abc.ABC):
    """Factory for AgentProcess instances of one agent kind."""

    @property
    @abc.abstractmethod
    def kind(self) -> AgentKind:
        """Agent kind this adapter spawns."""

    @abc.abstractmethod
    async def spawn(self, config: SpawnConfig) -> AgentProcess:
        """Start a subprocess. Raises AgentSpawnError on failure."""

    @abc.abstractmethod
    def is_available(self) -> bool:
        """Whether the backing CLI is installed."""

    def resolve_command(self, command: str) -> str:
        """Absolute path of ``command`` when on PATH, else the raw value.

        Keeping the raw value lets spawn errors name the configured
        command.
        """
        resolved = shutil.which(command)
        if resolved is None:
            logger.debug("Command %s not found on PATH", command)
            return command
        return resolved
