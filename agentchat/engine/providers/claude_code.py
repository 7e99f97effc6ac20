"""Claude Code CLI adapter.

Runs ``claude -p`` in stream-json mode: user turns go in on stdin as
JSON lines, events come back on stdout as JSON lines. Permission
prompts do NOT travel over stdout; the CLI calls the shared tool
server instead (``--permission-prompt-tool``), identified by the
``X-Agent-ID`` header written into its per-agent MCP config.
"""
from __future__ import annotations

import asyncio
import contextlib
import inspect
import json
import logging
import os
import shutil
import tempfile
from collections import deque
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from agentchat.shared.services.durable_write import atomic_write_json

from ..errors import AgentProcessError, AgentSpawnError
from ..models import AgentKind, OutputChunk
from .base import AgentAdapter, AgentProcess, ExitCallback, SpawnConfig

logger = logging.getLogger(__name__)

PERMISSION_TOOL = "mcp__agent_chat__permission_prompt"
MCP_SERVER_NAME = "agent_chat"
_READ_SIZE = 64 * 1024


class JsonLineDecoder:
    """Incremental newline-delimited JSON decoder.

    Bytes are buffered across ``feed`` calls, so a line split over two
    reads decodes once both halves arrive. Blank, malformed or
    non-object lines are logged and skipped.
    """

    def __init__(self, label: str = "") -> None:
        self._buffer = b""
        self._label = label
        self.skipped = 0

    def feed(self, data: bytes) -> list[dict[str, Any]]:
        self._buffer += data
        *lines, self._buffer = self._buffer.split(b"\n")
        return [obj for obj in map(self._decode, lines) if obj is not None]

    def flush(self) -> list[dict[str, Any]]:
        """Decode a trailing line that never got its newline."""
        rest, self._buffer = self._buffer, b""
        obj = self._decode(rest)
        return [obj] if obj is not None else []

    def _decode(self, raw: bytes) -> dict[str, Any] | None:
        line = raw.strip()
        if not line:
            return None
        try:
            obj = json.loads(line.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            self.skipped += 1
            logger.warning(
                "[%s] skipping malformed output line (%s): %.200r",
                self._label, exc, line,
            )
            return None
        if not isinstance(obj, dict):
            self.skipped += 1
            logger.warning("[%s] skipping non-object line: %.200r", self._label, line)
            return None
        return obj


def encode_user_turn(text: str) -> bytes:
    payload = {
        "type": "user",
        "message": {
            "role": "user",
            "content": [{"type": "text", "text": text}],
        },
    }
    return (json.dumps(payload) + "\n").encode("utf-8")


def normalize_exit_code(returncode: int | None, terminated: bool) -> int | None:
    """None for a deliberate stop, 128+N for death by signal N."""
    if terminated or returncode is None:
        return None
    if returncode < 0:
        return 128 + (-returncode)
    return returncode


class ClaudeCodeProcess(AgentProcess):
    """One running ``claude`` subprocess."""

    def __init__(
        self,
        agent_id: str,
        proc: asyncio.subprocess.Process,
        *,
        mcp_config_path: Path | None = None,
        terminate_grace: float = 5.0,
    ) -> None:
        self._agent_id = agent_id
        self._proc = proc
        self._mcp_config_path = mcp_config_path
        self._grace = terminate_grace
        self._session_token: str | None = None
        self._turns: deque[str] = deque()
        self._ready = True
        self._events_taken = False
        self._terminating = False
        self._exit_code: int | None = None
        self._exited = False
        self._exit_callbacks: list[ExitCallback] = []
        self._stderr_task = (
            asyncio.create_task(self._drain_stderr(), name=f"stderr-{agent_id}")
            if proc.stderr is not None else None
        )
        self._monitor_task = asyncio.create_task(
            self._monitor_exit(), name=f"exit-{agent_id}",
        )

    # ── AgentProcess ──

    @property
    def agent_id(self) -> str:
        return self._agent_id

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self.is_alive else None

    @property
    def is_alive(self) -> bool:
        return self._proc.returncode is None

    @property
    def session_token(self) -> str | None:
        return self._session_token

    @property
    def queued_turns(self) -> int:
        return len(self._turns)

    async def send(self, text: str) -> None:
        if not self.is_alive or self._terminating:
            raise AgentProcessError(self._agent_id, "process is not running")
        if not self._ready:
            self._turns.append(text)
            logger.debug(
                "[%s] turn in flight, queued message (%d waiting)",
                self._agent_id, len(self._turns),
            )
            return
        await self._write_turn(text)

    def events(self) -> AsyncIterator[OutputChunk]:
        if self._events_taken:
            raise RuntimeError(f"events() already consumed for {self._agent_id}")
        self._events_taken = True
        return self._iter_events()

    async def terminate(self) -> None:
        self._terminating = True
        proc = self._proc
        if proc.returncode is None:
            if proc.stdin is not None:
                proc.stdin.close()
            with contextlib.suppress(ProcessLookupError):
                proc.terminate()
            try:
                await asyncio.wait_for(proc.wait(), timeout=self._grace)
            except asyncio.TimeoutError:
                logger.warning(
                    "[%s] did not exit %.1fs after SIGTERM, killing",
                    self._agent_id, self._grace,
                )
                with contextlib.suppress(ProcessLookupError):
                    proc.kill()
                await proc.wait()
        if self._stderr_task is not None and not self._stderr_task.done():
            self._stderr_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._stderr_task

    def on_exit(self, callback: ExitCallback) -> None:
        if self._exited:
            asyncio.get_running_loop().create_task(
                self._invoke_exit_callback(callback, self._exit_code)
            )
            return
        self._exit_callbacks.append(callback)

    # ── Internals ──

    async def _write_turn(self, text: str) -> None:
        stdin = self._proc.stdin
        if stdin is None or stdin.is_closing():
            raise AgentProcessError(self._agent_id, "stdin is closed")
        self._ready = False
        try:
            stdin.write(encode_user_turn(text))
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            raise AgentProcessError(self._agent_id, f"write failed: {exc}") from exc

    async def _advance_turn(self) -> None:
        """Current turn finished: write the next queued one, if any."""
        while self._turns:
            text = self._turns.popleft()
            try:
                await self._write_turn(text)
                return
            except AgentProcessError as exc:
                logger.error("[%s] dropping queued turn: %s", self._agent_id, exc)
        self._ready = True

    async def _iter_events(self) -> AsyncIterator[OutputChunk]:
        stdout = self._proc.stdout
        if stdout is None:
            raise AgentProcessError(self._agent_id, "stdout not available")
        decoder = JsonLineDecoder(self._agent_id)
        while True:
            data = await stdout.read(_READ_SIZE)
            if not data:
                break
            for event in decoder.feed(data):
                for chunk in await self._handle_event(event):
                    yield chunk
        for event in decoder.flush():
            for chunk in await self._handle_event(event):
                yield chunk
        logger.debug("[%s] stdout closed", self._agent_id)

    async def _handle_event(self, event: dict[str, Any]) -> list[OutputChunk]:
        etype = event.get("type")
        if etype == "init" or (etype == "system" and event.get("subtype") == "init"):
            self._session_token = event.get("session_id") or self._session_token
            return [OutputChunk.structured(
                "session_started",
                session_id=self._session_token,
                model=event.get("model"),
            )]

        if etype == "assistant":
            message = event.get("message") or {}
            chunks: list[OutputChunk] = []
            for part in message.get("content") or []:
                if not isinstance(part, dict):
                    continue
                if part.get("type") == "text":
                    if part.get("text"):
                        chunks.append(OutputChunk.text(part["text"]))
                elif part.get("type") == "tool_use":
                    chunks.append(OutputChunk.structured(
                        "tool_use",
                        id=part.get("id"),
                        name=part.get("name"),
                        input=part.get("input"),
                    ))
            return chunks

        if etype == "result":
            self._session_token = event.get("session_id") or self._session_token
            await self._advance_turn()
            return [OutputChunk.structured(
                "turn_complete",
                session_id=self._session_token,
                stop_reason=event.get("stop_reason") or event.get("subtype"),
                is_error=bool(event.get("is_error")),
            )]

        logger.debug("[%s] ignoring event type %r", self._agent_id, etype)
        return []

    async def _drain_stderr(self) -> None:
        stderr = self._proc.stderr
        assert stderr is not None
        while True:
            line = await stderr.readline()
            if not line:
                return
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                logger.warning("[%s] stderr: %s", self._agent_id, text)

    async def _monitor_exit(self) -> None:
        returncode = await self._proc.wait()
        self._exit_code = normalize_exit_code(returncode, self._terminating)
        self._exited = True
        logger.info(
            "[%s] process exited returncode=%s reported=%s",
            self._agent_id, returncode, self._exit_code,
        )
        if self._mcp_config_path is not None:
            with contextlib.suppress(OSError):
                self._mcp_config_path.unlink(missing_ok=True)
        callbacks, self._exit_callbacks = self._exit_callbacks, []
        for callback in callbacks:
            await self._invoke_exit_callback(callback, self._exit_code)

    async def _invoke_exit_callback(
        self, callback: ExitCallback, code: int | None,
    ) -> None:
        try:
            result = callback(code)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("[%s] exit callback failed", self._agent_id)


class ClaudeCodeAdapter(AgentAdapter):
    """Spawns Claude Code CLI subprocesses."""

    def __init__(
        self,
        command: str = "claude",
        *,
        config_dir: str | Path | None = None,
        terminate_grace: float = 5.0,
    ) -> None:
        self._command = command
        self._config_dir = Path(config_dir or tempfile.gettempdir())
        self._grace = terminate_grace

    @property
    def kind(self) -> AgentKind:
        return AgentKind.CLAUDE_CODE

    def is_available(self) -> bool:
        return shutil.which(self._command) is not None

    def mcp_config_path(self, agent_id: str) -> Path:
        return self._config_dir / f"agent-chat-{agent_id}-mcp.json"

    def write_mcp_config(self, config: SpawnConfig) -> Path:
        path = self.mcp_config_path(config.agent_id)
        atomic_write_json(path, {
            "mcpServers": {
                MCP_SERVER_NAME: {
                    "type": "http",
                    "url": config.tool_server_url,
                    "headers": {"X-Agent-ID": config.agent_id},
                },
            },
        }, mode=0o600)
        return path

    def build_command(self, config: SpawnConfig, mcp_config_path: Path) -> list[str]:
        cmd = [
            self.resolve_command(self._command),
            "-p",
            # stream-json output requires --verbose together with -p
            "--verbose",
            "--output-format", "stream-json",
            "--input-format", "stream-json",
            "--permission-prompt-tool", PERMISSION_TOOL,
            "--mcp-config", str(mcp_config_path),
        ]
        if config.resume_token:
            cmd += ["--resume", config.resume_token]
        return cmd

    async def spawn(self, config: SpawnConfig) -> ClaudeCodeProcess:
        if not os.path.isdir(config.work_directory):
            raise AgentSpawnError(
                config.agent_id,
                f"work directory does not exist: {config.work_directory}",
            )
        try:
            mcp_path = self.write_mcp_config(config)
        except OSError as exc:
            raise AgentSpawnError(
                config.agent_id, f"cannot write MCP config: {exc}",
            ) from exc

        cmd = self.build_command(config, mcp_path)
        env = {**os.environ, "CLAUDE_HEADLESS": "1"}
        logger.info(
            "Spawning %s for agent %s in %s (resume=%s)",
            self._command, config.agent_id, config.work_directory,
            bool(config.resume_token),
        )
        try:
            # create_subprocess_exec passes args as an array, no shell
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=config.work_directory,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                start_new_session=True,
            )
        except FileNotFoundError as exc:
            mcp_path.unlink(missing_ok=True)
            raise AgentSpawnError(
                config.agent_id, f"command not found: {self._command}",
            ) from exc
        except OSError as exc:
            mcp_path.unlink(missing_ok=True)
            raise AgentSpawnError(config.agent_id, str(exc)) from exc

        process = ClaudeCodeProcess(
            config.agent_id,
            proc,
            mcp_config_path=mcp_path,
            terminate_grace=self._grace,
        )
        if config.initial_task and not config.resume_token:
            await process.send(config.initial_task)
        return process
