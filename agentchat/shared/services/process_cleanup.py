"""Best-effort cleanup of agent subprocesses left over from a crash.

The state file records each agent's pid. When the service restarts
those subprocesses may still be alive, orphaned, and writing into the
same work directories. Only pids whose command line still looks like a
coding-agent CLI are signalled.
"""

from __future__ import annotations

import logging
import os
import re
import signal
import subprocess
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProcessInfo:
    pid: int
    ppid: int
    args: str


def list_processes() -> dict[int, ProcessInfo]:
    """Return process table keyed by PID using `ps` output."""
    out = subprocess.check_output(
        ["ps", "-eo", "pid=,ppid=,args="],
        text=True,
        stderr=subprocess.DEVNULL,
    )
    table: dict[int, ProcessInfo] = {}
    for line in out.splitlines():
        parts = line.strip().split(maxsplit=2)
        if len(parts) < 3:
            continue
        try:
            pid, ppid = int(parts[0]), int(parts[1])
        except ValueError:
            continue
        table[pid] = ProcessInfo(pid=pid, ppid=ppid, args=parts[2])
    return table


def is_agent_command(args: str, command: str = "claude") -> bool:
    """True for a stream-json agent CLI invocation."""
    name = re.escape(os.path.basename(command))
    return bool(
        re.search(rf"\b{name}\b", args)
        and "stream-json" in args
    )


def reap_stale_agents(
    stale_pids: dict[str, int],
    *,
    command: str = "claude",
    table: dict[int, ProcessInfo] | None = None,
) -> list[int]:
    """SIGTERM orphaned agent subprocesses recorded in the state file.

    A pid is signalled only when it still exists, is orphaned (parent
    is PID 1 or gone) and its command line matches the agent CLI, so a
    recycled pid belonging to something else is left alone.
    """
    if not stale_pids:
        return []
    if table is None:
        try:
            table = list_processes()
        except (OSError, subprocess.CalledProcessError) as exc:
            logger.warning("Cannot list processes for stale cleanup: %s", exc)
            return []

    killed: list[int] = []
    for agent_id, pid in stale_pids.items():
        proc = table.get(pid)
        if proc is None:
            continue
        is_orphan = proc.ppid == 1 or proc.ppid not in table
        if not is_orphan or not is_agent_command(proc.args, command):
            logger.debug(
                "Leaving pid=%d (agent=%s) alone: orphan=%s cmd=%s",
                pid, agent_id, is_orphan, proc.args[:120],
            )
            continue
        try:
            os.kill(pid, signal.SIGTERM)
        except ProcessLookupError:
            continue
        except PermissionError as exc:
            logger.warning("Cannot reap pid=%d (agent=%s): %s", pid, agent_id, exc)
            continue
        killed.append(pid)
        logger.info(
            "Reaped stale agent process pid=%d agent=%s cmd=%s",
            pid, agent_id, proc.args[:180],
        )
    return killed
