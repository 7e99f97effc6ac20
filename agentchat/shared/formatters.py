"""Plain-text formatting for chat messages.

Everything here returns strings meant for a phone-sized XMPP client:
short lines, no markup.

Per-tool permission descriptions use a small registry. Adding a tool
needs a single decorated function:

    @tool_describer("MyTool")
    def _describe_my_tool(args):
        return f"Do my thing: {args.get('target')}"
"""

from __future__ import annotations

import json
from collections.abc import Callable, Iterable
from datetime import datetime
from pathlib import Path
from typing import Any

from agentchat.engine.models import AgentRecord

from .commands import AGENT_COMMAND_HELP, MANAGER_COMMAND_HELP

_DESCRIBERS: dict[str, Callable[[dict[str, Any]], str]] = {}

# Longest argument value shown verbatim in a fallback description.
_SHORT_VALUE_LIMIT = 100
_DETAIL_LIMIT = 300


def tool_describer(*names: str):
    """Register a description function for one or more tool names."""

    def decorator(fn: Callable[[dict[str, Any]], str]):
        for name in names:
            _DESCRIBERS[name.lower()] = fn
        return fn

    return decorator


def _normalize_tool_name(name: str) -> str:
    """``mcp__server__tool`` -> ``tool``, lowercased."""
    if name.startswith("mcp__") and name.count("__") >= 2:
        name = name.split("__", 2)[2]
    return name.lower()


@tool_describer("bash")
def _describe_bash(args: dict[str, Any]) -> str:
    cmd = args.get("command")
    return f"Run command: {cmd}" if cmd else "Run a shell command"


@tool_describer("edit", "multiedit")
def _describe_edit(args: dict[str, Any]) -> str:
    path = args.get("file_path")
    return f"Edit file: {path}" if path else "Edit a file"


@tool_describer("write")
def _describe_write(args: dict[str, Any]) -> str:
    path = args.get("file_path")
    return f"Write file: {path}" if path else "Write a file"


@tool_describer("read")
def _describe_read(args: dict[str, Any]) -> str:
    path = args.get("file_path")
    return f"Read file: {path}" if path else "Read a file"


@tool_describer("glob")
def _describe_glob(args: dict[str, Any]) -> str:
    pattern = args.get("pattern")
    return f"Search for files: {pattern}" if pattern else "Search for files"


@tool_describer("grep")
def _describe_grep(args: dict[str, Any]) -> str:
    pattern = args.get("pattern")
    return f"Search content: {pattern}" if pattern else "Search file contents"


@tool_describer("webfetch")
def _describe_webfetch(args: dict[str, Any]) -> str:
    url = args.get("url")
    return f"Fetch URL: {url}" if url else "Fetch a web page"


@tool_describer("websearch")
def _describe_websearch(args: dict[str, Any]) -> str:
    query = args.get("query")
    return f"Web search: {query}" if query else "Search the web"


def describe_tool_call(tool_name: str, args: dict[str, Any]) -> str:
    """One-line human description of a tool invocation."""
    describer = _DESCRIBERS.get(_normalize_tool_name(tool_name))
    if describer is not None:
        return describer(args)
    if args:
        first = next(iter(args.values()))
        if isinstance(first, str) and len(first) < _SHORT_VALUE_LIMIT:
            return f"{tool_name}: {first}"
    return f"Use {tool_name} tool"


def format_action_name(action: str) -> str:
    """``web_fetch`` / ``web-fetch`` -> ``Web Fetch``."""
    if not action:
        return "Unknown Action"
    words = action.replace("_", " ").replace("-", " ").split(" ")
    return " ".join(w[:1].upper() + w[1:] for w in words)


def _detail(value: Any) -> str:
    text = value if isinstance(value, str) else json.dumps(value)
    if len(text) > _DETAIL_LIMIT:
        text = text[:_DETAIL_LIMIT] + "..."
    return text


def format_permission_prompt(
    request_id: str,
    action: str,
    description: str,
    details: dict[str, Any] | None = None,
) -> str:
    lines = [
        f"\U0001F510 Permission #{request_id}",
        f"Action: {format_action_name(action)}",
        description,
    ]
    if details:
        if details.get("command"):
            lines.append(f"Command: {_detail(details['command'])}")
        path = details.get("file_path") or details.get("file") or details.get("path")
        if path:
            lines.append(f"File: {_detail(path)}")
        for key, label in (("url", "URL"), ("pattern", "Pattern"), ("query", "Query")):
            if details.get(key):
                lines.append(f"{label}: {_detail(details[key])}")
    lines.append("")
    lines.append(f"Reply: yes / no (or '{request_id} yes')")
    return "\n".join(lines)


def _display_time(iso: str) -> str:
    try:
        return datetime.fromisoformat(iso).strftime("%Y-%m-%d %H:%M:%S %Z").strip()
    except ValueError:
        return iso


def format_status(record: AgentRecord) -> str:
    return "\n".join([
        f"Agent: {record.id}",
        f"Type: {record.kind.value}",
        f"Status: {record.status.value}",
        f"Work Dir: {record.work_directory}",
        f"Created: {_display_time(record.created_at)}",
    ])


def format_detailed_status(record: AgentRecord) -> str:
    """Manager-side status with identity and process details."""
    lines = [
        f"Agent: {record.id}",
        f"Status: {record.status.value}",
        f"Type: {record.kind.value}",
        f"Repository: {Path(record.work_directory).name or 'unknown'}",
        f"JID: {record.session_address}",
        f"Created: {_display_time(record.created_at)}",
        f"Created by: {record.created_by}",
    ]
    if record.os_process_id:
        lines.append(f"PID: {record.os_process_id}")
    if record.resume_token:
        lines.append(f"Session ID: {record.resume_token}")
    if record.last_error:
        lines.append(f"Last error: {record.last_error}")
    return "\n".join(lines)


def format_agent_list(records: Iterable[AgentRecord]) -> str:
    rows = [
        f"{r.id} - {r.status.value} - "
        f"{Path(r.work_directory).name or 'unknown'} ({r.session_address})"
        for r in records
    ]
    if not rows:
        return "No agents registered."
    return "Agents:\n" + "\n".join(rows)


def format_repo_list(repos: list[str]) -> str:
    return "\n".join(f"[{i}] {name}" for i, name in enumerate(repos, start=1))


def format_error(error: BaseException | str) -> str:
    return f"Error: {error}"


def format_agent_help() -> str:
    width = max(len(k) for k in AGENT_COMMAND_HELP)
    lines = ["Agent Commands:"]
    lines += [f"  {k.ljust(width)} - {v}" for k, v in AGENT_COMMAND_HELP.items()]
    lines += [
        "",
        "For permission prompts:",
        "  yes/y/ok/approve/allow - Approve the oldest request",
        "  no/n/deny/reject       - Deny the oldest request",
        "  <id> yes|no            - Answer a specific request",
    ]
    return "\n".join(lines)


def format_manager_help() -> str:
    width = max(len(k) for k in MANAGER_COMMAND_HELP)
    lines = ["Manager Commands:", ""]
    lines += [f"{k.ljust(width)} - {v}" for k, v in MANAGER_COMMAND_HELP.items()]
    return "\n".join(lines)
