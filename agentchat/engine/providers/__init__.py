"""Coding-agent subprocess adapters."""
from .base import AgentAdapter, AgentProcess, SpawnConfig
from .registry import AdapterRegistry
from .claude_code import ClaudeCodeAdapter, ClaudeCodeProcess, JsonLineDecoder

__all__ = [
    "AgentAdapter",
    "AgentProcess",
    "SpawnConfig",
    "AdapterRegistry",
    "ClaudeCodeAdapter",
    "ClaudeCodeProcess",
    "JsonLineDecoder",
]
