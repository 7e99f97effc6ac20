"""Shared MCP tool server the agent subprocesses call for permissions."""
from .router import PermissionRequest, ToolRouter

__all__ = ["PermissionRequest", "ToolRouter", "ToolServer"]


def __getattr__(name: str):
    # uvicorn / mcp are only imported when the server itself is needed
    if name == "ToolServer":
        from .server import ToolServer
        return ToolServer
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
