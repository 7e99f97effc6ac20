"""agentchat: chat with supervised coding-agent subprocesses over XMPP."""

__version__ = "0.1.0"
