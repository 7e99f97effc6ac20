"""Service configuration.

All settings have sensible defaults. A YAML (or legacy JSON) file can
replace any of them (see yaml_config.py) and environment variables
override both.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

CONFIG_DIR = Path("~/.agent-chat")

# Env vars consulted by ServiceConfig.apply_env, for debug logging.
_ENV_VARS = (
    "XMPP_HOST", "XMPP_PORT", "XMPP_DOMAIN", "XMPP_ADMIN_USERNAME",
    "XMPP_ADMIN_PASSWORD", "XMPP_TLS", "XMPP_VERIFY_CERTS", "XMPP_ADMIN_PORT",
    "MANAGER_USERNAME", "MANAGER_PASSWORD", "MCP_PORT",
    "MCP_PERMISSION_TIMEOUT", "WORK_BASE_PATH", "AGENTS_MAX_CONCURRENT",
    "AGENTS_COMMAND", "AGENTCHAT_STATE_PATH", "AGENTCHAT_LOG_LEVEL",
)
_SECRET_VARS = {"XMPP_ADMIN_PASSWORD", "MANAGER_PASSWORD"}


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r", name, raw)
        return default


@dataclass
class XmppConfig:
    host: str = "localhost"
    port: int = 5222
    # Empty means "same as host".
    domain: str = ""
    admin_username: str = "admin"
    admin_password: str = ""
    tls: bool = True
    # Self-hosted servers usually run self-signed certificates.
    verify_certificates: bool = False
    # mod_admin_rest listens on the HTTP port, not the c2s port.
    admin_port: int = 5280

    @property
    def effective_domain(self) -> str:
        return self.domain or self.host

    @property
    def admin_base_url(self) -> str:
        return f"http://{self.host}:{self.admin_port}"


@dataclass
class ManagerConfig:
    username: str = "manager"
    password: str = ""


@dataclass
class ToolServerConfig:
    host: str = "127.0.0.1"
    port: int = 3001
    permission_timeout_seconds: float = 300.0

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}/mcp"


@dataclass
class WorkConfig:
    base_path: str = "~/work"

    @property
    def resolved_base_path(self) -> Path:
        return Path(self.base_path).expanduser()


@dataclass
class AgentsConfig:
    max_concurrent: int = 5
    command: str = "claude"
    # Seconds between SIGTERM and SIGKILL when stopping a subprocess.
    terminate_grace_seconds: float = 5.0


@dataclass
class OutputConfig:
    max_message_size: int = 64 * 1024
    rate_limit: int = 10
    rate_window_seconds: float = 1.0
    retry_delay_seconds: float = 1.0
    flush_timeout_seconds: float = 5.0


@dataclass
class RecoveryConfig:
    # Automatic respawns allowed per agent inside attempt_window_seconds.
    max_attempts: int = 3
    attempt_window_seconds: float = 300.0


@dataclass
class ServiceConfig:
    """Top-level configuration tree."""

    xmpp: XmppConfig = field(default_factory=XmppConfig)
    manager: ManagerConfig = field(default_factory=ManagerConfig)
    tool_server: ToolServerConfig = field(default_factory=ToolServerConfig)
    work: WorkConfig = field(default_factory=WorkConfig)
    agents: AgentsConfig = field(default_factory=AgentsConfig)
    output: OutputConfig = field(default_factory=OutputConfig)
    recovery: RecoveryConfig = field(default_factory=RecoveryConfig)
    state_path: str = str(CONFIG_DIR / "state.json")
    log_level: str = "INFO"

    @property
    def manager_jid(self) -> str:
        return f"{self.manager.username}@{self.xmpp.effective_domain}"

    @property
    def admin_jid(self) -> str:
        return f"{self.xmpp.admin_username}@{self.xmpp.effective_domain}"

    def agent_jid(self, agent_id: str) -> str:
        return f"{agent_id}@{self.xmpp.effective_domain}"

    @property
    def resolved_state_path(self) -> Path:
        return Path(self.state_path).expanduser()

    def apply_env(self) -> ServiceConfig:
        """Overlay environment variables onto this config in place."""
        set_vars = {
            k: ("***" if k in _SECRET_VARS else os.environ[k])
            for k in _ENV_VARS if os.getenv(k)
        }
        if set_vars:
            logger.info(
                "ServiceConfig.apply_env: env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(set_vars.items())),
            )
        else:
            logger.debug("ServiceConfig.apply_env: no env overrides set")

        x = self.xmpp
        x.host = os.getenv("XMPP_HOST") or x.host
        x.port = _env_int("XMPP_PORT", x.port)
        x.domain = os.getenv("XMPP_DOMAIN") or x.domain
        x.admin_username = os.getenv("XMPP_ADMIN_USERNAME") or x.admin_username
        x.admin_password = os.getenv("XMPP_ADMIN_PASSWORD") or x.admin_password
        x.tls = _env_bool("XMPP_TLS", x.tls)
        x.verify_certificates = _env_bool("XMPP_VERIFY_CERTS", x.verify_certificates)
        x.admin_port = _env_int("XMPP_ADMIN_PORT", x.admin_port)

        m = self.manager
        m.username = os.getenv("MANAGER_USERNAME") or m.username
        m.password = os.getenv("MANAGER_PASSWORD") or m.password

        t = self.tool_server
        t.port = _env_int("MCP_PORT", t.port)
        # Milliseconds, matching the deployed env files.
        timeout_ms = _env_int("MCP_PERMISSION_TIMEOUT", 0)
        if timeout_ms > 0:
            t.permission_timeout_seconds = timeout_ms / 1000.0

        self.work.base_path = os.getenv("WORK_BASE_PATH") or self.work.base_path
        self.agents.max_concurrent = _env_int(
            "AGENTS_MAX_CONCURRENT", self.agents.max_concurrent
        )
        self.agents.command = os.getenv("AGENTS_COMMAND") or self.agents.command
        self.state_path = os.getenv("AGENTCHAT_STATE_PATH") or self.state_path
        self.log_level = os.getenv("AGENTCHAT_LOG_LEVEL") or self.log_level
        return self

    @classmethod
    def from_env(cls) -> ServiceConfig:
        """Defaults overlaid with environment variables."""
        return cls().apply_env()
