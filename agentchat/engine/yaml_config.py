"""YAML configuration loader.

Loads a single file into a ServiceConfig. JSON is a subset of YAML, so
the legacy ``~/.agent-chat/config.json`` (camelCase keys) loads through
the same path.

Example YAML:
    xmpp:
      host: chat.example.com
      domain: example.com
      admin_username: admin
      admin_password: secret
      tls: true

    manager:
      username: manager
      password: secret

    tool_server:          # "mcp" is accepted as an alias
      port: 3001
      permission_timeout_seconds: 300

    work:
      base_path: ~/work

    agents:
      max_concurrent: 5

    output:
      rate_limit: 10
      rate_window_seconds: 1.0

    recovery:
      max_attempts: 3

    state_path: ~/.agent-chat/state.json
"""
from __future__ import annotations

import dataclasses
import logging
import os
import re
from pathlib import Path
from typing import Any

import yaml

from .config import CONFIG_DIR, ServiceConfig

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATHS = (
    CONFIG_DIR / "config.yaml",
    CONFIG_DIR / "config.yml",
    CONFIG_DIR / "config.json",
)

_SECTIONS = frozenset({
    "xmpp", "manager", "tool_server", "work", "agents", "output", "recovery",
})
# Legacy section names.
_SECTION_ALIASES = {"mcp": "tool_server"}

_CAMEL_RE = re.compile(r"(?<!^)(?=[A-Z])")


def _snake(key: str) -> str:
    return _CAMEL_RE.sub("_", key).lower()


def _apply_section(target: Any, section_name: str, raw: dict[str, Any]) -> None:
    known = {f.name for f in dataclasses.fields(target)}
    for key, value in raw.items():
        name = _snake(str(key))
        if section_name == "tool_server" and name == "permission_timeout":
            # Legacy JSON stores milliseconds.
            target.permission_timeout_seconds = float(value) / 1000.0
            continue
        if name not in known:
            logger.warning(
                "Unknown config key %s.%s (ignored)", section_name, key,
            )
            continue
        setattr(target, name, value)


def parse_config(raw: dict[str, Any]) -> ServiceConfig:
    """Build a ServiceConfig from an already-parsed mapping."""
    config = ServiceConfig()
    for key, value in raw.items():
        name = _SECTION_ALIASES.get(key, _snake(str(key)))
        if name in _SECTIONS:
            if not isinstance(value, dict):
                raise ValueError(f"Config section '{key}' must be a mapping")
            _apply_section(getattr(config, name), name, value)
        elif name in {"state_path", "log_level"}:
            setattr(config, name, str(value))
        else:
            logger.warning("Unknown config section %s (ignored)", key)
    return config


def load_yaml_config(path: str | Path) -> ServiceConfig:
    """Load and parse a YAML (or JSON) config file.

    Raises FileNotFoundError / yaml.YAMLError so a broken explicit
    config fails loudly at startup.
    """
    path = Path(path).expanduser()
    logger.info("load_yaml_config: loading %s", path)
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error("load_yaml_config: config file not found at %s", path)
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: parse error in %s: %s", path, exc)
        raise
    if not isinstance(raw, dict):
        raise ValueError(f"Config file {path} must contain a mapping")

    logger.info(
        "Parsed config %s, sections: %s",
        path.name, ", ".join(sorted(raw)) if raw else "(empty)",
    )
    return parse_config(raw)


def find_config_file(explicit: str | Path | None = None) -> Path | None:
    """Resolve which config file to load, if any.

    Order: explicit argument, ``AGENTCHAT_CONFIG``, then the default
    locations under ``~/.agent-chat``.
    """
    if explicit:
        return Path(explicit).expanduser()
    env_path = os.getenv("AGENTCHAT_CONFIG")
    if env_path:
        return Path(env_path).expanduser()
    for candidate in DEFAULT_CONFIG_PATHS:
        candidate = candidate.expanduser()
        if candidate.is_file():
            return candidate
    return None


def load_config(path: str | Path | None = None) -> ServiceConfig:
    """Defaults, then the config file, then environment overrides."""
    config_path = find_config_file(path)
    if config_path is None:
        logger.info("No config file found, using defaults + env")
        config = ServiceConfig()
    else:
        config = load_yaml_config(config_path)
    return config.apply_env()
