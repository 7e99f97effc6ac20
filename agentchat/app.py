"""agentchat entry point."""
from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

import yaml

from agentchat.engine.config import CONFIG_DIR
from agentchat.engine.yaml_config import load_config

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"


def configure_logging(level_name: str, log_dir: Path | None = None) -> Path:
    """Root logger -> rotating file under ``log_dir`` plus stderr."""
    log_dir = log_dir or (CONFIG_DIR / "logs").expanduser()
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "agentchat.log"

    root = logging.getLogger()
    root.setLevel(getattr(logging, level_name.upper(), logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(LOG_FORMAT)
    file_handler = RotatingFileHandler(
        log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    root.addHandler(stream_handler)
    # slixmpp logs every stanza at DEBUG
    if root.level > logging.DEBUG:
        logging.getLogger("slixmpp").setLevel(logging.WARNING)
    return log_file


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="agentchat",
        description="Chat with coding agents over XMPP",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help="YAML (or legacy JSON) config file (default: ~/.agent-chat/config.yaml)",
    )
    parser.add_argument(
        "--state", metavar="PATH",
        help="State file (default: ~/.agent-chat/state.json)",
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true",
        help="Enable debug logging",
    )
    args = parser.parse_args()

    try:
        config = load_config(args.config)
    except (OSError, ValueError, yaml.YAMLError) as exc:
        print(f"agentchat: cannot load config: {exc}", file=sys.stderr)
        sys.exit(2)
    if args.state:
        config.state_path = args.state
    if args.verbose:
        config.log_level = "DEBUG"

    log_file = configure_logging(config.log_level)
    logger = logging.getLogger(__name__)
    logger.info(
        "Starting agentchat xmpp=%s:%d domain=%s state=%s log=%s",
        config.xmpp.host, config.xmpp.port, config.xmpp.effective_domain,
        config.resolved_state_path, log_file,
    )

    from agentchat.server import AgentChatServer

    server = AgentChatServer(config)
    try:
        asyncio.run(server.run())
    except KeyboardInterrupt:
        pass
    except Exception:
        logger.exception("agentchat terminated with an error")
        sys.exit(1)


if __name__ == "__main__":
    main()
