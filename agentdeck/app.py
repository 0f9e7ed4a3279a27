"""agentdeck: main application entry point."""

from __future__ import annotations

import asyncio
import logging
import sys
from dataclasses import replace
from logging.handlers import RotatingFileHandler
from pathlib import Path

from agentdeck.engine.config import EngineConfig


def _configure_logging(mode: str, log_level: str) -> Path:
    log_dir = Path.home() / ".agentdeck" / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / f"{mode}.log"

    root = logging.getLogger()
    root.setLevel(getattr(logging, log_level, logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
    )
    file_handler = RotatingFileHandler(
        log_file, maxBytes=5_000_000, backupCount=3, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    root.addHandler(stream_handler)
    return log_file


def _resolve_config_path(explicit: str | None) -> str | None:
    log = logging.getLogger(__name__)
    if explicit:
        path = Path(explicit)
        log.info("Using explicit config path: %s (exists=%s)", path, path.exists())
        return str(path)
    candidate = Path.cwd() / "agentdeck.yaml"
    if candidate.exists():
        log.info("Auto-discovered config: %s", candidate)
        return str(candidate)
    log.info("No config file found (tried %s); using defaults", candidate)
    return None


def _load_config(args, config_path: str | None) -> EngineConfig:
    config = EngineConfig.from_env()
    if config_path:
        from agentdeck.engine.yaml_config import load_yaml_config

        config = load_yaml_config(config_path, base=config)

    overrides = {}
    if args.backend:
        overrides["backend"] = args.backend
    if args.gateway_mode:
        overrides["gateway_mode"] = args.gateway_mode
    if args.port is not None:
        overrides["gateway_port" if args.gateway else "port"] = args.port
    if overrides:
        config = replace(config, **overrides)
        config.validate()
    return config


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(
        prog="agentdeck",
        description="agentdeck: drive coding-agent CLIs from the browser",
    )
    mode = parser.add_mutually_exclusive_group(required=True)
    mode.add_argument(
        "--server", action="store_true",
        help="Run the browser-facing HTTP server",
    )
    mode.add_argument(
        "--gateway", action="store_true",
        help="Run the gateway daemon that owns agent subprocesses",
    )
    parser.add_argument(
        "--port", type=int, default=None,
        help="Listen port (server: 18888, gateway: 18999)",
    )
    parser.add_argument(
        "--gateway-mode", choices=("local", "remote"), default=None,
        help="Run turns in-process (local) or on the gateway daemon (remote)",
    )
    parser.add_argument(
        "--backend", choices=("codex", "claude"), default=None,
        help="Agent CLI to drive",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help="YAML config file (default: ./agentdeck.yaml if present)",
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true",
        help="Log at DEBUG level",
    )
    args = parser.parse_args()

    mode_name = "gateway" if args.gateway else "server"
    bootstrap_level = "DEBUG" if args.verbose else EngineConfig.log_level
    log_file = _configure_logging(mode_name, bootstrap_level)
    log = logging.getLogger(__name__)

    config_path = _resolve_config_path(args.config)
    try:
        config = _load_config(args, config_path)
    except (OSError, ValueError) as exc:
        log.error("Invalid configuration: %s", exc)
        sys.exit(2)
    if not args.verbose:
        logging.getLogger().setLevel(getattr(logging, config.log_level, logging.INFO))

    log.info(
        "Starting agentdeck %s mode cwd=%s backend=%s config=%s log=%s",
        mode_name, Path.cwd(), config.backend, config_path or "<none>", log_file,
    )

    if args.gateway:
        from agentdeck.gateway.server import GatewayServer

        asyncio.run(GatewayServer(config).start())
        sys.exit(0)

    from agentdeck.web.server import DeckServer

    if config.gateway_mode == "remote":
        from agentdeck.gateway.client import GatewayClient

        service = GatewayClient(config, config_path=config_path)
    else:
        from agentdeck.engine.providers.registry import ProviderRegistry
        from agentdeck.engine.service import LocalTurnService
        from agentdeck.engine.turn_runner import TurnManager

        service = LocalTurnService(TurnManager(
            ProviderRegistry(config),
            heartbeat_interval=config.heartbeat_interval_seconds,
            heartbeat_tick=config.heartbeat_tick_seconds,
        ))

    asyncio.run(DeckServer(config, service).start())
    sys.exit(0)


if __name__ == "__main__":
    main()
