"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via AGENTDECK_* env vars,
or with a YAML file (see yaml_config.py).
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass

from .models import InstanceBinding, TurnConfig

logger = logging.getLogger(__name__)

_TRUE_VALUES = {"1", "true", "yes", "on"}


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in _TRUE_VALUES


@dataclass
class EngineConfig:
    """Turn engine, web server and gateway configuration."""

    # Web server
    host: str = "127.0.0.1"
    port: int = 18888
    # JSON snapshot of chats; unset keeps chats in memory only
    chat_store_path: str | None = None
    chat_store_save_delay_seconds: float = 0.25

    # Agent backend: "codex" (MCP server over stdio) or "claude" (stream-json)
    backend: str = "codex"
    codex_command: str = "codex"
    claude_command: str = "claude"

    # Defaults applied to every turn unless the chat overrides them
    default_cwd: str | None = None
    default_model: str | None = None
    default_reasoning_effort: str | None = None
    default_sandbox: str | None = "workspace-write"
    default_approval_policy: str | None = "on-request"
    default_instance_id: str = "default"
    default_agent_home: str | None = None

    # Where turns run: "local" (in the web server) or "remote" (gateway)
    gateway_mode: str = "local"
    gateway_host: str = "127.0.0.1"
    gateway_port: int = 18999
    gateway_auto_start: bool = True
    gateway_request_timeout_seconds: float = 4.0
    gateway_start_deadline_seconds: float = 12.0
    gateway_health_poll_seconds: float = 0.25

    # Event stream buffers
    stream_max_events: int = 2000
    gateway_stream_max_events: int = 4000
    stream_idle_ttl_seconds: float = 15 * 60.0
    gateway_idle_ttl_seconds: float = 12 * 60 * 60.0
    sweep_interval_seconds: float = 30.0
    keepalive_seconds: float = 15.0

    # Turn runner timing
    heartbeat_interval_seconds: float = 10.0
    heartbeat_tick_seconds: float = 1.0
    abort_grace_seconds: float = 1.2

    # Polling cadence for remote-owned turns
    poll_interval_seconds: float = 0.25
    remote_poll_interval_seconds: float = 0.18

    # Logging
    log_level: str = "INFO"

    @property
    def gateway_url(self) -> str:
        return f"http://{self.gateway_host}:{self.gateway_port}"

    def default_turn_config(self) -> TurnConfig:
        return TurnConfig(
            cwd=self.default_cwd,
            sandbox=self.default_sandbox,
            approval_policy=self.default_approval_policy,
            model=self.default_model,
            reasoning_effort=self.default_reasoning_effort,
        )

    def default_instance(self) -> InstanceBinding:
        return InstanceBinding(
            instance_id=self.default_instance_id,
            agent_home=self.default_agent_home,
        )

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from AGENTDECK_* environment variables."""
        deck_vars = {
            k: v for k, v in os.environ.items() if k.startswith("AGENTDECK_")
        }
        if deck_vars:
            logger.info(
                "EngineConfig.from_env: AGENTDECK_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(deck_vars.items())),
            )
        else:
            logger.debug(
                "EngineConfig.from_env: no AGENTDECK_* env vars set, using defaults"
            )

        config = cls(
            host=os.getenv("AGENTDECK_HOST", cls.host),
            port=int(os.getenv("AGENTDECK_PORT", str(cls.port))),
            chat_store_path=os.getenv("AGENTDECK_CHAT_STORE_PATH") or None,
            backend=os.getenv("AGENTDECK_BACKEND", cls.backend).strip().lower(),
            codex_command=os.getenv("AGENTDECK_CODEX_COMMAND", cls.codex_command),
            claude_command=os.getenv(
                "AGENTDECK_CLAUDE_COMMAND", cls.claude_command
            ),
            default_cwd=os.getenv("AGENTDECK_CWD") or None,
            default_model=os.getenv("AGENTDECK_MODEL") or None,
            default_reasoning_effort=(
                os.getenv("AGENTDECK_REASONING_EFFORT") or None
            ),
            default_sandbox=os.getenv(
                "AGENTDECK_SANDBOX", cls.default_sandbox or ""
            ) or None,
            default_approval_policy=os.getenv(
                "AGENTDECK_APPROVAL_POLICY", cls.default_approval_policy or ""
            ) or None,
            default_instance_id=os.getenv(
                "AGENTDECK_INSTANCE_ID", cls.default_instance_id
            ),
            default_agent_home=os.getenv("AGENTDECK_AGENT_HOME") or None,
            gateway_mode=os.getenv(
                "AGENTDECK_GATEWAY_MODE", cls.gateway_mode
            ).strip().lower(),
            gateway_host=os.getenv("AGENTDECK_GATEWAY_HOST", cls.gateway_host),
            gateway_port=int(os.getenv(
                "AGENTDECK_GATEWAY_PORT", str(cls.gateway_port)
            )),
            gateway_auto_start=_env_bool(
                "AGENTDECK_GATEWAY_AUTO_START", cls.gateway_auto_start
            ),
            gateway_request_timeout_seconds=float(os.getenv(
                "AGENTDECK_GATEWAY_TIMEOUT",
                str(cls.gateway_request_timeout_seconds),
            )),
            stream_max_events=int(os.getenv(
                "AGENTDECK_STREAM_MAX_EVENTS", str(cls.stream_max_events)
            )),
            gateway_stream_max_events=int(os.getenv(
                "AGENTDECK_GATEWAY_STREAM_MAX_EVENTS",
                str(cls.gateway_stream_max_events),
            )),
            heartbeat_interval_seconds=float(os.getenv(
                "AGENTDECK_HEARTBEAT_INTERVAL",
                str(cls.heartbeat_interval_seconds),
            )),
            log_level=os.getenv("AGENTDECK_LOG_LEVEL", cls.log_level).upper(),
        )
        config.validate()
        logger.info(
            "EngineConfig.from_env: backend=%s gateway_mode=%s port=%s gateway=%s",
            config.backend, config.gateway_mode, config.port, config.gateway_url,
        )
        return config

    def validate(self) -> None:
        """Raise ValueError for settings that cannot work."""
        if self.backend not in ("codex", "claude"):
            raise ValueError(f"Unknown backend: {self.backend!r}")
        if self.gateway_mode not in ("local", "remote"):
            raise ValueError(f"Unknown gateway mode: {self.gateway_mode!r}")
        if self.stream_max_events <= 0 or self.gateway_stream_max_events <= 0:
            raise ValueError("Stream capacity must be positive")
        # Surfaces bad enum defaults at startup instead of on the first turn.
        self.default_turn_config()
