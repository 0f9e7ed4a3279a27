"""YAML configuration loader.

Loads a single YAML file layered on top of the AGENTDECK_* environment
configuration. Keys that are absent keep their env/default value.

Example YAML:
    server:
      host: 127.0.0.1
      port: 18888
      chat_store_path: ~/.agentdeck/chats.json

    gateway:
      mode: remote
      port: 18999
      auto_start: true

    agent:
      backend: codex
      codex_command: codex
      agent_home: ~/.codex-work

    defaults:
      cwd: /path/to/project
      model: gpt-5.2-codex
      reasoning_effort: high
      sandbox: workspace-write
      approval_policy: on-request

    stream:
      max_events: 2000
      heartbeat_interval_seconds: 10

    logging:
      level: DEBUG
"""
from __future__ import annotations

import dataclasses
import logging
import os
from pathlib import Path
from typing import Any

import yaml

from .config import EngineConfig

logger = logging.getLogger(__name__)

# (section, yaml key) -> EngineConfig field
_FIELD_MAP: dict[tuple[str, str], str] = {
    ("server", "host"): "host",
    ("server", "port"): "port",
    ("server", "chat_store_path"): "chat_store_path",
    ("server", "chat_store_save_delay_seconds"): "chat_store_save_delay_seconds",
    ("gateway", "mode"): "gateway_mode",
    ("gateway", "host"): "gateway_host",
    ("gateway", "port"): "gateway_port",
    ("gateway", "auto_start"): "gateway_auto_start",
    ("gateway", "request_timeout_seconds"): "gateway_request_timeout_seconds",
    ("gateway", "start_deadline_seconds"): "gateway_start_deadline_seconds",
    ("gateway", "idle_ttl_seconds"): "gateway_idle_ttl_seconds",
    ("gateway", "max_events"): "gateway_stream_max_events",
    ("gateway", "poll_interval_seconds"): "remote_poll_interval_seconds",
    ("agent", "backend"): "backend",
    ("agent", "codex_command"): "codex_command",
    ("agent", "claude_command"): "claude_command",
    ("agent", "instance_id"): "default_instance_id",
    ("agent", "agent_home"): "default_agent_home",
    ("agent", "abort_grace_seconds"): "abort_grace_seconds",
    ("defaults", "cwd"): "default_cwd",
    ("defaults", "model"): "default_model",
    ("defaults", "reasoning_effort"): "default_reasoning_effort",
    ("defaults", "sandbox"): "default_sandbox",
    ("defaults", "approval_policy"): "default_approval_policy",
    ("stream", "max_events"): "stream_max_events",
    ("stream", "idle_ttl_seconds"): "stream_idle_ttl_seconds",
    ("stream", "sweep_interval_seconds"): "sweep_interval_seconds",
    ("stream", "keepalive_seconds"): "keepalive_seconds",
    ("stream", "poll_interval_seconds"): "poll_interval_seconds",
    ("stream", "heartbeat_interval_seconds"): "heartbeat_interval_seconds",
    ("logging", "level"): "log_level",
}

_PATH_FIELDS = {"default_cwd", "default_agent_home", "chat_store_path"}


def _coerce(value: Any, current: Any, field_name: str) -> Any:
    if value is None:
        return None
    if isinstance(current, bool):
        if isinstance(value, str):
            return value.strip().lower() in {"1", "true", "yes", "on"}
        return bool(value)
    if isinstance(current, int):
        return int(value)
    if isinstance(current, float):
        return float(value)
    text = str(value)
    if field_name in _PATH_FIELDS:
        text = os.path.expanduser(text)
    return text


def load_yaml_config(
    path: str | Path,
    base: EngineConfig | None = None,
) -> EngineConfig:
    """Load a YAML config file and apply it over *base* (or env config)."""
    path = Path(path)
    logger.info(
        "load_yaml_config: attempting to load config from %s (exists=%s)",
        path, path.exists(),
    )
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error("load_yaml_config: config file not found at %s", path.absolute())
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise

    if not isinstance(raw, dict):
        raise ValueError(f"{path}: top level must be a mapping")

    config = base if base is not None else EngineConfig.from_env()
    overrides: dict[str, Any] = {}
    for (section, key), field_name in _FIELD_MAP.items():
        section_data = raw.get(section)
        if not isinstance(section_data, dict) or key not in section_data:
            continue
        current = getattr(config, field_name)
        if current is None:
            # Optional string fields have no type to coerce against.
            current = ""
        overrides[field_name] = _coerce(section_data[key], current, field_name)

    unknown = set(raw) - {section for section, _ in _FIELD_MAP}
    if unknown:
        logger.warning(
            "load_yaml_config: ignoring unknown sections in %s: %s",
            path, ", ".join(sorted(unknown)),
        )

    config = dataclasses.replace(config, **overrides)
    if isinstance(config.backend, str):
        config.backend = config.backend.strip().lower()
    if isinstance(config.gateway_mode, str):
        config.gateway_mode = config.gateway_mode.strip().lower()
    config.log_level = str(config.log_level).upper()
    config.validate()
    logger.info(
        "load_yaml_config: applied %d override(s) from %s", len(overrides), path,
    )
    return config
