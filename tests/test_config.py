from __future__ import annotations

import os

import pytest

from agentdeck.engine.config import EngineConfig
from agentdeck.engine.models import ReasoningEffort, Sandbox
from agentdeck.engine.yaml_config import load_yaml_config


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in list(os.environ):
        if name.startswith("AGENTDECK_"):
            monkeypatch.delenv(name)


def test_defaults() -> None:
    config = EngineConfig.from_env()
    assert config.backend == "codex"
    assert config.gateway_mode == "local"
    assert config.gateway_url == "http://127.0.0.1:18999"
    assert config.default_turn_config().sandbox is Sandbox.WORKSPACE_WRITE
    assert config.default_instance().instance_id == "default"


def test_env_overrides(monkeypatch) -> None:
    monkeypatch.setenv("AGENTDECK_BACKEND", " Claude ")
    monkeypatch.setenv("AGENTDECK_GATEWAY_MODE", "remote")
    monkeypatch.setenv("AGENTDECK_GATEWAY_PORT", "19000")
    monkeypatch.setenv("AGENTDECK_GATEWAY_AUTO_START", "off")
    monkeypatch.setenv("AGENTDECK_REASONING_EFFORT", "high")
    monkeypatch.setenv("AGENTDECK_SANDBOX", "")
    monkeypatch.setenv("AGENTDECK_LOG_LEVEL", "debug")

    config = EngineConfig.from_env()

    assert config.backend == "claude"
    assert config.gateway_mode == "remote"
    assert config.gateway_port == 19000
    assert config.gateway_auto_start is False
    assert config.default_sandbox is None
    assert config.default_turn_config().reasoning_effort is ReasoningEffort.HIGH
    assert config.log_level == "DEBUG"


def test_invalid_env_values_are_rejected(monkeypatch) -> None:
    monkeypatch.setenv("AGENTDECK_BACKEND", "gemini")
    with pytest.raises(ValueError, match="backend"):
        EngineConfig.from_env()

    monkeypatch.setenv("AGENTDECK_BACKEND", "codex")
    monkeypatch.setenv("AGENTDECK_SANDBOX", "wide-open")
    with pytest.raises(ValueError, match="sandbox"):
        EngineConfig.from_env()


def test_yaml_layers_over_base(tmp_path) -> None:
    path = tmp_path / "agentdeck.yaml"
    path.write_text(
        "server:\n"
        "  port: 8080\n"
        "gateway:\n"
        "  mode: REMOTE\n"
        "  auto_start: 'no'\n"
        "  idle_ttl_seconds: 60\n"
        "agent:\n"
        "  backend: claude\n"
        "  agent_home: ~/.codex-work\n"
        "defaults:\n"
        "  model: gpt-5\n"
        "  sandbox: null\n"
        "stream:\n"
        "  max_events: 50\n"
        "logging:\n"
        "  level: warning\n"
    )

    config = load_yaml_config(path, base=EngineConfig())

    assert config.port == 8080
    assert config.gateway_mode == "remote"
    assert config.gateway_auto_start is False
    assert config.gateway_idle_ttl_seconds == 60.0
    assert config.backend == "claude"
    assert config.default_agent_home == os.path.expanduser("~/.codex-work")
    assert config.default_model == "gpt-5"
    assert config.default_sandbox is None
    assert config.stream_max_events == 50
    assert config.log_level == "WARNING"
    assert config.gateway_port == 18999


def test_yaml_unknown_sections_warn(tmp_path, caplog) -> None:
    path = tmp_path / "agentdeck.yaml"
    path.write_text("plugins:\n  foo: 1\nserver:\n  port: 9000\n")

    config = load_yaml_config(path, base=EngineConfig())

    assert config.port == 9000
    assert "plugins" in caplog.text


def test_yaml_rejects_bad_documents(tmp_path) -> None:
    not_mapping = tmp_path / "list.yaml"
    not_mapping.write_text("- a\n- b\n")
    with pytest.raises(ValueError, match="mapping"):
        load_yaml_config(not_mapping, base=EngineConfig())

    bad_capacity = tmp_path / "cap.yaml"
    bad_capacity.write_text("stream:\n  max_events: 0\n")
    with pytest.raises(ValueError, match="capacity"):
        load_yaml_config(bad_capacity, base=EngineConfig())

    with pytest.raises(FileNotFoundError):
        load_yaml_config(tmp_path / "missing.yaml", base=EngineConfig())
