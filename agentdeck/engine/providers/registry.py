"""Provider registry: maps backend names to provider factories."""
from __future__ import annotations

import logging
from collections.abc import Callable

from agentdeck.engine.config import EngineConfig
from agentdeck.engine.models import InstanceBinding

from .base import AgentProvider
from .claude_provider import ClaudeProvider
from .codex_provider import CodexProvider

logger = logging.getLogger(__name__)

ProviderFactory = Callable[[EngineConfig, InstanceBinding], AgentProvider]


def _codex_factory(config: EngineConfig, instance: InstanceBinding) -> AgentProvider:
    return CodexProvider(command=config.codex_command, env=instance.build_env())


def _claude_factory(config: EngineConfig, instance: InstanceBinding) -> AgentProvider:
    return ClaudeProvider(
        command=config.claude_command,
        env=instance.build_env(),
        abort_grace_seconds=config.abort_grace_seconds,
    )


class ProviderRegistry:
    """Registry of agent backends.

    The backend is chosen when a conversation's runner is built: the
    instance's own backend when it names one, else the configured default.
    """

    def __init__(self, config: EngineConfig) -> None:
        self._config = config
        self._factories: dict[str, ProviderFactory] = {
            "codex": _codex_factory,
            "claude": _claude_factory,
        }

    def register(self, name: str, factory: ProviderFactory) -> None:
        self._factories[name] = factory
        logger.info("Provider factory registered: %s", name)

    def list_names(self) -> list[str]:
        return list(self._factories.keys())

    def create(
        self,
        instance: InstanceBinding,
        backend: str | None = None,
    ) -> AgentProvider:
        """Build a provider for one conversation."""
        name = backend or self._config.backend
        factory = self._factories.get(name)
        if factory is None:
            available = ", ".join(self._factories.keys())
            raise KeyError(
                f"Provider '{name}' not found. Available: {available or 'none'}"
            )
        provider = factory(self._config, instance)
        logger.info(
            "Provider created backend=%s instance=%s available=%s",
            name, instance.instance_id, provider.is_available(),
        )
        return provider

    def __call__(self, instance: InstanceBinding) -> AgentProvider:
        return self.create(instance, backend=instance.backend)
