"""Agent providers: one backend process per conversation."""
from .base import AgentProvider
from .claude_provider import ClaudeProvider
from .codex_provider import CodexProvider
from .registry import ProviderRegistry

__all__ = [
    "AgentProvider",
    "ClaudeProvider",
    "CodexProvider",
    "ProviderRegistry",
]
