"""Turn service: where the web server sends turns.

``LocalTurnService`` runs turns in-process through a TurnManager.
``GatewayClient`` (agentdeck.gateway.client) implements the same
interface against the gateway daemon, so agent subprocesses outlive
the web server.
"""
from __future__ import annotations

import abc
import asyncio
from typing import Any

from agentdeck.adapters.events import EventSink
from agentdeck.engine.models import (
    ApprovalDecision,
    ConversationKey,
    InstanceBinding,
    SessionBinding,
    TurnConfig,
    TurnResult,
)
from agentdeck.engine.turn_runner import TurnManager


class TurnService(abc.ABC):
    """Capability set the web server needs from a turn backend."""

    #: True when turns live in another process and can outlive this one.
    remote: bool = False

    @abc.abstractmethod
    async def run_turn(
        self,
        key: ConversationKey,
        prompt: str,
        config: TurnConfig,
        on_event: EventSink,
        *,
        cancel: asyncio.Event | None = None,
        instance: InstanceBinding | None = None,
        assistant_message_id: str | None = None,
    ) -> TurnResult:
        """Run one turn, streaming canonical events to *on_event*."""

    @abc.abstractmethod
    async def is_busy(self, key: ConversationKey) -> bool: ...

    @abc.abstractmethod
    async def approve(
        self, key: ConversationKey, approval_id: str, decision: ApprovalDecision,
    ) -> bool: ...

    @abc.abstractmethod
    async def abort(self, key: ConversationKey) -> None:
        """Abort the running turn; raises NotRunningError when idle."""

    @abc.abstractmethod
    async def reset(self, key: ConversationKey) -> None: ...

    @abc.abstractmethod
    async def usage(self, key: ConversationKey) -> dict[str, Any] | None: ...

    @abc.abstractmethod
    async def rate_limits(self, key: ConversationKey) -> dict[str, Any] | None: ...

    @abc.abstractmethod
    async def session_state(self, key: ConversationKey) -> SessionBinding | None: ...

    async def shutdown(self) -> None:
        return None


class LocalTurnService(TurnService):
    """Runs turns in this process."""

    remote = False

    def __init__(self, manager: TurnManager) -> None:
        self.manager = manager

    async def run_turn(
        self,
        key: ConversationKey,
        prompt: str,
        config: TurnConfig,
        on_event: EventSink,
        *,
        cancel: asyncio.Event | None = None,
        instance: InstanceBinding | None = None,
        assistant_message_id: str | None = None,
    ) -> TurnResult:
        return await self.manager.run_turn(
            key, prompt, config, on_event, cancel=cancel, instance=instance,
        )

    async def is_busy(self, key: ConversationKey) -> bool:
        return self.manager.is_busy(key)

    async def approve(
        self, key: ConversationKey, approval_id: str, decision: ApprovalDecision,
    ) -> bool:
        return self.manager.approve(key, approval_id, decision)

    async def abort(self, key: ConversationKey) -> None:
        await self.manager.abort(key)

    async def reset(self, key: ConversationKey) -> None:
        await self.manager.reset(key)

    async def usage(self, key: ConversationKey) -> dict[str, Any] | None:
        return self.manager.usage(key)

    async def rate_limits(self, key: ConversationKey) -> dict[str, Any] | None:
        return self.manager.rate_limits(key)

    async def session_state(self, key: ConversationKey) -> SessionBinding | None:
        return self.manager.session_state(key)

    async def shutdown(self) -> None:
        await self.manager.shutdown()
