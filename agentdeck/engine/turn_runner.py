"""Turn runners: one per conversation, at most one turn in flight.

A runner owns its conversation's provider, busy flag and config
fingerprint. It decides between starting and continuing the agent
session, emits heartbeats while the agent is quiet, and funnels every
cancellation source (explicit abort, caller signal, task cancellation)
into one teardown.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

from agentdeck.adapters.events import EventSink, RawEvent, RunnerEvent, progress_event
from agentdeck.engine.errors import ChatBusyError, NotRunningError, TurnAbortedError
from agentdeck.engine.models import (
    ApprovalDecision,
    ConversationKey,
    InstanceBinding,
    SessionBinding,
    TurnConfig,
    TurnResult,
)
from agentdeck.engine.providers.base import AgentProvider

logger = logging.getLogger(__name__)

ProviderFactory = Callable[[InstanceBinding], AgentProvider]


class TurnRunner:
    """Serializes turns for one conversation."""

    def __init__(
        self,
        key: ConversationKey,
        provider: AgentProvider,
        instance: InstanceBinding | None = None,
        *,
        heartbeat_interval: float = 10.0,
        heartbeat_tick: float = 1.0,
    ) -> None:
        self.key = key
        self.provider = provider
        self.instance = instance or InstanceBinding()
        self._heartbeat_interval = heartbeat_interval
        self._heartbeat_tick = heartbeat_tick
        self._busy = False
        self._fingerprint: str | None = None
        self._call_task: asyncio.Task | None = None
        self._teardown_task: asyncio.Task | None = None
        self._last_activity = 0.0
        self._last_heartbeat = float("-inf")

    @property
    def busy(self) -> bool:
        return self._busy

    async def run_turn(
        self,
        prompt: str,
        config: TurnConfig,
        on_event: EventSink,
        cancel: asyncio.Event | None = None,
    ) -> TurnResult:
        """Run one prompt to completion.

        Raises ChatBusyError immediately if a turn is already running,
        TurnAbortedError if the turn was cancelled, and AgentError for
        backend failures.
        """
        if self._busy:
            raise ChatBusyError(str(self.key))
        self._busy = True
        self._teardown_task = None

        loop = asyncio.get_running_loop()
        started_at = loop.time()
        self._last_activity = started_at
        self._last_heartbeat = float("-inf")

        def emit(event: RunnerEvent) -> None:
            if not (isinstance(event, RawEvent) and event.is_progress):
                self._last_activity = loop.time()
            on_event(event)

        self.provider.set_event_sink(emit)
        heartbeat_task = asyncio.create_task(self._heartbeat_loop(emit, started_at))
        cancel_watch: asyncio.Task | None = None
        if cancel is not None:
            cancel_watch = asyncio.create_task(self._watch_cancel(cancel))

        try:
            next_fingerprint = config.fingerprint()
            if self.provider.has_session() and self._fingerprint != next_fingerprint:
                emit(progress_event(
                    "session_reset",
                    "session config changed; resetting agent session",
                ))
                self.provider.reset_session_state()

            starting = not self.provider.has_session()
            if starting:
                emit(progress_event(
                    "start_session",
                    f"starting new {self.provider.name} session "
                    f"(model={config.model or 'default'}, cwd={config.cwd or '(default)'})",
                ))
                call = self.provider.start_session(prompt, config)
            else:
                emit(progress_event(
                    "continue_session",
                    f"continuing {self.provider.name} session "
                    f"(model={config.model or 'default'})",
                ))
                call = self.provider.continue_session(prompt)

            self._call_task = asyncio.create_task(call)
            try:
                # wait() leaves the call running if we are cancelled, so the
                # teardown can unblock approvals before cancelling it.
                await asyncio.wait({self._call_task})
            except asyncio.CancelledError:
                await self._teardown("cancelled")
                raise

            if self._teardown_task is not None:
                await self._teardown_task
                if not self._call_task.cancelled():
                    # Consume the exception so it is not logged as unretrieved.
                    self._call_task.exception()
                raise TurnAbortedError(str(self.key))

            self._call_task.result()
            if starting:
                self._fingerprint = next_fingerprint
            logger.info("Turn finished key=%s", self.key)
            return TurnResult(
                usage=self.provider.last_usage,
                rate_limits=self.provider.last_rate_limits,
            )
        finally:
            heartbeat_task.cancel()
            if cancel_watch is not None:
                cancel_watch.cancel()
            self.provider.set_event_sink(None)
            self._call_task = None
            self._busy = False

    async def _heartbeat_loop(
        self, emit: Callable[[RunnerEvent], None], started_at: float,
    ) -> None:
        loop = asyncio.get_running_loop()
        while True:
            await asyncio.sleep(self._heartbeat_tick)
            now = loop.time()
            if now - self._last_activity < self._heartbeat_interval:
                continue
            if now - self._last_heartbeat < self._heartbeat_interval:
                continue
            self._last_heartbeat = now
            quiet = max(0, round(now - self._last_activity))
            pending = 1 if self.provider.has_pending_approvals() else 0
            emit(progress_event(
                "heartbeat",
                f"still running; quiet={quiet}s; pending_approval={pending}",
                {"since_ms": max(0, int((now - started_at) * 1000))},
            ))

    async def _watch_cancel(self, cancel: asyncio.Event) -> None:
        await cancel.wait()
        logger.info("Turn cancelled by caller key=%s", self.key)
        await self._teardown("caller")

    def _teardown(self, reason: str) -> asyncio.Task:
        """Start (or join) the single teardown for the current turn."""
        if self._teardown_task is None:
            self._teardown_task = asyncio.ensure_future(self._do_teardown(reason))
        return self._teardown_task

    async def _do_teardown(self, reason: str) -> None:
        logger.info("Tearing down turn key=%s reason=%s", self.key, reason)
        self.provider.abort_pending_approvals()
        await self.provider.cancel_turn()
        if self._call_task is not None and not self._call_task.done():
            self._call_task.cancel()
            await asyncio.wait({self._call_task})

    async def abort(self) -> None:
        """Abort the running turn; raises NotRunningError when idle."""
        if not self._busy:
            raise NotRunningError(str(self.key))
        await self._teardown("abort")

    def approve(self, approval_id: str, decision: ApprovalDecision | str) -> bool:
        return self.provider.resolve_approval(approval_id, decision)

    def has_pending_approval(self) -> bool:
        return self.provider.has_pending_approvals()

    def session_state(self) -> SessionBinding:
        return self.provider.session_state()


class TurnManager:
    """Registry of turn runners keyed by conversation."""

    def __init__(
        self,
        provider_factory: ProviderFactory,
        *,
        heartbeat_interval: float = 10.0,
        heartbeat_tick: float = 1.0,
    ) -> None:
        self._provider_factory = provider_factory
        self._heartbeat_interval = heartbeat_interval
        self._heartbeat_tick = heartbeat_tick
        self._runners: dict[ConversationKey, TurnRunner] = {}

    def get(self, key: ConversationKey) -> TurnRunner | None:
        return self._runners.get(key)

    async def _runner_for(
        self, key: ConversationKey, instance: InstanceBinding | None,
    ) -> TurnRunner:
        instance = instance or InstanceBinding()
        runner = self._runners.get(key)
        if runner is not None and runner.instance != instance:
            if runner.busy:
                raise ChatBusyError(str(key))
            logger.info(
                "Instance changed key=%s %s -> %s; rebuilding runner",
                key, runner.instance.instance_id, instance.instance_id,
            )
            del self._runners[key]
            await runner.provider.shutdown()
            runner = None
        if runner is None:
            runner = TurnRunner(
                key,
                self._provider_factory(instance),
                instance,
                heartbeat_interval=self._heartbeat_interval,
                heartbeat_tick=self._heartbeat_tick,
            )
            self._runners[key] = runner
        return runner

    async def run_turn(
        self,
        key: ConversationKey,
        prompt: str,
        config: TurnConfig,
        on_event: EventSink,
        cancel: asyncio.Event | None = None,
        instance: InstanceBinding | None = None,
    ) -> TurnResult:
        runner = await self._runner_for(key, instance)
        return await runner.run_turn(prompt, config, on_event, cancel)

    def is_busy(self, key: ConversationKey) -> bool:
        runner = self._runners.get(key)
        return runner is not None and runner.busy

    def has_pending_approval(self, key: ConversationKey) -> bool:
        runner = self._runners.get(key)
        return runner is not None and runner.has_pending_approval()

    def approve(
        self, key: ConversationKey, approval_id: str, decision: ApprovalDecision | str,
    ) -> bool:
        runner = self._runners.get(key)
        if runner is None:
            return False
        return runner.approve(approval_id, decision)

    async def abort(self, key: ConversationKey) -> None:
        runner = self._runners.get(key)
        if runner is None:
            raise NotRunningError(str(key))
        await runner.abort()

    async def reset(self, key: ConversationKey) -> None:
        """Drop the runner and its agent session; a new one is built on next turn."""
        runner = self._runners.pop(key, None)
        if runner is None:
            return
        if runner.busy:
            await runner.abort()
        await runner.provider.shutdown()
        logger.info("Runner reset key=%s", key)

    def usage(self, key: ConversationKey) -> dict[str, Any] | None:
        runner = self._runners.get(key)
        return runner.provider.last_usage if runner else None

    def rate_limits(self, key: ConversationKey) -> dict[str, Any] | None:
        runner = self._runners.get(key)
        return runner.provider.last_rate_limits if runner else None

    def session_state(self, key: ConversationKey) -> SessionBinding | None:
        runner = self._runners.get(key)
        return runner.session_state() if runner else None

    async def shutdown(self) -> None:
        runners = list(self._runners.values())
        self._runners.clear()
        for runner in runners:
            if runner.busy:
                await runner.abort()
            await runner.provider.shutdown()
