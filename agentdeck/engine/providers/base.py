"""Abstract base for agent providers.

Each provider wraps one agent runtime (Codex MCP server, Claude CLI)
for a single conversation. The turn runner calls start_session() for
the first turn and continue_session() for follow-ups. Everything the
agent reports is translated into canonical runner events and pushed
to the registered event sink.
"""
from __future__ import annotations

import abc
import asyncio
import itertools
import logging
import os
import shutil
import time
from typing import Any

from agentdeck.adapters.events import (
    AgentMessage,
    ApprovalRequested,
    EventSink,
    RunnerEvent,
)
from agentdeck.engine.models import (
    ApprovalDecision,
    ApprovalRequest,
    SessionBinding,
    TurnConfig,
)
from agentdeck.engine.payloads import (
    extract_rate_limits,
    extract_usage,
    harvest_identifiers,
)

logger = logging.getLogger(__name__)

# Backend fields that carry an approval correlation id, in priority order.
APPROVAL_ID_FIELDS = (
    "codex_call_id",
    "codex_mcp_tool_call_id",
    "codex_event_id",
    "call_id",
)


class AgentProvider(abc.ABC):
    """Abstract provider interface.

    Implementations:
    - CodexProvider: persistent ``codex mcp-server`` over JSON-RPC stdio
    - ClaudeProvider: one ``claude -p --output-format stream-json`` per turn

    The base class owns the state both backends share: the pending
    approval map, the per-turn "assistant text already emitted" flag,
    harvested session identifiers and last-seen usage/rate limits.
    """

    def __init__(self, env: dict[str, str] | None = None) -> None:
        self._env_overrides = dict(env or {})
        self._sink: EventSink | None = None
        self._binding = SessionBinding()
        self._pending_approvals: dict[str, asyncio.Future[ApprovalDecision]] = {}
        self._approval_seq = itertools.count(1)
        self._saw_text_in_flight = False
        self.last_usage: dict[str, Any] | None = None
        self.last_rate_limits: dict[str, Any] | None = None

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Short provider name (e.g. 'codex', 'claude')."""

    @abc.abstractmethod
    async def start_session(self, prompt: str, config: TurnConfig) -> dict[str, Any]:
        """Start a fresh agent session and run the first turn to completion."""

    @abc.abstractmethod
    async def continue_session(self, prompt: str) -> dict[str, Any]:
        """Run a follow-up turn in the bound agent session."""

    @abc.abstractmethod
    def is_available(self) -> bool:
        """Check if this provider's CLI is installed."""

    async def cancel_turn(self) -> None:
        """Tear down the in-flight turn.

        Pending approvals are resolved first; a backend blocked on an
        approval never exits otherwise.
        """
        self.abort_pending_approvals()

    async def shutdown(self) -> None:
        """Release long-lived resources. Default: unblock approvals."""
        self.abort_pending_approvals()

    # ── Event sink ──

    def set_event_sink(self, sink: EventSink | None) -> None:
        self._sink = sink

    def _emit(self, event: RunnerEvent) -> None:
        if self._sink is None:
            return
        try:
            self._sink(event)
        except Exception:
            # Never let a consumer error break the provider read loop.
            logger.exception("%s provider: event sink raised", self.name)

    def _begin_turn(self) -> None:
        self._saw_text_in_flight = False
        self.last_usage = None
        self.last_rate_limits = None

    def _emit_assistant_text(self, text: Any, *, primary: bool) -> bool:
        """Emit assistant text at most once per turn.

        Primary deltas always go through. Fallback channels (full
        message, raw content block) only when nothing was emitted yet.
        """
        if not isinstance(text, str) or not text:
            return False
        if not primary and self._saw_text_in_flight:
            return False
        self._emit(AgentMessage(text=text))
        self._saw_text_in_flight = True
        return True

    def _observe_payload(self, payload: Any) -> None:
        """Harvest identifiers, usage and rate limits from any payload."""
        harvest_identifiers(payload, self._binding)
        usage = extract_usage(payload)
        if usage is not None:
            self.last_usage = usage
        rate_limits = extract_rate_limits(payload)
        if rate_limits is not None:
            self.last_rate_limits = rate_limits

    # ── Session binding ──

    def has_session(self) -> bool:
        return self._binding.session_id is not None

    def session_state(self) -> SessionBinding:
        return SessionBinding(
            session_id=self._binding.session_id,
            conversation_id=(
                self._binding.conversation_id or self._binding.session_id
            ),
        )

    def reset_session_state(self) -> None:
        """Forget the agent session; the next turn starts a new one."""
        self.abort_pending_approvals()
        self._binding = SessionBinding()
        self._saw_text_in_flight = False
        self.last_usage = None
        self.last_rate_limits = None

    # ── Approvals ──

    def _next_approval_id(self) -> str:
        return f"{int(time.time() * 1000)}-{next(self._approval_seq)}"

    async def _request_approval(self, params: dict[str, Any]) -> ApprovalDecision:
        """Publish an approval request and wait for the user's decision."""
        approval_id = ""
        for key in APPROVAL_ID_FIELDS:
            value = params.get(key)
            if value:
                approval_id = str(value)
                break
        if not approval_id:
            approval_id = self._next_approval_id()

        superseded = self._pending_approvals.pop(approval_id, None)
        if superseded is not None and not superseded.done():
            logger.info(
                "%s provider: approval %s superseded by a new request",
                self.name, approval_id,
            )
            superseded.set_result(ApprovalDecision.ABORT)

        command = params.get("codex_command", params.get("command"))
        request = ApprovalRequest(
            id=approval_id,
            message=params.get("message") if isinstance(params.get("message"), str) else None,
            command=[str(c) for c in command] if isinstance(command, list) else None,
            cwd=next(
                (params[k] for k in ("codex_cwd", "cwd") if isinstance(params.get(k), str)),
                None,
            ),
        )

        future: asyncio.Future[ApprovalDecision] = (
            asyncio.get_running_loop().create_future()
        )
        self._pending_approvals[approval_id] = future
        logger.info("%s provider: approval requested id=%s", self.name, approval_id)
        try:
            self._emit(ApprovalRequested(request=request))
            return await future
        finally:
            if self._pending_approvals.get(approval_id) is future:
                del self._pending_approvals[approval_id]

    def has_pending_approvals(self) -> bool:
        return bool(self._pending_approvals)

    def resolve_approval(self, approval_id: str, decision: ApprovalDecision | str) -> bool:
        """Resolve a pending approval.

        Falls back to the single pending entry when the id does not
        match exactly. Returns False when nothing was resolved.
        """
        if not isinstance(decision, ApprovalDecision):
            decision = ApprovalDecision.parse(decision)
        key = approval_id
        future = self._pending_approvals.get(key)
        if future is None and len(self._pending_approvals) == 1:
            key, future = next(iter(self._pending_approvals.items()))
            logger.debug(
                "%s provider: approval id %s not found, using sole pending %s",
                self.name, approval_id, key,
            )
        if future is None:
            return False
        del self._pending_approvals[key]
        if future.done():
            return False
        future.set_result(decision)
        logger.info(
            "%s provider: approval %s resolved decision=%s",
            self.name, key, decision.value,
        )
        return True

    def abort_pending_approvals(self) -> int:
        """Resolve every pending approval to ``abort``; return the count."""
        futures = list(self._pending_approvals.values())
        self._pending_approvals.clear()
        count = 0
        for future in futures:
            if not future.done():
                future.set_result(ApprovalDecision.ABORT)
                count += 1
        if count:
            logger.info("%s provider: aborted %d pending approval(s)", self.name, count)
        return count

    # ── Subprocess helpers ──

    def _build_env(self) -> dict[str, str] | None:
        """Subprocess environment with instance overrides applied."""
        if not self._env_overrides:
            return None
        env = os.environ.copy()
        env.update(self._env_overrides)
        return env

    def resolve_command(self, command: str, fallback: str | None = None) -> str:
        """Resolve a CLI binary by preferring explicit command, then fallback.

        The command may point to a CLI that is not on PATH (custom
        wrappers, tests). In that case keep the raw value so callers can
        surface the configured command in error messages.
        """
        if command:
            if shutil.which(command):
                return command
            if fallback and shutil.which(fallback):
                logger.debug(
                    "Command %s not found; falling back to %s", command, fallback,
                )
                return fallback
            return command
        return fallback or command
