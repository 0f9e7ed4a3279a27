"""Anthropic Claude CLI provider.

Runs one ``claude -p --output-format stream-json`` process per turn
and translates its line-delimited JSON stdout into canonical events.
Follow-up turns resume the harvested session with ``--resume``.
"""
from __future__ import annotations

import asyncio
import collections
import json
import logging
import shutil
from typing import Any

from agentdeck.adapters.events import RawEvent
from agentdeck.engine.errors import AgentError, TurnAbortedError
from agentdeck.engine.models import ReasoningEffort, TurnConfig

from .base import AgentProvider

logger = logging.getLogger(__name__)

_STDERR_TAIL_LINES = 8

# The CLI has no xhigh tier.
_EFFORT_MAP = {
    ReasoningEffort.LOW: "low",
    ReasoningEffort.MEDIUM: "medium",
    ReasoningEffort.HIGH: "high",
    ReasoningEffort.XHIGH: "high",
}


class ClaudeProvider(AgentProvider):
    """Provider backed by the Claude CLI in stream-json mode."""

    def __init__(
        self,
        command: str = "claude",
        env: dict[str, str] | None = None,
        abort_grace_seconds: float = 1.2,
    ) -> None:
        super().__init__(env=env)
        self._command = self.resolve_command(command, "claude")
        self._abort_grace_seconds = abort_grace_seconds
        self._active_proc: asyncio.subprocess.Process | None = None
        self._aborted = False
        # The CLI finds sessions per project directory, so resumes reuse
        # the config the session was started with.
        self._session_config: TurnConfig | None = None

    @property
    def name(self) -> str:
        return "claude"

    def is_available(self) -> bool:
        return shutil.which(self._command) is not None

    def build_command(
        self,
        prompt: str,
        *,
        model: str | None = None,
        effort: ReasoningEffort | None = None,
        resume_session_id: str | None = None,
    ) -> list[str]:
        cmd = [
            self._command, "-p", "--verbose",
            "--output-format", "stream-json",
            "--include-partial-messages",
        ]
        if resume_session_id:
            cmd.extend(["--resume", resume_session_id])
        if model:
            cmd.extend(["--model", model])
        if effort is not None:
            cmd.extend(["--effort", _EFFORT_MAP[effort]])
        cmd.append(prompt)
        return cmd

    async def start_session(self, prompt: str, config: TurnConfig) -> dict[str, Any]:
        cmd = self.build_command(
            prompt, model=config.model, effort=config.reasoning_effort,
        )
        self._session_config = config
        await self._run_turn(cmd, cwd=config.cwd)
        return self._session_result()

    async def continue_session(self, prompt: str) -> dict[str, Any]:
        state = self.session_state()
        if state.session_id is None:
            raise AgentError("missing sessionId")
        config = self._session_config or TurnConfig()
        cmd = self.build_command(
            prompt,
            model=config.model,
            effort=config.reasoning_effort,
            resume_session_id=state.session_id,
        )
        await self._run_turn(cmd, cwd=config.cwd)
        return self._session_result()

    def _session_result(self) -> dict[str, Any]:
        return {"ok": True, "meta": self.session_state().to_dict()}

    def reset_session_state(self) -> None:
        super().reset_session_state()
        self._session_config = None

    # ── Turn execution ──

    async def _run_turn(self, cmd: list[str], cwd: str | None) -> None:
        self._begin_turn()
        self._aborted = False
        logger.info(
            "Claude turn starting resume=%s cwd=%s",
            "--resume" in cmd, cwd or "(default)",
        )
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env=self._build_env(),
                limit=16 * 1024 * 1024,
            )
        except FileNotFoundError:
            raise AgentError(f"'{self._command}' CLI not found") from None
        except OSError as exc:
            raise AgentError(f"Failed to start Claude CLI: {exc}") from exc

        self._active_proc = proc
        stderr_tail: collections.deque[str] = collections.deque(
            maxlen=_STDERR_TAIL_LINES
        )
        stderr_task = asyncio.create_task(self._drain_stderr(proc.stderr, stderr_tail))
        try:
            while True:
                line = await proc.stdout.readline()
                if not line:
                    break
                self._handle_stdout_line(line.decode("utf-8", errors="replace"))
            code = await proc.wait()
            await stderr_task
        except asyncio.CancelledError:
            await self._terminate(proc)
            raise
        finally:
            if not stderr_task.done():
                stderr_task.cancel()
            if self._active_proc is proc:
                self._active_proc = None

        if self._aborted:
            raise TurnAbortedError()
        if code != 0:
            raise AgentError(" | ".join(stderr_tail) or f"claude_exit_{code}")

    @staticmethod
    async def _drain_stderr(
        stream: asyncio.StreamReader | None,
        tail: collections.deque[str],
    ) -> None:
        if stream is None:
            return
        while True:
            line = await stream.readline()
            if not line:
                return
            text = line.decode("utf-8", errors="replace").strip()
            if text:
                tail.append(text)
                logger.debug("claude stderr: %s", text)

    def _handle_stdout_line(self, line: str) -> None:
        raw = line.strip()
        if not raw:
            return
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            self._emit(RawEvent(payload={"type": "claude_stdout", "line": raw}))
            return
        self._handle_json_line(payload)

    def _handle_json_line(self, payload: Any) -> None:
        self._observe_payload(payload)
        if isinstance(payload, dict):
            kind = payload.get("type")
            if kind == "stream_event" and isinstance(payload.get("event"), dict):
                event = payload["event"]
                delta = event.get("delta") if isinstance(event.get("delta"), dict) else {}
                if (
                    event.get("type") == "content_block_delta"
                    and delta.get("type") == "text_delta"
                ):
                    self._emit_assistant_text(delta.get("text"), primary=True)
            elif kind == "assistant":
                self._emit_assistant_text(
                    self._assistant_text(payload), primary=False,
                )
        self._emit(RawEvent(payload={"type": "claude_event", "data": payload}))

    @staticmethod
    def _assistant_text(payload: dict[str, Any]) -> str:
        message = payload.get("message")
        if not isinstance(message, dict) or not isinstance(message.get("content"), list):
            return ""
        return "".join(
            block["text"]
            for block in message["content"]
            if isinstance(block, dict)
            and block.get("type") == "text"
            and isinstance(block.get("text"), str)
        )

    # ── Teardown ──

    async def _terminate(self, proc: asyncio.subprocess.Process) -> None:
        """SIGTERM, then SIGKILL if still alive after the grace window."""
        if proc.returncode is not None:
            return
        try:
            proc.terminate()
            try:
                await asyncio.wait_for(proc.wait(), timeout=self._abort_grace_seconds)
            except asyncio.TimeoutError:
                logger.warning(
                    "Claude process pid=%d ignored SIGTERM; killing", proc.pid,
                )
                proc.kill()
                await proc.wait()
        except ProcessLookupError:
            pass

    async def cancel_turn(self) -> None:
        await super().cancel_turn()
        proc = self._active_proc
        if proc is None:
            return
        self._aborted = True
        logger.info("Claude turn aborted (pid=%d)", proc.pid)
        await self._terminate(proc)

    async def shutdown(self) -> None:
        await self.cancel_turn()
