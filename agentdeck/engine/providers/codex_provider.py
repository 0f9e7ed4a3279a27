"""OpenAI Codex provider.

Manages a persistent ``codex mcp-server`` subprocess and drives it
with JSON-RPC 2.0 over stdio: ``tools/call codex`` starts a session,
``tools/call codex-reply`` continues it. While a call is in flight the
server streams ``codex/event`` notifications and may send
``elicitation/create`` requests asking the user to approve a command.
"""
from __future__ import annotations

import asyncio
import collections
import json
import logging
import shutil
from typing import Any

from agentdeck import __version__
from agentdeck.adapters.events import RawEvent
from agentdeck.engine.errors import AgentError
from agentdeck.engine.models import TurnConfig
from agentdeck.engine.payloads import harvest_response_identifiers

from .base import AgentProvider

logger = logging.getLogger(__name__)

MCP_PROTOCOL_VERSION = "2025-06-18"
_INITIALIZE_TIMEOUT_SECONDS = 30.0
_STDERR_TAIL_LINES = 8


class CodexProvider(AgentProvider):
    """Provider backed by ``codex mcp-server``.

    One provider instance serves one conversation; turns are
    serialized by the turn runner, so at most one tools/call is in
    flight. Notifications are read inline while waiting for that
    call's response.
    """

    def __init__(
        self,
        command: str = "codex",
        env: dict[str, str] | None = None,
    ) -> None:
        super().__init__(env=env)
        self._command = self.resolve_command(command, "codex")
        self._mcp_process: asyncio.subprocess.Process | None = None
        self._mcp_reader: asyncio.StreamReader | None = None
        self._mcp_writer: asyncio.StreamWriter | None = None
        self._stderr_task: asyncio.Task | None = None
        self._stderr_tail: collections.deque[str] = collections.deque(
            maxlen=_STDERR_TAIL_LINES
        )
        self._request_id: int = 0
        self._inflight_request_id: int | None = None
        self._server_request_tasks: set[asyncio.Task] = set()

    @property
    def name(self) -> str:
        return "codex"

    def is_available(self) -> bool:
        return shutil.which(self._command) is not None

    # ── Process management ──

    async def _ensure_mcp_server(self) -> None:
        """Start and initialize the mcp-server subprocess if not running."""
        if self._mcp_process is not None:
            if self._mcp_process.returncode is None:
                return
            logger.warning(
                "Codex MCP server exited (code=%s); restarting",
                self._mcp_process.returncode,
            )
            self._clear_process()

        try:
            # create_subprocess_exec passes args as array; no shell
            proc = await asyncio.create_subprocess_exec(
                self._command, "mcp-server",
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._build_env(),
                limit=16 * 1024 * 1024,
            )
        except FileNotFoundError:
            raise AgentError(f"'{self._command}' CLI not found") from None
        except OSError as exc:
            raise AgentError(f"Failed to start Codex MCP server: {exc}") from exc

        self._mcp_process = proc
        self._mcp_reader = proc.stdout
        self._mcp_writer = proc.stdin
        self._stderr_tail.clear()
        self._stderr_task = asyncio.create_task(self._drain_stderr(proc.stderr))
        logger.info("Codex MCP server started (pid=%d)", proc.pid)
        await self._initialize()

    async def _initialize(self) -> None:
        await self._mcp_request(
            "initialize",
            {
                "protocolVersion": MCP_PROTOCOL_VERSION,
                "capabilities": {"elicitation": {}},
                "clientInfo": {"name": "agentdeck", "version": __version__},
            },
            timeout=_INITIALIZE_TIMEOUT_SECONDS,
            ensure=False,
        )
        await self._send({"jsonrpc": "2.0", "method": "notifications/initialized"})

    async def _drain_stderr(self, stream: asyncio.StreamReader | None) -> None:
        if stream is None:
            return
        while True:
            line = await stream.readline()
            if not line:
                return
            text = line.decode("utf-8", errors="replace").strip()
            if text:
                self._stderr_tail.append(text)
                logger.debug("codex stderr: %s", text)

    def _clear_process(self) -> None:
        if self._stderr_task is not None:
            self._stderr_task.cancel()
        self._mcp_process = None
        self._mcp_reader = None
        self._mcp_writer = None
        self._stderr_task = None

    def _failure_message(self, fallback: str) -> str:
        tail = " | ".join(self._stderr_tail)
        return tail or fallback

    # ── JSON-RPC ──

    async def _send(self, message: dict[str, Any]) -> None:
        if self._mcp_writer is None:
            raise AgentError("Codex MCP server not running")
        self._mcp_writer.write(json.dumps(message).encode("utf-8") + b"\n")
        await self._mcp_writer.drain()

    async def _mcp_request(
        self,
        method: str,
        params: dict[str, Any],
        *,
        timeout: float | None = None,
        ensure: bool = True,
    ) -> dict[str, Any]:
        """Send a JSON-RPC request and read until its response arrives.

        Notifications and server requests that arrive first are
        dispatched as they are read.
        """
        if ensure:
            await self._ensure_mcp_server()

        self._request_id += 1
        request_id = self._request_id
        await self._send({
            "jsonrpc": "2.0",
            "id": request_id,
            "method": method,
            "params": params,
        })

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout if timeout is not None else None
        self._inflight_request_id = request_id
        try:
            while True:
                remaining = None
                if deadline is not None:
                    remaining = deadline - loop.time()
                    if remaining <= 0:
                        raise AgentError(f"Codex MCP {method} timed out")
                try:
                    line = await asyncio.wait_for(
                        self._mcp_reader.readline(), timeout=remaining,
                    )
                except asyncio.TimeoutError:
                    raise AgentError(f"Codex MCP {method} timed out") from None
                if not line:
                    raise AgentError(self._failure_message("codex_mcp_closed"))

                try:
                    message = json.loads(line.decode("utf-8", errors="replace"))
                except json.JSONDecodeError:
                    logger.debug("Skipping non-JSON MCP line from codex")
                    continue
                if not isinstance(message, dict):
                    continue

                if "method" in message:
                    self._dispatch_server_message(message)
                    continue

                response_id = message.get("id")
                if response_id != request_id:
                    # Late response to a cancelled request; ignore.
                    logger.debug("Ignoring MCP response for stale id=%s", response_id)
                    continue

                if "error" in message:
                    error = message["error"]
                    detail = error.get("message") if isinstance(error, dict) else error
                    raise AgentError(str(detail or "codex_error"))
                result = message.get("result")
                return result if isinstance(result, dict) else {}
        finally:
            self._inflight_request_id = None

    def _dispatch_server_message(self, message: dict[str, Any]) -> None:
        method = message.get("method")
        params = message.get("params") if isinstance(message.get("params"), dict) else {}
        if "id" in message:
            if method == "elicitation/create":
                self._spawn(self._answer_elicitation(message["id"], params))
            elif method == "ping":
                self._spawn(
                    self._send({"jsonrpc": "2.0", "id": message["id"], "result": {}})
                )
            else:
                logger.debug("Rejecting unsupported MCP server request %s", method)
                self._spawn(self._send({
                    "jsonrpc": "2.0",
                    "id": message["id"],
                    "error": {"code": -32601, "message": f"Method not found: {method}"},
                }))
            return
        if method == "codex/event":
            meta = params.get("_meta") if isinstance(params.get("_meta"), dict) else {}
            owner = meta.get("requestId")
            if owner is not None and owner != self._inflight_request_id:
                logger.debug("Dropping codex/event for stale request %s", owner)
                return
            self._handle_codex_event(params.get("msg"))
            return
        logger.debug("Ignoring MCP notification %s", method)

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._server_request_tasks.add(task)
        task.add_done_callback(self._server_request_tasks.discard)

    async def _answer_elicitation(self, rpc_id: Any, params: dict[str, Any]) -> None:
        decision = await self._request_approval(params)
        try:
            await self._send({
                "jsonrpc": "2.0",
                "id": rpc_id,
                "result": {"action": decision.to_elicit_action()},
            })
        except (AgentError, ConnectionError) as exc:
            logger.warning("Could not deliver approval decision: %s", exc)

    def _handle_codex_event(self, msg: Any) -> None:
        """Translate one codex/event message into canonical events."""
        self._observe_payload(msg)
        if not isinstance(msg, dict):
            self._emit(RawEvent(payload=msg))
            return

        kind = msg.get("type")
        if kind == "agent_message_delta" and isinstance(msg.get("delta"), str):
            self._emit_assistant_text(msg["delta"], primary=True)
            return
        if kind == "agent_message_content_delta":
            # Duplicate of agent_message_delta.
            return
        if kind == "agent_message" and isinstance(msg.get("message"), str):
            if self._emit_assistant_text(msg["message"], primary=False):
                return
        if kind == "raw_response_item":
            item = msg.get("item")
            if (
                isinstance(item, dict)
                and item.get("role") == "assistant"
                and isinstance(item.get("content"), list)
            ):
                for block in item["content"]:
                    if (
                        isinstance(block, dict)
                        and block.get("type") == "output_text"
                        and self._emit_assistant_text(block.get("text"), primary=False)
                    ):
                        return
        self._emit(RawEvent(payload=msg))

    # ── Sessions ──

    async def _call_tool(self, tool_name: str, arguments: dict[str, Any]) -> dict[str, Any]:
        self._begin_turn()
        result = await self._mcp_request(
            "tools/call", {"name": tool_name, "arguments": arguments},
        )
        harvest_response_identifiers(result, self._binding)
        self._observe_payload(result)
        if result.get("isError"):
            texts = [
                item.get("text", "")
                for item in result.get("content") or []
                if isinstance(item, dict) and item.get("type") == "text"
            ]
            raise AgentError("\n".join(t for t in texts if t) or "codex_tool_error")
        return result

    async def start_session(self, prompt: str, config: TurnConfig) -> dict[str, Any]:
        arguments: dict[str, Any] = {"prompt": prompt}
        if config.cwd:
            arguments["cwd"] = config.cwd
        if config.sandbox:
            arguments["sandbox"] = config.sandbox.value
        if config.approval_policy:
            arguments["approval-policy"] = config.approval_policy.value
        if config.model:
            arguments["model"] = config.model
        if config.reasoning_effort:
            arguments["config"] = {
                "model_reasoning_effort": config.reasoning_effort.value,
            }
        logger.info(
            "Codex session starting model=%s cwd=%s",
            config.model or "default", config.cwd or "(default)",
        )
        return await self._call_tool("codex", arguments)

    async def continue_session(self, prompt: str) -> dict[str, Any]:
        state = self.session_state()
        if state.session_id is None:
            raise AgentError("missing sessionId")
        return await self._call_tool(
            "codex-reply",
            {
                "sessionId": state.session_id,
                "conversationId": state.conversation_id,
                "prompt": prompt,
            },
        )

    async def cancel_turn(self) -> None:
        await super().cancel_turn()
        request_id = self._inflight_request_id
        if request_id is None or self._mcp_writer is None:
            return
        try:
            await self._send({
                "jsonrpc": "2.0",
                "method": "notifications/cancelled",
                "params": {"requestId": request_id, "reason": "aborted"},
            })
            logger.info("Codex MCP request %d cancelled", request_id)
        except (AgentError, ConnectionError) as exc:
            logger.warning("Could not send cancellation for request %d: %s", request_id, exc)

    async def shutdown(self) -> None:
        """Kill the MCP server subprocess."""
        await super().shutdown()
        for task in list(self._server_request_tasks):
            task.cancel()
        if self._mcp_process is not None:
            proc = self._mcp_process
            try:
                proc.terminate()
                try:
                    await asyncio.wait_for(proc.wait(), timeout=5.0)
                except asyncio.TimeoutError:
                    proc.kill()
                    await proc.wait()
                logger.info("Codex MCP server stopped (pid=%d)", proc.pid)
            except ProcessLookupError:
                pass
            finally:
                self._clear_process()
