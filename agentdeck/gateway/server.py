"""Gateway daemon: owns turn runners so they outlive the web server.

HTTP API (one conversation per call, identified by ``sessionId`` and
``chatId`` in the JSON body or query string):

  GET  /health
  POST /v1/chats/start        {prompt, config?, instance?, assistantMessageId?}
  GET  /v1/chats/events       ?after=N
  GET  /v1/chats/runtime
  POST /v1/chats/approve      {id, decision}
  POST /v1/chats/abort
  POST /v1/chats/reset
  GET  /v1/chats/usage
  GET  /v1/chats/rate-limits
  GET  /v1/chats/session
"""
from __future__ import annotations

import asyncio
import logging
import os
import time
from typing import Any

from aiohttp import web

from agentdeck.adapters.events import DONE, START
from agentdeck.adapters.stream_buffer import StreamRegistry
from agentdeck.adapters.turn_pump import TurnPump
from agentdeck.engine.config import EngineConfig
from agentdeck.engine.errors import NotRunningError
from agentdeck.engine.models import (
    ApprovalDecision,
    ConversationKey,
    InstanceBinding,
    StreamStatus,
    TurnConfig,
)
from agentdeck.engine.providers.registry import ProviderRegistry
from agentdeck.engine.turn_runner import TurnManager
from agentdeck.shared.http import (
    bad_request,
    error_response,
    json_error,
    non_empty_str,
    read_json,
    request_logging_middleware,
)

logger = logging.getLogger(__name__)


def _key_from(source: Any) -> ConversationKey | None:
    session_id = non_empty_str(source.get("sessionId"))
    chat_id = non_empty_str(source.get("chatId"))
    if session_id is None or chat_id is None:
        return None
    return ConversationKey(session_id=session_id, chat_id=chat_id)


class GatewayServer:
    """aiohttp application exposing TurnManager over HTTP."""

    def __init__(
        self,
        config: EngineConfig,
        manager: TurnManager | None = None,
        streams: StreamRegistry | None = None,
    ) -> None:
        self._config = config
        self._host = config.gateway_host
        self._port = config.gateway_port
        self.manager = manager or TurnManager(
            ProviderRegistry(config),
            heartbeat_interval=config.heartbeat_interval_seconds,
            heartbeat_tick=config.heartbeat_tick_seconds,
        )
        self.streams = streams or StreamRegistry(max_events=config.gateway_stream_max_events)
        self._turn_tasks: dict[ConversationKey, asyncio.Task] = {}
        self._sweep_task: asyncio.Task | None = None

        self._app = web.Application(middlewares=[request_logging_middleware])
        self._setup_routes()

    @property
    def app(self) -> web.Application:
        return self._app

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_get("/health", self._handle_health)
        r.add_post("/v1/chats/start", self._handle_start)
        r.add_get("/v1/chats/events", self._handle_events)
        r.add_get("/v1/chats/runtime", self._handle_runtime)
        r.add_post("/v1/chats/approve", self._handle_approve)
        r.add_post("/v1/chats/abort", self._handle_abort)
        r.add_post("/v1/chats/reset", self._handle_reset)
        r.add_get("/v1/chats/usage", self._handle_usage)
        r.add_get("/v1/chats/rate-limits", self._handle_rate_limits)
        r.add_get("/v1/chats/session", self._handle_session)

    def is_busy(self, key: ConversationKey) -> bool:
        """A turn counts as busy from the moment start is accepted."""
        task = self._turn_tasks.get(key)
        return self.manager.is_busy(key) or (task is not None and not task.done())

    # ── Handlers ──

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "ok": True,
            "pid": os.getpid(),
            "time": int(time.time() * 1000),
        })

    async def _handle_start(self, request: web.Request) -> web.Response:
        body = await read_json(request)
        if body is None:
            return bad_request()
        key = _key_from(body)
        prompt = non_empty_str(body.get("prompt"))
        if key is None or prompt is None:
            return bad_request()
        raw_config = body.get("config")
        raw_instance = body.get("instance")
        if raw_config is not None and not isinstance(raw_config, dict):
            return bad_request()
        if raw_instance is not None and not isinstance(raw_instance, dict):
            return bad_request()
        try:
            config = TurnConfig.from_dict(raw_config)
        except ValueError as exc:
            logger.info("Rejecting start key=%s: %s", key, exc)
            return bad_request()
        instance = InstanceBinding.from_dict(raw_instance)
        assistant_message_id = non_empty_str(body.get("assistantMessageId"))

        if self.is_busy(key):
            return json_error("chat_busy", 409)

        self.streams.reset_stream(key)
        self.streams.append_event(key, START, {
            "ok": True,
            "assistantMessageId": assistant_message_id,
            "instanceId": instance.instance_id,
        })
        pump = TurnPump(self.streams, key, assistant_message_id)

        async def call(sink):
            return await self.manager.run_turn(
                key, prompt, config, sink, instance=instance,
            )

        task = asyncio.create_task(pump.run(call))
        self._turn_tasks[key] = task
        task.add_done_callback(lambda t, k=key: self._forget_task(k, t))
        logger.info(
            "Turn started key=%s instance=%s prompt_len=%d",
            key, instance.instance_id, len(prompt),
        )
        return web.json_response({"ok": True})

    def _forget_task(self, key: ConversationKey, task: asyncio.Task) -> None:
        if self._turn_tasks.get(key) is task:
            del self._turn_tasks[key]

    async def _handle_events(self, request: web.Request) -> web.Response:
        key = _key_from(request.query)
        if key is None:
            return bad_request()
        try:
            after = int(request.query.get("after", "0"))
        except ValueError:
            return bad_request()
        events = self.streams.list_since(key, max(0, after))
        return web.json_response({"ok": True, "events": [e.to_dict() for e in events]})

    async def _handle_runtime(self, request: web.Request) -> web.Response:
        key = _key_from(request.query)
        if key is None:
            return bad_request()
        busy = self.is_busy(key)
        if self.streams.status(key) is StreamStatus.RUNNING and not busy:
            self._reconcile(key)
        return web.json_response({"ok": True, "busy": busy, **self.streams.runtime(key)})

    def _reconcile(self, key: ConversationKey) -> None:
        logger.info("Reconciling stuck running stream key=%s", key)
        self.streams.append_event(key, DONE, {"ok": True, "reconciled": True})

    async def _handle_approve(self, request: web.Request) -> web.Response:
        body = await read_json(request)
        if body is None:
            return bad_request()
        key = _key_from(body)
        approval_id = non_empty_str(body.get("id"))
        raw_decision = non_empty_str(body.get("decision"))
        if key is None or approval_id is None or raw_decision is None:
            return bad_request()
        try:
            decision = ApprovalDecision(raw_decision)
        except ValueError:
            return bad_request()
        if not self.manager.approve(key, approval_id, decision):
            return json_error("not_found", 404)
        return web.json_response({"ok": True})

    async def _handle_abort(self, request: web.Request) -> web.Response:
        body = await read_json(request)
        if body is None:
            return bad_request()
        key = _key_from(body)
        if key is None:
            return bad_request()
        try:
            await self.manager.abort(key)
        except NotRunningError as exc:
            return error_response(exc)
        return web.json_response({"ok": True})

    async def _handle_reset(self, request: web.Request) -> web.Response:
        body = await read_json(request)
        if body is None:
            return bad_request()
        key = _key_from(body)
        if key is None:
            return bad_request()
        await self.reset_conversation(key)
        return web.json_response({"ok": True})

    async def reset_conversation(self, key: ConversationKey) -> None:
        """Abort, drop the runner and its agent session, force the stream idle."""
        task = self._turn_tasks.get(key)
        await self.manager.reset(key)
        if task is not None and not task.done():
            # Let the pump write its terminal event before the log is cleared.
            await asyncio.wait({task})
        self.streams.reset_stream(key)
        self.streams.mark_idle(key)
        logger.info("Conversation reset key=%s", key)

    async def _handle_usage(self, request: web.Request) -> web.Response:
        key = _key_from(request.query)
        if key is None:
            return bad_request()
        return web.json_response({"ok": True, "usage": self.manager.usage(key)})

    async def _handle_rate_limits(self, request: web.Request) -> web.Response:
        key = _key_from(request.query)
        if key is None:
            return bad_request()
        return web.json_response({
            "ok": True,
            "rateLimits": self.manager.rate_limits(key),
        })

    async def _handle_session(self, request: web.Request) -> web.Response:
        key = _key_from(request.query)
        if key is None:
            return bad_request()
        binding = self.manager.session_state(key)
        return web.json_response({
            "ok": True,
            "session": binding.to_dict() if binding else None,
        })

    # ── Maintenance ──

    def sweep_once(self) -> None:
        for key in self.streams.running_keys():
            if not self.is_busy(key):
                self._reconcile(key)
        self.streams.sweep(self._config.gateway_idle_ttl_seconds)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.sweep_interval_seconds)
            try:
                self.sweep_once()
            except Exception:
                logger.exception("Gateway sweep failed")

    @staticmethod
    def _resolve_port(site, runner) -> int | None:
        server = getattr(site, "_server", None)
        sockets = getattr(server, "sockets", None) or []
        for sock in sockets:
            return sock.getsockname()[1]
        for addr in getattr(runner, "addresses", None) or []:
            if isinstance(addr, tuple) and len(addr) >= 2:
                return int(addr[1])
        return None

    async def start(self) -> None:
        """Serve until cancelled, then shut down every runner."""
        runner = web.AppRunner(self._app)
        await runner.setup()
        site = web.TCPSite(runner, self._host, self._port)
        await site.start()
        self._port = self._resolve_port(site, runner) or self._port
        logger.info("Gateway listening on %s:%d pid=%d", self._host, self._port, os.getpid())

        self._sweep_task = asyncio.create_task(self._sweep_loop())
        try:
            await asyncio.Event().wait()
        except (KeyboardInterrupt, asyncio.CancelledError):
            logger.info("Gateway shutting down")
        finally:
            self._sweep_task.cancel()
            for task in list(self._turn_tasks.values()):
                task.cancel()
            await self.manager.shutdown()
            await runner.cleanup()
