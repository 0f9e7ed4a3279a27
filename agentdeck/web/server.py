"""Browser-facing HTTP server: chats, turns and the resumable event stream.

Turns run through a TurnService: in-process (``LocalTurnService``) or
on the gateway daemon (``GatewayClient``). Either way the streamed
events land in this process's StreamRegistry, which backs
``GET /api/chats/{chat_id}/stream``.

The browser session comes from the ``X-Session-Id`` header or the
``sid`` cookie.
"""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from aiohttp import web

from agentdeck.adapters.events import DONE, START, StreamEvent
from agentdeck.adapters.stream_buffer import SUBSCRIBER_CLOSED, StreamRegistry, SubscriberQueue
from agentdeck.adapters.turn_pump import TurnPump
from agentdeck.engine.config import EngineConfig
from agentdeck.engine.errors import ChatBusyError, NotFoundError, NotRunningError
from agentdeck.engine.models import (
    ApprovalDecision,
    ConversationKey,
    ReasoningEffort,
    StreamStatus,
    TurnConfig,
)
from agentdeck.engine.service import TurnService
from agentdeck.gateway.bridge import StreamReconciliationBridge
from agentdeck.gateway.client import GatewayClient
from agentdeck.shared.chat_store import Chat, ChatStore
from agentdeck.shared.http import (
    bad_request,
    deck_error_middleware,
    json_error,
    non_empty_str,
    read_json,
    request_logging_middleware,
)
from agentdeck.shared.persistence import ChatSnapshotFile

logger = logging.getLogger(__name__)

DEFAULT_SESSION_ID = "default"
MAX_PROMPT_CHARS = 20_000


def _parse_cursor(raw: str | None) -> int | None:
    if raw is None:
        return None
    try:
        return max(0, int(raw.strip()))
    except ValueError:
        return None


def _sse_frame(event: StreamEvent) -> bytes:
    data = json.dumps(event.data)
    return f"id: {event.id}\nevent: {event.event}\ndata: {data}\n\n".encode()


class DeckServer:
    """aiohttp application serving chats and their event streams."""

    def __init__(
        self,
        config: EngineConfig,
        service: TurnService,
        chat_store: ChatStore | None = None,
        streams: StreamRegistry | None = None,
    ) -> None:
        self._config = config
        self._host = config.host
        self._port = config.port
        self.service = service
        if chat_store is None:
            snapshot = ChatSnapshotFile(config.chat_store_path) if config.chat_store_path else None
            chat_store = ChatStore(snapshot, save_delay=config.chat_store_save_delay_seconds)
        self.chats = chat_store
        self.streams = streams or StreamRegistry(max_events=config.stream_max_events)
        self.bridge: StreamReconciliationBridge | None = None
        if isinstance(service, GatewayClient):
            self.bridge = StreamReconciliationBridge(service, self.streams, self.chats)

        self._turn_tasks: dict[ConversationKey, asyncio.Task] = {}
        self._starting: set[ConversationKey] = set()
        self._cancel_events: dict[ConversationKey, asyncio.Event] = {}
        self._sweep_task: asyncio.Task | None = None

        self._app = web.Application(
            middlewares=[request_logging_middleware, deck_error_middleware],
        )
        self._setup_routes()

    @property
    def app(self) -> web.Application:
        return self._app

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_get("/health", self._handle_health)
        r.add_post("/api/chats", self._handle_create_chat)
        r.add_get("/api/chats", self._handle_list_chats)
        r.add_get("/api/chats/{chat_id}", self._handle_get_chat)
        r.add_delete("/api/chats/{chat_id}", self._handle_delete_chat)
        r.add_post("/api/chats/{chat_id}/send_async", self._handle_send_async)
        r.add_post("/api/chats/{chat_id}/settings", self._handle_settings)
        r.add_get("/api/chats/{chat_id}/runtime", self._handle_runtime)
        r.add_get("/api/chats/{chat_id}/stream", self._handle_stream)
        r.add_post("/api/chats/{chat_id}/approve", self._handle_approve)
        r.add_post("/api/chats/{chat_id}/abort", self._handle_abort)
        r.add_post("/api/chats/{chat_id}/reset", self._handle_reset)
        r.add_get("/api/chats/{chat_id}/usage", self._handle_usage)

    # ── Helpers ──

    @staticmethod
    def _session_id(request: web.Request) -> str:
        return (
            non_empty_str(request.headers.get("X-Session-Id"))
            or non_empty_str(request.cookies.get("sid"))
            or DEFAULT_SESSION_ID
        )

    def _chat_for(self, request: web.Request) -> tuple[ConversationKey, Chat]:
        session_id = self._session_id(request)
        chat_id = request.match_info["chat_id"]
        chat = self.chats.get_chat(session_id, chat_id)
        if chat is None:
            raise NotFoundError("chat", chat_id)
        return ConversationKey(session_id=session_id, chat_id=chat_id), chat

    def owns_turn(self, key: ConversationKey) -> bool:
        """True while this process is pumping the conversation's turn."""
        task = self._turn_tasks.get(key)
        return task is not None and not task.done()

    def _turn_config(self, chat: Chat, model: str | None) -> TurnConfig:
        settings = chat.settings
        return TurnConfig(
            cwd=settings.get("cwd") or self._config.default_cwd,
            sandbox=self._config.default_sandbox,
            approval_policy=self._config.default_approval_policy,
            model=model or settings.get("model") or self._config.default_model,
            reasoning_effort=(
                settings.get("reasoning_effort") or self._config.default_reasoning_effort
            ),
        )

    async def reconcile(self, key: ConversationKey) -> dict[str, Any]:
        """Runtime of the local stream, healing a ``running`` nobody drives."""
        if self.bridge is not None:
            return await self.bridge.reconcile_runtime_status(key)
        if self.streams.status(key) is StreamStatus.RUNNING and not self.owns_turn(key):
            logger.info("Reconciled stuck running stream key=%s", key)
            self.streams.append_event(key, DONE, {"ok": True, "reconciled": True})
        return self.streams.runtime(key)

    # ── Turns ──

    async def start_chat_turn(
        self, session_id: str, chat_id: str, text: str, model: str | None = None,
    ) -> str:
        """Append the exchange to the chat and pump the turn in the background.

        Returns the id of the (initially empty) assistant message that
        streamed text is appended to.
        """
        chat = self.chats.get_chat(session_id, chat_id)
        if chat is None:
            raise NotFoundError("chat", chat_id)
        key = ConversationKey(session_id=session_id, chat_id=chat_id)
        if self.owns_turn(key) or key in self._starting:
            raise ChatBusyError(str(key))
        # Held across the remote busy check; everything after it up to
        # registering the task runs without yielding.
        self._starting.add(key)
        try:
            if await self.service.is_busy(key):
                raise ChatBusyError(str(key))
        finally:
            self._starting.discard(key)
        if self.chats.get_chat(session_id, chat_id) is not chat:
            # Deleted while the busy check was in flight.
            raise NotFoundError("chat", chat_id)

        config = self._turn_config(chat, model)
        self.chats.append_message(session_id, chat_id, "user", text)
        assistant = self.chats.append_message(session_id, chat_id, "assistant", "")

        self.streams.reset_stream(key)
        self.streams.append_event(key, START, {"ok": True, "assistantMessageId": assistant.id})
        if isinstance(self.service, GatewayClient):
            self.service.reset_known_cursor(key)

        def on_text(delta: str) -> None:
            try:
                self.chats.append_to_message_text(session_id, chat_id, assistant.id, delta)
            except KeyError:
                # Chat deleted mid-turn.
                pass

        pump = TurnPump(self.streams, key, assistant.id, on_text=on_text)
        cancel = asyncio.Event()
        self._cancel_events[key] = cancel

        async def call(sink):
            return await self.service.run_turn(
                key, text, config, sink,
                cancel=cancel,
                instance=self._config.default_instance(),
                assistant_message_id=assistant.id,
            )

        task = asyncio.create_task(pump.run(call))
        self._turn_tasks[key] = task
        if self.bridge is not None:
            self.bridge.local_turn_pumps.add(key)
        task.add_done_callback(lambda t, k=key: self._forget_turn(k, t))
        logger.info("Chat turn started key=%s assistant=%s", key, assistant.id[:8])
        return assistant.id

    def _forget_turn(self, key: ConversationKey, task: asyncio.Task) -> None:
        if self._turn_tasks.get(key) is not task:
            return
        del self._turn_tasks[key]
        self._cancel_events.pop(key, None)
        if self.bridge is not None:
            self.bridge.local_turn_pumps.discard(key)

    async def _stop_conversation(self, key: ConversationKey) -> None:
        """Abort whatever runs for *key* and drop the agent session."""
        cancel = self._cancel_events.get(key)
        if cancel is not None:
            cancel.set()
        try:
            await self.service.abort(key)
        except NotRunningError:
            pass
        await self.service.reset(key)
        task = self._turn_tasks.get(key)
        if task is not None and not task.done():
            await asyncio.wait({task})

    # ── Handlers ──

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "ok": True,
            "gatewayMode": self._config.gateway_mode,
            "backend": self._config.backend,
        })

    async def _handle_create_chat(self, request: web.Request) -> web.Response:
        chat = self.chats.create_chat(self._session_id(request))
        return web.json_response({"ok": True, "chatId": chat.id})

    async def _handle_list_chats(self, request: web.Request) -> web.Response:
        chats = self.chats.list_chats(self._session_id(request))
        return web.json_response({"ok": True, "chats": [c.summary() for c in chats]})

    async def _handle_get_chat(self, request: web.Request) -> web.Response:
        _, chat = self._chat_for(request)
        return web.json_response({"ok": True, "chat": chat.to_dict()})

    async def _handle_delete_chat(self, request: web.Request) -> web.Response:
        key, _ = self._chat_for(request)
        await self._stop_conversation(key)
        self.streams.drop(key)
        if not self.chats.delete_chat(key.session_id, key.chat_id):
            raise NotFoundError("chat", key.chat_id)
        logger.info("Chat deleted key=%s", key)
        return web.json_response({"ok": True})

    async def _handle_send_async(self, request: web.Request) -> web.Response:
        key, _ = self._chat_for(request)
        body = await read_json(request)
        if body is None:
            return bad_request()
        text = body.get("text")
        model = body.get("model")
        if not isinstance(text, str) or not text.strip() or len(text) > MAX_PROMPT_CHARS:
            return bad_request()
        if model is not None and non_empty_str(model) is None:
            return bad_request()
        assistant_id = await self.start_chat_turn(
            key.session_id, key.chat_id, text, non_empty_str(model),
        )
        return web.json_response({"ok": True, "assistantMessageId": assistant_id})

    async def _handle_settings(self, request: web.Request) -> web.Response:
        key, chat = self._chat_for(request)
        body = await read_json(request)
        if body is None:
            return bad_request()
        patch: dict[str, str | None] = {}
        for wire, field_name in (("model", "model"), ("cwd", "cwd")):
            if wire in body:
                value = body[wire]
                if value is not None and non_empty_str(value) is None:
                    return bad_request()
                patch[field_name] = non_empty_str(value)
        if "reasoningEffort" in body:
            effort = body["reasoningEffort"]
            if effort is not None:
                try:
                    effort = ReasoningEffort(effort).value
                except ValueError:
                    return bad_request()
            patch["reasoning_effort"] = effort
        self.chats.update_settings(key.session_id, key.chat_id, patch)
        return web.json_response({"ok": True, "settings": chat.settings_dict()})

    async def _handle_runtime(self, request: web.Request) -> web.Response:
        key, _ = self._chat_for(request)
        rt = await self.reconcile(key)
        return web.json_response({"ok": True, **rt})

    async def _handle_stream(self, request: web.Request) -> web.StreamResponse:
        key, _ = self._chat_for(request)
        # Last-Event-ID wins so EventSource auto-reconnect resumes correctly.
        after = _parse_cursor(request.headers.get("Last-Event-ID"))
        if after is None:
            after = _parse_cursor(request.query.get("after")) or 0

        response = web.StreamResponse(
            status=200,
            headers={
                "Content-Type": "text/event-stream; charset=utf-8",
                "Cache-Control": "no-cache, no-transform",
                "Connection": "keep-alive",
            },
        )
        await response.prepare(request)

        rt = await self.reconcile(key)
        queue = self.streams.subscribe(key)
        backlog = self.streams.list_since(key, after)
        logger.info(
            "Stream opened key=%s after=%d backlog=%d status=%s req=%s",
            key, after, len(backlog), rt["status"], request.get("req_id", "-"),
        )
        try:
            for event in backlog:
                await response.write(_sse_frame(event))
            if rt["status"] != StreamStatus.RUNNING.value:
                return response
            await self._follow_stream(key, queue, response)
        except ConnectionResetError:
            logger.debug("Stream client went away key=%s", key)
        except asyncio.CancelledError:
            pass
        finally:
            self.streams.unsubscribe(key, queue)
        return response

    async def _follow_stream(
        self,
        key: ConversationKey,
        queue: SubscriberQueue,
        response: web.StreamResponse,
    ) -> None:
        """Write live events until a terminal one (or completion is detected).

        Returns early when the registry drops this subscriber; the client
        then reconnects with Last-Event-ID and replays what it missed.
        """
        loop = asyncio.get_running_loop()
        keepalive = self._config.keepalive_seconds
        last_write = loop.time()
        while True:
            # Without a local pump only polling notices that the turn ended.
            polling = not self.owns_turn(key)
            timeout = self._config.poll_interval_seconds if polling else keepalive
            try:
                event = await asyncio.wait_for(queue.get(), timeout=timeout)
            except asyncio.TimeoutError:
                if polling:
                    rt = await self.reconcile(key)
                    if rt["status"] != StreamStatus.RUNNING.value:
                        while not queue.empty():
                            event = queue.get_nowait()
                            if event is SUBSCRIBER_CLOSED:
                                break
                            await response.write(_sse_frame(event))
                        return
                if loop.time() - last_write >= keepalive:
                    await response.write(b": keepalive\n\n")
                    last_write = loop.time()
                continue
            if event is SUBSCRIBER_CLOSED:
                logger.info("Stream subscriber dropped key=%s; client must resume", key)
                return
            await response.write(_sse_frame(event))
            last_write = loop.time()
            if event.is_terminal:
                return

    async def _handle_approve(self, request: web.Request) -> web.Response:
        key, _ = self._chat_for(request)
        body = await read_json(request)
        if body is None:
            return bad_request()
        approval_id = non_empty_str(body.get("id"))
        raw_decision = non_empty_str(body.get("decision"))
        if approval_id is None or raw_decision is None:
            return bad_request()
        try:
            decision = ApprovalDecision(raw_decision)
        except ValueError:
            return bad_request()
        if not await self.service.approve(key, approval_id, decision):
            return json_error("not_found", 404)
        return web.json_response({"ok": True})

    async def _handle_abort(self, request: web.Request) -> web.Response:
        key, _ = self._chat_for(request)
        await self.service.abort(key)
        return web.json_response({"ok": True})

    async def _handle_reset(self, request: web.Request) -> web.Response:
        key, _ = self._chat_for(request)
        await self._stop_conversation(key)
        self.streams.reset_stream(key)
        self.streams.mark_idle(key)
        return web.json_response({"ok": True})

    async def _handle_usage(self, request: web.Request) -> web.Response:
        key, _ = self._chat_for(request)
        usage = await self.service.usage(key)
        rate_limits = await self.service.rate_limits(key)
        session = await self.service.session_state(key)
        return web.json_response({
            "ok": True,
            "usage": usage,
            "rateLimits": rate_limits,
            "session": session.to_dict() if session else None,
        })

    # ── Lifecycle ──

    def sweep_once(self) -> None:
        self.streams.sweep(self._config.stream_idle_ttl_seconds)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.sweep_interval_seconds)
            try:
                self.sweep_once()
            except Exception:
                logger.exception("Stream sweep failed")

    async def start(self) -> None:
        """Serve until cancelled."""
        runner = web.AppRunner(self._app)
        await runner.setup()
        site = web.TCPSite(runner, self._host, self._port)
        await site.start()
        logger.info(
            "Deck server listening on %s:%d gateway_mode=%s",
            self._host, self._port, self._config.gateway_mode,
        )

        self._sweep_task = asyncio.create_task(self._sweep_loop())
        try:
            await asyncio.Event().wait()
        except (KeyboardInterrupt, asyncio.CancelledError):
            logger.info("Deck server shutting down")
        finally:
            self._sweep_task.cancel()
            pending = [t for t in self._turn_tasks.values() if not t.done()]
            if pending and not self.service.remote:
                # Local turns die with this process; remote ones keep running.
                for cancel in self._cancel_events.values():
                    cancel.set()
                await asyncio.wait(pending, timeout=self._config.abort_grace_seconds * 2)
            for task in pending:
                task.cancel()
            await self.service.shutdown()
            self.chats.close()
            await runner.cleanup()
