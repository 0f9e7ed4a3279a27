"""HTTP client for the gateway daemon.

Implements TurnService on top of the gateway's polling protocol and
keeps the per-conversation "known cursor": the highest remote event
id already mirrored into the local stream.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import subprocess
import sys
from typing import Any

import aiohttp

from agentdeck.adapters.events import (
    APPROVAL_REQUEST,
    DELTA,
    PASSTHROUGH,
    PROGRESS,
    RATE_LIMITS,
    TURN_ERROR,
    USAGE,
    AgentMessage,
    EventSink,
    RawEvent,
    StreamEvent,
    dict_to_event,
)
from agentdeck.engine.config import EngineConfig
from agentdeck.engine.errors import (
    AgentError,
    ChatBusyError,
    GatewayRequestError,
    GatewayUnavailableError,
    NotRunningError,
    TurnAbortedError,
)
from agentdeck.engine.models import (
    ApprovalDecision,
    ConversationKey,
    InstanceBinding,
    SessionBinding,
    StreamStatus,
    TurnConfig,
    TurnResult,
)
from agentdeck.engine.service import TurnService

logger = logging.getLogger(__name__)

HEALTH_TIMEOUT_SECONDS = 1.2


def _key_params(key: ConversationKey) -> dict[str, str]:
    return {"sessionId": key.session_id, "chatId": key.chat_id}


class GatewayClient(TurnService):
    """Runs turns on the gateway daemon, respawning it when it is down."""

    remote = True

    def __init__(self, config: EngineConfig, config_path: str | None = None) -> None:
        self._config = config
        self._config_path = config_path
        self.base_url = config.gateway_url.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=config.gateway_request_timeout_seconds)
        self._session: aiohttp.ClientSession | None = None
        self._ensure_lock = asyncio.Lock()
        self._known_cursors: dict[ConversationKey, int] = {}

    # ── Known cursors ──

    def get_known_cursor(self, key: ConversationKey) -> int:
        return self._known_cursors.get(key, 0)

    def mark_known_cursor(self, key: ConversationKey, event_id: int) -> None:
        if event_id > self._known_cursors.get(key, 0):
            self._known_cursors[key] = event_id

    def reset_known_cursor(self, key: ConversationKey) -> None:
        self._known_cursors.pop(key, None)

    # ── Transport ──

    def _client_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=self._timeout,
                headers={"accept": "application/json"},
            )
        return self._session

    async def health_check(self, timeout: float = HEALTH_TIMEOUT_SECONDS) -> bool:
        try:
            async with self._client_session().get(
                f"{self.base_url}/health",
                timeout=aiohttp.ClientTimeout(total=timeout),
            ) as resp:
                if resp.status != 200:
                    return False
                body = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError):
            return False
        return isinstance(body, dict) and bool(body.get("ok"))

    def _spawn_gateway(self) -> None:
        cmd = [
            sys.executable, "-m", "agentdeck.app", "--gateway",
            "--port", str(self._config.gateway_port),
        ]
        if self._config_path:
            cmd += ["--config", self._config_path]
        try:
            subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
                env=os.environ.copy(),
            )
        except OSError as exc:
            logger.warning("Failed to spawn gateway via %s: %s", cmd[0], exc)
            return
        logger.info("Spawned gateway daemon for %s", self.base_url)

    async def ensure_started(self) -> None:
        """Health-check the gateway; spawn it and wait when allowed."""
        async with self._ensure_lock:
            if await self.health_check():
                return
            if not self._config.gateway_auto_start:
                raise GatewayUnavailableError(self.base_url, "health check failed")

            self._spawn_gateway()
            loop = asyncio.get_running_loop()
            deadline = loop.time() + self._config.gateway_start_deadline_seconds
            while loop.time() < deadline:
                if await self.health_check():
                    return
                await asyncio.sleep(self._config.gateway_health_poll_seconds)
            raise GatewayUnavailableError(self.base_url, "did not become healthy")

    async def request_json(
        self,
        path: str,
        *,
        method: str = "GET",
        params: dict[str, str] | None = None,
        body: dict[str, Any] | None = None,
        allow_not_found: bool = False,
        allow_conflict: bool = False,
        _retried: bool = False,
    ) -> dict[str, Any]:
        """One JSON round-trip.

        Transport failures trigger one ensure_started() and one retry.
        Non-2xx answers raise GatewayRequestError unless allowed by
        *allow_not_found* (404) or *allow_conflict* (409).
        """
        try:
            async with self._client_session().request(
                method, f"{self.base_url}{path}", params=params, json=body,
            ) as resp:
                status = resp.status
                text = await resp.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            if _retried:
                raise GatewayUnavailableError(self.base_url, str(exc) or type(exc).__name__) from exc
            logger.info("Gateway request %s %s failed (%s); retrying once", method, path, exc)
            await self.ensure_started()
            return await self.request_json(
                path, method=method, params=params, body=body,
                allow_not_found=allow_not_found, allow_conflict=allow_conflict,
                _retried=True,
            )

        try:
            parsed = json.loads(text) if text else {}
        except json.JSONDecodeError:
            parsed = {}
        if not isinstance(parsed, dict):
            parsed = {}
        if status >= 400:
            if status == 404 and allow_not_found:
                return parsed
            if status == 409 and allow_conflict:
                return parsed
            error = parsed.get("error")
            raise GatewayRequestError(status, error if isinstance(error, str) else f"http_{status}")
        return parsed

    # ── Queries ──

    async def get_runtime(self, key: ConversationKey) -> dict[str, Any]:
        body = await self.request_json("/v1/chats/runtime", params=_key_params(key))
        try:
            status = StreamStatus(body.get("status") or "idle")
        except ValueError:
            logger.debug("Unknown gateway status %r key=%s", body.get("status"), key)
            status = StreamStatus.IDLE
        return {
            "status": status,
            "lastEventId": int(body.get("lastEventId") or 0),
            "updatedAt": body.get("updatedAt"),
            "busy": bool(body.get("busy")),
        }

    async def list_events_since(self, key: ConversationKey, after: int) -> list[StreamEvent]:
        params = {**_key_params(key), "after": str(max(0, after))}
        body = await self.request_json("/v1/chats/events", params=params)
        events = body.get("events")
        if not isinstance(events, list):
            return []
        out: list[StreamEvent] = []
        for raw in events:
            try:
                out.append(StreamEvent.from_dict(raw))
            except (KeyError, TypeError, ValueError):
                logger.debug("Skipping malformed gateway event key=%s: %r", key, raw)
        return out

    async def is_busy(self, key: ConversationKey) -> bool:
        rt = await self.get_runtime(key)
        return rt["status"] is StreamStatus.RUNNING or rt["busy"]

    # ── Turns ──

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
        """Start a turn remotely and poll its events until it ends.

        Setting *cancel* aborts the remote turn. Cancelling the calling
        task only stops polling; the gateway keeps running the turn.
        """
        await self.ensure_started()
        self.reset_known_cursor(key)
        start = await self.request_json(
            "/v1/chats/start",
            method="POST",
            body={
                **_key_params(key),
                "prompt": prompt,
                "assistantMessageId": assistant_message_id,
                "instance": (instance or InstanceBinding()).to_dict(),
                "config": config.to_dict(),
            },
            allow_conflict=True,
        )
        if start.get("ok") is not True:
            error = start.get("error")
            if error == ChatBusyError.code:
                raise ChatBusyError(str(key))
            raise AgentError(error if isinstance(error, str) else "start_failed")

        after = 0
        result = TurnResult()
        turn_error = ""
        while True:
            if cancel is not None and cancel.is_set():
                await self._abort_quietly(key)
                raise TurnAbortedError(str(key))

            # Runtime first: events listed afterwards include everything
            # up to the status it reports.
            rt = await self.get_runtime(key)
            if after > rt["lastEventId"]:
                # A newer turn replaced the remote history.
                after = 0
                self.reset_known_cursor(key)

            for event in await self.list_events_since(key, after):
                after = event.id
                self.mark_known_cursor(key, event.id)
                turn_error = self._dispatch(event, on_event, result) or turn_error

            if rt["status"] is StreamStatus.DONE:
                return result
            if rt["status"] is StreamStatus.ERROR:
                if turn_error == "aborted":
                    raise TurnAbortedError(str(key))
                raise AgentError(turn_error or "agent_error")

            await self._pause(cancel)

    @staticmethod
    def _dispatch(event: StreamEvent, on_event: EventSink, result: TurnResult) -> str | None:
        """Forward one remote event; returns the message of a turn_error."""
        data = event.data
        if event.event == PROGRESS:
            if isinstance(data, dict):
                on_event(RawEvent(payload={**data, "type": "progress"}))
            else:
                on_event(RawEvent(payload={
                    "type": "progress", "stage": "progress", "message": str(data or ""),
                }))
        elif event.event == DELTA:
            if isinstance(data, dict) and isinstance(data.get("text"), str):
                on_event(AgentMessage(text=data["text"]))
        elif event.event == APPROVAL_REQUEST:
            if isinstance(data, dict):
                on_event(dict_to_event({"type": "approval_request", "request": data}))
        elif event.event == PASSTHROUGH:
            on_event(RawEvent(payload=data))
        elif event.event == USAGE:
            if isinstance(data, dict):
                result.usage = data
        elif event.event == RATE_LIMITS:
            if isinstance(data, dict):
                result.rate_limits = data
        elif event.event == TURN_ERROR:
            message = data.get("message") if isinstance(data, dict) else None
            return message if isinstance(message, str) else "agent_error"
        return None

    async def _pause(self, cancel: asyncio.Event | None) -> None:
        interval = self._config.remote_poll_interval_seconds
        if cancel is None:
            await asyncio.sleep(interval)
            return
        try:
            await asyncio.wait_for(cancel.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass

    async def _abort_quietly(self, key: ConversationKey) -> None:
        try:
            await self.abort(key)
        except NotRunningError:
            pass
        except (GatewayUnavailableError, GatewayRequestError) as exc:
            logger.warning("Remote abort failed key=%s: %s", key, exc)

    # ── Controls ──

    async def approve(
        self, key: ConversationKey, approval_id: str, decision: ApprovalDecision,
    ) -> bool:
        body = await self.request_json(
            "/v1/chats/approve",
            method="POST",
            body={**_key_params(key), "id": approval_id, "decision": decision.value},
            allow_not_found=True,
        )
        return body.get("ok") is True

    async def abort(self, key: ConversationKey) -> None:
        body = await self.request_json(
            "/v1/chats/abort",
            method="POST",
            body=_key_params(key),
            allow_conflict=True,
        )
        if body.get("ok") is not True:
            raise NotRunningError(str(key))

    async def reset(self, key: ConversationKey) -> None:
        await self.request_json("/v1/chats/reset", method="POST", body=_key_params(key))
        self.reset_known_cursor(key)

    async def usage(self, key: ConversationKey) -> dict[str, Any] | None:
        body = await self.request_json("/v1/chats/usage", params=_key_params(key))
        usage = body.get("usage")
        return usage if isinstance(usage, dict) else None

    async def rate_limits(self, key: ConversationKey) -> dict[str, Any] | None:
        body = await self.request_json("/v1/chats/rate-limits", params=_key_params(key))
        limits = body.get("rateLimits")
        return limits if isinstance(limits, dict) else None

    async def session_state(self, key: ConversationKey) -> SessionBinding | None:
        body = await self.request_json("/v1/chats/session", params=_key_params(key))
        session = body.get("session")
        if not isinstance(session, dict):
            return None

        def _str(value: Any) -> str | None:
            return value if isinstance(value, str) else None

        return SessionBinding(
            session_id=_str(session.get("sessionId")),
            conversation_id=_str(session.get("conversationId")),
        )

    async def shutdown(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
