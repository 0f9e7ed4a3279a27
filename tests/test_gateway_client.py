from __future__ import annotations

import asyncio

import pytest
from aiohttp.test_utils import AioHTTPTestCase

from agentdeck.adapters.events import AgentMessage, RawEvent
from agentdeck.engine.config import EngineConfig
from agentdeck.engine.errors import (
    AgentError,
    ChatBusyError,
    GatewayUnavailableError,
    NotRunningError,
    TurnAbortedError,
)
from agentdeck.engine.models import (
    ApprovalDecision,
    ConversationKey,
    InstanceBinding,
    TurnConfig,
)
from agentdeck.engine.providers.base import AgentProvider
from agentdeck.engine.turn_runner import TurnManager
from agentdeck.gateway.client import GatewayClient
from agentdeck.gateway.server import GatewayServer

KEY = ConversationKey("sid", "chat-1")


class _ScriptedProvider(AgentProvider):
    name = "fake"

    async def start_session(self, prompt, config):
        self._begin_turn()
        self._binding.session_id = "sess-1"
        return await self._turn(prompt)

    async def continue_session(self, prompt):
        self._begin_turn()
        return await self._turn(prompt)

    async def _turn(self, prompt):
        if prompt == "fail":
            raise AgentError("boom")
        self._emit_assistant_text("Hello", primary=True)
        if prompt == "wait":
            await asyncio.Event().wait()
        self.last_usage = {"total_tokens": 5}
        return {}

    def is_available(self):
        return True


class TestGatewayClient(AioHTTPTestCase):
    async def get_application(self):
        self.instances: list[InstanceBinding] = []
        self.gateway = GatewayServer(EngineConfig(), manager=TurnManager(self._build_provider))
        return self.gateway.app

    def _build_provider(self, instance):
        self.instances.append(instance)
        return _ScriptedProvider()

    async def asyncSetUp(self):
        await super().asyncSetUp()
        self.deck = GatewayClient(EngineConfig(
            gateway_host=self.server.host,
            gateway_port=self.server.port,
            gateway_auto_start=False,
            remote_poll_interval_seconds=0.01,
        ))

    async def asyncTearDown(self):
        await self.deck.shutdown()
        await super().asyncTearDown()

    async def _until_idle(self):
        for _ in range(400):
            if not await self.deck.is_busy(KEY):
                return
            await asyncio.sleep(0.005)
        raise AssertionError("remote turn still running")

    async def test_run_turn_streams_remote_events(self):
        events: list = []
        result = await self.deck.run_turn(
            KEY, "hi", TurnConfig(model="gpt-5"), events.append,
            assistant_message_id="m1",
        )

        assert [e.text for e in events if isinstance(e, AgentMessage)] == ["Hello"]
        stages = [e.payload["stage"] for e in events if isinstance(e, RawEvent) and e.is_progress]
        assert stages == ["start_session"]
        assert result.usage == {"total_tokens": 5}

        runtime = await self.deck.get_runtime(KEY)
        assert self.deck.get_known_cursor(KEY) == runtime["lastEventId"]
        session = await self.deck.session_state(KEY)
        assert session.session_id == "sess-1"
        assert await self.deck.usage(KEY) == {"total_tokens": 5}

    async def test_instance_backend_reaches_gateway(self):
        instance = InstanceBinding("work", agent_home="/homes/work", backend="claude")
        await self.deck.run_turn(KEY, "hi", TurnConfig(), lambda e: None, instance=instance)

        assert self.instances == [instance]

    async def test_remote_failure_surfaces_message(self):
        with pytest.raises(AgentError, match="boom"):
            await self.deck.run_turn(KEY, "fail", TurnConfig(), lambda e: None)

    async def test_start_while_busy_raises(self):
        resp = await self.client.post(
            "/v1/chats/start", json={"sessionId": "sid", "chatId": "chat-1", "prompt": "wait"},
        )
        assert resp.status == 200

        with pytest.raises(ChatBusyError):
            await self.deck.run_turn(KEY, "hi", TurnConfig(), lambda e: None)

        await self.deck.abort(KEY)
        await self._until_idle()
        with pytest.raises(NotRunningError):
            await self.deck.abort(KEY)

    async def test_cancel_event_aborts_remote_turn(self):
        cancel = asyncio.Event()
        task = asyncio.create_task(
            self.deck.run_turn(KEY, "wait", TurnConfig(), lambda e: None, cancel=cancel)
        )
        for _ in range(400):
            if self.gateway.manager.is_busy(KEY):
                break
            await asyncio.sleep(0.005)

        cancel.set()
        with pytest.raises(TurnAbortedError):
            await task
        await self._until_idle()
        events = await self.deck.list_events_since(KEY, 0)
        assert events[-1].data == {"message": "aborted"}

    async def test_unknown_approval_returns_false(self):
        assert await self.deck.approve(KEY, "nope", ApprovalDecision.DENIED) is False

    async def test_reset_clears_known_cursor(self):
        await self.deck.run_turn(KEY, "hi", TurnConfig(), lambda e: None)
        assert self.deck.get_known_cursor(KEY) > 0

        await self.deck.reset(KEY)

        assert self.deck.get_known_cursor(KEY) == 0
        assert await self.deck.session_state(KEY) is None


def test_known_cursor_only_moves_forward() -> None:
    client = GatewayClient(EngineConfig())
    client.mark_known_cursor(KEY, 5)
    client.mark_known_cursor(KEY, 3)
    assert client.get_known_cursor(KEY) == 5
    client.reset_known_cursor(KEY)
    assert client.get_known_cursor(KEY) == 0


@pytest.mark.asyncio
async def test_unreachable_gateway_without_auto_start() -> None:
    client = GatewayClient(EngineConfig(
        gateway_port=1,
        gateway_auto_start=False,
        gateway_request_timeout_seconds=0.5,
    ))
    try:
        with pytest.raises(GatewayUnavailableError):
            await client.get_runtime(KEY)
    finally:
        await client.shutdown()


def _unreachable_client(spawned: list, healthy_after_spawn: bool) -> GatewayClient:
    client = GatewayClient(EngineConfig(
        gateway_port=1,
        gateway_request_timeout_seconds=0.5,
        gateway_start_deadline_seconds=0.05,
        gateway_health_poll_seconds=0.01,
    ))

    async def health_check(timeout: float = 1.0) -> bool:
        return healthy_after_spawn and bool(spawned)

    client._spawn_gateway = lambda: spawned.append(True)  # type: ignore[method-assign]
    client.health_check = health_check  # type: ignore[method-assign]
    return client


def _count_attempts(client: GatewayClient) -> list[bool]:
    attempts: list[bool] = []
    original = client.request_json

    async def counting(path, **kwargs):
        attempts.append(kwargs.get("_retried", False))
        return await original(path, **kwargs)

    client.request_json = counting  # type: ignore[method-assign]
    return attempts


@pytest.mark.asyncio
async def test_transport_error_respawns_once_then_retries_once() -> None:
    spawned: list = []
    client = _unreachable_client(spawned, healthy_after_spawn=True)
    attempts = _count_attempts(client)
    try:
        with pytest.raises(GatewayUnavailableError) as excinfo:
            await client.get_runtime(KEY)
    finally:
        await client.shutdown()

    assert spawned == [True]
    assert attempts == [False, True]
    assert excinfo.value.code == "gateway_unavailable"


@pytest.mark.asyncio
async def test_respawned_gateway_that_never_turns_healthy() -> None:
    spawned: list = []
    client = _unreachable_client(spawned, healthy_after_spawn=False)
    attempts = _count_attempts(client)
    try:
        with pytest.raises(GatewayUnavailableError, match="did not become healthy"):
            await client.get_runtime(KEY)
    finally:
        await client.shutdown()

    assert spawned == [True]
    assert attempts == [False]
