from __future__ import annotations

import asyncio
import json

import pytest
from aiohttp.test_utils import AioHTTPTestCase, TestClient, TestServer

from agentdeck.adapters.events import TURN_ERROR
from agentdeck.engine.config import EngineConfig
from agentdeck.engine.errors import ChatBusyError
from agentdeck.engine.models import ConversationKey, StreamStatus
from agentdeck.engine.providers.base import AgentProvider
from agentdeck.engine.service import LocalTurnService
from agentdeck.engine.turn_runner import TurnManager
from agentdeck.gateway.bridge import StreamReconciliationBridge
from agentdeck.gateway.client import GatewayClient
from agentdeck.gateway.server import GatewayServer
from agentdeck.web.server import DeckServer


class _ScriptedProvider(AgentProvider):
    name = "fake"

    def __init__(self, configs: list) -> None:
        super().__init__()
        self._configs = configs

    async def start_session(self, prompt, config):
        self._begin_turn()
        self._configs.append(config)
        self._binding.session_id = "sess-1"
        return await self._turn(prompt)

    async def continue_session(self, prompt):
        self._begin_turn()
        return await self._turn(prompt)

    async def _turn(self, prompt):
        self._emit_assistant_text("Hello", primary=True)
        if prompt == "wait":
            await asyncio.Event().wait()
        if prompt == "approve":
            await self._request_approval({"call_id": "c1", "command": ["make"]})
        self.last_usage = {"total_tokens": 5}
        return {}

    def is_available(self):
        return True


def _frames(text: str) -> list[tuple[int, str, object]]:
    frames = []
    for block in text.split("\n\n"):
        if not block.strip() or block.startswith(":"):
            continue
        fields = dict(line.split(": ", 1) for line in block.split("\n"))
        frames.append((int(fields["id"]), fields["event"], json.loads(fields["data"])))
    return frames


class TestDeckServer(AioHTTPTestCase):
    async def get_application(self):
        self.configs: list = []
        manager = TurnManager(lambda instance: _ScriptedProvider(self.configs))
        config = EngineConfig(poll_interval_seconds=0.02, keepalive_seconds=0.05)
        self.deck = DeckServer(config, LocalTurnService(manager))
        return self.deck.app

    async def _new_chat(self) -> str:
        resp = await self.client.post("/api/chats")
        assert resp.status == 200
        return (await resp.json())["chatId"]

    async def _send(self, chat_id: str, text: str, **extra):
        return await self.client.post(
            f"/api/chats/{chat_id}/send_async", json={"text": text, **extra},
        )

    async def _runtime(self, chat_id: str) -> dict:
        return await (await self.client.get(f"/api/chats/{chat_id}/runtime")).json()

    async def _wait_status(self, chat_id: str, status: str) -> dict:
        for _ in range(400):
            rt = await self._runtime(chat_id)
            if rt["status"] == status:
                return rt
            await asyncio.sleep(0.005)
        raise AssertionError(f"status never became {status}")

    async def _wait_event(self, chat_id: str, kind: str) -> None:
        key = ConversationKey("default", chat_id)
        for _ in range(400):
            if any(e.event == kind for e in self.deck.streams.list_since(key, 0)):
                return
            await asyncio.sleep(0.005)
        raise AssertionError(f"no {kind} event")

    async def test_chats_are_scoped_by_session(self):
        chat_id = await self._new_chat()

        listed = await (await self.client.get("/api/chats")).json()
        assert [c["id"] for c in listed["chats"]] == [chat_id]

        resp = await self.client.get(
            f"/api/chats/{chat_id}", headers={"X-Session-Id": "someone-else"},
        )
        assert resp.status == 404
        assert (await resp.json()) == {"ok": False, "error": "not_found"}

    async def test_turn_updates_chat_and_stream(self):
        chat_id = await self._new_chat()
        resp = await self._send(chat_id, "hi")
        assert resp.status == 200
        assistant_id = (await resp.json())["assistantMessageId"]

        await self._wait_status(chat_id, "done")

        chat = (await (await self.client.get(f"/api/chats/{chat_id}")).json())["chat"]
        assert [(m["role"], m["text"]) for m in chat["messages"]] == [
            ("user", "hi"), ("assistant", "Hello"),
        ]
        assert chat["messages"][1]["id"] == assistant_id

        resp = await self.client.get(f"/api/chats/{chat_id}/stream")
        assert resp.headers["Content-Type"].startswith("text/event-stream")
        frames = _frames(await resp.text())
        assert [f[0] for f in frames] == list(range(1, len(frames) + 1))
        assert frames[0][1:] == ("start", {"ok": True, "assistantMessageId": assistant_id})
        assert ("delta", {"text": "Hello", "assistantMessageId": assistant_id}) in [
            f[1:] for f in frames
        ]
        assert frames[-1][1] == "done"

        usage = await (await self.client.get(f"/api/chats/{chat_id}/usage")).json()
        assert usage["usage"] == {"total_tokens": 5}
        assert usage["session"]["sessionId"] == "sess-1"

    async def test_stream_resumes_after_cursor(self):
        chat_id = await self._new_chat()
        await self._send(chat_id, "hi")
        await self._wait_status(chat_id, "done")

        resp = await self.client.get(f"/api/chats/{chat_id}/stream", params={"after": "2"})
        assert [f[0] for f in _frames(await resp.text())][0] == 3

        resp = await self.client.get(
            f"/api/chats/{chat_id}/stream",
            params={"after": "0"},
            headers={"Last-Event-ID": "3"},
        )
        assert [f[0] for f in _frames(await resp.text())][0] == 4

    async def test_live_stream_ends_with_abort(self):
        chat_id = await self._new_chat()
        await self._send(chat_id, "wait")
        await self._wait_event(chat_id, "delta")

        stream = asyncio.create_task(self.client.get(f"/api/chats/{chat_id}/stream"))
        await asyncio.sleep(0.1)
        resp = await self.client.post(f"/api/chats/{chat_id}/abort")
        assert resp.status == 200

        frames = _frames(await (await stream).text())
        assert frames[-1][1:] == ("turn_error", {"message": "aborted"})

        resp = await self.client.post(f"/api/chats/{chat_id}/abort")
        assert resp.status == 409
        assert (await resp.json())["error"] == "not_running"

    async def test_busy_chat_rejects_second_turn_and_reset_idles(self):
        chat_id = await self._new_chat()
        await self._send(chat_id, "wait")

        resp = await self._send(chat_id, "again")
        assert resp.status == 409
        assert (await resp.json())["error"] == "chat_busy"

        resp = await self.client.post(f"/api/chats/{chat_id}/reset")
        assert resp.status == 200
        rt = await self._runtime(chat_id)
        assert rt["status"] == "idle"
        assert rt["lastEventId"] == 0

    async def test_send_validation(self):
        chat_id = await self._new_chat()
        assert (await self._send(chat_id, "   ")).status == 400
        assert (await self._send(chat_id, "x" * 20_001)).status == 400
        assert (await self._send(chat_id, "hi", model="")).status == 400
        assert (await self._send("missing", "hi")).status == 404

    async def test_settings_feed_turn_config(self):
        chat_id = await self._new_chat()
        resp = await self.client.post(
            f"/api/chats/{chat_id}/settings",
            json={"model": "gpt-5", "reasoningEffort": "high", "cwd": "/work"},
        )
        assert resp.status == 200
        assert (await resp.json())["settings"] == {
            "model": "gpt-5", "reasoningEffort": "high", "cwd": "/work",
        }
        resp = await self.client.post(
            f"/api/chats/{chat_id}/settings", json={"reasoningEffort": "ultra"},
        )
        assert resp.status == 400

        await self._send(chat_id, "hi")
        await self._wait_status(chat_id, "done")
        config = self.configs[-1]
        assert config.model == "gpt-5"
        assert config.cwd == "/work"
        assert config.reasoning_effort.value == "high"

    async def test_approval_through_chat(self):
        chat_id = await self._new_chat()
        await self._send(chat_id, "approve")
        await self._wait_event(chat_id, "approval_request")

        url = f"/api/chats/{chat_id}/approve"
        assert (await self.client.post(url, json={"id": "c1", "decision": "nope"})).status == 400
        assert (await self.client.post(url, json={"id": "c1", "decision": "approved"})).status == 200
        await self._wait_status(chat_id, "done")
        assert (await self.client.post(url, json={"id": "c1", "decision": "approved"})).status == 404

    async def test_runtime_reconciles_orphaned_stream(self):
        chat_id = await self._new_chat()
        key = ConversationKey("default", chat_id)
        self.deck.streams.reset_stream(key)

        rt = await self._runtime(chat_id)

        assert rt["status"] == "done"
        assert self.deck.streams.list_since(key, 0)[-1].data == {"ok": True, "reconciled": True}

    async def test_delete_running_chat(self):
        chat_id = await self._new_chat()
        await self._send(chat_id, "wait")
        await self._wait_event(chat_id, "delta")

        resp = await self.client.delete(f"/api/chats/{chat_id}")
        assert resp.status == 200
        assert (await self.client.get(f"/api/chats/{chat_id}")).status == 404
        assert ConversationKey("default", chat_id) not in self.deck.streams


class _SlowBusyService(LocalTurnService):
    """Busy check that yields the way a gateway round-trip does."""

    async def is_busy(self, key):
        await asyncio.sleep(0.01)
        return await super().is_busy(key)


@pytest.mark.asyncio
async def test_concurrent_sends_start_exactly_one_turn() -> None:
    manager = TurnManager(lambda instance: _ScriptedProvider([]))
    deck = DeckServer(EngineConfig(), _SlowBusyService(manager))
    chat = deck.chats.create_chat("sid")
    key = ConversationKey("sid", chat.id)

    results = await asyncio.gather(
        deck.start_chat_turn("sid", chat.id, "wait"),
        deck.start_chat_turn("sid", chat.id, "wait"),
        return_exceptions=True,
    )

    started = [r for r in results if isinstance(r, str)]
    rejected = [r for r in results if isinstance(r, ChatBusyError)]
    assert len(started) == 1
    assert len(rejected) == 1
    assert [m.role for m in chat.messages] == ["user", "assistant"]

    for _ in range(400):
        if manager.is_busy(key):
            break
        await asyncio.sleep(0.005)
    events = deck.streams.list_since(key, 0)
    assert events[0].data == {"ok": True, "assistantMessageId": started[0]}
    assert all(e.event != TURN_ERROR for e in events)
    assert deck.streams.status(key) is StreamStatus.RUNNING
    assert deck.owns_turn(key)

    await deck._stop_conversation(key)
    assert deck.streams.list_since(key, 0)[-1].data == {"message": "aborted"}


class TestDeckServerWithGateway(AioHTTPTestCase):
    """Deck server whose turns run on a gateway; ``self.client`` talks to the gateway."""

    async def get_application(self):
        self.gateway = GatewayServer(
            EngineConfig(), manager=TurnManager(lambda instance: _ScriptedProvider([])),
        )
        return self.gateway.app

    async def asyncSetUp(self):
        await super().asyncSetUp()
        config = EngineConfig(
            gateway_mode="remote",
            gateway_host=self.server.host,
            gateway_port=self.server.port,
            gateway_auto_start=False,
            poll_interval_seconds=0.02,
            keepalive_seconds=0.05,
            remote_poll_interval_seconds=0.01,
        )
        self.service = GatewayClient(config)
        self.deck = DeckServer(config, self.service)
        self.web = TestClient(TestServer(self.deck.app))
        await self.web.start_server()

    async def asyncTearDown(self):
        await self.web.close()
        await self.service.shutdown()
        await super().asyncTearDown()

    async def _new_chat(self) -> str:
        resp = await self.web.post("/api/chats")
        return (await resp.json())["chatId"]

    async def _until(self, predicate) -> None:
        for _ in range(400):
            if predicate():
                return
            await asyncio.sleep(0.005)
        raise AssertionError("condition not reached")

    async def test_turn_runs_on_gateway_and_fills_chat(self):
        assert isinstance(self.deck.bridge, StreamReconciliationBridge)
        chat_id = await self._new_chat()
        key = ConversationKey("default", chat_id)

        resp = await self.web.post(f"/api/chats/{chat_id}/send_async", json={"text": "hi"})
        assert resp.status == 200
        assert self.deck.bridge.owns(key)

        for _ in range(400):
            rt = await (await self.web.get(f"/api/chats/{chat_id}/runtime")).json()
            if rt["status"] == "done":
                break
            await asyncio.sleep(0.005)
        assert rt["status"] == "done"
        assert not self.deck.bridge.owns(key)

        chat = (await (await self.web.get(f"/api/chats/{chat_id}")).json())["chat"]
        assert [(m["role"], m["text"]) for m in chat["messages"]] == [
            ("user", "hi"), ("assistant", "Hello"),
        ]
        assert self.gateway.manager.session_state(key).session_id == "sess-1"
        kinds = [e.event for e in self.deck.streams.list_since(key, 0)]
        assert kinds.count("done") == 1
        assert kinds.count("delta") == 1

    async def test_stream_polls_turn_owned_by_gateway(self):
        chat_id = await self._new_chat()
        key = ConversationKey("default", chat_id)
        resp = await self.client.post(
            "/v1/chats/start",
            json={"sessionId": "default", "chatId": chat_id, "prompt": "wait"},
        )
        assert resp.status == 200
        await self._until(lambda: any(
            e.event == "delta" for e in self.gateway.streams.list_since(key, 0)
        ))

        stream = asyncio.create_task(self.web.get(f"/api/chats/{chat_id}/stream"))
        await self._until(lambda: bool(
            self.deck.streams.get(key) and self.deck.streams.get(key).subscribers
        ))
        assert not self.deck.owns_turn(key)

        resp = await self.client.post(
            "/v1/chats/abort", json={"sessionId": "default", "chatId": chat_id},
        )
        assert resp.status == 200

        frames = _frames(await (await stream).text())
        assert [f[0] for f in frames] == list(range(1, len(frames) + 1))
        assert frames[0][1] == "start"
        assert "delta" in [f[1] for f in frames]
        assert frames[-1][1:] == ("turn_error", {"message": "aborted"})
        assert self.deck.streams.status(key) is StreamStatus.ERROR


@pytest.mark.asyncio
async def test_chats_survive_server_restart(tmp_path) -> None:
    config = EngineConfig(chat_store_path=str(tmp_path / "chats.json"))
    manager = TurnManager(lambda instance: _ScriptedProvider([]))
    first = DeckServer(config, LocalTurnService(manager))
    chat = first.chats.create_chat("sid")
    first.chats.append_message("sid", chat.id, "user", "hi")
    first.chats.update_settings("sid", chat.id, {"model": "gpt-5"})
    first.chats.close()

    second = DeckServer(config, LocalTurnService(manager))

    restored = second.chats.get_chat("sid", chat.id)
    assert restored is not None
    assert [m.text for m in restored.messages] == ["hi"]
    assert restored.settings == {"model": "gpt-5"}
