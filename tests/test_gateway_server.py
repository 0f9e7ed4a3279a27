from __future__ import annotations

import asyncio

from aiohttp.test_utils import AioHTTPTestCase

from agentdeck.engine.config import EngineConfig
from agentdeck.engine.models import ConversationKey
from agentdeck.engine.providers.base import AgentProvider
from agentdeck.engine.turn_runner import TurnManager
from agentdeck.gateway.server import GatewayServer

CHAT = {"sessionId": "sid", "chatId": "chat-1"}
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
        self._emit_assistant_text("Hello", primary=True)
        if prompt == "wait":
            await asyncio.Event().wait()
        if prompt == "approve":
            await self._request_approval({"call_id": "c1", "command": ["make"]})
        self.last_usage = {"total_tokens": 5}
        self.last_rate_limits = {"codex": {"primary": {"used_percent": 3}}}
        return {}

    def is_available(self):
        return True


class TestGatewayServer(AioHTTPTestCase):
    async def get_application(self):
        manager = TurnManager(lambda instance: _ScriptedProvider())
        self.gateway = GatewayServer(EngineConfig(), manager=manager)
        return self.gateway.app

    async def _events(self, after: int = 0) -> list[dict]:
        resp = await self.client.get(
            "/v1/chats/events", params={**CHAT, "after": str(after)},
        )
        assert resp.status == 200
        return (await resp.json())["events"]

    async def _wait_for(self, kind: str) -> list[dict]:
        for _ in range(400):
            events = await self._events()
            if any(e["event"] == kind for e in events):
                return events
            await asyncio.sleep(0.005)
        raise AssertionError(f"no {kind} event")

    async def _start(self, prompt: str, **extra):
        return await self.client.post(
            "/v1/chats/start", json={**CHAT, "prompt": prompt, **extra},
        )

    async def test_health(self):
        resp = await self.client.get("/health")
        assert resp.status == 200
        assert (await resp.json())["ok"] is True

    async def test_turn_events_are_numbered_and_replayable(self):
        resp = await self._start("hi", assistantMessageId="m1")
        assert resp.status == 200

        events = await self._wait_for("done")
        kinds = [e["event"] for e in events]
        assert kinds[0] == "start"
        assert events[0]["data"] == {
            "ok": True, "assistantMessageId": "m1", "instanceId": "default",
        }
        assert {"text": "Hello", "assistantMessageId": "m1"} in [
            e["data"] for e in events if e["event"] == "delta"
        ]
        assert kinds[-3:] == ["usage", "rate_limits", "done"]
        assert [e["id"] for e in events] == list(range(1, len(events) + 1))

        tail = await self._events(after=2)
        assert [e["id"] for e in tail] == [e["id"] for e in events[2:]]

        runtime = await (await self.client.get("/v1/chats/runtime", params=CHAT)).json()
        assert runtime["status"] == "done"
        assert runtime["busy"] is False
        assert runtime["lastEventId"] == len(events)

    async def test_usage_rate_limits_and_session(self):
        await self._start("hi")
        await self._wait_for("done")

        usage = await (await self.client.get("/v1/chats/usage", params=CHAT)).json()
        limits = await (await self.client.get("/v1/chats/rate-limits", params=CHAT)).json()
        session = await (await self.client.get("/v1/chats/session", params=CHAT)).json()

        assert usage["usage"] == {"total_tokens": 5}
        assert limits["rateLimits"]["codex"]["primary"]["used_percent"] == 3
        assert session["session"] == {"sessionId": "sess-1", "conversationId": "sess-1"}

    async def test_second_start_while_running_is_busy(self):
        assert (await self._start("wait")).status == 200
        resp = await self._start("again")
        assert resp.status == 409
        assert (await resp.json())["error"] == "chat_busy"

        resp = await self.client.post("/v1/chats/abort", json=CHAT)
        assert resp.status == 200
        events = await self._wait_for("turn_error")
        assert events[-1]["data"] == {"message": "aborted"}

        resp = await self.client.post("/v1/chats/abort", json=CHAT)
        assert resp.status == 409
        assert (await resp.json())["error"] == "not_running"

    async def test_approval_round_trip(self):
        await self._start("approve")
        events = await self._wait_for("approval_request")
        request = next(e["data"] for e in events if e["event"] == "approval_request")
        assert request == {"id": "c1", "command": ["make"]}

        resp = await self.client.post(
            "/v1/chats/approve", json={**CHAT, "id": "c1", "decision": "approved"},
        )
        assert resp.status == 200
        await self._wait_for("done")

        resp = await self.client.post(
            "/v1/chats/approve", json={**CHAT, "id": "c1", "decision": "approved"},
        )
        assert resp.status == 404

    async def test_invalid_requests(self):
        assert (await self.client.post("/v1/chats/start", json=CHAT)).status == 400
        assert (await self._start("hi", config={"sandbox": "wide-open"})).status == 400
        assert (await self._start("hi", config="nope")).status == 400
        resp = await self.client.get("/v1/chats/events", params={**CHAT, "after": "abc"})
        assert resp.status == 400
        resp = await self.client.get("/v1/chats/runtime", params={"sessionId": "sid"})
        assert resp.status == 400
        resp = await self.client.post(
            "/v1/chats/approve", json={**CHAT, "id": "c1", "decision": "maybe"},
        )
        assert resp.status == 400
        resp = await self.client.post(
            "/v1/chats/reset", data="{not json", headers={"Content-Type": "application/json"},
        )
        assert resp.status == 400

    async def test_runtime_reconciles_orphaned_running_stream(self):
        self.gateway.streams.reset_stream(KEY)

        runtime = await (await self.client.get("/v1/chats/runtime", params=CHAT)).json()

        assert runtime["status"] == "done"
        assert runtime["busy"] is False
        events = await self._events()
        assert events[-1]["data"] == {"ok": True, "reconciled": True}

    async def test_reset_clears_stream_and_session(self):
        await self._start("wait")
        await self._wait_for("delta")

        resp = await self.client.post("/v1/chats/reset", json=CHAT)
        assert resp.status == 200

        runtime = await (await self.client.get("/v1/chats/runtime", params=CHAT)).json()
        assert runtime["status"] == "idle"
        assert runtime["lastEventId"] == 0
        session = await (await self.client.get("/v1/chats/session", params=CHAT)).json()
        assert session["session"] is None

        assert (await self._start("hi")).status == 200
        await self._wait_for("done")

    async def test_sweep_reconciles_and_drops_idle_streams(self):
        other = ConversationKey("sid", "orphan")
        self.gateway.streams.reset_stream(other)

        self.gateway.sweep_once()

        assert self.gateway.streams.list_since(other, 0)[-1].data == {
            "ok": True, "reconciled": True,
        }
