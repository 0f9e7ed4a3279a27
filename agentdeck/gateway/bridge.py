"""Mirrors gateway event streams into the web server's local streams.

Remote events get fresh local ids when appended here. The gateway
client's known cursor records how far each conversation has been
mirrored; a cursor ahead of the remote's last event id means a newer
turn reset the remote buffer, so mirroring restarts from zero.
"""
from __future__ import annotations

import logging

from agentdeck.adapters.events import DELTA, DONE, START, StreamEvent
from agentdeck.adapters.stream_buffer import StreamRegistry
from agentdeck.engine.errors import DeckError
from agentdeck.engine.models import ConversationKey, StreamStatus
from agentdeck.gateway.client import GatewayClient
from agentdeck.shared.chat_store import ChatStore

logger = logging.getLogger(__name__)


class StreamReconciliationBridge:
    """Keeps local streams in step with turns the gateway owns."""

    def __init__(
        self,
        client: GatewayClient,
        streams: StreamRegistry,
        chat_store: ChatStore,
    ) -> None:
        self._client = client
        self._streams = streams
        self._chats = chat_store
        #: Keys whose turn is being pumped by this process.
        self.local_turn_pumps: set[ConversationKey] = set()

    def owns(self, key: ConversationKey) -> bool:
        return key in self.local_turn_pumps

    async def sync_stream(self, key: ConversationKey) -> int:
        """Mirror remote events past the known cursor; returns how many."""
        try:
            remote = await self._client.get_runtime(key)
        except DeckError as exc:
            logger.debug("Gateway runtime unavailable key=%s: %s", key, exc)
            return 0

        after = self._client.get_known_cursor(key)
        remote_reset = after > remote["lastEventId"]
        if remote_reset:
            logger.info(
                "Remote stream reset key=%s cursor=%d remote_last=%d",
                key, after, remote["lastEventId"],
            )
            after = 0
            self._client.reset_known_cursor(key)

        local_last = self._streams.ensure(key).last_event_id
        rebuild = after == 0 and remote["lastEventId"] > 0 and (local_last == 0 or remote_reset)
        if rebuild:
            self._streams.reset_stream(key)

        try:
            events = await self._client.list_events_since(key, after)
        except DeckError as exc:
            logger.debug("Gateway events unavailable key=%s: %s", key, exc)
            return 0

        clear_text = rebuild
        for event in events:
            self._client.mark_known_cursor(key, event.id)
            if event.event == START:
                self._mirror_start(key, event, clear_text)
                clear_text = False
            elif event.event == DELTA:
                self._mirror_delta(key, event)
            else:
                self._streams.append_event(key, event.event, event.data)
        return len(events)

    def _mirror_start(self, key: ConversationKey, event: StreamEvent, clear_text: bool) -> None:
        self._streams.append_event(key, START, event.data)
        message_id = _assistant_message_id(event.data)
        if clear_text and message_id:
            try:
                self._chats.set_message_text(key.session_id, key.chat_id, message_id, "")
            except KeyError:
                logger.debug("Assistant message gone key=%s id=%s", key, message_id)

    def _mirror_delta(self, key: ConversationKey, event: StreamEvent) -> None:
        data = event.data if isinstance(event.data, dict) else {}
        message_id = _assistant_message_id(data)
        text = data.get("text") if isinstance(data.get("text"), str) else ""
        if message_id and text:
            try:
                self._chats.append_to_message_text(key.session_id, key.chat_id, message_id, text)
            except KeyError:
                # Chat or message deleted mid-turn.
                pass
        self._streams.append_event(key, DELTA, {"text": text, "assistantMessageId": message_id})

    async def reconcile_runtime_status(self, key: ConversationKey) -> dict:
        """Local runtime after syncing; synthesizes ``done`` for stuck streams."""
        if not self.owns(key):
            await self.sync_stream(key)

        if self._streams.status(key) is StreamStatus.RUNNING and not self.owns(key):
            try:
                busy = await self._client.is_busy(key)
            except DeckError as exc:
                logger.debug("Busy check failed key=%s: %s", key, exc)
                busy = True
            if not busy:
                logger.info("Reconciled stuck running stream key=%s", key)
                self._streams.append_event(key, DONE, {"ok": True, "reconciled": True})
        return self._streams.runtime(key)


def _assistant_message_id(data) -> str | None:
    if isinstance(data, dict):
        value = data.get("assistantMessageId")
        if isinstance(value, str) and value:
            return value
    return None
