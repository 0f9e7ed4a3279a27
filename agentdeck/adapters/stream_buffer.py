"""Per-conversation event streams.

Each conversation gets an append-only, capacity-bounded log of
numbered events. Consumers replay with ``list_since(cursor)`` and
follow live events through a subscriber queue. The registry is the
only writer; subscribers receive immutable StreamEvent records.

A subscriber whose queue fills up is dropped and receives
``SUBSCRIBER_CLOSED``; it should end its stream so the client
reconnects and replays the gap from the log.
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any

from agentdeck.adapters.events import DONE, STREAM_KINDS, TURN_ERROR, StreamEvent
from agentdeck.engine.models import ConversationKey, StreamStatus

logger = logging.getLogger(__name__)

#: Last item on a dropped subscriber's queue.
SUBSCRIBER_CLOSED = None

# Live StreamEvent queue, ending with SUBSCRIBER_CLOSED if the subscriber is dropped.
SubscriberQueue = asyncio.Queue


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class EventStream:
    """The ordered event log of one conversation."""
    key: ConversationKey
    max_events: int
    status: StreamStatus = StreamStatus.IDLE
    next_id: int = 1
    updated_at: int = field(default_factory=_now_ms)
    events: deque[StreamEvent] = field(init=False)
    subscribers: list[SubscriberQueue] = field(default_factory=list)

    def __post_init__(self) -> None:
        # deque drops the oldest entries once full
        self.events = deque(maxlen=self.max_events)

    @property
    def last_event_id(self) -> int:
        return max(0, self.next_id - 1)

    def runtime(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "lastEventId": self.last_event_id,
            "updatedAt": self.updated_at,
        }


class StreamRegistry:
    """Event streams keyed by conversation."""

    def __init__(self, max_events: int = 2000, subscriber_queue_size: int = 5000) -> None:
        self._max_events = max_events
        self._subscriber_queue_size = subscriber_queue_size
        self._streams: dict[ConversationKey, EventStream] = {}

    def __contains__(self, key: ConversationKey) -> bool:
        return key in self._streams

    def get(self, key: ConversationKey) -> EventStream | None:
        return self._streams.get(key)

    def ensure(self, key: ConversationKey) -> EventStream:
        stream = self._streams.get(key)
        if stream is None:
            stream = EventStream(key=key, max_events=self._max_events)
            self._streams[key] = stream
        return stream

    def reset_stream(self, key: ConversationKey) -> EventStream:
        """Clear the log for a new turn; ids restart at 1, subscribers stay."""
        stream = self.ensure(key)
        stream.events.clear()
        stream.next_id = 1
        stream.status = StreamStatus.RUNNING
        stream.updated_at = _now_ms()
        logger.debug("Stream reset key=%s", key)
        return stream

    def mark_idle(self, key: ConversationKey) -> None:
        stream = self.ensure(key)
        stream.status = StreamStatus.IDLE
        stream.updated_at = _now_ms()

    def append_event(self, key: ConversationKey, kind: str, data: Any) -> StreamEvent:
        """Assign the next id, latch terminal status and fan out."""
        if kind not in STREAM_KINDS:
            logger.debug("Appending non-canonical stream kind %s key=%s", kind, key)
        stream = self.ensure(key)
        event = StreamEvent(id=stream.next_id, event=kind, data=data)
        stream.next_id += 1
        stream.events.append(event)
        if kind == DONE:
            stream.status = StreamStatus.DONE
        elif kind == TURN_ERROR:
            stream.status = StreamStatus.ERROR
        stream.updated_at = event.ts

        for queue in list(stream.subscribers):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(
                    "Stream subscriber fell behind key=%s at id=%d; closing it",
                    key, event.id,
                )
                stream.subscribers.remove(queue)
                _close_subscriber(queue)
        return event

    def list_since(self, key: ConversationKey, after: int) -> list[StreamEvent]:
        """All retained events with id greater than *after*."""
        stream = self._streams.get(key)
        if stream is None:
            return []
        return [e for e in stream.events if e.id > after]

    def runtime(self, key: ConversationKey) -> dict[str, Any]:
        return self.ensure(key).runtime()

    def status(self, key: ConversationKey) -> StreamStatus:
        return self.ensure(key).status

    def subscribe(self, key: ConversationKey) -> SubscriberQueue:
        queue: SubscriberQueue = asyncio.Queue(maxsize=self._subscriber_queue_size)
        self.ensure(key).subscribers.append(queue)
        return queue

    def unsubscribe(self, key: ConversationKey, queue: SubscriberQueue) -> None:
        stream = self._streams.get(key)
        if stream is not None and queue in stream.subscribers:
            stream.subscribers.remove(queue)

    def drop(self, key: ConversationKey) -> None:
        self._streams.pop(key, None)

    def running_keys(self) -> list[ConversationKey]:
        return [k for k, s in self._streams.items() if s.status is StreamStatus.RUNNING]

    def sweep(self, ttl_seconds: float, now_ms: int | None = None) -> list[ConversationKey]:
        """Drop non-running streams idle longer than *ttl_seconds*."""
        now = now_ms if now_ms is not None else _now_ms()
        cutoff = now - int(ttl_seconds * 1000)
        dropped = [
            key for key, stream in self._streams.items()
            if stream.status is not StreamStatus.RUNNING
            and not stream.subscribers
            and stream.updated_at <= cutoff
        ]
        for key in dropped:
            del self._streams[key]
        if dropped:
            logger.info("Swept %d idle stream(s)", len(dropped))
        return dropped


def _close_subscriber(queue: SubscriberQueue) -> None:
    # Queued events are still in the log; the client replays them on resume.
    while not queue.empty():
        queue.get_nowait()
    queue.put_nowait(SUBSCRIBER_CLOSED)
