"""Pumps one turn's runner events into a conversation's event stream."""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from agentdeck.adapters.events import (
    APPROVAL_REQUEST,
    DELTA,
    DONE,
    PASSTHROUGH,
    PROGRESS,
    RATE_LIMITS,
    TURN_ERROR,
    USAGE,
    AgentMessage,
    ApprovalRequested,
    EventSink,
    RawEvent,
    RunnerEvent,
)
from agentdeck.adapters.stream_buffer import StreamRegistry
from agentdeck.engine.errors import DeckError
from agentdeck.engine.models import ConversationKey, TurnResult

logger = logging.getLogger(__name__)


class TurnPump:
    """Event sink that maps runner events to stream events.

    - agent_message -> ``delta {text, assistantMessageId}``
    - approval_request -> ``approval_request {id, message?, command?, cwd?}``
    - raw progress -> ``progress {stage, message, detail}``
    - any other raw payload -> ``passthrough``
    """

    def __init__(
        self,
        streams: StreamRegistry,
        key: ConversationKey,
        assistant_message_id: str | None = None,
        on_text: Callable[[str], None] | None = None,
    ) -> None:
        self._streams = streams
        self._key = key
        self._assistant_message_id = assistant_message_id
        self._on_text = on_text

    def __call__(self, event: RunnerEvent) -> None:
        if isinstance(event, AgentMessage):
            if self._on_text is not None:
                self._on_text(event.text)
            self._streams.append_event(self._key, DELTA, {
                "text": event.text,
                "assistantMessageId": self._assistant_message_id,
            })
        elif isinstance(event, ApprovalRequested):
            self._streams.append_event(self._key, APPROVAL_REQUEST, event.request.to_dict())
        elif isinstance(event, RawEvent) and event.is_progress:
            payload = event.payload
            stage = payload.get("stage")
            message = payload.get("message")
            self._streams.append_event(self._key, PROGRESS, {
                "stage": stage if isinstance(stage, str) else "progress",
                "message": message if isinstance(message, str) else "",
                "detail": payload.get("detail"),
            })
        elif isinstance(event, RawEvent):
            self._streams.append_event(self._key, PASSTHROUGH, event.payload)
        else:
            logger.debug("Unknown runner event %r key=%s", event, self._key)

    def finish(self, result: TurnResult) -> None:
        if result.usage:
            self._streams.append_event(self._key, USAGE, result.usage)
        if result.rate_limits:
            self._streams.append_event(self._key, RATE_LIMITS, result.rate_limits)
        self._streams.append_event(self._key, DONE, {"ok": True})

    def fail(self, message: str) -> None:
        self._streams.append_event(self._key, TURN_ERROR, {"message": message})

    async def run(self, call: Callable[[EventSink], Awaitable[TurnResult]]) -> None:
        """Run *call* with this pump as sink; always ends with done or turn_error."""
        try:
            result = await call(self)
        except asyncio.CancelledError:
            self.fail("aborted")
            raise
        except DeckError as exc:
            logger.info("Turn failed key=%s code=%s: %s", self._key, exc.code, exc)
            self.fail(error_message(exc))
        except Exception as exc:
            logger.exception("Turn crashed key=%s", self._key)
            self.fail(error_message(exc))
        else:
            self.finish(result)


def error_message(exc: BaseException) -> str:
    """User-facing message for a failed turn."""
    if isinstance(exc, DeckError):
        return str(exc) or exc.code
    return str(exc) or "agent_error"
