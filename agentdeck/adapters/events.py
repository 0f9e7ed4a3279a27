"""Event types flowing from agent providers to event streams.

Runner events are the canonical union every backend is translated
into (``agent_message``, ``approval_request``, ``raw``). Stream events
are the numbered records stored in a conversation's event stream and
sent to browsers.
"""
from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from agentdeck.engine.models import ApprovalRequest


@dataclass
class RunnerEvent:
    """Base canonical event emitted by a provider."""
    event_type: str = ""


@dataclass
class AgentMessage(RunnerEvent):
    event_type: str = "agent_message"
    text: str = ""


@dataclass
class ApprovalRequested(RunnerEvent):
    event_type: str = "approval_request"
    request: ApprovalRequest = field(
        default_factory=lambda: ApprovalRequest(id="")
    )


@dataclass
class RawEvent(RunnerEvent):
    event_type: str = "raw"
    payload: Any = None

    @property
    def is_progress(self) -> bool:
        return isinstance(self.payload, dict) and self.payload.get("type") == "progress"


EventSink = Callable[[RunnerEvent], None]


def progress_event(
    stage: str,
    message: str = "",
    detail: dict[str, Any] | None = None,
) -> RawEvent:
    """Synthetic progress marker (session lifecycle, heartbeats)."""
    payload: dict[str, Any] = {"type": "progress", "stage": stage, "message": message}
    if detail is not None:
        payload["detail"] = detail
    return RawEvent(payload=payload)


# Stream event kinds
START = "start"
DELTA = "delta"
APPROVAL_REQUEST = "approval_request"
PROGRESS = "progress"
PASSTHROUGH = "passthrough"
USAGE = "usage"
RATE_LIMITS = "rate_limits"
DONE = "done"
TURN_ERROR = "turn_error"

STREAM_KINDS = frozenset({
    START, DELTA, APPROVAL_REQUEST, PROGRESS, PASSTHROUGH,
    USAGE, RATE_LIMITS, DONE, TURN_ERROR,
})
TERMINAL_KINDS = frozenset({DONE, TURN_ERROR})


@dataclass(frozen=True)
class StreamEvent:
    """One numbered record in a conversation's event stream."""
    id: int
    event: str
    data: Any
    ts: int = field(default_factory=lambda: int(time.time() * 1000))

    @property
    def is_terminal(self) -> bool:
        return self.event in TERMINAL_KINDS

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "event": self.event, "data": self.data, "ts": self.ts}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> StreamEvent:
        return cls(
            id=int(raw["id"]),
            event=str(raw["event"]),
            data=raw.get("data"),
            ts=int(raw.get("ts") or time.time() * 1000),
        )


_EVENT_MAP: dict[str, type[RunnerEvent]] = {
    "agent_message": AgentMessage,
    "approval_request": ApprovalRequested,
    "raw": RawEvent,
}


def dict_to_event(data: dict[str, Any]) -> RunnerEvent:
    """Rebuild a runner event from its wire dict; unknown types become RawEvent."""
    cls = _EVENT_MAP.get(str(data.get("type", "")))
    if cls is AgentMessage:
        return AgentMessage(text=str(data.get("text", "")))
    if cls is ApprovalRequested:
        req = data.get("request") or {}
        command = req.get("command")
        return ApprovalRequested(
            request=ApprovalRequest(
                id=str(req.get("id", "")),
                message=req.get("message"),
                command=[str(c) for c in command] if isinstance(command, list) else None,
                cwd=req.get("cwd"),
            )
        )
    if cls is RawEvent:
        return RawEvent(payload=data.get("payload"))
    return RawEvent(payload=data)
