"""Core data models for the turn engine.

Enums, conversation keys, turn configuration and approval records.
Single source of truth to avoid circular imports.
"""
from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from enum import Enum
from typing import Any


class Sandbox(str, Enum):
    """Filesystem sandbox applied to the agent's commands."""
    READ_ONLY = "read-only"
    WORKSPACE_WRITE = "workspace-write"
    DANGER_FULL_ACCESS = "danger-full-access"


class ApprovalPolicy(str, Enum):
    """When the agent must ask before running a command."""
    UNTRUSTED = "untrusted"
    ON_FAILURE = "on-failure"
    ON_REQUEST = "on-request"
    NEVER = "never"


class ReasoningEffort(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    XHIGH = "xhigh"


class ApprovalDecision(str, Enum):
    """User answer to a pending approval request."""
    APPROVED = "approved"
    APPROVED_FOR_SESSION = "approved_for_session"
    DENIED = "denied"
    ABORT = "abort"

    @classmethod
    def parse(cls, value: Any) -> ApprovalDecision:
        """Parse a decision string; unknown values map to ABORT."""
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.ABORT

    def to_elicit_action(self) -> str:
        """Map to the MCP elicitation response action."""
        if self in (ApprovalDecision.APPROVED, ApprovalDecision.APPROVED_FOR_SESSION):
            return "accept"
        if self is ApprovalDecision.DENIED:
            return "decline"
        return "cancel"


class StreamStatus(str, Enum):
    """Conversation stream state: idle -> running -> done | error."""
    IDLE = "idle"
    RUNNING = "running"
    DONE = "done"
    ERROR = "error"


@dataclass(frozen=True)
class ConversationKey:
    """Identity of a conversation: the caller's session plus a chat."""
    session_id: str
    chat_id: str

    def __str__(self) -> str:
        return f"{self.session_id}:{self.chat_id}"


def _enum_or_none(enum_cls: type[Enum], value: Any, field_name: str) -> Any:
    if value is None or value == "":
        return None
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValueError(
            f"Invalid {field_name}: {value!r} (expected one of {allowed})"
        ) from None


def _str_or_none(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass(frozen=True)
class TurnConfig:
    """Execution settings for one turn.

    The agent protocol cannot change any of these in the middle of a
    session, so a change between turns forces a fresh agent session
    (see ``fingerprint``).
    """
    cwd: str | None = None
    sandbox: Sandbox | None = None
    approval_policy: ApprovalPolicy | None = None
    model: str | None = None
    reasoning_effort: ReasoningEffort | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "cwd", _str_or_none(self.cwd))
        object.__setattr__(self, "model", _str_or_none(self.model))
        object.__setattr__(
            self, "sandbox", _enum_or_none(Sandbox, self.sandbox, "sandbox"),
        )
        object.__setattr__(
            self, "approval_policy",
            _enum_or_none(ApprovalPolicy, self.approval_policy, "approval_policy"),
        )
        object.__setattr__(
            self, "reasoning_effort",
            _enum_or_none(ReasoningEffort, self.reasoning_effort, "reasoning_effort"),
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> TurnConfig:
        """Build from a wire dict (camelCase or snake_case keys)."""
        data = data or {}
        return cls(
            cwd=data.get("cwd"),
            sandbox=data.get("sandbox"),
            approval_policy=data.get("approvalPolicy", data.get("approval_policy")),
            model=data.get("model"),
            reasoning_effort=data.get(
                "reasoningEffort", data.get("reasoning_effort"),
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        """Wire form used by the gateway protocol; unset fields omitted."""
        out: dict[str, Any] = {}
        if self.cwd:
            out["cwd"] = self.cwd
        if self.sandbox:
            out["sandbox"] = self.sandbox.value
        if self.approval_policy:
            out["approvalPolicy"] = self.approval_policy.value
        if self.model:
            out["model"] = self.model
        if self.reasoning_effort:
            out["reasoningEffort"] = self.reasoning_effort.value
        return out

    def fingerprint(self) -> str:
        """Deterministic hash of the five session-shaping fields."""
        canonical = json.dumps(
            {
                "cwd": self.cwd,
                "sandbox": self.sandbox.value if self.sandbox else None,
                "approval_policy": (
                    self.approval_policy.value if self.approval_policy else None
                ),
                "model": self.model,
                "reasoning_effort": (
                    self.reasoning_effort.value if self.reasoning_effort else None
                ),
            },
            sort_keys=True,
            separators=(",", ":"),
        )
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class InstanceBinding:
    """Which agent backend and account/home a conversation's runner uses.

    ``backend`` None means the configured default backend.
    """
    instance_id: str = "default"
    agent_home: str | None = None
    backend: str | None = None

    def __post_init__(self) -> None:
        backend = _str_or_none(self.backend)
        object.__setattr__(self, "backend", backend.lower() if backend else None)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> InstanceBinding:
        data = data or {}
        instance_id = _str_or_none(data.get("instanceId", data.get("instance_id")))
        home = _str_or_none(
            data.get("codexHome", data.get("agentHome", data.get("agent_home")))
        )
        return cls(
            instance_id=instance_id or "default",
            agent_home=home,
            backend=data.get("backend"),
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"instanceId": self.instance_id}
        if self.agent_home:
            out["codexHome"] = self.agent_home
        if self.backend:
            out["backend"] = self.backend
        return out

    def build_env(self) -> dict[str, str]:
        """Environment overrides for the agent subprocess."""
        if self.agent_home:
            return {"CODEX_HOME": self.agent_home}
        return {}


@dataclass
class ApprovalRequest:
    """A pending request from the agent to run something risky."""
    id: str
    message: str | None = None
    command: list[str] | None = None
    cwd: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"id": self.id}
        if self.message is not None:
            out["message"] = self.message
        if self.command is not None:
            out["command"] = list(self.command)
        if self.cwd is not None:
            out["cwd"] = self.cwd
        return out


@dataclass
class SessionBinding:
    """The agent's own session identifiers for a conversation."""
    session_id: str | None = None
    conversation_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "conversationId": self.conversation_id,
        }


@dataclass
class TurnResult:
    """Usage and rate limits recorded at the end of a turn."""
    usage: dict[str, Any] | None = None
    rate_limits: dict[str, Any] | None = None
