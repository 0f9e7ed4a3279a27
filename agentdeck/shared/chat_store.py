"""Chats, grouped by browser session.

Lookups of unknown chats or messages raise KeyError; the HTTP layer
turns that into ``not_found``.

With a ChatSnapshotFile the store is loaded at construction and saved
after changes. Inside a running event loop saves are debounced by
*save_delay* seconds; call ``close()`` on shutdown to write the last
batch.
"""
from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

from .persistence import ChatSnapshotFile

logger = logging.getLogger(__name__)

SETTING_KEYS = ("model", "reasoning_effort", "cwd", "sandbox", "approval_policy")

MESSAGE_ROLES = ("user", "assistant", "system")

_WIRE_NAMES = {
    "model": "model",
    "reasoning_effort": "reasoningEffort",
    "cwd": "cwd",
    "sandbox": "sandbox",
    "approval_policy": "approvalPolicy",
}
_FIELD_NAMES = {wire: name for name, wire in _WIRE_NAMES.items()}


def _now_ms() -> int:
    return int(time.time() * 1000)


def _new_id(length: int) -> str:
    return uuid.uuid4().hex[:length]


@dataclass
class ChatMessage:
    id: str
    role: str
    text: str
    created_at: int = field(default_factory=_now_ms)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role,
            "text": self.text,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Any) -> ChatMessage | None:
        if not isinstance(data, dict):
            return None
        id_, role, text = data.get("id"), data.get("role"), data.get("text")
        created_at = data.get("createdAt")
        if not (isinstance(id_, str) and isinstance(text, str) and role in MESSAGE_ROLES):
            return None
        if not isinstance(created_at, int):
            return None
        return cls(id=id_, role=role, text=text, created_at=created_at)


@dataclass
class Chat:
    id: str
    created_at: int = field(default_factory=_now_ms)
    updated_at: int = field(default_factory=_now_ms)
    messages: list[ChatMessage] = field(default_factory=list)
    settings: dict[str, str] = field(default_factory=dict)

    def find_message(self, message_id: str) -> ChatMessage:
        for message in self.messages:
            if message.id == message_id:
                return message
        raise KeyError(message_id)

    def settings_dict(self) -> dict[str, str]:
        return {_WIRE_NAMES[k]: v for k, v in self.settings.items()}

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "messages": [m.to_dict() for m in self.messages],
            "settings": self.settings_dict(),
        }

    @classmethod
    def from_dict(cls, data: Any) -> Chat | None:
        """Rebuild a snapshot entry; None when it is not a chat."""
        if not isinstance(data, dict) or not isinstance(data.get("id"), str):
            return None
        created_at, updated_at = data.get("createdAt"), data.get("updatedAt")
        if not isinstance(created_at, int) or not isinstance(updated_at, int):
            return None
        messages: list[ChatMessage] = []
        if isinstance(data.get("messages"), list):
            parsed = map(ChatMessage.from_dict, data["messages"])
            messages = [m for m in parsed if m is not None]
        settings: dict[str, str] = {}
        if isinstance(data.get("settings"), dict):
            settings = {
                _FIELD_NAMES[k]: v for k, v in data["settings"].items()
                if k in _FIELD_NAMES and isinstance(v, str) and v
            }
        return cls(
            id=data["id"],
            created_at=created_at,
            updated_at=updated_at,
            messages=messages,
            settings=settings,
        )

    def summary(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "id": self.id,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }
        if self.messages:
            out["preview"] = self.messages[-1].text
        return out


class ChatStore:
    """Chats keyed by (session id, chat id)."""

    def __init__(
        self,
        snapshot: ChatSnapshotFile | None = None,
        save_delay: float = 0.25,
    ) -> None:
        self._chats: dict[str, dict[str, Chat]] = {}
        self._snapshot = snapshot
        self._save_delay = save_delay
        self._dirty = False
        self._save_handle: asyncio.TimerHandle | None = None
        if snapshot is not None:
            self._load(snapshot)

    # ── Persistence ──

    def _load(self, snapshot: ChatSnapshotFile) -> None:
        loaded = 0
        for session_id, entries in snapshot.load().items():
            for entry in entries:
                chat = Chat.from_dict(entry)
                if chat is None:
                    logger.debug("Skipping malformed chat in snapshot session=%s", session_id)
                    continue
                self._chats.setdefault(session_id, {})[chat.id] = chat
                loaded += 1
        logger.info("Chat store loaded %d chat(s) from %s", loaded, snapshot.path)

    def to_snapshot(self) -> dict[str, list[dict[str, Any]]]:
        return {
            session_id: [chat.to_dict() for chat in chats.values()]
            for session_id, chats in self._chats.items()
        }

    def _changed(self) -> None:
        if self._snapshot is None:
            return
        self._dirty = True
        if self._save_handle is not None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.flush()
            return
        self._save_handle = loop.call_later(self._save_delay, self._save_due)

    def _save_due(self) -> None:
        self._save_handle = None
        self.flush()

    def flush(self) -> None:
        """Write pending changes now."""
        if self._snapshot is None or not self._dirty:
            return
        self._dirty = False
        try:
            self._snapshot.save(self.to_snapshot())
        except OSError as exc:
            # Kept dirty so the next change retries.
            self._dirty = True
            logger.warning("Chat snapshot write failed path=%s: %s", self._snapshot.path, exc)

    def close(self) -> None:
        if self._save_handle is not None:
            self._save_handle.cancel()
            self._save_handle = None
        self.flush()

    # ── Chats ──

    def create_chat(self, session_id: str) -> Chat:
        chat = Chat(id=_new_id(14))
        self._chats.setdefault(session_id, {})[chat.id] = chat
        self._changed()
        return chat

    def list_chats(self, session_id: str) -> list[Chat]:
        chats = list(self._chats.get(session_id, {}).values())
        chats.sort(key=lambda c: c.updated_at, reverse=True)
        return chats

    def get_chat(self, session_id: str, chat_id: str) -> Chat | None:
        return self._chats.get(session_id, {}).get(chat_id)

    def _require(self, session_id: str, chat_id: str) -> Chat:
        chat = self.get_chat(session_id, chat_id)
        if chat is None:
            raise KeyError(chat_id)
        return chat

    def delete_chat(self, session_id: str, chat_id: str) -> bool:
        chats = self._chats.get(session_id)
        if not chats or chat_id not in chats:
            return False
        del chats[chat_id]
        if not chats:
            del self._chats[session_id]
        self._changed()
        return True

    def append_message(self, session_id: str, chat_id: str, role: str, text: str) -> ChatMessage:
        chat = self._require(session_id, chat_id)
        message = ChatMessage(id=_new_id(12), role=role, text=text)
        chat.messages.append(message)
        chat.updated_at = _now_ms()
        self._changed()
        return message

    def append_to_message_text(
        self, session_id: str, chat_id: str, message_id: str, delta: str,
    ) -> None:
        chat = self._require(session_id, chat_id)
        message = chat.find_message(message_id)
        message.text += delta
        chat.updated_at = _now_ms()
        self._changed()

    def set_message_text(
        self, session_id: str, chat_id: str, message_id: str, text: str,
    ) -> None:
        chat = self._require(session_id, chat_id)
        chat.find_message(message_id).text = text
        chat.updated_at = _now_ms()
        self._changed()

    def update_settings(
        self, session_id: str, chat_id: str, patch: dict[str, str | None],
    ) -> dict[str, str]:
        """Apply a settings patch; a None value clears that override."""
        chat = self._require(session_id, chat_id)
        for key, value in patch.items():
            if key not in SETTING_KEYS:
                raise ValueError(f"Unknown chat setting: {key}")
            if value is None:
                chat.settings.pop(key, None)
            else:
                chat.settings[key] = value
        chat.updated_at = _now_ms()
        self._changed()
        return dict(chat.settings)
