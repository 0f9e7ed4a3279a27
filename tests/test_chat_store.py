from __future__ import annotations

import asyncio
import json
import logging

import pytest

from agentdeck.shared.chat_store import ChatStore
from agentdeck.shared.persistence import ChatSnapshotFile


def test_chats_are_scoped_by_session() -> None:
    store = ChatStore()
    chat = store.create_chat("alice")

    assert len(chat.id) == 14
    assert store.get_chat("alice", chat.id) is chat
    assert store.get_chat("bob", chat.id) is None
    assert store.list_chats("bob") == []


def test_list_orders_by_most_recent_update() -> None:
    store = ChatStore()
    older = store.create_chat("sid")
    newer = store.create_chat("sid")
    older.updated_at = 1
    newer.updated_at = 2
    assert [c.id for c in store.list_chats("sid")] == [newer.id, older.id]

    store.append_message("sid", older.id, "user", "bump")
    assert store.list_chats("sid")[0].id == older.id


def test_message_text_updates() -> None:
    store = ChatStore()
    chat = store.create_chat("sid")
    message = store.append_message("sid", chat.id, "assistant", "")

    store.append_to_message_text("sid", chat.id, message.id, "Hel")
    store.append_to_message_text("sid", chat.id, message.id, "lo")
    assert chat.find_message(message.id).text == "Hello"

    store.set_message_text("sid", chat.id, message.id, "")
    assert chat.to_dict()["messages"][0]["text"] == ""
    assert chat.summary()["preview"] == ""


def test_unknown_chat_or_message_raises_key_error() -> None:
    store = ChatStore()
    chat = store.create_chat("sid")
    with pytest.raises(KeyError):
        store.append_message("sid", "nope", "user", "x")
    with pytest.raises(KeyError):
        store.append_to_message_text("sid", chat.id, "missing", "x")


def test_settings_patch_and_clear() -> None:
    store = ChatStore()
    chat = store.create_chat("sid")

    store.update_settings("sid", chat.id, {"model": "gpt-5", "reasoning_effort": "high"})
    assert chat.settings_dict() == {"model": "gpt-5", "reasoningEffort": "high"}

    assert store.update_settings("sid", chat.id, {"model": None}) == {
        "reasoning_effort": "high",
    }
    with pytest.raises(ValueError):
        store.update_settings("sid", chat.id, {"temperature": "1"})


def test_delete_chat() -> None:
    store = ChatStore()
    chat = store.create_chat("sid")
    assert store.delete_chat("sid", chat.id) is True
    assert store.delete_chat("sid", chat.id) is False
    assert store.list_chats("sid") == []


def test_snapshot_restores_chats_messages_and_settings(tmp_path) -> None:
    path = tmp_path / "chats.json"
    store = ChatStore(ChatSnapshotFile(path))
    chat = store.create_chat("sid")
    store.append_message("sid", chat.id, "user", "hi")
    reply = store.append_message("sid", chat.id, "assistant", "")
    store.append_to_message_text("sid", chat.id, reply.id, "Hello")
    store.update_settings("sid", chat.id, {"model": "gpt-5", "reasoning_effort": "high"})
    store.create_chat("other")

    restored = ChatStore(ChatSnapshotFile(path))

    assert restored.get_chat("sid", chat.id).to_dict() == chat.to_dict()
    assert restored.get_chat("sid", chat.id).settings == {
        "model": "gpt-5", "reasoning_effort": "high",
    }
    assert len(restored.list_chats("other")) == 1
    assert sorted(p.name for p in tmp_path.iterdir()) == ["chats.json"]


def test_deleted_chat_stays_deleted(tmp_path) -> None:
    path = tmp_path / "chats.json"
    store = ChatStore(ChatSnapshotFile(path))
    chat = store.create_chat("sid")
    store.delete_chat("sid", chat.id)

    assert ChatStore(ChatSnapshotFile(path)).list_chats("sid") == []


def test_malformed_snapshot_entries_are_skipped(tmp_path) -> None:
    path = tmp_path / "chats.json"
    path.write_text(json.dumps({
        "version": 1,
        "chats": {
            "sid": [
                {
                    "id": "good",
                    "createdAt": 1,
                    "updatedAt": 2,
                    "messages": [
                        {"id": "m1", "role": "user", "text": "hi", "createdAt": 1},
                        {"id": "m2", "role": "robot", "text": "?", "createdAt": 1},
                    ],
                    "settings": {"reasoningEffort": "low", "colour": "blue", "cwd": 7},
                },
                {"id": "no-timestamps"},
                "not a chat",
            ],
            "broken-session": "nope",
        },
    }))

    store = ChatStore(ChatSnapshotFile(path))

    assert [c.id for c in store.list_chats("sid")] == ["good"]
    chat = store.get_chat("sid", "good")
    assert [m.id for m in chat.messages] == ["m1"]
    assert chat.settings == {"reasoning_effort": "low"}
    assert store.list_chats("broken-session") == []


def test_unreadable_snapshot_starts_empty(tmp_path, caplog) -> None:
    path = tmp_path / "chats.json"
    path.write_text("{not json")

    with caplog.at_level(logging.WARNING):
        store = ChatStore(ChatSnapshotFile(path))

    assert store.list_chats("sid") == []
    assert "unreadable chat snapshot" in caplog.text


@pytest.mark.asyncio
async def test_saves_are_debounced_inside_event_loop(tmp_path) -> None:
    path = tmp_path / "chats.json"
    store = ChatStore(ChatSnapshotFile(path), save_delay=0.02)
    chat = store.create_chat("sid")
    store.append_message("sid", chat.id, "user", "one")

    assert not path.exists()
    await asyncio.sleep(0.1)
    saved = json.loads(path.read_text())
    assert [m["text"] for m in saved["chats"]["sid"][0]["messages"]] == ["one"]

    store.append_message("sid", chat.id, "user", "two")
    store.close()
    saved = json.loads(path.read_text())
    assert [m["text"] for m in saved["chats"]["sid"][0]["messages"]] == ["one", "two"]
