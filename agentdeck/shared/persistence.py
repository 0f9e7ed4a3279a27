"""Chat snapshot file.

The whole chat store is written as one JSON document:

    {"version": 1, "savedAt": <ms>, "chats": {<session id>: [<chat>, ...]}}

Writes go to a temp file in the same directory, are fsynced, then
renamed over the snapshot, so a crash leaves the previous one intact.
"""
from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1


def _fsync_dir(dir_path: Path) -> None:
    flags = os.O_RDONLY | getattr(os, "O_DIRECTORY", 0)
    try:
        fd = os.open(str(dir_path), flags)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        # Not every filesystem supports fsync on a directory.
        pass
    finally:
        os.close(fd)


def atomic_write_text(path: Path, content: str, *, encoding: str = "utf-8") -> None:
    """Replace *path* with *content* atomically."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(
        prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent),
    )
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding=encoding) as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
        _fsync_dir(path.parent)
    finally:
        tmp_path.unlink(missing_ok=True)


class ChatSnapshotFile:
    """Loads and saves the chat store's JSON snapshot."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path).expanduser()

    def load(self) -> dict[str, list[Any]]:
        """Raw chats by session id; empty when no usable snapshot exists."""
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable chat snapshot %s: %s", self.path, exc)
            return {}
        chats = data.get("chats") if isinstance(data, dict) else None
        if not isinstance(chats, dict):
            logger.warning("Ignoring malformed chat snapshot %s", self.path)
            return {}
        if data.get("version") != SNAPSHOT_VERSION:
            logger.info(
                "Chat snapshot %s has version %r; loading what parses",
                self.path, data.get("version"),
            )
        return {
            sid: entries for sid, entries in chats.items()
            if isinstance(sid, str) and isinstance(entries, list)
        }

    def save(self, chats: dict[str, list[dict[str, Any]]]) -> None:
        data = {
            "version": SNAPSHOT_VERSION,
            "savedAt": int(time.time() * 1000),
            "chats": chats,
        }
        atomic_write_text(self.path, json.dumps(data, indent=2))
        logger.debug(
            "Chat snapshot saved path=%s sessions=%d", self.path, len(chats),
        )
