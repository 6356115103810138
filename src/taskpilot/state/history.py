from __future__ import annotations

import json
import logging
import re
import threading
from abc import ABC, abstractmethod
from pathlib import Path

from taskpilot.chat.base import Message

logger = logging.getLogger(__name__)

_UNSAFE_SESSION_CHARS = re.compile(r"[^A-Za-z0-9._-]")


class HistoryStore(ABC):
    """Chat transcript per session, read once at the start of a run."""

    @abstractmethod
    def get_recent(self, session_id: str, limit: int) -> list[Message]:
        """Return the last ``limit`` messages in chronological order."""

    @abstractmethod
    def append(self, session_id: str, message: Message) -> None:
        """Record one message at the end of the transcript."""


def _tail(messages: list[Message], limit: int) -> list[Message]:
    if limit > 0 and len(messages) > limit:
        return messages[-limit:]
    return list(messages)


class MemoryHistoryStore(HistoryStore):
    def __init__(self) -> None:
        self._messages: dict[str, list[Message]] = {}
        self._lock = threading.Lock()

    def get_recent(self, session_id: str, limit: int) -> list[Message]:
        with self._lock:
            return _tail(self._messages.get(session_id, []), limit)

    def append(self, session_id: str, message: Message) -> None:
        with self._lock:
            self._messages.setdefault(session_id, []).append(message)


class DiskHistoryStore(HistoryStore):
    """JSON-lines transcript per session under ``<data_dir>/sessions``."""

    def __init__(self, data_dir: Path) -> None:
        self.root = data_dir.resolve() / "sessions"
        self._lock = threading.Lock()

    def session_path(self, session_id: str) -> Path:
        safe_id = _UNSAFE_SESSION_CHARS.sub("_", session_id) or "_"
        return self.root / f"{safe_id}.jsonl"

    def get_recent(self, session_id: str, limit: int) -> list[Message]:
        path = self.session_path(session_id)
        if not path.exists():
            return []
        messages: list[Message] = []
        with self._lock:
            lines = path.read_text(encoding="utf-8").splitlines()
        for raw_line in lines:
            line = raw_line.strip()
            if not line:
                continue
            try:
                payload = json.loads(line)
            except json.JSONDecodeError:
                logger.warning("skipping corrupt history line for session %s", session_id)
                continue
            if isinstance(payload, dict):
                messages.append(Message.from_dict(payload))
        return _tail(messages, limit)

    def append(self, session_id: str, message: Message) -> None:
        path = self.session_path(session_id)
        with self._lock:
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(message.to_dict(), ensure_ascii=False))
                handle.write("\n")
