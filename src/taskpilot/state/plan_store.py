from __future__ import annotations

import logging
import os
import re
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

logger = logging.getLogger(__name__)

VERSION_HEADER_PATTERN = re.compile(r"^## Version v(\d+)\b")
_UNSAFE_SESSION_CHARS = re.compile(r"[^A-Za-z0-9._-]")


class PlanStoreError(RuntimeError):
    """Raised when plan persistence fails."""


class PlanNotFoundError(PlanStoreError):
    """Raised when a session has no stored plan version."""


class PlanWriteError(PlanStoreError):
    """Raised when a plan version cannot be appended."""


def _timestamp() -> str:
    return datetime.now().strftime("%Y-%m-%d %H:%M:%S")


class PlanStore(ABC):
    """Append-only, versioned task list storage keyed by session id."""

    def __init__(self) -> None:
        self._locks: dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, session_id: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(session_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[session_id] = lock
            return lock

    @contextmanager
    def session_lock(self, session_id: str) -> Iterator[None]:
        """Serialize read-modify-append sequences for one session."""
        with self._lock_for(session_id):
            yield

    @abstractmethod
    def get_latest(self, session_id: str) -> tuple[str, int]:
        """Return ``(text, version)`` of the highest version."""

    @abstractmethod
    def append_version(self, session_id: str, text: str) -> int:
        """Append ``text`` as the next version and return its number."""


@dataclass(slots=True)
class _StoredVersion:
    version: int
    written_at: str
    text: str


class MemoryPlanStore(PlanStore):
    def __init__(self) -> None:
        super().__init__()
        self._versions: dict[str, list[_StoredVersion]] = {}

    def get_latest(self, session_id: str) -> tuple[str, int]:
        with self.session_lock(session_id):
            versions = self._versions.get(session_id)
            if not versions:
                raise PlanNotFoundError(f"No plan found for session {session_id}")
            latest = max(versions, key=lambda item: item.version)
            return latest.text, latest.version

    def append_version(self, session_id: str, text: str) -> int:
        with self.session_lock(session_id):
            versions = self._versions.setdefault(session_id, [])
            version = max((item.version for item in versions), default=0) + 1
            versions.append(_StoredVersion(version, _timestamp(), text.strip()))
            return version

    def versions(self, session_id: str) -> list[int]:
        return [item.version for item in self._versions.get(session_id, [])]


class DiskPlanStore(PlanStore):
    """One markdown file per session holding timestamped version blocks."""

    def __init__(self, data_dir: Path, *, lock_timeout_seconds: float = 3.0) -> None:
        super().__init__()
        self.root = data_dir.resolve() / "todolists"
        self.lock_timeout_seconds = lock_timeout_seconds

    def plan_path(self, session_id: str) -> Path:
        safe_id = _UNSAFE_SESSION_CHARS.sub("_", session_id) or "_"
        return self.root / f"{safe_id}.md"

    @contextmanager
    def _file_lock(self, session_id: str) -> Iterator[None]:
        lock_file = self.plan_path(session_id).with_suffix(".lock")
        start = time.monotonic()
        while True:
            try:
                fd = os.open(lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > self.lock_timeout_seconds:
                    raise PlanWriteError(
                        f"Timed out waiting for plan lock of session {session_id}."
                    ) from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                lock_file.unlink()
            except FileNotFoundError:
                pass

    @staticmethod
    def _parse_versions(content: str) -> dict[int, str]:
        blocks: dict[int, list[str]] = {}
        current: list[str] | None = None
        for line in content.splitlines():
            match = VERSION_HEADER_PATTERN.match(line)
            if match:
                current = blocks.setdefault(int(match.group(1)), [])
                current.clear()
                continue
            if current is not None:
                current.append(line)
        return {version: "\n".join(lines).strip() for version, lines in blocks.items()}

    def _read_versions(self, session_id: str) -> dict[int, str]:
        path = self.plan_path(session_id)
        if not path.exists():
            return {}
        try:
            content = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise PlanStoreError(f"Failed to read plan file {path}: {exc}") from exc
        return self._parse_versions(content)

    def get_latest(self, session_id: str) -> tuple[str, int]:
        with self.session_lock(session_id):
            versions = self._read_versions(session_id)
        if not versions:
            raise PlanNotFoundError(f"No plan found for session {session_id}")
        latest = max(versions)
        return versions[latest], latest

    def append_version(self, session_id: str, text: str) -> int:
        path = self.plan_path(session_id)
        with self.session_lock(session_id):
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                with self._file_lock(session_id):
                    version = max(self._read_versions(session_id), default=0) + 1
                    block = f"\n## Version v{version} - {_timestamp()}\n\n{text.strip()}\n"
                    with path.open("a", encoding="utf-8") as handle:
                        if handle.tell() == 0:
                            handle.write(
                                f"# Task List for Session: {session_id}\n\n"
                                "This file contains versioned task lists generated by the agent.\n"
                            )
                        handle.write(block)
                        handle.flush()
                        os.fsync(handle.fileno())
            except OSError as exc:
                raise PlanWriteError(f"Failed to append plan version to {path}: {exc}") from exc
            except PlanStoreError as exc:
                raise PlanWriteError(str(exc)) from exc
        logger.info("wrote plan version v%d for session %s", version, session_id)
        return version
