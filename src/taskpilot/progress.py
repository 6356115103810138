"""Bounded, non-blocking progress channel between a run and its caller."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_BUFFER_SIZE = 100


class EventKind(str, Enum):
    START = "start"
    COMPLETE = "complete"
    ERROR = "error"
    RESULT_CHUNK = "result_chunk"
    DONE = "done"

    @property
    def terminal(self) -> bool:
        return self in {EventKind.DONE, EventKind.ERROR}


@dataclass(slots=True)
class ProgressEvent:
    kind: EventKind
    label: str
    message: str = ""
    timestamp: str = field(default_factory=lambda: datetime.now(UTC).isoformat())
    payload: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    session_id: str = ""

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "kind": self.kind.value,
            "label": self.label,
            "message": self.message,
            "timestamp": self.timestamp,
            "session_id": self.session_id,
        }
        if self.payload:
            data["payload"] = self.payload
        if self.error:
            data["error"] = self.error
        return data


class ProgressBus:
    """Single-producer, single-consumer event channel.

    ``send`` never blocks: once ``capacity`` events are buffered, further
    non-terminal events are dropped and counted. ``done`` and ``error`` events
    are always buffered so a consumer always sees how the run ended.
    """

    def __init__(self, session_id: str, capacity: int = DEFAULT_BUFFER_SIZE) -> None:
        if capacity < 1:
            raise ValueError("Progress bus capacity must be at least 1.")
        self.session_id = session_id
        self.capacity = capacity
        self.dropped = 0
        self._buffer: deque[ProgressEvent] = deque()
        self._ready = asyncio.Event()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        return len(self._buffer)

    def send(self, event: ProgressEvent) -> bool:
        if self._closed:
            logger.warning(
                "progress bus for session %s is closed, dropping %s event %s",
                self.session_id,
                event.kind.value,
                event.label,
            )
            return False
        if len(self._buffer) >= self.capacity and not event.kind.terminal:
            self.dropped += 1
            logger.warning(
                "progress buffer full for session %s, dropping %s event %s",
                self.session_id,
                event.kind.value,
                event.label,
            )
            return False
        if not event.session_id:
            event.session_id = self.session_id
        self._buffer.append(event)
        self._ready.set()
        return True

    def emit(
        self,
        kind: EventKind,
        label: str,
        message: str = "",
        *,
        payload: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> bool:
        return self.send(
            ProgressEvent(
                kind=kind,
                label=label,
                message=message,
                payload=dict(payload or {}),
                error=error,
                session_id=self.session_id,
            )
        )

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._ready.set()

    async def __aiter__(self) -> AsyncIterator[ProgressEvent]:
        while True:
            if self._buffer:
                yield self._buffer.popleft()
                continue
            if self._closed:
                return
            self._ready.clear()
            await self._ready.wait()
