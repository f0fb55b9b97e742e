"""Worker status events and the in-memory buffer that fans them out.

WorkerEvents is injected into the worker rather than held as a global so the
control API, the CLI and tests can each observe the same stream.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import asdict, dataclass, field
from typing import AsyncIterator, Literal, Union

logger = logging.getLogger(__name__)


@dataclass
class BaseEvent:
    timestamp: float = field(default_factory=time.time)


@dataclass
class StatusChanged(BaseEvent):
    type: Literal["worker.status"] = "worker.status"
    status: str = ""
    worker_id: str | None = None


@dataclass
class BuildStarted(BaseEvent):
    type: Literal["build.started"] = "build.started"
    build_id: str = ""
    platform: str = ""


@dataclass
class BuildProgress(BaseEvent):
    type: Literal["build.progress"] = "build.progress"
    build_id: str = ""
    phase: str = ""
    percent: int = 0
    message: str = ""


@dataclass
class BuildFinished(BaseEvent):
    type: Literal["build.finished"] = "build.finished"
    build_id: str = ""
    success: bool = False
    error: str | None = None


WorkerEvent = Union[
    StatusChanged,
    BuildStarted,
    BuildProgress,
    BuildFinished,
]

# The stream ends once the worker has fully stopped
TERMINAL_STATUSES = {"stopped"}


class WorkerEvents:
    """Bounded in-memory event buffer with async streaming.

    Consumers stream from a cursor (replay + live-tail) via an
    asyncio.Condition. Only the most recent ``max_events`` are retained.
    """

    def __init__(self, max_events: int = 1000) -> None:
        self._events: list[tuple[str, dict]] = []
        self._dropped = 0
        self._max_events = max_events
        self._cond: asyncio.Condition = asyncio.Condition()
        self._closed = False

    @property
    def cursor(self) -> int:
        """Absolute position of the next event to be appended."""
        return self._dropped + len(self._events)

    def recent(self, limit: int = 50) -> list[tuple[str, dict]]:
        return list(self._events[-limit:])

    async def append(self, event_type: str, payload: dict) -> None:
        self._events.append((event_type, payload))
        overflow = len(self._events) - self._max_events
        if overflow > 0:
            del self._events[:overflow]
            self._dropped += overflow
        async with self._cond:
            self._cond.notify_all()

    async def publish(self, event: WorkerEvent) -> None:
        payload = asdict(event)
        event_type = payload.pop("type")
        await self.append(event_type, payload)

    async def close(self) -> None:
        """Mark the stream finished so streaming consumers can return."""
        self._closed = True
        async with self._cond:
            self._cond.notify_all()

    def reopen(self) -> None:
        """Accept new streaming consumers again after a close (worker restart)."""
        self._closed = False

    async def stream(self, cursor: int | None = None) -> AsyncIterator[tuple[str, dict]]:
        """Yield events from *cursor* (default: live only), then live-tail.

        Consumers that fell behind the retention window resume at the
        oldest retained event.
        """
        position = self.cursor if cursor is None else cursor
        while True:
            position = max(position, self._dropped)
            while position < self.cursor:
                yield self._events[position - self._dropped]
                position += 1
            if self._closed:
                return
            async with self._cond:
                await self._cond.wait()

    async def stream_sse(self, cursor: int | None = None) -> AsyncIterator[dict]:
        """Stream events formatted for SSE (event + data keys)."""
        async for event_type, payload in self.stream(cursor):
            yield {
                "event": event_type,
                "data": json.dumps({"type": event_type, **payload}),
            }
            if event_type == "worker.status" and payload.get("status") in TERMINAL_STATUSES:
                return
