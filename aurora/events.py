"""Single outbound event channel for capture and transcription."""

from __future__ import annotations

import queue
from dataclasses import dataclass, field
from typing import Iterator, List, Literal, Optional, Union

from .audio.types import AudioChunk


@dataclass(slots=True, frozen=True)
class ChunkEvent:
    chunk: AudioChunk
    trigger: str = "timer"
    kind: Literal["chunk"] = field(default="chunk", init=False)


@dataclass(slots=True, frozen=True)
class TranscriptEvent:
    chunk_id: str
    index: int
    text: str
    start_ms: float
    end_ms: float
    language: str = "unknown"
    kind: Literal["transcript"] = field(default="transcript", init=False)


@dataclass(slots=True, frozen=True)
class ProgressEvent:
    current: int
    total: int
    kind: Literal["progress"] = field(default="progress", init=False)


@dataclass(slots=True, frozen=True)
class LevelEvent:
    level: float
    speaking: bool
    kind: Literal["level"] = field(default="level", init=False)


@dataclass(slots=True, frozen=True)
class ErrorEvent:
    error: BaseException
    source: str = "capture"
    kind: Literal["error"] = field(default="error", init=False)


Event = Union[ChunkEvent, TranscriptEvent, ProgressEvent, LevelEvent, ErrorEvent]

_CLOSED = object()


class EventChannel:
    """Thread-safe FIFO of events; producers publish, one consumer drains."""

    def __init__(self, maxsize: int = 0) -> None:
        self._queue: "queue.Queue[object]" = queue.Queue(maxsize=maxsize)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(self, event: Event) -> None:
        if self._closed:
            return
        self._queue.put(event)

    def get(self, timeout: float | None = None) -> Optional[Event]:
        """Next event, or None when the channel is closed or the wait timed out."""
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        if item is _CLOSED:
            # Keep the sentinel visible for other waiters.
            self._queue.put(_CLOSED)
            return None
        return item  # type: ignore[return-value]

    def drain(self) -> List[Event]:
        events: List[Event] = []
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return events
            if item is _CLOSED:
                self._queue.put(_CLOSED)
                return events
            events.append(item)  # type: ignore[arg-type]

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put(_CLOSED)

    def __iter__(self) -> Iterator[Event]:
        while True:
            event = self.get()
            if event is None:
                return
            yield event


__all__ = [
    "ChunkEvent",
    "ErrorEvent",
    "Event",
    "EventChannel",
    "LevelEvent",
    "ProgressEvent",
    "TranscriptEvent",
]
