"""Incremental captions: transcribe capture chunks as they are emitted."""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Optional, Set

import numpy as np

from ..audio import converter
from ..audio.types import AudioChunk
from ..errors import Aborted, ConversionError
from ..events import ChunkEvent, ErrorEvent, EventChannel, TranscriptEvent
from ..settings import AuroraSettings
from .transcription import TranscriptionClient

LOGGER = logging.getLogger("aurora.live")

MIN_CHUNK_BYTES = 4000
SILENCE_RMS = 0.01
MAX_SILENCE_RATIO = 0.7
MIN_TEXT_LENGTH = 5

# Known boilerplate the recognizer produces on silence or noise.
HALLUCINATION_PATTERNS = [
    re.compile(r"\[.*\]"),
    re.compile(r"♪|🎵|🎶"),
    re.compile(r"thanks? (you )?for watching", re.IGNORECASE),
    re.compile(r"subtitles? (by|created)", re.IGNORECASE),
    re.compile(r"©|copyright", re.IGNORECASE),
    re.compile(r"vielen dank für.*zusehen", re.IGNORECASE),
    re.compile(r"untertitel.*erstellt", re.IGNORECASE),
    re.compile(r"abonnieren|liken|glocke", re.IGNORECASE),
]


def silence_ratio(payload: bytes, *, window_ms: int = 50, threshold: float = SILENCE_RMS) -> float:
    """Share of `window_ms` windows whose RMS falls below `threshold` (0 on decode failure)."""

    try:
        audio, sample_rate = converter.decode_audio(payload)
    except ConversionError as exc:
        LOGGER.debug("Silence analysis failed, processing chunk anyway: %s", exc)
        return 0.0
    mono = audio[:, 0]
    window = max(1, int(sample_rate * window_ms / 1000))
    count = len(mono) // window
    if count == 0:
        return 0.0
    frames = mono[: count * window].reshape(count, window)
    rms = np.sqrt(np.mean(np.square(frames, dtype=np.float64), axis=1))
    return float(np.count_nonzero(rms < threshold)) / count


def is_likely_hallucination(text: str) -> bool:
    if len(text) < MIN_TEXT_LENGTH:
        return True
    return any(pattern.search(text) for pattern in HALLUCINATION_PATTERNS)


class LiveTranscriber:
    """Consume chunk events and publish transcript events in a single outbound channel."""

    def __init__(
        self,
        client: TranscriptionClient,
        settings: AuroraSettings,
        output: Optional[EventChannel] = None,
        *,
        language: Optional[str] = None,
    ) -> None:
        self.client = client
        self.settings = settings
        self.output = output or EventChannel()
        self.language = language
        self.cancel = asyncio.Event()
        self._slots = asyncio.Semaphore(max(1, settings.live_max_concurrent))
        self._pending: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def handle(self, chunk: AudioChunk) -> Optional[TranscriptEvent]:
        if chunk.size < MIN_CHUNK_BYTES:
            LOGGER.debug("Chunk %s skipped: %d bytes", chunk.id, chunk.size)
            return None
        ratio = await asyncio.to_thread(silence_ratio, chunk.data)
        if ratio > MAX_SILENCE_RATIO:
            LOGGER.debug("Chunk %s skipped: %.1f%% silence", chunk.id, ratio * 100)
            return None
        async with self._slots:
            try:
                result = await self.client.transcribe_chunk(
                    chunk, language=self.language, cancel=self.cancel
                )
            except Aborted:
                return None
            except Exception as exc:
                LOGGER.error("Chunk %s transcription failed: %s", chunk.id, exc)
                self.output.publish(ErrorEvent(error=exc, source="transcription"))
                return None
        text = result.text.strip()
        if not text or is_likely_hallucination(text):
            LOGGER.debug("Chunk %s dropped: %r", chunk.id, text[:50])
            return None
        event = TranscriptEvent(
            chunk_id=chunk.id,
            index=chunk.index,
            text=text,
            start_ms=chunk.start_ms,
            end_ms=chunk.end_ms,
            language=result.language,
        )
        self.output.publish(event)
        return event

    def submit(self, chunk: AudioChunk) -> asyncio.Task:
        task = asyncio.ensure_future(self.handle(chunk))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def run(self, source: EventChannel, *, poll_interval: float = 0.25) -> None:
        """Forward capture events, transcribing chunks, until `source` closes."""

        while not self.cancel.is_set():
            event = await asyncio.to_thread(source.get, poll_interval)
            if event is None:
                if source.closed:
                    break
                continue
            if isinstance(event, ChunkEvent):
                self.output.publish(event)
                self.submit(event.chunk)
            else:
                self.output.publish(event)
        await self.drain()

    async def drain(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def stop(self) -> None:
        """Abort every in-flight request and wait for them to settle."""
        self.cancel.set()
        await self.drain()


__all__ = ["LiveTranscriber", "is_likely_hallucination", "silence_ratio"]
