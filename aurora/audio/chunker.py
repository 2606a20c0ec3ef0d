"""Segment a continuous capture stream into independently transcribable chunks."""

from __future__ import annotations

import logging
import math
import threading
import time
from typing import Callable, List, Optional

import numpy as np

from ..errors import CaptureUnavailable, InvalidState
from .encoders import Encoder
from .types import AudioChunk, CaptureFormat
from .vad import VoiceActivityDetector

LOGGER = logging.getLogger("aurora.chunker")

EncoderFactory = Callable[[], Encoder]
ChunkCallback = Callable[[AudioChunk, str], None]

MIN_VAD_CHUNK_MS = 1000.0


class FixedIntervalChunker:
    """Emit a chunk every interval, carrying an overlap tail into the next one.

    In restart mode the encoder is stopped at every boundary and a fresh one is
    created only after the previous stop has completed; no overlap is carried.
    """

    def __init__(
        self,
        capture_format: CaptureFormat,
        encoder_factory: EncoderFactory,
        *,
        interval_ms: float = 5000.0,
        overlap_ms: float = 500.0,
        min_chunk_ms: float = 1000.0,
        max_chunk_ms: float = 15000.0,
        fragment_ms: float = 100.0,
        on_chunk: Optional[ChunkCallback] = None,
        flush_timeout_s: float = 5.0,
    ) -> None:
        self.capture_format = capture_format
        self.restart_mode = capture_format.restart_required
        self.interval_ms = interval_ms
        self.overlap_ms = 0.0 if self.restart_mode else max(0.0, overlap_ms)
        self.min_chunk_ms = min_chunk_ms
        self.max_chunk_ms = max_chunk_ms
        self.fragment_ms = max(1.0, fragment_ms)
        self.on_chunk = on_chunk
        self.flush_timeout_s = flush_timeout_s
        self._encoder_factory = encoder_factory
        self._encoder: Encoder | None = None
        self._lock = threading.RLock()
        self._fragments: List[bytes] = []
        self._overlap: List[bytes] = []
        self._assembler: Encoder | None = None
        self._flushed = threading.Event()
        self._flushed_payload: Optional[bytes] = None
        self._index = 0
        self._session_start = 0.0
        self._chunk_start = 0.0
        self._deadline = 0.0
        self._active = False

    @property
    def active(self) -> bool:
        return self._active

    @property
    def chunk_count(self) -> int:
        return self._index

    @property
    def mime_type(self) -> str:
        return self.capture_format.mime_type

    def begin(self, now_ms: float) -> None:
        with self._lock:
            if self._active:
                raise InvalidState("Chunker is already running")
            self._fragments = []
            self._overlap = []
            self._index = 0
            self._session_start = now_ms
            self._chunk_start = now_ms
            self._deadline = now_ms + self.interval_ms
            self._start_encoder()
            self._active = True

    def feed(self, frames: np.ndarray) -> None:
        with self._lock:
            if not self._active or self._encoder is None:
                return
            self._encoder.write(frames)

    def current_duration(self, now_ms: float) -> float:
        return now_ms - self._chunk_start

    def tick(self, now_ms: float) -> Optional[AudioChunk]:
        """Timer check: emit when the interval elapsed or the chunk grew too long."""

        with self._lock:
            if not self._active:
                return None
            if now_ms >= self._deadline:
                self._deadline = now_ms + self.interval_ms
                return self._emit(now_ms, final=False, trigger="timer")
            if self.current_duration(now_ms) >= self.max_chunk_ms:
                self._deadline = now_ms + self.interval_ms
                return self._emit(now_ms, final=False, trigger="max")
            return None

    def force_emit(self, now_ms: float, trigger: str = "manual") -> Optional[AudioChunk]:
        with self._lock:
            if not self._active:
                return None
            chunk = self._emit(now_ms, final=False, trigger=trigger)
            self._deadline = now_ms + self.interval_ms
            return chunk

    def shift(self, delta_ms: float) -> None:
        """Move the timeline forward by a pause so paused time is not chunk audio."""
        with self._lock:
            self._deadline += delta_ms
            self._chunk_start += delta_ms
            self._session_start += delta_ms

    def finish(self, now_ms: float) -> Optional[AudioChunk]:
        with self._lock:
            if not self._active:
                return None
            try:
                return self._emit(now_ms, final=True, trigger="final")
            finally:
                self._active = False
                self._encoder = None
                self._fragments = []
                self._overlap = []

    def abort(self) -> None:
        with self._lock:
            encoder = self._encoder
            self._active = False
            self._encoder = None
            self._fragments = []
            self._overlap = []
        if encoder is not None:
            try:
                encoder.stop()
            except Exception as exc:  # pragma: no cover
                LOGGER.warning("Encoder teardown failed: %s", exc)

    def _start_encoder(self) -> None:
        encoder = self._encoder_factory()
        flushed = threading.Event()
        self._flushed = flushed
        self._flushed_payload = None

        def _on_stop(payload: Optional[bytes]) -> None:
            self._flushed_payload = payload
            flushed.set()

        encoder.start(self._append_fragment, _on_stop)
        self._encoder = encoder
        self._assembler = encoder

    def _append_fragment(self, fragment: bytes) -> None:
        if fragment:
            self._fragments.append(fragment)

    def _stop_encoder(self) -> Optional[bytes]:
        """Stop the current encoder and block until its flush completes."""

        encoder = self._encoder
        if encoder is None:
            return None
        encoder.stop()
        if not self._flushed.wait(self.flush_timeout_s):
            raise CaptureUnavailable("Encoder did not finish flushing")
        self._encoder = None
        return self._flushed_payload

    def _emit(self, now_ms: float, *, final: bool, trigger: str) -> Optional[AudioChunk]:
        duration = now_ms - self._chunk_start
        if not final and duration < self.min_chunk_ms:
            return None
        if self.restart_mode:
            payload = self._stop_encoder()
            self._fragments = []
            start = self._chunk_start
            self._chunk_start = now_ms
            # The finished container is published before the replacement encoder exists.
            chunk = self._build(payload, start, now_ms, trigger) if payload else None
            if not final:
                self._restart_encoder()
            return chunk
        if final:
            self._stop_encoder()
        if not self._fragments:
            return None
        payload = self._assembler.assemble(self._overlap + self._fragments)
        start = self._chunk_start
        if not final and self.overlap_ms > 0:
            keep = math.ceil(self.overlap_ms / self.fragment_ms)
            self._overlap = self._fragments[-keep:]
            self._chunk_start = now_ms - self.overlap_ms
        else:
            self._overlap = []
            self._chunk_start = now_ms
        self._fragments = []
        return self._build(payload, start, now_ms, trigger)

    def _restart_encoder(self) -> None:
        try:
            self._start_encoder()
        except Exception as exc:
            self._active = False
            self._encoder = None
            LOGGER.error("Encoder restart failed, chunker stopped: %s", exc)
            raise CaptureUnavailable(f"Unable to restart encoder: {exc}") from exc

    def _build(self, payload: bytes, start: float, now_ms: float, trigger: str) -> AudioChunk:
        chunk = AudioChunk(
            id=f"chunk-{int(time.time() * 1000)}-{self._index}",
            data=payload,
            start_ms=start - self._session_start,
            end_ms=now_ms - self._session_start,
            duration_ms=now_ms - start,
            index=self._index,
            mime_type=self.capture_format.mime_type,
        )
        self._index += 1
        LOGGER.debug(
            "Chunk %d emitted (%s, %.0fms, %d bytes)",
            chunk.index,
            trigger,
            chunk.duration_ms,
            chunk.size,
        )
        if self.on_chunk:
            self.on_chunk(chunk, trigger)
        return chunk


class VadChunker(FixedIntervalChunker):
    """Fixed-interval chunker that also cuts at sustained silence."""

    def __init__(
        self,
        capture_format: CaptureFormat,
        encoder_factory: EncoderFactory,
        *,
        speech_threshold: float = 0.15,
        silence_threshold: float = 0.05,
        silence_duration_ms: float = 800.0,
        **kwargs,
    ) -> None:
        super().__init__(capture_format, encoder_factory, **kwargs)
        self.vad = VoiceActivityDetector(
            speech_threshold=speech_threshold,
            silence_threshold=silence_threshold,
            silence_duration_ms=silence_duration_ms,
        )
        self._last_tick = 0.0

    def begin(self, now_ms: float) -> None:
        super().begin(now_ms)
        self.vad.reset()
        self._last_tick = now_ms

    def shift(self, delta_ms: float) -> None:
        super().shift(delta_ms)
        self._last_tick += delta_ms

    def observe(self, raw_level: float, now_ms: float) -> Optional[AudioChunk]:
        """One monitoring tick; force-emits at a natural pause."""

        with self._lock:
            if not self.active:
                return None
            delta = now_ms - self._last_tick
            self._last_tick = now_ms
            if not self.vad.update(raw_level, delta):
                return None
            chunk = None
            if self.current_duration(now_ms) >= MIN_VAD_CHUNK_MS:
                chunk = self.force_emit(now_ms, trigger="vad")
            self.vad.reset_silence()
            return chunk


__all__ = ["FixedIntervalChunker", "VadChunker"]
