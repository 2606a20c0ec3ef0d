"""Capture session: owns the input device, the encoder and the chunk timer."""

from __future__ import annotations

import collections
import logging
import threading
import time
from typing import Callable, Deque, List, Optional, Protocol

import numpy as np

from ..errors import CaptureUnavailable, InvalidState
from ..events import ChunkEvent, ErrorEvent, EventChannel, LevelEvent
from ..metrics import CHUNKS_EMITTED
from ..settings import AuroraSettings
from .chunker import FixedIntervalChunker, VadChunker
from .converter import pcm16_to_wav, to_pcm16
from .encoders import create_encoder
from .formats import FormatNegotiator
from .types import AudioChunk, CaptureFormat
from .vad import spectral_level

LOGGER = logging.getLogger("aurora.capture")

FrameListener = Callable[[np.ndarray], None]

ANALYSIS_WINDOW = 256
LEVEL_EVENT_INTERVAL_MS = 100.0


class AudioInput(Protocol):
    sample_rate: int
    channels: int

    @property
    def acquired(self) -> bool: ...

    def acquire(self) -> None: ...

    def release(self) -> None: ...

    def set_listener(self, listener: Optional[FrameListener]) -> None: ...


class SoundDeviceInput:
    """Microphone input through `sounddevice`, delivering int16 blocks."""

    def __init__(
        self,
        sample_rate: int = 16000,
        channels: int = 1,
        *,
        block_ms: int = 100,
        device: int | str | None = None,
    ) -> None:
        self.sample_rate = sample_rate
        self.channels = channels
        self.block_ms = block_ms
        self.device = device
        self._stream = None
        self._listener: Optional[FrameListener] = None
        self._lock = threading.Lock()

    @property
    def acquired(self) -> bool:
        return self._stream is not None

    def _import_sounddevice(self):
        try:
            import sounddevice as sd  # type: ignore

            return sd
        except Exception as exc:
            raise CaptureUnavailable(f"sounddevice unavailable: {exc}") from exc

    def acquire(self) -> None:
        if self._stream is not None:
            return
        sd = self._import_sounddevice()
        stream = None
        try:
            stream = sd.InputStream(
                samplerate=self.sample_rate,
                channels=self.channels,
                dtype="int16",
                blocksize=int(self.sample_rate * self.block_ms / 1000),
                callback=self._callback,
                device=self.device,
            )
            stream.start()
        except Exception as exc:
            if stream is not None:
                stream.close()
            raise CaptureUnavailable(f"Unable to open input device: {exc}") from exc
        self._stream = stream

    def release(self) -> None:
        stream = self._stream
        self._stream = None
        if stream is None:
            return
        try:
            stream.stop()
        finally:
            stream.close()

    def set_listener(self, listener: Optional[FrameListener]) -> None:
        with self._lock:
            if listener is not None and self._listener is not None:
                raise InvalidState("Input device already has an active capture session")
            self._listener = listener

    def _callback(self, indata, frames, time_info, status) -> None:  # noqa: ARG002
        listener = self._listener
        if listener is not None:
            listener(np.array(indata, dtype=np.int16, copy=True))


def _monotonic_ms() -> float:
    return time.monotonic() * 1000.0


class CaptureSession:
    """One capture lifecycle on one input device.

    Frames arrive on the device thread; a monitor thread drives the chunk timer
    and VAD sampling. Chunks and capture errors are published on `channel`.
    """

    def __init__(
        self,
        settings: AuroraSettings,
        channel: Optional[EventChannel] = None,
        *,
        input_factory: Optional[Callable[[AuroraSettings], AudioInput]] = None,
        negotiator: Optional[FormatNegotiator] = None,
        clock: Callable[[], float] = _monotonic_ms,
        run_monitor: bool = True,
    ) -> None:
        self.settings = settings
        self.channel = channel or EventChannel()
        self.negotiator = negotiator or FormatNegotiator(settings.capture_formats)
        self._input_factory = input_factory or _default_input
        self._clock = clock
        self._run_monitor = run_monitor
        self._lock = threading.RLock()
        self._input: Optional[AudioInput] = None
        self._owns_input = False
        self._chunker: Optional[FixedIntervalChunker] = None
        self._format: Optional[CaptureFormat] = None
        self._monitor: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._analysis: Deque[float] = collections.deque(maxlen=ANALYSIS_WINDOW)
        self._recording: List[bytes] = []
        self._sample_rate = settings.sample_rate
        self._channels = settings.channels
        self._running = False
        self._paused = False
        self._paused_at = 0.0
        self._last_level_event = 0.0

    @property
    def capture_format(self) -> Optional[CaptureFormat]:
        return self._format

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def chunker(self) -> Optional[FixedIntervalChunker]:
        return self._chunker

    def is_active(self) -> bool:
        return self._running

    def current_duration_ms(self) -> float:
        chunker = self._chunker
        if not self._running or chunker is None:
            return 0.0
        return chunker.current_duration(self._clock())

    def start(self, audio_input: Optional[AudioInput] = None) -> CaptureFormat:
        with self._lock:
            if self._running:
                raise InvalidState("Capture session is already running")
            device = audio_input or self._input_factory(self.settings)
            acquired_here = False
            chunker: Optional[FixedIntervalChunker] = None
            try:
                if not device.acquired:
                    device.acquire()
                    acquired_here = True
                fmt = self.negotiator.negotiate()
                self._sample_rate = device.sample_rate
                self._channels = device.channels
                chunker = self._build_chunker(fmt)
                chunker.begin(self._clock())
                device.set_listener(self._on_frames)
            except Exception as exc:
                if chunker is not None:
                    chunker.abort()
                if acquired_here:
                    device.release()
                if isinstance(exc, (CaptureUnavailable, InvalidState)):
                    raise
                raise CaptureUnavailable(f"Failed to start capture: {exc}") from exc

            self._input = device
            self._owns_input = acquired_here
            self._format = fmt
            self._chunker = chunker
            self._analysis.clear()
            self._recording = []
            self._paused = False
            self._stop_event.clear()
            self._running = True
            LOGGER.info(
                "Capture started (%s, %d Hz, %d ch)",
                fmt.mime_type,
                self._sample_rate,
                self._channels,
            )
        if self._run_monitor:
            self._monitor = threading.Thread(target=self._monitor_loop, daemon=True)
            self._monitor.start()
        return fmt

    def stop(self) -> Optional[AudioChunk]:
        with self._lock:
            if not self._running:
                return None
            self._running = False
            self._stop_event.set()
            device = self._input
            if device is not None:
                device.set_listener(None)
        monitor = self._monitor
        if monitor is not None and monitor is not threading.current_thread():
            monitor.join(timeout=2)
        self._monitor = None
        with self._lock:
            final: Optional[AudioChunk] = None
            try:
                if self._chunker is not None:
                    final = self._chunker.finish(self._clock())
            finally:
                if device is not None and self._owns_input:
                    device.release()
                self._input = None
                self._owns_input = False
                self._chunker = None
                self._analysis.clear()
                self._paused = False
            LOGGER.info("Capture stopped")
            return final

    def force_emit(self) -> Optional[AudioChunk]:
        with self._lock:
            if not self._running or self._chunker is None:
                return None
            return self._chunker.force_emit(self._clock(), trigger="manual")

    def pause(self) -> None:
        with self._lock:
            if not self._running:
                raise InvalidState("Capture session is not running")
            if self._paused:
                return
            self._paused = True
            self._paused_at = self._clock()

    def resume(self) -> None:
        with self._lock:
            if not self._running:
                raise InvalidState("Capture session is not running")
            if not self._paused:
                return
            self._paused = False
            if self._chunker is not None:
                self._chunker.shift(self._clock() - self._paused_at)

    def recording_wav(self) -> bytes:
        """Everything captured so far as one canonical WAV buffer."""
        return pcm16_to_wav(b"".join(self._recording), self._sample_rate, self._channels)

    def poll(self) -> None:
        """One monitoring tick: chunk timer plus VAD sampling."""

        with self._lock:
            chunker = self._chunker
            if not self._running or self._paused or chunker is None:
                return
            now = self._clock()
            chunker.tick(now)
            if isinstance(chunker, VadChunker):
                raw = spectral_level(np.fromiter(self._analysis, dtype=np.float32))
                chunker.observe(raw, now)
                if now - self._last_level_event >= LEVEL_EVENT_INTERVAL_MS:
                    self._last_level_event = now
                    self.channel.publish(
                        LevelEvent(level=chunker.vad.level, speaking=chunker.vad.speaking)
                    )

    def _build_chunker(self, fmt: CaptureFormat) -> FixedIntervalChunker:
        settings = self.settings
        sample_rate = self._sample_rate
        channels = self._channels

        def _factory():
            return create_encoder(fmt, sample_rate, channels)

        common = dict(
            interval_ms=settings.chunk_interval_ms,
            overlap_ms=settings.chunk_overlap_ms,
            min_chunk_ms=settings.min_chunk_ms,
            max_chunk_ms=settings.max_chunk_ms,
            fragment_ms=settings.fragment_ms,
            on_chunk=self._publish_chunk,
        )
        if settings.vad_enabled:
            return VadChunker(
                fmt,
                _factory,
                speech_threshold=settings.speech_threshold,
                silence_threshold=settings.silence_threshold,
                silence_duration_ms=settings.silence_duration_ms,
                **common,
            )
        return FixedIntervalChunker(fmt, _factory, **common)

    def _publish_chunk(self, chunk: AudioChunk, trigger: str) -> None:
        CHUNKS_EMITTED.labels(trigger=trigger).inc()
        self.channel.publish(ChunkEvent(chunk=chunk, trigger=trigger))

    def _on_frames(self, frames: np.ndarray) -> None:
        if not self._running or self._paused:
            return
        chunker = self._chunker
        if chunker is None:
            return
        pcm = to_pcm16(frames)
        try:
            chunker.feed(pcm)
        except Exception as exc:
            LOGGER.error("Encoder rejected frames: %s", exc)
            self.channel.publish(ErrorEvent(error=exc, source="capture"))
            return
        if self.settings.keep_recording:
            self._recording.append(pcm.tobytes())
        mono = pcm if pcm.ndim == 1 else pcm.mean(axis=1)
        self._analysis.extend((mono[-ANALYSIS_WINDOW:] / 32768.0).tolist())

    def _monitor_loop(self) -> None:
        interval = 1.0 / max(1.0, self.settings.vad_tick_hz)
        while not self._stop_event.wait(interval):
            try:
                self.poll()
            except Exception as exc:
                LOGGER.error("Capture monitor failed: %s", exc)
                self.channel.publish(ErrorEvent(error=exc, source="capture"))


def _default_input(settings: AuroraSettings) -> AudioInput:
    return SoundDeviceInput(
        settings.sample_rate,
        settings.channels,
        block_ms=settings.fragment_ms,
    )


__all__ = ["AudioInput", "CaptureSession", "SoundDeviceInput"]
