"""Encoder strategies used by the chunker."""

from __future__ import annotations

import io
from typing import Callable, List, Optional, Protocol

import numpy as np
import soundfile as sf

from .converter import pcm16_to_wav, to_pcm16
from .types import CaptureFormat

FragmentCallback = Callable[[bytes], None]
StopCallback = Callable[[Optional[bytes]], None]


class Encoder(Protocol):
    mime_type: str

    def start(self, on_fragment: FragmentCallback, on_stop: StopCallback) -> None: ...

    def write(self, frames: np.ndarray) -> None: ...

    def stop(self) -> None: ...

    def assemble(self, fragments: List[bytes]) -> bytes: ...


class PcmStreamEncoder:
    """Emits raw 16-bit PCM fragments; any run of fragments forms a valid WAV body."""

    def __init__(self, fmt: CaptureFormat, sample_rate: int, channels: int) -> None:
        self.mime_type = fmt.mime_type
        self.sample_rate = sample_rate
        self.channels = channels
        self._on_fragment: FragmentCallback | None = None
        self._on_stop: StopCallback | None = None

    def start(self, on_fragment: FragmentCallback, on_stop: StopCallback) -> None:
        self._on_fragment = on_fragment
        self._on_stop = on_stop

    def write(self, frames: np.ndarray) -> None:
        if self._on_fragment is None or frames.size == 0:
            return
        self._on_fragment(to_pcm16(frames).tobytes())

    def stop(self) -> None:
        on_stop = self._on_stop
        self._on_fragment = None
        self._on_stop = None
        if on_stop:
            on_stop(None)

    def assemble(self, fragments: List[bytes]) -> bytes:
        return pcm16_to_wav(b"".join(fragments), self.sample_rate, self.channels)


class ContainerEncoder:
    """Writes a compressed container in memory; the file is only complete after stop()."""

    def __init__(self, fmt: CaptureFormat, sample_rate: int, channels: int) -> None:
        self.format = fmt
        self.mime_type = fmt.mime_type
        self.sample_rate = sample_rate
        self.channels = channels
        self.frames_written = 0
        self._buffer: io.BytesIO | None = None
        self._file: sf.SoundFile | None = None
        self._on_stop: StopCallback | None = None

    def start(self, on_fragment: FragmentCallback, on_stop: StopCallback) -> None:
        self._buffer = io.BytesIO()
        self._file = sf.SoundFile(
            self._buffer,
            mode="w",
            samplerate=self.sample_rate,
            channels=self.channels,
            format=self.format.sf_format,
            subtype=self.format.sf_subtype,
        )
        self._on_stop = on_stop
        self.frames_written = 0

    def write(self, frames: np.ndarray) -> None:
        if self._file is None or frames.size == 0:
            return
        self._file.write(to_pcm16(frames))
        self.frames_written += len(frames)

    def stop(self) -> None:
        if self._file is None:
            return
        self._file.close()
        payload = self._buffer.getvalue() if self._buffer is not None and self.frames_written else None
        on_stop = self._on_stop
        self._file = None
        self._buffer = None
        self._on_stop = None
        if on_stop:
            on_stop(payload)

    def assemble(self, fragments: List[bytes]) -> bytes:
        return b"".join(fragments)


def create_encoder(fmt: CaptureFormat, sample_rate: int, channels: int) -> Encoder:
    if fmt.restart_required:
        return ContainerEncoder(fmt, sample_rate, channels)
    return PcmStreamEncoder(fmt, sample_rate, channels)


__all__ = ["ContainerEncoder", "Encoder", "PcmStreamEncoder", "create_encoder"]
