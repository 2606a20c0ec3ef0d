"""Canonical PCM container helpers (decode, re-encode, split)."""

from __future__ import annotations

import io
import logging
import struct
from typing import List, Tuple

import numpy as np
import soundfile as sf

from ..errors import ConversionError

LOGGER = logging.getLogger("aurora.converter")

WAV_MIME = "audio/wav"
WAV_HEADER_SIZE = 44
# Containers the remote service parses reliably as captured.
NATIVE_CONTAINERS = ("webm", "ogg")

_EXTENSIONS = (
    ("wav", "wav"),
    ("webm", "webm"),
    ("mp4", "m4a"),
    ("ogg", "ogg"),
    ("flac", "flac"),
    ("mpeg", "mp3"),
)


def extension_for(mime_type: str) -> str:
    lowered = (mime_type or "").lower()
    for marker, ext in _EXTENSIONS:
        if marker in lowered:
            return ext
    return "webm"


def is_native(mime_type: str) -> bool:
    lowered = (mime_type or "").lower()
    return any(marker in lowered for marker in NATIVE_CONTAINERS)


def is_canonical(mime_type: str) -> bool:
    return "wav" in (mime_type or "").lower()


def wav_header(data_length: int, sample_rate: int, channels: int) -> bytes:
    """Standard 44-byte RIFF/WAVE descriptor for 16-bit PCM."""

    bytes_per_sample = 2
    block_align = channels * bytes_per_sample
    return struct.pack(
        "<4sI4s4sIHHIIHH4sI",
        b"RIFF",
        36 + data_length,
        b"WAVE",
        b"fmt ",
        16,
        1,
        channels,
        sample_rate,
        sample_rate * block_align,
        block_align,
        16,
        b"data",
        data_length,
    )


def pcm16_to_wav(pcm: bytes, sample_rate: int, channels: int) -> bytes:
    return wav_header(len(pcm), sample_rate, channels) + pcm


def to_pcm16(samples: np.ndarray) -> np.ndarray:
    """Float samples in [-1, 1] (or int16) to little-endian int16."""

    data = np.asarray(samples)
    if data.dtype == np.int16:
        return data.astype("<i2", copy=False)
    clipped = np.clip(data.astype(np.float64, copy=False), -1.0, 1.0)
    scaled = np.round(clipped * 32768.0)
    return np.clip(scaled, -32768, 32767).astype("<i2")


def encode_wav(samples: np.ndarray, sample_rate: int) -> bytes:
    """Interleave `(frames, channels)` samples into a canonical WAV file."""

    data = np.asarray(samples)
    if data.ndim == 1:
        data = data[:, np.newaxis]
    channels = data.shape[1]
    pcm = to_pcm16(data).tobytes()
    return pcm16_to_wav(pcm, sample_rate, channels)


def decode_audio(payload: bytes) -> Tuple[np.ndarray, int]:
    """Decode any soundfile-readable container to float32 `(frames, channels)`."""

    if not payload:
        raise ConversionError("Empty audio payload")
    try:
        audio, sample_rate = sf.read(io.BytesIO(payload), dtype="float32", always_2d=True)
    except (RuntimeError, TypeError, ValueError) as exc:
        raise ConversionError(f"Unable to decode audio: {exc}") from exc
    return audio, int(sample_rate)


def convert_for_upload(payload: bytes, mime_type: str) -> Tuple[bytes, str]:
    """Pass native containers through; re-encode anything else as WAV."""

    if is_native(mime_type):
        return payload, mime_type
    if is_canonical(mime_type):
        return payload, WAV_MIME
    audio, sample_rate = decode_audio(payload)
    converted = encode_wav(audio, sample_rate)
    LOGGER.debug(
        "Converted %s payload %.2fMB -> %.2fMB WAV",
        mime_type,
        len(payload) / 1024 / 1024,
        len(converted) / 1024 / 1024,
    )
    return converted, WAV_MIME


def split_audio(payload: bytes, segment_ms: int) -> List[bytes]:
    """Split a decodable payload into fixed-duration WAV segments by sample count."""

    audio, sample_rate = decode_audio(payload)
    samples_per_segment = max(1, int((segment_ms / 1000.0) * sample_rate))
    total = audio.shape[0]
    segments: List[bytes] = []
    for start in range(0, total, samples_per_segment):
        end = min(start + samples_per_segment, total)
        segments.append(encode_wav(audio[start:end], sample_rate))
    return segments


def duration_ms(payload: bytes) -> float:
    audio, sample_rate = decode_audio(payload)
    return audio.shape[0] * 1000.0 / sample_rate


__all__ = [
    "NATIVE_CONTAINERS",
    "WAV_HEADER_SIZE",
    "WAV_MIME",
    "convert_for_upload",
    "decode_audio",
    "duration_ms",
    "encode_wav",
    "extension_for",
    "is_canonical",
    "is_native",
    "pcm16_to_wav",
    "split_audio",
    "to_pcm16",
    "wav_header",
]
