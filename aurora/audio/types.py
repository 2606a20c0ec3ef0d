"""Dataclasses shared across capture and transcription."""

from __future__ import annotations

import enum
from dataclasses import dataclass


@dataclass(slots=True, frozen=True)
class AudioChunk:
    """A self-contained, independently transcribable piece of captured audio."""

    id: str
    data: bytes
    start_ms: float
    end_ms: float
    duration_ms: float
    index: int
    mime_type: str = "audio/wav"

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(slots=True, frozen=True)
class CaptureFormat:
    """Container/codec strategy chosen once per session."""

    mime_type: str
    extension: str
    sf_format: str
    sf_subtype: str
    restart_required: bool


@dataclass(slots=True)
class TranscriptionResult:
    text: str
    language: str = "unknown"
    duration_ms: float = 0.0


class Classification(str, enum.Enum):
    PERMANENT = "permanent"
    TRANSIENT = "transient"
    RATE_LIMITED = "rate_limited"


@dataclass(slots=True)
class RetryState:
    attempt: int
    classification: Classification
    next_delay_ms: float


__all__ = [
    "AudioChunk",
    "CaptureFormat",
    "Classification",
    "RetryState",
    "TranscriptionResult",
]
