"""Capture and transcription settings resolved from the environment."""

from __future__ import annotations

import os
from functools import lru_cache
from typing import List

from pydantic import BaseModel, Field

DEFAULT_CAPTURE_FORMATS = [
    "audio/ogg;codecs=opus",
    "audio/ogg",
    "audio/flac",
    "audio/wav",
]


class AuroraSettings(BaseModel):
    api_key: str | None = Field(default=os.getenv("OPENAI_API_KEY"))
    base_url: str = Field(
        default=os.getenv("TRANSCRIBE_BASE_URL", "https://api.openai.com/v1")
    )
    model: str = Field(default=os.getenv("TRANSCRIBE_MODEL", "whisper-1"))
    language: str = Field(default=os.getenv("TRANSCRIBE_LANGUAGE", "auto"))

    chunk_interval_ms: int = Field(default=int(os.getenv("CHUNK_INTERVAL_MS", "5000")))
    chunk_overlap_ms: int = Field(default=int(os.getenv("CHUNK_OVERLAP_MS", "500")))
    min_chunk_ms: int = Field(default=int(os.getenv("MIN_CHUNK_MS", "1000")))
    max_chunk_ms: int = Field(default=int(os.getenv("MAX_CHUNK_MS", "15000")))
    fragment_ms: int = Field(default=int(os.getenv("FRAGMENT_MS", "100")))

    vad_enabled: bool = Field(
        default=os.getenv("VAD_ENABLED", "true").lower() in {"1", "true", "yes"}
    )
    speech_threshold: float = Field(default=float(os.getenv("VAD_SPEECH_THRESHOLD", "0.15")))
    silence_threshold: float = Field(default=float(os.getenv("VAD_SILENCE_THRESHOLD", "0.05")))
    silence_duration_ms: int = Field(default=int(os.getenv("VAD_SILENCE_MS", "800")))
    vad_tick_hz: float = Field(default=float(os.getenv("VAD_TICK_HZ", "60")))

    parallel_chunks: int = Field(default=int(os.getenv("PARALLEL_CHUNKS", "3")))
    max_retries: int = Field(default=int(os.getenv("MAX_RETRIES", "3")))
    max_retries_rate_limit: int = Field(default=int(os.getenv("MAX_RETRIES_RATE_LIMIT", "5")))
    max_upload_bytes: int = Field(
        default=int(os.getenv("MAX_UPLOAD_BYTES", str(24 * 1024 * 1024)))
    )
    split_segment_ms: int = Field(default=int(os.getenv("SPLIT_SEGMENT_MS", "60000")))
    request_timeout_s: float = Field(default=float(os.getenv("REQUEST_TIMEOUT_S", "180")))
    small_request_timeout_s: float = Field(
        default=float(os.getenv("SMALL_REQUEST_TIMEOUT_S", "60"))
    )
    small_request_bytes: int = Field(
        default=int(os.getenv("SMALL_REQUEST_BYTES", str(1024 * 1024)))
    )
    live_max_concurrent: int = Field(default=int(os.getenv("LIVE_MAX_CONCURRENT", "4")))

    sample_rate: int = Field(default=int(os.getenv("CAPTURE_SAMPLE_RATE", "16000")))
    channels: int = Field(default=int(os.getenv("CAPTURE_CHANNELS", "1")))
    capture_formats: List[str] = Field(default_factory=lambda: _split_formats())
    keep_recording: bool = Field(
        default=os.getenv("KEEP_RECORDING", "true").lower() in {"1", "true", "yes"}
    )


def _split_formats() -> List[str]:
    raw = os.getenv("CAPTURE_FORMATS") or ""
    formats = [item.strip() for item in raw.split(",") if item.strip()]
    return formats or list(DEFAULT_CAPTURE_FORMATS)


@lru_cache()
def get_settings() -> AuroraSettings:
    return AuroraSettings()
