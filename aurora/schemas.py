"""Pydantic schemas for the remote transcription contract."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, StrictStr, ValidationError

from .audio.types import TranscriptionResult
from .errors import MalformedResponse


class TranscriptionResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    text: StrictStr
    language: Any = None
    duration: Any = None


class ErrorBody(BaseModel):
    model_config = ConfigDict(extra="ignore")

    message: str | None = None


class ErrorResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    error: ErrorBody | None = None


def parse_transcription(payload: Any) -> TranscriptionResult:
    """Validate a decoded JSON payload before trusting it."""

    if not isinstance(payload, dict):
        raise MalformedResponse("Invalid transcription response: expected object")
    try:
        parsed = TranscriptionResponse.model_validate(payload)
    except ValidationError as exc:
        raise MalformedResponse(
            "Invalid transcription response: missing or invalid text field"
        ) from exc
    language = parsed.language if isinstance(parsed.language, str) else None
    duration = parsed.duration
    if isinstance(duration, bool) or not isinstance(duration, (int, float)):
        duration = None
    return TranscriptionResult(
        text=parsed.text,
        language=language or "unknown",
        duration_ms=float(duration or 0.0) * 1000.0,
    )


def error_message(payload: Any) -> str | None:
    if not isinstance(payload, dict):
        return None
    try:
        parsed = ErrorResponse.model_validate(payload)
    except ValidationError:
        return None
    if parsed.error and parsed.error.message:
        return parsed.error.message
    return None
