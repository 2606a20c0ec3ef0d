"""Capture format negotiation against the host's encoder capabilities."""

from __future__ import annotations

import logging
from typing import Callable, Dict, Iterable, List, Optional

import soundfile as sf

from .types import CaptureFormat

LOGGER = logging.getLogger("aurora.capture")

# Compressed containers only become a valid file once the encoder is closed,
# so every chunk needs its own encoder instance (restart mode).
KNOWN_FORMATS: Dict[str, CaptureFormat] = {
    "audio/ogg;codecs=opus": CaptureFormat("audio/ogg;codecs=opus", "ogg", "OGG", "OPUS", True),
    "audio/ogg": CaptureFormat("audio/ogg", "ogg", "OGG", "VORBIS", True),
    "audio/flac": CaptureFormat("audio/flac", "flac", "FLAC", "PCM_16", True),
    "audio/mpeg": CaptureFormat("audio/mpeg", "mp3", "MP3", "MPEG_LAYER_III", True),
    "audio/wav": CaptureFormat("audio/wav", "wav", "WAV", "PCM_16", False),
}

FALLBACK_FORMAT = KNOWN_FORMATS["audio/wav"]


def soundfile_supports(fmt: CaptureFormat) -> bool:
    try:
        formats = sf.available_formats()
        if fmt.sf_format not in formats:
            return False
        return fmt.sf_subtype in sf.available_subtypes(fmt.sf_format)
    except Exception as exc:  # pragma: no cover - libsndfile build dependent
        LOGGER.debug("Capability probe failed for %s: %s", fmt.mime_type, exc)
        return False


class FormatNegotiator:
    """Pick the first supported capture format from an ordered preference list."""

    def __init__(
        self,
        preferences: Iterable[str],
        *,
        probe: Optional[Callable[[CaptureFormat], bool]] = None,
    ) -> None:
        self.preferences: List[str] = [item.strip().lower() for item in preferences if item.strip()]
        self._probe = probe or soundfile_supports

    def candidates(self) -> List[CaptureFormat]:
        found = []
        for mime in self.preferences:
            fmt = KNOWN_FORMATS.get(mime)
            if fmt is None:
                LOGGER.debug("Ignoring unknown capture format %s", mime)
                continue
            found.append(fmt)
        return found

    def negotiate(self) -> CaptureFormat:
        for fmt in self.candidates():
            if self._probe(fmt):
                LOGGER.info(
                    "Selected capture format %s (restart mode %s)",
                    fmt.mime_type,
                    "on" if fmt.restart_required else "off",
                )
                return fmt
        LOGGER.warning("No preferred capture format supported, using %s", FALLBACK_FORMAT.mime_type)
        return FALLBACK_FORMAT


__all__ = ["FALLBACK_FORMAT", "KNOWN_FORMATS", "FormatNegotiator", "soundfile_supports"]
