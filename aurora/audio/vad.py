"""Energy-based voice activity detection for chunk boundaries."""

from __future__ import annotations

from typing import Iterable, Tuple

import numpy as np

DEFAULT_SPEECH_THRESHOLD = 0.15
DEFAULT_SILENCE_THRESHOLD = 0.05


def spectral_level(
    samples: np.ndarray,
    *,
    fft_size: int = 256,
    min_db: float = -100.0,
    max_db: float = -30.0,
) -> float:
    """Average byte-scaled frequency magnitude of the newest window, in [0, 1]."""

    data = np.asarray(samples, dtype=np.float32)
    if data.ndim > 1:
        data = data.mean(axis=1)
    if data.size == 0:
        return 0.0
    window = data[-fft_size:]
    if window.size < fft_size:
        window = np.pad(window, (fft_size - window.size, 0))
    weighted = window * np.blackman(fft_size)
    magnitude = np.abs(np.fft.rfft(weighted))[: fft_size // 2] / fft_size
    with np.errstate(divide="ignore"):
        decibels = 20.0 * np.log10(magnitude)
    scaled = np.clip((decibels - min_db) / (max_db - min_db), 0.0, 1.0)
    # Byte quantisation keeps levels comparable with browser analysers.
    byte_values = np.floor(scaled * 255.0)
    return float(byte_values.mean() / 255.0)


class VoiceActivityDetector:
    """Smoothed level plus cumulative silence counter, updated once per tick."""

    def __init__(
        self,
        *,
        speech_threshold: float = DEFAULT_SPEECH_THRESHOLD,
        silence_threshold: float = DEFAULT_SILENCE_THRESHOLD,
        silence_duration_ms: float = 800.0,
        smoothing: float = 0.8,
    ) -> None:
        self.speech_threshold = speech_threshold
        self.silence_threshold = silence_threshold
        self.silence_duration_ms = silence_duration_ms
        self.smoothing = smoothing
        self.level = 0.0
        self.silence_ms = 0.0

    @property
    def speaking(self) -> bool:
        return self.level >= self.speech_threshold

    def update(self, raw_level: float, delta_ms: float) -> bool:
        """Fold in one raw reading; True once silence has lasted long enough."""

        raw = min(1.0, max(0.0, float(raw_level)))
        self.level = self.level * self.smoothing + raw * (1.0 - self.smoothing)
        if self.level < self.silence_threshold:
            self.silence_ms += max(0.0, delta_ms)
            return self.silence_ms >= self.silence_duration_ms
        if self.level >= self.speech_threshold:
            self.silence_ms = 0.0
        return False

    def reset_silence(self) -> None:
        self.silence_ms = 0.0

    def reset(self) -> None:
        self.level = 0.0
        self.silence_ms = 0.0

    def set_thresholds(self, speech_threshold: float, silence_threshold: float) -> None:
        self.speech_threshold = max(0.0, min(1.0, speech_threshold))
        self.silence_threshold = max(0.0, min(1.0, silence_threshold))


def calibrate_thresholds(levels: Iterable[float]) -> Tuple[float, float]:
    """Derive (speech, silence) thresholds from ambient level samples."""

    ordered = sorted(float(level) for level in levels)
    if not ordered:
        return DEFAULT_SPEECH_THRESHOLD, DEFAULT_SILENCE_THRESHOLD
    median = ordered[len(ordered) // 2]
    p90 = ordered[int(len(ordered) * 0.9)]
    silence = min(0.1, median * 1.5)
    speech = max(silence + 0.05, min(0.3, p90 * 1.2))
    return speech, silence


__all__ = ["VoiceActivityDetector", "calibrate_thresholds", "spectral_level"]
