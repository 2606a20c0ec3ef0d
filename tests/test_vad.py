import numpy as np
import pytest

from aurora.audio.vad import VoiceActivityDetector, calibrate_thresholds, spectral_level


def test_level_is_exponentially_smoothed():
    vad = VoiceActivityDetector()
    vad.update(1.0, 16)
    assert vad.level == pytest.approx(0.2)
    vad.update(1.0, 16)
    assert vad.level == pytest.approx(0.36)


def test_silence_accumulates_until_duration():
    vad = VoiceActivityDetector(silence_duration_ms=800)
    results = [vad.update(0.0, 100) for _ in range(8)]
    assert results == [False] * 7 + [True]
    assert vad.silence_ms == 800


def test_speech_resets_silence_counter_but_middle_band_keeps_it():
    vad = VoiceActivityDetector(speech_threshold=0.15, silence_threshold=0.05)
    vad.update(0.0, 300)
    assert vad.silence_ms == 300
    vad.level = 0.1
    vad.update(0.1, 100)
    assert vad.silence_ms == 300
    vad.level = 0.5
    vad.update(0.5, 100)
    assert vad.silence_ms == 0
    assert vad.speaking is True


def test_calibration_from_ambient_levels():
    speech, silence = calibrate_thresholds([0.02] * 10)
    assert silence == pytest.approx(0.03)
    assert speech == pytest.approx(0.08)


def test_calibration_caps_noisy_rooms():
    speech, silence = calibrate_thresholds([0.5] * 20)
    assert silence == pytest.approx(0.1)
    assert speech == pytest.approx(0.3)


def test_calibration_defaults_without_samples():
    assert calibrate_thresholds([]) == (0.15, 0.05)


def test_spectral_level_tracks_loudness():
    t = np.arange(256) / 16000
    tone = np.sin(2 * np.pi * 1000 * t).astype(np.float32)
    silent = spectral_level(np.zeros(256, dtype=np.float32))
    quiet = spectral_level(tone * 0.01)
    loud = spectral_level(tone * 0.8)
    assert silent == 0.0
    assert 0.0 < quiet < loud <= 1.0


def test_spectral_level_pads_short_windows():
    assert spectral_level(np.array([], dtype=np.float32)) == 0.0
    assert 0.0 <= spectral_level(np.full(10, 0.5, dtype=np.float32)) <= 1.0
