import numpy as np
import pytest

from aurora.audio.capture import CaptureSession
from aurora.audio.converter import WAV_HEADER_SIZE
from aurora.audio.formats import FormatNegotiator
from aurora.errors import CaptureUnavailable, InvalidState
from aurora.events import ChunkEvent, EventChannel, LevelEvent
from aurora.settings import AuroraSettings


class FakeInput:
    def __init__(self, *, fail=False, sample_rate=16000, channels=1):
        self.sample_rate = sample_rate
        self.channels = channels
        self.fail = fail
        self.acquire_calls = 0
        self.release_calls = 0
        self._acquired = False
        self._listener = None

    @property
    def acquired(self):
        return self._acquired

    def acquire(self):
        self.acquire_calls += 1
        if self.fail:
            raise CaptureUnavailable("permission denied")
        self._acquired = True

    def release(self):
        self.release_calls += 1
        self._acquired = False

    def set_listener(self, listener):
        if listener is not None and self._listener is not None:
            raise InvalidState("busy")
        self._listener = listener

    def push(self, blocks=1, value=1000):
        for _ in range(blocks):
            if self._listener is not None:
                self._listener(np.full(1600, value, dtype=np.int16))


class Clock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def _session(clock, *, vad=False, probe=None, channel=None):
    settings = AuroraSettings(
        api_key="k",
        vad_enabled=vad,
        chunk_interval_ms=5000,
        chunk_overlap_ms=500,
        min_chunk_ms=1000,
        capture_formats=["audio/wav"],
        keep_recording=True,
    )
    negotiator = FormatNegotiator(settings.capture_formats, probe=probe or (lambda fmt: True))
    return CaptureSession(
        settings,
        channel or EventChannel(),
        negotiator=negotiator,
        clock=clock,
        run_monitor=False,
    )


def test_start_emits_chunks_on_interval_and_stop_returns_final():
    clock = Clock()
    device = FakeInput()
    session = _session(clock)
    fmt = session.start(device)
    assert fmt.mime_type == "audio/wav"
    assert session.is_active()
    assert device.acquire_calls == 1

    device.push(50)
    clock.now = 5000
    session.poll()
    events = session.channel.drain()
    assert len(events) == 1
    assert isinstance(events[0], ChunkEvent)
    assert events[0].trigger == "timer"
    assert events[0].chunk.index == 0

    device.push(10)
    clock.now = 6000
    final = session.stop()
    assert final is not None
    assert final.index == 1
    assert final.end_ms == 6000
    assert device.release_calls == 1
    assert not session.is_active()


def test_stop_is_idempotent():
    clock = Clock()
    session = _session(clock)
    assert session.stop() is None
    session.start(FakeInput())
    session.stop()
    assert session.stop() is None


def test_double_start_is_rejected():
    session = _session(Clock())
    session.start(FakeInput())
    with pytest.raises(InvalidState):
        session.start(FakeInput())


def test_acquisition_failure_surfaces_capture_unavailable():
    session = _session(Clock())
    device = FakeInput(fail=True)
    with pytest.raises(CaptureUnavailable):
        session.start(device)
    assert not session.is_active()
    assert device.release_calls == 0


def test_start_failure_after_acquire_releases_device():
    def broken_probe(fmt):
        raise RuntimeError("encoder probe exploded")

    session = _session(Clock(), probe=broken_probe)
    device = FakeInput()
    with pytest.raises(CaptureUnavailable):
        session.start(device)
    assert device.release_calls == 1
    assert not session.is_active()


def test_second_session_on_same_device_is_rejected():
    device = FakeInput()
    first = _session(Clock())
    second = _session(Clock())
    first.start(device)
    with pytest.raises(InvalidState):
        second.start(device)
    assert first.is_active()
    assert device.release_calls == 0


def test_force_emit_produces_manual_chunk():
    clock = Clock()
    device = FakeInput()
    session = _session(clock)
    session.start(device)
    device.push(15)
    clock.now = 1500
    chunk = session.force_emit()
    assert chunk is not None
    assert chunk.duration_ms == 1500
    assert session.channel.drain()[0].trigger == "manual"


def test_pause_drops_frames_and_postpones_timer():
    clock = Clock()
    device = FakeInput()
    session = _session(clock)
    session.start(device)
    device.push(10)
    clock.now = 1000
    session.pause()
    assert session.paused
    device.push(20)
    clock.now = 3000
    session.resume()
    device.push(10)

    clock.now = 5000
    session.poll()
    assert session.channel.drain() == []
    clock.now = 7000
    session.poll()
    events = session.channel.drain()
    assert len(events) == 1
    assert len(session.recording_wav()) == WAV_HEADER_SIZE + 20 * 3200


def test_long_pause_is_excluded_from_chunk_timeline():
    clock = Clock()
    device = FakeInput()
    session = _session(clock)
    session.start(device)
    device.push(10)
    clock.now = 1000
    session.pause()
    clock.now = 16000
    session.resume()
    device.push(5)

    clock.now = 16100
    session.poll()
    assert session.channel.drain() == []
    assert session.current_duration_ms() == 1100

    final = session.stop()
    assert (final.start_ms, final.end_ms, final.duration_ms) == (0, 1100, 1100)


def test_pause_requires_running_session():
    session = _session(Clock())
    with pytest.raises(InvalidState):
        session.pause()
    with pytest.raises(InvalidState):
        session.resume()


def test_recording_buffer_spans_chunks():
    clock = Clock()
    device = FakeInput()
    session = _session(clock)
    session.start(device)
    device.push(3)
    wav = session.recording_wav()
    assert wav[:4] == b"RIFF"
    assert len(wav) == WAV_HEADER_SIZE + 3 * 3200


def test_current_duration_tracks_open_chunk():
    clock = Clock()
    session = _session(clock)
    assert session.current_duration_ms() == 0.0
    session.start(FakeInput())
    clock.now = 2500
    assert session.current_duration_ms() == 2500


def test_vad_sessions_publish_levels():
    clock = Clock()
    device = FakeInput()
    session = _session(clock, vad=True)
    session.start(device)
    device.push(1, value=0)
    clock.now = 100
    session.poll()
    levels = [event for event in session.channel.drain() if isinstance(event, LevelEvent)]
    assert len(levels) == 1
    assert levels[0].speaking is False
