import asyncio

import httpx
import numpy as np

from aurora.audio.converter import encode_wav
from aurora.audio.types import AudioChunk
from aurora.events import ChunkEvent, ErrorEvent, EventChannel, LevelEvent, TranscriptEvent
from aurora.services.live import LiveTranscriber, is_likely_hallucination, silence_ratio
from aurora.services.retry import RetryPolicy
from aurora.services.transcription import TranscriptionClient
from aurora.settings import AuroraSettings


async def _no_sleep(seconds):
    return None


def _tone_wav(seconds=0.5, amplitude=0.5):
    t = np.arange(int(seconds * 16000)) / 16000
    return encode_wav((amplitude * np.sin(2 * np.pi * 440 * t)).astype(np.float32), 16000)


def _chunk(data, index=0):
    return AudioChunk(
        id=f"chunk-0-{index}",
        data=data,
        start_ms=index * 500,
        end_ms=(index + 1) * 500,
        duration_ms=500,
        index=index,
    )


def _run(handler, scenario):
    settings = AuroraSettings(api_key="k", base_url="https://stt.example.com/v1")

    async def main():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            client = TranscriptionClient(
                settings, client=http, retry=RetryPolicy(rng=lambda: 0.0, sleep=_no_sleep)
            )
            live = LiveTranscriber(client, settings)
            return await scenario(live), live.output.drain()

    return asyncio.run(main())


def test_silence_ratio():
    assert silence_ratio(encode_wav(np.zeros(8000, dtype=np.float32), 16000)) == 1.0
    assert silence_ratio(_tone_wav()) == 0.0
    assert silence_ratio(b"undecodable") == 0.0


def test_hallucination_filter():
    assert is_likely_hallucination("ok")
    assert is_likely_hallucination("Thanks for watching!")
    assert is_likely_hallucination("[Music]")
    assert is_likely_hallucination("♪ la la la ♪")
    assert is_likely_hallucination("Untertitel im Auftrag des ZDF erstellt")
    assert not is_likely_hallucination("Let's review the quarterly numbers.")


def test_transcript_event_is_published():
    def handler(request):
        return httpx.Response(200, json={"text": " Hello there, team. ", "language": "english"})

    event, published = _run(handler, lambda live: live.handle(_chunk(_tone_wav(), index=2)))
    assert isinstance(event, TranscriptEvent)
    assert event.text == "Hello there, team."
    assert event.index == 2
    assert (event.start_ms, event.end_ms) == (1000, 1500)
    assert published == [event]


def test_small_and_silent_chunks_are_skipped():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, json={"text": "should not happen"})

    silent = encode_wav(np.zeros(8000, dtype=np.float32), 16000)

    async def scenario(live):
        return [await live.handle(_chunk(b"RIFF" * 10)), await live.handle(_chunk(silent))]

    results, published = _run(handler, scenario)
    assert results == [None, None]
    assert calls == []
    assert published == []


def test_hallucinated_text_is_dropped():
    def handler(request):
        return httpx.Response(200, json={"text": "Thanks for watching!"})

    event, published = _run(handler, lambda live: live.handle(_chunk(_tone_wav())))
    assert event is None
    assert published == []


def test_failures_become_error_events():
    def handler(request):
        return httpx.Response(401, json={"error": {"message": "bad key"}})

    event, published = _run(handler, lambda live: live.handle(_chunk(_tone_wav())))
    assert event is None
    assert len(published) == 1
    assert isinstance(published[0], ErrorEvent)
    assert published[0].source == "transcription"


def test_run_forwards_events_and_transcribes_chunks():
    def handler(request):
        return httpx.Response(200, json={"text": "Meeting starts now."})

    source = EventChannel()
    chunk = _chunk(_tone_wav())
    source.publish(ChunkEvent(chunk=chunk))
    source.publish(LevelEvent(level=0.3, speaking=True))
    source.close()

    async def scenario(live):
        await live.run(source, poll_interval=0.01)
        return live.pending

    pending, published = _run(handler, scenario)
    assert pending == 0
    kinds = [event.kind for event in published]
    assert kinds[0] == "chunk"
    assert sorted(kinds) == ["chunk", "level", "transcript"]
    transcript = next(event for event in published if isinstance(event, TranscriptEvent))
    assert transcript.chunk_id == chunk.id


def test_unexpected_failures_in_submitted_tasks_are_reported():
    def handler(request):
        raise RuntimeError("transport exploded")

    async def scenario(live):
        live.submit(_chunk(_tone_wav()))
        await live.drain()
        return live.pending

    pending, published = _run(handler, scenario)
    assert pending == 0
    assert len(published) == 1
    assert isinstance(published[0], ErrorEvent)
    assert isinstance(published[0].error, RuntimeError)
