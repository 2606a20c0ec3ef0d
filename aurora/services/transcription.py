"""Remote speech-to-text client with size-aware splitting and ordered parallel dispatch."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

import httpx

from ..audio import converter
from ..audio.types import AudioChunk, TranscriptionResult
from ..errors import (
    Aborted,
    ConversionError,
    MalformedResponse,
    NonRetriableTransport,
    RetriableTransport,
    Timeout,
)
from ..events import EventChannel, ProgressEvent
from ..metrics import TRANSCRIBE_DURATION, TRANSCRIBE_LATENCY, TRANSCRIBE_REQUESTS
from ..schemas import error_message, parse_transcription
from ..settings import AuroraSettings
from .retry import RetryPolicy, is_retriable_status

LOGGER = logging.getLogger("aurora.transcribe")

T = TypeVar("T")
ProgressCallback = Callable[[int, int], None]


class TranscriptionClient:
    """Send captured audio to an OpenAI-compatible transcription endpoint."""

    def __init__(
        self,
        settings: AuroraSettings,
        *,
        client: Optional[httpx.AsyncClient] = None,
        retry: Optional[RetryPolicy] = None,
    ) -> None:
        self.settings = settings
        self.retry = retry or RetryPolicy(
            settings.max_retries, settings.max_retries_rate_limit
        )
        self._client = client or httpx.AsyncClient(timeout=None)
        self._owns_client = client is None

    def _headers(self) -> Dict[str, str]:
        if not self.settings.api_key:
            raise NonRetriableTransport("API key missing")
        return {"Authorization": f"Bearer {self.settings.api_key}"}

    def _url(self) -> str:
        return f"{self.settings.base_url.rstrip('/')}/audio/transcriptions"

    def timeout_for(self, size: int) -> float:
        if size <= self.settings.small_request_bytes:
            return self.settings.small_request_timeout_s
        return self.settings.request_timeout_s

    async def transcribe(
        self,
        payload: bytes,
        mime_type: str,
        *,
        language: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
        channel: Optional[EventChannel] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> TranscriptionResult:
        """Transcribe a whole recording, splitting it when it exceeds the upload ceiling."""

        started = time.perf_counter()
        try:
            converted, upload_mime = await asyncio.to_thread(
                converter.convert_for_upload, payload, mime_type
            )
            LOGGER.info(
                "Audio prepared: %.2fMB -> %.2fMB (%s)",
                len(payload) / 1024 / 1024,
                len(converted) / 1024 / 1024,
                upload_mime,
            )

            def _report(current: int, total: int) -> None:
                if on_progress:
                    on_progress(current, total)
                if channel is not None:
                    channel.publish(ProgressEvent(current=current, total=total))

            if len(converted) <= self.settings.max_upload_bytes:
                result = await self._send_with_retry(converted, upload_mime, language, cancel)
                _report(1, 1)
                return result

            LOGGER.info(
                "Audio size %.2fMB exceeds %.0fMB limit, splitting into %ds segments",
                len(converted) / 1024 / 1024,
                self.settings.max_upload_bytes / 1024 / 1024,
                self.settings.split_segment_ms // 1000,
            )
            segments = await asyncio.to_thread(
                converter.split_audio, converted, self.settings.split_segment_ms
            )
            results = await self._transcribe_segments(segments, language, _report, cancel)
            return combine_results(results)
        finally:
            TRANSCRIBE_DURATION.observe(time.perf_counter() - started)

    async def transcribe_chunk(
        self,
        chunk: AudioChunk,
        *,
        language: Optional[str] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> TranscriptionResult:
        """Single live chunk; an unconvertible chunk is sent as captured."""

        try:
            payload, mime = await asyncio.to_thread(
                converter.convert_for_upload, chunk.data, chunk.mime_type
            )
        except ConversionError as exc:
            LOGGER.debug("Chunk %s conversion failed, sending original: %s", chunk.id, exc)
            payload, mime = chunk.data, chunk.mime_type
        return await self._send_with_retry(payload, mime, language, cancel)

    async def _transcribe_segments(
        self,
        segments: List[bytes],
        language: Optional[str],
        report: ProgressCallback,
        cancel: Optional[asyncio.Event],
    ) -> List[TranscriptionResult]:
        total = len(segments)
        batch_size = max(1, self.settings.parallel_chunks)
        LOGGER.info("Split into %d segments, processing %d in parallel", total, batch_size)
        results: List[Optional[TranscriptionResult]] = [None] * total
        completed = 0

        async def _one(index: int) -> None:
            nonlocal completed
            result = await self._send_with_retry(
                segments[index], converter.WAV_MIME, language, cancel
            )
            # Completion order is arbitrary; the slot keeps chronology.
            results[index] = result
            completed += 1
            report(completed, total)

        for batch_start in range(0, total, batch_size):
            batch = range(batch_start, min(batch_start + batch_size, total))
            tasks = [asyncio.ensure_future(_one(index)) for index in batch]
            try:
                await asyncio.gather(*tasks)
            except BaseException:
                for task in tasks:
                    if not task.done():
                        task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)
                raise
        return [result for result in results if result is not None]

    async def _send_with_retry(
        self,
        payload: bytes,
        mime_type: str,
        language: Optional[str],
        cancel: Optional[asyncio.Event],
    ) -> TranscriptionResult:
        return await self.retry.run(
            lambda: self._send(payload, mime_type, language, cancel),
            cancel=cancel,
            label="Transcription",
        )

    async def _send(
        self,
        payload: bytes,
        mime_type: str,
        language: Optional[str],
        cancel: Optional[asyncio.Event],
    ) -> TranscriptionResult:
        language = language or self.settings.language
        data: Dict[str, Any] = {
            "model": self.settings.model,
            "response_format": "verbose_json",
        }
        if language and language != "auto":
            data["language"] = language
        ext = converter.extension_for(mime_type)
        files = {"file": (f"recording.{ext}", payload, mime_type.split(";")[0])}
        started = time.perf_counter()
        try:
            response = await self._guarded(
                self._client.post(self._url(), headers=self._headers(), data=data, files=files),
                timeout=self.timeout_for(len(payload)),
                cancel=cancel,
            )
        except httpx.TimeoutException as exc:
            TRANSCRIBE_REQUESTS.labels(outcome="retry").inc()
            raise Timeout(f"Transcription request timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            TRANSCRIBE_REQUESTS.labels(outcome="retry").inc()
            raise RetriableTransport(f"Transcription transport error: {exc}") from exc
        except Timeout:
            TRANSCRIBE_REQUESTS.labels(outcome="retry").inc()
            raise
        finally:
            TRANSCRIBE_LATENCY.observe(time.perf_counter() - started)

        if response.status_code >= 400:
            try:
                body = response.json()
            except ValueError:
                body = None
            message = error_message(body) or f"Transcription failed: {response.reason_phrase}"
            if is_retriable_status(response.status_code):
                TRANSCRIBE_REQUESTS.labels(outcome="retry").inc()
                raise RetriableTransport(message, status_code=response.status_code)
            TRANSCRIBE_REQUESTS.labels(outcome="error").inc()
            raise NonRetriableTransport(message, status_code=response.status_code)

        try:
            body = response.json()
        except ValueError as exc:
            TRANSCRIBE_REQUESTS.labels(outcome="error").inc()
            raise MalformedResponse(f"Invalid transcription response: {exc}") from exc
        try:
            result = parse_transcription(body)
        except MalformedResponse:
            TRANSCRIBE_REQUESTS.labels(outcome="error").inc()
            raise
        TRANSCRIBE_REQUESTS.labels(outcome="ok").inc()
        return result

    async def _guarded(
        self,
        operation: Awaitable[T],
        *,
        timeout: float,
        cancel: Optional[asyncio.Event],
    ) -> T:
        """Await `operation` under a timeout and an optional cancellation signal."""

        request = asyncio.ensure_future(operation)
        waiters = {request}
        watcher = None
        if cancel is not None:
            watcher = asyncio.ensure_future(cancel.wait())
            waiters.add(watcher)
        try:
            done, _ = await asyncio.wait(
                waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
            if request in done:
                return request.result()
            if watcher is not None and watcher in done:
                raise Aborted()
            raise Timeout(f"Transcription request timed out after {timeout:.0f}s")
        finally:
            for task in waiters:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*waiters, return_exceptions=True)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "TranscriptionClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()


def combine_results(results: List[TranscriptionResult]) -> TranscriptionResult:
    total_duration = 0.0
    language = "unknown"
    texts = []
    for result in results:
        total_duration += result.duration_ms
        if result.language and result.language != "unknown":
            language = result.language
        texts.append(result.text)
    return TranscriptionResult(text=" ".join(texts), language=language, duration_ms=total_duration)


__all__ = ["TranscriptionClient", "combine_results"]
