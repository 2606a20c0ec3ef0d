"""Prometheus metrics for capture and transcription."""

from __future__ import annotations

from prometheus_client import Counter, Histogram, Summary

CHUNKS_EMITTED = Counter(
    "aurora_chunks_emitted_total",
    "Audio chunks emitted by the capture session",
    labelnames=("trigger",),
)

TRANSCRIBE_REQUESTS = Counter(
    "aurora_transcribe_requests_total",
    "Remote transcription requests",
    labelnames=("outcome",),
)

TRANSCRIBE_RETRIES = Counter(
    "aurora_transcribe_retries_total",
    "Retries scheduled by the retry policy",
    labelnames=("classification",),
)

TRANSCRIBE_LATENCY = Histogram(
    "aurora_transcribe_request_seconds",
    "Latency of a single remote transcription request",
)

TRANSCRIBE_DURATION = Summary(
    "aurora_transcribe_total_seconds",
    "Time spent converting, splitting and transcribing one recording",
)
