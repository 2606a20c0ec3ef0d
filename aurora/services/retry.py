"""Failure classification and jittered exponential backoff."""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional, TypeVar

from ..audio.types import Classification, RetryState
from ..errors import Aborted, NonRetriableTransport, TransportError
from ..metrics import TRANSCRIBE_RETRIES

LOGGER = logging.getLogger("aurora.retry")

T = TypeVar("T")

RETRIABLE_STATUS_CODES = (429, 500, 502, 503, 504)


def is_retriable_status(status_code: int | None) -> bool:
    return status_code in RETRIABLE_STATUS_CODES


class RetryPolicy:
    """Retry transient failures; rate limiting earns a longer budget."""

    def __init__(
        self,
        max_retries: int = 3,
        max_retries_rate_limit: int = 5,
        *,
        rng: Callable[[], float] = random.random,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.max_retries = max(1, max_retries)
        self.max_retries_rate_limit = max(self.max_retries, max_retries_rate_limit)
        self._rng = rng
        self._sleep = sleep

    def classify(self, exc: BaseException) -> Classification:
        if isinstance(exc, NonRetriableTransport):
            return Classification.PERMANENT
        if isinstance(exc, TransportError):
            if exc.status_code == 429:
                return Classification.RATE_LIMITED
            return Classification.TRANSIENT
        return Classification.PERMANENT

    def budget(self, classification: Classification) -> int:
        if classification is Classification.RATE_LIMITED:
            return self.max_retries_rate_limit
        if classification is Classification.TRANSIENT:
            return self.max_retries
        return 1

    def delay(self, attempt: int) -> float:
        """Seconds to wait after failed attempt `attempt` (0-based): 2^k + [0, 1)."""
        return float(2 ** attempt) + self._rng()

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        cancel: Optional[asyncio.Event] = None,
        label: str = "request",
    ) -> T:
        max_attempts = self.budget(Classification.TRANSIENT)
        attempt = 0
        while True:
            if cancel is not None and cancel.is_set():
                raise Aborted()
            try:
                return await operation()
            except Exception as exc:
                classification = self.classify(exc)
                if classification is Classification.PERMANENT:
                    raise
                if classification is Classification.RATE_LIMITED:
                    max_attempts = max(max_attempts, self.budget(classification))
                    LOGGER.warning(
                        "%s rate limited (429); using extended retries (%d total)",
                        label,
                        max_attempts,
                    )
                LOGGER.warning(
                    "%s attempt %d/%d failed: %s", label, attempt + 1, max_attempts, exc
                )
                if attempt >= max_attempts - 1:
                    raise
                state = RetryState(
                    attempt=attempt,
                    classification=classification,
                    next_delay_ms=self.delay(attempt) * 1000.0,
                )
                TRANSCRIBE_RETRIES.labels(classification=classification.value).inc()
                LOGGER.info("Retrying %s in %.0fms", label, state.next_delay_ms)
                await self._wait(state.next_delay_ms / 1000.0, cancel)
                attempt += 1

    async def _wait(self, seconds: float, cancel: Optional[asyncio.Event]) -> None:
        if cancel is None:
            await self._sleep(seconds)
            return
        sleeper = asyncio.ensure_future(self._sleep(seconds))
        watcher = asyncio.ensure_future(cancel.wait())
        try:
            done, _ = await asyncio.wait(
                {sleeper, watcher}, return_when=asyncio.FIRST_COMPLETED
            )
            if watcher in done:
                raise Aborted()
        finally:
            for task in (sleeper, watcher):
                if not task.done():
                    task.cancel()
            await asyncio.gather(sleeper, watcher, return_exceptions=True)


__all__ = ["RETRIABLE_STATUS_CODES", "RetryPolicy", "is_retriable_status"]
