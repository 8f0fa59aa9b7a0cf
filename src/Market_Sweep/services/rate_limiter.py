"""Async rate limiter for the upstream data API.

A semaphore caps concurrent requests and a token bucket caps requests per
second. ``execute`` wraps one logical call with both limits and retries it
with backoff when the API answers 429.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Final

from Market_Sweep.utils.exceptions import RateLimitExceededError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_REQUESTS_PER_SECOND: Final[float] = 50.0
DEFAULT_MAX_CONCURRENT: Final[int] = 32
DEFAULT_MAX_RETRIES: Final[int] = 3
DEFAULT_BACKOFF_DELAYS: Final[tuple[float, ...]] = (1.0, 2.0, 4.0)


class RateLimiter:
    """Concurrency cap plus token bucket, shared by every caller of one API.

    Usage::

        limiter = RateLimiter(max_concurrent=32, requests_per_second=50.0)
        bars = await limiter.execute(lambda: client.get(url), ticker="AAPL")
    """

    def __init__(
        self,
        max_concurrent: int = DEFAULT_MAX_CONCURRENT,
        requests_per_second: float = DEFAULT_REQUESTS_PER_SECOND,
        max_retries: int = DEFAULT_MAX_RETRIES,
        backoff_delays: tuple[float, ...] | list[float] | None = None,
        *,
        source: str = "data_api",
    ) -> None:
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._requests_per_second = requests_per_second
        self._max_retries = max_retries
        self._backoff_delays = tuple(backoff_delays or DEFAULT_BACKOFF_DELAYS)
        self._source = source

        # Token bucket holds at most one second of burst
        self._max_tokens = max(1.0, requests_per_second)
        self._tokens = self._max_tokens
        self._last_refill = time.monotonic()
        self._bucket_lock = asyncio.Lock()

        logger.info(
            "RateLimiter(%s): max_concurrent=%d, rate=%.1f req/s, max_retries=%d",
            source,
            max_concurrent,
            requests_per_second,
            max_retries,
        )

    async def acquire(self) -> None:
        """Wait for a concurrency slot, then for a token."""
        await self._semaphore.acquire()
        try:
            await self._wait_for_token()
        except BaseException:
            self._semaphore.release()
            raise

    def release(self) -> None:
        self._semaphore.release()

    async def execute[T](
        self,
        call: Callable[[], Awaitable[T]],
        *,
        ticker: str,
    ) -> T:
        """Run ``call`` under both limits, retrying on RateLimitExceededError.

        ``call`` is a factory so every attempt gets a fresh awaitable. A
        ``retry_after`` hint on the exception overrides the backoff schedule.

        Raises:
            RateLimitExceededError: After exhausting all retries.
        """
        attempt = 0
        while True:
            await self.acquire()
            try:
                return await call()
            except RateLimitExceededError as exc:
                if attempt >= self._max_retries:
                    logger.error(
                        "Rate limit exceeded for %s from %s after %d retries",
                        ticker,
                        self._source,
                        self._max_retries,
                    )
                    raise
                delay = self._retry_delay(exc, attempt)
                logger.warning(
                    "Rate limited on %s from %s (attempt %d/%d), retrying in %.1fs",
                    ticker,
                    self._source,
                    attempt + 1,
                    self._max_retries,
                    delay,
                )
            finally:
                self.release()
            attempt += 1
            await asyncio.sleep(delay)

    # ------------------------------------------------------------------
    # Token bucket internals
    # ------------------------------------------------------------------

    async def _wait_for_token(self) -> None:
        while True:
            async with self._bucket_lock:
                now = time.monotonic()
                elapsed = now - self._last_refill
                self._tokens = min(
                    self._max_tokens, self._tokens + elapsed * self._requests_per_second
                )
                self._last_refill = now
                if self._tokens >= 1.0:
                    self._tokens -= 1.0
                    return
                wait = (1.0 - self._tokens) / self._requests_per_second
            await asyncio.sleep(wait)

    def _retry_delay(self, exc: RateLimitExceededError, attempt: int) -> float:
        if exc.retry_after is not None and exc.retry_after > 0:
            return exc.retry_after
        return self._backoff_delays[min(attempt, len(self._backoff_delays) - 1)]
