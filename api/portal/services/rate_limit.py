"""Outbound rate limiting primitives: a per-token bucket and the retry policy."""

import asyncio
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

Clock = Callable[[], float]
Sleeper = Callable[[float], Awaitable[None]]


class TokenBucket:
    """Token bucket shared by every concurrent call made with one access token.

    ``acquire`` suspends the caller until a token is available. Waiters queue on
    an ``asyncio.Lock`` (FIFO), and the lock holder sleeps until its own token has
    refilled, so throttled calls go out one by one at the refill rate.
    """

    def __init__(
        self,
        capacity: int,
        refill_per_second: float,
        *,
        clock: Clock = time.monotonic,
        sleep: Sleeper = asyncio.sleep,
    ):
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        if refill_per_second <= 0:
            raise ValueError("refill_per_second must be > 0")
        self._capacity = float(capacity)
        self._rate = refill_per_second
        self._clock = clock
        self._sleep = sleep
        self._tokens = float(capacity)
        self._updated = clock()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._updated)
        self._tokens = min(self._capacity, self._tokens + elapsed * self._rate)
        self._updated = now

    async def acquire(self) -> None:
        async with self._lock:
            self._refill()
            while self._tokens < 1:
                await self._sleep((1 - self._tokens) / self._rate)
                self._refill()
            self._tokens -= 1

    def try_acquire(self) -> bool:
        """Take a token without waiting. Never jumps ahead of queued waiters."""
        if self._lock.locked():
            return False
        self._refill()
        if self._tokens >= 1:
            self._tokens -= 1
            return True
        return False


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 0.5
    multiplier: float = 2.0
    max_delay: float = 8.0
    jitter_ratio: float = 0.1
    retry_after_cap: float = 60.0

    def backoff_delay(self, attempt: int, rng: random.Random | None = None) -> float:
        """Delay before retry number ``attempt`` (1-based): base * multiplier^(n-1), capped, plus jitter."""
        delay = min(self.base_delay * self.multiplier ** (attempt - 1), self.max_delay)
        if self.jitter_ratio > 0 and delay > 0:
            delay += (rng or random).uniform(0, delay * self.jitter_ratio)
        return delay

    @classmethod
    def from_settings(cls, s) -> "RetryPolicy":
        return cls(
            max_attempts=s.retry_max_attempts,
            base_delay=s.retry_backoff_base_seconds,
            max_delay=s.retry_backoff_cap_seconds,
            jitter_ratio=s.retry_jitter_ratio,
            retry_after_cap=s.retry_after_cap_seconds,
        )
