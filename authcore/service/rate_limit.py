from __future__ import annotations

import math
import threading
import zlib
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Protocol, Tuple

from authcore.clock import Clock, utc_now
from authcore.logging import get_logger
from authcore.service.errors import RateLimitExceeded

logger = get_logger(__name__)


@dataclass(frozen=True)
class CounterState:
    count: int
    reset_at: datetime


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    retry_after: int


class AttemptCounter(Protocol):
    """Atomically incrementable counter whose value expires with its window."""

    async def hit(self, key: str, window: timedelta) -> CounterState: ...

    async def reset(self, key: str) -> None: ...


class LocalAttemptCounter:
    """Process-local counter map, lock-striped so unrelated keys do not contend."""

    def __init__(
        self, *, clock: Clock = utc_now, stripes: int = 16, max_keys_per_stripe: int = 4096
    ) -> None:
        self._clock = clock
        self.max_keys_per_stripe = max_keys_per_stripe
        self._locks: List[threading.Lock] = [threading.Lock() for _ in range(stripes)]
        self._buckets: List[Dict[str, Tuple[int, datetime]]] = [{} for _ in range(stripes)]

    def _stripe(self, key: str) -> int:
        return zlib.crc32(key.encode()) % len(self._locks)

    async def hit(self, key: str, window: timedelta) -> CounterState:
        idx = self._stripe(key)
        now = self._clock()
        with self._locks[idx]:
            bucket = self._buckets[idx]
            current = bucket.get(key)
            if current is None and len(bucket) >= self.max_keys_per_stripe:
                self._prune(bucket, now)
            if current is None or now >= current[1]:
                state = (1, now + window)
            else:
                state = (current[0] + 1, current[1])
            bucket[key] = state
        return CounterState(count=state[0], reset_at=state[1])

    async def reset(self, key: str) -> None:
        idx = self._stripe(key)
        with self._locks[idx]:
            self._buckets[idx].pop(key, None)

    @staticmethod
    def _prune(bucket: Dict[str, Tuple[int, datetime]], now: datetime) -> int:
        stale = [k for k, (_, reset_at) in bucket.items() if now >= reset_at]
        for k in stale:
            del bucket[k]
        return len(stale)

    def sweep(self) -> int:
        """Drop counters whose window has already closed."""
        now = self._clock()
        removed = 0
        for lock, bucket in zip(self._locks, self._buckets):
            with lock:
                removed += self._prune(bucket, now)
        return removed

    def __len__(self) -> int:
        return sum(len(bucket) for bucket in self._buckets)


class RateLimiter:
    """Fixed-window attempt limiter keyed by client identifier.

    The first attempt opens a window; attempts are allowed until
    ``max_attempts`` have been made inside it, after which callers are
    told how many seconds remain until the window resets.
    """

    def __init__(self, counter: Optional[AttemptCounter] = None, *, clock: Clock = utc_now) -> None:
        self._clock = clock
        self.counter: AttemptCounter = counter or LocalAttemptCounter(clock=clock)

    async def check(
        self, client_key: str, max_attempts: int, window_minutes: int
    ) -> RateLimitDecision:
        if max_attempts <= 0:
            return RateLimitDecision(allowed=True, remaining=0, retry_after=0)
        if window_minutes <= 0:
            logger.warning(
                "rate_limit_invalid_window",
                key=client_key,
                window_minutes=window_minutes,
                message="Invalid rate limit window; defaulting to 1 minute",
            )
            window_minutes = 1
        state = await self.counter.hit(client_key, timedelta(minutes=window_minutes))
        if state.count <= max_attempts:
            return RateLimitDecision(
                allowed=True, remaining=max_attempts - state.count, retry_after=0
            )
        seconds_left = (state.reset_at - self._clock()).total_seconds()
        retry_after = max(1, math.ceil(seconds_left))
        logger.warning(
            "rate_limit_exceeded",
            key=client_key,
            attempts=state.count,
            max_attempts=max_attempts,
            retry_after=retry_after,
        )
        return RateLimitDecision(allowed=False, remaining=0, retry_after=retry_after)

    async def allow(self, client_key: str, max_attempts: int, window_minutes: int) -> bool:
        decision = await self.check(client_key, max_attempts, window_minutes)
        return decision.allowed

    async def enforce(
        self, client_key: str, max_attempts: int, window_minutes: int
    ) -> RateLimitDecision:
        decision = await self.check(client_key, max_attempts, window_minutes)
        if not decision.allowed:
            raise RateLimitExceeded(
                "Too many requests, please try again later",
                retry_after=decision.retry_after,
            )
        return decision

    async def reset(self, client_key: str) -> None:
        await self.counter.reset(client_key)

    def sweep(self) -> int:
        """Drop closed windows from a process-local counter; shared stores expire on their own."""
        if isinstance(self.counter, LocalAttemptCounter):
            return self.counter.sweep()
        return 0
