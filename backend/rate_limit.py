"""Process-local sliding-window rate limiting for the respond route."""

from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, List, Optional, Tuple

from config import RateLimitConfig
from errors import RateLimitError

RATE_LIMIT_MESSAGE = "Rate limit exceeded. Slow down and retry."
SWEEP_INTERVAL_SECONDS = 60.0


@dataclass(frozen=True)
class _Window:
    code: str
    limit: int
    seconds: float


class SlidingWindowRateLimiter:
    """
    Per-key limiter enforcing a short burst window and a longer minute window.

    A hit is recorded only when every window admits it, so rejected requests do
    not extend a caller's lockout.
    """

    def __init__(self, clock: Optional[Callable[[], float]] = None) -> None:
        self._clock = clock or time.monotonic
        self._hits: Dict[Tuple[str, str], Deque[float]] = {}
        self._rejected = 0
        self._last_sweep: Optional[float] = None
        self._guard = asyncio.Lock()

    @staticmethod
    def _windows(config: RateLimitConfig) -> Tuple[_Window, ...]:
        return (
            _Window("RATE_LIMITED_BURST", config.burst_limit, config.burst_window_seconds),
            _Window("RATE_LIMITED", config.minute_limit, config.minute_window_seconds),
        )

    def _prune(self, bucket_key: Tuple[str, str], now: float, seconds: float) -> int:
        bucket = self._hits.get(bucket_key)
        if bucket is None:
            return 0
        while bucket and bucket[0] <= now - seconds:
            bucket.popleft()
        if not bucket:
            del self._hits[bucket_key]
            return 0
        return len(bucket)

    def _sweep_idle(self, now: float, windows: List[_Window]) -> None:
        if self._last_sweep is not None and now - self._last_sweep < SWEEP_INTERVAL_SECONDS:
            return
        self._last_sweep = now
        seconds = {window.code: window.seconds for window in windows}
        for bucket_key in list(self._hits):
            # Buckets of a disabled window have nothing left to enforce.
            self._prune(bucket_key, now, seconds.get(bucket_key[0], 0))

    async def hit(self, key: str, config: RateLimitConfig) -> None:
        windows = [w for w in self._windows(config) if w.limit > 0]
        if not windows:
            return
        async with self._guard:
            now = self._clock()
            self._sweep_idle(now, windows)
            for window in windows:
                if self._prune((window.code, key), now, window.seconds) >= window.limit:
                    self._rejected += 1
                    raise RateLimitError(RATE_LIMIT_MESSAGE, code=window.code)
            for window in windows:
                self._hits.setdefault((window.code, key), deque()).append(now)

    async def status(self) -> Dict[str, int]:
        async with self._guard:
            return {"tracked_keys": len(self._hits), "rejected": self._rejected}

    def reset(self) -> None:
        self._hits.clear()
        self._rejected = 0
        self._last_sweep = None


def respond_rate_limit_key(subject: str) -> str:
    return f"respond:{subject or 'unknown'}"
