from __future__ import annotations

import math
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from threading import Lock
from time import time


class RateLimitScope(StrEnum):
    GENERATION = "generation"
    TRANSLATION = "translation"


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    retry_after_seconds: int
    reset_after_seconds: int

    def headers(self) -> dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_after_seconds),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after_seconds)
        return headers


class SlidingWindowRateLimiter:
    def __init__(
        self,
        *,
        max_requests: int,
        window_seconds: int,
        clock: Callable[[], float] = time,
    ) -> None:
        self._max_requests = max_requests
        self._window_seconds = window_seconds
        self._clock = clock
        self._lock = Lock()
        self._buckets: dict[str, deque[float]] = {}

    def take(self, key: str) -> RateLimitDecision:
        now = self._clock()
        cutoff = now - self._window_seconds

        with self._lock:
            bucket = self._buckets.setdefault(key, deque())
            while bucket and bucket[0] <= cutoff:
                bucket.popleft()

            if len(bucket) >= self._max_requests:
                retry_after_seconds = max(
                    1,
                    math.ceil((bucket[0] + self._window_seconds) - now),
                )
                return RateLimitDecision(
                    allowed=False,
                    limit=self._max_requests,
                    remaining=0,
                    retry_after_seconds=retry_after_seconds,
                    reset_after_seconds=retry_after_seconds,
                )

            bucket.append(now)
            remaining = max(self._max_requests - len(bucket), 0)
            reset_after_seconds = max(
                1,
                math.ceil((bucket[0] + self._window_seconds) - now),
            )
            return RateLimitDecision(
                allowed=True,
                limit=self._max_requests,
                remaining=remaining,
                retry_after_seconds=0,
                reset_after_seconds=reset_after_seconds,
            )


class CallerRateLimiter:
    """Independent sliding-window budgets per scope, each counted per caller."""

    def __init__(self, limiters: dict[RateLimitScope, SlidingWindowRateLimiter]) -> None:
        self._limiters = dict(limiters)

    def take(self, scope: RateLimitScope, user_id: str) -> RateLimitDecision:
        return self._limiters[scope].take(user_id)
