from __future__ import annotations

import time
from collections import deque
from typing import Callable

from fastapi import HTTPException, Request, status
from loguru import logger


class SlidingWindowLimiter:
    """In-process sliding window limiter keyed by client identifier."""

    def __init__(self, limit: int, window_seconds: int = 60, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.limit = limit
        self.window = window_seconds
        self._clock = clock
        self._buckets: dict[str, deque[float]] = {}
        self._last_sweep = clock()

    def allow(self, identifier: str) -> bool:
        now = self._clock()
        window_start = now - self.window
        if now - self._last_sweep >= self.window:
            self._sweep(window_start)
            self._last_sweep = now
        bucket = self._buckets.setdefault(identifier, deque())
        self._prune(bucket, window_start)
        if len(bucket) >= self.limit:
            return False
        bucket.append(now)
        return True

    @property
    def tracked_clients(self) -> int:
        return len(self._buckets)

    @staticmethod
    def _prune(bucket: deque[float], window_start: float) -> None:
        while bucket and bucket[0] < window_start:
            bucket.popleft()

    def _sweep(self, window_start: float) -> None:
        # Clients that went quiet for a whole window are forgotten
        for identifier in list(self._buckets):
            bucket = self._buckets[identifier]
            self._prune(bucket, window_start)
            if not bucket:
                del self._buckets[identifier]


def client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def enforce_refresh_rate_limit(request: Request) -> None:
    limiter: SlidingWindowLimiter | None = getattr(request.app.state, "refresh_limiter", None)
    if limiter is None:
        return
    identifier = client_ip(request)
    if not limiter.allow(identifier):
        logger.bind(client=identifier).warning("auth.refresh.rate_limited")
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many refresh requests. Please try again later.",
        )
