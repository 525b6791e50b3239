"""In-process sliding-window rate limiting for the API routes."""

from __future__ import annotations

import math
import time
from collections import deque
from typing import Callable, Deque

from starlette.requests import Request


def get_client_ip(request: Request) -> str | None:
    """Best-effort client address, preferring the first forwarded hop."""

    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip() or None
    if request.client:
        return request.client.host
    return None


class RateLimiter:
    """Allow ``max_requests`` per ``window_seconds`` for each client key."""

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._hits: dict[str, Deque[float]] = {}

    def hit(self, key: str) -> tuple[bool, int]:
        """Record a request; return ``(allowed, retry_after_seconds)``."""

        now = self._clock()
        window_start = now - self.window_seconds
        hits = self._hits.setdefault(key, deque())
        while hits and hits[0] <= window_start:
            hits.popleft()

        if len(hits) >= self.max_requests:
            retry_after = max(1, math.ceil(hits[0] + self.window_seconds - now))
            return False, retry_after

        hits.append(now)
        self._prune(window_start)
        return True, 0

    def _prune(self, window_start: float) -> None:
        stale = [key for key, hits in self._hits.items() if not hits or hits[-1] <= window_start]
        for key in stale:
            del self._hits[key]


__all__ = ["RateLimiter", "get_client_ip"]
