"""In-memory rate limiter guarding the credential endpoints."""

from __future__ import annotations

import threading
import time
from collections import defaultdict, deque

from fastapi import Request


class InMemoryRateLimiter:
    """Sliding-window limiter per key (client address + route).

    Keys whose hits have all left the window are dropped, at most once
    per window, so idle clients do not accumulate.
    """

    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._hits = defaultdict(deque)
        self._lock = threading.Lock()
        self._last_sweep = clock()

    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._hits)

    def _sweep(self, cutoff: float) -> None:
        for key in [k for k, q in self._hits.items() if not q or q[-1] < cutoff]:
            del self._hits[key]

    def allow(self, key: str, max_requests: int, window_seconds: int) -> tuple[bool, int]:
        """Record a hit for `key`; return `(allowed, retry_after_seconds)`."""
        now = self._clock()
        with self._lock:
            cutoff = now - window_seconds
            if now - self._last_sweep >= window_seconds:
                self._sweep(cutoff)
                self._last_sweep = now
            q = self._hits[key]
            while q and q[0] < cutoff:
                q.popleft()
            if len(q) >= max_requests:
                return False, max(1, int(window_seconds - (now - q[0])))
            q.append(now)
        return True, 0

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()


def client_key(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        host = forwarded.split(",")[0].strip()
    else:
        host = request.client.host if request.client else "unknown"
    return f"{host}:{request.url.path}"
