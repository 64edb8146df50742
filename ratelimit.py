import threading
import time
from collections import deque

from flask import request

from errors import ApiError

# kind -> (requests, window seconds)
LIMITS = {
    "checkout": (5, 60),
    "ai": (10, 60),
    "api": (100, 60),
    "auth": (5, 60),
}


class SlidingWindowLimiter:
    """In-memory, per-process sliding window. Keys are "<kind>:<identifier>"."""

    def __init__(self, limits=None, clock=time.monotonic):
        self.limits = dict(limits or LIMITS)
        self.clock = clock
        self._hits = {}
        self._lock = threading.Lock()

    def check(self, kind, identifier):
        """Record a hit. Returns (allowed, remaining, retry_after_seconds)."""
        limit, window = self.limits[kind]
        now = self.clock()
        key = f"{kind}:{identifier}"

        with self._lock:
            self._prune(now)
            hits = self._hits.setdefault(key, deque())

            if len(hits) >= limit:
                retry_after = max(1, int(hits[0] + window - now + 0.999))
                return False, 0, retry_after

            hits.append(now)
            return True, limit - len(hits), 0

    def _prune(self, now):
        # drop expired hits everywhere, and keys left with none
        for key in list(self._hits):
            _, window = self.limits[key.split(":", 1)[0]]
            hits = self._hits[key]
            while hits and hits[0] <= now - window:
                hits.popleft()
            if not hits:
                del self._hits[key]

    def reset(self):
        with self._lock:
            self._hits.clear()


limiter = SlidingWindowLimiter()


def client_ip():
    forwarded = request.headers.get("X-Forwarded-For", "")
    return forwarded.split(",")[0].strip() or request.remote_addr or "anonymous"


def rate_limit(kind, identifier, message="Rate limit exceeded"):
    """Count a hit against `kind`; raise a 429 ApiError when the window is full."""
    allowed, remaining, retry_after = limiter.check(kind, identifier)
    if not allowed:
        raise ApiError(
            message,
            429,
            headers={"Retry-After": str(retry_after), "X-RateLimit-Remaining": str(remaining)},
            retryAfter=retry_after,
        )
