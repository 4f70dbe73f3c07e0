"""
Per-client request limits for the public form endpoints (contact, feedback).

Counters live in process memory, one fixed window per client IP and bucket.
With several replicas each one counts on its own.
"""

from __future__ import annotations

import logging
import os
import threading
from datetime import datetime, timedelta, timezone

from fastapi import Request

RATE_LIMIT_WINDOW_SECONDS = float(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "60"))
RATE_LIMIT_PUBLIC_CALLS = int(os.getenv("RATE_LIMIT_PUBLIC_CALLS", "10"))
RATE_LIMIT_FEEDBACK_CALLS = int(os.getenv("RATE_LIMIT_FEEDBACK_CALLS", "10"))

logger = logging.getLogger(__name__)


class RateLimitExceeded(Exception):
    def __init__(self, bucket: str, limit: int, retry_after: float):
        super().__init__(f"Rate limit exceeded for {bucket}")
        self.bucket = bucket
        self.limit = limit
        self.retry_after = retry_after


class FixedWindowLimiter:
    def __init__(self, bucket: str, calls: int, window: timedelta):
        self.bucket = bucket
        self.calls = calls
        self.window = window
        self._windows: dict[str, tuple[datetime, int]] = {}
        self._lock = threading.Lock()

    def hit(self, key: str, now: datetime | None = None) -> int:
        """Count one request for `key`. Returns the calls left in the window."""
        now = now or datetime.now(tz=timezone.utc)
        with self._lock:
            reset_at, count = self._windows.get(key, (now, 0))
            if now >= reset_at:
                reset_at, count = now + self.window, 0
            if count >= self.calls:
                retry_after = (reset_at - now).total_seconds()
                logger.warning("Rate limit exceeded (bucket=%s, client=%s)", self.bucket, key)
                raise RateLimitExceeded(self.bucket, self.calls, retry_after)
            self._windows[key] = (reset_at, count + 1)
            return self.calls - count - 1

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()


limiters = {
    "public": FixedWindowLimiter("public", RATE_LIMIT_PUBLIC_CALLS, timedelta(seconds=RATE_LIMIT_WINDOW_SECONDS)),
    "feedback": FixedWindowLimiter("feedback", RATE_LIMIT_FEEDBACK_CALLS, timedelta(seconds=RATE_LIMIT_WINDOW_SECONDS)),
}


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for", "").split(",")[0].strip()
    if forwarded:
        return forwarded
    for header in ("x-real-ip", "cf-connecting-ip"):
        if request.headers.get(header):
            return request.headers[header].strip()
    return request.client.host if request.client else "unknown"


def rate_limited(bucket: str):
    limiter = limiters[bucket]

    def _dep(request: Request) -> None:
        limiter.hit(client_ip(request))

    return _dep


def reset_all() -> None:
    for limiter in limiters.values():
        limiter.reset()
