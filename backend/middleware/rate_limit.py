"""
In-memory rate limiting for public checkout endpoints.

Guards OTP requests, order placement, payment initiation and tracking
lookups from scripted abuse. One sliding window per (client IP, path).
Counters live in process memory and are not shared between workers.
"""
import logging
import math
import time
from collections import defaultdict

from fastapi import Request

from domain.errors import RateLimitError

logger = logging.getLogger(__name__)


class RateLimiter:
    """Sliding-window hit log keyed by an arbitrary string."""

    def __init__(self):
        self._requests: dict[str, list[float]] = defaultdict(list)

    def _prune(self, key: str, window_seconds: int, now: float) -> list[float]:
        hits = [ts for ts in self._requests[key] if ts > now - window_seconds]
        self._requests[key] = hits
        return hits

    def check(self, key: str, max_requests: int, window_seconds: int) -> bool:
        """Record a hit and return True, or return False when the window is full."""
        now = time.time()
        hits = self._prune(key, window_seconds, now)
        if len(hits) >= max_requests:
            return False
        hits.append(now)
        return True

    def retry_after(self, key: str, window_seconds: int) -> int:
        """Whole seconds until the oldest hit in the window expires."""
        now = time.time()
        hits = self._prune(key, window_seconds, now)
        if not hits:
            return 0
        return max(1, math.ceil(hits[0] + window_seconds - now))

    def reset(self):
        self._requests.clear()


_limiter = RateLimiter()


def rate_limit(max_requests: int = 10, window_seconds: int = 60):
    """
    Dependency factory; attach with
    ``dependencies=[Depends(rate_limit(5, 300))]``.
    """
    async def _check_rate_limit(request: Request):
        client_ip = request.client.host if request.client else "unknown"
        key = f"{client_ip}:{request.url.path}"

        if _limiter.check(key, max_requests, window_seconds):
            return

        wait = _limiter.retry_after(key, window_seconds)
        logger.warning(f"Rate limit hit: {key} ({max_requests}/{window_seconds}s), retry in {wait}s")
        raise RateLimitError(
            f"Too many requests. Try again in {wait} seconds.",
            retry_after_seconds=wait,
        )

    return _check_rate_limit
