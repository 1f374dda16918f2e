# app/infra/rate_limiter.py
from __future__ import annotations
import time
from collections import defaultdict, deque
from threading import Lock
from typing import Callable, Iterable, Optional

from fastapi import Request, HTTPException, status

from app.infra.logging_config import get_logger

logger = get_logger(__name__)


class InMemoryRateLimiter:
    """
    Sliding-window limit on inbound /download calls per client.

    Each extraction can spawn several external processes, so a single client
    hammering the endpoint is throttled before it reaches the tools.

    ⚠️ NOT horizontally scalable: with N replicas the effective limit is
    N × max_requests.
    """

    def __init__(
        self,
        max_requests: int,
        window_seconds: int = 60,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._requests: dict[str, deque[float]] = defaultdict(deque)
        self._lock = Lock()

    def _prune(self, key: str, now: float) -> deque[float]:
        window = self._requests[key]
        cutoff = now - self.window_seconds
        while window and window[0] <= cutoff:
            window.popleft()
        return window

    def is_allowed(self, key: str) -> tuple[bool, Optional[int]]:
        """
        Check and record a request for the given key.

        Returns:
            (allowed, retry_after_seconds)
        """
        now = self._clock()

        with self._lock:
            window = self._prune(key, now)

            if len(window) >= self.max_requests:
                retry_after = int(window[0] + self.window_seconds - now) + 1
                masked = key[:4] + "***" if len(key) > 4 else "***"
                logger.warning(
                    f"Download rate limit exceeded for client={masked} "
                    f"count={len(window)} limit={self.max_requests} retry_after={retry_after}s"
                )
                return False, retry_after

            window.append(now)
            return True, None

    def get_usage(self, key: str) -> dict:
        with self._lock:
            count = len(self._prune(key, self._clock()))
        return {
            "count": count,
            "limit": self.max_requests,
            "window_seconds": self.window_seconds,
            "remaining": max(0, self.max_requests - count),
        }

    def cleanup(self) -> int:
        """Drop clients with no requests inside the window. Returns keys removed."""
        now = self._clock()
        with self._lock:
            stale = [k for k in list(self._requests) if not self._prune(k, now)]
            for key in stale:
                del self._requests[key]
        if stale:
            logger.info(f"Rate limiter cleanup: removed {len(stale)} keys")
        return len(stale)


class RateLimitDependency:
    """FastAPI dependency applying the limiter per client IP"""

    def __init__(
        self,
        limiter: InMemoryRateLimiter,
        client_ip: Callable[[Request], str],
        exempt_paths: Iterable[str] = ("/", "/health"),
    ):
        self.limiter = limiter
        self.client_ip = client_ip
        self.exempt_paths = frozenset(exempt_paths)

    async def __call__(self, request: Request) -> None:
        if request.url.path in self.exempt_paths:
            return

        allowed, retry_after = self.limiter.is_allowed(self.client_ip(request))

        if not allowed:
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail="Too many download requests",
                headers={"Retry-After": str(retry_after)} if retry_after else None,
            )
