# app/infra/backoff.py
from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Awaitable, Callable

from app.core.resolver.domain import DomainFailureState, ErrorCategory
from app.infra.logging_config import get_logger

logger = get_logger(__name__)


class BackoffTracker:
    """
    Per-domain exponential backoff.

    Failures are tracked per remote domain, not per key or strategy: a
    rate-limit signal describes the remote side, so every request touching
    that domain waits.

    window = min(base_ms * 2 ** (consecutive_failures - 1), max_ms)

    ⚠️ Process-local: each replica keeps its own state and it is lost on
    restart.
    """

    def __init__(
        self,
        base_ms: int = 1000,
        max_ms: int = 30000,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.base_ms = base_ms
        self.max_ms = max_ms
        self._clock = clock
        self._sleep = sleep
        self._failures: dict[str, DomainFailureState] = {}
        self._lock = Lock()

    def _window_ms(self, consecutive_failures: int) -> int:
        if consecutive_failures <= 0:
            return 0
        return min(self.base_ms * 2 ** (consecutive_failures - 1), self.max_ms)

    def delay_for(self, domain: str) -> int:
        """Remaining backoff in milliseconds (0 if none is owed)."""
        with self._lock:
            state = self._failures.get(domain)
            if state is None:
                return 0
            failures = state.consecutive_failures
            last_failure_ts = state.last_failure_ts

        elapsed_ms = (self._clock() - last_failure_ts) * 1000
        window_ms = self._window_ms(failures)
        if elapsed_ms < window_ms:
            return int(window_ms - elapsed_ms)
        return 0

    def record_failure(self, domain: str, error_category: ErrorCategory | str = ErrorCategory.UNKNOWN) -> None:
        category = error_category.value if isinstance(error_category, ErrorCategory) else str(error_category)
        with self._lock:
            state = self._failures.get(domain)
            if state is None:
                state = DomainFailureState(domain=domain)
                self._failures[domain] = state
            state.consecutive_failures += 1
            state.last_failure_ts = self._clock()
            state.last_error_category = category
            failures = state.consecutive_failures

        logger.warning(
            f"Backoff failure recorded for {domain}: consecutive={failures}, "
            f"category={category}, next_backoff_ms={self.delay_for(domain)}"
        )

    def record_success(self, domain: str) -> None:
        """Full reset for the domain (not a decrement)."""
        with self._lock:
            had_state = self._failures.pop(domain, None) is not None
        if had_state:
            logger.info(f"Backoff cleared for {domain}")

    def reset(self, domain: str) -> None:
        with self._lock:
            self._failures.pop(domain, None)
        logger.info(f"Backoff data reset for {domain}")

    def is_rate_limited(self, domain: str) -> bool:
        return self.delay_for(domain) > 0

    async def apply_backoff(self, domain: str) -> int:
        """Suspend the caller for the owed delay. Returns the delay applied (ms)."""
        delay_ms = self.delay_for(domain)
        if delay_ms > 0:
            logger.info(f"Applying backoff for {domain}: {delay_ms}ms")
        await self._sleep(delay_ms / 1000)
        return delay_ms

    def stats(self) -> dict[str, Any]:
        with self._lock:
            states = [
                (s.domain, s.consecutive_failures, s.last_failure_ts, s.last_error_category)
                for s in self._failures.values()
            ]

        domains = {}
        for domain, failures, last_ts, category in states:
            domains[domain] = {
                "consecutive_failures": failures,
                "last_failure": datetime.fromtimestamp(last_ts, tz=timezone.utc).isoformat(),
                "current_backoff_ms": self.delay_for(domain),
                "error_category": category,
            }
        return {"domains": domains}
