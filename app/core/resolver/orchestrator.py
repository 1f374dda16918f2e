# app/core/resolver/orchestrator.py
from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Callable, Sequence

from app.core.resolver.domain import (
    CacheRecord,
    DownloadResult,
    ErrorCategory,
    ExtractionOutcome,
    NormalizedRequest,
)
from app.core.resolver.errors import (
    classify_exception,
    status_hint_for,
    truncate,
    user_message_for,
)
from app.core.resolver.url_normalizer import UrlNormalizer
from app.infra.logging_config import LogContext, get_logger, shorten_url
from app.infra.metrics import DownloadMetrics

if TYPE_CHECKING:
    from app.infra.backoff import BackoffTracker
    from app.infra.extractors.base import ToolStrategySet
    from app.infra.result_cache import ResultCache
    from app.infra.stampede import StampedeGuard

logger = get_logger(__name__)


class DownloadOrchestrator:
    """
    Application service / use-case layer.
    Workflow: validate -> normalize -> cache -> stampede guard -> tools by
    priority (backoff before each) -> cache write -> metrics.

    A fully exhausted tool chain is terminal for the call; callers re-invoke
    to try again.
    """

    def __init__(
        self,
        *,
        strategy_sets: Sequence["ToolStrategySet"],
        cache: "ResultCache",
        backoff: "BackoffTracker",
        guard: "StampedeGuard",
        normalizer: UrlNormalizer,
        metrics: DownloadMetrics | None = None,
        cache_ttl_seconds: int | None = None,
        service_name: str = "media-link-resolver",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.strategy_sets = sorted(strategy_sets, key=lambda s: s.priority)
        self.cache = cache
        self.backoff = backoff
        self.guard = guard
        self.normalizer = normalizer
        self.metrics = metrics or DownloadMetrics()
        self.cache_ttl_seconds = cache_ttl_seconds
        self.service_name = service_name
        self._clock = clock

    def _elapsed_ms(self, started: float) -> int:
        return int((self._clock() - started) * 1000)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def download(self, raw_url: Any, request_id: str | None = None) -> DownloadResult:
        started = self._clock()
        self.metrics.request_received()
        log = LogContext(logger, request_id=request_id)
        original = raw_url if isinstance(raw_url, str) else ""

        if not self.normalizer.validate(raw_url):
            self.metrics.download_failed()
            log.info(f"Rejected invalid URL: {shorten_url(original)}")
            return self._failure(
                ErrorCategory.INVALID_URL,
                "Invalid URL. Supported: /p/, /reel(s)/, /stories/.",
                original,
                started,
            )

        request = self.normalizer.build(raw_url)
        log = log.bind(cache_key=request.cache_key)
        log.info(
            f"Download request initiated: url={shorten_url(request.original_id)} "
            f"normalized={shorten_url(request.normalized_id)} type={request.category.value}"
        )

        cached = await self.cache.get(request.cache_key)
        if cached is not None and cached.download_url:
            self.metrics.cache_hit()
            elapsed = self._elapsed_ms(started)
            self.metrics.observe_response_time(elapsed)
            log.info(f"Cache hit for {request.cache_key}")
            return DownloadResult.ok(
                download_url=cached.download_url,
                original_url=request.original_id,
                cached=True,
                metadata={
                    **cached.extra_metadata,
                    "tool": cached.tool_name,
                    "strategy": cached.strategy_name,
                    "cached_at": cached.cached_at or None,
                    "cache_key": request.cache_key,
                    "response_time_ms": elapsed,
                },
            )

        log.info(f"Cache miss for {request.cache_key} - proceeding with extraction")
        joined = self.guard.is_in_flight(request.cache_key)
        result = await self.guard.run_exclusive(
            request.cache_key,
            lambda: self._run_tools(request, started, log),
        )

        if joined:
            # The leading caller already recorded its own outcome
            self.metrics.request_deduplicated()
            if result.success:
                self.metrics.download_succeeded()
            else:
                self.metrics.download_failed()
            self.metrics.observe_response_time(self._elapsed_ms(started))
            log.info(f"Joined in-flight extraction for {request.cache_key}")
        return result

    def metrics_snapshot(self) -> dict[str, Any]:
        return self.metrics.snapshot()

    def reset_metrics(self) -> None:
        self.metrics.reset()
        logger.info("Download metrics reset")

    async def health_status(self) -> dict[str, Any]:
        backoff_stats = self.backoff.stats()
        backoff_stats["active_requests"] = self.guard.active_count
        return {
            "service": self.service_name,
            "healthy": True,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "metrics": self.metrics_snapshot(),
            "cache": await self.cache.stats(),
            "backoff": backoff_stats,
            "tools": [s.describe() for s in self.strategy_sets],
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _run_tools(
        self, request: NormalizedRequest, started: float, log: LogContext
    ) -> DownloadResult:
        last: ExtractionOutcome | None = None

        for index, tool in enumerate(self.strategy_sets):
            tlog = log.bind(tool=tool.name)
            if not tool.can_handle(request.normalized_id):
                tlog.info(f"Tool {tool.name} cannot handle this URL")
                continue

            await self.backoff.apply_backoff(request.domain)

            fallback_reason = (
                f"{last.tool_name}_failed_{(last.error_category or ErrorCategory.UNKNOWN).value}"
                if last else "primary_attempt"
            )
            tlog.info(f"Executing tool: {tool.name} (reason={fallback_reason})")

            try:
                outcome = await tool.execute(
                    request.normalized_id,
                    {"fallback_reason": fallback_reason, "cache_key": request.cache_key},
                )
            except Exception as exc:
                tlog.error(f"Tool {tool.name} raised {exc.__class__.__name__}: {exc}", exc_info=True)
                outcome = ExtractionOutcome.failed(
                    tool_name=tool.name,
                    error_category=classify_exception(exc),
                    raw_error=truncate(f"{exc.__class__.__name__}: {exc}", 300),
                    strategy_name="exception",
                    metadata={"strategies_tried": []},
                )

            self._record_strategy_metrics(outcome)

            if outcome.success and outcome.download_url:
                return await self._on_success(request, outcome, index, started, tlog)

            last = outcome
            if outcome.error_category is ErrorCategory.RATE_LIMIT:
                self.backoff.record_failure(request.domain, ErrorCategory.RATE_LIMIT)
            tlog.warning(f"Tool {tool.name} failed: {truncate(outcome.raw_error, 300)}")

        self.metrics.download_failed()
        if last is None:
            category = ErrorCategory.UNKNOWN
            details = "No suitable extraction tool found"
            failed_tool = "unknown"
        else:
            category = last.error_category or ErrorCategory.UNKNOWN
            details = f"All extraction strategies failed. Last error: {truncate(last.raw_error, 300)}"
            failed_tool = last.tool_name

        log.error(f"Download orchestration failed: category={category.value}")
        return self._failure(
            category,
            details,
            request.original_id,
            started,
            extra={
                "cache_key": request.cache_key,
                "tool": failed_tool,
                "last_error": (last.metadata.get("last_error") if last else None),
            },
        )

    async def _on_success(
        self,
        request: NormalizedRequest,
        outcome: ExtractionOutcome,
        index: int,
        started: float,
        log: LogContext,
    ) -> DownloadResult:
        self.metrics.download_succeeded()
        self.backoff.record_success(request.domain)

        elapsed = self._elapsed_ms(started)
        self.metrics.observe_response_time(elapsed)

        metadata = {
            **outcome.metadata,
            "tool": outcome.tool_name,
            "strategy": outcome.strategy_name,
            "duration_ms": outcome.duration_ms,
            "cache_key": request.cache_key,
            "response_time_ms": elapsed,
            "attempt_count": index + 1,
        }

        await self.cache.set(
            request.cache_key,
            CacheRecord(
                download_url=outcome.download_url or "",
                tool_name=outcome.tool_name,
                strategy_name=outcome.strategy_name,
                original_id=request.original_id,
                extra_metadata=metadata,
            ),
            ttl_seconds=self.cache_ttl_seconds,
        )

        log.info(
            f"Download succeeded via {outcome.tool_name}/{outcome.strategy_name} in {elapsed}ms"
        )
        return DownloadResult.ok(
            download_url=outcome.download_url or "",
            original_url=request.original_id,
            cached=False,
            metadata=metadata,
        )

    def _record_strategy_metrics(self, outcome: ExtractionOutcome) -> None:
        tried = outcome.metadata.get("strategies_tried") or [outcome.strategy_name]
        for name in tried:
            won = outcome.success and name == outcome.strategy_name
            self.metrics.strategy_attempt(f"{outcome.tool_name}:{name}", won)

    def _failure(
        self,
        category: ErrorCategory,
        details: str,
        original_url: str,
        started: float,
        extra: dict[str, Any] | None = None,
    ) -> DownloadResult:
        elapsed = self._elapsed_ms(started)
        self.metrics.observe_response_time(elapsed)
        return DownloadResult.error(
            category=category,
            user_message=user_message_for(category),
            status_hint=status_hint_for(category),
            details=details,
            original_url=original_url,
            metadata={
                **(extra or {}),
                "original_url": original_url or "unknown",
                "response_time_ms": elapsed,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
        )
