"""Tests for the download orchestrator (end-to-end over fake tools)"""
import asyncio
import random
from unittest.mock import AsyncMock, Mock

import pytest

from conftest import FakeToolRunner, ManualClock, RecordingSleep, tool_failure

from app.core.resolver import DownloadOrchestrator, UrlNormalizer
from app.core.resolver.domain import ErrorCategory
from app.core.resolver.ports import ProcessResult
from app.infra.backoff import BackoffTracker
from app.infra.extractors import GalleryDlStrategySet, YtDlpStrategySet
from app.infra.kv_store import InMemoryKeyValueStore
from app.infra.process_runner import ProcessRunner
from app.infra.result_cache import ResultCache
from app.infra.stampede import StampedeGuard

POST_URL = "https://www.instagram.com/p/ABC123/"
REEL_URL = "https://www.instagram.com/reel/ABC123/?igsh=xyz"
VIDEO_URL = "https://cdn.example/video.mp4"


def _orchestrator(
    runner,
    *,
    store=None,
    backoff=None,
    hosts=("instagram.com",),
    tools=(YtDlpStrategySet, GalleryDlStrategySet),
):
    strategy_sets = [
        cls(runner, hosts=("instagram.com",), rng=random.Random(3), sleep=RecordingSleep())
        for cls in tools
    ]
    return DownloadOrchestrator(
        strategy_sets=strategy_sets,
        cache=ResultCache(store if store is not None else InMemoryKeyValueStore()),
        backoff=backoff or BackoffTracker(clock=ManualClock(), sleep=RecordingSleep()),
        guard=StampedeGuard(),
        normalizer=UrlNormalizer(hosts),
    )


class GatedRunner:
    """Blocks every run until the gate opens"""

    def __init__(self, stdout: str):
        self.stdout = stdout
        self.gate = asyncio.Event()
        self.calls = 0

    async def run(self, program, args, *, timeout_seconds, max_output_bytes):
        self.calls += 1
        await self.gate.wait()
        return ProcessResult(stdout=self.stdout, stderr="", exit_code=0)


# ============================================================================
# Validation
# ============================================================================

class TestInvalidInput:
    @pytest.mark.asyncio
    async def test_short_circuits_without_store_or_tools(self):
        store = Mock()
        for name in ("get", "set", "exists", "delete", "stats"):
            setattr(store, name, AsyncMock())
        runner = FakeToolRunner()
        orchestrator = _orchestrator(runner, store=store)

        result = await orchestrator.download("not a url")

        assert result.success is False
        assert result.error_category is ErrorCategory.INVALID_URL
        assert result.status_hint == 400
        assert result.to_payload()["category"] == "invalid_url"
        store.get.assert_not_awaited()
        store.set.assert_not_awaited()
        assert runner.calls == []

        snapshot = orchestrator.metrics_snapshot()
        assert snapshot["total_requests"] == 1
        assert snapshot["failed_downloads"] == 1

    @pytest.mark.asyncio
    async def test_non_string_input(self):
        result = await _orchestrator(FakeToolRunner()).download(None)

        assert result.error_category is ErrorCategory.INVALID_URL
        assert result.metadata["original_url"] == "unknown"


# ============================================================================
# Success and cache
# ============================================================================

class TestSuccessAndCache:
    @pytest.mark.asyncio
    async def test_primary_success_is_cached(self):
        runner = FakeToolRunner({"yt-dlp": [VIDEO_URL + "\n"]})
        store = InMemoryKeyValueStore()
        orchestrator = _orchestrator(runner, store=store)

        result = await orchestrator.download(POST_URL, request_id="req-1")

        assert result.success is True
        assert result.cached is False
        assert result.download_url == VIDEO_URL
        assert result.metadata["tool"] == "yt-dlp"
        assert result.metadata["strategy"] == "fresh_browser_cookies"
        assert result.metadata["attempt_count"] == 1
        assert result.metadata["cache_key"] == "post_ABC123"
        assert await store.exists("post_ABC123") is True

    @pytest.mark.asyncio
    async def test_equivalent_url_hits_cache_without_tools(self):
        runner = FakeToolRunner({"yt-dlp": [VIDEO_URL]})
        orchestrator = _orchestrator(runner)

        await orchestrator.download(POST_URL)
        second = await orchestrator.download(REEL_URL)

        assert second.success is True
        assert second.cached is True
        assert second.download_url == VIDEO_URL
        assert second.original_url == REEL_URL
        assert second.metadata["tool"] == "yt-dlp"
        assert second.metadata["cached_at"]
        assert len(runner.calls) == 1

        snapshot = orchestrator.metrics_snapshot()
        assert snapshot["total_requests"] == 2
        assert snapshot["cache_hits"] == 1
        assert snapshot["cache_hit_rate"] == "50.0%"
        assert snapshot["success_rate"] == "100.0%"

    @pytest.mark.asyncio
    async def test_legacy_cache_value(self):
        store = InMemoryKeyValueStore()
        await store.set("post_ABC123", "https://cdn.example/legacy.mp4", 60)
        runner = FakeToolRunner()

        result = await _orchestrator(runner, store=store).download(POST_URL)

        assert result.cached is True
        assert result.download_url == "https://cdn.example/legacy.mp4"
        assert result.metadata["tool"] == "unknown"
        assert result.metadata["strategy"] == "legacy"
        assert runner.calls == []

    @pytest.mark.asyncio
    async def test_payload_shape(self):
        runner = FakeToolRunner({"yt-dlp": [VIDEO_URL]})
        result = await _orchestrator(runner).download(POST_URL)

        payload = result.to_payload()

        assert payload["success"] is True
        assert payload["downloadUrl"] == VIDEO_URL
        assert payload["originalUrl"] == POST_URL
        assert payload["cached"] is False


# ============================================================================
# Fallback
# ============================================================================

class TestFallback:
    @pytest.mark.asyncio
    async def test_falls_back_to_second_tool(self):
        not_found = [tool_failure("exit 1", stderr="HTTP Error 404: Not Found") for _ in range(4)]
        runner = FakeToolRunner({
            "yt-dlp": not_found,
            "gallery-dl": ["https://scontent.cdninstagram.com/v/clip.mp4\n"],
        })
        orchestrator = _orchestrator(runner)

        result = await orchestrator.download(POST_URL)

        assert result.success is True
        assert result.metadata["tool"] == "gallery-dl"
        assert result.metadata["strategy"] == "direct_url_extraction"
        assert result.metadata["attempt_count"] == 2
        assert result.metadata["fallback_reason"] == "yt-dlp_failed_not_found"
        # Tools run strictly in priority order
        assert [program for program, _ in runner.calls] == ["yt-dlp"] * 4 + ["gallery-dl"]

    @pytest.mark.asyncio
    async def test_all_tools_exhausted(self):
        runner = FakeToolRunner({
            "yt-dlp": [tool_failure("exit 1", stderr="HTTP Error 429") for _ in range(4)],
            "gallery-dl": [tool_failure("exit 1", stderr="login required") for _ in range(3)],
        })
        orchestrator = _orchestrator(runner)

        result = await orchestrator.download(POST_URL)

        assert result.success is False
        assert result.error_category is ErrorCategory.AUTHENTICATION
        assert result.status_hint == 403
        assert result.details.startswith("All extraction strategies failed")
        assert result.metadata["tool"] == "gallery-dl"
        assert result.metadata["last_error"] == "login required"
        assert orchestrator.metrics_snapshot()["failed_downloads"] == 1

    @pytest.mark.asyncio
    async def test_no_tool_can_handle(self):
        runner = FakeToolRunner()
        orchestrator = _orchestrator(runner, hosts=("instagram.com", "example.com"))

        result = await orchestrator.download("https://example.com/p/ABC123/")

        assert result.success is False
        assert result.error_category is ErrorCategory.UNKNOWN
        assert result.status_hint == 500
        assert result.details == "No suitable extraction tool found"
        assert result.metadata["tool"] == "unknown"
        assert runner.calls == []

    @pytest.mark.asyncio
    async def test_tool_exception_does_not_abort_chain(self):
        runner = FakeToolRunner({
            "yt-dlp": [RuntimeError("unexpected parser state")],
            "gallery-dl": [VIDEO_URL],
        })
        orchestrator = _orchestrator(runner)

        result = await orchestrator.download(POST_URL)

        assert result.success is True
        assert result.metadata["tool"] == "gallery-dl"
        assert result.metadata["fallback_reason"] == "yt-dlp_failed_unknown"
        strategies = orchestrator.metrics_snapshot()["strategies"]
        assert strategies["yt-dlp:exception"]["failures"] == 1

    @pytest.mark.asyncio
    async def test_missing_binaries_are_unknown_failures(self):
        runner = ProcessRunner()
        strategy_sets = [
            YtDlpStrategySet(runner, program="no-such-ytdlp-bin", sleep=RecordingSleep()),
            GalleryDlStrategySet(runner, program="no-such-gdl-bin", sleep=RecordingSleep()),
        ]
        orchestrator = DownloadOrchestrator(
            strategy_sets=strategy_sets,
            cache=ResultCache(InMemoryKeyValueStore()),
            backoff=BackoffTracker(clock=ManualClock(), sleep=RecordingSleep()),
            guard=StampedeGuard(),
            normalizer=UrlNormalizer(("instagram.com",)),
        )

        result = await orchestrator.download(POST_URL)

        assert result.success is False
        assert result.error_category is ErrorCategory.UNKNOWN
        assert result.status_hint == 500
        assert result.user_message == "Download failed. Please try again later."

    @pytest.mark.asyncio
    async def test_long_exception_text_is_bounded(self):
        runner = FakeToolRunner({
            "yt-dlp": [RuntimeError("x" * 5000)],
            "gallery-dl": [RuntimeError("y" * 5000)],
        })
        orchestrator = _orchestrator(runner)

        result = await orchestrator.download(POST_URL)

        assert result.success is False
        prefix = "All extraction strategies failed. Last error: "
        assert result.details.startswith(prefix + "RuntimeError: yyy")
        assert len(result.details) == len(prefix) + 300


# ============================================================================
# Backoff
# ============================================================================

class TestBackoffIntegration:
    @pytest.mark.asyncio
    async def test_rate_limit_feeds_backoff(self):
        sleep = RecordingSleep()
        backoff = BackoffTracker(clock=ManualClock(), sleep=sleep)
        runner = FakeToolRunner({
            "yt-dlp": [tool_failure("exit 1", stderr="HTTP Error 429") for _ in range(4)],
            "gallery-dl": [tool_failure("exit 1", stderr="HTTP Error 404") for _ in range(3)],
        })
        orchestrator = _orchestrator(runner, backoff=backoff)

        result = await orchestrator.download(POST_URL)

        assert result.error_category is ErrorCategory.NOT_FOUND
        # yt-dlp owed nothing; gallery-dl waited after the rate-limit
        assert sleep.delays == [0, 1.0]
        state = backoff.stats()["domains"]["instagram.com"]
        assert state["consecutive_failures"] == 1
        assert state["error_category"] == "rate_limit"

    @pytest.mark.asyncio
    async def test_other_categories_do_not_feed_backoff(self):
        backoff = BackoffTracker(clock=ManualClock(), sleep=RecordingSleep())
        runner = FakeToolRunner({
            "yt-dlp": [tool_failure("exit 1", stderr="HTTP Error 404") for _ in range(4)],
            "gallery-dl": [tool_failure("exit 1", stderr="timed out") for _ in range(3)],
        })

        await _orchestrator(runner, backoff=backoff).download(POST_URL)

        assert backoff.stats() == {"domains": {}}

    @pytest.mark.asyncio
    async def test_success_clears_backoff(self):
        backoff = BackoffTracker(clock=ManualClock(), sleep=RecordingSleep())
        backoff.record_failure("instagram.com", ErrorCategory.RATE_LIMIT)
        runner = FakeToolRunner({"yt-dlp": [VIDEO_URL]})

        await _orchestrator(runner, backoff=backoff).download(POST_URL)

        assert backoff.delay_for("instagram.com") == 0


# ============================================================================
# Stampede
# ============================================================================

class TestStampede:
    @pytest.mark.asyncio
    async def test_concurrent_identical_requests_execute_once(self):
        runner = GatedRunner(VIDEO_URL)
        orchestrator = _orchestrator(runner, tools=(YtDlpStrategySet,))

        urls = [POST_URL, REEL_URL, POST_URL, "https://instagram.com/reels/ABC123", POST_URL]
        pending = asyncio.ensure_future(
            asyncio.gather(*(orchestrator.download(u) for u in urls))
        )
        for _ in range(5):
            await asyncio.sleep(0)

        assert orchestrator.guard.active_count == 1
        runner.gate.set()
        results = await pending

        assert runner.calls == 1
        assert {r.download_url for r in results} == {VIDEO_URL}
        assert all(r.success for r in results)
        assert orchestrator.guard.active_count == 0

    @pytest.mark.asyncio
    async def test_joined_requests_count_as_outcomes(self):
        runner = GatedRunner(VIDEO_URL)
        orchestrator = _orchestrator(runner, tools=(YtDlpStrategySet,))

        pending = asyncio.ensure_future(
            asyncio.gather(*(orchestrator.download(POST_URL) for _ in range(3)))
        )
        for _ in range(5):
            await asyncio.sleep(0)
        runner.gate.set()
        await pending

        snapshot = orchestrator.metrics_snapshot()
        assert snapshot["total_requests"] == 3
        assert snapshot["successful_downloads"] == 3
        assert snapshot["deduplicated_requests"] == 2
        assert snapshot["success_rate"] == "100.0%"
        assert snapshot["response_time_ms"]["count"] == 3

    @pytest.mark.asyncio
    async def test_joined_failures_count_as_failures(self):
        runner = FakeToolRunner({
            "yt-dlp": [tool_failure("exit 1", stderr="HTTP Error 404") for _ in range(4)],
        })
        orchestrator = _orchestrator(runner, tools=(YtDlpStrategySet,))

        results = await asyncio.gather(*(orchestrator.download(POST_URL) for _ in range(2)))

        assert [r.success for r in results] == [False, False]
        snapshot = orchestrator.metrics_snapshot()
        assert snapshot["failed_downloads"] == 2
        assert snapshot["deduplicated_requests"] == 1


# ============================================================================
# Health and metrics
# ============================================================================

class TestHealthAndMetrics:
    @pytest.mark.asyncio
    async def test_health_status(self):
        orchestrator = _orchestrator(FakeToolRunner())

        health = await orchestrator.health_status()

        assert health["service"] == "media-link-resolver"
        assert health["healthy"] is True
        assert health["cache"]["connected"] is True
        assert health["backoff"]["active_requests"] == 0
        assert [t["name"] for t in health["tools"]] == ["yt-dlp", "gallery-dl"]
        assert health["tools"][0]["estimated_duration_ms"] == 45000

    @pytest.mark.asyncio
    async def test_strategy_counters_and_reset(self):
        runner = FakeToolRunner({
            "yt-dlp": [tool_failure("exit 1", stderr="HTTP Error 404"), VIDEO_URL],
        })
        orchestrator = _orchestrator(runner)

        await orchestrator.download(POST_URL)
        strategies = orchestrator.metrics_snapshot()["strategies"]

        assert strategies["yt-dlp:fresh_browser_cookies"]["failures"] == 1
        assert strategies["yt-dlp:file_cookies_enhanced"]["successes"] == 1
        assert strategies["yt-dlp:file_cookies_enhanced"]["success_rate"] == "100.0%"

        orchestrator.reset_metrics()
        snapshot = orchestrator.metrics_snapshot()
        assert snapshot["total_requests"] == 0
        assert snapshot["strategies"] == {}
