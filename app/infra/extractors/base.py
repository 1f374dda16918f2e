# app/infra/extractors/base.py
"""
Extraction strategy abstraction.

A ToolStrategySet is the ordered fallback chain for one external tool.
Each ExtractionStrategy knows how to build that tool's argv for one
variant and how to parse the tool's stdout into a candidate URL.
"""
from __future__ import annotations

import asyncio
import json
import random
import re
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Iterable, Optional, Sequence

from app.core.resolver.domain import ErrorCategory, ExtractionOutcome
from app.core.resolver.errors import ToolInvocationError, classify_exception, truncate
from app.core.resolver.ports import ToolRunner
from app.infra.logging_config import LogContext, get_logger, shorten_url

logger = get_logger(__name__)

_HTTP_LINE_RE = re.compile(r"^https?://", re.IGNORECASE)

MEDIA_EXTENSIONS = (".mp4", ".mov", ".avi", ".webm", ".mkv")
MEDIA_MARKERS = ("video", "scontent", "cdninstagram")


# ============================================================================
# TYPES
# ============================================================================

@dataclass(frozen=True)
class ExtractionContext:
    """Per-call identity shared by every strategy of one tool."""
    user_agent: str
    cookies_path: str = ""
    fallback_reason: str = "primary_attempt"


@dataclass(frozen=True)
class ToolCommand:
    program: str
    args: tuple[str, ...]
    timeout_seconds: float
    max_output_bytes: int


ArgsBuilder = Callable[[str, ExtractionContext], Sequence[str]]
OutputParser = Callable[[str], Optional[str]]


@dataclass(frozen=True)
class ExtractionStrategy:
    name: str
    description: str
    priority: int
    args_builder: ArgsBuilder
    parser: OutputParser

    def build_args(self, target: str, context: ExtractionContext) -> tuple[str, ...]:
        return tuple(self.args_builder(target, context))

    def parse_output(self, stdout: str) -> Optional[str]:
        return self.parser(stdout)


# ============================================================================
# OUTPUT PARSERS
# ============================================================================

def _url_lines(stdout: str) -> list[str]:
    if not stdout or not isinstance(stdout, str):
        return []
    lines = (line.strip() for line in stdout.strip().splitlines())
    return [line for line in lines if _HTTP_LINE_RE.match(line)]


def looks_like_media_url(url: str) -> bool:
    lowered = url.lower()
    return any(ext in lowered for ext in MEDIA_EXTENSIONS) or any(m in lowered for m in MEDIA_MARKERS)


def extract_last_url(stdout: str) -> Optional[str]:
    """Last http(s) line; yt-dlp prints the best format last."""
    urls = _url_lines(stdout)
    return urls[-1] if urls else None


def extract_first_media_url(stdout: str) -> Optional[str]:
    """First http(s) line that looks like media."""
    for url in _url_lines(stdout):
        if looks_like_media_url(url):
            return url
    return None


def _url_from_record(record: Any) -> Optional[str]:
    if not isinstance(record, dict):
        return None
    media = record.get("media")
    candidates = (
        record.get("url"),
        record.get("video_url"),
        record.get("media_url"),
        media.get("url") if isinstance(media, dict) else None,
    )
    for candidate in candidates:
        if isinstance(candidate, str) and candidate:
            return candidate
    return None


def extract_media_url_from_json_lines(stdout: str) -> Optional[str]:
    """
    Each line is parsed as an independent JSON record; unparseable lines are
    skipped. Returns the first record URL that looks like media.
    """
    if not stdout or not isinstance(stdout, str):
        return None

    for line in stdout.strip().splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            record = json.loads(line)
        except ValueError:
            continue
        url = _url_from_record(record)
        if url and looks_like_media_url(url):
            return url
    return None


# ============================================================================
# STRATEGY SET
# ============================================================================

class ToolStrategySet:
    """
    Ordered fallback chain for one external tool.

    Subclasses set the class attributes and implement build_strategies().
    Lower ``priority`` is tried first by the orchestrator; inside the set,
    strategies run in ascending strategy priority, one at a time.
    """

    name: str = ""
    program: str = ""
    priority: int = 100
    estimated_duration_ms: int = 30000
    timeout_seconds: float = 60.0
    max_output_bytes: int = 10 * 1024 * 1024
    inter_strategy_delay: float = 1.5
    user_agents: tuple[str, ...] = ()

    def __init__(
        self,
        runner: ToolRunner,
        *,
        cookies_path: str = "",
        hosts: Iterable[str] = ("instagram.com",),
        program: str | None = None,
        timeout_seconds: float | None = None,
        max_output_bytes: int | None = None,
        inter_strategy_delay: float | None = None,
        rng: random.Random | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.runner = runner
        self.cookies_path = cookies_path
        self.hosts = tuple(h.lower() for h in hosts)
        if program is not None:
            self.program = program
        if timeout_seconds is not None:
            self.timeout_seconds = timeout_seconds
        if max_output_bytes is not None:
            self.max_output_bytes = max_output_bytes
        if inter_strategy_delay is not None:
            self.inter_strategy_delay = inter_strategy_delay
        self._rng = rng or random.Random()
        self._sleep = sleep
        self._clock = clock
        self.strategies: list[ExtractionStrategy] = sorted(
            self.build_strategies(), key=lambda s: s.priority
        )

    def build_strategies(self) -> list[ExtractionStrategy]:
        raise NotImplementedError

    def can_handle(self, target: str) -> bool:
        lowered = target.lower()
        return any(host in lowered for host in self.hosts)

    def choose_user_agent(self) -> str:
        return self._rng.choice(self.user_agents) if self.user_agents else ""

    def build_invocation(
        self, strategy: ExtractionStrategy, target: str, context: ExtractionContext
    ) -> ToolCommand:
        return ToolCommand(
            program=self.program,
            args=strategy.build_args(target, context),
            timeout_seconds=self.timeout_seconds,
            max_output_bytes=self.max_output_bytes,
        )

    def success_metadata(self, strategy: ExtractionStrategy) -> dict[str, Any]:
        """Tool-specific fields added to a successful outcome."""
        return {}

    def describe(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "priority": self.priority,
            "estimated_duration_ms": self.estimated_duration_ms,
            "strategies": [s.name for s in self.strategies],
        }

    async def execute(self, target: str, options: dict[str, Any] | None = None) -> ExtractionOutcome:
        """
        Try each strategy in order; the first one yielding a URL wins.

        Process failures (non-zero exit, timeout) and empty results advance
        to the next strategy after ``inter_strategy_delay``. Only
        ToolInvocationError is recovered here; anything else propagates to
        the orchestrator.
        """
        options = options or {}
        context = ExtractionContext(
            user_agent=self.choose_user_agent(),
            cookies_path=self.cookies_path,
            fallback_reason=options.get("fallback_reason", "primary_attempt"),
        )
        log = LogContext(logger, cache_key=options.get("cache_key"), tool=self.name)

        started = self._clock()
        last_error: ToolInvocationError | None = None
        tried: list[str] = []

        for index, strategy in enumerate(self.strategies):
            tried.append(strategy.name)
            slog = log.bind(strategy=strategy.name)
            command = self.build_invocation(strategy, target, context)

            slog.info(
                f"Trying {self.name} strategy: {strategy.name} "
                f"url={shorten_url(target)} ua={shorten_url(context.user_agent)}"
            )

            attempt_started = self._clock()
            try:
                result = await self.runner.run(
                    command.program,
                    command.args,
                    timeout_seconds=command.timeout_seconds,
                    max_output_bytes=command.max_output_bytes,
                )
            except ToolInvocationError as exc:
                last_error = exc
                slog.warning(
                    f"{self.name} strategy {strategy.name} failed: {exc} "
                    f"stderr={truncate(exc.stderr) or 'no stderr'}"
                )
            else:
                duration_ms = int((self._clock() - attempt_started) * 1000)
                download_url = strategy.parse_output(result.stdout)
                if download_url:
                    slog.info(f"{self.name} strategy {strategy.name} succeeded in {duration_ms}ms")
                    metadata = {
                        "user_agent": shorten_url(context.user_agent),
                        "extracted_at": datetime.now(timezone.utc).isoformat(),
                        "priority": strategy.priority,
                        "fallback_reason": context.fallback_reason,
                        "strategies_tried": list(tried),
                        **self.success_metadata(strategy),
                    }
                    return ExtractionOutcome.succeeded(
                        tool_name=self.name,
                        strategy_name=strategy.name,
                        download_url=download_url,
                        duration_ms=duration_ms,
                        metadata=metadata,
                    )
                slog.info(f"{self.name} strategy {strategy.name} returned no URLs, trying next...")

            if index < len(self.strategies) - 1:
                await self._sleep(self.inter_strategy_delay)

        category = classify_exception(last_error) if last_error else ErrorCategory.UNKNOWN
        message = str(last_error) if last_error else f"All {self.name} strategies failed"
        log.warning(f"All {self.name} strategies failed: category={category.value}")

        return ExtractionOutcome.failed(
            tool_name=self.name,
            error_category=category,
            raw_error=message,
            duration_ms=int((self._clock() - started) * 1000),
            metadata={
                "strategies_tried": tried,
                "last_error": truncate(last_error.stderr) if last_error and last_error.stderr else None,
                "fallback_reason": context.fallback_reason,
            },
        )
