# app/infra/extractors/ytdlp.py
"""
yt-dlp strategy set -- primary tool.

``-g`` prints direct media URLs, one per line; the selected format is
printed last, so the last URL line wins.
"""
from __future__ import annotations

from typing import Any

from app.infra.extractors.base import (
    ExtractionContext,
    ExtractionStrategy,
    ToolStrategySet,
    extract_last_url,
)

FORMAT_SELECTOR = "best[height<=1080]/best"


class YtDlpStrategySet(ToolStrategySet):
    name = "yt-dlp"
    program = "yt-dlp"
    priority = 1
    estimated_duration_ms = 45000
    timeout_seconds = 120.0
    max_output_bytes = 15 * 1024 * 1024
    inter_strategy_delay = 2.0
    user_agents = (
        "Mozilla/5.0 (iPhone; CPU iPhone OS 16_6 like Mac OS X) AppleWebKit/605.1.15 "
        "(KHTML, like Gecko) Version/16.6 Mobile/15E148 Safari/604.1",
        "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
        "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1",
        "Mozilla/5.0 (Linux; Android 13; SM-G998B) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/112.0.0.0 Mobile Safari/537.36",
        "Mozilla/5.0 (Linux; Android 12; Pixel 6) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/111.0.0.0 Mobile Safari/537.36",
    )

    def build_strategies(self) -> list[ExtractionStrategy]:
        def browser_cookies(browser: str):
            def build(url: str, ctx: ExtractionContext) -> list[str]:
                return [
                    "-g", "-f", FORMAT_SELECTOR,
                    "--cookies-from-browser", browser,
                    "--user-agent", ctx.user_agent,
                    "--no-warnings",
                    "--extractor-args", "instagram:api_version=web",
                    url,
                ]
            return build

        def file_cookies(url: str, ctx: ExtractionContext) -> list[str]:
            return [
                "-g", "-f", FORMAT_SELECTOR,
                "--cookies", ctx.cookies_path,
                "--user-agent", ctx.user_agent,
                "--no-warnings",
                "--extractor-args", "instagram:api_version=web",
                "--add-headers", "X-Instagram-AJAX:1",
                "--add-headers", "X-Requested-With:XMLHttpRequest",
                url,
            ]

        def embed_only(url: str, ctx: ExtractionContext) -> list[str]:
            return [
                "-g", "-f", "best/worst",
                "--user-agent", ctx.user_agent,
                "--no-warnings",
                "--referer", "https://www.instagram.com/",
                "--add-headers", "Sec-Fetch-Dest:iframe",
                "--add-headers", "Sec-Fetch-Mode:navigate",
                url,
            ]

        return [
            ExtractionStrategy(
                name="fresh_browser_cookies",
                description="Fresh cookies from the Chrome profile",
                priority=1,
                args_builder=browser_cookies("chrome"),
                parser=extract_last_url,
            ),
            ExtractionStrategy(
                name="file_cookies_enhanced",
                description="Cookies file with extra session headers",
                priority=2,
                args_builder=file_cookies,
                parser=extract_last_url,
            ),
            ExtractionStrategy(
                name="firefox_fallback",
                description="Cookies from the Firefox profile",
                priority=3,
                args_builder=browser_cookies("firefox"),
                parser=extract_last_url,
            ),
            ExtractionStrategy(
                name="embed_only",
                description="Embed page extraction, no login",
                priority=4,
                args_builder=embed_only,
                parser=extract_last_url,
            ),
        ]

    def success_metadata(self, strategy: ExtractionStrategy) -> dict[str, Any]:
        fmt = "best/worst" if strategy.name == "embed_only" else FORMAT_SELECTOR
        return {"format": fmt}
