# app/infra/extractors/gallerydl.py
"""
gallery-dl strategy set -- fallback tool.

``--get-urls`` prints every media URL of a post (images included), so
line output is filtered to media-looking URLs. ``--dump-json`` prints one
JSON record per line.
"""
from __future__ import annotations

from app.infra.extractors.base import (
    ExtractionContext,
    ExtractionStrategy,
    ToolStrategySet,
    extract_first_media_url,
    extract_media_url_from_json_lines,
)


class GalleryDlStrategySet(ToolStrategySet):
    name = "gallery-dl"
    program = "gallery-dl"
    priority = 2
    estimated_duration_ms = 30000
    timeout_seconds = 90.0
    max_output_bytes = 10 * 1024 * 1024
    inter_strategy_delay = 1.5
    user_agents = (
        "Mozilla/5.0 (iPhone; CPU iPhone OS 16_6 like Mac OS X) AppleWebKit/605.1.15 "
        "(KHTML, like Gecko) Version/16.6 Mobile/15E148 Safari/604.1",
        "Mozilla/5.0 (Linux; Android 13; SM-G998B) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/112.0.0.0 Mobile Safari/537.36",
    )

    def build_strategies(self) -> list[ExtractionStrategy]:
        def with_cookies(mode: str):
            def build(url: str, ctx: ExtractionContext) -> list[str]:
                return [
                    mode,
                    "--cookies", ctx.cookies_path,
                    "--user-agent", ctx.user_agent,
                    "--retries", "3",
                    url,
                ]
            return build

        def simple(url: str, ctx: ExtractionContext) -> list[str]:
            return [
                "--get-urls",
                "--user-agent", ctx.user_agent,
                "--no-part",
                url,
            ]

        return [
            ExtractionStrategy(
                name="direct_url_extraction",
                description="Direct media URLs",
                priority=1,
                args_builder=with_cookies("--get-urls"),
                parser=extract_first_media_url,
            ),
            ExtractionStrategy(
                name="json_metadata_extraction",
                description="JSON metadata, first media record",
                priority=2,
                args_builder=with_cookies("--dump-json"),
                parser=extract_media_url_from_json_lines,
            ),
            ExtractionStrategy(
                name="simple_download",
                description="Minimal options, no cookies",
                priority=3,
                args_builder=simple,
                parser=extract_first_media_url,
            ),
        ]
