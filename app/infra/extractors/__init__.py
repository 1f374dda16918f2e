# app/infra/extractors/__init__.py
"""
External-tool extraction strategies.

Strategy pattern: each tool (yt-dlp, gallery-dl) owns an ordered chain of
invocation variants. The orchestrator walks tools by priority and never
needs to know a tool's arguments or output format.
"""
from app.infra.extractors.base import (
    ExtractionContext,
    ExtractionStrategy,
    ToolCommand,
    ToolStrategySet,
    extract_first_media_url,
    extract_last_url,
    extract_media_url_from_json_lines,
    looks_like_media_url,
)
from app.infra.extractors.gallerydl import GalleryDlStrategySet
from app.infra.extractors.registry import build_default_strategy_sets
from app.infra.extractors.ytdlp import YtDlpStrategySet

__all__ = [
    "ExtractionContext",
    "ExtractionStrategy",
    "ToolCommand",
    "ToolStrategySet",
    "extract_first_media_url",
    "extract_last_url",
    "extract_media_url_from_json_lines",
    "looks_like_media_url",
    "GalleryDlStrategySet",
    "YtDlpStrategySet",
    "build_default_strategy_sets",
]
