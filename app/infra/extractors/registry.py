# app/infra/extractors/registry.py
from __future__ import annotations

import random
from typing import TYPE_CHECKING

from app.core.resolver.ports import ToolRunner
from app.infra.extractors.base import ToolStrategySet
from app.infra.extractors.gallerydl import GalleryDlStrategySet
from app.infra.extractors.ytdlp import YtDlpStrategySet
from app.infra.logging_config import get_logger

if TYPE_CHECKING:
    from app.config import Settings

logger = get_logger(__name__)

TOOL_CLASSES: dict[str, type[ToolStrategySet]] = {
    YtDlpStrategySet.name: YtDlpStrategySet,
    GalleryDlStrategySet.name: GalleryDlStrategySet,
}


def build_default_strategy_sets(
    settings: "Settings",
    runner: ToolRunner,
    rng: random.Random | None = None,
) -> list[ToolStrategySet]:
    """
    Instantiate the enabled tools, ordered by tool priority.

    Unknown names in ENABLED_TOOLS are skipped with a warning.
    """
    per_tool = {
        YtDlpStrategySet.name: dict(
            program=settings.ytdlp_binary,
            timeout_seconds=settings.ytdlp_timeout_seconds,
            max_output_bytes=settings.ytdlp_max_output_bytes,
            inter_strategy_delay=settings.ytdlp_strategy_delay_seconds,
        ),
        GalleryDlStrategySet.name: dict(
            program=settings.gallerydl_binary,
            timeout_seconds=settings.gallerydl_timeout_seconds,
            max_output_bytes=settings.gallerydl_max_output_bytes,
            inter_strategy_delay=settings.gallerydl_strategy_delay_seconds,
        ),
    }

    sets: list[ToolStrategySet] = []
    for tool_name in settings.tool_list:
        cls = TOOL_CLASSES.get(tool_name)
        if cls is None:
            logger.warning(f"Unknown extraction tool '{tool_name}' in ENABLED_TOOLS - skipping")
            continue
        sets.append(
            cls(
                runner,
                cookies_path=settings.cookies_path,
                hosts=settings.host_list,
                rng=rng,
                **per_tool[tool_name],
            )
        )

    sets.sort(key=lambda s: s.priority)
    logger.info(f"Extraction tools: {[f'{s.name}(p{s.priority})' for s in sets]}")
    return sets
