# app/infra/result_cache.py
"""
Result cache with JSON records and TTL management.

Store failures never break a download: a failed read is a miss and a
failed write is logged.
"""
from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from app.core.resolver.domain import CacheRecord
from app.core.resolver.ports import KeyValueStore
from app.infra.logging_config import get_logger

logger = get_logger(__name__)

DEFAULT_TTL_SECONDS = 20 * 24 * 60 * 60  # 20 days


class ResultCache:
    def __init__(self, store: KeyValueStore, default_ttl_seconds: int = DEFAULT_TTL_SECONDS):
        self.store = store
        self.default_ttl_seconds = default_ttl_seconds

    async def get(self, cache_key: str) -> Optional[CacheRecord]:
        """
        Get cached result.

        Structured (JSON object) values become full records. Anything that
        does not parse as a JSON object is a legacy value: the whole string
        is the download URL.
        """
        try:
            raw = await self.store.get(cache_key)
        except Exception as exc:
            logger.error(f"Cache get error for {cache_key}: {exc}")
            return None

        if not raw:
            return None

        try:
            data = json.loads(raw)
        except ValueError:
            data = None

        if not isinstance(data, dict):
            logger.info(f"Cache hit (legacy): {cache_key}")
            return CacheRecord.legacy(raw)

        record = CacheRecord.from_dict(data)
        logger.info(
            f"Cache hit (JSON): {cache_key}",
            extra={"cache_key": cache_key, "tool": record.tool_name, "strategy": record.strategy_name},
        )
        return record

    async def set(self, cache_key: str, record: CacheRecord, ttl_seconds: int | None = None) -> None:
        """Store a result; stamps cached_at and ttl on the record."""
        ttl = ttl_seconds or self.default_ttl_seconds
        record.cached_at = datetime.now(timezone.utc).isoformat()
        record.ttl_seconds = ttl

        try:
            await self.store.set(cache_key, record.to_json(), ttl)
        except Exception as exc:
            logger.error(f"Cache set error for {cache_key}: {exc}")
            return

        logger.info(
            f"Cached result for {cache_key} (ttl={ttl}s)",
            extra={"cache_key": cache_key, "tool": record.tool_name, "strategy": record.strategy_name},
        )

    async def exists(self, cache_key: str) -> bool:
        try:
            return await self.store.exists(cache_key)
        except Exception as exc:
            logger.error(f"Cache exists error for {cache_key}: {exc}")
            return False

    async def delete(self, cache_key: str) -> None:
        try:
            await self.store.delete(cache_key)
            logger.info(f"Cache deleted: {cache_key}")
        except Exception as exc:
            logger.error(f"Cache delete error for {cache_key}: {exc}")

    async def stats(self) -> Dict[str, Any]:
        try:
            stats = await self.store.stats()
        except Exception as exc:
            return {
                "total_keys": 0,
                "memory_used": "0B",
                "connected": False,
                "error": str(exc)[:200],
            }
        return {
            "total_keys": stats.get("total_keys", 0),
            "memory_used": stats.get("memory_used", "0B"),
            "connected": True,
        }
