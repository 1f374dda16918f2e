# app/infra/kv_store.py
"""
Key-value stores backing the result cache.

RedisKeyValueStore is the production backend. InMemoryKeyValueStore keeps
the same get/set-with-expiry semantics inside the process (dev and tests).
"""
from __future__ import annotations

import re
import time
from typing import Any, Callable, Dict, Optional

import redis.asyncio as redis

from app.infra.logging_config import get_logger

logger = get_logger(__name__)

_MEMORY_HUMAN_RE = re.compile(r"used_memory_human:([^\r\n]+)")


class RedisKeyValueStore:
    """redis.asyncio-backed store (decoded string values)"""

    def __init__(self, url: str, client: "redis.Redis | None" = None):
        self.url = url
        self._client = client or redis.from_url(url, encoding="utf-8", decode_responses=True)

    async def get(self, key: str) -> Optional[str]:
        return await self._client.get(key)

    async def set(self, key: str, value: str, expiry_seconds: int) -> None:
        await self._client.set(key, value, ex=expiry_seconds)

    async def exists(self, key: str) -> bool:
        return await self._client.exists(key) == 1

    async def delete(self, key: str) -> None:
        await self._client.delete(key)

    async def stats(self) -> Dict[str, Any]:
        info = await self._client.info("memory")
        dbsize = await self._client.dbsize()

        memory_used = "0B"
        if isinstance(info, dict):
            memory_used = str(info.get("used_memory_human", "0B"))
        else:
            match = _MEMORY_HUMAN_RE.search(str(info))
            if match:
                memory_used = match.group(1)

        return {"total_keys": int(dbsize), "memory_used": memory_used}

    async def ping(self) -> bool:
        return bool(await self._client.ping())

    async def close(self) -> None:
        await self._client.aclose()


class InMemoryKeyValueStore:
    """
    Process-local store with per-key expiry.

    ⚠️ NOT shared between replicas and lost on restart.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._data: dict[str, tuple[str, float]] = {}
        self._clock = clock

    def _live(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= self._clock():
            del self._data[key]
            return None
        return value

    async def get(self, key: str) -> Optional[str]:
        return self._live(key)

    async def set(self, key: str, value: str, expiry_seconds: int) -> None:
        self._data[key] = (value, self._clock() + expiry_seconds)

    async def exists(self, key: str) -> bool:
        return self._live(key) is not None

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def stats(self) -> Dict[str, Any]:
        for key in list(self._data):
            self._live(key)
        size = sum(len(k) + len(v) for k, (v, _) in self._data.items())
        return {"total_keys": len(self._data), "memory_used": f"{size}B"}

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        self._data.clear()


def create_store(backend: str, redis_url: str):
    """Build the configured store backend"""
    if backend == "memory":
        logger.info("Result cache backend: in-memory")
        return InMemoryKeyValueStore()
    logger.info("Result cache backend: redis")
    return RedisKeyValueStore(redis_url)
