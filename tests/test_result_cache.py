"""Tests for the result cache and key-value stores"""
import json
from unittest.mock import AsyncMock, Mock

import pytest

from conftest import ManualClock

from app.core.resolver.domain import CacheRecord
from app.infra.kv_store import InMemoryKeyValueStore, RedisKeyValueStore, create_store
from app.infra.result_cache import DEFAULT_TTL_SECONDS, ResultCache


def _record(**overrides):
    data = dict(
        download_url="https://cdn.example/video.mp4",
        tool_name="yt-dlp",
        strategy_name="embed_only",
        original_id="https://www.instagram.com/p/ABC123/",
        extra_metadata={"format": "best"},
    )
    data.update(overrides)
    return CacheRecord(**data)


class TestResultCache:
    @pytest.mark.asyncio
    async def test_round_trip(self, memory_store):
        cache = ResultCache(memory_store)

        await cache.set("post_ABC123", _record())
        record = await cache.get("post_ABC123")

        assert record.download_url == "https://cdn.example/video.mp4"
        assert record.tool_name == "yt-dlp"
        assert record.strategy_name == "embed_only"
        assert record.original_id == "https://www.instagram.com/p/ABC123/"
        assert record.ttl_seconds == DEFAULT_TTL_SECONDS
        assert record.cached_at
        assert record.is_legacy is False

    @pytest.mark.asyncio
    async def test_stored_value_uses_record_keys(self, memory_store):
        cache = ResultCache(memory_store, default_ttl_seconds=60)
        await cache.set("post_ABC123", _record())

        stored = json.loads(await memory_store.get("post_ABC123"))

        assert set(stored) == {
            "downloadUrl", "tool", "strategy", "originalUrl", "cachedAt", "ttl", "metadata",
        }
        assert stored["ttl"] == 60

    @pytest.mark.asyncio
    async def test_legacy_plain_string(self, memory_store):
        await memory_store.set("post_OLD", "https://cdn.example/old.mp4", 60)
        record = await ResultCache(memory_store).get("post_OLD")

        assert record.download_url == "https://cdn.example/old.mp4"
        assert record.tool_name == "unknown"
        assert record.strategy_name == "legacy"
        assert record.is_legacy is True

    @pytest.mark.asyncio
    async def test_json_that_is_not_an_object_is_legacy(self, memory_store):
        await memory_store.set("post_ODD", '"https://cdn.example/quoted.mp4"', 60)
        record = await ResultCache(memory_store).get("post_ODD")

        assert record.is_legacy is True
        assert record.download_url == '"https://cdn.example/quoted.mp4"'

    @pytest.mark.asyncio
    async def test_miss(self, memory_store):
        assert await ResultCache(memory_store).get("post_NONE") is None

    @pytest.mark.asyncio
    async def test_explicit_ttl(self, memory_store):
        cache = ResultCache(memory_store)
        record = _record()
        await cache.set("post_ABC123", record, ttl_seconds=5)
        assert record.ttl_seconds == 5

    @pytest.mark.asyncio
    async def test_store_errors_degrade_to_miss(self):
        store = Mock()
        store.get = AsyncMock(side_effect=ConnectionError("redis down"))
        store.set = AsyncMock(side_effect=ConnectionError("redis down"))
        store.stats = AsyncMock(side_effect=ConnectionError("redis down"))
        cache = ResultCache(store)

        assert await cache.get("post_A") is None
        await cache.set("post_A", _record())  # logged, not raised

        stats = await cache.stats()
        assert stats["connected"] is False
        assert "redis down" in stats["error"]

    @pytest.mark.asyncio
    async def test_exists_and_delete(self, memory_store):
        cache = ResultCache(memory_store)
        await cache.set("post_A", _record())

        assert await cache.exists("post_A") is True
        await cache.delete("post_A")
        assert await cache.exists("post_A") is False

    @pytest.mark.asyncio
    async def test_stats(self, memory_store):
        cache = ResultCache(memory_store)
        await cache.set("post_A", _record())

        stats = await cache.stats()

        assert stats["total_keys"] == 1
        assert stats["connected"] is True


class TestInMemoryKeyValueStore:
    @pytest.mark.asyncio
    async def test_expiry(self):
        clock = ManualClock()
        store = InMemoryKeyValueStore(clock=clock)
        await store.set("k", "v", 10)

        clock.advance(9)
        assert await store.get("k") == "v"

        clock.advance(1)
        assert await store.get("k") is None
        assert await store.exists("k") is False

    @pytest.mark.asyncio
    async def test_ping_and_close(self):
        store = InMemoryKeyValueStore()
        await store.set("k", "v", 10)
        assert await store.ping() is True
        await store.close()
        assert (await store.stats())["total_keys"] == 0


class TestRedisKeyValueStore:
    def _store(self):
        client = Mock()
        client.get = AsyncMock(return_value="value")
        client.set = AsyncMock()
        client.exists = AsyncMock(return_value=1)
        client.delete = AsyncMock()
        client.info = AsyncMock(return_value={"used_memory_human": "1.5M"})
        client.dbsize = AsyncMock(return_value=7)
        client.ping = AsyncMock(return_value=True)
        client.aclose = AsyncMock()
        return RedisKeyValueStore("redis://localhost:6379", client=client), client

    @pytest.mark.asyncio
    async def test_set_uses_expiry(self):
        store, client = self._store()
        await store.set("post_A", "{}", 120)
        client.set.assert_awaited_once_with("post_A", "{}", ex=120)

    @pytest.mark.asyncio
    async def test_reads(self):
        store, client = self._store()
        assert await store.get("post_A") == "value"
        assert await store.exists("post_A") is True
        assert await store.ping() is True

    @pytest.mark.asyncio
    async def test_stats(self):
        store, _ = self._store()
        assert await store.stats() == {"total_keys": 7, "memory_used": "1.5M"}

    @pytest.mark.asyncio
    async def test_close(self):
        store, client = self._store()
        await store.close()
        client.aclose.assert_awaited_once()


def test_create_store_memory():
    assert isinstance(create_store("memory", "redis://unused"), InMemoryKeyValueStore)
