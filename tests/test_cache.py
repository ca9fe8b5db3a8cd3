"""Tests for the TTL content cache."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from clinic_assistant.services.cache import PLACEHOLDER_CONTENT, TTLCache

# ── Freshness ────────────────────────────────────────────────────────


class TestTTLCacheFreshness:
    @pytest.mark.asyncio
    async def test_first_get_fetches(self, clock):
        cache = TTLCache(ttl_seconds=300, clock=clock)
        fetcher = AsyncMock(return_value="content v1")
        assert await cache.get("clinic_content", fetcher) == "content v1"
        assert fetcher.await_count == 1

    @pytest.mark.asyncio
    async def test_hit_within_ttl_does_not_fetch(self, clock):
        cache = TTLCache(ttl_seconds=300, clock=clock)
        fetcher = AsyncMock(side_effect=["v1", "v2"])
        await cache.get("k", fetcher)
        clock.advance(299)
        assert await cache.get("k", fetcher) == "v1"
        assert fetcher.await_count == 1

    @pytest.mark.asyncio
    async def test_expires_at_exactly_ttl(self, clock):
        cache = TTLCache(ttl_seconds=300, clock=clock)
        fetcher = AsyncMock(side_effect=["v1", "v2"])
        await cache.get("k", fetcher)
        clock.advance(300)
        assert await cache.get("k", fetcher) == "v2"
        assert fetcher.await_count == 2

    @pytest.mark.asyncio
    async def test_keys_are_independent(self, clock):
        cache = TTLCache(clock=clock)
        await cache.get("a", AsyncMock(return_value="A"))
        await cache.get("b", AsyncMock(return_value="B"))
        assert cache.peek("a") == "A"
        assert cache.peek("b") == "B"
        assert len(cache) == 2


# ── Failure handling ─────────────────────────────────────────────────


class TestTTLCacheFailures:
    @pytest.mark.asyncio
    async def test_failure_with_nothing_cached_returns_placeholder(self, clock):
        cache = TTLCache(clock=clock)
        fetcher = AsyncMock(side_effect=RuntimeError("site down"))
        assert await cache.get("k", fetcher) == PLACEHOLDER_CONTENT
        assert "k" not in cache

    @pytest.mark.asyncio
    async def test_failure_serves_stale_value(self, clock):
        cache = TTLCache(ttl_seconds=10, clock=clock)
        await cache.get("k", AsyncMock(return_value="old"))
        clock.advance(60)
        assert await cache.get("k", AsyncMock(side_effect=RuntimeError("boom"))) == "old"

    @pytest.mark.asyncio
    async def test_custom_placeholder(self, clock):
        cache = TTLCache(clock=clock, placeholder="n/a")
        assert await cache.get("k", AsyncMock(side_effect=ValueError)) == "n/a"


# ── Housekeeping ─────────────────────────────────────────────────────


class TestTTLCacheHousekeeping:
    @pytest.mark.asyncio
    async def test_peek_ignores_stale(self, clock):
        cache = TTLCache(ttl_seconds=5, clock=clock)
        await cache.get("k", AsyncMock(return_value="v"))
        clock.advance(5)
        assert cache.peek("k") is None

    @pytest.mark.asyncio
    async def test_invalidate(self, clock):
        cache = TTLCache(clock=clock)
        await cache.get("k", AsyncMock(return_value="v"))
        assert cache.invalidate("k") is True
        assert cache.invalidate("k") is False
        assert cache.peek("k") is None

    @pytest.mark.asyncio
    async def test_clear(self, clock):
        cache = TTLCache(clock=clock)
        await cache.get("a", AsyncMock(return_value="1"))
        await cache.get("b", AsyncMock(return_value="2"))
        cache.clear()
        assert len(cache) == 0
