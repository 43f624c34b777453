"""Tests for the avatar identity cache."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from services.identity import IdentityCache


class TestIdentityCache:

    @pytest.mark.asyncio
    async def test_get_missing_returns_none(self, memory_store):
        cache = IdentityCache(memory_store)
        assert await cache.get_avatar_url("nobody") is None

    @pytest.mark.asyncio
    async def test_set_creates_then_updates(self, memory_store):
        cache = IdentityCache(memory_store)
        assert await cache.set_avatar_url("bob", "http://a") is True
        assert await cache.set_avatar_url("bob", "http://b") is True

        assert memory_store.for_handle("bob") == [{"handle": "bob", "url": "http://b"}]
        assert await cache.get_avatar_url("bob") == "http://b"

    @pytest.mark.asyncio
    async def test_handles_are_case_sensitive(self, memory_store):
        cache = IdentityCache(memory_store)
        await cache.set_avatar_url("Bob", "http://upper")
        assert await cache.get_avatar_url("bob") is None

    @pytest.mark.asyncio
    async def test_concurrent_sets_leave_one_record(self, memory_store):
        cache = IdentityCache(memory_store)
        results = await asyncio.gather(
            cache.set_avatar_url("carol", "http://1"),
            cache.set_avatar_url("carol", "http://2"),
            cache.set_avatar_url("carol", "http://3"),
        )
        assert results == [True, True, True]
        records = memory_store.for_handle("carol")
        assert len(records) == 1
        assert records[0]["url"] == "http://3"

    @pytest.mark.asyncio
    async def test_write_locks_released_after_use(self, memory_store):
        cache = IdentityCache(memory_store)
        await asyncio.gather(
            cache.set_avatar_url("carol", "http://1"),
            cache.set_avatar_url("carol", "http://2"),
            cache.set_avatar_url("dave", "http://3"),
        )
        assert cache._locks == {}

    @pytest.mark.asyncio
    async def test_write_lock_released_after_failure(self):
        store = MagicMock()
        store.find = AsyncMock(side_effect=RuntimeError("down"))
        cache = IdentityCache(store)
        assert await cache.set_avatar_url("bob", "http://a") is False
        assert cache._locks == {}

    @pytest.mark.asyncio
    async def test_lookup_failure_is_none(self):
        store = MagicMock()
        store.find = AsyncMock(side_effect=RuntimeError("down"))
        cache = IdentityCache(store)
        assert await cache.get_avatar_url("bob") is None

    @pytest.mark.asyncio
    async def test_write_failure_is_false(self):
        store = MagicMock()
        store.find = AsyncMock(return_value=None)
        store.create = AsyncMock(side_effect=RuntimeError("quota"))
        cache = IdentityCache(store)
        assert await cache.set_avatar_url("bob", "http://a") is False

    @pytest.mark.asyncio
    async def test_without_store(self):
        cache = IdentityCache(None)
        assert cache.enabled is False
        assert await cache.get_avatar_url("bob") is None
        assert await cache.set_avatar_url("bob", "http://a") is False
