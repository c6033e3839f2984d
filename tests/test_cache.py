"""Tests for the TTL cache and cache-key builder."""

import pytest
from ninja_crud.cache import TTLCache, make_cache_key


def test_entry_expires_at_ttl(clock):
    cache = TTLCache(10, clock=clock)
    cache.set("k", 1)
    clock.advance(9.9)
    assert cache.get("k") == 1
    clock.advance(0.1)
    assert cache.get("k") is None
    assert len(cache) == 0


def test_contains_and_clear(clock):
    cache = TTLCache(10, clock=clock)
    cache.set("a", 1)
    cache.set("b", 2)
    assert "a" in cache
    cache.clear()
    assert "a" not in cache
    assert len(cache) == 0


async def test_get_or_compute_calls_once_within_ttl(clock):
    cache = TTLCache(5, clock=clock)
    calls = []

    async def compute():
        calls.append(1)
        return len(calls)

    assert await cache.get_or_compute("k", compute) == 1
    assert await cache.get_or_compute("k", compute) == 1
    clock.advance(5)
    assert await cache.get_or_compute("k", compute) == 2
    assert len(calls) == 2


async def test_failed_compute_is_not_cached(clock):
    cache = TTLCache(5, clock=clock)

    async def boom():
        raise RuntimeError("nope")

    with pytest.raises(RuntimeError):
        await cache.get_or_compute("k", boom)
    assert "k" not in cache


def test_cache_key_is_order_independent():
    assert make_cache_key("find_all", {"a": 1, "b": 2}) == make_cache_key("find_all", {"b": 2, "a": 1})
    assert make_cache_key("find_all", {"a": 1}) != make_cache_key("find_one", {"a": 1})


def test_cache_key_drops_ignored_fields():
    with_ts = make_cache_key("find_all", {"query": {"status": "x", "nonce": 1}, "page": 1}, ["nonce"])
    other_ts = make_cache_key("find_all", {"query": {"status": "x", "nonce": 2}, "page": 1}, ["nonce"])
    assert with_ts == other_ts
    assert "nonce" not in with_ts


async def test_callers_cannot_mutate_cached_value(clock):
    cache = TTLCache(5, clock=clock)

    async def compute():
        return {"docs": [{"name": "A"}]}

    first = await cache.get_or_compute("k", compute)
    first["docs"].clear()
    second = await cache.get_or_compute("k", compute)
    assert second == {"docs": [{"name": "A"}]}
    second["docs"][0]["name"] = "changed"
    assert (await cache.get_or_compute("k", compute))["docs"][0]["name"] == "A"
