"""Unit tests for the in-process query cache."""

import pytest

from services.cache import QueryCache


@pytest.fixture
def cache(clock):
    return QueryCache(ttl_seconds=60, max_size=3, clock=clock)


class TestGenerateKey:
    def test_insertion_order_does_not_matter(self):
        a = QueryCache.generate_key("bookings", "list", {"page": 1, "limit": 20, "status": "confirmed"})
        b = QueryCache.generate_key("bookings", "list", {"status": "confirmed", "limit": 20, "page": 1})
        assert a == b

    def test_different_params_different_keys(self):
        a = QueryCache.generate_key("bookings", "list", {"page": 1})
        b = QueryCache.generate_key("bookings", "list", {"page": 2})
        assert a != b

    def test_shape(self):
        assert QueryCache.generate_key("bookings", "stats") == "bookings:stats:{}"


class TestGetSet:
    def test_hit_within_ttl(self, cache, clock):
        cache.set("k", [1, 2])
        clock.advance(59)
        assert cache.get("k") == [1, 2]
        assert "k" in cache

    def test_expired_entry_is_deleted_on_read(self, cache, clock):
        cache.set("k", "v")
        clock.advance(60)
        assert "k" not in cache
        assert cache.get("k") is None
        assert len(cache) == 0

    def test_hit_and_miss_counters(self, cache):
        cache.get("missing")
        cache.set("k", "v")
        cache.get("k")
        cache.get("k")
        stats = cache.get_stats()
        assert stats["hits"] == 2
        assert stats["misses"] == 1
        assert stats["hit_rate"] == pytest.approx(0.667)

    def test_evicts_oldest_when_full(self, cache):
        for key in ("a", "b", "c"):
            cache.set(key, key)
        cache.set("d", "d")
        assert cache.get("a") is None
        assert cache.get("d") == "d"
        assert len(cache) == 3

    def test_overwrite_refreshes_timestamp(self, cache, clock):
        cache.set("k", "old")
        clock.advance(50)
        cache.set("k", "new")
        clock.advance(50)
        assert cache.get("k") == "new"


class TestInvalidation:
    def test_delete(self, cache):
        cache.set("k", "v")
        assert cache.delete("k") is True
        assert cache.delete("k") is False

    def test_clear(self, cache):
        cache.set("a", 1)
        cache.set("b", 2)
        assert cache.clear() == 2
        assert len(cache) == 0

    def test_clear_table(self, cache):
        cache.set(QueryCache.generate_key("bookings", "list", {"page": 1}), 1)
        cache.set(QueryCache.generate_key("bookings", "stats"), 2)
        cache.set(QueryCache.generate_key("cars", "list"), 3)
        assert cache.clear_table("bookings") == 2
        assert cache.get_stats()["keys"] == ["cars:list:{}"]
