"""
Tests for the record cache.
"""

import pytest

from lognexus.core.cache import TTLCache, record_cache_key


class TestTTLCache:
    """Expiry and bounded size."""

    def test_get_and_set(self, monotonic):
        cache = TTLCache(max_size=10, ttl_ms=1000, clock=monotonic)
        cache.set("a", 1)
        assert cache.get("a") == 1
        assert cache.get("missing") is None

    def test_entry_expires_at_ttl(self, monotonic):
        cache = TTLCache(max_size=10, ttl_ms=1000, clock=monotonic)
        cache.set("a", 1)

        monotonic.advance(0.999)
        assert cache.get("a") == 1

        monotonic.advance(0.001)
        assert cache.get("a") is None
        assert len(cache) == 0

    def test_access_does_not_extend_ttl(self, monotonic):
        cache = TTLCache(max_size=10, ttl_ms=1000, clock=monotonic)
        cache.set("a", 1)
        monotonic.advance(0.6)
        cache.get("a")
        monotonic.advance(0.6)
        assert cache.get("a") is None

    def test_evicts_least_recently_used(self, monotonic):
        cache = TTLCache(max_size=2, ttl_ms=60000, clock=monotonic)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.get("a")
        cache.set("c", 3)

        assert cache.get("b") is None
        assert cache.get("a") == 1
        assert cache.get("c") == 3
        assert cache.evictions == 1

    def test_cleanup_expired(self, monotonic):
        cache = TTLCache(max_size=10, ttl_ms=1000, clock=monotonic)
        cache.set("a", 1)
        monotonic.advance(0.5)
        cache.set("b", 2)
        monotonic.advance(0.6)

        assert cache.cleanup_expired() == 1
        assert cache.get("b") == 2

    def test_resize_drops_oldest(self, monotonic):
        cache = TTLCache(max_size=3, ttl_ms=60000, clock=monotonic)
        for key in "abc":
            cache.set(key, key)

        cache.resize(1)

        assert len(cache) == 1
        assert cache.get("c") == "c"

    def test_invalid_size(self):
        with pytest.raises(ValueError):
            TTLCache(max_size=0)


class TestRecordCacheKey:
    """Cache identity of a record."""

    def test_key_uses_message_prefix(self, make_record):
        first = make_record(level="ERROR", message="x" * 50 + " request 1")
        second = make_record(level="ERROR", message="x" * 50 + " request 2")
        assert record_cache_key(first) == record_cache_key(second)

    def test_key_distinguishes_level_and_service(self, make_record):
        assert record_cache_key(make_record(level="ERROR")) != record_cache_key(make_record(level="INFO"))
        assert record_cache_key(make_record(service="a")) != record_cache_key(make_record(service="b"))
