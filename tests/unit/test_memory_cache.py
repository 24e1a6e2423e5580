"""
Unit tests for the size-bounded LRU response cache.
"""

import asyncio

import pytest
from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st

from hybridcrawl.cache import MemoryCache, cache_key, estimate_size
from hybridcrawl.cache.memory_cache import ENTRY_OVERHEAD
from hybridcrawl.observability import METRICS
from hybridcrawl.protocols import PageData
from tests.helpers.metrics import metric_delta


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_page(url: str, html_size: int = 0) -> PageData:
    return PageData(url=url, status_code=200, html="x" * html_size)


@pytest.mark.unit
class TestCacheKey:
    def test_default_selector_shares_url_key(self):
        assert cache_key("https://example.com/") == "https://example.com/"
        assert cache_key("https://example.com/", "body") == "https://example.com/"

    def test_custom_selector_is_part_of_key(self):
        assert cache_key("https://example.com/", "h1") == "https://example.com/::h1"

    def test_namespace_separates_renderings(self):
        assert cache_key("https://example.com/", "body", "spa") == "spa:https://example.com/"
        assert cache_key("https://example.com/", "h1", "auto") == "auto:https://example.com/::h1"
        assert cache_key("https://example.com/", "", "spa") != cache_key("https://example.com/")

    def test_estimate_size_counts_utf8_bytes(self):
        page = PageData(url="u", html="é", content="ab", title="c")
        assert estimate_size(page) == 2 + 2 + 1 + ENTRY_OVERHEAD


@pytest.mark.unit
class TestMemoryCacheBasics:
    def test_set_then_get(self, memory_cache, sample_page):
        memory_cache.set("k", sample_page, 60)

        data, found = memory_cache.get("k")

        assert found is True
        assert data is sample_page

    def test_missing_key_is_miss(self, memory_cache):
        data, found = memory_cache.get("missing")

        assert data is None
        assert found is False
        assert memory_cache.stats()["misses"] == 1

    def test_replacing_key_keeps_accounting_exact(self, memory_cache):
        memory_cache.set("k", make_page("a", 100), 60)
        memory_cache.set("k", make_page("a", 300), 60)

        assert len(memory_cache) == 1
        assert memory_cache.size_bytes == 300 + ENTRY_OVERHEAD

    def test_delete(self, memory_cache, sample_page):
        memory_cache.set("k", sample_page, 60)
        memory_cache.delete("k")

        assert "k" not in memory_cache
        assert memory_cache.size_bytes == 0

    def test_clear_resets_size_and_counters(self, memory_cache, sample_page):
        memory_cache.set("a", sample_page, 60)
        memory_cache.set("b", sample_page, 60)
        memory_cache.get("a")
        memory_cache.get("zzz")

        memory_cache.clear()

        stats = memory_cache.stats()
        assert stats["entries"] == 0
        assert stats["size_bytes"] == 0
        assert stats["hits"] == 0
        assert stats["misses"] == 0

    def test_hit_updates_metric(self, memory_cache, sample_page):
        memory_cache.set("k", sample_page, 60)
        with metric_delta(METRICS["cache_hits"], 1):
            memory_cache.get("k")

    def test_stats_hit_rate(self, memory_cache, sample_page):
        memory_cache.set("k", sample_page, 60)
        memory_cache.get("k")
        memory_cache.get("other")

        stats = memory_cache.stats()
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["hit_rate"] == pytest.approx(50.0)


@pytest.mark.unit
class TestMemoryCacheEviction:
    def test_lru_entry_is_evicted_first(self):
        entry = 1000 + ENTRY_OVERHEAD
        cache = MemoryCache(entry * 3, start_sweeper=False)
        try:
            cache.set("a", make_page("a", 1000), 60)
            cache.set("b", make_page("b", 1000), 60)
            cache.set("c", make_page("c", 1000), 60)

            # Touch "a" so "b" becomes least recently used
            cache.get("a")
            cache.set("d", make_page("d", 1000), 60)

            assert "a" in cache
            assert "b" not in cache
            assert "c" in cache
            assert "d" in cache
            assert cache.size_bytes <= cache.max_size
        finally:
            cache.close()

    def test_oversize_entry_is_rejected(self):
        cache = MemoryCache(2048, start_sweeper=False)
        try:
            cache.set("small", make_page("s", 10), 60)
            cache.set("huge", make_page("h", 10_000), 60)

            assert "huge" not in cache
            assert "small" in cache
            assert cache.size_bytes <= 2048
        finally:
            cache.close()

    def test_oversize_replacement_drops_old_entry(self):
        cache = MemoryCache(2048, start_sweeper=False)
        try:
            cache.set("k", make_page("k", 10), 60)
            cache.set("k", make_page("k", 10_000), 60)

            assert "k" not in cache
            assert cache.size_bytes == 0
        finally:
            cache.close()

    @settings(max_examples=50, deadline=None, suppress_health_check=[HealthCheck.function_scoped_fixture])
    @given(
        sizes=st.lists(st.integers(min_value=0, max_value=6000), min_size=1, max_size=40),
        keys=st.lists(st.integers(min_value=0, max_value=9), min_size=1, max_size=40),
    )
    def test_accounted_size_never_exceeds_max(self, sizes, keys):
        cache = MemoryCache(8 * 1024, start_sweeper=False)
        try:
            for i, size in enumerate(sizes):
                key = f"k{keys[i % len(keys)]}"
                cache.set(key, make_page(key, size), 60)
                assert 0 <= cache.size_bytes <= cache.max_size
                assert cache.size_bytes == sum(e.size for e in cache._entries.values())
        finally:
            cache.close()


@pytest.mark.unit
class TestMemoryCacheExpiry:
    def test_expired_entry_is_miss(self):
        clock = FakeClock()
        cache = MemoryCache(1024 * 1024, start_sweeper=False, clock=clock)
        try:
            cache.set("k", make_page("k", 10), 5)
            clock.advance(5.1)

            data, found = cache.get("k")

            assert found is False
            assert data is None
            # No running loop here, so the expired entry is removed inline
            assert "k" not in cache
        finally:
            cache.close()

    def test_non_positive_ttl_uses_default(self):
        clock = FakeClock()
        cache = MemoryCache(1024 * 1024, start_sweeper=False, clock=clock)
        try:
            cache.set("k", make_page("k", 10), 0)
            clock.advance(299)
            assert cache.get("k")[1] is True
            clock.advance(2)
            assert cache.get("k")[1] is False
        finally:
            cache.close()

    def test_sweep_expired_removes_only_expired(self):
        clock = FakeClock()
        cache = MemoryCache(1024 * 1024, start_sweeper=False, clock=clock)
        try:
            cache.set("short", make_page("s", 10), 1)
            cache.set("long", make_page("l", 10), 100)
            clock.advance(2)

            removed = cache.sweep_expired()

            assert removed == 1
            assert "short" not in cache
            assert "long" in cache
            assert cache.size_bytes == 10 + ENTRY_OVERHEAD
        finally:
            cache.close()

    @pytest.mark.asyncio
    async def test_expired_entry_removed_asynchronously_under_loop(self):
        clock = FakeClock()
        cache = MemoryCache(1024 * 1024, start_sweeper=False, clock=clock)
        try:
            cache.set("k", make_page("k", 10), 1)
            clock.advance(2)

            assert cache.get("k") == (None, False)
            await asyncio.sleep(0)

            assert "k" not in cache
        finally:
            cache.close()

    def test_close_is_idempotent_with_sweeper(self):
        cache = MemoryCache(1024, sweep_interval=0.01)
        cache.close()
        cache.close()
