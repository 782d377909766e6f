# tests/test_search_cache.py
from cn_portal.search.cache import SearchCache, cached


class FakeClock:
    def __init__(self, start=0.0):
        self.now = start

    def __call__(self):
        return self.now


def test_get_set_and_expiry():
    clock = FakeClock()
    cache = SearchCache(ttl_seconds=10, clock=clock)
    cache.set("k", 1)
    assert cache.get("k") == 1
    clock.now = 9.9
    assert "k" in cache
    clock.now = 10.0
    assert cache.get("k") is None
    assert len(cache) == 0


def test_lru_eviction():
    cache = SearchCache(ttl_seconds=100, clock=FakeClock(), max_entries=2)
    cache.set("a", 1)
    cache.set("b", 2)
    cache.get("a")  # a is now most recent
    cache.set("c", 3)
    assert "a" in cache
    assert "b" not in cache
    assert "c" in cache


def test_evict_expired_and_clear():
    clock = FakeClock()
    cache = SearchCache(ttl_seconds=5, clock=clock)
    cache.set("old", 1)
    clock.now = 3
    cache.set("new", 2)
    clock.now = 6
    assert cache.evict_expired() == 1
    assert len(cache) == 1
    assert cache.invalidate("new") is True
    assert cache.invalidate("new") is False
    cache.set("x", 1)
    cache.clear()
    assert len(cache) == 0


def test_cached_helper_reports_hits():
    calls = []

    def compute():
        calls.append(1)
        return 42

    cache = SearchCache(ttl_seconds=60, clock=FakeClock())
    assert cached(cache, "q", compute) == (42, False)
    assert cached(cache, "q", compute) == (42, True)
    assert len(calls) == 1
    # no cache: always compute
    assert cached(None, "q", compute) == (42, False)
    assert len(calls) == 2


def test_falsy_values_are_cached():
    cache = SearchCache(ttl_seconds=60, clock=FakeClock())
    assert cached(cache, "zero", lambda: 0) == (0, False)
    assert cached(cache, "zero", lambda: 99) == (0, True)
