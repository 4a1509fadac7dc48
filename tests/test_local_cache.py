import pytest

from quotaguard.local_cache import LocalCache, LocalCacheStats
from quotaguard.stats import StatsStore


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def test_set_then_get_round_trip():
    cache = LocalCache()
    cache.set("key", b"value", 100)
    assert cache.get("key") == b"value"
    assert "key" in cache


def test_empty_value_round_trip():
    cache = LocalCache()
    cache.set("domain_key_value_1234", b"", 60)
    assert cache.get("domain_key_value_1234") == b""


def test_missing_key_raises_key_error():
    cache = LocalCache()
    with pytest.raises(KeyError):
        cache.get("domain_key_value_1234")
    assert cache.miss_count == 1
    assert cache.hit_count == 0


def test_entry_expires_after_ttl():
    clock = FakeClock()
    cache = LocalCache(clock=clock)
    cache.set("key", b"v", 10)
    clock.now += 9
    assert cache.get("key") == b"v"
    clock.now += 1
    with pytest.raises(KeyError):
        cache.get("key")
    assert cache.expired_count == 1
    assert cache.entry_count == 0


def test_non_positive_ttl_never_expires():
    clock = FakeClock()
    cache = LocalCache(clock=clock)
    cache.set("key", b"v", 0)
    clock.now += 10**9
    assert cache.get("key") == b"v"


def test_lookup_count_is_hits_plus_misses():
    cache = LocalCache()
    cache.set("a", b"x", 100)
    cache.get("a")
    cache.get("a")
    with pytest.raises(KeyError):
        cache.get("b")
    assert cache.lookup_count == cache.hit_count + cache.miss_count
    assert cache.hit_count > cache.miss_count


def test_overwrite_keeps_single_entry():
    cache = LocalCache()
    cache.set("a", b"old", 100)
    cache.set("a", b"new", 100)
    assert cache.get("a") == b"new"
    assert cache.entry_count == len(cache)
    assert cache.overwrite_count == len(cache)


def test_full_cache_evacuates_least_recently_used():
    cache = LocalCache(max_entries=2)
    cache.set("a", b"1", 100)
    cache.set("b", b"2", 100)
    cache.get("a")
    cache.set("c", b"3", 100)
    assert "b" not in cache
    assert cache.get("a") == b"1"
    assert cache.get("c") == b"3"
    assert cache.entry_count == cache.max_entries
    assert cache.evacuate_count == cache.entry_count - cache.evacuate_count


def test_invalid_size_rejected():
    with pytest.raises(ValueError):
        LocalCache(max_entries=0)


def test_generate_stats_publishes_gauges():
    cache = LocalCache()
    store = StatsStore()
    stats = LocalCacheStats(cache, store.scope("localcache"))
    cache.set("key", b"", 100)
    cache.get("key")
    with pytest.raises(KeyError):
        cache.get("other")
    stats.generate_stats()
    assert store.new_gauge("localcache.hitCount").value() == cache.hit_count
    assert store.new_gauge("localcache.missCount").value() == cache.miss_count
    assert store.new_gauge("localcache.lookupCount").value() == cache.lookup_count
    assert store.new_gauge("localcache.entryCount").value() == cache.entry_count
    assert store.new_gauge("localcache.expiredCount").value() == cache.expired_count
    assert store.new_gauge("localcache.evacuateCount").value() == cache.evacuate_count
    assert store.new_gauge("localcache.overwriteCount").value() == cache.overwrite_count
    assert (
        store.new_gauge("localcache.averageAccessTime").value() == cache.average_access_time
    )