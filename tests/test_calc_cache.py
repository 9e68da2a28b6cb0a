import threading
from datetime import datetime, timedelta, timezone

import pytest

from calc_cache import BoundedCache, CalculationCache
from propagator import compute_look_angle, to_epoch_ms


def test_bounded_cache_evicts_oldest_insert():
    cache = BoundedCache(2)
    cache.put("a", 1)
    cache.put("b", 2)
    cache.put("a", 99)          # existing key: ignored, keeps its slot
    cache.put("c", 3)
    assert "a" not in cache
    assert cache.keys() == ["b", "c"]
    assert cache.get("b") == 2
    assert len(cache) == 2


def test_bounded_cache_rejects_zero_size():
    with pytest.raises(ValueError):
        BoundedCache(0)


def test_concurrent_inserts_of_distinct_keys():
    cache = BoundedCache(10_000)

    def insert(prefix):
        for i in range(100):
            cache.put(f"{prefix}-{i}", i)

    threads = [threading.Thread(target=insert, args=(n,)) for n in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len(cache) == 800
    assert cache.get("7-99") == 99


def test_cached_and_uncached_results_identical(iss, observer, start_time):
    cache = CalculationCache()
    for i in range(20):
        when = start_time + timedelta(minutes=3 * i)
        uncached = compute_look_angle(iss, observer, when)
        cached_first = compute_look_angle(iss, observer, when, cache)
        cached_again = compute_look_angle(iss, observer, when, cache)
        assert cached_first == uncached
        assert cached_again == uncached


def test_look_angle_key_format(iss, observer):
    cache = CalculationCache()
    when = datetime(2024, 5, 7, 0, 0, 45, tzinfo=timezone.utc)
    bucket = (to_epoch_ms(when) // 30_000) * 30_000
    assert cache.look_angle_key(25544, observer, when) == f"25544-44.9583-20.4167-{bucket}"
    assert cache.satrec_key(iss) == f"25544-{to_epoch_ms(iss.epoch)}"


def test_same_bucket_hits_cache(iss, observer, start_time):
    cache = CalculationCache()
    first = cache.look_angle(iss, observer, start_time)
    second = cache.look_angle(iss, observer, start_time + timedelta(seconds=10))
    assert second is first
    stats = cache.stats()
    assert stats["look_angle_cache_size"] == 1
    assert stats["satrec_cache_size"] == 1
    assert stats["hits"] == 1


def test_satrec_parsed_once_per_epoch(iss, iss_old):
    cache = CalculationCache()
    assert cache.satrec(iss) is cache.satrec(iss)
    assert cache.satrec(iss_old) is not cache.satrec(iss)
    assert cache.stats()["satrec_cache_size"] == 2


def test_size_bounds(iss, observer, start_time):
    cache = CalculationCache(look_angle_size=5)
    for i in range(12):
        cache.look_angle(iss, observer, start_time + timedelta(minutes=i))
    assert cache.stats()["look_angle_cache_size"] == 5


def test_failed_insert_is_swallowed(caplog):
    CalculationCache._safe_put(BoundedCache(1), ["unhashable"], object())
    assert "failed" in caplog.text


def test_clear_resets_everything(iss, observer, start_time):
    cache = CalculationCache()
    cache.look_angle(iss, observer, start_time)
    cache.clear()
    stats = cache.stats()
    assert stats["hits"] == stats["misses"] == 0
    assert stats["look_angle_cache_size"] == 0
    assert stats["hit_rate_pct"] == 0.0
