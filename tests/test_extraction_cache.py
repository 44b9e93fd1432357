"""
Tests for ExtractionCache
==========================
LRU, TTL, integrity checks and in-flight de-duplication.
"""

import threading
import time

import pytest

from vat_extraction.cache import ExtractionCache
from vat_extraction.model_inference import Engine, ExtractionResult
from vat_extraction.utils.exceptions import CacheError


def make_result(total=111.36, **metadata):
    return ExtractionResult(
        purchase_amounts=(total,),
        confidence=0.9,
        engine=Engine.VISION,
        compliant=True,
        metadata=dict(metadata),
    )


def wait_until(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class TestLruAndStats:

    def test_least_recently_used_is_evicted(self):
        cache = ExtractionCache(max_size=3)
        for key in ("a", "b", "c"):
            cache.set(key, make_result())

        cache.get("a")
        cache.set("d", make_result())

        assert len(cache) == 3
        assert cache.contains("a")
        assert not cache.contains("b")
        assert cache.stats().evictions == 1

    def test_hit_rate(self):
        cache = ExtractionCache(max_size=3)
        cache.set("a", make_result())

        for _ in range(3):
            assert cache.get("a") is not None
        assert cache.get("x") is None
        assert cache.get("y") is None

        stats = cache.stats()
        assert (stats.hits, stats.misses) == (3, 2)
        assert stats.hit_rate == pytest.approx(0.6)
        assert stats.to_dict()["hit_rate"] == 0.6

    def test_replacing_an_entry_keeps_memory_consistent(self):
        cache = ExtractionCache(max_size=3)
        cache.set("a", make_result(1.0))
        cache.set("a", make_result(2.0))

        assert len(cache) == 1
        assert cache.get("a").purchase_amounts == (2.0,)
        assert cache.stats().memory_bytes == cache.get("a").estimated_size()

    def test_delete(self):
        cache = ExtractionCache(max_size=3)
        cache.set("a", make_result())

        assert cache.delete("a") is True
        assert cache.delete("a") is False
        assert cache.get("a") is None

    def test_only_results_are_cached(self):
        cache = ExtractionCache(max_size=3)
        with pytest.raises(CacheError):
            cache.set("a", {"purchase_amounts": [1.0]})


class TestExpiry:

    def test_entry_expires_after_ttl(self, clock):
        cache = ExtractionCache(max_size=3, ttl_seconds=60, clock=clock)
        cache.set("a", make_result())

        clock.advance(59)
        assert cache.get("a") is not None

        clock.advance(1)
        assert cache.get("a") is None
        assert cache.stats().expirations == 1

    def test_per_entry_ttl_and_sweep(self, clock):
        cache = ExtractionCache(max_size=3, ttl_seconds=60, clock=clock)
        cache.set("a", make_result())
        cache.set("b", make_result(), ttl=10)

        clock.advance(20)

        assert cache.sweep() == 1
        assert cache.contains("a")
        assert not cache.contains("b")

    def test_background_sweeper(self, clock):
        cache = ExtractionCache(max_size=3, ttl_seconds=1, sweep_interval=0.01, clock=clock)
        cache.set("a", make_result())
        clock.advance(5)

        cache.start()
        try:
            assert wait_until(lambda: len(cache) == 0)
        finally:
            cache.shutdown()


class TestIntegrity:

    def test_corrupt_entry_is_dropped(self):
        errors = []
        cache = ExtractionCache(max_size=3, on_error=errors.append)
        result = make_result()
        cache.set("a", result)

        result.metadata["tampered"] = 1

        assert cache.get("a") is None
        assert not cache.contains("a")
        stats = cache.stats()
        assert stats.errors == 1
        assert stats.misses == 1
        assert len(errors) == 1
        assert isinstance(errors[0], CacheError)


class TestMemoryBudget:

    def test_memory_budget_evicts(self):
        size = make_result().estimated_size()
        cache = ExtractionCache(max_size=10, max_memory_bytes=2 * size + 1)

        for key in ("a", "b", "c"):
            cache.set(key, make_result())

        assert len(cache) == 2
        assert not cache.contains("a")
        assert cache.stats().memory_bytes <= 2 * size + 1

    def test_oversized_result_is_not_cached(self):
        size = make_result().estimated_size()
        cache = ExtractionCache(max_size=10, max_memory_bytes=size - 1)

        cache.set("a", make_result())

        assert len(cache) == 0


class TestGetOrCompute:

    def test_computes_once_then_serves_from_cache(self):
        cache = ExtractionCache(max_size=3)
        calls = []

        def compute():
            calls.append(1)
            return make_result()

        first, cached_first = cache.get_or_compute("a", compute)
        second, cached_second = cache.get_or_compute("a", compute)

        assert (cached_first, cached_second) == (False, True)
        assert first == second
        assert len(calls) == 1

    def test_force_recomputes(self):
        cache = ExtractionCache(max_size=3)
        cache.set("a", make_result(1.0))

        result, cached = cache.get_or_compute("a", lambda: make_result(2.0), force=True)

        assert not cached
        assert result.purchase_amounts == (2.0,)
        assert cache.get("a").purchase_amounts == (2.0,)

    def test_concurrent_callers_share_one_computation(self):
        cache = ExtractionCache(max_size=3)
        release = threading.Event()
        calls = []
        results = []

        def compute():
            calls.append(1)
            release.wait(5)
            return make_result()

        def worker():
            results.append(cache.get_or_compute("a", compute))

        threads = [threading.Thread(target=worker) for _ in range(5)]
        for thread in threads:
            thread.start()
        assert wait_until(lambda: cache.stats().deduplicated == 4)
        release.set()
        for thread in threads:
            thread.join(5)

        assert len(calls) == 1
        assert len(results) == 5
        assert all(result == results[0][0] for result, _ in results)
        assert cache.stats().in_flight == 0

    def test_failure_reaches_every_waiter_and_is_not_cached(self):
        cache = ExtractionCache(max_size=3)
        release = threading.Event()
        errors = []

        def compute():
            release.wait(5)
            raise ValueError("engine down")

        def worker():
            try:
                cache.get_or_compute("a", compute)
            except ValueError as e:
                errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(3)]
        for thread in threads:
            thread.start()
        assert wait_until(lambda: cache.stats().deduplicated == 2)
        release.set()
        for thread in threads:
            thread.join(5)

        assert len(errors) == 3
        assert not cache.contains("a")
        result, cached = cache.get_or_compute("a", make_result)
        assert not cached
        assert result.purchase_amounts == (111.36,)
