import asyncio
import threading

import pytest

from sitemaps.utils.cache import FALLBACK, PRIMARY, ResponseCache, ServiceAvailabilityCache
from sitemaps.utils.limits import FetchLimiter, RequestRateLimiter


class TestServiceAvailabilityCache:

    def test_key_rounds_to_four_decimals(self):
        a = ServiceAvailabilityCache.make_key(151.000049, -33.00001, 0.0130001)
        b = ServiceAvailabilityCache.make_key(151.00001, -33.000044, 0.013)
        assert a == b == "151.0000_-33.0000_0.0130"

    def test_get_set_clear(self):
        cache = ServiceAvailabilityCache()
        key = cache.make_key(151.0, -33.0, 0.01)
        assert cache.get_service_type(key) is None

        cache.set_service_type(key, FALLBACK)
        assert cache.get_service_type(key) == FALLBACK
        cache.set_service_type(key, PRIMARY)
        assert cache.get_service_type(key) == PRIMARY
        assert len(cache) == 1

        cache.clear()
        assert cache.get_service_type(key) is None
        assert cache.get_stats()['size'] == 0

    def test_rejects_unknown_service_type(self):
        with pytest.raises(ValueError):
            ServiceAvailabilityCache().set_service_type("k", "secondary")

    def test_concurrent_writers(self):
        cache = ServiceAvailabilityCache()

        def writer(offset):
            for i in range(200):
                cache.set_service_type(cache.make_key(offset, i, 0.01), PRIMARY)

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        assert len(cache) == 800


class TestResponseCache:

    def test_keys_ignore_dict_order(self):
        cache = ResponseCache(ttl=60)
        cache.set({'theme': 'ptal', 'body': {'a': 1, 'b': 2}}, "value")
        assert cache.get({'body': {'b': 2, 'a': 1}, 'theme': 'ptal'}) == "value"
        assert cache.get({'theme': 'flood', 'body': {'a': 1, 'b': 2}}) is None

        stats = cache.get_stats()
        assert stats['hits'] == 1
        assert stats['misses'] == 1


class TestRequestRateLimiter:

    def test_blocks_after_limit(self):
        limiter = RequestRateLimiter(max_requests=2, window_seconds=60)
        assert limiter.is_allowed("1.2.3.4")
        assert limiter.is_allowed("1.2.3.4")
        assert not limiter.is_allowed("1.2.3.4")
        assert limiter.is_allowed("5.6.7.8")

        limiter.reset()
        assert limiter.is_allowed("1.2.3.4")


class TestFetchLimiter:

    def test_rejects_zero_limits(self):
        with pytest.raises(ValueError):
            FetchLimiter(0, 1)

    def test_per_host_cap(self):
        """No more than ``per_host`` fetches to one host are in flight at once."""
        async def scenario():
            limiter = FetchLimiter(max_concurrent=8, per_host=2)
            active = {"a.example": 0, "b.example": 0}
            peaks = {"a.example": 0, "b.example": 0}

            async def fetch(host):
                async with limiter.slot(f"https://{host}/MapServer/export"):
                    active[host] += 1
                    peaks[host] = max(peaks[host], active[host])
                    await asyncio.sleep(0.01)
                    active[host] -= 1

            await asyncio.gather(*(fetch(host) for host in ["a.example"] * 5 + ["b.example"] * 5))
            return peaks

        peaks = asyncio.run(scenario())
        assert peaks == {"a.example": 2, "b.example": 2}

    def test_global_cap(self):
        async def scenario():
            limiter = FetchLimiter(max_concurrent=3, per_host=3)
            state = {"active": 0, "peak": 0}

            async def fetch(n):
                async with limiter.slot(f"https://host{n}.example/query"):
                    state["active"] += 1
                    state["peak"] = max(state["peak"], state["active"])
                    await asyncio.sleep(0.01)
                    state["active"] -= 1

            await asyncio.gather(*(fetch(n) for n in range(10)))
            return state["peak"]

        assert asyncio.run(scenario()) == 3

    def test_busy_host_does_not_stall_others(self):
        """Fetches queued for one host hold no global slot while they wait."""
        async def scenario():
            limiter = FetchLimiter(max_concurrent=2, per_host=1)
            finished = []

            async def fetch(host):
                async with limiter.slot(f"https://{host}/MapServer/export"):
                    await asyncio.sleep(0.05)
                finished.append(host)

            await asyncio.gather(*(fetch(host) for host in ["a.example"] * 5 + ["b.example"]))
            return finished

        finished = asyncio.run(scenario())
        assert "b.example" in finished[:2]
        assert finished.count("a.example") == 5
