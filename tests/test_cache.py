import asyncio

import pytest

from cohost.services.cache_service import ResponseCache, ResponseCandidate, fingerprint
from fakes import FakeClock

CANDIDATE = ResponseCandidate(text="The WiFi network is BeachHouse.", source_template_id="wifi@1")


class TestFingerprint:
    def test_stable_across_variable_order(self):
        first = fingerprint("prop-1", 1, "wifi", {"a": "1", "b": "2"}, "wifi@1")
        second = fingerprint("prop-1", 1, "wifi", {"b": "2", "a": "1"}, "wifi@1")
        assert first == second

    @pytest.mark.parametrize(
        "changed",
        [
            ("prop-2", 1, "wifi", {"a": "1"}, "wifi@1"),
            ("prop-1", 2, "wifi", {"a": "1"}, "wifi@1"),
            ("prop-1", 1, "parking", {"a": "1"}, "wifi@1"),
            ("prop-1", 1, "wifi", {"a": "2"}, "wifi@1"),
            ("prop-1", 1, "wifi", {"a": "1"}, "wifi@2"),
        ],
    )
    def test_every_component_matters(self, changed):
        assert fingerprint("prop-1", 1, "wifi", {"a": "1"}, "wifi@1") != fingerprint(*changed)


class TestExpiry:
    def test_miss_after_ttl(self):
        clock = FakeClock()
        cache = ResponseCache(clock=clock)
        cache.store("k", CANDIDATE, ttl=60)

        clock.advance(59.999)
        assert cache.lookup("k") is not None

        clock.advance(0.002)
        assert cache.lookup("k") is None
        assert len(cache) == 0

    def test_expires_exactly_at_ttl(self):
        clock = FakeClock()
        cache = ResponseCache(clock=clock)
        cache.store("k", CANDIDATE, ttl=60)

        clock.advance(60)
        assert cache.lookup("k") is None

    def test_zero_ttl_is_never_stored(self):
        cache = ResponseCache(clock=FakeClock())
        assert cache.store("k", CANDIDATE, ttl=0) is None
        assert cache.lookup("k") is None

    def test_default_ttl(self):
        clock = FakeClock()
        cache = ResponseCache(default_ttl=10, clock=clock)
        entry = cache.store("k", CANDIDATE)
        assert entry.ttl == 10

    def test_hit_count(self):
        cache = ResponseCache(clock=FakeClock())
        cache.store("k", CANDIDATE, ttl=60)
        cache.lookup("k")
        assert cache.lookup("k").hit_count == 2


class TestBoundsAndInvalidation:
    def test_least_recently_used_is_evicted(self):
        cache = ResponseCache(max_entries=2, clock=FakeClock())
        cache.store("a", CANDIDATE, ttl=60)
        cache.store("b", CANDIDATE, ttl=60)
        cache.lookup("a")
        cache.store("c", CANDIDATE, ttl=60)

        assert cache.lookup("b") is None
        assert cache.lookup("a") is not None
        assert cache.lookup("c") is not None

    def test_expired_entries_go_first(self):
        clock = FakeClock()
        cache = ResponseCache(max_entries=2, clock=clock)
        cache.store("a", CANDIDATE, ttl=60)
        cache.store("short", CANDIDATE, ttl=1)
        clock.advance(2)
        cache.store("c", CANDIDATE, ttl=60)

        assert cache.lookup("a") is not None
        assert cache.lookup("c") is not None

    def test_invalidate_by_property(self):
        cache = ResponseCache(clock=FakeClock())
        cache.store("a", CANDIDATE, ttl=60, property_id="prop-1", template_id="wifi")
        cache.store("b", CANDIDATE, ttl=60, property_id="prop-2", template_id="wifi")

        assert cache.invalidate(property_id="prop-1") == 1
        assert cache.lookup("a") is None
        assert cache.lookup("b") is not None

    def test_invalidate_by_template(self):
        cache = ResponseCache(clock=FakeClock())
        cache.store("a", CANDIDATE, ttl=60, property_id="prop-1", template_id="wifi")
        cache.store("b", CANDIDATE, ttl=60, property_id="prop-2", template_id="wifi")
        cache.store("c", CANDIDATE, ttl=60, property_id="prop-2", template_id="parking")

        assert cache.invalidate(template_id="wifi") == 2
        assert len(cache) == 1

    def test_invalidate_needs_a_target(self):
        with pytest.raises(ValueError):
            ResponseCache().invalidate()


class TestSingleflight:
    def test_concurrent_misses_compute_once(self):
        calls = []

        async def scenario():
            cache = ResponseCache(clock=FakeClock())
            release = asyncio.Event()

            async def compute():
                calls.append(1)
                await release.wait()
                return CANDIDATE

            waiters = [asyncio.create_task(cache.get_or_compute("k", compute, ttl=60)) for _ in range(5)]
            await asyncio.sleep(0)
            release.set()
            results = await asyncio.gather(*waiters)
            return cache, results

        cache, results = asyncio.run(scenario())

        assert len(calls) == 1
        assert all(candidate is CANDIDATE for candidate, _ in results)
        assert cache.stats()["computations"] == 1
        assert cache.stats()["inflight"] == 0
        assert cache.lookup("k").response_candidate is CANDIDATE

    def test_second_lookup_is_a_hit(self):
        async def scenario():
            cache = ResponseCache(clock=FakeClock())

            async def compute():
                return CANDIDATE

            first = await cache.get_or_compute("k", compute, ttl=60)
            second = await cache.get_or_compute("k", compute, ttl=60)
            return first, second

        first, second = asyncio.run(scenario())
        assert first == (CANDIDATE, False)
        assert second == (CANDIDATE, True)

    def test_invalidation_during_flight_skips_store(self):
        async def scenario():
            cache = ResponseCache(clock=FakeClock())
            release = asyncio.Event()

            async def compute():
                await release.wait()
                return CANDIDATE

            waiter = asyncio.create_task(cache.get_or_compute("k", compute, ttl=60, property_id="prop-1"))
            await asyncio.sleep(0)
            cache.invalidate(property_id="prop-1")
            release.set()
            candidate, _ = await waiter
            return cache, candidate

        cache, candidate = asyncio.run(scenario())
        assert candidate is CANDIDATE
        assert cache.lookup("k") is None

    def test_store_needs_one_current_waiter(self):
        async def scenario():
            cache = ResponseCache(clock=FakeClock())

            async def compute():
                await asyncio.sleep(0.01)
                return CANDIDATE

            stale = asyncio.create_task(cache.get_or_compute("k", compute, ttl=60, should_store=lambda: False))
            current = asyncio.create_task(cache.get_or_compute("k", compute, ttl=60, should_store=lambda: True))
            await asyncio.gather(stale, current)
            return cache

        assert asyncio.run(scenario()).lookup("k") is not None

    def test_no_store_when_every_waiter_is_superseded(self):
        async def scenario():
            cache = ResponseCache(clock=FakeClock())

            async def compute():
                return CANDIDATE

            await cache.get_or_compute("k", compute, ttl=60, should_store=lambda: False)
            return cache

        assert asyncio.run(scenario()).lookup("k") is None

    def test_cancelled_waiter_does_not_cancel_computation(self):
        async def scenario():
            cache = ResponseCache(clock=FakeClock())
            release = asyncio.Event()

            async def compute():
                await release.wait()
                return CANDIDATE

            cancelled = asyncio.create_task(cache.get_or_compute("k", compute, ttl=60))
            survivor = asyncio.create_task(cache.get_or_compute("k", compute, ttl=60))
            await asyncio.sleep(0)
            cancelled.cancel()
            release.set()
            candidate, _ = await survivor
            await asyncio.gather(cancelled, return_exceptions=True)
            return cancelled, candidate

        cancelled, candidate = asyncio.run(scenario())
        assert cancelled.cancelled() is True
        assert candidate is CANDIDATE

    def test_failure_reaches_every_waiter(self):
        async def scenario():
            cache = ResponseCache(clock=FakeClock())

            async def compute():
                await asyncio.sleep(0.01)
                raise RuntimeError("backend down")

            waiters = [asyncio.create_task(cache.get_or_compute("k", compute, ttl=60)) for _ in range(3)]
            results = await asyncio.gather(*waiters, return_exceptions=True)
            return cache, results

        cache, results = asyncio.run(scenario())
        assert all(isinstance(result, RuntimeError) for result in results)
        assert len(cache) == 0
        assert cache.stats()["inflight"] == 0
