from __future__ import annotations

import asyncio
import sys
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1]))

import pytest

from sheet_analyst.core.errors import CacheComputeError, PlannerUnavailable
from sheet_analyst.infrastructure.cache import SingleFlightCache


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_least_recently_used_entry_is_evicted():
    cache = SingleFlightCache("results", max_entries=2)
    cache.put("a", 1)
    cache.put("b", 2)
    assert cache.get("a") == 1

    cache.put("c", 3)

    assert cache.keys() == ["a", "c"]
    assert "b" not in cache
    assert cache.stats.evictions == 1


def test_cost_bound_evicts_until_within_capacity():
    cache = SingleFlightCache("tables", max_cost=10, cost_of=len)
    cache.put("a", "x" * 6)
    cache.put("b", "x" * 4)
    assert cache.total_cost == 10

    cache.put("c", "x" * 2)

    assert cache.keys() == ["b", "c"]
    assert cache.total_cost == 6


def test_oversized_values_are_not_stored():
    cache = SingleFlightCache("tables", max_cost=5, cost_of=len)
    cache.put("big", "x" * 50)
    assert len(cache) == 0


def test_entries_expire_after_ttl():
    clock = FakeClock()
    cache = SingleFlightCache("results", max_entries=4, ttl=5, clock=clock)
    cache.put("a", 1)

    clock.now = 4.9
    assert cache.get("a") == 1
    clock.now = 6
    assert cache.get("a") is None
    assert cache.stats.expirations == 1


def test_concurrent_callers_share_one_computation():
    cache = SingleFlightCache("tables", max_entries=4)
    calls = {"count": 0}

    async def scenario():
        release = asyncio.Event()

        async def compute():
            calls["count"] += 1
            await release.wait()
            return "value"

        tasks = [asyncio.create_task(cache.get_or_compute("key", compute)) for _ in range(5)]
        await asyncio.sleep(0)
        release.set()
        return await asyncio.gather(*tasks)

    results = asyncio.run(scenario())

    assert results == ["value"] * 5
    assert calls["count"] == 1
    assert cache.stats.computations == 1
    assert cache.get("key") == "value"


def test_distinct_keys_compute_in_parallel():
    cache = SingleFlightCache("tables", max_entries=4)

    async def scenario():
        both_started = asyncio.Event()
        started: list[str] = []

        def compute_for(key: str):
            async def compute():
                started.append(key)
                if len(started) == 2:
                    both_started.set()
                await asyncio.wait_for(both_started.wait(), timeout=1)
                return key.upper()

            return compute

        return await asyncio.gather(
            cache.get_or_compute("a", compute_for("a")),
            cache.get_or_compute("b", compute_for("b")),
        )

    assert asyncio.run(scenario()) == ["A", "B"]


def test_failed_computation_is_reported_to_waiters_and_not_cached():
    cache = SingleFlightCache("results", max_entries=4)

    async def scenario():
        release = asyncio.Event()

        async def failing():
            await release.wait()
            raise ValueError("boom")

        async def succeeding():
            return "recovered"

        leader = asyncio.create_task(cache.get_or_compute("key", failing))
        await asyncio.sleep(0)
        follower = asyncio.create_task(cache.get_or_compute("key", failing))
        await asyncio.sleep(0)
        release.set()
        outcomes = await asyncio.gather(leader, follower, return_exceptions=True)
        retried = await cache.get_or_compute("key", succeeding)
        return outcomes, retried

    (leader_outcome, follower_outcome), retried = asyncio.run(scenario())

    assert isinstance(leader_outcome, ValueError)
    assert isinstance(follower_outcome, CacheComputeError)
    assert isinstance(follower_outcome.cause, ValueError)
    assert retried == "recovered"


def test_waiters_see_the_same_pipeline_error_as_the_computing_caller():
    cache = SingleFlightCache("results", max_entries=4)

    async def scenario():
        release = asyncio.Event()

        async def unavailable():
            await release.wait()
            raise PlannerUnavailable("model endpoint down")

        leader = asyncio.create_task(cache.get_or_compute("key", unavailable))
        await asyncio.sleep(0)
        follower = asyncio.create_task(cache.get_or_compute("key", unavailable))
        await asyncio.sleep(0)
        release.set()
        return await asyncio.gather(leader, follower, return_exceptions=True)

    outcomes = asyncio.run(scenario())

    assert [type(outcome) for outcome in outcomes] == [PlannerUnavailable, PlannerUnavailable]
    assert [(outcome.code, outcome.http_status) for outcome in outcomes] == [("planner.unavailable", 503)] * 2
    assert cache.stats.computations == 1


def test_waiter_takes_over_when_the_computing_caller_is_cancelled():
    cache = SingleFlightCache("tables", max_entries=4)

    async def scenario():
        never = asyncio.Event()

        async def slow():
            await never.wait()
            return "first"

        async def fast():
            return "second"

        leader = asyncio.create_task(cache.get_or_compute("key", slow))
        await asyncio.sleep(0)
        follower = asyncio.create_task(cache.get_or_compute("key", fast))
        await asyncio.sleep(0)
        leader.cancel()
        return await asyncio.gather(leader, follower, return_exceptions=True)

    leader_outcome, follower_outcome = asyncio.run(scenario())

    assert isinstance(leader_outcome, asyncio.CancelledError)
    assert follower_outcome == "second"


def test_values_rejected_by_should_cache_are_returned_but_not_stored():
    cache = SingleFlightCache("results", max_entries=4)

    async def compute():
        return {"timed_out": True}

    value = asyncio.run(cache.get_or_compute("key", compute, should_cache=lambda result: not result["timed_out"]))

    assert value == {"timed_out": True}
    assert "key" not in cache


def test_cache_requires_a_bound():
    with pytest.raises(ValueError):
        SingleFlightCache("unbounded")
