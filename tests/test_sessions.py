from __future__ import annotations

import asyncio
import sys
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1]))

import pytest

from sheet_analyst.application.sessions import SessionCoordinator
from sheet_analyst.core.errors import SessionBusy, SessionClosed, SessionExpired


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_queued_requests_run_one_at_a_time_in_arrival_order():
    coordinator = SessionCoordinator(policy="queue")
    order: list[int] = []
    state = {"active": 0, "peak": 0}

    async def request(label: int) -> None:
        async with coordinator.session("chat-1"):
            state["active"] += 1
            state["peak"] = max(state["peak"], state["active"])
            order.append(label)
            await asyncio.sleep(0.01)
            state["active"] -= 1

    async def scenario():
        await asyncio.gather(*(request(label) for label in range(4)))

    asyncio.run(scenario())

    assert order == [0, 1, 2, 3]
    assert state["peak"] == 1
    assert coordinator.describe("chat-1")["state"] == "idle"


def test_reject_policy_refuses_a_second_concurrent_request():
    coordinator = SessionCoordinator(policy="reject")

    async def scenario():
        first = await coordinator.acquire("chat-1")
        with pytest.raises(SessionBusy):
            await coordinator.acquire("chat-1")
        coordinator.release(first)
        second = await coordinator.acquire("chat-1")
        coordinator.release(second)
        return second.sequence

    assert asyncio.run(scenario()) == 3


def test_full_queue_refuses_new_requests():
    coordinator = SessionCoordinator(policy="queue", max_queue=1)

    async def scenario():
        holder = await coordinator.acquire("chat-1")
        waiter = asyncio.create_task(coordinator.acquire("chat-1"))
        await asyncio.sleep(0)
        with pytest.raises(SessionBusy):
            await coordinator.acquire("chat-1")
        coordinator.release(holder)
        coordinator.release(await waiter)

    asyncio.run(scenario())


def test_different_chats_run_concurrently():
    coordinator = SessionCoordinator(policy="reject")

    async def scenario():
        first = await coordinator.acquire("chat-1")
        second = await coordinator.acquire("chat-2")
        assert coordinator.running_count("chat-1") == 1
        assert coordinator.running_count("chat-2") == 1
        coordinator.release(first)
        coordinator.release(second)

    asyncio.run(scenario())


def test_close_cancels_the_running_analysis_and_rejects_waiters():
    coordinator = SessionCoordinator()

    async def scenario():
        ticket = await coordinator.acquire("chat-1")
        running = asyncio.create_task(asyncio.sleep(10))
        coordinator.attach(ticket, running)
        waiter = asyncio.create_task(coordinator.acquire("chat-1"))
        await asyncio.sleep(0)

        assert coordinator.describe("chat-1")["queued"] == 1
        assert coordinator.close("chat-1") is True

        with pytest.raises(SessionClosed):
            await waiter
        with pytest.raises(asyncio.CancelledError):
            await running
        assert ticket.cancel_token.cancelled
        coordinator.release(ticket)

    asyncio.run(scenario())

    assert coordinator.describe("chat-1") is None
    assert coordinator.close("chat-1") is False


def test_cancelled_waiter_leaves_the_queue():
    coordinator = SessionCoordinator()

    async def scenario():
        holder = await coordinator.acquire("chat-1")
        waiter = asyncio.create_task(coordinator.acquire("chat-1"))
        await asyncio.sleep(0)
        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter
        assert coordinator.describe("chat-1")["queued"] == 0
        coordinator.release(holder)
        return coordinator.describe("chat-1")["state"]

    assert asyncio.run(scenario()) == "idle"


def test_idle_sessions_expire():
    clock = FakeClock()
    coordinator = SessionCoordinator(idle_ttl=10, clock=clock)

    async def scenario():
        ticket = await coordinator.acquire("chat-1")
        coordinator.release(ticket)

    asyncio.run(scenario())
    clock.now = 5
    assert coordinator.describe("chat-1")["idle_seconds"] == 5

    clock.now = 11
    with pytest.raises(SessionExpired):
        coordinator.describe("chat-1")
    assert coordinator.describe("chat-1") is None


def test_expired_session_is_recreated_on_next_request():
    clock = FakeClock()
    coordinator = SessionCoordinator(idle_ttl=10, clock=clock)

    async def scenario():
        coordinator.release(await coordinator.acquire("chat-1"))
        coordinator.release(await coordinator.acquire("chat-1"))
        clock.now = 20
        fresh = await coordinator.acquire("chat-1")
        coordinator.release(fresh)
        return fresh.sequence

    assert asyncio.run(scenario()) == 1


def test_expire_idle_sweeps_stale_sessions():
    clock = FakeClock()
    coordinator = SessionCoordinator(idle_ttl=10, clock=clock)

    async def scenario():
        coordinator.release(await coordinator.acquire("old"))
        clock.now = 8
        coordinator.release(await coordinator.acquire("recent"))

    asyncio.run(scenario())
    clock.now = 12

    assert coordinator.expire_idle() == ["old"]
    assert coordinator.describe("recent")["state"] == "idle"
