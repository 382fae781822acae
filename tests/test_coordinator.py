"""
Tests for RequestCoordinator: de-duplication, failure propagation and cancellation.
"""
import asyncio

import pytest

from console_sync.cache import RequestCoordinator
from console_sync.errors import RequestCancelledError


async def _settle(rounds: int = 20):
    for _ in range(rounds):
        await asyncio.sleep(0)


class GatedOperation:
    """Counts invocations and blocks until released."""

    def __init__(self, result=None, error=None):
        self.calls = 0
        self.gate = asyncio.Event()
        self.result = result if result is not None else {"ok": True}
        self.error = error

    async def __call__(self):
        self.calls += 1
        await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.result


@pytest.mark.asyncio
async def test_concurrent_runs_share_one_operation():
    """Two runs for the same key before the first resolves invoke op once"""
    coordinator = RequestCoordinator()
    op = GatedOperation()

    first = asyncio.create_task(coordinator.run("jobs:all", op))
    second = asyncio.create_task(coordinator.run("jobs:all", op))
    await _settle()

    assert coordinator.is_in_flight("jobs:all")
    assert coordinator.get_stats()["waiters"]["jobs:all"] == 1

    op.gate.set()
    r1, r2 = await asyncio.gather(first, second)

    assert op.calls == 1
    assert r1 is r2
    assert not coordinator.is_in_flight("jobs:all")
    assert coordinator.active_requests == 0


@pytest.mark.asyncio
async def test_different_keys_run_independently():
    coordinator = RequestCoordinator()
    op = GatedOperation()

    tasks = [
        asyncio.create_task(coordinator.run("stats", op)),
        asyncio.create_task(coordinator.run("health", op)),
    ]
    await _settle()
    op.gate.set()
    await asyncio.gather(*tasks)

    assert op.calls == 2


@pytest.mark.asyncio
async def test_rejection_reaches_all_callers_without_poisoning_key():
    coordinator = RequestCoordinator()
    failing = GatedOperation(error=ValueError("backend down"))

    tasks = [asyncio.create_task(coordinator.run("stats", failing)) for _ in range(3)]
    await _settle()
    failing.gate.set()
    results = await asyncio.gather(*tasks, return_exceptions=True)

    assert failing.calls == 1
    assert all(isinstance(r, ValueError) for r in results)
    assert results[0] is results[1] is results[2]

    async def ok():
        return "recovered"

    assert await coordinator.run("stats", ok) == "recovered"


@pytest.mark.asyncio
async def test_cancel_rejects_joined_callers_and_next_run_starts_fresh():
    coordinator = RequestCoordinator()
    op = GatedOperation()

    waiting = asyncio.create_task(coordinator.run("jobs:all", op))
    await _settle()

    assert coordinator.cancel("jobs:all") is True
    assert not coordinator.is_in_flight("jobs:all")
    assert coordinator.generation("jobs:all") == 1

    with pytest.raises(RequestCancelledError):
        await waiting

    fresh = GatedOperation(result={"fresh": True})
    task = asyncio.create_task(coordinator.run("jobs:all", fresh))
    await _settle()
    fresh.gate.set()

    assert await task == {"fresh": True}
    assert fresh.calls == 1


@pytest.mark.asyncio
async def test_cancel_without_request_still_bumps_generation():
    coordinator = RequestCoordinator()
    before = coordinator.generation("logs")

    assert coordinator.cancel("logs") is False
    assert not coordinator.is_current("logs", before)


@pytest.mark.asyncio
async def test_one_caller_going_away_does_not_cancel_others():
    coordinator = RequestCoordinator()
    op = GatedOperation()

    leaving = asyncio.create_task(coordinator.run("stats", op))
    staying = asyncio.create_task(coordinator.run("stats", op))
    await _settle()

    leaving.cancel()
    await _settle()
    assert coordinator.is_in_flight("stats")

    op.gate.set()
    assert await staying == {"ok": True}
    assert leaving.cancelled()


@pytest.mark.asyncio
async def test_last_caller_going_away_cancels_operation():
    coordinator = RequestCoordinator()
    op = GatedOperation()
    started = []

    async def operation():
        started.append(asyncio.current_task())
        return await op()

    callers = [asyncio.create_task(coordinator.run("stats", operation)) for _ in range(2)]
    await _settle()

    callers[0].cancel()
    await _settle()
    assert coordinator.is_in_flight("stats")

    callers[1].cancel()
    await _settle()

    assert not coordinator.is_in_flight("stats")
    assert started[0].cancelled()
    assert coordinator.generation("stats") == 0
    assert all(caller.cancelled() for caller in callers)


@pytest.mark.asyncio
async def test_cancel_all():
    coordinator = RequestCoordinator()
    op = GatedOperation()

    tasks = [
        asyncio.create_task(coordinator.run(key, op))
        for key in ("stats", "health", "logs")
    ]
    await _settle()

    assert coordinator.cancel_all() == 3
    results = await asyncio.gather(*tasks, return_exceptions=True)
    assert all(isinstance(r, RequestCancelledError) for r in results)
