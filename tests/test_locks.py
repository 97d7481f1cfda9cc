"""
Lock manager tests.

Mutual exclusion per key, canonical ordering, release on every exit path.
"""
import asyncio
from typing import List

import pytest

from seat_redemption.core.locks import (
    LockManager,
    LockReentryError,
    buyer_key,
    order_key,
    pool_key,
    resource_key,
)


@pytest.mark.unit
def test_canonical_keys_sorts_and_dedupes() -> None:
    keys = LockManager.canonical_keys(["resource:2", " pool:xhs ", "", "buyer:7", "pool:xhs"])
    assert keys == ["buyer:7", "pool:xhs", "resource:2"]


@pytest.mark.unit
def test_key_helpers() -> None:
    assert order_key("C1") == "order:C1"
    assert buyer_key("42") == "buyer:42"
    assert pool_key("xhs") == "pool:xhs"
    assert resource_key(3) == "resource:3"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_same_key_is_mutually_exclusive() -> None:
    locks = LockManager()
    timeline: List[str] = []

    async def worker(name: str) -> None:
        async with locks.hold("pool:common"):
            timeline.append(f"{name}:enter")
            await asyncio.sleep(0.01)
            timeline.append(f"{name}:exit")

    await asyncio.gather(worker("a"), worker("b"), worker("c"))

    for i in range(0, len(timeline), 2):
        name = timeline[i].split(":")[0]
        assert timeline[i] == f"{name}:enter"
        assert timeline[i + 1] == f"{name}:exit"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_different_keys_run_concurrently() -> None:
    locks = LockManager()
    inside = 0
    peak = 0

    async def worker(key: str) -> None:
        nonlocal inside, peak
        async with locks.hold(key):
            inside += 1
            peak = max(peak, inside)
            await asyncio.sleep(0.01)
            inside -= 1

    await asyncio.gather(worker("order:A"), worker("order:B"))
    assert peak == 2


@pytest.mark.unit
@pytest.mark.asyncio
async def test_overlapping_key_sets_do_not_deadlock() -> None:
    locks = LockManager()

    async def worker(first: str, second: str) -> str:
        async with locks.hold(first, second):
            await asyncio.sleep(0.005)
            return first

    results = await asyncio.wait_for(
        asyncio.gather(
            worker("pool:common", "buyer:1"),
            worker("buyer:1", "pool:common"),
        ),
        timeout=2,
    )
    assert sorted(results) == ["buyer:1", "pool:common"]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_reentry_on_held_key_raises() -> None:
    locks = LockManager()
    async with locks.hold("order:A"):
        with pytest.raises(LockReentryError):
            async with locks.hold("order:A"):
                pass
        # A different key from inside the section is fine
        async with locks.hold("resource:1") as held:
            assert held == ["resource:1"]
    assert not locks.is_held("order:A")


@pytest.mark.unit
@pytest.mark.asyncio
async def test_locks_released_when_body_raises() -> None:
    locks = LockManager()

    async def body() -> None:
        raise ValueError("boom")

    with pytest.raises(ValueError):
        await locks.with_locks(["order:A", "buyer:1"], body)

    assert not locks.is_held("order:A")
    assert not locks.is_held("buyer:1")
    assert locks.tracked_keys == 0


@pytest.mark.unit
@pytest.mark.asyncio
async def test_with_locks_returns_body_result() -> None:
    locks = LockManager()

    async def body() -> int:
        assert locks.is_held("order:A")
        return 42

    assert await locks.with_locks(["order:A"], body) == 42
    assert locks.tracked_keys == 0


@pytest.mark.unit
@pytest.mark.asyncio
async def test_cancelled_waiter_does_not_leak_lock() -> None:
    locks = LockManager()
    release = asyncio.Event()

    async def holder() -> None:
        async with locks.hold("order:A"):
            await release.wait()

    holding = asyncio.create_task(holder())
    await asyncio.sleep(0)

    async def waiter() -> None:
        async with locks.hold("order:A"):
            pass

    waiting = asyncio.create_task(waiter())
    await asyncio.sleep(0)
    waiting.cancel()
    with pytest.raises(asyncio.CancelledError):
        await waiting

    release.set()
    await holding
    assert locks.tracked_keys == 0
