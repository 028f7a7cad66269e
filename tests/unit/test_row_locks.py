# tests/unit/test_row_locks.py
from __future__ import annotations

import asyncio

import pytest

from medstock.db.row_locks import ItemKey, RowLockRegistry

A = ItemKey("amox-500", "pharmacy-main", "fac-1")
B = ItemKey("ibu-400", "pharmacy-main", "fac-1")


@pytest.mark.asyncio
async def test_opposite_acquisition_orders_do_not_deadlock():
    locks = RowLockRegistry()
    order: list[str] = []

    async def worker(name: str, keys):
        async with locks.hold(keys):
            order.append(name)
            await asyncio.sleep(0.01)

    await asyncio.wait_for(
        asyncio.gather(*(worker(f"w{i}", [A, B] if i % 2 else [B, A]) for i in range(10))),
        timeout=5,
    )
    assert len(order) == 10
    assert locks.held_count() == 0


@pytest.mark.asyncio
async def test_same_key_is_exclusive():
    locks = RowLockRegistry()
    inside = 0
    peak = 0

    async def worker():
        nonlocal inside, peak
        async with locks.hold([A]):
            inside += 1
            peak = max(peak, inside)
            await asyncio.sleep(0.005)
            inside -= 1

    await asyncio.gather(*(worker() for _ in range(8)))
    assert peak == 1


@pytest.mark.asyncio
async def test_distinct_keys_run_side_by_side():
    locks = RowLockRegistry()
    entered = asyncio.Event()

    async def first():
        async with locks.hold([A]):
            await asyncio.wait_for(entered.wait(), timeout=1)

    async def second():
        async with locks.hold([B]):
            entered.set()

    await asyncio.gather(first(), second())


@pytest.mark.asyncio
async def test_single_writer_serializes_distinct_keys():
    locks = RowLockRegistry(single_writer=True)
    assert locks.single_writer is True

    async with locks.hold([A]):
        waiter = asyncio.create_task(_hold_briefly(locks, B))
        await asyncio.sleep(0.01)
        assert not waiter.done()
    await asyncio.wait_for(waiter, timeout=1)
    assert locks.held_count() == 0


async def _hold_briefly(locks: RowLockRegistry, key: ItemKey) -> None:
    async with locks.hold([key]):
        pass


@pytest.mark.asyncio
async def test_lock_released_when_body_raises():
    locks = RowLockRegistry()
    with pytest.raises(RuntimeError):
        async with locks.hold([A, B]):
            raise RuntimeError("boom")
    assert locks.held_count() == 0


def test_item_key_ordering_and_str():
    assert sorted([B, A]) == [A, B]
    assert str(A) == "fac-1/pharmacy-main/amox-500"
