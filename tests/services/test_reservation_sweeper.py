# tests/services/test_reservation_sweeper.py
from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from medstock.domain import events as ev
from medstock.domain.errors import Conflict, ReservationExpired
from medstock.domain.records import MovementFilter
from medstock.models.enums import ReservationStatus
from medstock.services.reservation_sweeper import (
    SWEEPER_JOB_ID,
    ExpirationSweeper,
    sweep_expired_reservations,
)
from tests.helpers.inventory import (
    FACILITY,
    ITEM,
    PHARMACY,
    assert_item_invariants,
    item_row,
    stock_item,
)


async def _reserve(inventory, quantity, ttl, reference="rx"):
    return await inventory.reserve(
        item_id=ITEM,
        quantity=quantity,
        reservation_type="medication_dispense",
        reference=reference,
        facility_id=FACILITY,
        reserved_by="n",
        location_id=PHARMACY,
        ttl=ttl,
    )


@pytest.mark.asyncio
async def test_sweep_only_releases_due_reservations(inventory, clock, notifier):
    await stock_item(inventory, quantity=30)
    short = await _reserve(inventory, 5, timedelta(minutes=5), reference="a")
    long = await _reserve(inventory, 7, timedelta(minutes=60), reference="b")

    clock.advance(minutes=10)
    assert await sweep_expired_reservations(inventory.reservations, now=clock()) == 1

    assert (
        await inventory.get_reservation(short.reservation_id, facility_id=FACILITY)
    ).status == ReservationStatus.EXPIRED
    assert (
        await inventory.get_reservation(long.reservation_id, facility_id=FACILITY)
    ).status == ReservationStatus.ACTIVE

    row = await item_row(inventory)
    assert (row.quantity_reserved, row.quantity_available) == (7, 23)
    assert [e.key for e in notifier.of_type(ev.EXPIRED)] == [short.reservation_id]


@pytest.mark.asyncio
async def test_sweep_is_idempotent(inventory, clock):
    await stock_item(inventory, quantity=30)
    await _reserve(inventory, 5, timedelta(minutes=1))
    clock.advance(minutes=2)

    assert await inventory.sweep_expired(now=clock()) == 1
    assert await inventory.sweep_expired(now=clock()) == 0

    row = await item_row(inventory)
    assert row.quantity_reserved == 0


@pytest.mark.asyncio
async def test_sweep_walks_all_pages(inventory, clock):
    await stock_item(inventory, quantity=30)
    for i in range(5):
        await _reserve(inventory, 1, timedelta(minutes=1), reference=f"rx-{i}")
    clock.advance(minutes=2)

    assert await inventory.sweep_expired(now=clock(), batch_size=2) == 5
    assert (await item_row(inventory)).quantity_reserved == 0


@pytest.mark.asyncio
async def test_expire_is_a_noop_for_terminal_or_unknown(inventory, clock):
    await stock_item(inventory, quantity=30)
    res = await _reserve(inventory, 5, timedelta(minutes=1))
    await inventory.commit(
        reservation_id=res.reservation_id, performed_by="ph", facility_id=FACILITY
    )

    clock.advance(minutes=2)
    assert await inventory.reservations.expire(res.reservation_id, now=clock()) is False
    assert await inventory.reservations.expire("missing", now=clock()) is False

    row = await item_row(inventory)
    assert (row.quantity_on_hand, row.quantity_reserved) == (25, 0)


@pytest.mark.asyncio
async def test_expire_before_deadline_does_nothing(inventory, clock):
    await stock_item(inventory, quantity=30)
    res = await _reserve(inventory, 5, timedelta(minutes=30))

    assert await inventory.reservations.expire(res.reservation_id, now=clock()) is False
    assert (await item_row(inventory)).quantity_reserved == 5

@pytest.mark.asyncio
async def test_commit_racing_sweeper_on_overdue_reservation(inventory, clock):
    await stock_item(inventory, quantity=10)
    res = await _reserve(inventory, 4, timedelta(minutes=1))
    clock.advance(minutes=2)

    committed, swept = await asyncio.gather(
        inventory.commit(
            reservation_id=res.reservation_id, performed_by="ph", facility_id=FACILITY
        ),
        inventory.sweep_expired(now=clock()),
        return_exceptions=True,
    )

    assert isinstance(committed, ReservationExpired)
    assert swept == 1
    rec = await inventory.get_reservation(res.reservation_id, facility_id=FACILITY)
    assert rec.status == ReservationStatus.EXPIRED

    row = await item_row(inventory)
    assert (row.quantity_on_hand, row.quantity_reserved) == (10, 0)
    dispensed = await inventory.get_movements(
        MovementFilter(facility_id=FACILITY, movement_type="dispensing")
    )
    assert dispensed == []
    await assert_item_invariants(inventory)


@pytest.mark.asyncio
async def test_rollback_racing_sweeper_has_one_winner(inventory, clock):
    await stock_item(inventory, quantity=10)
    reservations = [
        await _reserve(inventory, 1, timedelta(minutes=1), reference=f"rx-{i}") for i in range(6)
    ]
    clock.advance(minutes=2)

    outcomes = await asyncio.gather(
        *[
            inventory.rollback(
                reservation_id=r.reservation_id,
                reason="canceled",
                performed_by="n",
                facility_id=FACILITY,
            )
            for r in reservations
        ],
        inventory.sweep_expired(now=clock()),
        return_exceptions=True,
    )
    *rollbacks, swept = outcomes

    lost = [o for o in rollbacks if isinstance(o, Conflict)]
    assert all(isinstance(o, Conflict) or o.quantity_released == 1 for o in rollbacks)
    assert swept == len(lost)

    statuses = [
        (await inventory.get_reservation(r.reservation_id, facility_id=FACILITY)).status
        for r in reservations
    ]
    assert statuses.count(ReservationStatus.EXPIRED) == swept
    assert statuses.count(ReservationStatus.ROLLED_BACK) == 6 - swept

    row = await item_row(inventory)
    assert (row.quantity_on_hand, row.quantity_reserved) == (10, 0)
    await assert_item_invariants(inventory)



class _BrokenManager:
    def __init__(self) -> None:
        self.calls = 0

    async def find_expired(self, *, now=None, limit=100):
        self.calls += 1
        raise ConnectionError("database unavailable")


@pytest.mark.asyncio
async def test_run_once_isolates_failures():
    manager = _BrokenManager()
    sweeper = ExpirationSweeper(manager, interval_seconds=5)

    assert await sweeper.run_once() == 0
    assert await sweeper.run_once() == 0
    assert manager.calls == 2


@pytest.mark.asyncio
async def test_run_once_counts_expired(inventory, clock):
    await stock_item(inventory, quantity=30)
    await _reserve(inventory, 5, timedelta(minutes=1))
    clock.advance(minutes=2)

    sweeper = inventory.build_sweeper(interval_seconds=30, batch_size=10)
    assert await sweeper.run_once(now=clock()) == 1


@pytest.mark.asyncio
async def test_start_registers_single_non_overlapping_job(inventory):
    sweeper = inventory.build_sweeper(interval_seconds=30)
    scheduler = sweeper.start()
    try:
        job = scheduler.get_job(SWEEPER_JOB_ID)
        assert job is not None
        assert job.max_instances == 1
        assert job.coalesce is True
        assert job.trigger.interval == timedelta(seconds=30)
    finally:
        sweeper.shutdown()
    assert sweeper.scheduler is None
