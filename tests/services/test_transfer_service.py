# tests/services/test_transfer_service.py
from __future__ import annotations

import asyncio

import pytest

from medstock.domain import events as ev
from medstock.domain.errors import Conflict, NotFound
from medstock.domain.records import MovementFilter
from tests.helpers.inventory import (
    FACILITY,
    ITEM,
    PHARMACY,
    WARD,
    assert_item_invariants,
    item_row,
    stock_item,
)


async def _transfer(inventory, quantity, src=PHARMACY, dst=WARD, **kwargs):
    return await inventory.transfer_stock(
        item_id=ITEM,
        quantity=quantity,
        from_location=src,
        to_location=dst,
        facility_id=FACILITY,
        performed_by="porter",
        **kwargs,
    )


@pytest.mark.asyncio
async def test_transfer_everything_to_existing_location(inventory, notifier):
    await stock_item(inventory, quantity=20)
    await stock_item(inventory, quantity=3, location_id=WARD, batch_number="LOT-W")

    out = await _transfer(inventory, 20)
    assert out.success is True
    assert (out.source_quantity_after, out.destination_quantity_after) == (0, 23)

    assert (await item_row(inventory)).quantity_on_hand == 0
    assert (await item_row(inventory, location_id=WARD)).quantity_on_hand == 23

    mv = await inventory.get_movements(
        MovementFilter(facility_id=FACILITY, movement_type="transfer")
    )
    assert len(mv) == 2
    by_loc = {m.location_id: m for m in mv}
    assert by_loc[PHARMACY].quantity_change == -20
    assert by_loc[WARD].quantity_change == 20
    for m in mv:
        assert (m.from_location, m.to_location) == (PHARMACY, WARD)

    assert [e.key for e in notifier.of_type(ev.TRANSFERRED)] == [out.movement_ids[0]]
    await assert_item_invariants(inventory)


@pytest.mark.asyncio
async def test_transfer_creates_destination_from_source_attributes(inventory):
    await stock_item(inventory, quantity=10, reorder_level=2)

    await _transfer(inventory, 4)

    dst = await item_row(inventory, location_id=WARD)
    src = await item_row(inventory)
    assert dst.quantity_on_hand == 4
    assert (dst.sku, dst.name, dst.item_type, dst.reorder_level) == (
        src.sku,
        src.name,
        src.item_type,
        src.reorder_level,
    )


@pytest.mark.asyncio
async def test_transfer_cannot_take_reserved_units(inventory):
    await stock_item(inventory, quantity=10)
    await inventory.reserve(
        item_id=ITEM,
        quantity=8,
        reservation_type="transfer",
        reference="t-1",
        facility_id=FACILITY,
        reserved_by="n",
        location_id=PHARMACY,
    )

    with pytest.raises(Conflict):
        await _transfer(inventory, 3)

    row = await item_row(inventory)
    assert (row.quantity_on_hand, row.quantity_reserved) == (10, 8)
    with pytest.raises(NotFound):
        await item_row(inventory, location_id=WARD)
    mv = await inventory.get_movements(
        MovementFilter(facility_id=FACILITY, movement_type="transfer")
    )
    assert mv == []


@pytest.mark.asyncio
async def test_transfer_argument_errors(inventory):
    await stock_item(inventory, quantity=10)
    with pytest.raises(ValueError):
        await _transfer(inventory, 1, dst=PHARMACY)
    with pytest.raises(ValueError):
        await _transfer(inventory, 0)
    with pytest.raises(ValueError):
        await _transfer(inventory, 2.5)
    with pytest.raises(NotFound):
        await _transfer(inventory, 1, src="nowhere", dst=WARD)


@pytest.mark.asyncio
async def test_batch_transfer_moves_batch_quantity(inventory):
    await stock_item(inventory, quantity=10, batch_number="LOT-A")

    await _transfer(inventory, 6, batch_number="LOT-A")

    src_batches = await inventory.list_batches_fefo(
        item_id=ITEM, facility_id=FACILITY, location_id=PHARMACY
    )
    dst_batches = await inventory.list_batches_fefo(
        item_id=ITEM, facility_id=FACILITY, location_id=WARD
    )
    assert [(b.batch_number, b.quantity_on_hand) for b in src_batches] == [("LOT-A", 4)]
    assert [(b.batch_number, b.quantity_on_hand) for b in dst_batches] == [("LOT-A", 6)]
    assert dst_batches[0].expiry_date == src_batches[0].expiry_date
    assert (dst_batches[0].quantity_received, src_batches[0].quantity_received) == (6, 10)

    with pytest.raises(Conflict):
        await _transfer(inventory, 5, batch_number="LOT-A")


@pytest.mark.asyncio
async def test_opposite_transfers_do_not_deadlock(inventory):
    await stock_item(inventory, quantity=50)
    await stock_item(inventory, quantity=50, location_id=WARD, batch_number="LOT-W")

    await asyncio.wait_for(
        asyncio.gather(
            *[_transfer(inventory, 1) for _ in range(5)],
            *[_transfer(inventory, 2, src=WARD, dst=PHARMACY) for _ in range(5)],
        ),
        timeout=30,
    )

    assert (await item_row(inventory)).quantity_on_hand == 55
    assert (await item_row(inventory, location_id=WARD)).quantity_on_hand == 45
    await assert_item_invariants(inventory)


@pytest.mark.asyncio
async def test_transferred_units_count_as_received_at_destination(inventory):
    await stock_item(inventory, quantity=10, batch_number="LOT-A")

    await _transfer(inventory, 6, batch_number="LOT-A")
    await _transfer(inventory, 2)
    await _transfer(inventory, 3, src=WARD, dst=PHARMACY)

    levels = {
        lvl.item.location_id: lvl
        for lvl in await inventory.get_item_stock_levels(item_id=ITEM, facility_id=FACILITY)
    }
    (ward_lot,) = levels[WARD].batches
    assert (ward_lot.quantity_received, ward_lot.quantity_on_hand) == (8, 5)
    (pharmacy_lot,) = levels[PHARMACY].batches
    assert (pharmacy_lot.quantity_received, pharmacy_lot.quantity_on_hand) == (13, 5)
    await assert_item_invariants(inventory)
