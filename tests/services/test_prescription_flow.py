# tests/services/test_prescription_flow.py
from __future__ import annotations

from datetime import timedelta

import pytest

from medstock.domain.errors import Conflict, InsufficientStock
from medstock.services.prescription_flow import PrescriptionLine, PrescriptionReservations
from tests.helpers.inventory import FACILITY, PHARMACY, item_row, stock_item


async def _stock_two_items(inventory):
    await stock_item(inventory, quantity=20, item_id="amox-500")
    await stock_item(inventory, quantity=3, item_id="ibu-400", batch_number="LOT-I")


@pytest.mark.asyncio
async def test_auto_reserve_and_release(inventory, clock):
    await _stock_two_items(inventory)

    out = await inventory.auto_reserve_for_prescription(
        prescription_id="rx-100",
        lines=[PrescriptionLine("amox-500", 10), PrescriptionLine("ibu-400", 2, PHARMACY)],
        facility_id=FACILITY,
        reserved_by="doctor",
    )
    assert [r.item_id for r in out.reservations] == ["amox-500", "ibu-400"]
    assert all(r.expires_at == clock() + timedelta(minutes=60) for r in out.reservations)

    released = await inventory.auto_release_for_canceled_prescription(
        prescription_id="rx-100", facility_id=FACILITY, performed_by="doctor"
    )
    assert released == 12

    assert (await item_row(inventory, item_id="amox-500")).quantity_reserved == 0
    assert (await item_row(inventory, item_id="ibu-400")).quantity_reserved == 0


@pytest.mark.asyncio
async def test_auto_reserve_is_all_or_nothing(inventory):
    await _stock_two_items(inventory)

    with pytest.raises(InsufficientStock):
        await inventory.auto_reserve_for_prescription(
            prescription_id="rx-200",
            lines=[PrescriptionLine("amox-500", 10), PrescriptionLine("ibu-400", 5)],
            facility_id=FACILITY,
            reserved_by="doctor",
        )

    assert (await item_row(inventory, item_id="amox-500")).quantity_reserved == 0
    active = await inventory.reservations.find_active_by_reference("rx-200", facility_id=FACILITY)
    assert active == []


@pytest.mark.asyncio
async def test_prescription_reserved_once(inventory):
    await _stock_two_items(inventory)
    lines = [PrescriptionLine("amox-500", 1)]
    await inventory.auto_reserve_for_prescription(
        prescription_id="rx-300", lines=lines, facility_id=FACILITY, reserved_by="doctor"
    )
    with pytest.raises(Conflict):
        await inventory.auto_reserve_for_prescription(
            prescription_id="rx-300", lines=lines, facility_id=FACILITY, reserved_by="doctor"
        )


@pytest.mark.asyncio
async def test_release_skips_dispensed_lines(inventory):
    await _stock_two_items(inventory)
    out = await inventory.auto_reserve_for_prescription(
        prescription_id="rx-400",
        lines=[PrescriptionLine("amox-500", 4), PrescriptionLine("ibu-400", 1)],
        facility_id=FACILITY,
        reserved_by="doctor",
    )
    await inventory.commit(
        reservation_id=out.reservations[0].reservation_id,
        performed_by="ph",
        facility_id=FACILITY,
    )

    released = await inventory.auto_release_for_canceled_prescription(
        prescription_id="rx-400", facility_id=FACILITY, performed_by="doctor"
    )
    assert released == 1
    assert (await item_row(inventory, item_id="amox-500")).quantity_on_hand == 16


class _DispensesFirstLineBeforeIbuprofen:
    """Reservation manager whose first held line gets dispensed mid-bundle."""

    def __init__(self, manager) -> None:
        self.manager = manager
        self.held = []

    async def find_active_by_reference(self, reference, *, facility_id):
        return await self.manager.find_active_by_reference(reference, facility_id=facility_id)

    async def reserve(self, **kwargs):
        if self.held and kwargs["item_id"] == "ibu-400":
            await self.manager.commit(
                reservation_id=self.held[0].reservation_id,
                performed_by="ph",
                facility_id=kwargs["facility_id"],
            )
        res = await self.manager.reserve(**kwargs)
        self.held.append(res)
        return res

    async def rollback(self, **kwargs):
        return await self.manager.rollback(**kwargs)


@pytest.mark.asyncio
async def test_compensation_survives_line_no_longer_active(inventory):
    await _stock_two_items(inventory)
    await stock_item(inventory, quantity=10, item_id="gauze", batch_number="LOT-G")
    flow = PrescriptionReservations(_DispensesFirstLineBeforeIbuprofen(inventory.reservations))

    with pytest.raises(InsufficientStock):
        await flow.auto_reserve_for_prescription(
            prescription_id="rx-500",
            lines=[
                PrescriptionLine("amox-500", 4),
                PrescriptionLine("gauze", 2),
                PrescriptionLine("ibu-400", 5),
            ],
            facility_id=FACILITY,
            reserved_by="doctor",
        )

    amox = await item_row(inventory, item_id="amox-500")
    assert (amox.quantity_on_hand, amox.quantity_reserved) == (16, 0)
    assert (await item_row(inventory, item_id="gauze")).quantity_reserved == 0
    active = await inventory.reservations.find_active_by_reference("rx-500", facility_id=FACILITY)
    assert active == []
