# tests/helpers/inventory.py
from __future__ import annotations

from datetime import date

from medstock.domain.records import ItemRecord
from medstock.services.inventory_engine import InventoryEngine

FACILITY = "fac-1"
PHARMACY = "pharmacy-main"
WARD = "ward-3"
ITEM = "amox-500"


async def stock_item(
    inventory: InventoryEngine,
    *,
    quantity: int,
    item_id: str = ITEM,
    location_id: str = PHARMACY,
    batch_number: str = "LOT-A",
    expiry_date: date = date(2026, 12, 31),
    reorder_level: int = 0,
) -> None:
    """Register an item row and receive `quantity` units into one batch."""
    await inventory.register_item(
        item_id=item_id,
        sku=f"SKU-{item_id}",
        name="Amoxicillin 500mg",
        location_id=location_id,
        facility_id=FACILITY,
        item_type="medication",
        reorder_level=reorder_level,
        reorder_quantity=50,
    )
    if quantity:
        await inventory.receive(
            item_id=item_id,
            quantity=quantity,
            batch_number=batch_number,
            expiry_date=expiry_date,
            location_id=location_id,
            facility_id=FACILITY,
            performed_by="receiver",
        )


async def item_row(
    inventory: InventoryEngine, location_id: str = PHARMACY, item_id: str = ITEM
) -> ItemRecord:
    return await inventory.get_item(item_id=item_id, location_id=location_id, facility_id=FACILITY)


async def assert_item_invariants(inventory: InventoryEngine) -> None:
    report = await inventory.verify_ledger(facility_id=FACILITY)
    assert report.ok, report.mismatches
    for level in await inventory.get_item_stock_levels(item_id=ITEM, facility_id=FACILITY):
        it = level.item
        assert it.quantity_on_hand >= it.quantity_reserved >= 0
        assert it.quantity_available == it.quantity_on_hand - it.quantity_reserved
        assert sum(b.quantity_on_hand for b in level.batches) == it.quantity_on_hand
        assert all(0 <= b.quantity_reserved <= b.quantity_on_hand for b in level.batches)
