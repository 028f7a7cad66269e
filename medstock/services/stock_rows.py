# medstock/services/stock_rows.py
"""
Row access shared by every mutating service.

All lock_* helpers must be called inside StockStore.unit_of_work() holding the
matching ItemKey(s); they add SELECT ... FOR UPDATE so PostgreSQL sessions in
other processes queue up on the same rows. SQLite ignores the clause.
"""

from __future__ import annotations

from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from medstock.db.row_locks import ItemKey
from medstock.domain.errors import Conflict, NotFound
from medstock.models.enums import BatchStatus
from medstock.models.inventory_item import InventoryItem
from medstock.models.stock_batch import StockBatch


def _item_stmt(key: ItemKey):
    return select(InventoryItem).where(
        InventoryItem.item_id == key.item_id,
        InventoryItem.location_id == key.location_id,
        InventoryItem.facility_id == key.facility_id,
    )


async def lock_item(session: AsyncSession, key: ItemKey) -> Optional[InventoryItem]:
    res = await session.execute(_item_stmt(key).with_for_update())
    return res.scalar_one_or_none()


async def lock_item_or_404(session: AsyncSession, key: ItemKey) -> InventoryItem:
    row = await lock_item(session, key)
    if row is None:
        raise NotFound(
            f"item {key.item_id} not stocked at {key.location_id}",
            details={
                "item_id": key.item_id,
                "location_id": key.location_id,
                "facility_id": key.facility_id,
            },
        )
    return row


async def lock_items(
    session: AsyncSession, keys: Iterable[ItemKey]
) -> Dict[ItemKey, Optional[InventoryItem]]:
    """Row locks in ascending key order, same order as RowLockRegistry.hold()."""
    out: Dict[ItemKey, Optional[InventoryItem]] = {}
    for key in sorted(set(keys)):
        out[key] = await lock_item(session, key)
    return out


async def lock_batch(
    session: AsyncSession, key: ItemKey, batch_number: str
) -> Optional[StockBatch]:
    stmt = (
        select(StockBatch)
        .where(
            StockBatch.item_id == key.item_id,
            StockBatch.location_id == key.location_id,
            StockBatch.facility_id == key.facility_id,
            StockBatch.batch_number == batch_number,
        )
        .with_for_update()
    )
    res = await session.execute(stmt)
    return res.scalar_one_or_none()


async def lock_batch_or_404(session: AsyncSession, key: ItemKey, batch_number: str) -> StockBatch:
    batch = await lock_batch(session, key, batch_number)
    if batch is None:
        raise NotFound(
            f"batch {batch_number} of item {key.item_id} not found at {key.location_id}",
            details={
                "item_id": key.item_id,
                "location_id": key.location_id,
                "facility_id": key.facility_id,
                "batch_number": batch_number,
            },
        )
    return batch


async def lock_batches_fefo(session: AsyncSession, key: ItemKey) -> List[StockBatch]:
    """Active batches of one item row holding stock, earliest expiry first."""
    stmt = (
        select(StockBatch)
        .where(
            StockBatch.item_id == key.item_id,
            StockBatch.location_id == key.location_id,
            StockBatch.facility_id == key.facility_id,
            StockBatch.status == BatchStatus.ACTIVE.value,
            StockBatch.quantity_on_hand > 0,
        )
        .order_by(StockBatch.expiry_date.asc(), StockBatch.batch_number.asc())
        .with_for_update()
    )
    res = await session.execute(stmt)
    return list(res.scalars().all())


async def draw_from_batches(
    session: AsyncSession,
    key: ItemKey,
    quantity: int,
    *,
    now: datetime,
    dispensed: bool = False,
) -> List[Tuple[StockBatch, int]]:
    """
    Take `quantity` unreserved units out of the batches of `key`, FEFO.

    Used when an outflow names no batch. Units held by batch-bound
    reservations are never touched; a batch that reaches zero becomes
    depleted. Returns the (batch, units) pairs drawn, in draw order.
    """
    remaining = int(quantity)
    drawn: List[Tuple[StockBatch, int]] = []
    for batch in await lock_batches_fefo(session, key):
        if remaining <= 0:
            break
        take = min(remaining, batch.quantity_unreserved)
        if take <= 0:
            continue
        batch.quantity_on_hand = int(batch.quantity_on_hand) - take
        if dispensed:
            batch.quantity_dispensed = int(batch.quantity_dispensed) + take
        if batch.quantity_on_hand == 0:
            batch.status = BatchStatus.DEPLETED.value
        batch.updated_at = now
        drawn.append((batch, take))
        remaining -= take
    return drawn


async def resolve_item_key(
    session: AsyncSession,
    *,
    item_id: str,
    facility_id: str,
    location_id: Optional[str],
) -> ItemKey:
    """
    Turn (item, facility, optional location) into a lockable key.

    Without a location the item must be stocked at exactly one location of
    the facility; several candidates are ambiguous and rejected.
    """
    if location_id:
        return ItemKey(item_id, location_id, facility_id)

    res = await session.execute(
        select(InventoryItem.location_id)
        .where(InventoryItem.item_id == item_id, InventoryItem.facility_id == facility_id)
        .order_by(InventoryItem.location_id)
    )
    locations = [str(x) for x in res.scalars().all()]
    if not locations:
        raise NotFound(
            f"item {item_id} not stocked in facility {facility_id}",
            details={"item_id": item_id, "facility_id": facility_id},
        )
    if len(locations) > 1:
        raise Conflict(
            f"item {item_id} is stocked at several locations; location_id is required",
            details={"item_id": item_id, "facility_id": facility_id, "locations": locations},
        )
    return ItemKey(item_id, locations[0], facility_id)
