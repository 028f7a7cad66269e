# medstock/services/movement_ledger.py
from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from medstock.db.row_locks import ItemKey
from medstock.db.store import StockStore
from medstock.domain.records import MovementFilter, MovementRecord, movement_record
from medstock.models.enums import MovementType
from medstock.models.inventory_item import InventoryItem
from medstock.models.stock_movement import StockMovement
from medstock.obs.metrics import stock_movements_total
from medstock.utils.time import as_utc

log = logging.getLogger("medstock.ledger")

MAX_MOVEMENT_PAGE = 1000


async def append_movement(
    session: AsyncSession,
    *,
    item: InventoryItem,
    movement_type: MovementType | str,
    quantity_before: int,
    reason: str,
    performed_by: str,
    performed_at: datetime,
    reference: Optional[str] = None,
    batch_number: Optional[str] = None,
    from_location: Optional[str] = None,
    to_location: Optional[str] = None,
    notes: Optional[str] = None,
) -> StockMovement:
    """
    Append one movement for an item row that was just changed in this session.

    quantity_after is read from the row itself, so the caller mutates first
    and appends second; quantity_change is derived from before/after.

    Must run in the same transaction as the quantity change: a rollback drops
    both, a commit keeps both.
    """
    mtype = MovementType(movement_type).value
    after = int(item.quantity_on_hand)
    change = after - int(quantity_before)
    if change == 0:
        raise ValueError("movement with zero quantity change")

    row = StockMovement(
        item_id=item.item_id,
        location_id=item.location_id,
        facility_id=item.facility_id,
        batch_number=batch_number,
        movement_type=mtype,
        quantity_change=change,
        quantity_before=int(quantity_before),
        quantity_after=after,
        from_location=from_location,
        to_location=to_location,
        reference=reference,
        reason=reason,
        notes=notes,
        performed_by=performed_by,
        performed_at=performed_at,
    )
    session.add(row)
    await session.flush()

    stock_movements_total.labels(movement_type=mtype).inc()
    log.info(
        "stock movement %s %s %+d (%d -> %d)",
        mtype,
        item.key,
        change,
        quantity_before,
        after,
        extra={
            "movement_id": row.id,
            "reference": reference,
            "performed_by": performed_by,
        },
    )
    return row


class MovementLedger:
    """Read side of stock_movements. Writes go through append_movement()."""

    def __init__(self, store: StockStore) -> None:
        self.store = store

    async def get_movements(self, flt: MovementFilter) -> List[MovementRecord]:
        """Newest first, at most flt.limit rows (capped at MAX_MOVEMENT_PAGE)."""
        if flt.limit <= 0:
            raise ValueError("limit must be positive")

        stmt = select(StockMovement).where(StockMovement.facility_id == flt.facility_id)
        if flt.item_id:
            stmt = stmt.where(StockMovement.item_id == flt.item_id)
        if flt.location_id:
            stmt = stmt.where(StockMovement.location_id == flt.location_id)
        if flt.movement_type:
            stmt = stmt.where(
                StockMovement.movement_type == MovementType(flt.movement_type).value
            )
        if flt.reference:
            stmt = stmt.where(StockMovement.reference == flt.reference)
        if flt.start is not None:
            stmt = stmt.where(StockMovement.performed_at >= as_utc(flt.start))
        if flt.end is not None:
            stmt = stmt.where(StockMovement.performed_at <= as_utc(flt.end))

        stmt = stmt.order_by(StockMovement.performed_at.desc(), StockMovement.id.desc()).limit(
            min(int(flt.limit), MAX_MOVEMENT_PAGE)
        )

        async with self.store.read() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [movement_record(r) for r in rows]

    async def reconstruct_on_hand(self, key: ItemKey, *, at: Optional[datetime] = None) -> int:
        """
        On-hand of one item row rebuilt from the ledger alone.

        at=None sums the whole history; otherwise only movements performed at
        or before `at` count.
        """
        stmt = select(func.coalesce(func.sum(StockMovement.quantity_change), 0)).where(
            StockMovement.item_id == key.item_id,
            StockMovement.location_id == key.location_id,
            StockMovement.facility_id == key.facility_id,
        )
        if at is not None:
            stmt = stmt.where(StockMovement.performed_at <= as_utc(at))

        async with self.store.read() as session:
            return int((await session.execute(stmt)).scalar_one())
