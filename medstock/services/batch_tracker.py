# medstock/services/batch_tracker.py
from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy import select

from medstock.db.row_locks import ItemKey
from medstock.db.store import StockStore
from medstock.domain import events as ev
from medstock.domain.errors import Conflict, NotFound
from medstock.domain.events import InventoryEvent
from medstock.domain.records import (
    BatchRecord,
    BatchStatusChange,
    ItemRecord,
    batch_record,
    item_record,
)
from medstock.models.enums import BatchStatus, ItemStatus, MovementType
from medstock.models.inventory_item import InventoryItem
from medstock.models.stock_batch import StockBatch
from medstock.services.movement_ledger import append_movement
from medstock.services.notifier import EventDispatcher
from medstock.services.stock_ledger import stock_level_event
from medstock.services.stock_rows import lock_item_or_404
from medstock.utils.time import utc_now as _utc_now, utc_today

log = logging.getLogger("medstock.batches")

# batches whose units count towards the item's on-hand
_COUNTED = {BatchStatus.ACTIVE.value, BatchStatus.DEPLETED.value}

_ALLOWED = {
    BatchStatus.ACTIVE.value: {"quarantined", "recalled", "expired"},
    BatchStatus.DEPLETED.value: {"quarantined", "recalled", "expired"},
    BatchStatus.QUARANTINED.value: {"active", "recalled", "expired"},
    BatchStatus.RECALLED.value: set(),
    BatchStatus.EXPIRED.value: set(),
}

_WRITE_OFF_TYPE = {
    BatchStatus.QUARANTINED.value: MovementType.QUARANTINE,
    BatchStatus.RECALLED.value: MovementType.RECALL,
    BatchStatus.EXPIRED.value: MovementType.EXPIRY,
}


class BatchTracker:
    """
    Batch / expiry queries and the quarantine-recall workflow.

    Scans are lock-free reads; alerts are dispatched after the read returned.
    """

    def __init__(
        self,
        store: StockStore,
        *,
        dispatcher: Optional[EventDispatcher] = None,
        utc_now: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.store = store
        self.dispatcher = dispatcher or EventDispatcher()
        self._now = utc_now

    async def find_expiring_batches(
        self,
        *,
        facility_id: str,
        days_until_expiry: int = 30,
        today: Optional[date] = None,
        notify: bool = True,
    ) -> List[BatchRecord]:
        """
        Active batches with stock left that expire within the window
        [today, today + days_until_expiry], earliest expiry first.
        """
        if days_until_expiry < 0:
            raise ValueError("days_until_expiry must be >= 0")
        now = self._now()
        today = today or utc_today(now)
        horizon = today + timedelta(days=int(days_until_expiry))

        async with self.store.read() as session:
            rows = (
                await session.execute(
                    select(StockBatch)
                    .where(
                        StockBatch.facility_id == facility_id,
                        StockBatch.status == BatchStatus.ACTIVE.value,
                        StockBatch.quantity_on_hand > 0,
                        StockBatch.expiry_date >= today,
                        StockBatch.expiry_date <= horizon,
                    )
                    .order_by(StockBatch.expiry_date.asc(), StockBatch.batch_number.asc())
                )
            ).scalars().all()
            records = [batch_record(r) for r in rows]

        if notify and records:
            await self.dispatcher.dispatch(
                InventoryEvent(
                    event_type=ev.EXPIRING,
                    key=b.batch_id,
                    facility_id=facility_id,
                    occurred_at=now,
                    payload={
                        "item_id": b.item_id,
                        "location_id": b.location_id,
                        "batch_id": b.batch_id,
                        "batch_number": b.batch_number,
                        "expiry_date": b.expiry_date.isoformat(),
                        "days_until_expiry": (b.expiry_date - today).days,
                        "quantity_on_hand": b.quantity_on_hand,
                    },
                )
                for b in records
            )
        return records

    async def find_low_stock_items(
        self, *, facility_id: str, notify: bool = True
    ) -> List[ItemRecord]:
        """
        Items at or below their reorder level, largest shortfall first.
        Discontinued items are never reported.
        """
        deficit = InventoryItem.reorder_level - InventoryItem.quantity_available
        now = self._now()

        async with self.store.read() as session:
            rows = (
                await session.execute(
                    select(InventoryItem)
                    .where(
                        InventoryItem.facility_id == facility_id,
                        InventoryItem.status != ItemStatus.DISCONTINUED.value,
                        InventoryItem.quantity_available <= InventoryItem.reorder_level,
                    )
                    .order_by(deficit.desc(), InventoryItem.name.asc(), InventoryItem.location_id)
                )
            ).scalars().all()
            records = [item_record(r) for r in rows]
            events = [stock_level_event(r, now=now) for r in rows] if notify else []

        if events:
            await self.dispatcher.dispatch(events)
        return records

    async def list_batches_fefo(
        self,
        *,
        item_id: str,
        facility_id: str,
        location_id: Optional[str] = None,
    ) -> List[BatchRecord]:
        stmt = select(StockBatch).where(
            StockBatch.item_id == item_id,
            StockBatch.facility_id == facility_id,
            StockBatch.status == BatchStatus.ACTIVE.value,
            StockBatch.quantity_on_hand > 0,
        )
        if location_id:
            stmt = stmt.where(StockBatch.location_id == location_id)
        stmt = stmt.order_by(
            StockBatch.expiry_date.asc(), StockBatch.batch_number.asc(), StockBatch.location_id
        )
        async with self.store.read() as session:
            return [batch_record(r) for r in (await session.execute(stmt)).scalars().all()]

    async def set_batch_status(
        self,
        *,
        batch_id: str,
        status: BatchStatus | str,
        facility_id: str,
        performed_by: str,
        reason: str,
    ) -> BatchStatusChange:
        """
        Quarantine / release / recall / expire one batch.

        - active|depleted -> quarantined|recalled|expired: the batch's units
          leave the item's on-hand with one movement (quarantine / recall /
          expiry). Refused while the batch has reserved units.
        - quarantined -> active: the units come back (positive quarantine movement).
        - quarantined -> recalled|expired: units were already off the item; the
          batch is zeroed, no item movement.
        - recalled and expired are final.
        """
        target = BatchStatus(status).value
        if not reason or not reason.strip():
            raise ValueError("reason is required")

        async with self.store.read() as session:
            peek = await session.get(StockBatch, batch_id)
            if peek is None or peek.facility_id != facility_id:
                raise NotFound(f"batch {batch_id} not found", details={"batch_id": batch_id})
            key = ItemKey(peek.item_id, peek.location_id, peek.facility_id)

        now = self._now()
        async with self.store.unit_of_work(key) as session:
            item = await lock_item_or_404(session, key)
            batch = (
                await session.execute(
                    select(StockBatch).where(StockBatch.id == batch_id).with_for_update()
                )
            ).scalar_one()

            old = batch.status
            if target not in _ALLOWED.get(old, set()):
                raise Conflict(
                    f"batch {batch.batch_number} cannot go from {old} to {target}",
                    details={"batch_id": batch_id, "status": old, "target": target},
                )
            if int(batch.quantity_reserved) > 0:
                raise Conflict(
                    f"batch {batch.batch_number} has {batch.quantity_reserved} reserved units",
                    details={"batch_id": batch_id, "reserved": int(batch.quantity_reserved)},
                )

            units = int(batch.quantity_on_hand)
            before = int(item.quantity_on_hand)
            movement_id: Optional[str] = None
            written = 0

            if old in _COUNTED and units > 0:
                if before - units < int(item.quantity_reserved):
                    raise Conflict(
                        f"removing batch {batch.batch_number} would leave reservations of "
                        f"{item.item_id} uncovered",
                        details={"batch_id": batch_id, "units": units},
                    )
                item.quantity_on_hand = before - units
                written = -units
                mtype = _WRITE_OFF_TYPE[target]
            elif old == BatchStatus.QUARANTINED and target == BatchStatus.ACTIVE and units > 0:
                item.quantity_on_hand = before + units
                written = units
                mtype = MovementType.QUARANTINE
            else:
                mtype = None

            if target in (BatchStatus.RECALLED, BatchStatus.EXPIRED):
                batch.quantity_on_hand = 0
            batch.status = target
            batch.updated_at = now

            events: List[InventoryEvent] = []
            if mtype is not None:
                item.recalculate(now)
                movement = await append_movement(
                    session,
                    item=item,
                    movement_type=mtype,
                    quantity_before=before,
                    reason=reason,
                    performed_by=performed_by,
                    performed_at=now,
                    batch_number=batch.batch_number,
                )
                movement_id = movement.id
                events.append(
                    InventoryEvent(
                        event_type=ev.ADJUSTED,
                        key=movement.id,
                        facility_id=facility_id,
                        occurred_at=now,
                        payload={
                            "item_id": item.item_id,
                            "location_id": item.location_id,
                            "batch_id": batch_id,
                            "movement_type": mtype.value,
                            "quantity_change": written,
                            "new_quantity": int(item.quantity_on_hand),
                            "reason": reason,
                        },
                    )
                )
            else:
                await session.flush()

            result = BatchStatusChange(
                batch_id=batch_id,
                old_status=old,
                new_status=target,
                quantity_written=written,
                movement_id=movement_id,
            )

        log.info(
            "batch %s %s -> %s (%+d)",
            batch_id,
            old,
            target,
            written,
            extra={"performed_by": performed_by, "reason": reason},
        )
        await self.dispatcher.dispatch(events)
        return result
