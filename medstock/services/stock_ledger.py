# medstock/services/stock_ledger.py
from __future__ import annotations

import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Callable, List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from medstock.db.row_locks import ItemKey
from medstock.db.store import StockStore
from medstock.domain import events as ev
from medstock.domain.errors import Conflict, InsufficientStock, NotFound
from medstock.domain.events import InventoryEvent
from medstock.domain.records import (
    AdjustResult,
    Availability,
    ItemRecord,
    ItemStockLevel,
    ReceiveResult,
    batch_record,
    item_record,
)
from medstock.models.enums import (
    ADJUSTABLE_MOVEMENT_TYPES,
    BatchStatus,
    ItemStatus,
    ItemType,
    MovementType,
)
from medstock.models.inventory_item import InventoryItem
from medstock.models.stock_batch import StockBatch
from medstock.services.movement_ledger import append_movement
from medstock.services.notifier import EventDispatcher
from medstock.services.stock_rows import (
    draw_from_batches,
    lock_batch,
    lock_batch_or_404,
    lock_batches_fefo,
    lock_item,
    lock_item_or_404,
)
from medstock.utils.time import utc_now as _utc_now

log = logging.getLogger("medstock.ledger")

_LOW_STATES = {ItemStatus.LOW_STOCK.value, ItemStatus.OUT_OF_STOCK.value}


def low_stock_event(
    item: InventoryItem, *, previous_status: str, now: datetime
) -> Optional[InventoryEvent]:
    """inventory.low_stock when a mutation moved the row into low/out-of-stock."""
    if item.status not in _LOW_STATES or previous_status in _LOW_STATES:
        return None
    return stock_level_event(item, now=now)


def stock_level_event(item: InventoryItem, *, now: datetime) -> InventoryEvent:
    return InventoryEvent(
        event_type=ev.LOW_STOCK,
        key=f"{item.key}:v{item.version}",
        facility_id=item.facility_id,
        occurred_at=now,
        payload={
            "item_id": item.item_id,
            "location_id": item.location_id,
            "name": item.name,
            "status": item.status,
            "quantity_available": int(item.quantity_available),
            "reorder_level": int(item.reorder_level),
            "reorder_quantity": int(item.reorder_quantity),
        },
    )


class StockLedgerService:
    """
    Item and batch quantities: registration, receipts, adjustments, reads.

    Every write runs in one StockStore.unit_of_work() holding the item lock and
    appends exactly one movement for the item row it changed.
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

    # ------------------------------------------------------------------
    # writes
    # ------------------------------------------------------------------

    async def register_item(
        self,
        *,
        item_id: str,
        sku: str,
        name: str,
        location_id: str,
        facility_id: str,
        item_type: ItemType | str = ItemType.OTHER,
        reorder_level: int = 0,
        reorder_quantity: int = 0,
        max_stock_level: Optional[int] = None,
        unit_of_measure: str = "unit",
    ) -> ItemRecord:
        itype = ItemType(item_type).value
        if reorder_level < 0 or reorder_quantity < 0:
            raise ValueError("reorder_level / reorder_quantity must be >= 0")
        if max_stock_level is not None and max_stock_level < 0:
            raise ValueError("max_stock_level must be >= 0")

        key = ItemKey(item_id, location_id, facility_id)
        now = self._now()
        async with self.store.unit_of_work(key) as session:
            if await lock_item(session, key) is not None:
                raise Conflict(
                    f"item {item_id} already registered at {location_id}",
                    details={"item_id": item_id, "location_id": location_id},
                )
            item = InventoryItem(
                item_id=item_id,
                location_id=location_id,
                facility_id=facility_id,
                sku=sku,
                name=name,
                item_type=itype,
                unit_of_measure=unit_of_measure,
                quantity_on_hand=0,
                quantity_reserved=0,
                reorder_level=int(reorder_level),
                reorder_quantity=int(reorder_quantity),
                max_stock_level=max_stock_level,
                created_at=now,
            )
            item.recalculate(now)
            session.add(item)
            try:
                await session.flush()
            except IntegrityError as e:
                raise Conflict(
                    f"item {item_id} already registered at {location_id}",
                    details={"item_id": item_id, "location_id": location_id},
                ) from e
            record = item_record(item)

        log.info("registered item %s", key, extra={"sku": sku})
        return record

    async def receive(
        self,
        *,
        item_id: str,
        quantity: int,
        batch_number: str,
        expiry_date: date,
        location_id: str,
        facility_id: str,
        performed_by: str,
        supplier_id: Optional[str] = None,
        unit_cost: Optional[Decimal] = None,
        reference: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> ReceiveResult:
        """
        Goods in.

        - Creates the (item, location, facility, batch_number) batch, or extends
          it when the same number arrives again with the same expiry.
        - A depleted batch becomes active again; quarantined / recalled /
          expired batches refuse new units (Conflict).
        - One `receipt` movement with to_location set.
        """
        if isinstance(quantity, bool) or int(quantity) != quantity or quantity <= 0:
            raise ValueError("quantity must be a positive integer")
        batch_number = (batch_number or "").strip()
        if not batch_number:
            raise ValueError("batch_number is required")
        if not isinstance(expiry_date, date) or isinstance(expiry_date, datetime):
            raise ValueError("expiry_date must be a date")

        key = ItemKey(item_id, location_id, facility_id)
        now = self._now()
        events: List[InventoryEvent] = []

        async with self.store.unit_of_work(key) as session:
            item = await lock_item_or_404(session, key)
            batch = await lock_batch(session, key, batch_number)

            if batch is None:
                batch = StockBatch(
                    item_id=item_id,
                    location_id=location_id,
                    facility_id=facility_id,
                    batch_number=batch_number,
                    quantity_received=int(quantity),
                    quantity_on_hand=int(quantity),
                    quantity_reserved=0,
                    quantity_dispensed=0,
                    expiry_date=expiry_date,
                    received_date=now,
                    status=BatchStatus.ACTIVE.value,
                    supplier_id=supplier_id,
                    unit_cost=unit_cost,
                    created_by=performed_by,
                    updated_at=now,
                )
                session.add(batch)
            else:
                if batch.status not in (BatchStatus.ACTIVE, BatchStatus.DEPLETED):
                    raise Conflict(
                        f"batch {batch_number} is {batch.status}; cannot receive into it",
                        details={"batch_id": batch.id, "status": batch.status},
                    )
                if batch.expiry_date != expiry_date:
                    raise Conflict(
                        f"batch {batch_number} already exists with expiry {batch.expiry_date}",
                        details={
                            "batch_id": batch.id,
                            "expiry_date": batch.expiry_date.isoformat(),
                        },
                    )
                batch.quantity_received += int(quantity)
                batch.quantity_on_hand += int(quantity)
                batch.status = BatchStatus.ACTIVE.value
                batch.updated_at = now

            before = int(item.quantity_on_hand)
            item.quantity_on_hand = before + int(quantity)
            item.last_restocked_at = now
            item.recalculate(now)

            movement = await append_movement(
                session,
                item=item,
                movement_type=MovementType.RECEIPT,
                quantity_before=before,
                reason="stock received",
                performed_by=performed_by,
                performed_at=now,
                reference=reference,
                batch_number=batch_number,
                to_location=location_id,
                notes=notes,
            )
            result = ReceiveResult(
                batch_id=batch.id,
                new_quantity_on_hand=int(item.quantity_on_hand),
                movement_id=movement.id,
            )
            events.append(
                InventoryEvent(
                    event_type=ev.RECEIVED,
                    key=movement.id,
                    facility_id=facility_id,
                    occurred_at=now,
                    payload={
                        "item_id": item_id,
                        "location_id": location_id,
                        "batch_id": batch.id,
                        "batch_number": batch_number,
                        "quantity": int(quantity),
                        "expiry_date": expiry_date.isoformat(),
                        "new_quantity_on_hand": result.new_quantity_on_hand,
                    },
                )
            )

        await self.dispatcher.dispatch(events)
        return result

    async def adjust_stock(
        self,
        *,
        item_id: str,
        quantity_change: int,
        reason: str,
        location_id: str,
        facility_id: str,
        performed_by: str,
        movement_type: MovementType | str = MovementType.ADJUSTMENT,
        batch_number: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> AdjustResult:
        """
        Signed correction of on-hand: damage, loss, count correction,
        write-off, returned stock.

        The new on-hand may not go negative and may not drop below what is
        already reserved (InsufficientStock in both cases).
        Without batch_number a loss is drawn from the active batches FEFO and
        a gain is credited to the batch that expires first.
        """
        mtype = MovementType(movement_type)
        if mtype not in ADJUSTABLE_MOVEMENT_TYPES:
            raise ValueError(f"movement_type {mtype.value} is not an adjustment")
        if int(quantity_change) == 0:
            raise ValueError("quantity_change must be non-zero")
        if not reason or not reason.strip():
            raise ValueError("reason is required")
        change = int(quantity_change)

        key = ItemKey(item_id, location_id, facility_id)
        now = self._now()

        async with self.store.unit_of_work(key) as session:
            item = await lock_item_or_404(session, key)
            previous_status = item.status

            before = int(item.quantity_on_hand)
            reserved = int(item.quantity_reserved)
            new_qty = before + change
            if new_qty < reserved:
                raise InsufficientStock(
                    f"cannot remove {-change} units of {item_id}: "
                    f"only {before - reserved} unreserved",
                    requested=-change,
                    available=before - reserved,
                    details={"item_id": item_id, "location_id": location_id},
                )

            if batch_number:
                batch = await lock_batch_or_404(session, key, batch_number)
                batch_new = int(batch.quantity_on_hand) + change
                if batch_new < int(batch.quantity_reserved):
                    raise InsufficientStock(
                        f"batch {batch_number} has only "
                        f"{batch.quantity_unreserved} unreserved units",
                        requested=-change,
                        available=batch.quantity_unreserved,
                        details={"batch_id": batch.id},
                    )
                batch.quantity_on_hand = batch_new
                if batch_new == 0 and batch.status == BatchStatus.ACTIVE:
                    batch.status = BatchStatus.DEPLETED.value
                elif batch_new > 0 and batch.status == BatchStatus.DEPLETED:
                    batch.status = BatchStatus.ACTIVE.value
                batch.updated_at = now
            elif change < 0:
                await draw_from_batches(session, key, -change, now=now)
            else:
                # unlotted gains go to the lot that leaves first
                fefo = await lock_batches_fefo(session, key)
                if fefo:
                    fefo[0].quantity_on_hand = int(fefo[0].quantity_on_hand) + change
                    fefo[0].updated_at = now

            item.quantity_on_hand = new_qty
            item.recalculate(now)

            movement = await append_movement(
                session,
                item=item,
                movement_type=mtype,
                quantity_before=before,
                reason=reason,
                performed_by=performed_by,
                performed_at=now,
                batch_number=batch_number,
                notes=notes,
            )
            result = AdjustResult(new_quantity=new_qty, movement_id=movement.id)
            events = [
                InventoryEvent(
                    event_type=ev.ADJUSTED,
                    key=movement.id,
                    facility_id=facility_id,
                    occurred_at=now,
                    payload={
                        "item_id": item_id,
                        "location_id": location_id,
                        "movement_type": mtype.value,
                        "quantity_change": change,
                        "new_quantity": new_qty,
                        "reason": reason,
                    },
                )
            ]
            low = low_stock_event(item, previous_status=previous_status, now=now)
            if low is not None:
                events.append(low)

        await self.dispatcher.dispatch(events)
        return result

    # ------------------------------------------------------------------
    # reads (no locks, advisory)
    # ------------------------------------------------------------------

    async def get_item(self, key: ItemKey) -> ItemRecord:
        async with self.store.read() as session:
            row = (
                await session.execute(
                    select(InventoryItem).where(
                        InventoryItem.item_id == key.item_id,
                        InventoryItem.location_id == key.location_id,
                        InventoryItem.facility_id == key.facility_id,
                    )
                )
            ).scalar_one_or_none()
            if row is None:
                raise NotFound(f"item {key.item_id} not stocked at {key.location_id}")
            return item_record(row)

    async def check_availability(
        self,
        *,
        item_id: str,
        quantity: int,
        facility_id: str,
        location_id: Optional[str] = None,
    ) -> Availability:
        """
        Advisory snapshot. A True answer reserves nothing; only reserve()
        closes the check-then-act gap.

        Without location_id the figures are summed over the facility.
        """
        if quantity <= 0:
            raise ValueError("quantity must be > 0")

        stmt = select(
            func.count(InventoryItem.id),
            func.coalesce(func.sum(InventoryItem.quantity_on_hand), 0),
            func.coalesce(func.sum(InventoryItem.quantity_reserved), 0),
        ).where(InventoryItem.item_id == item_id, InventoryItem.facility_id == facility_id)
        if location_id:
            stmt = stmt.where(InventoryItem.location_id == location_id)

        async with self.store.read() as session:
            count, on_hand, reserved = (await session.execute(stmt)).one()

        if not count:
            return Availability(False, 0, 0, 0)
        on_hand, reserved = int(on_hand), int(reserved)
        avail = on_hand - reserved
        return Availability(
            available=avail >= quantity,
            quantity_on_hand=on_hand,
            quantity_reserved=reserved,
            quantity_available=avail,
        )

    async def get_item_stock_levels(
        self, *, item_id: str, facility_id: str
    ) -> List[ItemStockLevel]:
        """Every location row of the item with its active batches, FEFO ordered."""
        async with self.store.read() as session:
            items = (
                await session.execute(
                    select(InventoryItem)
                    .where(
                        InventoryItem.item_id == item_id,
                        InventoryItem.facility_id == facility_id,
                    )
                    .order_by(InventoryItem.location_id)
                )
            ).scalars().all()
            if not items:
                return []

            batches = (
                await session.execute(
                    select(StockBatch)
                    .where(
                        StockBatch.item_id == item_id,
                        StockBatch.facility_id == facility_id,
                        StockBatch.status == BatchStatus.ACTIVE.value,
                        StockBatch.quantity_on_hand > 0,
                    )
                    .order_by(StockBatch.expiry_date.asc(), StockBatch.batch_number.asc())
                )
            ).scalars().all()

            by_location: dict[str, list] = {}
            for b in batches:
                by_location.setdefault(b.location_id, []).append(batch_record(b))

            return [
                ItemStockLevel(item=item_record(i), batches=by_location.get(i.location_id, []))
                for i in items
            ]
