# medstock/services/transfer_service.py
from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from medstock.db.row_locks import ItemKey
from medstock.db.store import StockStore
from medstock.domain import events as ev
from medstock.domain.errors import Conflict, NotFound
from medstock.domain.events import InventoryEvent
from medstock.domain.records import TransferResult
from medstock.models.enums import BatchStatus, MovementType
from medstock.models.inventory_item import InventoryItem
from medstock.models.stock_batch import StockBatch
from medstock.services.movement_ledger import append_movement
from medstock.services.notifier import EventDispatcher
from medstock.services.stock_ledger import low_stock_event
from medstock.services.stock_rows import (
    draw_from_batches,
    lock_batch,
    lock_batch_or_404,
    lock_items,
)
from medstock.utils.time import utc_now as _utc_now

log = logging.getLogger("medstock.transfers")


class TransferService:
    """
    Location-to-location moves inside one facility.

    Both item rows are locked in ascending key order (never call order), the
    two quantity changes and both `transfer` movements commit together or
    not at all.
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

    @staticmethod
    async def _credit_destination_batch(
        session: AsyncSession,
        dst_key: ItemKey,
        src_batch: StockBatch,
        units: int,
        *,
        now: datetime,
        performed_by: str,
    ) -> StockBatch:
        """
        Land `units` of `src_batch` in the same-numbered batch at the destination.

        Transferred-in units count as received there, so the destination batch
        keeps on_hand = received - dispensed - write-offs.
        """
        dst_batch = await lock_batch(session, dst_key, src_batch.batch_number)
        if dst_batch is None:
            dst_batch = StockBatch(
                item_id=dst_key.item_id,
                location_id=dst_key.location_id,
                facility_id=dst_key.facility_id,
                batch_number=src_batch.batch_number,
                quantity_received=0,
                quantity_on_hand=0,
                quantity_reserved=0,
                quantity_dispensed=0,
                expiry_date=src_batch.expiry_date,
                received_date=now,
                status=BatchStatus.ACTIVE.value,
                supplier_id=src_batch.supplier_id,
                unit_cost=src_batch.unit_cost,
                created_by=performed_by,
                updated_at=now,
            )
            session.add(dst_batch)
        elif dst_batch.status not in (BatchStatus.ACTIVE, BatchStatus.DEPLETED):
            raise Conflict(
                f"destination batch {dst_batch.batch_number} is {dst_batch.status}",
                details={"batch_id": dst_batch.id, "status": dst_batch.status},
            )
        elif dst_batch.expiry_date != src_batch.expiry_date:
            raise Conflict(
                f"destination batch {dst_batch.batch_number} has expiry {dst_batch.expiry_date}",
                details={
                    "batch_id": dst_batch.id,
                    "expiry_date": dst_batch.expiry_date.isoformat(),
                },
            )

        dst_batch.quantity_received = int(dst_batch.quantity_received) + units
        dst_batch.quantity_on_hand = int(dst_batch.quantity_on_hand) + units
        dst_batch.status = BatchStatus.ACTIVE.value
        dst_batch.updated_at = now
        return dst_batch

    async def transfer_stock(
        self,
        *,
        item_id: str,
        quantity: int,
        from_location: str,
        to_location: str,
        facility_id: str,
        performed_by: str,
        batch_number: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> TransferResult:
        if isinstance(quantity, bool) or int(quantity) != quantity or quantity <= 0:
            raise ValueError("quantity must be a positive integer")
        if from_location == to_location:
            raise ValueError("from_location and to_location must differ")
        quantity = int(quantity)

        src_key = ItemKey(item_id, from_location, facility_id)
        dst_key = ItemKey(item_id, to_location, facility_id)
        now = self._now()

        async with self.store.unit_of_work(src_key, dst_key) as session:
            rows = await lock_items(session, [src_key, dst_key])
            src = rows[src_key]
            dst = rows[dst_key]
            if src is None:
                raise NotFound(
                    f"item {item_id} not stocked at {from_location}",
                    details={"item_id": item_id, "location_id": from_location},
                )

            available = int(src.quantity_on_hand) - int(src.quantity_reserved)
            if available < quantity:
                raise Conflict(
                    f"cannot transfer {quantity} of {item_id}: {available} available "
                    f"at {from_location}",
                    details={
                        "item_id": item_id,
                        "location_id": from_location,
                        "requested": quantity,
                        "available": available,
                    },
                )

            moves: List[Tuple[StockBatch, int]]
            if batch_number:
                src_batch = await lock_batch_or_404(session, src_key, batch_number)
                if src_batch.status != BatchStatus.ACTIVE:
                    raise Conflict(
                        f"batch {batch_number} is {src_batch.status}",
                        details={"batch_id": src_batch.id, "status": src_batch.status},
                    )
                if src_batch.quantity_unreserved < quantity:
                    raise Conflict(
                        f"batch {batch_number} has only "
                        f"{src_batch.quantity_unreserved} unreserved units",
                        details={
                            "batch_id": src_batch.id,
                            "requested": quantity,
                            "available": src_batch.quantity_unreserved,
                        },
                    )
                src_batch.quantity_on_hand = int(src_batch.quantity_on_hand) - quantity
                if src_batch.quantity_on_hand == 0:
                    src_batch.status = BatchStatus.DEPLETED.value
                src_batch.updated_at = now
                moves = [(src_batch, quantity)]
            else:
                moves = await draw_from_batches(session, src_key, quantity, now=now)

            for src_batch, units in moves:
                await self._credit_destination_batch(
                    session, dst_key, src_batch, units, now=now, performed_by=performed_by
                )

            if dst is None:
                dst = InventoryItem(
                    item_id=item_id,
                    location_id=to_location,
                    facility_id=facility_id,
                    sku=src.sku,
                    name=src.name,
                    item_type=src.item_type,
                    unit_of_measure=src.unit_of_measure,
                    quantity_on_hand=0,
                    quantity_reserved=0,
                    reorder_level=src.reorder_level,
                    reorder_quantity=src.reorder_quantity,
                    max_stock_level=src.max_stock_level,
                    created_at=now,
                )
                session.add(dst)

            src_status = src.status
            src_before = int(src.quantity_on_hand)
            dst_before = int(dst.quantity_on_hand or 0)

            src.quantity_on_hand = src_before - quantity
            src.recalculate(now)
            dst.quantity_on_hand = dst_before + quantity
            dst.last_restocked_at = now
            dst.recalculate(now)

            reason = f"transfer {from_location} -> {to_location}"
            out_mv = await append_movement(
                session,
                item=src,
                movement_type=MovementType.TRANSFER,
                quantity_before=src_before,
                reason=reason,
                performed_by=performed_by,
                performed_at=now,
                batch_number=batch_number,
                from_location=from_location,
                to_location=to_location,
                notes=notes,
            )
            in_mv = await append_movement(
                session,
                item=dst,
                movement_type=MovementType.TRANSFER,
                quantity_before=dst_before,
                reason=reason,
                performed_by=performed_by,
                performed_at=now,
                batch_number=batch_number,
                from_location=from_location,
                to_location=to_location,
                notes=notes,
            )

            result = TransferResult(
                success=True,
                quantity=quantity,
                source_quantity_after=int(src.quantity_on_hand),
                destination_quantity_after=int(dst.quantity_on_hand),
                movement_ids=(out_mv.id, in_mv.id),
            )
            events = [
                InventoryEvent(
                    event_type=ev.TRANSFERRED,
                    key=out_mv.id,
                    facility_id=facility_id,
                    occurred_at=now,
                    payload={
                        "item_id": item_id,
                        "quantity": quantity,
                        "from_location": from_location,
                        "to_location": to_location,
                        "batch_number": batch_number,
                        "source_quantity_after": result.source_quantity_after,
                        "destination_quantity_after": result.destination_quantity_after,
                    },
                )
            ]
            low = low_stock_event(src, previous_status=src_status, now=now)
            if low is not None:
                events.append(low)

        log.info(
            "transferred %d x %s %s -> %s",
            quantity,
            item_id,
            from_location,
            to_location,
            extra={"facility_id": facility_id, "performed_by": performed_by},
        )
        await self.dispatcher.dispatch(events)
        return result
