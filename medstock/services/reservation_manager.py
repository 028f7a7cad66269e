# medstock/services/reservation_manager.py
"""
Reservation state machine.

    active --commit()--> committed
    active --rollback()--> rolled_back
    active --expire()/sweeper--> expired

Every transition runs in one unit of work holding the item lock, and the
status write itself is conditional:

    UPDATE stock_reservations SET status=:new ... WHERE id=:rid AND status='active'

Whoever gets rowcount == 1 owns the transition. A user call that loses the
race sees Conflict; the sweeper sees a no-op.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from medstock.db.row_locks import ItemKey
from medstock.db.store import StockStore
from medstock.domain import events as ev
from medstock.domain.errors import (
    Conflict,
    InsufficientStock,
    NotFound,
    ReservationExpired,
    StockError,
)
from medstock.domain.events import InventoryEvent
from medstock.domain.records import (
    CommitResult,
    ReservationRecord,
    ReservationResult,
    RollbackResult,
    reservation_record,
)
from medstock.models.enums import BatchStatus, MovementType, ReservationStatus, ReservationType
from medstock.models.inventory_item import InventoryItem
from medstock.models.stock_reservation import StockReservation
from medstock.obs.metrics import reservation_transitions_total, reservations_total
from medstock.services.movement_ledger import append_movement
from medstock.services.notifier import EventDispatcher
from medstock.services.stock_ledger import low_stock_event
from medstock.services.stock_rows import (
    draw_from_batches,
    lock_batch,
    lock_batch_or_404,
    lock_item,
    lock_item_or_404,
    resolve_item_key,
)
from medstock.utils.time import as_utc, utc_now as _utc_now, utc_today

log = logging.getLogger("medstock.reservations")

DEFAULT_TTL = timedelta(minutes=30)


class ReservationManager:
    def __init__(
        self,
        store: StockStore,
        *,
        dispatcher: Optional[EventDispatcher] = None,
        default_ttl: timedelta = DEFAULT_TTL,
        utc_now: Callable[[], datetime] = _utc_now,
    ) -> None:
        if default_ttl <= timedelta(0):
            raise ValueError("default_ttl must be positive")
        self.store = store
        self.dispatcher = dispatcher or EventDispatcher()
        self.default_ttl = default_ttl
        self._now = utc_now

    # ------------------------------------------------------------------
    # internals
    # ------------------------------------------------------------------

    async def _peek_key(self, reservation_id: str) -> Optional[tuple[ItemKey, str]]:
        """Item key + status of a reservation, read without locks."""
        async with self.store.read() as session:
            row = (
                await session.execute(
                    select(
                        StockReservation.item_id,
                        StockReservation.location_id,
                        StockReservation.facility_id,
                        StockReservation.status,
                    ).where(StockReservation.id == reservation_id)
                )
            ).first()
        if row is None:
            return None
        return ItemKey(row[0], row[1], row[2]), str(row[3])

    async def _key_for(self, reservation_id: str, facility_id: str) -> ItemKey:
        peeked = await self._peek_key(reservation_id)
        if peeked is None or peeked[0].facility_id != facility_id:
            raise NotFound(
                f"reservation {reservation_id} not found",
                details={"reservation_id": reservation_id, "facility_id": facility_id},
            )
        return peeked[0]

    @staticmethod
    async def _lock_reservation(session: AsyncSession, reservation_id: str) -> StockReservation:
        row = (
            await session.execute(
                select(StockReservation)
                .where(StockReservation.id == reservation_id)
                .with_for_update()
            )
        ).scalar_one_or_none()
        if row is None:
            raise NotFound(f"reservation {reservation_id} not found")
        return row

    @staticmethod
    async def _transition(
        session: AsyncSession,
        reservation_id: str,
        status: ReservationStatus,
        values: Dict[str, Any],
    ) -> bool:
        res = await session.execute(
            update(StockReservation)
            .where(
                StockReservation.id == reservation_id,
                StockReservation.status == ReservationStatus.ACTIVE.value,
            )
            .values(status=status.value, **values)
        )
        return res.rowcount == 1

    async def _release_hold(
        self, session: AsyncSession, item: InventoryItem, res: StockReservation, now: datetime
    ) -> None:
        """Give a reservation's units back to available; on-hand untouched."""
        item.quantity_reserved = int(item.quantity_reserved) - int(res.quantity)
        item.recalculate(now)
        if res.batch_number:
            batch = await lock_batch(session, item.key, res.batch_number)
            if batch is not None:
                batch.quantity_reserved = max(0, int(batch.quantity_reserved) - int(res.quantity))
                batch.updated_at = now
        await session.flush()

    def _event(self, event_type: str, res: StockReservation, now: datetime, **extra: Any):
        payload = {
            "reservation_id": res.id,
            "item_id": res.item_id,
            "location_id": res.location_id,
            "quantity": int(res.quantity),
            "reservation_type": res.reservation_type,
            "reference": res.reference,
            "batch_number": res.batch_number,
        }
        payload.update(extra)
        return InventoryEvent(
            event_type=event_type,
            key=res.id,
            facility_id=res.facility_id,
            occurred_at=now,
            payload=payload,
        )

    # ------------------------------------------------------------------
    # reserve
    # ------------------------------------------------------------------

    async def reserve(
        self,
        *,
        item_id: str,
        quantity: int,
        reservation_type: ReservationType | str,
        reference: str,
        facility_id: str,
        reserved_by: str,
        ttl: Optional[timedelta] = None,
        location_id: Optional[str] = None,
        batch_number: Optional[str] = None,
    ) -> ReservationResult:
        """
        Hold `quantity` units of an item for `ttl` (default_ttl when None).

        Raises:
          NotFound           item (or requested batch) is not stocked there
          InsufficientStock  available < quantity (batch: unreserved < quantity)
          Conflict           location ambiguous, or batch not reservable
        """
        if isinstance(quantity, bool) or int(quantity) != quantity or quantity <= 0:
            raise ValueError("quantity must be a positive integer")
        rtype = ReservationType(reservation_type).value
        if not reference or not str(reference).strip():
            raise ValueError("reference is required")
        if not reserved_by:
            raise ValueError("reserved_by is required")
        ttl = self.default_ttl if ttl is None else ttl
        if ttl <= timedelta(0):
            raise ValueError("ttl must be positive")

        try:
            result, events = await self._reserve(
                item_id=item_id,
                quantity=int(quantity),
                rtype=rtype,
                reference=str(reference).strip(),
                facility_id=facility_id,
                reserved_by=reserved_by,
                ttl=ttl,
                location_id=location_id,
                batch_number=batch_number,
            )
        except StockError as e:
            reservations_total.labels(outcome=e.code.lower()).inc()
            raise

        reservations_total.labels(outcome="ok").inc()
        await self.dispatcher.dispatch(events)
        return result

    async def _reserve(
        self,
        *,
        item_id: str,
        quantity: int,
        rtype: str,
        reference: str,
        facility_id: str,
        reserved_by: str,
        ttl: timedelta,
        location_id: Optional[str],
        batch_number: Optional[str],
    ):
        async with self.store.read() as session:
            key = await resolve_item_key(
                session, item_id=item_id, facility_id=facility_id, location_id=location_id
            )

        now = self._now()
        async with self.store.unit_of_work(key) as session:
            item = await lock_item_or_404(session, key)
            previous_status = item.status

            available = int(item.quantity_on_hand) - int(item.quantity_reserved)
            if available < quantity:
                raise InsufficientStock(
                    f"insufficient stock for {item_id} at {key.location_id}: "
                    f"requested {quantity}, available {available}",
                    requested=quantity,
                    available=available,
                    details={"item_id": item_id, "location_id": key.location_id},
                )

            if batch_number:
                batch = await lock_batch_or_404(session, key, batch_number)
                if batch.status != BatchStatus.ACTIVE:
                    raise Conflict(
                        f"batch {batch_number} is {batch.status}",
                        details={"batch_id": batch.id, "status": batch.status},
                    )
                if batch.expiry_date < utc_today(now):
                    raise Conflict(
                        f"batch {batch_number} expired on {batch.expiry_date}",
                        details={"batch_id": batch.id},
                    )
                if batch.quantity_unreserved < quantity:
                    raise InsufficientStock(
                        f"batch {batch_number} has only "
                        f"{batch.quantity_unreserved} unreserved units",
                        requested=quantity,
                        available=batch.quantity_unreserved,
                        details={"batch_id": batch.id},
                    )
                batch.quantity_reserved = int(batch.quantity_reserved) + quantity
                batch.updated_at = now

            item.quantity_reserved = int(item.quantity_reserved) + quantity
            item.recalculate(now)

            res = StockReservation(
                item_id=item_id,
                location_id=key.location_id,
                facility_id=facility_id,
                batch_number=batch_number,
                quantity=quantity,
                reservation_type=rtype,
                reference=reference,
                status=ReservationStatus.ACTIVE.value,
                reserved_at=now,
                expires_at=now + ttl,
                reserved_by=reserved_by,
            )
            session.add(res)
            await session.flush()

            result = ReservationResult(
                reservation_id=res.id,
                item_id=item_id,
                location_id=key.location_id,
                quantity=quantity,
                expires_at=as_utc(res.expires_at),
                batch_number=batch_number,
            )
            events = [self._event(ev.RESERVED, res, now, expires_at=result.expires_at.isoformat())]
            low = low_stock_event(item, previous_status=previous_status, now=now)
            if low is not None:
                events.append(low)

        log.info(
            "reserved %d x %s for %s",
            quantity,
            key,
            reference,
            extra={"reservation_id": result.reservation_id, "reserved_by": reserved_by},
        )
        return result, events

    # ------------------------------------------------------------------
    # commit
    # ------------------------------------------------------------------

    async def commit(
        self,
        *,
        reservation_id: str,
        performed_by: str,
        facility_id: str,
        actual_quantity: Optional[int] = None,
        notes: Optional[str] = None,
    ) -> CommitResult:
        """
        Turn a hold into a dispense.

        on_hand drops by the dispensed amount; reserved drops by the whole
        reserved quantity, so an under-dispense gives the rest back to
        available. A reservation past expires_at is refused even if the
        sweeper has not reached it yet; releasing it stays the sweeper's job.
        """
        if actual_quantity is not None and (
            isinstance(actual_quantity, bool) or int(actual_quantity) <= 0
        ):
            raise ValueError("actual_quantity must be a positive integer")

        key = await self._key_for(reservation_id, facility_id)
        now = self._now()

        async with self.store.unit_of_work(key) as session:
            item = await lock_item_or_404(session, key)
            res = await self._lock_reservation(session, reservation_id)

            if res.status == ReservationStatus.EXPIRED:
                raise ReservationExpired(
                    f"reservation {reservation_id} has expired",
                    details={"reservation_id": reservation_id},
                )
            if res.status != ReservationStatus.ACTIVE:
                raise Conflict(
                    f"reservation {reservation_id} is already {res.status}",
                    details={"reservation_id": reservation_id, "status": res.status},
                )
            if now > as_utc(res.expires_at):
                raise ReservationExpired(
                    f"reservation {reservation_id} expired at {as_utc(res.expires_at).isoformat()}",
                    details={"reservation_id": reservation_id},
                )

            reserved_qty = int(res.quantity)
            actual = reserved_qty if actual_quantity is None else int(actual_quantity)
            if actual > reserved_qty:
                raise Conflict(
                    f"cannot commit {actual}: only {reserved_qty} reserved",
                    details={"reservation_id": reservation_id, "reserved": reserved_qty},
                )

            won = await self._transition(
                session,
                reservation_id,
                ReservationStatus.COMMITTED,
                {
                    "quantity_committed": actual,
                    "committed_at": now,
                    "committed_by": performed_by,
                    "released_at": now,
                },
            )
            if not won:
                raise Conflict(
                    f"reservation {reservation_id} is no longer active",
                    details={"reservation_id": reservation_id},
                )

            previous_status = item.status
            before = int(item.quantity_on_hand)
            item.quantity_on_hand = before - actual
            item.quantity_reserved = int(item.quantity_reserved) - reserved_qty
            item.last_dispensed_at = now
            item.recalculate(now)

            if res.batch_number:
                batch = await lock_batch(session, key, res.batch_number)
                if batch is not None:
                    batch.quantity_on_hand = int(batch.quantity_on_hand) - actual
                    batch.quantity_reserved = max(0, int(batch.quantity_reserved) - reserved_qty)
                    batch.quantity_dispensed = int(batch.quantity_dispensed) + actual
                    if batch.quantity_on_hand == 0 and batch.status == BatchStatus.ACTIVE:
                        batch.status = BatchStatus.DEPLETED.value
                    batch.updated_at = now
            else:
                await draw_from_batches(session, key, actual, now=now, dispensed=True)

            movement = await append_movement(
                session,
                item=item,
                movement_type=MovementType.DISPENSING,
                quantity_before=before,
                reason=f"{res.reservation_type} dispensed",
                performed_by=performed_by,
                performed_at=now,
                reference=res.reference,
                batch_number=res.batch_number,
                from_location=key.location_id,
                notes=notes,
            )

            result = CommitResult(
                reservation_id=reservation_id,
                quantity_committed=actual,
                quantity_released=reserved_qty - actual,
                movement_id=movement.id,
            )
            events = [
                self._event(
                    ev.COMMITTED,
                    res,
                    now,
                    quantity_committed=actual,
                    quantity_released=result.quantity_released,
                    movement_id=movement.id,
                )
            ]
            low = low_stock_event(item, previous_status=previous_status, now=now)
            if low is not None:
                events.append(low)

        reservation_transitions_total.labels(status=ReservationStatus.COMMITTED.value).inc()
        log.info(
            "committed reservation %s (%d dispensed, %d released)",
            reservation_id,
            result.quantity_committed,
            result.quantity_released,
            extra={"performed_by": performed_by, "movement_id": result.movement_id},
        )
        await self.dispatcher.dispatch(events)
        return result

    # ------------------------------------------------------------------
    # rollback / expire
    # ------------------------------------------------------------------

    async def rollback(
        self,
        *,
        reservation_id: str,
        reason: str,
        performed_by: str,
        facility_id: str,
    ) -> RollbackResult:
        key = await self._key_for(reservation_id, facility_id)
        now = self._now()

        async with self.store.unit_of_work(key) as session:
            item = await lock_item_or_404(session, key)
            res = await self._lock_reservation(session, reservation_id)

            won = await self._transition(
                session,
                reservation_id,
                ReservationStatus.ROLLED_BACK,
                {"rolled_back_by": performed_by, "rollback_reason": reason, "released_at": now},
            )
            if not won:
                raise Conflict(
                    f"reservation {reservation_id} is {res.status}, not active",
                    details={"reservation_id": reservation_id, "status": res.status},
                )
            await self._release_hold(session, item, res, now)

            result = RollbackResult(
                reservation_id=reservation_id, quantity_released=int(res.quantity)
            )
            event = self._event(ev.ROLLED_BACK, res, now, reason=reason)

        reservation_transitions_total.labels(status=ReservationStatus.ROLLED_BACK.value).inc()
        log.info(
            "rolled back reservation %s (%d released)",
            reservation_id,
            result.quantity_released,
            extra={"performed_by": performed_by, "reason": reason},
        )
        await self.dispatcher.dispatch([event])
        return result

    async def expire(self, reservation_id: str, *, now: Optional[datetime] = None) -> bool:
        """
        Sweeper entry point: release one overdue reservation.

        Returns False (no-op) when the row is gone, already terminal, or not
        yet due; repeated or concurrent calls are therefore harmless.
        """
        now = as_utc(now) or self._now()

        peeked = await self._peek_key(reservation_id)
        if peeked is None or peeked[1] != ReservationStatus.ACTIVE:
            return False
        key = peeked[0]

        async with self.store.unit_of_work(key) as session:
            item = await lock_item(session, key)
            res = (
                await session.execute(
                    select(StockReservation)
                    .where(StockReservation.id == reservation_id)
                    .with_for_update()
                )
            ).scalar_one_or_none()
            if item is None or res is None:
                return False
            if res.status != ReservationStatus.ACTIVE or as_utc(res.expires_at) >= now:
                return False

            won = await self._transition(
                session, reservation_id, ReservationStatus.EXPIRED, {"released_at": now}
            )
            if not won:
                return False
            await self._release_hold(session, item, res, now)
            event = self._event(
                ev.EXPIRED, res, now, expires_at=as_utc(res.expires_at).isoformat()
            )

        reservation_transitions_total.labels(status=ReservationStatus.EXPIRED.value).inc()
        log.info("expired reservation %s (%d released)", reservation_id, int(res.quantity))
        await self.dispatcher.dispatch([event])
        return True

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------

    async def find_expired(self, *, now: Optional[datetime] = None, limit: int = 100) -> List[str]:
        """Active reservations past expires_at, oldest first. Lock-free candidate scan."""
        now = as_utc(now) or self._now()
        async with self.store.read() as session:
            res = await session.execute(
                select(StockReservation.id)
                .where(
                    StockReservation.status == ReservationStatus.ACTIVE.value,
                    StockReservation.expires_at < now,
                )
                .order_by(StockReservation.expires_at.asc(), StockReservation.id.asc())
                .limit(int(limit))
            )
            return [str(x) for x in res.scalars().all()]

    async def get_reservation(self, reservation_id: str, *, facility_id: str) -> ReservationRecord:
        async with self.store.read() as session:
            row = await session.get(StockReservation, reservation_id)
            if row is None or row.facility_id != facility_id:
                raise NotFound(
                    f"reservation {reservation_id} not found",
                    details={"reservation_id": reservation_id, "facility_id": facility_id},
                )
            return reservation_record(row)

    async def find_active_by_reference(
        self, reference: str, *, facility_id: str
    ) -> List[ReservationRecord]:
        async with self.store.read() as session:
            rows = (
                await session.execute(
                    select(StockReservation)
                    .where(
                        StockReservation.reference == reference,
                        StockReservation.facility_id == facility_id,
                        StockReservation.status == ReservationStatus.ACTIVE.value,
                    )
                    .order_by(StockReservation.reserved_at.asc(), StockReservation.id.asc())
                )
            ).scalars().all()
            return [reservation_record(r) for r in rows]
