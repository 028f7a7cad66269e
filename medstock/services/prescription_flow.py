# medstock/services/prescription_flow.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import List, Optional, Sequence

from medstock.domain.errors import Conflict, StockError
from medstock.domain.records import PrescriptionReservation, ReservationResult
from medstock.models.enums import ReservationType
from medstock.services.reservation_manager import ReservationManager

log = logging.getLogger("medstock.prescriptions")

PRESCRIPTION_TTL = timedelta(minutes=60)


@dataclass(frozen=True)
class PrescriptionLine:
    item_id: str
    quantity: int
    location_id: Optional[str] = None
    batch_number: Optional[str] = None


class PrescriptionReservations:
    """
    Reservation bundle for one prescription, referenced by its id.

    auto_reserve is all-or-nothing: when one line cannot be held, the lines
    already held are rolled back before the error is re-raised.
    """

    def __init__(
        self, manager: ReservationManager, *, ttl: timedelta = PRESCRIPTION_TTL
    ) -> None:
        self.manager = manager
        self.ttl = ttl

    async def auto_reserve_for_prescription(
        self,
        *,
        prescription_id: str,
        lines: Sequence[PrescriptionLine],
        facility_id: str,
        reserved_by: str,
    ) -> PrescriptionReservation:
        if not lines:
            raise ValueError("prescription has no lines")

        existing = await self.manager.find_active_by_reference(
            prescription_id, facility_id=facility_id
        )
        if existing:
            raise Conflict(
                f"prescription {prescription_id} already holds {len(existing)} reservation(s)",
                details={"prescription_id": prescription_id},
            )

        held: List[ReservationResult] = []
        try:
            for line in lines:
                held.append(
                    await self.manager.reserve(
                        item_id=line.item_id,
                        quantity=line.quantity,
                        reservation_type=ReservationType.MEDICATION_DISPENSE,
                        reference=prescription_id,
                        facility_id=facility_id,
                        reserved_by=reserved_by,
                        ttl=self.ttl,
                        location_id=line.location_id,
                        batch_number=line.batch_number,
                    )
                )
        except (StockError, ValueError):
            for r in reversed(held):
                try:
                    await self.manager.rollback(
                        reservation_id=r.reservation_id,
                        reason="prescription reservation incomplete",
                        performed_by=reserved_by,
                        facility_id=facility_id,
                    )
                except Conflict:
                    # expired or committed meanwhile; nothing left to release
                    log.warning(
                        "prescription %s: reservation %s no longer active during release",
                        prescription_id,
                        r.reservation_id,
                    )
            log.warning(
                "prescription %s: reservation failed after %d line(s), released",
                prescription_id,
                len(held),
            )
            raise

        log.info("prescription %s: reserved %d line(s)", prescription_id, len(held))
        return PrescriptionReservation(prescription_id=prescription_id, reservations=held)

    async def auto_release_for_canceled_prescription(
        self,
        *,
        prescription_id: str,
        facility_id: str,
        performed_by: str,
        reason: str = "prescription canceled",
    ) -> int:
        """Roll back every active reservation of the prescription; returns units released."""
        active = await self.manager.find_active_by_reference(
            prescription_id, facility_id=facility_id
        )
        released = 0
        for r in active:
            try:
                res = await self.manager.rollback(
                    reservation_id=r.reservation_id,
                    reason=reason,
                    performed_by=performed_by,
                    facility_id=facility_id,
                )
            except Conflict:
                # committed or expired since the lookup
                continue
            released += res.quantity_released
        log.info(
            "prescription %s canceled: %d unit(s) released", prescription_id, released
        )
        return released
