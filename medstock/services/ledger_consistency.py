# medstock/services/ledger_consistency.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from sqlalchemy import func, select

from medstock.db.row_locks import ItemKey
from medstock.db.store import StockStore
from medstock.models.enums import ReservationStatus
from medstock.models.inventory_item import InventoryItem
from medstock.models.stock_movement import StockMovement
from medstock.models.stock_reservation import StockReservation

log = logging.getLogger("medstock.ledger")


@dataclass(frozen=True)
class LedgerMismatch:
    key: ItemKey
    check: str
    expected: int
    actual: int


@dataclass(frozen=True)
class LedgerReport:
    items_checked: int
    mismatches: List[LedgerMismatch] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.mismatches


async def verify_ledger(
    store: StockStore,
    *,
    facility_id: str,
    item_id: Optional[str] = None,
) -> LedgerReport:
    """
    Cross-check the three books of a facility (read-only, no locks):

    1) movements: sum(quantity_change) per item row == quantity_on_hand
    2) reservations: sum(quantity) of active reservations == quantity_reserved
    3) row: quantity_available == on_hand - reserved

    Meant for quiet periods or audits; a concurrent writer can make a single
    run report a transient mismatch.
    """
    item_q = select(InventoryItem).where(InventoryItem.facility_id == facility_id)
    mv_q = (
        select(
            StockMovement.item_id,
            StockMovement.location_id,
            func.sum(StockMovement.quantity_change),
        )
        .where(StockMovement.facility_id == facility_id)
        .group_by(StockMovement.item_id, StockMovement.location_id)
    )
    rs_q = (
        select(
            StockReservation.item_id,
            StockReservation.location_id,
            func.sum(StockReservation.quantity),
        )
        .where(
            StockReservation.facility_id == facility_id,
            StockReservation.status == ReservationStatus.ACTIVE.value,
        )
        .group_by(StockReservation.item_id, StockReservation.location_id)
    )
    if item_id:
        item_q = item_q.where(InventoryItem.item_id == item_id)
        mv_q = mv_q.where(StockMovement.item_id == item_id)
        rs_q = rs_q.where(StockReservation.item_id == item_id)

    async with store.read() as session:
        items = (await session.execute(item_q)).scalars().all()
        moved: Dict[Tuple[str, str], int] = {
            (r[0], r[1]): int(r[2] or 0) for r in (await session.execute(mv_q)).all()
        }
        held: Dict[Tuple[str, str], int] = {
            (r[0], r[1]): int(r[2] or 0) for r in (await session.execute(rs_q)).all()
        }

        mismatches: List[LedgerMismatch] = []
        for it in items:
            key = it.key
            pair = (it.item_id, it.location_id)
            on_hand = int(it.quantity_on_hand)
            reserved = int(it.quantity_reserved)

            if moved.get(pair, 0) != on_hand:
                mismatches.append(LedgerMismatch(key, "movements", on_hand, moved.get(pair, 0)))
            if held.get(pair, 0) != reserved:
                mismatches.append(LedgerMismatch(key, "reservations", reserved, held.get(pair, 0)))
            if int(it.quantity_available) != on_hand - reserved:
                mismatches.append(
                    LedgerMismatch(key, "available", on_hand - reserved, int(it.quantity_available))
                )

    report = LedgerReport(items_checked=len(items), mismatches=mismatches)
    if not report.ok:
        log.warning(
            "ledger verification found %d mismatch(es) in facility %s",
            len(mismatches),
            facility_id,
        )
    return report
