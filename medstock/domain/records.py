# medstock/domain/records.py
"""
Typed records returned by the services.

ORM instances never leave a unit of work; the *_record() functions below are
the only place where a row is turned into something callers may keep.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from medstock.models.inventory_item import InventoryItem
from medstock.models.stock_batch import StockBatch
from medstock.models.stock_movement import StockMovement
from medstock.models.stock_reservation import StockReservation
from medstock.utils.time import as_utc


@dataclass(frozen=True)
class ItemRecord:
    item_id: str
    location_id: str
    facility_id: str
    sku: str
    name: str
    item_type: str
    unit_of_measure: str
    quantity_on_hand: int
    quantity_reserved: int
    quantity_available: int
    reorder_level: int
    reorder_quantity: int
    max_stock_level: Optional[int]
    status: str
    version: int
    last_restocked_at: Optional[datetime]
    last_dispensed_at: Optional[datetime]


@dataclass(frozen=True)
class BatchRecord:
    batch_id: str
    item_id: str
    location_id: str
    facility_id: str
    batch_number: str
    quantity_received: int
    quantity_on_hand: int
    quantity_reserved: int
    quantity_dispensed: int
    expiry_date: date
    received_date: datetime
    status: str
    supplier_id: Optional[str]
    unit_cost: Optional[Decimal]
    created_by: Optional[str]


@dataclass(frozen=True)
class ReservationRecord:
    reservation_id: str
    item_id: str
    location_id: str
    facility_id: str
    batch_number: Optional[str]
    quantity: int
    reservation_type: str
    reference: str
    status: str
    reserved_at: datetime
    expires_at: datetime
    reserved_by: str
    quantity_committed: Optional[int] = None
    committed_at: Optional[datetime] = None
    committed_by: Optional[str] = None
    released_at: Optional[datetime] = None
    rolled_back_by: Optional[str] = None
    rollback_reason: Optional[str] = None


@dataclass(frozen=True)
class MovementRecord:
    movement_id: str
    item_id: str
    location_id: str
    facility_id: str
    batch_number: Optional[str]
    movement_type: str
    quantity_change: int
    quantity_before: int
    quantity_after: int
    from_location: Optional[str]
    to_location: Optional[str]
    reference: Optional[str]
    reason: str
    notes: Optional[str]
    performed_by: str
    performed_at: datetime


# ---------------------------------------------------------------------------
# operation results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ReservationResult:
    reservation_id: str
    item_id: str
    location_id: str
    quantity: int
    expires_at: datetime
    batch_number: Optional[str] = None


@dataclass(frozen=True)
class CommitResult:
    reservation_id: str
    quantity_committed: int
    quantity_released: int
    movement_id: str


@dataclass(frozen=True)
class RollbackResult:
    reservation_id: str
    quantity_released: int


@dataclass(frozen=True)
class ReceiveResult:
    batch_id: str
    new_quantity_on_hand: int
    movement_id: str


@dataclass(frozen=True)
class AdjustResult:
    new_quantity: int
    movement_id: str


@dataclass(frozen=True)
class Availability:
    available: bool
    quantity_on_hand: int
    quantity_reserved: int
    quantity_available: int


@dataclass(frozen=True)
class TransferResult:
    success: bool
    quantity: int
    source_quantity_after: int
    destination_quantity_after: int
    movement_ids: tuple[str, str] = ("", "")


@dataclass(frozen=True)
class ItemStockLevel:
    item: ItemRecord
    batches: List[BatchRecord] = field(default_factory=list)


@dataclass(frozen=True)
class BatchStatusChange:
    batch_id: str
    old_status: str
    new_status: str
    quantity_written: int
    movement_id: Optional[str]


@dataclass(frozen=True)
class PrescriptionReservation:
    prescription_id: str
    reservations: List[ReservationResult]


@dataclass(frozen=True)
class MovementFilter:
    facility_id: str
    item_id: Optional[str] = None
    location_id: Optional[str] = None
    movement_type: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    reference: Optional[str] = None
    limit: int = 100


# ---------------------------------------------------------------------------
# row -> record
# ---------------------------------------------------------------------------


def item_record(row: InventoryItem) -> ItemRecord:
    return ItemRecord(
        item_id=row.item_id,
        location_id=row.location_id,
        facility_id=row.facility_id,
        sku=row.sku,
        name=row.name,
        item_type=row.item_type,
        unit_of_measure=row.unit_of_measure,
        quantity_on_hand=int(row.quantity_on_hand),
        quantity_reserved=int(row.quantity_reserved),
        quantity_available=int(row.quantity_available),
        reorder_level=int(row.reorder_level),
        reorder_quantity=int(row.reorder_quantity),
        max_stock_level=row.max_stock_level,
        status=row.status,
        version=int(row.version),
        last_restocked_at=as_utc(row.last_restocked_at),
        last_dispensed_at=as_utc(row.last_dispensed_at),
    )


def batch_record(row: StockBatch) -> BatchRecord:
    return BatchRecord(
        batch_id=row.id,
        item_id=row.item_id,
        location_id=row.location_id,
        facility_id=row.facility_id,
        batch_number=row.batch_number,
        quantity_received=int(row.quantity_received),
        quantity_on_hand=int(row.quantity_on_hand),
        quantity_reserved=int(row.quantity_reserved),
        quantity_dispensed=int(row.quantity_dispensed),
        expiry_date=row.expiry_date,
        received_date=as_utc(row.received_date),
        status=row.status,
        supplier_id=row.supplier_id,
        unit_cost=row.unit_cost,
        created_by=row.created_by,
    )


def reservation_record(row: StockReservation) -> ReservationRecord:
    return ReservationRecord(
        reservation_id=row.id,
        item_id=row.item_id,
        location_id=row.location_id,
        facility_id=row.facility_id,
        batch_number=row.batch_number,
        quantity=int(row.quantity),
        reservation_type=row.reservation_type,
        reference=row.reference,
        status=row.status,
        reserved_at=as_utc(row.reserved_at),
        expires_at=as_utc(row.expires_at),
        reserved_by=row.reserved_by,
        quantity_committed=row.quantity_committed,
        committed_at=as_utc(row.committed_at),
        committed_by=row.committed_by,
        released_at=as_utc(row.released_at),
        rolled_back_by=row.rolled_back_by,
        rollback_reason=row.rollback_reason,
    )


def movement_record(row: StockMovement) -> MovementRecord:
    return MovementRecord(
        movement_id=row.id,
        item_id=row.item_id,
        location_id=row.location_id,
        facility_id=row.facility_id,
        batch_number=row.batch_number,
        movement_type=row.movement_type,
        quantity_change=int(row.quantity_change),
        quantity_before=int(row.quantity_before),
        quantity_after=int(row.quantity_after),
        from_location=row.from_location,
        to_location=row.to_location,
        reference=row.reference,
        reason=row.reason,
        notes=row.notes,
        performed_by=row.performed_by,
        performed_at=as_utc(row.performed_at),
    )
