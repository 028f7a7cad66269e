# medstock/services/inventory_engine.py
from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Callable, List, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncEngine

from medstock.core.config import AppSettings, get_settings
from medstock.db.row_locks import ItemKey
from medstock.db.session import build_engine
from medstock.db.store import StockStore
from medstock.domain.ports import CatalogLookup, InventoryNotifier
from medstock.domain.records import (
    AdjustResult,
    Availability,
    BatchRecord,
    BatchStatusChange,
    CommitResult,
    ItemRecord,
    ItemStockLevel,
    MovementFilter,
    MovementRecord,
    PrescriptionReservation,
    ReceiveResult,
    ReservationRecord,
    ReservationResult,
    RollbackResult,
    TransferResult,
)
from medstock.models.enums import BatchStatus, ItemType, MovementType, ReservationType
from medstock.services.batch_tracker import BatchTracker
from medstock.services.ledger_consistency import LedgerReport, verify_ledger
from medstock.services.movement_ledger import MovementLedger
from medstock.services.notifier import EventDispatcher
from medstock.services.prescription_flow import PrescriptionLine, PrescriptionReservations
from medstock.services.reservation_manager import ReservationManager
from medstock.services.reservation_sweeper import ExpirationSweeper, sweep_expired_reservations
from medstock.services.stock_ledger import StockLedgerService
from medstock.services.transfer_service import TransferService
from medstock.utils.time import utc_now as _utc_now

log = logging.getLogger("medstock.engine")


class InventoryEngine:
    """
    The operation set an enclosing service layer calls in-process.

    Wires one StockStore and one EventDispatcher into the component services;
    owns nothing else. Use from_settings() for the usual composition, or the
    constructor to inject a store built elsewhere (tests, other apps).
    """

    def __init__(
        self,
        store: StockStore,
        *,
        notifier: Optional[InventoryNotifier] = None,
        catalog: Optional[CatalogLookup] = None,
        reservation_ttl: timedelta = timedelta(minutes=30),
        prescription_ttl: timedelta = timedelta(minutes=60),
        utc_now: Callable[[], datetime] = _utc_now,
        engine: Optional[AsyncEngine] = None,
    ) -> None:
        self.store = store
        self.dispatcher = EventDispatcher(notifier, catalog=catalog)
        self._engine = engine

        self.ledger = StockLedgerService(store, dispatcher=self.dispatcher, utc_now=utc_now)
        self.movements = MovementLedger(store)
        self.batches = BatchTracker(store, dispatcher=self.dispatcher, utc_now=utc_now)
        self.reservations = ReservationManager(
            store, dispatcher=self.dispatcher, default_ttl=reservation_ttl, utc_now=utc_now
        )
        self.transfers = TransferService(store, dispatcher=self.dispatcher, utc_now=utc_now)
        self.prescriptions = PrescriptionReservations(self.reservations, ttl=prescription_ttl)

    @classmethod
    def from_settings(
        cls,
        settings: Optional[AppSettings] = None,
        *,
        notifier: Optional[InventoryNotifier] = None,
        catalog: Optional[CatalogLookup] = None,
    ) -> "InventoryEngine":
        settings = settings or get_settings()
        engine = build_engine(settings)
        return cls(
            StockStore.from_engine(engine),
            notifier=notifier,
            catalog=catalog,
            reservation_ttl=timedelta(minutes=settings.RESERVATION_TTL_MINUTES),
            prescription_ttl=timedelta(minutes=settings.PRESCRIPTION_RESERVATION_TTL_MINUTES),
            engine=engine,
        )

    def build_sweeper(
        self, *, interval_seconds: int = 60, batch_size: int = 100
    ) -> ExpirationSweeper:
        return ExpirationSweeper(
            self.reservations, interval_seconds=interval_seconds, batch_size=batch_size
        )

    async def aclose(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()

    # ------------------------------------------------------------------
    # reservations
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
        return await self.reservations.reserve(
            item_id=item_id,
            quantity=quantity,
            reservation_type=reservation_type,
            reference=reference,
            facility_id=facility_id,
            reserved_by=reserved_by,
            ttl=ttl,
            location_id=location_id,
            batch_number=batch_number,
        )

    async def commit(
        self,
        *,
        reservation_id: str,
        performed_by: str,
        facility_id: str,
        actual_quantity: Optional[int] = None,
        notes: Optional[str] = None,
    ) -> CommitResult:
        return await self.reservations.commit(
            reservation_id=reservation_id,
            performed_by=performed_by,
            facility_id=facility_id,
            actual_quantity=actual_quantity,
            notes=notes,
        )

    async def rollback(
        self, *, reservation_id: str, reason: str, performed_by: str, facility_id: str
    ) -> RollbackResult:
        return await self.reservations.rollback(
            reservation_id=reservation_id,
            reason=reason,
            performed_by=performed_by,
            facility_id=facility_id,
        )

    async def get_reservation(self, reservation_id: str, *, facility_id: str) -> ReservationRecord:
        return await self.reservations.get_reservation(reservation_id, facility_id=facility_id)

    async def sweep_expired(self, *, now: Optional[datetime] = None, batch_size: int = 100) -> int:
        return await sweep_expired_reservations(self.reservations, now=now, batch_size=batch_size)

    async def auto_reserve_for_prescription(
        self,
        *,
        prescription_id: str,
        lines: Sequence[PrescriptionLine],
        facility_id: str,
        reserved_by: str,
    ) -> PrescriptionReservation:
        return await self.prescriptions.auto_reserve_for_prescription(
            prescription_id=prescription_id,
            lines=lines,
            facility_id=facility_id,
            reserved_by=reserved_by,
        )

    async def auto_release_for_canceled_prescription(
        self, *, prescription_id: str, facility_id: str, performed_by: str
    ) -> int:
        return await self.prescriptions.auto_release_for_canceled_prescription(
            prescription_id=prescription_id, facility_id=facility_id, performed_by=performed_by
        )

    # ------------------------------------------------------------------
    # stock ledger
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
        return await self.ledger.register_item(
            item_id=item_id,
            sku=sku,
            name=name,
            location_id=location_id,
            facility_id=facility_id,
            item_type=item_type,
            reorder_level=reorder_level,
            reorder_quantity=reorder_quantity,
            max_stock_level=max_stock_level,
            unit_of_measure=unit_of_measure,
        )

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
        return await self.ledger.receive(
            item_id=item_id,
            quantity=quantity,
            batch_number=batch_number,
            expiry_date=expiry_date,
            location_id=location_id,
            facility_id=facility_id,
            performed_by=performed_by,
            supplier_id=supplier_id,
            unit_cost=unit_cost,
            reference=reference,
            notes=notes,
        )

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
        return await self.ledger.adjust_stock(
            item_id=item_id,
            quantity_change=quantity_change,
            reason=reason,
            location_id=location_id,
            facility_id=facility_id,
            performed_by=performed_by,
            movement_type=movement_type,
            batch_number=batch_number,
            notes=notes,
        )

    async def check_availability(
        self,
        *,
        item_id: str,
        quantity: int,
        facility_id: str,
        location_id: Optional[str] = None,
    ) -> Availability:
        return await self.ledger.check_availability(
            item_id=item_id, quantity=quantity, facility_id=facility_id, location_id=location_id
        )

    async def get_item(self, *, item_id: str, location_id: str, facility_id: str) -> ItemRecord:
        return await self.ledger.get_item(ItemKey(item_id, location_id, facility_id))

    async def get_item_stock_levels(
        self, *, item_id: str, facility_id: str
    ) -> List[ItemStockLevel]:
        return await self.ledger.get_item_stock_levels(item_id=item_id, facility_id=facility_id)

    # ------------------------------------------------------------------
    # transfers
    # ------------------------------------------------------------------

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
        return await self.transfers.transfer_stock(
            item_id=item_id,
            quantity=quantity,
            from_location=from_location,
            to_location=to_location,
            facility_id=facility_id,
            performed_by=performed_by,
            batch_number=batch_number,
            notes=notes,
        )

    # ------------------------------------------------------------------
    # batches / alerts
    # ------------------------------------------------------------------

    async def find_low_stock_items(self, *, facility_id: str) -> List[ItemRecord]:
        return await self.batches.find_low_stock_items(facility_id=facility_id)

    async def find_expiring_batches(
        self,
        *,
        facility_id: str,
        days_until_expiry: int = 30,
        today: Optional[date] = None,
    ) -> List[BatchRecord]:
        return await self.batches.find_expiring_batches(
            facility_id=facility_id, days_until_expiry=days_until_expiry, today=today
        )

    async def list_batches_fefo(
        self, *, item_id: str, facility_id: str, location_id: Optional[str] = None
    ) -> List[BatchRecord]:
        return await self.batches.list_batches_fefo(
            item_id=item_id, facility_id=facility_id, location_id=location_id
        )

    async def set_batch_status(
        self,
        *,
        batch_id: str,
        status: BatchStatus | str,
        facility_id: str,
        performed_by: str,
        reason: str,
    ) -> BatchStatusChange:
        return await self.batches.set_batch_status(
            batch_id=batch_id,
            status=status,
            facility_id=facility_id,
            performed_by=performed_by,
            reason=reason,
        )

    # ------------------------------------------------------------------
    # movement ledger
    # ------------------------------------------------------------------

    async def get_movements(self, flt: MovementFilter) -> List[MovementRecord]:
        return await self.movements.get_movements(flt)

    async def reconstruct_on_hand(
        self,
        *,
        item_id: str,
        location_id: str,
        facility_id: str,
        at: Optional[datetime] = None,
    ) -> int:
        return await self.movements.reconstruct_on_hand(
            ItemKey(item_id, location_id, facility_id), at=at
        )

    async def verify_ledger(
        self, *, facility_id: str, item_id: Optional[str] = None
    ) -> LedgerReport:
        return await verify_ledger(self.store, facility_id=facility_id, item_id=item_id)
