# medstock/models/stock_batch.py
from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from medstock.db.base import Base
from medstock.models.enums import BatchStatus
from medstock.utils.time import utc_now


class StockBatch(Base):
    """
    One lot of an item at one location.

    Batch dimension:
        (item_id, location_id, facility_id, batch_number)

    Quantities:
        quantity_received    grows on receipt and on transfer-in
        quantity_on_hand     received - dispensed - write-offs
        quantity_reserved    units held by batch-bound reservations
        quantity_dispensed   grows on commit (unlotted commits draw FEFO)

    unit_cost is stored as delivered and never interpreted here.
    """

    __tablename__ = "stock_batches"

    id: Mapped[str] = mapped_column(
        sa.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )

    item_id: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    location_id: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    facility_id: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    batch_number: Mapped[str] = mapped_column(sa.String(64), nullable=False)

    quantity_received: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    quantity_on_hand: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    quantity_reserved: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    quantity_dispensed: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)

    expiry_date: Mapped[date] = mapped_column(sa.Date, nullable=False)
    received_date: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), nullable=False, default=utc_now
    )

    supplier_id: Mapped[Optional[str]] = mapped_column(sa.String(64), nullable=True)
    unit_cost: Mapped[Optional[Decimal]] = mapped_column(sa.Numeric(12, 4), nullable=True)

    status: Mapped[str] = mapped_column(
        sa.String(16), nullable=False, default=BatchStatus.ACTIVE.value
    )
    created_by: Mapped[Optional[str]] = mapped_column(sa.String(64), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), nullable=False, default=utc_now, server_default=sa.func.now()
    )

    __table_args__ = (
        sa.UniqueConstraint(
            "item_id",
            "location_id",
            "facility_id",
            "batch_number",
            name="uq_stock_batches_item_location_facility_batch",
        ),
        sa.CheckConstraint("quantity_on_hand >= 0", name="on_hand_non_negative"),
        sa.CheckConstraint("quantity_reserved >= 0", name="reserved_non_negative"),
        sa.CheckConstraint("quantity_reserved <= quantity_on_hand", name="reserved_within_on_hand"),
        sa.Index("ix_stock_batches_facility_expiry", "facility_id", "expiry_date"),
        sa.Index("ix_stock_batches_item_location", "item_id", "location_id", "facility_id"),
    )

    @property
    def quantity_unreserved(self) -> int:
        return int(self.quantity_on_hand) - int(self.quantity_reserved)

    def __repr__(self) -> str:
        return (
            f"<StockBatch {self.batch_number} item={self.item_id} loc={self.location_id} "
            f"on_hand={self.quantity_on_hand} exp={self.expiry_date} status={self.status}>"
        )
