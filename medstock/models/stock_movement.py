# medstock/models/stock_movement.py
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from medstock.db.base import Base


class StockMovement(Base):
    """
    Movement ledger (insert only, never updated).

    One row per touched inventory_items row. Summing quantity_change over
    (item_id, location_id, facility_id) up to an instant gives the on-hand at
    that instant; quantity_before / quantity_after make each row verifiable
    on its own.
    """

    __tablename__ = "stock_movements"

    id: Mapped[str] = mapped_column(
        sa.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )

    item_id: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    location_id: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    facility_id: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    batch_number: Mapped[Optional[str]] = mapped_column(sa.String(64), nullable=True)

    movement_type: Mapped[str] = mapped_column(sa.String(16), nullable=False)
    quantity_change: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    quantity_before: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    quantity_after: Mapped[int] = mapped_column(sa.Integer, nullable=False)

    from_location: Mapped[Optional[str]] = mapped_column(sa.String(64), nullable=True)
    to_location: Mapped[Optional[str]] = mapped_column(sa.String(64), nullable=True)

    reference: Mapped[Optional[str]] = mapped_column(sa.String(128), nullable=True)
    reason: Mapped[str] = mapped_column(sa.String(255), nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    performed_by: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    performed_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)

    __table_args__ = (
        sa.CheckConstraint("quantity_change <> 0", name="change_non_zero"),
        sa.CheckConstraint(
            "quantity_after = quantity_before + quantity_change", name="after_matches_change"
        ),
        sa.Index(
            "ix_stock_movements_item", "item_id", "location_id", "facility_id", "performed_at"
        ),
        sa.Index("ix_stock_movements_facility_time", "facility_id", "performed_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<StockMovement {self.movement_type} item={self.item_id} loc={self.location_id} "
            f"delta={self.quantity_change} {self.quantity_before}->{self.quantity_after}>"
        )
