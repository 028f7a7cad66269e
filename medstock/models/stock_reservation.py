# medstock/models/stock_reservation.py
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from medstock.db.base import Base
from medstock.models.enums import ReservationStatus


class StockReservation(Base):
    """
    A time-bounded hold on item quantity.

    Only the reservation manager writes status, and only through a conditional
    UPDATE ... WHERE status = 'active'.
    """

    __tablename__ = "stock_reservations"

    id: Mapped[str] = mapped_column(
        sa.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )

    item_id: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    location_id: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    facility_id: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    batch_number: Mapped[Optional[str]] = mapped_column(sa.String(64), nullable=True)

    quantity: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    quantity_committed: Mapped[Optional[int]] = mapped_column(sa.Integer, nullable=True)
    reservation_type: Mapped[str] = mapped_column(sa.String(32), nullable=False)
    reference: Mapped[str] = mapped_column(sa.String(128), nullable=False)

    status: Mapped[str] = mapped_column(
        sa.String(16), nullable=False, default=ReservationStatus.ACTIVE.value
    )

    reserved_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)
    reserved_by: Mapped[str] = mapped_column(sa.String(64), nullable=False)

    committed_at: Mapped[Optional[datetime]] = mapped_column(
        sa.DateTime(timezone=True), nullable=True
    )
    committed_by: Mapped[Optional[str]] = mapped_column(sa.String(64), nullable=True)
    released_at: Mapped[Optional[datetime]] = mapped_column(
        sa.DateTime(timezone=True), nullable=True
    )
    rolled_back_by: Mapped[Optional[str]] = mapped_column(sa.String(64), nullable=True)
    rollback_reason: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)

    __table_args__ = (
        sa.CheckConstraint("quantity > 0", name="quantity_positive"),
        sa.Index("ix_stock_reservations_status_expires", "status", "expires_at"),
        sa.Index("ix_stock_reservations_reference", "reference", "facility_id"),
        sa.Index("ix_stock_reservations_item", "item_id", "location_id", "facility_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<StockReservation id={self.id} item={self.item_id} qty={self.quantity} "
            f"status={self.status} expires_at={self.expires_at}>"
        )
