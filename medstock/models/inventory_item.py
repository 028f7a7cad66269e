# medstock/models/inventory_item.py
from __future__ import annotations

from datetime import datetime
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from medstock.db.base import Base
from medstock.db.row_locks import ItemKey
from medstock.models.enums import ItemStatus
from medstock.utils.time import utc_now


class InventoryItem(Base):
    """
    One stocked item at one location of one facility.

    Natural key: (item_id, location_id, facility_id)

    Quantities:
        quantity_on_hand     physical units at the location
        quantity_reserved    units earmarked by active reservations
        quantity_available   on_hand - reserved (stored, kept in sync by recalculate())

    version is the ORM version_id_col: every flush of a changed row bumps it
    and the UPDATE is guarded by the previous value.
    """

    __tablename__ = "inventory_items"

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)

    item_id: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    location_id: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    facility_id: Mapped[str] = mapped_column(sa.String(64), nullable=False)

    sku: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    name: Mapped[str] = mapped_column(sa.String(255), nullable=False)
    item_type: Mapped[str] = mapped_column(sa.String(32), nullable=False, default="other")
    unit_of_measure: Mapped[str] = mapped_column(sa.String(16), nullable=False, default="unit")

    quantity_on_hand: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    quantity_reserved: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    quantity_available: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)

    reorder_level: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    reorder_quantity: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    max_stock_level: Mapped[Optional[int]] = mapped_column(sa.Integer, nullable=True)

    status: Mapped[str] = mapped_column(
        sa.String(32), nullable=False, default=ItemStatus.OUT_OF_STOCK.value
    )
    version: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=1)

    last_restocked_at: Mapped[Optional[datetime]] = mapped_column(
        sa.DateTime(timezone=True), nullable=True
    )
    last_dispensed_at: Mapped[Optional[datetime]] = mapped_column(
        sa.DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), nullable=False, default=utc_now, server_default=sa.func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), nullable=False, default=utc_now, server_default=sa.func.now()
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        sa.UniqueConstraint(
            "item_id",
            "location_id",
            "facility_id",
            name="uq_inventory_items_item_location_facility",
        ),
        sa.CheckConstraint("quantity_on_hand >= 0", name="on_hand_non_negative"),
        sa.CheckConstraint("quantity_reserved >= 0", name="reserved_non_negative"),
        sa.CheckConstraint("quantity_reserved <= quantity_on_hand", name="reserved_within_on_hand"),
        sa.CheckConstraint(
            "quantity_available = quantity_on_hand - quantity_reserved", name="available_derived"
        ),
        sa.Index("ix_inventory_items_facility", "facility_id"),
        sa.Index("ix_inventory_items_item_facility", "item_id", "facility_id"),
    )

    @property
    def key(self) -> ItemKey:
        return ItemKey(self.item_id, self.location_id, self.facility_id)

    def recalculate(self, now: datetime) -> None:
        """Re-derive quantity_available / status after quantities changed."""
        self.quantity_available = int(self.quantity_on_hand) - int(self.quantity_reserved)
        if self.status != ItemStatus.DISCONTINUED:
            if self.quantity_on_hand == 0:
                self.status = ItemStatus.OUT_OF_STOCK.value
            elif self.quantity_available <= self.reorder_level:
                self.status = ItemStatus.LOW_STOCK.value
            else:
                self.status = ItemStatus.AVAILABLE.value
        self.updated_at = now

    def __repr__(self) -> str:
        return (
            f"<InventoryItem {self.key} on_hand={self.quantity_on_hand} "
            f"reserved={self.quantity_reserved} v={self.version}>"
        )
