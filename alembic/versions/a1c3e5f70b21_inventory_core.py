"""inventory core: items, batches, reservations, movements

Revision ID: a1c3e5f70b21
Revises:
Create Date: 2026-10-19 09:12:44.201731

"""
from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "a1c3e5f70b21"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # ------------------------------------------------------------------
    # inventory_items: one row per (item, location, facility)
    # ------------------------------------------------------------------
    op.create_table(
        "inventory_items",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("item_id", sa.String(length=64), nullable=False),
        sa.Column("location_id", sa.String(length=64), nullable=False),
        sa.Column("facility_id", sa.String(length=64), nullable=False),
        sa.Column("sku", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("item_type", sa.String(length=32), nullable=False),
        sa.Column("unit_of_measure", sa.String(length=16), nullable=False),
        sa.Column("quantity_on_hand", sa.Integer(), nullable=False),
        sa.Column("quantity_reserved", sa.Integer(), nullable=False),
        sa.Column("quantity_available", sa.Integer(), nullable=False),
        sa.Column("reorder_level", sa.Integer(), nullable=False),
        sa.Column("reorder_quantity", sa.Integer(), nullable=False),
        sa.Column("max_stock_level", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("last_restocked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_dispensed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
        ),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
        ),
        sa.CheckConstraint(
            "quantity_on_hand >= 0", name=op.f("ck_inventory_items_on_hand_non_negative")
        ),
        sa.CheckConstraint(
            "quantity_reserved >= 0", name=op.f("ck_inventory_items_reserved_non_negative")
        ),
        sa.CheckConstraint(
            "quantity_reserved <= quantity_on_hand",
            name=op.f("ck_inventory_items_reserved_within_on_hand"),
        ),
        sa.CheckConstraint(
            "quantity_available = quantity_on_hand - quantity_reserved",
            name=op.f("ck_inventory_items_available_derived"),
        ),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_inventory_items")),
        sa.UniqueConstraint(
            "item_id",
            "location_id",
            "facility_id",
            name="uq_inventory_items_item_location_facility",
        ),
    )
    op.create_index("ix_inventory_items_facility", "inventory_items", ["facility_id"])
    op.create_index(
        "ix_inventory_items_item_facility", "inventory_items", ["item_id", "facility_id"]
    )

    # ------------------------------------------------------------------
    # stock_batches
    # ------------------------------------------------------------------
    op.create_table(
        "stock_batches",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("item_id", sa.String(length=64), nullable=False),
        sa.Column("location_id", sa.String(length=64), nullable=False),
        sa.Column("facility_id", sa.String(length=64), nullable=False),
        sa.Column("batch_number", sa.String(length=64), nullable=False),
        sa.Column("quantity_received", sa.Integer(), nullable=False),
        sa.Column("quantity_on_hand", sa.Integer(), nullable=False),
        sa.Column("quantity_reserved", sa.Integer(), nullable=False),
        sa.Column("quantity_dispensed", sa.Integer(), nullable=False),
        sa.Column("expiry_date", sa.Date(), nullable=False),
        sa.Column("received_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("supplier_id", sa.String(length=64), nullable=True),
        sa.Column("unit_cost", sa.Numeric(12, 4), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("created_by", sa.String(length=64), nullable=True),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
        ),
        sa.CheckConstraint(
            "quantity_on_hand >= 0", name=op.f("ck_stock_batches_on_hand_non_negative")
        ),
        sa.CheckConstraint(
            "quantity_reserved >= 0", name=op.f("ck_stock_batches_reserved_non_negative")
        ),
        sa.CheckConstraint(
            "quantity_reserved <= quantity_on_hand",
            name=op.f("ck_stock_batches_reserved_within_on_hand"),
        ),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_stock_batches")),
        sa.UniqueConstraint(
            "item_id",
            "location_id",
            "facility_id",
            "batch_number",
            name="uq_stock_batches_item_location_facility_batch",
        ),
    )
    op.create_index(
        "ix_stock_batches_facility_expiry", "stock_batches", ["facility_id", "expiry_date"]
    )
    op.create_index(
        "ix_stock_batches_item_location",
        "stock_batches",
        ["item_id", "location_id", "facility_id"],
    )

    # ------------------------------------------------------------------
    # stock_reservations
    # ------------------------------------------------------------------
    op.create_table(
        "stock_reservations",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("item_id", sa.String(length=64), nullable=False),
        sa.Column("location_id", sa.String(length=64), nullable=False),
        sa.Column("facility_id", sa.String(length=64), nullable=False),
        sa.Column("batch_number", sa.String(length=64), nullable=True),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("quantity_committed", sa.Integer(), nullable=True),
        sa.Column("reservation_type", sa.String(length=32), nullable=False),
        sa.Column("reference", sa.String(length=128), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("reserved_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("reserved_by", sa.String(length=64), nullable=False),
        sa.Column("committed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("committed_by", sa.String(length=64), nullable=True),
        sa.Column("released_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rolled_back_by", sa.String(length=64), nullable=True),
        sa.Column("rollback_reason", sa.Text(), nullable=True),
        sa.CheckConstraint("quantity > 0", name=op.f("ck_stock_reservations_quantity_positive")),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_stock_reservations")),
    )
    op.create_index(
        "ix_stock_reservations_status_expires", "stock_reservations", ["status", "expires_at"]
    )
    op.create_index(
        "ix_stock_reservations_reference", "stock_reservations", ["reference", "facility_id"]
    )
    op.create_index(
        "ix_stock_reservations_item",
        "stock_reservations",
        ["item_id", "location_id", "facility_id"],
    )

    # ------------------------------------------------------------------
    # stock_movements: insert-only
    # ------------------------------------------------------------------
    op.create_table(
        "stock_movements",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("item_id", sa.String(length=64), nullable=False),
        sa.Column("location_id", sa.String(length=64), nullable=False),
        sa.Column("facility_id", sa.String(length=64), nullable=False),
        sa.Column("batch_number", sa.String(length=64), nullable=True),
        sa.Column("movement_type", sa.String(length=16), nullable=False),
        sa.Column("quantity_change", sa.Integer(), nullable=False),
        sa.Column("quantity_before", sa.Integer(), nullable=False),
        sa.Column("quantity_after", sa.Integer(), nullable=False),
        sa.Column("from_location", sa.String(length=64), nullable=True),
        sa.Column("to_location", sa.String(length=64), nullable=True),
        sa.Column("reference", sa.String(length=128), nullable=True),
        sa.Column("reason", sa.String(length=255), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("performed_by", sa.String(length=64), nullable=False),
        sa.Column("performed_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("quantity_change <> 0", name=op.f("ck_stock_movements_change_non_zero")),
        sa.CheckConstraint(
            "quantity_after = quantity_before + quantity_change",
            name=op.f("ck_stock_movements_after_matches_change"),
        ),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_stock_movements")),
    )
    op.create_index(
        "ix_stock_movements_item",
        "stock_movements",
        ["item_id", "location_id", "facility_id", "performed_at"],
    )
    op.create_index(
        "ix_stock_movements_facility_time", "stock_movements", ["facility_id", "performed_at"]
    )


def downgrade() -> None:
    op.drop_index("ix_stock_movements_facility_time", table_name="stock_movements")
    op.drop_index("ix_stock_movements_item", table_name="stock_movements")
    op.drop_table("stock_movements")

    op.drop_index("ix_stock_reservations_item", table_name="stock_reservations")
    op.drop_index("ix_stock_reservations_reference", table_name="stock_reservations")
    op.drop_index("ix_stock_reservations_status_expires", table_name="stock_reservations")
    op.drop_table("stock_reservations")

    op.drop_index("ix_stock_batches_item_location", table_name="stock_batches")
    op.drop_index("ix_stock_batches_facility_expiry", table_name="stock_batches")
    op.drop_table("stock_batches")

    op.drop_index("ix_inventory_items_item_facility", table_name="inventory_items")
    op.drop_index("ix_inventory_items_facility", table_name="inventory_items")
    op.drop_table("inventory_items")
