# medstock/models/enums.py
from __future__ import annotations

from enum import StrEnum


class ItemType(StrEnum):
    MEDICATION = "medication"
    SUPPLY = "supply"
    EQUIPMENT = "equipment"
    OTHER = "other"


class ItemStatus(StrEnum):
    """
    inventory_items.status, recomputed on every mutation:

    - AVAILABLE      available > reorder_level
    - LOW_STOCK      available <= reorder_level
    - OUT_OF_STOCK   on_hand == 0
    - DISCONTINUED   set by catalog owners, sticky, excluded from low-stock scans
    """

    AVAILABLE = "available"
    LOW_STOCK = "low_stock"
    OUT_OF_STOCK = "out_of_stock"
    DISCONTINUED = "discontinued"


class BatchStatus(StrEnum):
    ACTIVE = "active"
    EXPIRED = "expired"
    QUARANTINED = "quarantined"
    DEPLETED = "depleted"
    RECALLED = "recalled"


class ReservationStatus(StrEnum):
    """
    active -> committed | rolled_back | expired; the three terminal values never change.
    """

    ACTIVE = "active"
    COMMITTED = "committed"
    EXPIRED = "expired"
    ROLLED_BACK = "rolled_back"

    @property
    def is_terminal(self) -> bool:
        return self is not ReservationStatus.ACTIVE


class ReservationType(StrEnum):
    MEDICATION_DISPENSE = "medication_dispense"
    PROCEDURE = "procedure"
    TRANSFER = "transfer"
    OTHER = "other"


class MovementType(StrEnum):
    """
    stock_movements.movement_type.

    Sign convention of quantity_change:
    - RECEIPT, RETURN          positive
    - DISPENSING, DAMAGE       negative
    - EXPIRY, RECALL           negative (batch write-off)
    - QUARANTINE               negative into quarantine, positive on release
    - ADJUSTMENT, TRANSFER     either sign
    """

    RECEIPT = "receipt"
    DISPENSING = "dispensing"
    ADJUSTMENT = "adjustment"
    TRANSFER = "transfer"
    RETURN = "return"
    DAMAGE = "damage"
    EXPIRY = "expiry"
    QUARANTINE = "quarantine"
    RECALL = "recall"


# movement types a caller may pass to adjust_stock
ADJUSTABLE_MOVEMENT_TYPES = frozenset(
    {
        MovementType.ADJUSTMENT,
        MovementType.DAMAGE,
        MovementType.EXPIRY,
        MovementType.RETURN,
    }
)
