# medstock/domain/events.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict

RESERVED = "inventory.reserved"
COMMITTED = "inventory.committed"
ROLLED_BACK = "inventory.rolled_back"
EXPIRED = "inventory.expired"
RECEIVED = "inventory.received"
ADJUSTED = "inventory.adjusted"
TRANSFERRED = "inventory.transferred"
LOW_STOCK = "inventory.low_stock"
EXPIRING = "inventory.expiring"


@dataclass(frozen=True)
class InventoryEvent:
    """
    Post-commit notification.

    key is the primary key of the subject (reservation id, batch id, item id);
    (event_type, key) identifies an event for consumer-side dedupe.
    """

    event_type: str
    key: str
    facility_id: str
    occurred_at: datetime
    payload: Dict[str, Any] = field(default_factory=dict)

    @property
    def dedupe_key(self) -> str:
        return f"{self.event_type}:{self.key}"
