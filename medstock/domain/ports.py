# medstock/domain/ports.py
from __future__ import annotations

from typing import Any, Mapping, Optional, Protocol

from medstock.domain.events import InventoryEvent


class CatalogLookup(Protocol):
    """Catalog / medication metadata, used only to enrich event payloads."""

    async def lookup(self, item_id: str) -> Optional[Mapping[str, Any]]:
        ...


class InventoryNotifier(Protocol):
    """Outbound event sink (message bus, alerting, ...)."""

    async def publish(self, event: InventoryEvent) -> None:
        ...
