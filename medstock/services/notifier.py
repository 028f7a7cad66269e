# medstock/services/notifier.py
from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Dict, Iterable, Mapping, Optional

from medstock.domain.events import InventoryEvent
from medstock.domain.ports import CatalogLookup, InventoryNotifier
from medstock.obs.metrics import notifications_failed_total

log = logging.getLogger("medstock.events")


class NullNotifier:
    async def publish(self, event: InventoryEvent) -> None:
        return None


class LoggingNotifier:
    """Writes every event as one INFO line; handy for local runs and jobs."""

    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self._log = logger or log

    async def publish(self, event: InventoryEvent) -> None:
        self._log.info(
            "event %s key=%s facility=%s",
            event.event_type,
            event.key,
            event.facility_id,
            extra={"event_payload": dict(event.payload)},
        )


class EventDispatcher:
    """
    Post-commit publisher used by every service.

    - dispatch() is only ever called after the unit of work returned, so a
      subscriber never sees an event for a rolled-back change.
    - A failing catalog lookup leaves the payload unenriched.
    - A failing notifier is logged and counted; the exception stops here.
    """

    def __init__(
        self,
        notifier: Optional[InventoryNotifier] = None,
        *,
        catalog: Optional[CatalogLookup] = None,
    ) -> None:
        self.notifier: InventoryNotifier = notifier or NullNotifier()
        self.catalog = catalog

    async def _enrich(
        self, event: InventoryEvent, cache: Dict[str, Optional[Mapping[str, Any]]]
    ) -> InventoryEvent:
        item_id = event.payload.get("item_id")
        if self.catalog is None or not item_id:
            return event

        if item_id not in cache:
            try:
                cache[item_id] = await self.catalog.lookup(str(item_id))
            except Exception:
                log.warning("catalog lookup failed for item %s", item_id, exc_info=True)
                cache[item_id] = None

        info = cache[item_id]
        if not info:
            return event
        payload = dict(event.payload)
        payload.setdefault("catalog", dict(info))
        return replace(event, payload=payload)

    async def dispatch(self, events: Iterable[InventoryEvent]) -> int:
        """Publish events in order; returns how many were delivered."""
        cache: Dict[str, Optional[Mapping[str, Any]]] = {}
        delivered = 0
        for event in events:
            event = await self._enrich(event, cache)
            try:
                await self.notifier.publish(event)
            except Exception:
                notifications_failed_total.labels(event_type=event.event_type).inc()
                log.exception(
                    "notifier failed for %s key=%s; event dropped", event.event_type, event.key
                )
                continue
            delivered += 1
        return delivered

    async def dispatch_one(self, event: InventoryEvent) -> bool:
        return await self.dispatch([event]) == 1

