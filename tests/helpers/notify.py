# tests/helpers/notify.py
from __future__ import annotations

from typing import List

from medstock.domain.events import InventoryEvent


class RecordingNotifier:
    def __init__(self) -> None:
        self.events: List[InventoryEvent] = []

    async def publish(self, event: InventoryEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: str) -> List[InventoryEvent]:
        return [e for e in self.events if e.event_type == event_type]
