# medstock/db/row_locks.py
from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Dict, Hashable, Iterable, List

from medstock.obs.metrics import lock_wait_seconds


@dataclass(frozen=True, order=True)
class ItemKey:
    """
    Natural key of one inventory_items row.

    Field order defines the global lock order: (item_id, location_id, facility_id).
    """

    item_id: str
    location_id: str
    facility_id: str

    def __str__(self) -> str:
        return f"{self.facility_id}/{self.location_id}/{self.item_id}"


_DATABASE_KEY = ("__database__",)


@dataclass
class _Entry:
    lock: asyncio.Lock
    users: int = 0


class RowLockRegistry:
    """
    In-process exclusive locks keyed by ItemKey.

    - hold(keys) always acquires in sorted order, so two callers asking for
      {A, B} and {B, A} can never deadlock each other.
    - single_writer=True collapses every key onto one lock; used for SQLite,
      where the database itself admits one writer at a time.
    - Entries are refcounted and dropped once nobody holds or waits on them.

    Cross-process exclusion is not this class's job: on PostgreSQL the store
    also takes SELECT ... FOR UPDATE on the same rows in the same order.
    """

    def __init__(self, *, single_writer: bool = False) -> None:
        self._single_writer = single_writer
        self._entries: Dict[Hashable, _Entry] = {}

    @property
    def single_writer(self) -> bool:
        return self._single_writer

    def _ordered(self, keys: Iterable[ItemKey]) -> List[Hashable]:
        if self._single_writer:
            return [_DATABASE_KEY]
        return sorted(set(keys))

    def held_count(self) -> int:
        return len(self._entries)

    @asynccontextmanager
    async def hold(self, keys: Iterable[ItemKey]) -> AsyncIterator[None]:
        ordered = self._ordered(keys)
        acquired: List[Hashable] = []
        started = time.perf_counter()
        try:
            for key in ordered:
                entry = self._entries.get(key)
                if entry is None:
                    entry = _Entry(lock=asyncio.Lock())
                    self._entries[key] = entry
                entry.users += 1
                try:
                    await entry.lock.acquire()
                except BaseException:
                    self._release_entry(key, locked=False)
                    raise
                acquired.append(key)
            lock_wait_seconds.observe(time.perf_counter() - started)
            yield
        finally:
            for key in reversed(acquired):
                self._release_entry(key, locked=True)

    def _release_entry(self, key: Hashable, *, locked: bool) -> None:
        entry = self._entries[key]
        if locked:
            entry.lock.release()
        entry.users -= 1
        if entry.users == 0:
            del self._entries[key]
