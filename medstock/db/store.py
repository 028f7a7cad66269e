# medstock/db/store.py
"""
StockStore: the transactional-store handle injected into every component.

Two entry points:

    async with store.read() as session:
        ...                               # lock-free reads, no transaction kept open

    async with store.unit_of_work(key_a, key_b) as session:
        ...                               # item locks held, one transaction

Transaction semantics of unit_of_work (same contract as a classic UoW):
    * no exception -> commit
    * exception    -> rollback, exception propagates unchanged
    * locks are released only after commit/rollback finished

Anything written after the `async with` block therefore runs strictly after
the commit, which is where event publication belongs.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from medstock.db.row_locks import ItemKey, RowLockRegistry
from medstock.db.session import build_session_maker


class StockStore:
    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        *,
        locks: Optional[RowLockRegistry] = None,
    ) -> None:
        self._maker = session_maker
        self._locks = locks or RowLockRegistry()

    @classmethod
    def from_engine(cls, engine: AsyncEngine) -> "StockStore":
        single_writer = engine.dialect.name == "sqlite"
        return cls(
            build_session_maker(engine),
            locks=RowLockRegistry(single_writer=single_writer),
        )

    @property
    def locks(self) -> RowLockRegistry:
        return self._locks

    @asynccontextmanager
    async def read(self) -> AsyncIterator[AsyncSession]:
        async with self._maker() as session:
            yield session

    @asynccontextmanager
    async def unit_of_work(self, *keys: ItemKey) -> AsyncIterator[AsyncSession]:
        async with self._locks.hold(keys):
            async with self._maker() as session:
                async with session.begin():
                    yield session
