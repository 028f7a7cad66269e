# tests/conftest.py
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlalchemy.pool import NullPool

from medstock.db.base import Base, init_models
from medstock.db.engine import create_async_engine_safe
from medstock.db.store import StockStore
from medstock.services.inventory_engine import InventoryEngine
from tests.helpers.notify import RecordingNotifier

UTC = timezone.utc


class Clock:
    """Controllable utc_now for services."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


# =========================================
# one SQLite file per test (NullPool, no cross-loop reuse)
# =========================================
@pytest_asyncio.fixture(scope="function")
async def async_engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    init_models()
    engine = create_async_engine_safe(
        f"sqlite+aiosqlite:///{tmp_path / 'medstock.db'}", poolclass=NullPool
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture
def store(async_engine: AsyncEngine) -> StockStore:
    return StockStore.from_engine(async_engine)


@pytest.fixture
def clock() -> Clock:
    return Clock(datetime(2026, 3, 2, 9, 0, tzinfo=UTC))


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def inventory(store: StockStore, notifier: RecordingNotifier, clock: Clock) -> InventoryEngine:
    return InventoryEngine(store, notifier=notifier, utc_now=clock)
