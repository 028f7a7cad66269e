# tests/db/test_store.py
from __future__ import annotations

import pytest
from sqlalchemy import select

from medstock.core.config import AppSettings
from medstock.db.base import Base
from medstock.db.row_locks import ItemKey
from medstock.models.inventory_item import InventoryItem
from medstock.services.inventory_engine import InventoryEngine
from tests.helpers.inventory import FACILITY, ITEM, PHARMACY

KEY = ItemKey(ITEM, PHARMACY, FACILITY)


def _row() -> InventoryItem:
    return InventoryItem(
        item_id=ITEM,
        location_id=PHARMACY,
        facility_id=FACILITY,
        sku="SKU-1",
        name="Amoxicillin 500mg",
        item_type="medication",
    )


@pytest.mark.asyncio
async def test_unit_of_work_commits(store):
    async with store.unit_of_work(KEY) as session:
        session.add(_row())

    async with store.read() as session:
        assert (await session.execute(select(InventoryItem))).scalars().one().item_id == ITEM
    assert store.locks.held_count() == 0


@pytest.mark.asyncio
async def test_unit_of_work_rolls_back_and_reraises(store):
    with pytest.raises(LookupError):
        async with store.unit_of_work(KEY) as session:
            session.add(_row())
            await session.flush()
            raise LookupError("abort")

    async with store.read() as session:
        assert (await session.execute(select(InventoryItem))).scalars().all() == []
    assert store.locks.held_count() == 0


def test_sqlite_store_uses_single_writer(store):
    assert store.locks.single_writer is True


@pytest.mark.asyncio
async def test_engine_from_settings(tmp_path):
    settings = AppSettings(
        _env_file=None,
        DATABASE_URL=f"sqlite:///{tmp_path / 'x.db'}",
        RESERVATION_TTL_MINUTES=5,
        PRESCRIPTION_RESERVATION_TTL_MINUTES=90,
    )
    engine = InventoryEngine.from_settings(settings)
    try:
        assert engine.reservations.default_ttl.total_seconds() == 300
        assert engine.prescriptions.ttl.total_seconds() == 5400
        assert engine.store.locks.single_writer is True

        async with engine._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        await engine.register_item(
            item_id=ITEM, sku="SKU-1", name="Amox", location_id=PHARMACY, facility_id=FACILITY
        )
        avail = await engine.check_availability(item_id=ITEM, quantity=1, facility_id=FACILITY)
        assert (avail.available, avail.quantity_on_hand) == (False, 0)
    finally:
        await engine.aclose()
