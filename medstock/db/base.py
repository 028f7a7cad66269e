# medstock/db/base.py
from __future__ import annotations

import importlib
import logging
from typing import Iterable

from sqlalchemy import MetaData
from sqlalchemy.orm import DeclarativeBase, configure_mappers

log = logging.getLogger("medstock.models")

NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}


class Base(DeclarativeBase):
    """Single ORM base for every medstock table."""

    metadata = MetaData(naming_convention=NAMING_CONVENTION)


_INITIALIZED: bool = False

MODEL_MODULES = (
    "medstock.models.inventory_item",
    "medstock.models.stock_batch",
    "medstock.models.stock_reservation",
    "medstock.models.stock_movement",
)


def init_models(*, extra_modules: Iterable[str] | None = None, force: bool = False) -> None:
    """
    Import every model module so Base.metadata is complete, then configure
    mappers once. Used by Alembic env and by create_all in tests.
    """
    global _INITIALIZED
    if _INITIALIZED and not force:
        log.debug("init_models() called again; already initialized, skipping.")
        return

    loaded = 0
    for mod in (*MODEL_MODULES, *(extra_modules or ())):
        importlib.import_module(mod)
        loaded += 1

    configure_mappers()
    _INITIALIZED = True
    log.info("ORM models initialized & mappers configured (loaded %d modules)", loaded)
