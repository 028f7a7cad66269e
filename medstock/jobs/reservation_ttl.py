# medstock/jobs/reservation_ttl.py
"""
Reservation TTL job (standalone entry point).

  - releases active reservations whose expires_at has passed
  - concurrency safety and idempotency come from ReservationManager.expire(),
    so running it next to the in-process sweeper is harmless

Usage:
    python -m medstock.jobs.reservation_ttl
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta

from sqlalchemy.pool import NullPool

from medstock.core.config import get_settings
from medstock.core.logging import setup_logging
from medstock.db.engine import create_async_engine_safe
from medstock.db.store import StockStore
from medstock.services.notifier import EventDispatcher, LoggingNotifier
from medstock.services.reservation_manager import ReservationManager
from medstock.services.reservation_sweeper import sweep_expired_reservations
from medstock.utils.time import utc_now

log = logging.getLogger("medstock.jobs.reservation_ttl")


async def main() -> int:
    settings = get_settings()
    setup_logging(settings.LOG_LEVEL, json=settings.JSON_LOG)

    engine = create_async_engine_safe(
        settings.DATABASE_URL, echo=settings.SQL_ECHO, poolclass=NullPool
    )
    manager = ReservationManager(
        StockStore.from_engine(engine),
        dispatcher=EventDispatcher(LoggingNotifier()),
        default_ttl=timedelta(minutes=settings.RESERVATION_TTL_MINUTES),
    )

    try:
        processed = await sweep_expired_reservations(
            manager, now=utc_now(), batch_size=settings.SWEEP_BATCH_SIZE
        )
        log.info(
            "processed %d expired reservations (batch_size=%d)",
            processed,
            settings.SWEEP_BATCH_SIZE,
        )
        return processed
    finally:
        await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
