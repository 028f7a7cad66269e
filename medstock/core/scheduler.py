# medstock/core/scheduler.py
from __future__ import annotations

import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from medstock.core.config import AppSettings, get_settings
from medstock.services.inventory_engine import InventoryEngine
from medstock.services.reservation_sweeper import ExpirationSweeper

log = logging.getLogger("medstock.scheduler")

LOW_STOCK_JOB_ID = "medstock.low_stock_scan"
EXPIRING_JOB_ID = "medstock.expiring_scan"


async def _job_low_stock(engine: InventoryEngine, facility_id: str) -> None:
    try:
        items = await engine.batches.find_low_stock_items(facility_id=facility_id)
    except Exception:
        log.exception("low-stock scan failed for facility %s", facility_id)
        return
    log.info("low-stock scan: %d item(s) at or below reorder level", len(items))


async def _job_expiring(engine: InventoryEngine, facility_id: str, days: int) -> None:
    try:
        batches = await engine.batches.find_expiring_batches(
            facility_id=facility_id, days_until_expiry=days
        )
    except Exception:
        log.exception("expiring-batch scan failed for facility %s", facility_id)
        return
    log.info("expiring scan: %d batch(es) expire within %d day(s)", len(batches), days)


def init_scheduler(
    engine: InventoryEngine,
    settings: Optional[AppSettings] = None,
    *,
    start: bool = True,
) -> Optional[AsyncIOScheduler]:
    """
    Build the process scheduler from settings.

    - ENABLE_SWEEPER: reservation TTL sweeper every SWEEP_INTERVAL_SECONDS
    - ENABLE_ALERT_SCANS + DEFAULT_FACILITY_ID: hourly low-stock scan and a
      daily expiring-batch scan at 08:00

    Returns None when nothing is enabled. With start=True the event loop must
    already be running.
    """
    settings = settings or get_settings()
    scan_facility = settings.DEFAULT_FACILITY_ID if settings.ENABLE_ALERT_SCANS else None
    if settings.ENABLE_ALERT_SCANS and not scan_facility:
        log.warning("ENABLE_ALERT_SCANS is set but DEFAULT_FACILITY_ID is empty; scans skipped")

    if not settings.ENABLE_SWEEPER and not scan_facility:
        return None

    scheduler = AsyncIOScheduler(timezone=settings.SCHEDULER_TIMEZONE)

    if settings.ENABLE_SWEEPER:
        ExpirationSweeper(
            engine.reservations,
            interval_seconds=settings.SWEEP_INTERVAL_SECONDS,
            batch_size=settings.SWEEP_BATCH_SIZE,
        ).register(scheduler)

    if scan_facility:
        scheduler.add_job(
            _job_low_stock,
            "cron",
            minute=0,
            args=[engine, scan_facility],
            id=LOW_STOCK_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        scheduler.add_job(
            _job_expiring,
            "cron",
            hour=8,
            minute=0,
            args=[engine, scan_facility, settings.EXPIRY_WARNING_DAYS],
            id=EXPIRING_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

    if start:
        scheduler.start()
    log.info("scheduler initialized with %d job(s)", len(scheduler.get_jobs()))
    return scheduler
