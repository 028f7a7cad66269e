# medstock/services/reservation_sweeper.py
from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional, Set

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from medstock.obs.metrics import sweeper_expired_total, sweeper_runs_total
from medstock.services.reservation_manager import ReservationManager
from medstock.utils.time import as_utc, utc_now

log = logging.getLogger("medstock.sweeper")

SWEEPER_JOB_ID = "medstock.reservation_sweeper"


async def sweep_expired_reservations(
    manager: ReservationManager,
    *,
    now: Optional[datetime] = None,
    batch_size: int = 100,
) -> int:
    """
    Release every active reservation whose expires_at is before `now`.

    Semantics:
      - candidates come from manager.find_expired() (lock-free read)
      - each id goes through manager.expire(), which re-checks status and
        expiry under the item lock; already-handled ids are no-ops
      - stock_movements is never touched (on-hand does not change)

    Returns the number of reservations this call actually moved active -> expired.
    """
    if batch_size <= 0:
        raise ValueError("batch_size must be positive")
    now = as_utc(now) or utc_now()

    total_expired = 0
    seen: Set[str] = set()

    while True:
        ids = await manager.find_expired(now=now, limit=batch_size)
        fresh = [rid for rid in ids if rid not in seen]
        if not fresh:
            break

        for rid in fresh:
            seen.add(rid)
            if await manager.expire(rid, now=now):
                total_expired += 1

        if len(ids) < batch_size:
            break

    return total_expired


class ExpirationSweeper:
    """
    Periodic reservation TTL job.

    One APScheduler interval job with max_instances=1 and coalesce=True, so
    ticks never overlap and missed ticks collapse into one. A failing tick is
    logged and counted; the next tick retries.
    """

    def __init__(
        self,
        manager: ReservationManager,
        *,
        interval_seconds: int = 60,
        batch_size: int = 100,
        scheduler: Optional[AsyncIOScheduler] = None,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.manager = manager
        self.interval_seconds = int(interval_seconds)
        self.batch_size = int(batch_size)
        self._scheduler = scheduler
        self._owns_scheduler = scheduler is None

    @property
    def scheduler(self) -> Optional[AsyncIOScheduler]:
        return self._scheduler

    async def run_once(self, now: Optional[datetime] = None) -> int:
        try:
            expired = await sweep_expired_reservations(
                self.manager, now=now, batch_size=self.batch_size
            )
        except Exception:
            sweeper_runs_total.labels(result="error").inc()
            log.exception("reservation sweep failed; will retry on next tick")
            return 0

        sweeper_runs_total.labels(result="ok").inc()
        if expired:
            sweeper_expired_total.inc(expired)
            log.info("reservation sweep expired %d reservation(s)", expired)
        return expired

    def register(self, scheduler: AsyncIOScheduler) -> None:
        scheduler.add_job(
            self.run_once,
            "interval",
            seconds=self.interval_seconds,
            id=SWEEPER_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

    def start(self) -> AsyncIOScheduler:
        """Must be called with the event loop running."""
        if self._scheduler is None:
            self._scheduler = AsyncIOScheduler(timezone="UTC")
        self.register(self._scheduler)
        if not self._scheduler.running:
            self._scheduler.start()
        log.info("reservation sweeper started (every %ss)", self.interval_seconds)
        return self._scheduler

    def shutdown(self) -> None:
        if self._scheduler is None:
            return
        if self._scheduler.get_job(SWEEPER_JOB_ID) is not None:
            self._scheduler.remove_job(SWEEPER_JOB_ID)
        if self._owns_scheduler and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
        log.info("reservation sweeper stopped")
