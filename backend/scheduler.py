"""
Scheduler — periodic background jobs started in the FastAPI lifespan.

1. ``calendar_auto_sync_loop``: wakes **hourly** and starts a sync for every
   active calendar connection whose ``last_sync_at`` is older than
   ``AUTO_SYNC_INTERVAL_HOURS``.  Connections holding the in-process sync lock
   are skipped.

2. ``publication_discovery_loop``: runs discovery for all active analysts
   every ``DISCOVERY_SCHEDULE_HOURS`` with ``save=True``.

Both loops log per-tick errors and keep running.  An interval of 0 disables a loop.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import or_, select

import config
from calendar_sync import SyncInProgressError, SyncOptions, start_calendar_sync, sync_locks
from db import async_session
from db.models import CalendarConnection
from progress import ProgressRun
from publication_discovery import discovery_runs, run_publication_discovery

logger = logging.getLogger(__name__)

AUTO_SYNC_TICK_SECONDS = 3600


async def connections_due_for_sync(
    session_factory=None,
    now: Optional[datetime] = None,
    interval_hours: Optional[int] = None,
) -> list[str]:
    """Ids of active connections never synced or last synced before the interval."""
    session_factory = session_factory or async_session
    now = now or datetime.now(timezone.utc)
    hours = config.AUTO_SYNC_INTERVAL_HOURS if interval_hours is None else interval_hours
    cutoff = now - timedelta(hours=hours)
    async with session_factory() as db:
        result = await db.execute(
            select(CalendarConnection.id).where(
                CalendarConnection.is_active.is_(True),
                or_(
                    CalendarConnection.last_sync_at.is_(None),
                    CalendarConnection.last_sync_at <= cutoff,
                ),
            )
        )
        return list(result.scalars().all())


async def run_auto_sync_tick(session_factory=None, now: Optional[datetime] = None) -> list[str]:
    """Start syncs for due connections.  Returns the ids actually started."""
    started: list[str] = []
    for connection_id in await connections_due_for_sync(session_factory, now):
        if sync_locks.is_locked(connection_id):
            logger.info("Auto-sync: %s already syncing, skipping", connection_id)
            continue
        try:
            start_calendar_sync(connection_id, SyncOptions(time_window="future"))
            started.append(connection_id)
        except SyncInProgressError:
            continue
    if started:
        logger.info("Auto-sync started for %d connection(s)", len(started))
    return started


async def calendar_auto_sync_loop() -> None:
    if config.AUTO_SYNC_INTERVAL_HOURS <= 0:
        logger.info("Calendar auto-sync disabled")
        return
    logger.info("Calendar auto-sync loop started (every %dh)", config.AUTO_SYNC_INTERVAL_HOURS)
    while True:
        try:
            await run_auto_sync_tick()
        except Exception as e:
            logger.error("Calendar auto-sync loop error: %s", e, exc_info=True)
        await asyncio.sleep(AUTO_SYNC_TICK_SECONDS)


async def publication_discovery_loop() -> None:
    if config.DISCOVERY_SCHEDULE_HOURS <= 0:
        logger.info("Scheduled publication discovery disabled")
        return
    logger.info("Publication discovery loop started (every %dh)", config.DISCOVERY_SCHEDULE_HOURS)
    while True:
        await asyncio.sleep(config.DISCOVERY_SCHEDULE_HOURS * 3600)
        try:
            discovery_runs.cleanup_old()
            run: ProgressRun = discovery_runs.start(f"scheduled-{int(datetime.now(timezone.utc).timestamp())}")
            found = await run_publication_discovery(run, save=True, active_only=True)
            logger.info("Scheduled discovery finished: %d candidates", len(found))
        except Exception as e:
            logger.error("Publication discovery loop error: %s", e, exc_info=True)
