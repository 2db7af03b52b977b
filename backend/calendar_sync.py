"""
Calendar Sync — pull Google Calendar events, match analysts, create briefings.

One sync per calendar connection at a time, guarded by an in-process lock
map (``sync_locks``).  A lock older than ``SYNC_LOCK_TIMEOUT_MINUTES`` is
treated as abandoned.  Nothing is coordinated across processes, so run a
single API worker if you rely on the lock.

Flow of ``run_calendar_sync``:
  1. Validate the connection, decrypt (and if needed refresh) its token.
  2. Compute the time window (future / custom / all) and list events.
  3. For every timed event, grouped by month:
       - skip duplicates (``title|start`` already a briefing) unless forced
       - match attendees to ACTIVE analysts by email heuristics
       - upsert a ``CalendarMeeting`` keyed on the Google event id
       - create a ``Briefing`` (+ analyst links) for titled analyst meetings
  4. Stamp ``last_sync_at`` and emit ``complete``.

Every step is streamed to the connection's ``ProgressRun`` (SSE) and the
coarse milestones are also written to ``calendar_sync_progress`` so a client
can poll instead of stream.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from sqlalchemy import select, update

from config import (
    MATCHED_MEETING_CONFIDENCE,
    SYNC_DEFAULT_START,
    SYNC_LOCK_TIMEOUT_MINUTES,
    SYNC_LOOKAHEAD_MONTHS,
)
from crypto import decrypt_token, encrypt_token
from db import async_session
from db.models import (
    Analyst,
    Briefing,
    BriefingAnalyst,
    CalendarConnection,
    CalendarMeeting,
    CalendarSyncProgress,
)
from google_calendar import GoogleCalendarClient, GoogleCalendarError, refresh_access_token
from progress import ProgressRun, RunRegistry
from utils import add_months, as_utc, iso, parse_datetime

logger = logging.getLogger(__name__)

TIME_WINDOWS = ("future", "custom", "all")


class SyncInProgressError(Exception):
    """A sync for this connection is already running."""


class SyncError(Exception):
    """Sync cannot proceed (missing / inactive connection etc.)."""


# ──────────────────────────────────────────────
# Lock map
# ──────────────────────────────────────────────

@dataclass
class SyncLock:
    started_at: datetime
    is_active: bool = True


class SyncLockManager:
    """Per-connection mutex with a staleness timeout."""

    def __init__(
        self,
        timeout_minutes: int = SYNC_LOCK_TIMEOUT_MINUTES,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.timeout = timedelta(minutes=timeout_minutes)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._locks: dict[str, SyncLock] = {}

    def is_locked(self, connection_id: str) -> bool:
        lock = self._locks.get(connection_id)
        if lock is None or not lock.is_active:
            return False
        if self._clock() - lock.started_at > self.timeout:
            logger.warning("Sync lock for %s is stale (started %s), ignoring", connection_id, lock.started_at)
            return False
        return True

    def acquire(self, connection_id: str) -> Optional[SyncLock]:
        """Take the lock.  Returns None if a live sync already holds it.

        The returned lock is the owner token to hand back to ``release``.
        """
        if self.is_locked(connection_id):
            return None
        lock = SyncLock(started_at=self._clock())
        self._locks[connection_id] = lock
        return lock

    def release(self, connection_id: str, owner: Optional[SyncLock] = None):
        """Drop the lock.  With ``owner``, only if that lock is still the one held."""
        if owner is not None and self._locks.get(connection_id) is not owner:
            logger.info("Sync lock for %s was taken over by a newer sync, leaving it", connection_id)
            return
        self._locks.pop(connection_id, None)

    def info(self, connection_id: str) -> Optional[dict]:
        if not self.is_locked(connection_id):
            return None
        return {"started_at": iso(self._locks[connection_id].started_at)}


sync_locks = SyncLockManager()
sync_runs = RunRegistry("calendar_sync")


# ──────────────────────────────────────────────
# Options & time windows
# ──────────────────────────────────────────────

@dataclass
class SyncOptions:
    time_window: str = "all"  # future | custom | all
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    force_sync: bool = False


def _day_bounds(value: str) -> tuple[datetime, datetime]:
    day = parse_datetime(value)
    start = day.replace(hour=0, minute=0, second=0, microsecond=0)
    end = day.replace(hour=23, minute=59, second=59, microsecond=999999)
    return start, end


def compute_time_window(options: SyncOptions, now: Optional[datetime] = None) -> tuple[datetime, datetime]:
    """Resolve the ``[time_min, time_max]`` range to fetch.

    Raises ``ValueError`` for unknown windows, missing custom dates, or an
    empty / inverted range.
    """
    now = as_utc(now) or datetime.now(timezone.utc)
    window = (options.time_window or "all").lower()
    if window not in TIME_WINDOWS:
        raise ValueError(f"Unknown time window '{options.time_window}'")

    if window == "future":
        time_min = now.replace(hour=0, minute=0, second=0, microsecond=0)
        time_max = add_months(now, SYNC_LOOKAHEAD_MONTHS)
    elif window == "custom":
        if not options.start_date or not options.end_date:
            raise ValueError("Custom time window requires start_date and end_date")
        time_min, _ = _day_bounds(options.start_date)
        _, time_max = _day_bounds(options.end_date)
    else:
        time_min = SYNC_DEFAULT_START
        time_max = add_months(now, SYNC_LOOKAHEAD_MONTHS)

    if time_min >= time_max:
        raise ValueError("Invalid date range: start date must be before end date")
    return time_min, time_max


# ──────────────────────────────────────────────
# Event helpers
# ──────────────────────────────────────────────

@dataclass(frozen=True)
class AnalystRef:
    """Detached analyst fields, safe to use across session rollbacks."""
    id: str
    first_name: str
    last_name: str
    email: str

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


def match_analyst_by_email(email: Optional[str], analysts):
    """Find the analyst behind an attendee email.

    1. Exact email match (case / whitespace insensitive).
    2. ``first.last@anything`` against first + last name.
    """
    needle = (email or "").strip().lower()
    if not needle:
        return None
    for analyst in analysts:
        if (analyst.email or "").strip().lower() == needle:
            return analyst

    local_part = needle.split("@", 1)[0]
    parts = local_part.split(".")
    if len(parts) >= 2 and parts[0] and parts[1]:
        first, last = parts[0], parts[1]
        for analyst in analysts:
            if (
                (analyst.first_name or "").strip().lower() == first
                and (analyst.last_name or "").strip().lower() == last
            ):
                return analyst
    return None


def match_attendees(emails: list[str], analysts) -> list:
    """Analysts matched by any attendee, each at most once, in attendee order."""
    matched, seen = [], set()
    for email in emails:
        analyst = match_analyst_by_email(email, analysts)
        if analyst is not None and analyst.id not in seen:
            seen.add(analyst.id)
            matched.append(analyst)
    return matched


def event_start(event: dict) -> Optional[datetime]:
    """Start of a timed event; ``None`` for all-day events (date only)."""
    value = (event.get("start") or {}).get("dateTime")
    return parse_datetime(value) if value else None


def event_end(event: dict) -> Optional[datetime]:
    value = (event.get("end") or {}).get("dateTime")
    return parse_datetime(value) if value else None


def attendee_emails(event: dict) -> list[str]:
    emails = []
    for attendee in event.get("attendees") or []:
        email = (attendee.get("email") or "").strip().lower()
        if email and not attendee.get("resource"):
            emails.append(email)
    return emails


def briefing_key(title: str, start: datetime) -> str:
    """Dedup key shared by calendar events and existing briefings."""
    return f"{(title or '').strip()}|{as_utc(start).strftime('%Y-%m-%dT%H:%M:%S')}"


def month_label(dt: datetime) -> str:
    return as_utc(dt).strftime("%B %Y")


# ──────────────────────────────────────────────
# Progress reporting
# ──────────────────────────────────────────────

@dataclass
class SyncStats:
    total_events: int = 0
    processed_events: int = 0
    created_briefings: int = 0
    created_meetings: int = 0
    analyst_meetings: int = 0
    months: list[str] = field(default_factory=list)

    def summary(self) -> dict:
        return {
            "total_events": self.total_events,
            "processed_events": self.processed_events,
            "created_briefings": self.created_briefings,
            "created_meetings": self.created_meetings,
        }


class SyncReporter:
    """Fans sync milestones out to the SSE run and the progress table."""

    def __init__(self, run: ProgressRun, connection_id: str, session_factory=None):
        self.run = run
        self.connection_id = connection_id
        self.session_factory = session_factory or async_session

    async def emit(self, event: dict):
        await self.run.emit(event)

    async def record(self, type_: str, **fields):
        """Persist one progress row.  Failures are logged, never raised."""
        try:
            async with self.session_factory() as db:
                db.add(CalendarSyncProgress(connection_id=self.connection_id, type=type_, **fields))
                await db.commit()
        except Exception as e:
            logger.warning("Could not record sync progress for %s: %s", self.connection_id, e)

    async def progress(self, pct: int, message: str):
        await self.emit({"type": "progress", "progress": pct, "message": message})
        await self.record("progress", message=message)

    async def month_started(self, month: str):
        await self.emit({"type": "month_started", "month": month})
        await self.record("month_started", month=month)

    async def month_result(self, month: str, found: int, stats: SyncStats):
        await self.emit({"type": "month_result", "month": month, "found_analyst_meetings": found})
        await self.record(
            "month_result",
            month=month,
            found_analyst_meetings=found,
            total_events_processed=stats.processed_events,
            relevant_meetings_count=stats.analyst_meetings,
        )

    async def complete(self, stats: SyncStats):
        summary = stats.summary()
        await self.emit({"type": "complete", "summary": summary})
        await self.record(
            "complete",
            message=(
                f"Sync complete: {stats.created_briefings} briefings, "
                f"{stats.created_meetings} meetings from {stats.total_events} events"
            ),
            total_events_processed=stats.processed_events,
            relevant_meetings_count=stats.analyst_meetings,
        )

    async def error(self, message: str):
        await self.emit({"type": "error", "message": message})
        await self.record("error", message=message)


# ──────────────────────────────────────────────
# Sync job
# ──────────────────────────────────────────────

async def _ensure_access_token(db, connection: CalendarConnection, now: datetime) -> str:
    """Decrypted access token, refreshed (and persisted) if about to expire."""
    access_token = decrypt_token(connection.access_token)
    expiry = as_utc(connection.token_expiry)
    if expiry is None or expiry > now + timedelta(minutes=1):
        return access_token

    if not connection.refresh_token:
        raise GoogleCalendarError(
            "Calendar access expired and no refresh token is stored. Reconnect the calendar.",
            status_code=401,
        )
    logger.info("Refreshing expired access token for connection %s", connection.id)
    bundle = await refresh_access_token(decrypt_token(connection.refresh_token))
    connection.access_token = encrypt_token(bundle.access_token)
    if bundle.refresh_token:
        connection.refresh_token = encrypt_token(bundle.refresh_token)
    connection.token_expiry = bundle.expiry
    await db.commit()
    return bundle.access_token


async def _upsert_meeting(
    db,
    connection_id: str,
    event: dict,
    title: str,
    start: datetime,
    end: datetime,
    attendees: list[str],
    matched: list[AnalystRef],
) -> CalendarMeeting:
    meeting = (await db.execute(
        select(CalendarMeeting).where(CalendarMeeting.google_event_id == event["id"])
    )).scalar_one_or_none()
    if meeting is None:
        meeting = CalendarMeeting(google_event_id=event["id"], calendar_connection_id=connection_id)
        db.add(meeting)

    meeting.calendar_connection_id = connection_id
    meeting.title = title
    meeting.description = event.get("description")
    meeting.start_time = start
    meeting.end_time = end
    meeting.attendees = attendees
    meeting.analyst_id = matched[0].id if matched else None
    meeting.is_analyst_meeting = bool(matched)
    meeting.confidence = MATCHED_MEETING_CONFIDENCE if matched else 0.0
    return meeting


def _build_briefing(
    event: dict,
    title: str,
    start: datetime,
    end: datetime,
    attendees: list[str],
    matched: list[AnalystRef],
    now: datetime,
) -> Briefing:
    is_future = start > now
    duration = max(1, round((end - start).total_seconds() / 60))
    location = (event.get("location") or "").strip()
    description = (event.get("description") or "").strip() or (
        "Meeting with " + ", ".join(a.full_name for a in matched)
    )
    return Briefing(
        title=title,
        description=description,
        scheduled_at=start,
        completed_at=None if is_future else end,
        status="SCHEDULED" if is_future else "COMPLETED",
        agenda=f"Location: {location}" if location else None,
        duration_minutes=duration,
        attendee_emails=attendees,
        analyst_links=[BriefingAnalyst(analyst_id=a.id) for a in matched],
    )


async def _process_event(
    db,
    connection_id: str,
    event: dict,
    analysts: list[AnalystRef],
    existing_keys: set[str],
    stats: SyncStats,
    reporter: SyncReporter,
    force_sync: bool,
    now: datetime,
) -> bool:
    """Handle one timed event.  Returns True if it was an analyst meeting."""
    title = (event.get("summary") or "").strip()
    start = event_start(event)
    end = event_end(event) or start
    key = briefing_key(title, start)
    is_duplicate = key in existing_keys
    if (is_duplicate and not force_sync) or not event.get("id"):
        return False

    attendees = attendee_emails(event)
    matched = match_attendees(attendees, analysts)
    await _upsert_meeting(db, connection_id, event, title, start, end, attendees, matched)

    is_analyst_meeting = bool(title and matched)
    create_briefing = is_analyst_meeting and not is_duplicate
    if create_briefing:
        db.add(_build_briefing(event, title, start, end, attendees, matched, now))
    await db.commit()

    stats.created_meetings += 1
    if create_briefing:
        existing_keys.add(key)
        stats.created_briefings += 1
    if is_analyst_meeting:
        stats.analyst_meetings += 1
        await reporter.emit({
            "type": "analyst_meeting_found",
            "title": title,
            "start_time": iso(start),
            "analysts": [{"id": a.id, "name": a.full_name, "email": a.email} for a in matched],
            "briefing_created": create_briefing,
        })
    return is_analyst_meeting


async def _sync(
    connection_id: str,
    options: SyncOptions,
    reporter: SyncReporter,
    session_factory,
    now: datetime,
) -> SyncStats:
    await reporter.progress(0, "Starting calendar sync...")

    async with session_factory() as db:
        connection = await db.get(CalendarConnection, connection_id)
        if connection is None:
            raise SyncError("Calendar connection not found")
        if not connection.is_active:
            raise SyncError("Calendar connection is inactive")

        await reporter.progress(10, "Validating calendar connection...")
        time_min, time_max = compute_time_window(options, now)
        access_token = await _ensure_access_token(db, connection, now)

        await reporter.progress(20, f"Fetching events from {connection.title or connection.email}...")
        await reporter.progress(25, f"Requesting events from {time_min:%Y-%m-%d} to {time_max:%Y-%m-%d}")
        async with GoogleCalendarClient(access_token) as gcal:
            events = await gcal.list_events(time_min, time_max)
        await reporter.progress(40, f"Found {len(events)} calendar events")

        analysts = [
            AnalystRef(id=a.id, first_name=a.first_name, last_name=a.last_name, email=a.email)
            for a in (await db.execute(select(Analyst).where(Analyst.status == "ACTIVE"))).scalars()
        ]
        existing_keys = {
            briefing_key(title, scheduled_at)
            for title, scheduled_at in (await db.execute(select(Briefing.title, Briefing.scheduled_at))).all()
        }
        await reporter.progress(50, f"Matching events against {len(analysts)} active analysts...")

        stats = SyncStats(total_events=len(events))
        current_month: Optional[str] = None
        month_found = 0
        for event in events:
            start = event_start(event)
            if start is None:
                continue  # all-day event

            month = month_label(start)
            if month != current_month:
                if current_month is not None:
                    await reporter.month_result(current_month, month_found, stats)
                current_month, month_found = month, 0
                stats.months.append(month)
                await reporter.month_started(month)

            try:
                found = await _process_event(
                    db, connection_id, event, analysts, existing_keys, stats, reporter, options.force_sync, now
                )
            except Exception as e:
                await db.rollback()
                logger.error("Error processing calendar event %s: %s", event.get("id"), e, exc_info=True)
                continue

            if found:
                month_found += 1
            stats.processed_events += 1
            await reporter.emit({
                "type": "event_processed",
                "processed": stats.processed_events,
                "total": stats.total_events,
            })

        if current_month is not None:
            await reporter.month_result(current_month, month_found, stats)

        await db.execute(
            update(CalendarConnection)
            .where(CalendarConnection.id == connection_id)
            .values(last_sync_at=datetime.now(timezone.utc))
        )
        await db.commit()

    await reporter.progress(100, "Calendar sync completed")
    await reporter.complete(stats)
    logger.info(
        "Calendar sync %s completed: %d briefings, %d meetings from %d events",
        connection_id, stats.created_briefings, stats.created_meetings, stats.total_events,
    )
    return stats


async def run_calendar_sync(
    connection_id: str,
    run: ProgressRun,
    options: Optional[SyncOptions] = None,
    session_factory=None,
    now: Optional[datetime] = None,
    locks: Optional[SyncLockManager] = None,
    lock: Optional[SyncLock] = None,
) -> Optional[SyncStats]:
    """Background entry point.  Never raises (except cancellation); always releases the lock."""
    options = options or SyncOptions()
    session_factory = session_factory or async_session
    locks = locks or sync_locks
    now = as_utc(now) or datetime.now(timezone.utc)
    reporter = SyncReporter(run, connection_id, session_factory)
    try:
        return await _sync(connection_id, options, reporter, session_factory, now)
    except asyncio.CancelledError:
        logger.info("Calendar sync %s cancelled", connection_id)
        raise
    except Exception as e:
        logger.error("Calendar sync %s failed: %s", connection_id, e, exc_info=True)
        await reporter.error(str(e) or "Calendar sync failed")
        return None
    finally:
        locks.release(connection_id, lock)


def start_calendar_sync(connection_id: str, options: Optional[SyncOptions] = None) -> ProgressRun:
    """Acquire the lock and launch the sync as a background task.

    Raises ``SyncInProgressError`` if another sync holds the lock.
    """
    lock = sync_locks.acquire(connection_id)
    if lock is None:
        raise SyncInProgressError("Calendar sync already in progress")
    sync_runs.cleanup_old()
    run = sync_runs.start(connection_id)
    task = asyncio.create_task(run_calendar_sync(connection_id, run, options, lock=lock))
    sync_runs.set_task(connection_id, task)
    return run
