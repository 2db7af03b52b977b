"""
Briefings Due — which analysts are owed a briefing under their tier's cadence.

Each active analyst is matched to an influence tier (``influence_tiers``) and
its ``briefing_frequency`` (days).  The last time we met them is taken from
the first signal that exists:

  1. latest COMPLETED briefing linked to them (its ``completed_at``)
  2. latest COMPLETED briefing with their email among the attendees
  3. latest past briefing linked to them, whatever its status
  4. latest past briefing with their email among the attendees
  5. latest past briefing with their first and last name in the title
  6. latest past calendar meeting with their email among the attendees,
     else one linked by ``analyst_id``

An analyst needs a briefing when nothing is scheduled and either we have
never met or the last meeting is at least ``briefing_frequency`` days ago.

The computation walks every briefing for every analyst, so results are
cached for ``BRIEFINGS_DUE_CACHE_SECONDS``.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config import BRIEFINGS_DUE_CACHE_SECONDS
from db.models import Analyst, Briefing, CalendarMeeting, InfluenceTier
from utils import TTLCache, as_utc, iso

logger = logging.getLogger(__name__)

INFLUENCE_LEVELS = ("VERY_HIGH", "HIGH", "MEDIUM", "LOW")

TIER_FILTERS = {
    "TIER_1": "VERY_HIGH",
    "TIER_2": "HIGH",
    "TIER_3": "MEDIUM",
    "TIER_4": "LOW",
}

UPCOMING_STATUSES = ("SCHEDULED", "RESCHEDULED")


@dataclass(frozen=True)
class BriefingInfo:
    id: str
    title: str
    scheduled_at: datetime
    completed_at: Optional[datetime]
    status: str
    analyst_ids: frozenset = frozenset()
    attendee_emails: frozenset = frozenset()

    @classmethod
    def from_row(cls, briefing: Briefing) -> "BriefingInfo":
        return cls(
            id=briefing.id,
            title=briefing.title or "",
            scheduled_at=as_utc(briefing.scheduled_at),
            completed_at=as_utc(briefing.completed_at),
            status=briefing.status,
            analyst_ids=frozenset(link.analyst_id for link in briefing.analyst_links),
            attendee_emails=frozenset((e or "").lower() for e in (briefing.attendee_emails or [])),
        )


@dataclass(frozen=True)
class MeetingInfo:
    start_time: datetime
    end_time: Optional[datetime]
    attendees: frozenset = frozenset()
    analyst_id: Optional[str] = None
    is_analyst_meeting: bool = False

    @classmethod
    def from_row(cls, meeting: CalendarMeeting) -> "MeetingInfo":
        return cls(
            start_time=as_utc(meeting.start_time),
            end_time=as_utc(meeting.end_time),
            attendees=frozenset((e or "").lower() for e in (meeting.attendees or [])),
            analyst_id=meeting.analyst_id,
            is_analyst_meeting=bool(meeting.is_analyst_meeting),
        )


# ──────────────────────────────────────────────
# Pure evaluation
# ──────────────────────────────────────────────

def tier_for_influence(influence: Optional[str], tiers: list):
    """Tier row whose name matches an analyst's influence level (None if none does)."""
    key = (influence or "").upper()
    for tier in tiers:
        name = (tier.name or "").strip().upper()
        if key == "VERY_HIGH" and "VERY" in name and "HIGH" in name:
            return tier
        if key in ("HIGH", "MEDIUM", "LOW") and name == key:
            return tier
    return None


def find_last_meeting(
    analyst,
    briefings: list[BriefingInfo],
    meetings: list[MeetingInfo],
    now: datetime,
) -> tuple[Optional[datetime], Optional[str]]:
    """``(when, briefing_id)`` of the most recent meeting with *analyst*."""
    email = (analyst.email or "").lower()

    completed = [b for b in briefings if b.status == "COMPLETED" and b.completed_at]
    for matches in (
        lambda b: analyst.id in b.analyst_ids,
        lambda b: bool(email) and email in b.attendee_emails,
    ):
        candidates = [b for b in completed if matches(b)]
        if candidates:
            latest = max(candidates, key=lambda b: b.completed_at)
            return latest.completed_at, latest.id

    past = sorted((b for b in briefings if b.scheduled_at <= now), key=lambda b: b.scheduled_at, reverse=True)

    for b in past:
        if analyst.id in b.analyst_ids:
            return b.scheduled_at, b.id
    if email:
        for b in past:
            if email in b.attendee_emails:
                return b.scheduled_at, b.id
    first = (analyst.first_name or "").lower()
    last = (analyst.last_name or "").lower()
    if first and last:
        for b in past:
            title = b.title.lower()
            if first in title and last in title:
                return b.scheduled_at, b.id

    past_meetings = sorted(
        (m for m in meetings if m.start_time <= now), key=lambda m: m.start_time, reverse=True
    )
    if email:
        for m in past_meetings:
            if email in m.attendees:
                return m.end_time or m.start_time, None
    for m in past_meetings:
        if m.is_analyst_meeting and m.analyst_id == analyst.id:
            return m.end_time or m.start_time, None
    return None, None


def find_next_briefing(analyst, briefings: list[BriefingInfo], now: datetime) -> Optional[BriefingInfo]:
    email = (analyst.email or "").lower()
    upcoming = sorted(
        (b for b in briefings if b.scheduled_at > now and b.status in UPCOMING_STATUSES),
        key=lambda b: b.scheduled_at,
    )
    for b in upcoming:
        if analyst.id in b.analyst_ids:
            return b
    if email:
        for b in upcoming:
            if email in b.attendee_emails:
                return b
    return None


def evaluate_analyst(
    analyst,
    tiers: list,
    briefings: list[BriefingInfo],
    meetings: list[MeetingInfo],
    now: datetime,
) -> Optional[dict]:
    """Due-list entry for *analyst*, or None if they are not due (or have no usable tier)."""
    tier = tier_for_influence(analyst.influence, tiers)
    if tier is None or not tier.is_active:
        return None
    frequency = tier.briefing_frequency
    if frequency is None:
        return None  # tier set to "never"

    last_at, last_id = find_last_meeting(analyst, briefings, meetings, now)
    next_briefing = find_next_briefing(analyst, briefings, now)

    days_since = (now - last_at).days if last_at else None
    needs_briefing = next_briefing is None and (days_since is None or days_since >= frequency)
    if not needs_briefing:
        return None

    overdue_days = max(days_since - frequency, 0) if days_since is not None and frequency > 0 else None
    influence = (analyst.influence or "").upper()
    return {
        "id": analyst.id,
        "first_name": analyst.first_name,
        "last_name": analyst.last_name,
        "email": analyst.email,
        "company": analyst.company,
        "title": analyst.title,
        "influence": influence,
        "relationship_health": analyst.relationship_health or "GOOD",
        "profile_image_url": analyst.profile_image_url,
        "tier": {
            "name": tier.name,
            "briefing_frequency": frequency,
            "normalized": influence,
        },
        "last_briefing": {"id": last_id, "scheduled_at": iso(last_at)} if last_at else None,
        "next_briefing": None,
        "days_since_last_briefing": days_since,
        "overdue_days": overdue_days,
        "needs_briefing": True,
    }


def _sort_key(entry: dict):
    # Never met first, then most overdue
    overdue = entry["overdue_days"]
    return (entry["needs_briefing"], entry["days_since_last_briefing"] is None, overdue if overdue is not None else -1)


def counts_by_tier(entries: list[dict]) -> dict[str, int]:
    counts = {level: 0 for level in INFLUENCE_LEVELS}
    for entry in entries:
        level = entry["tier"]["normalized"]
        if level in counts:
            counts[level] += 1
    return counts


def filter_due(entries: list[dict], tier: Optional[str] = None, search: Optional[str] = None) -> list[dict]:
    """Apply the route's ``tier`` (TIER_1..TIER_4) and free-text ``search`` filters."""
    result = entries
    if tier and tier.upper() != "ALL":
        wanted = TIER_FILTERS.get(tier.upper())
        if wanted:
            result = [e for e in result if e["tier"]["normalized"] == wanted]
    if search:
        needle = search.lower()
        result = [
            e for e in result
            if needle in f"{e['first_name']} {e['last_name']}".lower()
            or needle in (e["email"] or "").lower()
            or needle in (e["company"] or "").lower()
        ]
    return result


# ──────────────────────────────────────────────
# DB loading + cache
# ──────────────────────────────────────────────

async def compute_due_analysts(db: AsyncSession, now: Optional[datetime] = None) -> list[dict]:
    """Evaluate every active analyst.  Returns due entries, most urgent first."""
    now = as_utc(now) or datetime.now(timezone.utc)

    tiers = (await db.execute(
        select(InfluenceTier).where(InfluenceTier.is_active.is_(True)).order_by(InfluenceTier.order)
    )).scalars().all()
    analysts = (await db.execute(
        select(Analyst).where(Analyst.status == "ACTIVE").order_by(Analyst.first_name)
    )).scalars().all()
    briefings = [BriefingInfo.from_row(b) for b in (await db.execute(select(Briefing))).scalars()]
    meetings = [MeetingInfo.from_row(m) for m in (await db.execute(select(CalendarMeeting))).scalars()]

    entries = []
    for analyst in analysts:
        entry = evaluate_analyst(analyst, tiers, briefings, meetings, now)
        if entry is not None:
            entries.append(entry)
    entries.sort(key=_sort_key, reverse=True)
    logger.info("Briefings due: %d of %d active analysts", len(entries), len(analysts))
    return entries


class BriefingsDueCache:
    """Process-wide cache of the full due list (filters are applied per request)."""

    def __init__(self, ttl_seconds: float = BRIEFINGS_DUE_CACHE_SECONDS):
        self._cache = TTLCache(ttl_seconds)

    @property
    def updated_at(self) -> Optional[datetime]:
        return self._cache.updated_at

    async def get(self, db: AsyncSession, force: bool = False, now: Optional[datetime] = None) -> tuple[dict, bool]:
        """Return ``({"data", "counts"}, cached)``."""
        if not force:
            cached = self._cache.get()
            if cached is not None:
                return cached, True
        entries = await compute_due_analysts(db, now)
        result = {"data": entries, "counts": counts_by_tier(entries)}
        self._cache.set(result)
        return result, False

    def invalidate(self) -> None:
        self._cache.clear()


briefings_due_cache = BriefingsDueCache()
