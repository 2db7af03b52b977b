"""
Dashboard — headline metrics, top analysts, the recent activity feed and
the briefing density heatmap.

``compute_metrics`` aggregates a 90-day window and is cached for
``METRICS_CACHE_SECONDS``; the dashboard POSTs ``{"action": "invalidate"}``
after edits so the next load recomputes.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from config import METRICS_CACHE_SECONDS, METRICS_WINDOW_DAYS
from db.models import ActionItem, Analyst, Briefing, BriefingAnalyst, CalendarMeeting, Publication
from utils import TTLCache, add_months, as_utc, format_time_ago, iso

logger = logging.getLogger(__name__)

HEALTH_SCORES = {
    "EXCELLENT": 5,
    "GOOD": 4,
    "FAIR": 3,
    "POOR": 2,
    "CRITICAL": 1,
}

INFLUENCE_RANK = {"VERY_HIGH": 4, "HIGH": 3, "MEDIUM": 2, "LOW": 1}

ACTIVITY_WINDOW_DAYS = 7
ACTIVITY_PER_SOURCE = 3

_metrics_cache = TTLCache(METRICS_CACHE_SECONDS)


async def _count(db: AsyncSession, column, *where) -> int:
    return (await db.execute(select(func.count(column)).where(*where))).scalar() or 0


def average_relationship_health(values: list[Optional[str]]) -> float:
    """Mean of the health weights (unknown labels count as 3), 2 decimals; 3 when empty."""
    scored = [HEALTH_SCORES.get(v, 3) for v in values if v]
    if not scored:
        return 3
    return round(sum(scored) / len(scored), 2)


def engagement_rate(completed_briefings: int, active_analysts: int) -> int:
    if active_analysts <= 0:
        return 0
    return min(round(completed_briefings / active_analysts * 100), 100)


async def compute_metrics(db: AsyncSession, now: Optional[datetime] = None) -> dict:
    now = as_utc(now) or datetime.now(timezone.utc)
    since = now - timedelta(days=METRICS_WINDOW_DAYS)

    active_rows = (await db.execute(
        select(Analyst.influence_score, Analyst.relationship_health).where(Analyst.status == "ACTIVE")
    )).all()
    active_analysts = len(active_rows)
    scores = [row.influence_score for row in active_rows if row.influence_score]
    average_influence = round(sum(scores) / len(scores)) if scores else 0

    briefings_in_window = await _count(db, Briefing.id, Briefing.scheduled_at >= since)
    completed_briefings = await _count(
        db, Briefing.id, Briefing.scheduled_at >= since, Briefing.status == "COMPLETED"
    )

    recent_publications = (await db.execute(
        select(Publication)
        .where(Publication.published_at >= since)
        .order_by(Publication.published_at.desc())
        .limit(10)
    )).scalars().all()
    new_analysts = (await db.execute(
        select(Analyst)
        .where(Analyst.created_at >= since)
        .order_by(Analyst.created_at.desc())
        .limit(10)
    )).scalars().all()

    return {
        "total_analysts": await _count(db, Analyst.id),
        "active_analysts": active_analysts,
        "analysts_added_past_90_days": await _count(db, Analyst.id, Analyst.created_at >= since),
        "average_influence_score": average_influence,
        "relationship_health": average_relationship_health([row.relationship_health for row in active_rows]),
        "briefings_past_90_days": briefings_in_window,
        "completed_briefings": completed_briefings,
        "upcoming_briefings": await _count(
            db, Briefing.id,
            Briefing.scheduled_at > now,
            Briefing.status.in_(("SCHEDULED", "RESCHEDULED")),
        ),
        "publications_past_90_days": await _count(db, Publication.id, Publication.published_at >= since),
        "calendar_meetings": await _count(
            db, CalendarMeeting.id,
            CalendarMeeting.start_time >= since,
            CalendarMeeting.is_analyst_meeting.is_(True),
        ),
        "open_action_items": await _count(db, ActionItem.id, ActionItem.status != "COMPLETED"),
        "engagement_rate": engagement_rate(completed_briefings, active_analysts),
        "recent_publications": [
            {
                "id": p.id,
                "title": p.title,
                "type": p.type,
                "published_at": iso(p.published_at),
            }
            for p in recent_publications
        ],
        "new_analysts": [
            {
                "id": a.id,
                "first_name": a.first_name,
                "last_name": a.last_name,
                "company": a.company,
                "created_at": iso(a.created_at),
            }
            for a in new_analysts
        ],
        "cache_duration": METRICS_CACHE_SECONDS,
    }


async def get_metrics(db: AsyncSession, force: bool = False) -> tuple[dict, bool]:
    """``(metrics, cached)``; ``force`` skips the cache."""
    if not force:
        cached = _metrics_cache.get()
        if cached is not None:
            return cached, True
    metrics = await compute_metrics(db)
    _metrics_cache.set(metrics)
    return metrics, False


def invalidate_metrics() -> None:
    _metrics_cache.clear()


# ──────────────────────────────────────────────
# Widgets
# ──────────────────────────────────────────────

async def top_analysts(db: AsyncSession, limit: int = 5, now: Optional[datetime] = None) -> list[dict]:
    """Most influential active analysts with a relative last-contact label."""
    now = as_utc(now) or datetime.now(timezone.utc)
    analysts = (await db.execute(select(Analyst).where(Analyst.status == "ACTIVE"))).scalars().all()
    ranked = sorted(
        analysts,
        key=lambda a: (INFLUENCE_RANK.get(a.influence, 0), a.influence_score or 0),
        reverse=True,
    )[:limit]
    if not ranked:
        return []

    ids = [a.id for a in ranked]
    last_meetings = dict((await db.execute(
        select(CalendarMeeting.analyst_id, func.max(CalendarMeeting.end_time))
        .where(CalendarMeeting.analyst_id.in_(ids))
        .group_by(CalendarMeeting.analyst_id)
    )).all())

    result = []
    for analyst in ranked:
        candidates = [as_utc(d) for d in (analyst.last_contact_date, last_meetings.get(analyst.id)) if d]
        last_contact = max(candidates) if candidates else None
        result.append({
            "id": analyst.id,
            "name": analyst.full_name,
            "company": analyst.company or "Unknown",
            "influence": analyst.influence or "MEDIUM",
            "last_contact": format_time_ago(last_contact, now),
            "health": analyst.relationship_health or "GOOD",
        })
    return result


def _activity_time(when: datetime, now: datetime) -> str:
    minutes = int((now - when).total_seconds() // 60)
    if minutes < 60:
        return f"{max(minutes, 0)} minutes ago"
    if minutes < 24 * 60:
        return f"{minutes // 60} hours ago"
    days = minutes // (24 * 60)
    return "1 day ago" if days == 1 else f"{days} days ago"


async def recent_activity(db: AsyncSession, limit: int = 10, now: Optional[datetime] = None) -> list[dict]:
    """Last week's analyst edits, completed briefings, new publications and analyst meetings."""
    now = as_utc(now) or datetime.now(timezone.utc)
    since = now - timedelta(days=ACTIVITY_WINDOW_DAYS)
    items: list[tuple[datetime, dict]] = []

    def add(kind: str, message: str, when: datetime):
        when = as_utc(when)
        items.append((when, {
            "type": kind,
            "message": message,
            "time": _activity_time(when, now),
            "timestamp": iso(when),
        }))

    analysts = (await db.execute(
        select(Analyst).where(Analyst.updated_at >= since)
        .order_by(Analyst.updated_at.desc()).limit(ACTIVITY_PER_SOURCE)
    )).scalars().all()
    for a in analysts:
        company = f" ({a.company})" if a.company else ""
        add("analyst_updated", f"{a.full_name}{company} profile updated", a.updated_at)

    briefings = (await db.execute(
        select(Briefing).where(Briefing.status == "COMPLETED", Briefing.completed_at >= since)
        .order_by(Briefing.completed_at.desc()).limit(ACTIVITY_PER_SOURCE)
    )).scalars().all()
    for b in briefings:
        add("briefing_completed", f"Briefing completed: {b.title}", b.completed_at)

    publications = (await db.execute(
        select(Publication).where(Publication.created_at >= since)
        .order_by(Publication.created_at.desc()).limit(ACTIVITY_PER_SOURCE)
    )).scalars().all()
    for p in publications:
        add("publication_added", f"New publication by {p.analyst.full_name}: {p.title}", p.created_at)

    meetings = (await db.execute(
        select(CalendarMeeting).where(
            CalendarMeeting.is_analyst_meeting.is_(True),
            CalendarMeeting.start_time >= since,
            CalendarMeeting.start_time <= now,
        ).order_by(CalendarMeeting.start_time.desc()).limit(ACTIVITY_PER_SOURCE)
    )).scalars().all()
    for m in meetings:
        add("calendar_meeting", f"Analyst meeting: {m.title}", m.start_time)

    items.sort(key=lambda pair: pair[0], reverse=True)
    return [item for _when, item in items[:limit]]


async def briefing_density(db: AsyncSession, now: Optional[datetime] = None) -> dict:
    """Past year of briefings grouped by calendar day (UTC).

    Each day carries its briefing ids and the highest influence among the
    analysts linked to them, for the activity heatmap.
    """
    now = as_utc(now) or datetime.now(timezone.utc)
    since = add_months(now, -12)

    rows = (await db.execute(
        select(Briefing.id, Briefing.scheduled_at, Analyst.influence)
        .outerjoin(BriefingAnalyst, BriefingAnalyst.briefing_id == Briefing.id)
        .outerjoin(Analyst, Analyst.id == BriefingAnalyst.analyst_id)
        .where(Briefing.scheduled_at >= since)
        .order_by(Briefing.scheduled_at)
    )).all()

    days: dict[str, dict] = {}
    for briefing_id, scheduled_at, influence in rows:
        day = as_utc(scheduled_at).date().isoformat()
        entry = days.setdefault(day, {"date": day, "count": 0, "briefing_ids": [], "max_influence": None})
        if briefing_id not in entry["briefing_ids"]:
            entry["briefing_ids"].append(briefing_id)
            entry["count"] += 1
        if INFLUENCE_RANK.get(influence, 0) > INFLUENCE_RANK.get(entry["max_influence"], 0):
            entry["max_influence"] = influence

    data = list(days.values())
    return {
        "data": data,
        "period": {"start": since.date().isoformat(), "end": now.date().isoformat()},
        "total_briefings": sum(d["count"] for d in data),
        "unique_dates": len(data),
    }
