"""
Shared test fixtures for the entire test suite.

Provides:
  - In-memory SQLite database with all tables
  - A seeded test user profile
  - Session factory for background jobs (calendar sync, discovery)
  - Sample data factories for analysts, briefings, tiers, meetings, etc.
"""

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from sqlalchemy import String
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from db import Base
from db.models import (
    Analyst,
    AnalystTopic,
    Briefing,
    BriefingAnalyst,
    CalendarConnection,
    CalendarMeeting,
    InfluenceTier,
    Profile,
    Publication,
)

# ── Deterministic test IDs ──────────────────────
TEST_USER_ID = "00000000-0000-4000-8000-000000000001"
OTHER_USER_ID = "00000000-0000-4000-8000-000000000002"

NOW = datetime(2025, 6, 15, 12, 0, tzinfo=timezone.utc)


def _patch_uuid_columns_for_sqlite():
    """Replace PostgreSQL UUID columns with String(36) for SQLite compat."""
    for table in Base.metadata.tables.values():
        for col in table.columns:
            if hasattr(col.type, "__class__") and col.type.__class__.__name__ == "UUID":
                col.type = String(36)


# Patch at import time, before any test module configures the ORM mappers.
_patch_uuid_columns_for_sqlite()


@pytest_asyncio.fixture
async def db_engine():
    """Create a fresh in-memory SQLite engine."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    _patch_uuid_columns_for_sqlite()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    """Session factory bound to the test engine (what background jobs receive)."""
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory):
    """Provide a DB session with the test profiles pre-seeded."""
    async with session_factory() as session:
        for uid, name in [(TEST_USER_ID, "owner"), (OTHER_USER_ID, "other")]:
            session.add(Profile(id=uid, email=f"{name}@test.com", display_name=f"Test {name.title()}"))
        await session.commit()
        yield session


# ── Sample data factories ──────────────────────

def make_analyst(**overrides) -> Analyst:
    """Create an (unsaved) Analyst with sensible defaults."""
    topics = overrides.pop("topics", [])
    defaults = {
        "first_name": "Jane",
        "last_name": "Doe",
        "email": "jane.doe@gartner.com",
        "company": "Gartner",
        "title": "VP Analyst",
        "influence": "HIGH",
        "influence_score": 80,
        "relationship_health": "GOOD",
        "status": "ACTIVE",
    }
    defaults.update(overrides)
    return Analyst(**defaults, covered_topics=[AnalystTopic(topic=t) for t in topics])


def make_briefing(analysts=(), **overrides) -> Briefing:
    """Create an (unsaved) Briefing linked to *analysts*."""
    defaults = {
        "title": "Quarterly briefing",
        "scheduled_at": NOW - timedelta(days=30),
        "status": "COMPLETED",
        "completed_at": NOW - timedelta(days=30),
        "attendee_emails": [],
    }
    defaults.update(overrides)
    return Briefing(**defaults, analyst_links=[BriefingAnalyst(analyst_id=a.id) for a in analysts])


def make_tier(**overrides) -> InfluenceTier:
    defaults = {
        "name": "Very High",
        "briefing_frequency": 30,
        "order": 0,
        "is_active": True,
    }
    defaults.update(overrides)
    return InfluenceTier(**defaults)


def default_tiers() -> list[InfluenceTier]:
    return [
        make_tier(name="Very High", briefing_frequency=30, order=0),
        make_tier(name="High", briefing_frequency=60, order=1),
        make_tier(name="Medium", briefing_frequency=90, order=2),
        make_tier(name="Low", briefing_frequency=None, order=3),
    ]


def make_connection(**overrides) -> CalendarConnection:
    defaults = {
        "user_id": TEST_USER_ID,
        "google_account_id": "google-123",
        "email": "owner@company.com",
        "title": "Work calendar",
        "access_token": "encrypted-access",
        "refresh_token": "encrypted-refresh",
        "token_expiry": NOW + timedelta(hours=1),
        "is_active": True,
    }
    defaults.update(overrides)
    return CalendarConnection(**defaults)


def make_meeting(connection_id: str, **overrides) -> CalendarMeeting:
    defaults = {
        "calendar_connection_id": connection_id,
        "google_event_id": "evt-1",
        "title": "Analyst sync",
        "start_time": NOW - timedelta(days=3),
        "end_time": NOW - timedelta(days=3) + timedelta(minutes=30),
        "attendees": [],
        "is_analyst_meeting": False,
        "confidence": 0.0,
    }
    defaults.update(overrides)
    return CalendarMeeting(**defaults)


def make_publication(analyst_id: str, **overrides) -> Publication:
    defaults = {
        "analyst_id": analyst_id,
        "title": "The State of HR Tech",
        "url": "https://example.com/research/state-of-hr-tech",
        "type": "RESEARCH_REPORT",
        "published_at": NOW - timedelta(days=10),
    }
    defaults.update(overrides)
    return Publication(**defaults)


def make_event(event_id: str = "evt-1", title: str = "Briefing with Jane", start: datetime = None,
               minutes: int = 30, attendees=(), **extra) -> dict:
    """A Google Calendar API event resource."""
    start = start or (NOW - timedelta(days=2))
    event = {
        "id": event_id,
        "summary": title,
        "start": {"dateTime": start.isoformat()},
        "end": {"dateTime": (start + timedelta(minutes=minutes)).isoformat()},
        "attendees": [{"email": e} for e in attendees],
    }
    event.update(extra)
    return event
