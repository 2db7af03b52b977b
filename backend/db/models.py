"""
Database Models — SQLAlchemy ORM models for Supabase PostgreSQL.

Supabase manages authentication in its ``auth.users`` table.  We keep a
lightweight ``profiles`` table (keyed by the Supabase user UUID) so calendar
connections can reference their owner.

Tables:
  - profiles:               App users (Supabase auth UUID)
  - general_settings:       Single row of company-level settings
  - influence_tiers:        Briefing cadence per influence level
  - predefined_topics:      Topic vocabulary for analyst coverage
  - analysts:               Industry analysts we manage relationships with
  - analyst_topics:         Topics each analyst covers
  - briefings:              Scheduled / completed analyst briefings
  - briefing_analysts:      Briefing ↔ analyst links
  - action_items:           Follow-ups, optionally tied to a briefing
  - publications:           Research / articles published by analysts
  - awards:                 Industry awards we evaluate or submit to
  - events:                 Conferences and analyst events
  - testimonials:           Quotes for marketing use
  - calendar_connections:   Google Calendar OAuth connections (tokens encrypted)
  - calendar_meetings:      Calendar events seen by the sync job
  - calendar_sync_progress: Persisted sync progress log
"""

from datetime import datetime, timezone
from typing import Optional

import uuid as _uuid

from sqlalchemy import (
    String,
    Integer,
    Float,
    Boolean,
    Text,
    DateTime,
    ForeignKey,
    JSON,
    Index,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from db import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(_uuid.uuid4())


class Profile(Base):
    """App user.  ``id`` is the Supabase auth.users UUID."""
    __tablename__ = "profiles"

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True)  # Supabase user UUID
    email: Mapped[Optional[str]] = mapped_column(String(255), unique=True, index=True, nullable=True)
    display_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    role: Mapped[str] = mapped_column(String(20), default="ADMIN")  # ADMIN | EDITOR | VIEWER
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    calendar_connections: Mapped[list["CalendarConnection"]] = relationship(
        back_populates="profile", cascade="all, delete-orphan"
    )


# ──────────────────────────────────────────────
# Settings
# ──────────────────────────────────────────────

class GeneralSettings(Base):
    """Company-level settings.  The table holds at most one row."""
    __tablename__ = "general_settings"

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=_new_id)
    company_name: Mapped[str] = mapped_column(String(255), default="")
    protected_domain: Mapped[str] = mapped_column(String(255), default="")  # our own email domain
    logo_url: Mapped[str] = mapped_column(String(1000), default="")
    industry_name: Mapped[str] = mapped_column(String(100), default="HR Technology")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )


class InfluenceTier(Base):
    """Briefing cadence for one influence level (Very High / High / Medium / Low)."""
    __tablename__ = "influence_tiers"

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(100))
    color: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    # Days between briefings; NULL means "never"
    briefing_frequency: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    touchpoint_frequency: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    order: Mapped[int] = mapped_column(Integer, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )


class PredefinedTopic(Base):
    __tablename__ = "predefined_topics"

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(200), unique=True)
    category: Mapped[str] = mapped_column(String(20), default="CORE")  # CORE | ADDITIONAL
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    order: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


# ──────────────────────────────────────────────
# Analysts
# ──────────────────────────────────────────────

class Analyst(Base):
    __tablename__ = "analysts"

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=_new_id)
    first_name: Mapped[str] = mapped_column(String(100))
    last_name: Mapped[str] = mapped_column(String(100), index=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    company: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    title: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    linkedin_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    twitter_handle: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    personal_website: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    bio: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    profile_image_url: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)
    type: Mapped[str] = mapped_column(String(30), default="ANALYST")  # ANALYST | PRESS | INVESTOR | PRACTITIONER | INFLUENCER
    influence: Mapped[str] = mapped_column(String(20), default="MEDIUM")  # LOW | MEDIUM | HIGH | VERY_HIGH
    influence_score: Mapped[int] = mapped_column(Integer, default=50)  # 0-100
    relationship_health: Mapped[str] = mapped_column(String(20), default="GOOD")  # EXCELLENT | GOOD | FAIR | POOR | CRITICAL
    status: Mapped[str] = mapped_column(String(20), default="ACTIVE", index=True)  # ACTIVE | INACTIVE | ARCHIVED
    key_themes: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_contact_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    next_contact_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    covered_topics: Mapped[list["AnalystTopic"]] = relationship(
        back_populates="analyst", cascade="all, delete-orphan", lazy="selectin"
    )
    publications: Mapped[list["Publication"]] = relationship(
        back_populates="analyst", cascade="all, delete-orphan"
    )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class AnalystTopic(Base):
    __tablename__ = "analyst_topics"

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=_new_id)
    analyst_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False), ForeignKey("analysts.id", ondelete="CASCADE"), index=True
    )
    topic: Mapped[str] = mapped_column(String(200))

    analyst: Mapped["Analyst"] = relationship(back_populates="covered_topics")


# ──────────────────────────────────────────────
# Briefings
# ──────────────────────────────────────────────

class Briefing(Base):
    __tablename__ = "briefings"

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=_new_id)
    title: Mapped[str] = mapped_column(String(500))
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    scheduled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="SCHEDULED", index=True)  # SCHEDULED | COMPLETED | CANCELLED | RESCHEDULED
    agenda: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    outcomes: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    follow_up_actions: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    duration_minutes: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    attendee_emails: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    ai_summary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    recording_url: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)
    transcript: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    analyst_links: Mapped[list["BriefingAnalyst"]] = relationship(
        back_populates="briefing", cascade="all, delete-orphan", lazy="selectin"
    )
    action_items: Mapped[list["ActionItem"]] = relationship(back_populates="briefing")


class BriefingAnalyst(Base):
    __tablename__ = "briefing_analysts"
    __table_args__ = (
        Index("ix_briefing_analysts_pair", "briefing_id", "analyst_id", unique=True),
    )

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=_new_id)
    briefing_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False), ForeignKey("briefings.id", ondelete="CASCADE"), index=True
    )
    analyst_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False), ForeignKey("analysts.id", ondelete="CASCADE"), index=True
    )
    role: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    briefing: Mapped["Briefing"] = relationship(back_populates="analyst_links")
    analyst: Mapped["Analyst"] = relationship(lazy="selectin")


class ActionItem(Base):
    __tablename__ = "action_items"

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=_new_id)
    title: Mapped[str] = mapped_column(String(500))
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="PENDING", index=True)  # PENDING | IN_PROGRESS | COMPLETED
    priority: Mapped[str] = mapped_column(String(10), default="MEDIUM")  # LOW | MEDIUM | HIGH | URGENT
    due_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    assigned_to: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    analyst_id: Mapped[Optional[str]] = mapped_column(
        UUID(as_uuid=False), ForeignKey("analysts.id", ondelete="SET NULL"), nullable=True, index=True
    )
    briefing_id: Mapped[Optional[str]] = mapped_column(
        UUID(as_uuid=False), ForeignKey("briefings.id", ondelete="SET NULL"), nullable=True, index=True
    )
    tags: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    briefing: Mapped[Optional["Briefing"]] = relationship(back_populates="action_items")


# ──────────────────────────────────────────────
# Publications, awards, events, testimonials
# ──────────────────────────────────────────────

class Publication(Base):
    __tablename__ = "publications"
    __table_args__ = (
        Index("ix_publications_analyst_url", "analyst_id", "url"),
    )

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=_new_id)
    analyst_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False), ForeignKey("analysts.id", ondelete="CASCADE"), index=True
    )
    title: Mapped[str] = mapped_column(String(1000))
    url: Mapped[Optional[str]] = mapped_column(String(2000), nullable=True)
    summary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    type: Mapped[str] = mapped_column(String(30), default="ARTICLE")  # RESEARCH_REPORT | BLOG_POST | WHITEPAPER | WEBINAR | PODCAST | ARTICLE | OTHER
    published_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    is_tracked: Mapped[bool] = mapped_column(Boolean, default=True)
    source: Mapped[str] = mapped_column(String(20), default="manual")  # manual | discovery
    relevance_score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    impact_score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    significance: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    analyst: Mapped["Analyst"] = relationship(back_populates="publications", lazy="selectin")


class Award(Base):
    __tablename__ = "awards"

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(500))
    link: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)
    organization: Mapped[str] = mapped_column(String(255))
    product_topics: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    priority: Mapped[str] = mapped_column(String(10), default="MEDIUM")  # LOW | MEDIUM | HIGH
    submission_date: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    publication_date: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    owner: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="EVALUATING")  # EVALUATING | SUBMITTED | UNDER_REVIEW | WINNER | FINALIST | NOT_SELECTED
    cost: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )


class Event(Base):
    __tablename__ = "events"

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=_new_id)
    event_name: Mapped[str] = mapped_column(String(500))
    link: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)
    type: Mapped[str] = mapped_column(String(20), default="CONFERENCE")  # CONFERENCE | EXHIBITION | WEBINAR
    audience_groups: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    participation_types: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    owner: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    location: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="EVALUATING")  # EVALUATING | COMMITTED | CONTRACTED | NOT_GOING
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )


class Testimonial(Base):
    __tablename__ = "testimonials"

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=_new_id)
    text: Mapped[str] = mapped_column(Text)
    author: Mapped[str] = mapped_column(String(255))
    company: Mapped[str] = mapped_column(String(255))
    rating: Mapped[int] = mapped_column(Integer, default=5)
    is_published: Mapped[bool] = mapped_column(Boolean, default=False)
    display_order: Mapped[int] = mapped_column(Integer, default=0)
    analyst_id: Mapped[Optional[str]] = mapped_column(
        UUID(as_uuid=False), ForeignKey("analysts.id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )


# ──────────────────────────────────────────────
# Google Calendar
# ──────────────────────────────────────────────

class CalendarConnection(Base):
    """One connected Google account.  Tokens are AES-GCM encrypted (see crypto.py)."""
    __tablename__ = "calendar_connections"
    __table_args__ = (
        Index("ix_calendar_connections_user_account", "user_id", "google_account_id", unique=True),
    )

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(UUID(as_uuid=False), ForeignKey("profiles.id"), index=True)
    provider: Mapped[str] = mapped_column(String(20), default="google")
    google_account_id: Mapped[str] = mapped_column(String(255))
    email: Mapped[str] = mapped_column(String(255))
    title: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    access_token: Mapped[str] = mapped_column(Text)
    refresh_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    token_expiry: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    last_sync_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    profile: Mapped["Profile"] = relationship(back_populates="calendar_connections")


class CalendarMeeting(Base):
    __tablename__ = "calendar_meetings"

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=_new_id)
    calendar_connection_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False), ForeignKey("calendar_connections.id", ondelete="CASCADE"), index=True
    )
    google_event_id: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    title: Mapped[str] = mapped_column(String(1000), default="")
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    end_time: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    attendees: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)  # lowercased emails
    analyst_id: Mapped[Optional[str]] = mapped_column(
        UUID(as_uuid=False), ForeignKey("analysts.id", ondelete="SET NULL"), nullable=True, index=True
    )
    is_analyst_meeting: Mapped[bool] = mapped_column(Boolean, default=False)
    confidence: Mapped[float] = mapped_column(Float, default=0.0)
    tags: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )


class CalendarSyncProgress(Base):
    """Append-only sync log; clients poll it with ``since_id``."""
    __tablename__ = "calendar_sync_progress"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    connection_id: Mapped[str] = mapped_column(UUID(as_uuid=False), index=True)
    type: Mapped[str] = mapped_column(String(30))  # progress | month_started | month_result | complete | error
    month: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    found_analyst_meetings: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    total_events_processed: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    relevant_meetings_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
