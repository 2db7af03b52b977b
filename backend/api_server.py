"""
API Server — FastAPI backend for the Analyst Relations dashboard

Endpoints (all JSON, all under /api):
  Analysts: CRUD, by-email lookup, spreadsheet import, AI helpers
  Briefings: CRUD, due list, last / next, AI summary
  Publications: CRUD, discovery crawler (background run + SSE stream)
  Awards, Events, Testimonials, Action items: CRUD (+ bulk create)
  Settings: general, influence tiers, predefined topics, calendar connections
  Dashboard: metrics (cached), top analysts, recent activity
  Analytics: briefing density (past year, per day)
  Calendar: Google OAuth callback, sync (background run + SSE stream)
  GET /api/health

Every response is ``{"success": true, "data": ...}`` or
``{"success": false, "error": "..."}`` with the matching HTTP status.

Run:
  uvicorn api_server:app --reload --port 8000
"""

import asyncio
import logging
import os
import time
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import urlencode, urlparse

import httpx
import pandas as pd
from fastapi import Depends, FastAPI, File, HTTPException, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel, Field, field_validator
from sqlalchemy import delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.exceptions import HTTPException as StarletteHTTPException

import config
from logging_config import setup_logging
from ai_text import TextGenerator
from analyst_import import (
    FIELD_VARIANTS,
    ImportFileError,
    bulk_create_analysts,
    preview_import,
    rows_to_analysts,
    suggest_column_mapping,
)
from auth import AuthUser, require_auth, require_auth_or_internal
from briefings_due import briefings_due_cache, filter_due
from calendar_sync import (
    SyncInProgressError,
    SyncOptions,
    compute_time_window,
    start_calendar_sync,
    sync_locks,
    sync_runs,
)
from crypto import encrypt_token
from dashboard import briefing_density, get_metrics, invalidate_metrics, recent_activity, top_analysts
from db import get_db
from db.models import (
    ActionItem,
    Analyst,
    AnalystTopic,
    Award,
    Briefing,
    BriefingAnalyst,
    CalendarConnection,
    CalendarMeeting,
    CalendarSyncProgress,
    Event,
    GeneralSettings,
    InfluenceTier,
    PredefinedTopic,
    Profile,
    Publication,
    Testimonial,
)
from google_calendar import (
    GoogleCalendarClient,
    GoogleCalendarError,
    build_authorization_url,
    decode_state,
    exchange_code,
)
from progress import stream_run
from publication_analyzer import normalize_publication_type
from publication_discovery import discovery_runs, start_publication_discovery
from utils import as_utc, iso

setup_logging()
logger = logging.getLogger(__name__)


# ──────────────────────────────────────────────
# Rate Limiter (in-memory, per-IP)
# ──────────────────────────────────────────────

class RateLimiter:
    """Simple sliding-window rate limiter with automatic stale-IP cleanup."""

    def __init__(self, max_requests: int = 120, window_seconds: int = 60):
        self.max_requests = max_requests
        self.window = window_seconds
        self._requests: dict[str, list[float]] = defaultdict(list)
        self._last_cleanup = time.time()
        self._cleanup_interval = 300  # Prune stale IPs every 5 minutes

    def _maybe_cleanup(self):
        now = time.time()
        if now - self._last_cleanup < self._cleanup_interval:
            return
        self._last_cleanup = now
        stale_keys = [
            k for k, timestamps in self._requests.items()
            if not timestamps or (now - max(timestamps)) > self.window
        ]
        for k in stale_keys:
            del self._requests[k]

    def check(self, client_id: str) -> bool:
        """Returns True if the request is allowed."""
        now = time.time()
        self._maybe_cleanup()
        self._requests[client_id] = [
            t for t in self._requests[client_id] if now - t < self.window
        ]
        if len(self._requests[client_id]) >= self.max_requests:
            return False
        self._requests[client_id].append(now)
        return True


rate_limiter = RateLimiter(max_requests=120, window_seconds=60)

_RATE_LIMIT_EXEMPT = {"/api/health"}


def _rate_limit_exempt(path: str, method: str = "GET") -> bool:
    # SSE streams and status polling are long-lived / high-frequency;
    # POST on a sync path starts a job and stays limited
    return (
        path in _RATE_LIMIT_EXEMPT
        or path.endswith("/stream")
        or path.endswith("/status")
        or (method == "GET" and path.endswith("/sync"))
    )


text_generator = TextGenerator()


# ──────────────────────────────────────────────
# App Setup
# ──────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize the database and start the scheduler loops."""
    from db import init_db
    logger.info("Initializing database...")
    await init_db()
    logger.info("Database ready")

    from scheduler import calendar_auto_sync_loop, publication_discovery_loop
    auto_sync_task = asyncio.create_task(calendar_auto_sync_loop())
    discovery_task = asyncio.create_task(publication_discovery_loop())
    logger.info("Scheduler loops started")

    yield

    auto_sync_task.cancel()
    discovery_task.cancel()
    logger.info("Shutting down")


app = FastAPI(
    title="Analyst Relations API",
    version="0.1.0",
    lifespan=lifespan,
)

_allowed_origins = os.getenv(
    "ALLOWED_ORIGINS",
    "http://localhost:3000,http://localhost:3001",
).split(",")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in _allowed_origins],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)


@app.middleware("http")
async def rate_limit_middleware(request: Request, call_next):
    """Apply rate limiting to API routes (skip CORS preflight, health and streams)."""
    path = request.url.path.rstrip("/")
    if (
        request.url.path.startswith("/api/")
        and request.method != "OPTIONS"
        and not _rate_limit_exempt(path, request.method)
    ):
        client_ip = request.client.host if request.client else "unknown"
        if not rate_limiter.check(client_ip):
            return JSONResponse(
                status_code=429,
                content={"success": False, "error": "Too many requests. Please wait a moment and try again."},
            )
    return await call_next(request)


# ──────────────────────────────────────────────
# Error envelope
# ──────────────────────────────────────────────

@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(p) for p in first.get("loc", ()) if p not in ("body", "query", "path"))
    message = first.get("msg", "Invalid request")
    return JSONResponse(
        status_code=400,
        content={"success": False, "error": f"{field}: {message}" if field else message},
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error("Unhandled error on %s %s: %s", request.method, request.url.path, exc, exc_info=True)
    return JSONResponse(status_code=500, content={"success": False, "error": "Internal server error"})


def ok(data=None, **extra) -> dict:
    return {"success": True, "data": data, **extra}


# ──────────────────────────────────────────────
# Helpers
# ──────────────────────────────────────────────

async def _get_or_404(db: AsyncSession, model, obj_id: str, label: str):
    obj = await db.get(model, obj_id)
    if obj is None:
        raise HTTPException(status_code=404, detail=f"{label} not found")
    return obj


async def _reload(db: AsyncSession, model, obj_id: str):
    """Re-select a row so eager relationships are populated after a write."""
    return (await db.execute(
        select(model).where(model.id == obj_id).execution_options(populate_existing=True)
    )).scalar_one()


def _apply(obj, values: dict):
    for key, value in values.items():
        setattr(obj, key, as_utc(value) if isinstance(value, datetime) else value)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def serialize_analyst(a: Analyst) -> dict:
    return {
        "id": a.id,
        "first_name": a.first_name,
        "last_name": a.last_name,
        "full_name": a.full_name,
        "email": a.email,
        "company": a.company,
        "title": a.title,
        "phone": a.phone,
        "linkedin_url": a.linkedin_url,
        "twitter_handle": a.twitter_handle,
        "personal_website": a.personal_website,
        "bio": a.bio,
        "profile_image_url": a.profile_image_url,
        "type": a.type,
        "influence": a.influence,
        "influence_score": a.influence_score,
        "relationship_health": a.relationship_health,
        "status": a.status,
        "key_themes": a.key_themes or [],
        "covered_topics": [t.topic for t in a.covered_topics],
        "notes": a.notes,
        "last_contact_date": iso(a.last_contact_date),
        "next_contact_date": iso(a.next_contact_date),
        "created_at": iso(a.created_at),
        "updated_at": iso(a.updated_at),
    }


def serialize_briefing(b: Briefing) -> dict:
    return {
        "id": b.id,
        "title": b.title,
        "description": b.description,
        "scheduled_at": iso(b.scheduled_at),
        "completed_at": iso(b.completed_at),
        "status": b.status,
        "agenda": b.agenda,
        "notes": b.notes,
        "outcomes": b.outcomes or [],
        "follow_up_actions": b.follow_up_actions or [],
        "duration_minutes": b.duration_minutes,
        "attendee_emails": b.attendee_emails or [],
        "ai_summary": b.ai_summary,
        "recording_url": b.recording_url,
        "analysts": [
            {
                "id": link.analyst.id,
                "name": link.analyst.full_name,
                "email": link.analyst.email,
                "company": link.analyst.company,
                "role": link.role,
            }
            for link in b.analyst_links
            if link.analyst is not None
        ],
        "created_at": iso(b.created_at),
        "updated_at": iso(b.updated_at),
    }


def serialize_publication(p: Publication) -> dict:
    return {
        "id": p.id,
        "analyst_id": p.analyst_id,
        "analyst_name": p.analyst.full_name if p.analyst else None,
        "title": p.title,
        "url": p.url,
        "summary": p.summary,
        "type": p.type,
        "published_at": iso(p.published_at),
        "is_tracked": p.is_tracked,
        "source": p.source,
        "relevance_score": p.relevance_score,
        "impact_score": p.impact_score,
        "significance": p.significance,
        "created_at": iso(p.created_at),
    }


def serialize_award(a: Award) -> dict:
    return {
        "id": a.id,
        "name": a.name,
        "link": a.link,
        "organization": a.organization,
        "product_topics": a.product_topics or [],
        "priority": a.priority,
        "submission_date": iso(a.submission_date),
        "publication_date": iso(a.publication_date),
        "owner": a.owner,
        "status": a.status,
        "cost": a.cost,
        "notes": a.notes,
        "created_at": iso(a.created_at),
    }


def serialize_event(e: Event) -> dict:
    return {
        "id": e.id,
        "event_name": e.event_name,
        "link": e.link,
        "type": e.type,
        "audience_groups": e.audience_groups or [],
        "start_date": iso(e.start_date),
        "participation_types": e.participation_types or [],
        "owner": e.owner,
        "location": e.location,
        "status": e.status,
        "notes": e.notes,
        "created_at": iso(e.created_at),
    }


def serialize_testimonial(t: Testimonial) -> dict:
    return {
        "id": t.id,
        "text": t.text,
        "author": t.author,
        "company": t.company,
        "rating": t.rating,
        "is_published": t.is_published,
        "display_order": t.display_order,
        "analyst_id": t.analyst_id,
        "created_at": iso(t.created_at),
    }


def serialize_action_item(i: ActionItem) -> dict:
    return {
        "id": i.id,
        "title": i.title,
        "description": i.description,
        "status": i.status,
        "priority": i.priority,
        "due_date": iso(i.due_date),
        "completed_at": iso(i.completed_at),
        "assigned_to": i.assigned_to,
        "analyst_id": i.analyst_id,
        "briefing_id": i.briefing_id,
        "tags": i.tags or [],
        "created_at": iso(i.created_at),
    }


def serialize_tier(t: InfluenceTier) -> dict:
    return {
        "id": t.id,
        "name": t.name,
        "color": t.color,
        "briefing_frequency": t.briefing_frequency if t.briefing_frequency is not None else -1,
        "touchpoint_frequency": t.touchpoint_frequency if t.touchpoint_frequency is not None else -1,
        "order": t.order,
        "is_active": t.is_active,
    }


def serialize_general_settings(s: GeneralSettings) -> dict:
    return {
        "id": s.id,
        "company_name": s.company_name,
        "protected_domain": s.protected_domain,
        "logo_url": s.logo_url,
        "industry_name": s.industry_name,
        "updated_at": iso(s.updated_at),
    }


def serialize_connection(c: CalendarConnection) -> dict:
    # Tokens never leave the server
    return {
        "id": c.id,
        "provider": c.provider,
        "email": c.email,
        "title": c.title,
        "is_active": c.is_active,
        "last_sync_at": iso(c.last_sync_at),
        "is_syncing": sync_locks.is_locked(c.id),
        "created_at": iso(c.created_at),
    }


# ──────────────────────────────────────────────
# Request Models
# ──────────────────────────────────────────────

_EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"
_INFLUENCE = r"^(LOW|MEDIUM|HIGH|VERY_HIGH)$"
_ANALYST_STATUS = r"^(ACTIVE|INACTIVE|ARCHIVED)$"
_ANALYST_TYPE = r"^(ANALYST|PRESS|INVESTOR|PRACTITIONER|INFLUENCER)$"
_HEALTH = r"^(EXCELLENT|GOOD|FAIR|POOR|CRITICAL)$"
_BRIEFING_STATUS = r"^(SCHEDULED|COMPLETED|CANCELLED|RESCHEDULED)$"
_PRIORITY = r"^(LOW|MEDIUM|HIGH)$"
_AWARD_STATUS = r"^(EVALUATING|SUBMITTED|UNDER_REVIEW|WINNER|FINALIST|NOT_SELECTED)$"
_EVENT_TYPE = r"^(CONFERENCE|EXHIBITION|WEBINAR)$"
_EVENT_STATUS = r"^(EVALUATING|COMMITTED|CONTRACTED|NOT_GOING)$"
_ACTION_STATUS = r"^(PENDING|IN_PROGRESS|COMPLETED)$"
_ACTION_PRIORITY = r"^(LOW|MEDIUM|HIGH|URGENT)$"
_DOMAIN_PATTERN = r"^\s*[a-zA-Z0-9][a-zA-Z0-9-]*\.([a-zA-Z]{2,}|[a-zA-Z]{2,3}\.[a-zA-Z]{2,3})\s*$"


def _not_null(*fields: str):
    """PATCH validator: these columns may be omitted but never cleared."""

    def check(cls, value):
        if value is None:
            raise ValueError("may not be null")
        return value

    return field_validator(*fields)(classmethod(check))


class AnalystCreate(BaseModel):
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    email: str = Field(..., pattern=_EMAIL_PATTERN, max_length=255)
    company: Optional[str] = Field(None, max_length=255)
    title: Optional[str] = Field(None, max_length=255)
    phone: Optional[str] = Field(None, max_length=50)
    linkedin_url: Optional[str] = Field(None, max_length=500)
    twitter_handle: Optional[str] = Field(None, max_length=100)
    personal_website: Optional[str] = Field(None, max_length=500)
    bio: Optional[str] = None
    profile_image_url: Optional[str] = Field(None, max_length=1000)
    type: str = Field("ANALYST", pattern=_ANALYST_TYPE)
    influence: str = Field("MEDIUM", pattern=_INFLUENCE)
    influence_score: int = Field(50, ge=0, le=100)
    relationship_health: str = Field("GOOD", pattern=_HEALTH)
    status: str = Field("ACTIVE", pattern=_ANALYST_STATUS)
    key_themes: Optional[list[str]] = None
    covered_topics: list[str] = Field(default_factory=list)
    notes: Optional[str] = None
    last_contact_date: Optional[datetime] = None
    next_contact_date: Optional[datetime] = None


class AnalystUpdate(BaseModel):
    first_name: Optional[str] = Field(None, min_length=1, max_length=100)
    last_name: Optional[str] = Field(None, min_length=1, max_length=100)
    email: Optional[str] = Field(None, pattern=_EMAIL_PATTERN, max_length=255)
    company: Optional[str] = Field(None, max_length=255)
    title: Optional[str] = Field(None, max_length=255)
    phone: Optional[str] = Field(None, max_length=50)
    linkedin_url: Optional[str] = Field(None, max_length=500)
    twitter_handle: Optional[str] = Field(None, max_length=100)
    personal_website: Optional[str] = Field(None, max_length=500)
    bio: Optional[str] = None
    profile_image_url: Optional[str] = Field(None, max_length=1000)
    type: Optional[str] = Field(None, pattern=_ANALYST_TYPE)
    influence: Optional[str] = Field(None, pattern=_INFLUENCE)
    influence_score: Optional[int] = Field(None, ge=0, le=100)
    relationship_health: Optional[str] = Field(None, pattern=_HEALTH)
    status: Optional[str] = Field(None, pattern=_ANALYST_STATUS)
    key_themes: Optional[list[str]] = None
    covered_topics: Optional[list[str]] = None
    notes: Optional[str] = None
    last_contact_date: Optional[datetime] = None
    next_contact_date: Optional[datetime] = None

    reject_null = _not_null(
        "first_name", "last_name", "email", "type", "influence",
        "influence_score", "relationship_health", "status",
    )


class ColumnMappingRequest(BaseModel):
    columns: list[str] = Field(..., max_length=200)


class BulkAnalystRequest(BaseModel):
    analysts: list[dict] = Field(..., max_length=5000)
    mapping: Optional[dict[str, str]] = Field(
        None, description="Sheet column → analyst field; omit when rows already use field names",
    )


class ExpertiseRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    company: Optional[str] = Field(None, max_length=255)
    title: Optional[str] = Field(None, max_length=255)
    bio: Optional[str] = Field(None, max_length=5000)


class SocialPost(BaseModel):
    content: str = Field(..., min_length=1, max_length=5000)
    platform: Optional[str] = None


class SocialResponseRequest(BaseModel):
    analyst_id: Optional[str] = None
    analyst_name: str = Field(..., min_length=1, max_length=200)
    post: SocialPost
    response_type: str = Field(..., pattern=r"^(reply|share)$")


class BriefingCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=500)
    scheduled_at: datetime
    description: Optional[str] = None
    status: str = Field("SCHEDULED", pattern=_BRIEFING_STATUS)
    completed_at: Optional[datetime] = None
    agenda: Optional[str] = None
    notes: Optional[str] = None
    outcomes: Optional[list[str]] = None
    follow_up_actions: Optional[list[str]] = None
    duration_minutes: Optional[int] = Field(None, ge=1)
    attendee_emails: Optional[list[str]] = None
    recording_url: Optional[str] = None
    analyst_ids: list[str] = Field(default_factory=list)


class BriefingUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=500)
    scheduled_at: Optional[datetime] = None
    description: Optional[str] = None
    status: Optional[str] = Field(None, pattern=_BRIEFING_STATUS)
    completed_at: Optional[datetime] = None
    agenda: Optional[str] = None
    notes: Optional[str] = None
    outcomes: Optional[list[str]] = None
    follow_up_actions: Optional[list[str]] = None
    duration_minutes: Optional[int] = Field(None, ge=1)
    attendee_emails: Optional[list[str]] = None
    recording_url: Optional[str] = None
    transcript: Optional[str] = None
    analyst_ids: Optional[list[str]] = None

    reject_null = _not_null("title", "scheduled_at", "status")


class PublicationCreate(BaseModel):
    analyst_id: str
    title: str = Field(..., min_length=1, max_length=1000)
    type: str = Field(..., min_length=1)
    published_at: datetime
    url: Optional[str] = Field(None, max_length=2000)
    summary: Optional[str] = None
    is_tracked: bool = True


class PublicationUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=1000)
    type: Optional[str] = None
    published_at: Optional[datetime] = None
    url: Optional[str] = Field(None, max_length=2000)
    summary: Optional[str] = None
    is_tracked: Optional[bool] = None

    reject_null = _not_null("title", "type", "published_at", "is_tracked")


class DiscoverRequest(BaseModel):
    analyst_ids: Optional[list[str]] = None
    save: bool = False


class AwardCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=500)
    organization: str = Field(..., min_length=1, max_length=255)
    submission_date: datetime
    publication_date: datetime
    link: Optional[str] = Field(None, max_length=1000)
    product_topics: list[str] = Field(default_factory=list)
    priority: str = Field("MEDIUM", pattern=_PRIORITY)
    owner: Optional[str] = None
    status: str = Field("EVALUATING", pattern=_AWARD_STATUS)
    cost: Optional[str] = None
    notes: Optional[str] = None


class AwardUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=500)
    organization: Optional[str] = Field(None, min_length=1, max_length=255)
    submission_date: Optional[datetime] = None
    publication_date: Optional[datetime] = None
    link: Optional[str] = Field(None, max_length=1000)
    product_topics: Optional[list[str]] = None
    priority: Optional[str] = Field(None, pattern=_PRIORITY)
    owner: Optional[str] = None
    status: Optional[str] = Field(None, pattern=_AWARD_STATUS)
    cost: Optional[str] = None
    notes: Optional[str] = None

    reject_null = _not_null("name", "organization", "submission_date", "publication_date", "priority", "status")


class BulkAwardRequest(BaseModel):
    awards: list[AwardCreate] = Field(..., max_length=1000)


class EventCreate(BaseModel):
    event_name: str = Field(..., min_length=1, max_length=500)
    start_date: datetime
    link: Optional[str] = Field(None, max_length=1000)
    type: str = Field("CONFERENCE", pattern=_EVENT_TYPE)
    audience_groups: list[str] = Field(default_factory=list)
    participation_types: list[str] = Field(default_factory=list)
    owner: Optional[str] = None
    location: Optional[str] = None
    status: str = Field("EVALUATING", pattern=_EVENT_STATUS)
    notes: Optional[str] = None


class EventUpdate(BaseModel):
    event_name: Optional[str] = Field(None, min_length=1, max_length=500)
    start_date: Optional[datetime] = None
    link: Optional[str] = Field(None, max_length=1000)
    type: Optional[str] = Field(None, pattern=_EVENT_TYPE)
    audience_groups: Optional[list[str]] = None
    participation_types: Optional[list[str]] = None
    owner: Optional[str] = None
    location: Optional[str] = None
    status: Optional[str] = Field(None, pattern=_EVENT_STATUS)
    notes: Optional[str] = None

    reject_null = _not_null("event_name", "start_date", "type", "status")


class BulkEventRequest(BaseModel):
    events: list[EventCreate] = Field(..., max_length=1000)


class TestimonialCreate(BaseModel):
    text: str = Field(..., min_length=1)
    author: str = Field(..., min_length=1, max_length=255)
    company: str = Field(..., min_length=1, max_length=255)
    rating: int = Field(5, ge=1, le=5)
    is_published: bool = False
    display_order: int = 0
    analyst_id: Optional[str] = None


class TestimonialUpdate(BaseModel):
    text: Optional[str] = Field(None, min_length=1)
    author: Optional[str] = Field(None, min_length=1, max_length=255)
    company: Optional[str] = Field(None, min_length=1, max_length=255)
    rating: Optional[int] = Field(None, ge=1, le=5)
    is_published: Optional[bool] = None
    display_order: Optional[int] = None
    analyst_id: Optional[str] = None

    reject_null = _not_null("text", "author", "company", "rating", "is_published", "display_order")


class ActionItemCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=500)
    description: Optional[str] = None
    status: str = Field("PENDING", pattern=_ACTION_STATUS)
    priority: str = Field("MEDIUM", pattern=_ACTION_PRIORITY)
    due_date: Optional[datetime] = None
    assigned_to: Optional[str] = None
    analyst_id: Optional[str] = None
    briefing_id: Optional[str] = None
    tags: list[str] = Field(default_factory=list)


class ActionItemUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=500)
    description: Optional[str] = None
    status: Optional[str] = Field(None, pattern=_ACTION_STATUS)
    priority: Optional[str] = Field(None, pattern=_ACTION_PRIORITY)
    due_date: Optional[datetime] = None
    assigned_to: Optional[str] = None
    analyst_id: Optional[str] = None
    briefing_id: Optional[str] = None
    tags: Optional[list[str]] = None

    reject_null = _not_null("title", "status", "priority")


class TierIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    color: Optional[str] = Field(None, max_length=20)
    briefing_frequency: int = Field(..., description="Days between briefings, -1 for never")
    touchpoint_frequency: int = Field(-1, description="Days between touchpoints, -1 for never")
    order: int = 0
    is_active: bool = True


class TiersRequest(BaseModel):
    tiers: list[TierIn] = Field(..., max_length=20)


class TopicCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    category: str = Field("CORE", pattern=r"^(CORE|ADDITIONAL)$")
    description: Optional[str] = None
    order: int = 0


class GeneralSettingsIn(BaseModel):
    company_name: str = Field(..., min_length=1, max_length=255)
    protected_domain: str = Field(..., pattern=_DOMAIN_PATTERN, max_length=255)
    logo_url: Optional[str] = Field(None, max_length=1000)
    industry_name: str = Field(..., min_length=1, max_length=100)


class MetricsAction(BaseModel):
    action: str


class ConnectionUpdate(BaseModel):
    title: Optional[str] = Field(None, max_length=255)
    is_active: Optional[bool] = None

    reject_null = _not_null("is_active")


class SyncRequest(BaseModel):
    time_window: str = Field("all", pattern=r"^(future|custom|all)$")
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    force_sync: bool = False


# ──────────────────────────────────────────────
# Health
# ──────────────────────────────────────────────

@app.get("/api/health")
async def health():
    """Health check."""
    return {
        "status": "ok",
        "success": True,
        "llm_available": text_generator.client is not None,
        "google_calendar_configured": bool(config.GOOGLE_CLIENT_ID and config.GOOGLE_CLIENT_SECRET),
    }


# ──────────────────────────────────────────────
# Analysts
# ──────────────────────────────────────────────

@app.get("/api/analysts")
async def list_analysts(
    include_archived: bool = False,
    status: Optional[str] = None,
    influence: Optional[str] = None,
    search: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    user: AuthUser = Depends(require_auth),
):
    query = select(Analyst).order_by(Analyst.last_name, Analyst.first_name)
    if status:
        query = query.where(Analyst.status == status.upper())
    elif not include_archived:
        query = query.where(Analyst.status != "ARCHIVED")
    if influence:
        query = query.where(Analyst.influence == influence.upper())
    if search:
        pattern = f"%{search.lower()}%"
        query = query.where(or_(
            func.lower(Analyst.first_name).like(pattern),
            func.lower(Analyst.last_name).like(pattern),
            func.lower(Analyst.email).like(pattern),
            func.lower(Analyst.company).like(pattern),
        ))
    analysts = (await db.execute(query)).scalars().all()
    return ok([serialize_analyst(a) for a in analysts], count=len(analysts))


@app.post("/api/analysts", status_code=201)
async def create_analyst(
    request: AnalystCreate,
    db: AsyncSession = Depends(get_db),
    user: AuthUser = Depends(require_auth),
):
    email = request.email.strip().lower()
    exists = (await db.execute(
        select(Analyst.id).where(func.lower(Analyst.email) == email)
    )).scalar_one_or_none()
    if exists:
        raise HTTPException(status_code=409, detail="An analyst with this email already exists")

    values = request.model_dump(exclude={"covered_topics"})
    values["email"] = email
    analyst = Analyst(covered_topics=[AnalystTopic(topic=t) for t in dict.fromkeys(request.covered_topics)])
    _apply(analyst, values)
    db.add(analyst)
    await db.commit()
    invalidate_metrics()
    logger.info("Created analyst %s (%s)", analyst.full_name, analyst.id)
    return ok(serialize_analyst(await _reload(db, Analyst, analyst.id)))


@app.get("/api/analysts/by-email/{email}")
async def get_analyst_by_email(email: str, db: AsyncSession = Depends(get_db), user: AuthUser = Depends(require_auth)):
    analyst = (await db.execute(
        select(Analyst).where(func.lower(Analyst.email) == email.strip().lower())
    )).scalar_one_or_none()
    if analyst is None:
        raise HTTPException(status_code=404, detail="Analyst not found")
    return ok(serialize_analyst(analyst))


@app.post("/api/analysts/preview")
async def preview_analyst_import(file: UploadFile = File(...), user: AuthUser = Depends(require_auth)):
    """Headers, sample rows and a suggested column mapping for an uploaded sheet."""
    content = await file.read()
    try:
        preview = preview_import(file.filename or "", content)
    except ImportFileError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return ok(preview)


@app.post("/api/analysts/map-columns")
async def map_columns(request: ColumnMappingRequest, user: AuthUser = Depends(require_auth)):
    return ok(suggest_column_mapping(request.columns))


@app.post("/api/analysts/bulk")
async def bulk_import_analysts(
    request: BulkAnalystRequest,
    db: AsyncSession = Depends(get_db),
    user: AuthUser = Depends(require_auth),
):
    """Create analysts from sheet rows (with ``mapping``) or field-keyed rows (without)."""
    if not request.analysts:
        raise HTTPException(status_code=400, detail="No analysts provided")
    rows = [
        {k: ", ".join(map(str, v)) if isinstance(v, list) else ("" if v is None else str(v)) for k, v in row.items()}
        for row in request.analysts
    ]
    frame = pd.DataFrame(rows).fillna("")
    mapping = dict(request.mapping or {c: c for c in frame.columns if c in FIELD_VARIANTS})
    if "covered_topics" in frame.columns and "expertise" not in mapping.values():
        mapping["covered_topics"] = "expertise"
    records, row_errors = rows_to_analysts(frame, mapping)
    result = await bulk_create_analysts(db, records)
    invalidate_metrics()
    briefings_due_cache.invalidate()
    return ok(
        {
            "created": result["created"],
            "skipped": result["skipped"],
            "errors": row_errors + result["errors"],
            "ids": result["ids"],
        },
        message=f"Imported {result['created']} analysts ({result['skipped']} already existed)",
    )


@app.post("/api/analysts/suggest-expertise")
async def analyst_suggest_expertise(request: ExpertiseRequest, user: AuthUser = Depends(require_auth)):
    expertise = await text_generator.suggest_expertise(
        request.name, request.company, request.title, request.bio,
    )
    return ok({"expertise": expertise})


@app.post("/api/analysts/generate-social-response")
async def analyst_social_response(
    request: SocialResponseRequest,
    db: AsyncSession = Depends(get_db),
    user: AuthUser = Depends(require_auth),
):
    settings = await _general_settings(db)
    message = await text_generator.social_response(
        request.analyst_name, request.post.content, request.response_type,
        company=settings.company_name or None,
    )
    return ok({"message": message})


@app.get("/api/analysts/{analyst_id}")
async def get_analyst(analyst_id: str, db: AsyncSession = Depends(get_db), user: AuthUser = Depends(require_auth)):
    return ok(serialize_analyst(await _get_or_404(db, Analyst, analyst_id, "Analyst")))


@app.patch("/api/analysts/{analyst_id}")
async def update_analyst(
    analyst_id: str,
    request: AnalystUpdate,
    db: AsyncSession = Depends(get_db),
    user: AuthUser = Depends(require_auth),
):
    analyst = await _get_or_404(db, Analyst, analyst_id, "Analyst")
    values = request.model_dump(exclude_unset=True)

    if values.get("email"):
        values["email"] = values["email"].strip().lower()
        clash = (await db.execute(
            select(Analyst.id).where(func.lower(Analyst.email) == values["email"], Analyst.id != analyst_id)
        )).scalar_one_or_none()
        if clash:
            raise HTTPException(status_code=409, detail="An analyst with this email already exists")

    topics = values.pop("covered_topics", None)
    if topics is not None:
        analyst.covered_topics = [AnalystTopic(topic=t) for t in dict.fromkeys(topics)]
    _apply(analyst, values)
    await db.commit()
    invalidate_metrics()
    briefings_due_cache.invalidate()
    return ok(serialize_analyst(await _reload(db, Analyst, analyst_id)))


@app.delete("/api/analysts/{analyst_id}")
async def archive_analyst(analyst_id: str, db: AsyncSession = Depends(get_db), user: AuthUser = Depends(require_auth)):
    """Soft delete: the analyst is archived so briefings and publications keep their history."""
    analyst = await _get_or_404(db, Analyst, analyst_id, "Analyst")
    analyst.status = "ARCHIVED"
    await db.commit()
    invalidate_metrics()
    briefings_due_cache.invalidate()
    return {"success": True, "message": "Analyst archived"}


@app.get("/api/analysts/{analyst_id}/briefings")
async def analyst_briefings(analyst_id: str, db: AsyncSession = Depends(get_db), user: AuthUser = Depends(require_auth)):
    await _get_or_404(db, Analyst, analyst_id, "Analyst")
    briefings = (await db.execute(
        select(Briefing)
        .join(BriefingAnalyst, BriefingAnalyst.briefing_id == Briefing.id)
        .where(BriefingAnalyst.analyst_id == analyst_id)
        .order_by(Briefing.scheduled_at.desc())
    )).scalars().all()
    return ok([serialize_briefing(b) for b in briefings])


@app.get("/api/analysts/{analyst_id}/publications")
async def analyst_publications(analyst_id: str, db: AsyncSession = Depends(get_db), user: AuthUser = Depends(require_auth)):
    await _get_or_404(db, Analyst, analyst_id, "Analyst")
    publications = (await db.execute(
        select(Publication).where(Publication.analyst_id == analyst_id).order_by(Publication.published_at.desc())
    )).scalars().all()
    return ok([serialize_publication(p) for p in publications])


# ──────────────────────────────────────────────
# Briefings
# ──────────────────────────────────────────────

async def _check_analyst_ids(db: AsyncSession, analyst_ids: list[str]) -> list[str]:
    ids = list(dict.fromkeys(analyst_ids))
    if not ids:
        return ids
    found = set((await db.execute(select(Analyst.id).where(Analyst.id.in_(ids)))).scalars())
    missing = [i for i in ids if i not in found]
    if missing:
        raise HTTPException(status_code=400, detail=f"Unknown analyst id(s): {', '.join(missing)}")
    return ids


@app.get("/api/briefings/due")
async def briefings_due(
    tier: Optional[str] = None,
    search: Optional[str] = None,
    force: bool = False,
    db: AsyncSession = Depends(get_db),
    user: AuthUser = Depends(require_auth),
):
    """Analysts owed a briefing under their tier cadence (cached 5 minutes)."""
    result, cached = await briefings_due_cache.get(db, force=force)
    filtered = filter_due(result["data"], tier=tier, search=search)
    return {
        "success": True,
        "data": filtered,
        "cached": cached,
        "updated_at": iso(briefings_due_cache.updated_at),
        "total": len(filtered),
        "counts_by_tier": result["counts"],
        "filters": {"search": search or "", "tier": tier or ""},
    }


@app.get("/api/briefings/last")
async def last_briefing(db: AsyncSession = Depends(get_db), user: AuthUser = Depends(require_auth)):
    """Most recently completed briefing (or null)."""
    briefing = (await db.execute(
        select(Briefing).where(Briefing.status == "COMPLETED")
        .order_by(Briefing.completed_at.desc()).limit(1)
    )).scalar_one_or_none()
    return ok(serialize_briefing(briefing) if briefing else None)


@app.get("/api/briefings/next")
async def next_briefing(db: AsyncSession = Depends(get_db), user: AuthUser = Depends(require_auth)):
    """Soonest upcoming scheduled briefing (or null)."""
    briefing = (await db.execute(
        select(Briefing)
        .where(Briefing.status.in_(("SCHEDULED", "RESCHEDULED")), Briefing.scheduled_at >= _now())
        .order_by(Briefing.scheduled_at.asc()).limit(1)
    )).scalar_one_or_none()
    return ok(serialize_briefing(briefing) if briefing else None)


@app.get("/api/briefings")
async def list_briefings(
    status: Optional[str] = None,
    upcoming: bool = False,
    analyst_id: Optional[str] = None,
    limit: int = 100,
    db: AsyncSession = Depends(get_db),
    user: AuthUser = Depends(require_auth),
):
    query = select(Briefing)
    if status:
        query = query.where(Briefing.status == status.upper())
    if analyst_id:
        query = query.join(BriefingAnalyst, BriefingAnalyst.briefing_id == Briefing.id).where(
            BriefingAnalyst.analyst_id == analyst_id
        )
    if upcoming:
        query = query.where(
            Briefing.scheduled_at >= _now(),
            Briefing.status.in_(("SCHEDULED", "RESCHEDULED")),
        ).order_by(Briefing.scheduled_at.asc())
    else:
        query = query.order_by(Briefing.scheduled_at.desc())
    briefings = (await db.execute(query.limit(min(max(limit, 1), 500)))).scalars().all()
    return ok([serialize_briefing(b) for b in briefings], count=len(briefings))


@app.post("/api/briefings", status_code=201)
async def create_briefing(
    request: BriefingCreate,
    db: AsyncSession = Depends(get_db),
    user: AuthUser = Depends(require_auth),
):
    analyst_ids = await _check_analyst_ids(db, request.analyst_ids)
    briefing = Briefing(analyst_links=[BriefingAnalyst(analyst_id=i) for i in analyst_ids])
    _apply(briefing, request.model_dump(exclude={"analyst_ids"}))
    if briefing.status == "COMPLETED" and briefing.completed_at is None:
        briefing.completed_at = _now()
    db.add(briefing)
    await db.commit()
    invalidate_metrics()
    briefings_due_cache.invalidate()
    return ok(serialize_briefing(await _reload(db, Briefing, briefing.id)))


@app.get("/api/briefings/{briefing_id}")
async def get_briefing(briefing_id: str, db: AsyncSession = Depends(get_db), user: AuthUser = Depends(require_auth)):
    return ok(serialize_briefing(await _get_or_404(db, Briefing, briefing_id, "Briefing")))


@app.patch("/api/briefings/{briefing_id}")
async def update_briefing(
    briefing_id: str,
    request: BriefingUpdate,
    db: AsyncSession = Depends(get_db),
    user: AuthUser = Depends(require_auth),
):
    briefing = await _get_or_404(db, Briefing, briefing_id, "Briefing")
    values = request.model_dump(exclude_unset=True)

    analyst_ids = values.pop("analyst_ids", None)
    if analyst_ids is not None:
        analyst_ids = await _check_analyst_ids(db, analyst_ids)
        # (briefing, analyst) is unique: keep existing links, add only new ones
        kept = [link for link in briefing.analyst_links if link.analyst_id in analyst_ids]
        linked = {link.analyst_id for link in kept}
        briefing.analyst_links = kept + [BriefingAnalyst(analyst_id=i) for i in analyst_ids if i not in linked]

    _apply(briefing, values)
    if values.get("status") == "COMPLETED" and briefing.completed_at is None:
        briefing.completed_at = _now()
    await db.commit()
    invalidate_metrics()
    briefings_due_cache.invalidate()
    return ok(serialize_briefing(await _reload(db, Briefing, briefing_id)))


@app.delete("/api/briefings/{briefing_id}")
async def delete_briefing(briefing_id: str, db: AsyncSession = Depends(get_db), user: AuthUser = Depends(require_auth)):
    briefing = await _get_or_404(db, Briefing, briefing_id, "Briefing")
    await db.delete(briefing)
    await db.commit()
    invalidate_metrics()
    briefings_due_cache.invalidate()
    return {"success": True, "message": "Briefing deleted"}


@app.post("/api/briefings/{briefing_id}/summary")
async def summarize_briefing_route(
    briefing_id: str,
    db: AsyncSession = Depends(get_db),
    user: AuthUser = Depends(require_auth),
):
    briefing = await _get_or_404(db, Briefing, briefing_id, "Briefing")
    summary = await text_generator.briefing_summary(serialize_briefing(briefing))
    briefing.ai_summary = summary
    await db.commit()
    return ok({"summary": summary})


# ──────────────────────────────────────────────
# Publications
# ──────────────────────────────────────────────

@app.get("/api/publications")
async def list_publications(
    analyst_id: Optional[str] = None,
    type: Optional[str] = None,
    tracked: Optional[bool] = None,
    limit: int = 100,
    db: AsyncSession = Depends(get_db),
    user: AuthUser = Depends(require_auth),
):
    query = select(Publication).order_by(Publication.published_at.desc())
    if analyst_id:
        query = query.where(Publication.analyst_id == analyst_id)
    if type:
        query = query.where(Publication.type == (normalize_publication_type(type) or type.upper()))
    if tracked is not None:
        query = query.where(Publication.is_tracked.is_(tracked))
    publications = (await db.execute(query.limit(min(max(limit, 1), 500)))).scalars().all()
    return ok([serialize_publication(p) for p in publications], count=len(publications))


@app.post("/api/publications", status_code=201)
async def create_publication(
    request: PublicationCreate,
    db: AsyncSession = Depends(get_db),
    user: AuthUser = Depends(require_auth),
):
    pub_type = normalize_publication_type(request.type)
    if pub_type is None:
        raise HTTPException(status_code=400, detail=f"Invalid publication type '{request.type}'")
    if await db.get(Analyst, request.analyst_id) is None:
        raise HTTPException(status_code=400, detail="Analyst not found")

    publication = Publication(source="manual")
    _apply(publication, request.model_dump())
    publication.type = pub_type
    db.add(publication)
    await db.commit()
    invalidate_metrics()
    return ok(serialize_publication(await _reload(db, Publication, publication.id)))


@app.post("/api/publications/discover", status_code=202)
async def discover_publications(request: DiscoverRequest, user: AuthUser = Depends(require_auth)):
    """Start the discovery crawler in the background; follow it on the stream URL."""
    run = start_publication_discovery(analyst_ids=request.analyst_ids, save=request.save)
    return ok(
        {"run_id": run.key, "stream_url": f"/api/publications/discover/{run.key}/stream"},
        message="Publication discovery started",
    )


@app.get("/api/publications/discover/{run_id}/stream")
async def discover_stream(run_id: str, after: int = 0, user: AuthUser = Depends(require_auth)):
    """Reconnectable SSE stream of a discovery run (``?after=N`` skips N events)."""
    run = discovery_runs.get(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail="Discovery run not found")
    return stream_run(run, after=after, heartbeat=config.SSE_HEARTBEAT_SECONDS)


@app.get("/api/publications/discover/{run_id}/status")
async def discover_status(run_id: str, user: AuthUser = Depends(require_auth)):
    run = discovery_runs.get(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail="Discovery run not found")
    return ok(run.snapshot())


@app.get("/api/publications/{publication_id}")
async def get_publication(publication_id: str, db: AsyncSession = Depends(get_db), user: AuthUser = Depends(require_auth)):
    return ok(serialize_publication(await _get_or_404(db, Publication, publication_id, "Publication")))


@app.patch("/api/publications/{publication_id}")
async def update_publication(
    publication_id: str,
    request: PublicationUpdate,
    db: AsyncSession = Depends(get_db),
    user: AuthUser = Depends(require_auth),
):
    publication = await _get_or_404(db, Publication, publication_id, "Publication")
    values = request.model_dump(exclude_unset=True)
    if "type" in values:
        pub_type = normalize_publication_type(values["type"])
        if pub_type is None:
            raise HTTPException(status_code=400, detail=f"Invalid publication type '{values['type']}'")
        values["type"] = pub_type
    _apply(publication, values)
    await db.commit()
    return ok(serialize_publication(publication))


@app.delete("/api/publications/{publication_id}")
async def delete_publication(publication_id: str, db: AsyncSession = Depends(get_db), user: AuthUser = Depends(require_auth)):
    publication = await _get_or_404(db, Publication, publication_id, "Publication")
    await db.delete(publication)
    await db.commit()
    invalidate_metrics()
    return {"success": True, "message": "Publication deleted"}


# ──────────────────────────────────────────────
# Awards
# ──────────────────────────────────────────────

@app.get("/api/awards")
async def list_awards(
    status: Optional[str] = None,
    priority: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    user: AuthUser = Depends(require_auth),
):
    query = select(Award).order_by(Award.submission_date.asc())
    if status:
        query = query.where(Award.status == status.upper())
    if priority:
        query = query.where(Award.priority == priority.upper())
    awards = (await db.execute(query)).scalars().all()
    return ok([serialize_award(a) for a in awards], count=len(awards))


@app.post("/api/awards", status_code=201)
async def create_award(request: AwardCreate, db: AsyncSession = Depends(get_db), user: AuthUser = Depends(require_auth)):
    award = Award()
    _apply(award, request.model_dump())
    db.add(award)
    await db.commit()
    return ok(serialize_award(award))


@app.post("/api/awards/bulk", status_code=201)
async def bulk_create_awards(request: BulkAwardRequest, db: AsyncSession = Depends(get_db), user: AuthUser = Depends(require_auth)):
    for item in request.awards:
        award = Award()
        _apply(award, item.model_dump())
        db.add(award)
    await db.commit()
    return ok({"created": len(request.awards)}, message=f"Created {len(request.awards)} awards")


@app.get("/api/awards/{award_id}")
async def get_award(award_id: str, db: AsyncSession = Depends(get_db), user: AuthUser = Depends(require_auth)):
    return ok(serialize_award(await _get_or_404(db, Award, award_id, "Award")))


@app.patch("/api/awards/{award_id}")
async def update_award(
    award_id: str,
    request: AwardUpdate,
    db: AsyncSession = Depends(get_db),
    user: AuthUser = Depends(require_auth),
):
    award = await _get_or_404(db, Award, award_id, "Award")
    _apply(award, request.model_dump(exclude_unset=True))
    await db.commit()
    return ok(serialize_award(award))


@app.delete("/api/awards/{award_id}")
async def delete_award(award_id: str, db: AsyncSession = Depends(get_db), user: AuthUser = Depends(require_auth)):
    award = await _get_or_404(db, Award, award_id, "Award")
    await db.delete(award)
    await db.commit()
    return {"success": True, "message": "Award deleted"}


# ──────────────────────────────────────────────
# Events
# ──────────────────────────────────────────────

EVENT_ENUMS = {
    "event_types": ["CONFERENCE", "EXHIBITION", "WEBINAR"],
    "event_statuses": ["EVALUATING", "COMMITTED", "CONTRACTED", "NOT_GOING"],
    "audience_groups": ["Partners", "Prospects", "Analysts", "Clients"],
    "participation_types": ["Attending Only", "Exhibiting", "Sponsoring"],
}


@app.get("/api/events/enums")
async def event_enums(user: AuthUser = Depends(require_auth)):
    return ok({
        key: [{"value": v, "label": v.replace("_", " ").title() if v.isupper() else v} for v in values]
        for key, values in EVENT_ENUMS.items()
    })


@app.get("/api/events")
async def list_events(
    status: Optional[str] = None,
    type: Optional[str] = None,
    upcoming: bool = False,
    db: AsyncSession = Depends(get_db),
    user: AuthUser = Depends(require_auth),
):
    query = select(Event).order_by(Event.start_date.asc())
    if status:
        query = query.where(Event.status == status.upper())
    if type:
        query = query.where(Event.type == type.upper())
    if upcoming:
        query = query.where(Event.start_date >= _now())
    events = (await db.execute(query)).scalars().all()
    return ok([serialize_event(e) for e in events], count=len(events))


@app.post("/api/events", status_code=201)
async def create_event(request: EventCreate, db: AsyncSession = Depends(get_db), user: AuthUser = Depends(require_auth)):
    event = Event()
    _apply(event, request.model_dump())
    db.add(event)
    await db.commit()
    return ok(serialize_event(event))


@app.post("/api/events/bulk", status_code=201)
async def bulk_create_events(request: BulkEventRequest, db: AsyncSession = Depends(get_db), user: AuthUser = Depends(require_auth)):
    for item in request.events:
        event = Event()
        _apply(event, item.model_dump())
        db.add(event)
    await db.commit()
    return ok({"created": len(request.events)}, message=f"Created {len(request.events)} events")


@app.get("/api/events/{event_id}")
async def get_event(event_id: str, db: AsyncSession = Depends(get_db), user: AuthUser = Depends(require_auth)):
    return ok(serialize_event(await _get_or_404(db, Event, event_id, "Event")))


@app.patch("/api/events/{event_id}")
async def update_event(
    event_id: str,
    request: EventUpdate,
    db: AsyncSession = Depends(get_db),
    user: AuthUser = Depends(require_auth),
):
    event = await _get_or_404(db, Event, event_id, "Event")
    _apply(event, request.model_dump(exclude_unset=True))
    await db.commit()
    return ok(serialize_event(event))


@app.delete("/api/events/{event_id}")
async def delete_event(event_id: str, db: AsyncSession = Depends(get_db), user: AuthUser = Depends(require_auth)):
    event = await _get_or_404(db, Event, event_id, "Event")
    await db.delete(event)
    await db.commit()
    return {"success": True, "message": "Event deleted"}


# ──────────────────────────────────────────────
# Testimonials
# ──────────────────────────────────────────────

@app.get("/api/testimonials")
async def list_testimonials(
    published_only: bool = False,
    db: AsyncSession = Depends(get_db),
    user: AuthUser = Depends(require_auth),
):
    query = select(Testimonial).order_by(Testimonial.display_order.asc(), Testimonial.created_at.desc())
    if published_only:
        query = query.where(Testimonial.is_published.is_(True))
    testimonials = (await db.execute(query)).scalars().all()
    return ok([serialize_testimonial(t) for t in testimonials], count=len(testimonials))


@app.post("/api/testimonials", status_code=201)
async def create_testimonial(request: TestimonialCreate, db: AsyncSession = Depends(get_db), user: AuthUser = Depends(require_auth)):
    if request.analyst_id and await db.get(Analyst, request.analyst_id) is None:
        raise HTTPException(status_code=400, detail="Analyst not found")
    testimonial = Testimonial()
    _apply(testimonial, request.model_dump())
    db.add(testimonial)
    await db.commit()
    return ok(serialize_testimonial(testimonial))


@app.get("/api/testimonials/{testimonial_id}")
async def get_testimonial(testimonial_id: str, db: AsyncSession = Depends(get_db), user: AuthUser = Depends(require_auth)):
    return ok(serialize_testimonial(await _get_or_404(db, Testimonial, testimonial_id, "Testimonial")))


@app.patch("/api/testimonials/{testimonial_id}")
async def update_testimonial(
    testimonial_id: str,
    request: TestimonialUpdate,
    db: AsyncSession = Depends(get_db),
    user: AuthUser = Depends(require_auth),
):
    testimonial = await _get_or_404(db, Testimonial, testimonial_id, "Testimonial")
    _apply(testimonial, request.model_dump(exclude_unset=True))
    await db.commit()
    return ok(serialize_testimonial(testimonial))


@app.delete("/api/testimonials/{testimonial_id}")
async def delete_testimonial(testimonial_id: str, db: AsyncSession = Depends(get_db), user: AuthUser = Depends(require_auth)):
    testimonial = await _get_or_404(db, Testimonial, testimonial_id, "Testimonial")
    await db.delete(testimonial)
    await db.commit()
    return {"success": True, "message": "Testimonial deleted"}


# ──────────────────────────────────────────────
# Action items
# ──────────────────────────────────────────────

@app.get("/api/action-items")
async def list_action_items(
    status: Optional[str] = None,
    briefing_id: Optional[str] = None,
    analyst_id: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    user: AuthUser = Depends(require_auth),
):
    query = select(ActionItem).order_by(ActionItem.due_date.asc(), ActionItem.created_at.desc())
    if status:
        query = query.where(ActionItem.status == status.upper())
    if briefing_id:
        query = query.where(ActionItem.briefing_id == briefing_id)
    if analyst_id:
        query = query.where(ActionItem.analyst_id == analyst_id)
    items = (await db.execute(query)).scalars().all()
    return ok([serialize_action_item(i) for i in items], count=len(items))


@app.post("/api/action-items", status_code=201)
async def create_action_item(request: ActionItemCreate, db: AsyncSession = Depends(get_db), user: AuthUser = Depends(require_auth)):
    item = ActionItem()
    _apply(item, request.model_dump())
    if item.status == "COMPLETED":
        item.completed_at = _now()
    db.add(item)
    await db.commit()
    invalidate_metrics()
    return ok(serialize_action_item(item))


@app.get("/api/action-items/{item_id}")
async def get_action_item(item_id: str, db: AsyncSession = Depends(get_db), user: AuthUser = Depends(require_auth)):
    return ok(serialize_action_item(await _get_or_404(db, ActionItem, item_id, "Action item")))


@app.patch("/api/action-items/{item_id}")
async def update_action_item(
    item_id: str,
    request: ActionItemUpdate,
    db: AsyncSession = Depends(get_db),
    user: AuthUser = Depends(require_auth),
):
    item = await _get_or_404(db, ActionItem, item_id, "Action item")
    values = request.model_dump(exclude_unset=True)
    new_status = values.get("status")
    if new_status and new_status != item.status:
        item.completed_at = _now() if new_status == "COMPLETED" else None
    _apply(item, values)
    await db.commit()
    invalidate_metrics()
    return ok(serialize_action_item(item))


@app.delete("/api/action-items/{item_id}")
async def delete_action_item(item_id: str, db: AsyncSession = Depends(get_db), user: AuthUser = Depends(require_auth)):
    item = await _get_or_404(db, ActionItem, item_id, "Action item")
    await db.delete(item)
    await db.commit()
    invalidate_metrics()
    return {"success": True, "message": "Action item deleted"}


# ──────────────────────────────────────────────
# Settings: influence tiers & topics
# ──────────────────────────────────────────────

@app.get("/api/settings/influence-tiers")
async def list_influence_tiers(db: AsyncSession = Depends(get_db), user: AuthUser = Depends(require_auth)):
    tiers = (await db.execute(select(InfluenceTier).order_by(InfluenceTier.order))).scalars().all()
    return ok([serialize_tier(t) for t in tiers])


@app.put("/api/settings/influence-tiers")
async def replace_influence_tiers(request: TiersRequest, db: AsyncSession = Depends(get_db), user: AuthUser = Depends(require_auth)):
    """Replace every tier.  Both frequencies are days (>= 1) or -1 for never."""
    for tier in request.tiers:
        if tier.briefing_frequency != -1 and tier.briefing_frequency < 1:
            raise HTTPException(
                status_code=400,
                detail=f"Tier '{tier.name}': briefing_frequency must be at least 1 day, or -1 for never",
            )
        if tier.touchpoint_frequency != -1 and tier.touchpoint_frequency < 1:
            raise HTTPException(
                status_code=400,
                detail=f"Tier '{tier.name}': touchpoint_frequency must be at least 1 day, or -1 for never",
            )

    await db.execute(delete(InfluenceTier))
    for index, tier in enumerate(request.tiers):
        db.add(InfluenceTier(
            name=tier.name.strip(),
            color=tier.color,
            briefing_frequency=None if tier.briefing_frequency == -1 else tier.briefing_frequency,
            touchpoint_frequency=None if tier.touchpoint_frequency == -1 else tier.touchpoint_frequency,
            order=tier.order or index,
            is_active=tier.is_active,
        ))
    await db.commit()
    briefings_due_cache.invalidate()

    tiers = (await db.execute(select(InfluenceTier).order_by(InfluenceTier.order))).scalars().all()
    return ok([serialize_tier(t) for t in tiers], message="Influence tiers updated")


@app.get("/api/settings/topics")
async def list_topics(db: AsyncSession = Depends(get_db), user: AuthUser = Depends(require_auth)):
    topics = (await db.execute(
        select(PredefinedTopic).order_by(PredefinedTopic.category, PredefinedTopic.order, PredefinedTopic.name)
    )).scalars().all()
    return ok([
        {"id": t.id, "name": t.name, "category": t.category, "description": t.description, "order": t.order}
        for t in topics
    ])


@app.post("/api/settings/topics", status_code=201)
async def create_topic(request: TopicCreate, db: AsyncSession = Depends(get_db), user: AuthUser = Depends(require_auth)):
    name = request.name.strip()
    exists = (await db.execute(
        select(PredefinedTopic.id).where(func.lower(PredefinedTopic.name) == name.lower())
    )).scalar_one_or_none()
    if exists:
        raise HTTPException(status_code=409, detail="Topic already exists")
    topic = PredefinedTopic(name=name, category=request.category, description=request.description, order=request.order)
    db.add(topic)
    await db.commit()
    return ok({"id": topic.id, "name": topic.name, "category": topic.category,
               "description": topic.description, "order": topic.order})


@app.delete("/api/settings/topics/{topic_id}")
async def delete_topic(topic_id: str, db: AsyncSession = Depends(get_db), user: AuthUser = Depends(require_auth)):
    topic = await _get_or_404(db, PredefinedTopic, topic_id, "Topic")
    await db.delete(topic)
    await db.commit()
    return {"success": True, "message": "Topic deleted"}


# ──────────────────────────────────────────────
# Settings: general
# ──────────────────────────────────────────────

async def _general_settings(db: AsyncSession) -> GeneralSettings:
    """The settings row, created with defaults on first read."""
    settings = (await db.execute(select(GeneralSettings).order_by(GeneralSettings.created_at).limit(1))).scalar_one_or_none()
    if settings is None:
        settings = GeneralSettings()
        db.add(settings)
        await db.commit()
    return settings


@app.get("/api/settings/general")
async def get_general_settings(db: AsyncSession = Depends(get_db), user: AuthUser = Depends(require_auth)):
    return ok(serialize_general_settings(await _general_settings(db)))


@app.put("/api/settings/general")
async def update_general_settings(
    request: GeneralSettingsIn,
    db: AsyncSession = Depends(get_db),
    user: AuthUser = Depends(require_auth),
):
    company_name = request.company_name.strip()
    industry_name = request.industry_name.strip()
    if not company_name or not industry_name:
        raise HTTPException(status_code=400, detail="Company name, protected domain, and industry name are required")
    logo_url = (request.logo_url or "").strip()
    if logo_url:
        parsed = urlparse(logo_url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise HTTPException(status_code=400, detail="Please enter a valid logo URL")

    settings = await _general_settings(db)
    settings.company_name = company_name
    settings.protected_domain = request.protected_domain.strip().lower()
    settings.logo_url = logo_url
    settings.industry_name = industry_name
    await db.commit()
    return ok(serialize_general_settings(settings), message="Settings updated")


# ──────────────────────────────────────────────
# Dashboard
# ──────────────────────────────────────────────

@app.get("/api/dashboard/metrics")
async def dashboard_metrics(force: bool = False, db: AsyncSession = Depends(get_db), user: AuthUser = Depends(require_auth)):
    metrics, cached = await get_metrics(db, force=force)
    return ok(metrics, cached=cached)


@app.post("/api/dashboard/metrics")
async def dashboard_metrics_action(request: MetricsAction, user: AuthUser = Depends(require_auth)):
    if request.action != "invalidate":
        raise HTTPException(status_code=400, detail="Invalid action")
    invalidate_metrics()
    return {"success": True, "message": "Cache invalidated"}


@app.get("/api/dashboard/top-analysts")
async def dashboard_top_analysts(limit: int = 5, db: AsyncSession = Depends(get_db), user: AuthUser = Depends(require_auth)):
    return ok(await top_analysts(db, limit=min(max(limit, 1), 50)))


@app.get("/api/dashboard/recent-activity")
async def dashboard_recent_activity(db: AsyncSession = Depends(get_db), user: AuthUser = Depends(require_auth)):
    return ok(await recent_activity(db))


@app.get("/api/analytics/briefing-density")
async def analytics_briefing_density(db: AsyncSession = Depends(get_db), user: AuthUser = Depends(require_auth)):
    density = await briefing_density(db)
    data = density.pop("data")
    return ok(data, **density)


# ──────────────────────────────────────────────
# Calendar connections & sync
# ──────────────────────────────────────────────

async def _user_connection(db: AsyncSession, connection_id: str, user: AuthUser) -> CalendarConnection:
    connection = await db.get(CalendarConnection, connection_id)
    if connection is None or (not user.is_internal and connection.user_id != user.id):
        raise HTTPException(status_code=404, detail="Calendar connection not found")
    return connection


@app.get("/api/settings/calendar-connections")
async def list_calendar_connections(db: AsyncSession = Depends(get_db), user: AuthUser = Depends(require_auth)):
    connections = (await db.execute(
        select(CalendarConnection)
        .where(CalendarConnection.user_id == user.id)
        .order_by(CalendarConnection.created_at)
    )).scalars().all()
    return ok([serialize_connection(c) for c in connections])


@app.post("/api/settings/calendar-connections")
async def start_calendar_connection(user: AuthUser = Depends(require_auth)):
    """Return the Google consent URL; the browser comes back via the OAuth callback."""
    try:
        auth_url = build_authorization_url(user.id)
    except GoogleCalendarError as e:
        raise HTTPException(status_code=e.status_code or 500, detail=str(e))
    return ok({"auth_url": auth_url})


def _settings_redirect(**params) -> RedirectResponse:
    return RedirectResponse(f"{config.APP_URL}/settings?{urlencode(params)}", status_code=302)


@app.get("/api/auth/google-calendar/callback")
async def google_calendar_callback(
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
):
    """OAuth redirect target.  Stores (or refreshes) the connection, then bounces to settings."""
    if error:
        logger.warning("Google OAuth returned error: %s", error)
        return _settings_redirect(error=error)
    if not code or not state:
        return _settings_redirect(error="missing_parameters")
    try:
        user_id = decode_state(state)["userId"]
    except ValueError:
        return _settings_redirect(error="invalid_state")

    try:
        tokens = await exchange_code(code)
        async with GoogleCalendarClient(tokens.access_token) as gcal:
            userinfo = await gcal.get_userinfo()
            calendar_title = await gcal.get_calendar_summary()

        google_account_id = str(userinfo.get("id") or userinfo.get("email") or "")
        if not google_account_id:
            raise GoogleCalendarError("Google did not return an account id")

        if await db.get(Profile, user_id) is None:
            db.add(Profile(id=user_id))

        connection = (await db.execute(
            select(CalendarConnection).where(
                CalendarConnection.user_id == user_id,
                CalendarConnection.google_account_id == google_account_id,
            )
        )).scalar_one_or_none()
        if connection is None:
            connection = CalendarConnection(user_id=user_id, google_account_id=google_account_id)
            db.add(connection)

        connection.email = userinfo.get("email") or connection.email or ""
        connection.title = connection.title or calendar_title or userinfo.get("name") or connection.email
        connection.access_token = encrypt_token(tokens.access_token)
        if tokens.refresh_token:
            connection.refresh_token = encrypt_token(tokens.refresh_token)
        connection.token_expiry = tokens.expiry
        connection.is_active = True
        await db.commit()
    except (GoogleCalendarError, httpx.HTTPError, RuntimeError) as e:
        logger.error("Calendar connection failed: %s", e, exc_info=True)
        await db.rollback()
        return _settings_redirect(error="connection_failed")

    logger.info("Calendar connected for user %s (%s)", user_id, connection.email)
    return _settings_redirect(success="calendar_connected")


@app.patch("/api/settings/calendar-connections/{connection_id}")
async def update_calendar_connection(
    connection_id: str,
    request: ConnectionUpdate,
    db: AsyncSession = Depends(get_db),
    user: AuthUser = Depends(require_auth),
):
    connection = await _user_connection(db, connection_id, user)
    _apply(connection, request.model_dump(exclude_unset=True))
    await db.commit()
    return ok(serialize_connection(connection))


@app.delete("/api/settings/calendar-connections/{connection_id}")
async def delete_calendar_connection(
    connection_id: str,
    db: AsyncSession = Depends(get_db),
    user: AuthUser = Depends(require_auth),
):
    connection = await _user_connection(db, connection_id, user)
    await sync_runs.cancel(connection_id)
    await db.execute(delete(CalendarSyncProgress).where(CalendarSyncProgress.connection_id == connection_id))
    await db.execute(delete(CalendarMeeting).where(CalendarMeeting.calendar_connection_id == connection_id))
    await db.delete(connection)
    await db.commit()
    return {"success": True, "message": "Calendar connection removed"}


@app.post("/api/settings/calendar-connections/{connection_id}/sync", status_code=202)
async def trigger_calendar_sync(
    connection_id: str,
    request: Optional[SyncRequest] = None,
    db: AsyncSession = Depends(get_db),
    user: AuthUser = Depends(require_auth_or_internal),
):
    """Start a background sync.  409 while another sync of this connection is live."""
    request = request or SyncRequest()
    connection = await _user_connection(db, connection_id, user)
    if not connection.is_active:
        raise HTTPException(status_code=400, detail="Calendar connection is inactive")

    options = SyncOptions(
        time_window=request.time_window,
        start_date=request.start_date,
        end_date=request.end_date,
        force_sync=request.force_sync,
    )
    try:
        compute_time_window(options)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    try:
        start_calendar_sync(connection_id, options)
    except SyncInProgressError:
        raise HTTPException(status_code=409, detail="Calendar sync already in progress")

    stream_url = f"/api/settings/calendar-connections/{connection_id}/sync"
    return ok(
        {"connection_id": connection_id, "status": "started", "stream_url": stream_url},
        message="Calendar sync started",
    )


@app.get("/api/settings/calendar-connections/{connection_id}/sync")
async def calendar_sync_stream(
    connection_id: str,
    after: int = 0,
    db: AsyncSession = Depends(get_db),
    user: AuthUser = Depends(require_auth),
):
    """SSE progress stream.  May be opened before the POST that starts the sync."""
    await _user_connection(db, connection_id, user)
    run = sync_runs.get_or_open(connection_id)
    return stream_run(run, after=after, heartbeat=config.SSE_HEARTBEAT_SECONDS)


@app.get("/api/settings/calendar-connections/{connection_id}/sync/status")
async def calendar_sync_status(
    connection_id: str,
    db: AsyncSession = Depends(get_db),
    user: AuthUser = Depends(require_auth),
):
    connection = await _user_connection(db, connection_id, user)
    run = sync_runs.get(connection_id)
    return ok({
        "connection_id": connection_id,
        "is_locked": sync_locks.is_locked(connection_id),
        "lock": sync_locks.info(connection_id),
        "run": run.snapshot() if run else None,
        "last_sync_at": iso(connection.last_sync_at),
    })


@app.get("/api/settings/calendar-connections/{connection_id}/progress")
async def calendar_sync_progress(
    connection_id: str,
    since_id: int = 0,
    limit: int = 50,
    db: AsyncSession = Depends(get_db),
    user: AuthUser = Depends(require_auth),
):
    """Persisted progress rows after ``since_id``, oldest first (polling fallback for SSE)."""
    await _user_connection(db, connection_id, user)
    rows = (await db.execute(
        select(CalendarSyncProgress)
        .where(CalendarSyncProgress.connection_id == connection_id, CalendarSyncProgress.id > since_id)
        .order_by(CalendarSyncProgress.id.asc())
        .limit(min(max(limit, 1), 200))
    )).scalars().all()
    return ok([
        {
            "id": r.id,
            "type": r.type,
            "month": r.month,
            "message": r.message,
            "found_analyst_meetings": r.found_analyst_meetings,
            "total_events_processed": r.total_events_processed,
            "relevant_meetings_count": r.relevant_meetings_count,
            "created_at": iso(r.created_at),
        }
        for r in rows
    ])


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("api_server:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")), reload=False)
