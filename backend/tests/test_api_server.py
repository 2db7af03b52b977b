"""
Tests for api_server.py

Drives the FastAPI app through httpx's ASGI transport with the database and
auth dependencies overridden.  Covers the response envelope, CRUD routes,
the due list, settings, dashboard, analytics and calendar connection / sync
routes. Background jobs are mocked at their entry points.
"""

import asyncio
import json
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
import pytest_asyncio

import api_server
from ai_text import TextGenerator
from api_server import RateLimiter, _rate_limit_exempt, app
from auth import AuthUser, require_auth, require_auth_or_internal
from briefings_due import briefings_due_cache
from calendar_sync import SyncInProgressError, sync_locks, sync_runs
from conftest import (
    OTHER_USER_ID,
    TEST_USER_ID,
    default_tiers,
    make_analyst,
    make_briefing,
    make_connection,
)
from dashboard import invalidate_metrics
from db import get_db
from db.models import CalendarSyncProgress
from google_calendar import GoogleCalendarError, TokenBundle, encode_state
from progress import ProgressRun
from publication_discovery import discovery_runs

TEST_USER = AuthUser(id=TEST_USER_ID, email="owner@test.com")


@pytest_asyncio.fixture
async def client(db_session, session_factory, monkeypatch):
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[require_auth] = lambda: TEST_USER
    app.dependency_overrides[require_auth_or_internal] = lambda: TEST_USER
    monkeypatch.setattr(api_server, "text_generator", TextGenerator(api_key=""))
    monkeypatch.setattr(api_server, "rate_limiter", RateLimiter(max_requests=1000, window_seconds=60))
    briefings_due_cache.invalidate()
    invalidate_metrics()

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


async def _add(db_session, *objects):
    db_session.add_all(objects)
    await db_session.commit()
    return objects[0] if len(objects) == 1 else objects


def _future(days: int) -> str:
    return (datetime.now(timezone.utc) + timedelta(days=days)).isoformat()


def _sse_events(body: str) -> list[dict]:
    return [json.loads(line[len("data: "):]) for line in body.splitlines() if line.startswith("data: ")]


# ═══════════════════════════════════════════════
# Rate limiting & envelope
# ═══════════════════════════════════════════════

class TestRateLimiter:
    def test_blocks_after_max(self):
        limiter = RateLimiter(max_requests=2, window_seconds=60)
        assert limiter.check("1.2.3.4") is True
        assert limiter.check("1.2.3.4") is True
        assert limiter.check("1.2.3.4") is False
        assert limiter.check("5.6.7.8") is True

    def test_exempt_paths(self):
        assert _rate_limit_exempt("/api/health")
        assert _rate_limit_exempt("/api/publications/discover/abc/stream")
        assert _rate_limit_exempt("/api/settings/calendar-connections/abc/sync")
        assert not _rate_limit_exempt("/api/settings/calendar-connections/abc/sync", "POST")
        assert not _rate_limit_exempt("/api/analysts")

    @pytest.mark.asyncio
    async def test_sync_trigger_is_limited(self, client, db_session, monkeypatch):
        connection = await _add(db_session, make_connection())
        monkeypatch.setattr(api_server, "rate_limiter", RateLimiter(max_requests=1, window_seconds=60))
        url = f"/api/settings/calendar-connections/{connection.id}/sync"
        with patch("api_server.start_calendar_sync"):
            assert (await client.post(url)).status_code == 202
            assert (await client.post(url)).status_code == 429

    @pytest.mark.asyncio
    async def test_middleware_returns_envelope(self, client, monkeypatch):
        monkeypatch.setattr(api_server, "rate_limiter", RateLimiter(max_requests=1, window_seconds=60))
        assert (await client.get("/api/analysts")).status_code == 200
        resp = await client.get("/api/analysts")
        assert resp.status_code == 429
        assert resp.json()["success"] is False
        # Health is never limited
        assert (await client.get("/api/health")).status_code == 200


class TestEnvelope:
    @pytest.mark.asyncio
    async def test_health(self, client):
        data = (await client.get("/api/health")).json()
        assert data["status"] == "ok"
        assert data["success"] is True
        assert data["llm_available"] is False

    @pytest.mark.asyncio
    async def test_not_found(self, client):
        resp = await client.get("/api/analysts/missing-id")
        assert resp.status_code == 404
        assert resp.json() == {"success": False, "error": "Analyst not found"}

    @pytest.mark.asyncio
    async def test_validation_error_is_400(self, client):
        resp = await client.post("/api/testimonials", json={"text": "Great", "author": "A", "company": "C", "rating": 6})
        assert resp.status_code == 400
        body = resp.json()
        assert body["success"] is False
        assert body["error"].startswith("rating:")

    @pytest.mark.asyncio
    async def test_unknown_route(self, client):
        resp = await client.get("/api/nope")
        assert resp.status_code == 404
        assert resp.json()["success"] is False


# ═══════════════════════════════════════════════
# Analysts
# ═══════════════════════════════════════════════

class TestAnalystRoutes:
    @pytest.mark.asyncio
    async def test_create(self, client):
        resp = await client.post("/api/analysts", json={
            "first_name": "Jane",
            "last_name": "Doe",
            "email": "Jane.Doe@Gartner.com",
            "company": "Gartner",
            "influence": "HIGH",
            "covered_topics": ["AI", "AI", "Payroll"],
        })
        assert resp.status_code == 201
        data = resp.json()["data"]
        assert data["email"] == "jane.doe@gartner.com"
        assert data["full_name"] == "Jane Doe"
        assert sorted(data["covered_topics"]) == ["AI", "Payroll"]
        assert data["status"] == "ACTIVE"

    @pytest.mark.asyncio
    async def test_duplicate_email(self, client, db_session):
        await _add(db_session, make_analyst())
        resp = await client.post("/api/analysts", json={
            "first_name": "J", "last_name": "D", "email": "JANE.DOE@gartner.com",
        })
        assert resp.status_code == 409
        assert resp.json()["error"] == "An analyst with this email already exists"

    @pytest.mark.asyncio
    async def test_invalid_email(self, client):
        resp = await client.post("/api/analysts", json={"first_name": "J", "last_name": "D", "email": "nope"})
        assert resp.status_code == 400
        assert resp.json()["error"].startswith("email:")

    @pytest.mark.asyncio
    async def test_list_filters(self, client, db_session):
        await _add(
            db_session,
            make_analyst(),
            make_analyst(first_name="Vera", last_name="Stone", email="vera@idc.com", company="IDC"),
            make_analyst(first_name="Ari", last_name="Gold", email="ari@example.com", status="ARCHIVED"),
        )
        body = (await client.get("/api/analysts")).json()
        assert body["count"] == 2
        assert [a["last_name"] for a in body["data"]] == ["Doe", "Stone"]

        assert (await client.get("/api/analysts", params={"include_archived": True})).json()["count"] == 3
        assert (await client.get("/api/analysts", params={"status": "archived"})).json()["count"] == 1
        searched = (await client.get("/api/analysts", params={"search": "idc"})).json()["data"]
        assert [a["first_name"] for a in searched] == ["Vera"]

    @pytest.mark.asyncio
    async def test_get_by_email(self, client, db_session):
        analyst = await _add(db_session, make_analyst())
        resp = await client.get("/api/analysts/by-email/JANE.DOE@gartner.com")
        assert resp.json()["data"]["id"] == analyst.id
        assert (await client.get("/api/analysts/by-email/nobody@example.com")).status_code == 404

    @pytest.mark.asyncio
    async def test_update(self, client, db_session):
        analyst = await _add(db_session, make_analyst(topics=["AI"]))
        resp = await client.patch(f"/api/analysts/{analyst.id}", json={
            "influence": "VERY_HIGH",
            "covered_topics": ["Payroll"],
        })
        data = resp.json()["data"]
        assert data["influence"] == "VERY_HIGH"
        assert data["covered_topics"] == ["Payroll"]
        assert data["first_name"] == "Jane"

    @pytest.mark.asyncio
    async def test_update_rejects_null_required_fields(self, client, db_session):
        analyst = await _add(db_session, make_analyst())
        for field in ("first_name", "last_name", "email", "status"):
            resp = await client.patch(f"/api/analysts/{analyst.id}", json={field: None})
            assert resp.status_code == 400
            assert resp.json()["error"].startswith(f"{field}:")
        # Optional columns can still be cleared
        resp = await client.patch(f"/api/analysts/{analyst.id}", json={"company": None})
        assert resp.status_code == 200
        assert resp.json()["data"]["company"] is None
        assert resp.json()["data"]["first_name"] == "Jane"

    @pytest.mark.asyncio
    async def test_update_email_clash(self, client, db_session):
        jane, vera = await _add(db_session, make_analyst(), make_analyst(first_name="Vera", email="vera@idc.com"))
        resp = await client.patch(f"/api/analysts/{vera.id}", json={"email": "jane.doe@gartner.com"})
        assert resp.status_code == 409

    @pytest.mark.asyncio
    async def test_delete_archives(self, client, db_session):
        analyst = await _add(db_session, make_analyst())
        resp = await client.delete(f"/api/analysts/{analyst.id}")
        assert resp.json() == {"success": True, "message": "Analyst archived"}
        assert (await client.get(f"/api/analysts/{analyst.id}")).json()["data"]["status"] == "ARCHIVED"
        assert (await client.get("/api/analysts")).json()["count"] == 0

    @pytest.mark.asyncio
    async def test_briefings_and_publications(self, client, db_session):
        analyst = await _add(db_session, make_analyst())
        await _add(db_session, make_briefing([analyst]), make_briefing(title="Unrelated"))
        briefings = (await client.get(f"/api/analysts/{analyst.id}/briefings")).json()["data"]
        assert [b["title"] for b in briefings] == ["Quarterly briefing"]
        assert briefings[0]["analysts"][0]["name"] == "Jane Doe"
        assert (await client.get(f"/api/analysts/{analyst.id}/publications")).json()["data"] == []


class TestAnalystImportRoutes:
    CSV = b"First Name,Last Name,Email\nJane,Doe,jane@gartner.com\n"

    @pytest.mark.asyncio
    async def test_preview(self, client):
        resp = await client.post("/api/analysts/preview", files={"file": ("contacts.csv", self.CSV, "text/csv")})
        data = resp.json()["data"]
        assert data["headers"] == ["First Name", "Last Name", "Email"]
        assert data["total_rows"] == 1
        assert data["suggested_mapping"]["mapping"]["Email"] == "email"

    @pytest.mark.asyncio
    async def test_preview_bad_file(self, client):
        resp = await client.post("/api/analysts/preview", files={"file": ("contacts.pdf", b"%PDF", "application/pdf")})
        assert resp.status_code == 400
        assert "Unsupported file type" in resp.json()["error"]

    @pytest.mark.asyncio
    async def test_map_columns(self, client):
        resp = await client.post("/api/analysts/map-columns", json={"columns": ["Email", "Firm"]})
        assert resp.json()["data"]["mapping"] == {"Email": "email", "Firm": "company"}

    @pytest.mark.asyncio
    async def test_bulk_with_mapping(self, client, db_session):
        await _add(db_session, make_analyst())
        resp = await client.post("/api/analysts/bulk", json={
            "analysts": [
                {"Name": "Jane Doe", "Mail": "jane.doe@gartner.com"},
                {"Name": "Ann Lee", "Mail": "ann@idc.com"},
                {"Name": "Cher", "Mail": "cher@example.com"},
            ],
            "mapping": {"Name": "full_name", "Mail": "email"},
        })
        data = resp.json()["data"]
        assert data["created"] == 1
        assert data["skipped"] == 1
        assert data["errors"] == [{"row": 4, "reason": "Missing first name, last name or email"}]
        assert resp.json()["message"] == "Imported 1 analysts (1 already existed)"

    @pytest.mark.asyncio
    async def test_bulk_field_keyed_rows(self, client):
        resp = await client.post("/api/analysts/bulk", json={"analysts": [
            {"first_name": "Ann", "last_name": "Lee", "email": "ann@idc.com", "covered_topics": ["AI", "HR"]},
        ]})
        created_id = resp.json()["data"]["ids"][0]
        analyst = (await client.get(f"/api/analysts/{created_id}")).json()["data"]
        assert sorted(analyst["covered_topics"]) == ["AI", "HR"]

    @pytest.mark.asyncio
    async def test_bulk_empty(self, client):
        resp = await client.post("/api/analysts/bulk", json={"analysts": []})
        assert resp.status_code == 400
        assert resp.json()["error"] == "No analysts provided"


class TestAiRoutes:
    @pytest.mark.asyncio
    async def test_suggest_expertise(self, client):
        resp = await client.post("/api/analysts/suggest-expertise", json={"name": "Sam", "title": "Security Analyst"})
        assert resp.json()["data"]["expertise"] == ["Cybersecurity", "Risk Management"]

    @pytest.mark.asyncio
    async def test_social_response(self, client):
        resp = await client.post("/api/analysts/generate-social-response", json={
            "analyst_name": "Jane Doe",
            "post": {"content": "AI is changing hiring", "platform": "linkedin"},
            "response_type": "reply",
        })
        assert "Jane" in resp.json()["data"]["message"]

    @pytest.mark.asyncio
    async def test_social_response_bad_type(self, client):
        resp = await client.post("/api/analysts/generate-social-response", json={
            "analyst_name": "Jane Doe", "post": {"content": "x"}, "response_type": "like",
        })
        assert resp.status_code == 400


# ═══════════════════════════════════════════════
# Briefings
# ═══════════════════════════════════════════════

class TestBriefingRoutes:
    @pytest.mark.asyncio
    async def test_create_completed_stamps_completed_at(self, client, db_session):
        analyst = await _add(db_session, make_analyst())
        resp = await client.post("/api/briefings", json={
            "title": "Roadmap review",
            "scheduled_at": "2025-06-01T15:00:00Z",
            "status": "COMPLETED",
            "analyst_ids": [analyst.id, analyst.id],
        })
        assert resp.status_code == 201
        data = resp.json()["data"]
        assert data["completed_at"] is not None
        assert [a["name"] for a in data["analysts"]] == ["Jane Doe"]
        assert data["scheduled_at"] == "2025-06-01T15:00:00+00:00"

    @pytest.mark.asyncio
    async def test_create_unknown_analyst(self, client):
        resp = await client.post("/api/briefings", json={
            "title": "T", "scheduled_at": "2025-06-01T15:00:00Z", "analyst_ids": ["nope"],
        })
        assert resp.status_code == 400
        assert resp.json()["error"] == "Unknown analyst id(s): nope"

    @pytest.mark.asyncio
    async def test_update_links_and_status(self, client, db_session):
        jane, vera = await _add(db_session, make_analyst(), make_analyst(first_name="Vera", email="vera@idc.com"))
        briefing = await _add(db_session, make_briefing([jane], status="SCHEDULED", completed_at=None))

        resp = await client.patch(f"/api/briefings/{briefing.id}", json={
            "analyst_ids": [jane.id, vera.id],
            "status": "COMPLETED",
            "notes": "Went well.",
        })
        data = resp.json()["data"]
        assert sorted(a["name"] for a in data["analysts"]) == ["Jane Doe", "Vera Doe"]
        assert data["status"] == "COMPLETED"
        assert data["completed_at"] is not None

        data = (await client.patch(f"/api/briefings/{briefing.id}", json={"analyst_ids": [vera.id]})).json()["data"]
        assert [a["name"] for a in data["analysts"]] == ["Vera Doe"]

    @pytest.mark.asyncio
    async def test_last_and_next(self, client, db_session):
        await _add(
            db_session,
            make_briefing(title="Done"),
            make_briefing(
                title="Soon", status="SCHEDULED", completed_at=None,
                scheduled_at=datetime.now(timezone.utc) + timedelta(days=3),
            ),
        )
        assert (await client.get("/api/briefings/last")).json()["data"]["title"] == "Done"
        assert (await client.get("/api/briefings/next")).json()["data"]["title"] == "Soon"
        upcoming = (await client.get("/api/briefings", params={"upcoming": True})).json()
        assert [b["title"] for b in upcoming["data"]] == ["Soon"]

    @pytest.mark.asyncio
    async def test_last_and_next_empty(self, client):
        assert (await client.get("/api/briefings/last")).json() == {"success": True, "data": None}
        assert (await client.get("/api/briefings/next")).json()["data"] is None

    @pytest.mark.asyncio
    async def test_summary_and_delete(self, client, db_session):
        briefing = await _add(db_session, make_briefing(notes="Discussed pricing."))
        resp = await client.post(f"/api/briefings/{briefing.id}/summary")
        summary = resp.json()["data"]["summary"]
        assert summary.startswith("Briefing: Quarterly briefing")
        assert (await client.get(f"/api/briefings/{briefing.id}")).json()["data"]["ai_summary"] == summary

        assert (await client.delete(f"/api/briefings/{briefing.id}")).json()["message"] == "Briefing deleted"
        resp = await client.get(f"/api/briefings/{briefing.id}")
        assert resp.status_code == 404
        assert resp.json()["error"] == "Briefing not found"


class TestBriefingsDueRoute:
    @pytest.mark.asyncio
    async def test_due_list(self, client, db_session):
        await _add(db_session, *default_tiers())
        jane, vera = await _add(
            db_session,
            make_analyst(),
            make_analyst(first_name="Vera", last_name="Stone", email="vera@idc.com", influence="VERY_HIGH"),
        )
        recent = datetime.now(timezone.utc) - timedelta(days=5)
        await _add(db_session, make_briefing([jane], scheduled_at=recent, completed_at=recent))

        body = (await client.get("/api/briefings/due")).json()
        assert body["success"] is True
        assert body["cached"] is False
        assert [e["first_name"] for e in body["data"]] == ["Vera"]
        assert body["total"] == 1
        assert body["counts_by_tier"] == {"VERY_HIGH": 1, "HIGH": 0, "MEDIUM": 0, "LOW": 0}
        assert body["filters"] == {"search": "", "tier": ""}
        assert body["updated_at"] is not None

        again = (await client.get("/api/briefings/due", params={"tier": "TIER_2"})).json()
        assert again["cached"] is True
        assert again["data"] == []
        assert again["filters"]["tier"] == "TIER_2"

        assert (await client.get("/api/briefings/due", params={"force": True})).json()["cached"] is False


# ═══════════════════════════════════════════════
# Publications
# ═══════════════════════════════════════════════

class TestPublicationRoutes:
    @pytest.mark.asyncio
    async def test_create_normalizes_type(self, client, db_session):
        analyst = await _add(db_session, make_analyst())
        resp = await client.post("/api/publications", json={
            "analyst_id": analyst.id,
            "title": "HCM Market Guide",
            "type": "report",
            "published_at": "2025-05-01T00:00:00Z",
        })
        assert resp.status_code == 201
        data = resp.json()["data"]
        assert data["type"] == "RESEARCH_REPORT"
        assert data["analyst_name"] == "Jane Doe"
        assert data["source"] == "manual"

        listed = (await client.get("/api/publications", params={"type": "Research Report"})).json()
        assert listed["count"] == 1

    @pytest.mark.asyncio
    async def test_invalid_type_and_analyst(self, client, db_session):
        analyst = await _add(db_session, make_analyst())
        body = {"analyst_id": analyst.id, "title": "T", "type": "nonsense", "published_at": "2025-05-01T00:00:00Z"}
        resp = await client.post("/api/publications", json=body)
        assert resp.status_code == 400
        assert resp.json()["error"] == "Invalid publication type 'nonsense'"

        resp = await client.post("/api/publications", json={**body, "type": "BLOG_POST", "analyst_id": "nope"})
        assert resp.status_code == 400
        assert resp.json()["error"] == "Analyst not found"

    @pytest.mark.asyncio
    async def test_update_and_delete(self, client, db_session):
        analyst = await _add(db_session, make_analyst())
        created = (await client.post("/api/publications", json={
            "analyst_id": analyst.id, "title": "T", "type": "BLOG_POST", "published_at": "2025-05-01T00:00:00Z",
        })).json()["data"]

        resp = await client.patch(f"/api/publications/{created['id']}", json={"type": "white paper", "is_tracked": False})
        assert resp.json()["data"]["type"] == "WHITEPAPER"
        assert resp.json()["data"]["is_tracked"] is False

        assert (await client.delete(f"/api/publications/{created['id']}")).json()["success"] is True
        assert (await client.get(f"/api/publications/{created['id']}")).status_code == 404

    @pytest.mark.asyncio
    async def test_discover_starts_run(self, client):
        run = ProgressRun("run-123", "publication_discovery")
        with patch("api_server.start_publication_discovery", return_value=run) as start:
            resp = await client.post("/api/publications/discover", json={"analyst_ids": ["a-1"], "save": True})

        assert resp.status_code == 202
        assert resp.json()["data"] == {
            "run_id": "run-123",
            "stream_url": "/api/publications/discover/run-123/stream",
        }
        start.assert_called_once_with(analyst_ids=["a-1"], save=True)

    @pytest.mark.asyncio
    async def test_discover_status(self, client):
        discovery_runs.start("run-status-test")
        data = (await client.get("/api/publications/discover/run-status-test/status")).json()["data"]
        assert data["status"] == "running"
        assert data["kind"] == "publication_discovery"

        resp = await client.get("/api/publications/discover/unknown-run/status")
        assert resp.status_code == 404
        assert resp.json()["error"] == "Discovery run not found"

    @pytest.mark.asyncio
    async def test_discover_stream_replays_run(self, client):
        run = discovery_runs.start("run-stream-test")
        await run.emit({"type": "progress", "data": {"message": "Starting discovery"}})
        await run.emit({"type": "complete", "data": {"total_found": 0}})

        resp = await client.get("/api/publications/discover/run-stream-test/stream")
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/event-stream")
        assert [e["type"] for e in _sse_events(resp.text)] == ["connected", "progress", "complete"]

        resumed = await client.get("/api/publications/discover/run-stream-test/stream", params={"after": 1})
        assert [e["type"] for e in _sse_events(resumed.text)] == ["connected", "complete"]

    @pytest.mark.asyncio
    async def test_discover_stream_unknown_run(self, client):
        resp = await client.get("/api/publications/discover/unknown-run/stream")
        assert resp.status_code == 404
        assert resp.json() == {"success": False, "error": "Discovery run not found"}


# ═══════════════════════════════════════════════
# Awards, events, testimonials, action items
# ═══════════════════════════════════════════════

class TestAwardRoutes:
    AWARD = {
        "name": "HR Tech Awards",
        "organization": "HR Executive",
        "submission_date": "2025-03-01T00:00:00Z",
        "publication_date": "2025-09-01T00:00:00Z",
        "product_topics": ["Payroll"],
    }

    @pytest.mark.asyncio
    async def test_crud(self, client):
        created = (await client.post("/api/awards", json=self.AWARD)).json()["data"]
        assert created["status"] == "EVALUATING"
        assert created["priority"] == "MEDIUM"

        updated = (await client.patch(f"/api/awards/{created['id']}", json={"status": "WINNER"})).json()["data"]
        assert updated["status"] == "WINNER"
        assert (await client.get("/api/awards", params={"status": "winner"})).json()["count"] == 1

        assert (await client.delete(f"/api/awards/{created['id']}")).json()["message"] == "Award deleted"
        assert (await client.get(f"/api/awards/{created['id']}")).status_code == 404

    @pytest.mark.asyncio
    async def test_bulk(self, client):
        resp = await client.post("/api/awards/bulk", json={"awards": [self.AWARD, {**self.AWARD, "name": "Top HR Product"}]})
        assert resp.status_code == 201
        assert resp.json()["data"] == {"created": 2}
        assert (await client.get("/api/awards")).json()["count"] == 2

    @pytest.mark.asyncio
    async def test_update_rejects_null_required_fields(self, client):
        created = (await client.post("/api/awards", json=self.AWARD)).json()["data"]
        for field in ("name", "organization", "submission_date", "publication_date"):
            resp = await client.patch(f"/api/awards/{created['id']}", json={field: None})
            assert resp.status_code == 400
            assert resp.json()["error"].startswith(f"{field}:")
        assert (await client.get(f"/api/awards/{created['id']}")).json()["data"]["name"] == "HR Tech Awards"

    @pytest.mark.asyncio
    async def test_bad_status(self, client):
        resp = await client.post("/api/awards", json={**self.AWARD, "status": "MAYBE"})
        assert resp.status_code == 400


class TestEventRoutes:
    @pytest.mark.asyncio
    async def test_crud(self, client):
        created = (await client.post("/api/events", json={
            "event_name": "HR Tech Conference",
            "start_date": _future(30),
            "audience_groups": ["Analysts"],
        })).json()["data"]
        assert created["type"] == "CONFERENCE"
        assert created["audience_groups"] == ["Analysts"]

        assert (await client.get("/api/events", params={"upcoming": True})).json()["count"] == 1
        updated = (await client.patch(f"/api/events/{created['id']}", json={"status": "COMMITTED"})).json()["data"]
        assert updated["status"] == "COMMITTED"
        assert (await client.delete(f"/api/events/{created['id']}")).json()["success"] is True

    @pytest.mark.asyncio
    async def test_bulk(self, client):
        resp = await client.post("/api/events/bulk", json={"events": [
            {"event_name": "A", "start_date": _future(10)},
            {"event_name": "B", "start_date": _future(20), "type": "WEBINAR"},
        ]})
        assert resp.json()["data"] == {"created": 2}
        assert (await client.get("/api/events", params={"type": "webinar"})).json()["count"] == 1

    @pytest.mark.asyncio
    async def test_update_rejects_null_required_fields(self, client):
        created = (await client.post("/api/events", json={
            "event_name": "HR Tech Conference", "start_date": _future(30),
        })).json()["data"]
        for field in ("event_name", "start_date"):
            resp = await client.patch(f"/api/events/{created['id']}", json={field: None})
            assert resp.status_code == 400
            assert resp.json()["error"].startswith(f"{field}:")
        resp = await client.patch(f"/api/events/{created['id']}", json={"location": None})
        assert resp.status_code == 200

    @pytest.mark.asyncio
    async def test_enums(self, client):
        data = (await client.get("/api/events/enums")).json()["data"]
        assert {"value": "NOT_GOING", "label": "Not Going"} in data["event_statuses"]
        assert {"value": "Attending Only", "label": "Attending Only"} in data["participation_types"]


class TestTestimonialRoutes:
    @pytest.mark.asyncio
    async def test_crud(self, client):
        created = (await client.post("/api/testimonials", json={
            "text": "Best HR platform we've evaluated.", "author": "Jane Doe", "company": "Gartner",
        })).json()["data"]
        assert created["rating"] == 5
        assert created["is_published"] is False

        await client.patch(f"/api/testimonials/{created['id']}", json={"is_published": True})
        assert (await client.get("/api/testimonials", params={"published_only": True})).json()["count"] == 1
        assert (await client.delete(f"/api/testimonials/{created['id']}")).json()["success"] is True

    @pytest.mark.asyncio
    async def test_update_rejects_null_required_fields(self, client):
        created = (await client.post("/api/testimonials", json={
            "text": "Best HR platform we've evaluated.", "author": "Jane Doe", "company": "Gartner",
        })).json()["data"]
        for field in ("text", "author", "company", "rating"):
            resp = await client.patch(f"/api/testimonials/{created['id']}", json={field: None})
            assert resp.status_code == 400
            assert resp.json()["error"].startswith(f"{field}:")

    @pytest.mark.asyncio
    async def test_unknown_analyst(self, client):
        resp = await client.post("/api/testimonials", json={
            "text": "x", "author": "a", "company": "c", "analyst_id": "nope",
        })
        assert resp.status_code == 400


class TestActionItemRoutes:
    @pytest.mark.asyncio
    async def test_completed_at_follows_status(self, client):
        created = (await client.post("/api/action-items", json={"title": "Send deck"})).json()["data"]
        assert created["status"] == "PENDING"
        assert created["completed_at"] is None

        done = (await client.patch(f"/api/action-items/{created['id']}", json={"status": "COMPLETED"})).json()["data"]
        assert done["completed_at"] is not None

        reopened = (await client.patch(f"/api/action-items/{created['id']}", json={"status": "IN_PROGRESS"})).json()["data"]
        assert reopened["completed_at"] is None

        assert (await client.get("/api/action-items", params={"status": "in_progress"})).json()["count"] == 1
        assert (await client.delete(f"/api/action-items/{created['id']}")).json()["success"] is True

    @pytest.mark.asyncio
    async def test_update_rejects_null_title(self, client):
        created = (await client.post("/api/action-items", json={"title": "Send deck"})).json()["data"]
        resp = await client.patch(f"/api/action-items/{created['id']}", json={"title": None})
        assert resp.status_code == 400
        assert resp.json()["error"].startswith("title:")

    @pytest.mark.asyncio
    async def test_created_completed(self, client):
        created = (await client.post("/api/action-items", json={"title": "Done", "status": "COMPLETED"})).json()["data"]
        assert created["completed_at"] is not None


# ═══════════════════════════════════════════════
# Settings & dashboard
# ═══════════════════════════════════════════════

class TestSettingsRoutes:
    @pytest.mark.asyncio
    async def test_replace_tiers(self, client, db_session):
        await _add(db_session, *default_tiers())
        resp = await client.put("/api/settings/influence-tiers", json={"tiers": [
            {"name": " Very High ", "briefing_frequency": 14},
            {"name": "Low", "briefing_frequency": -1},
        ]})
        data = resp.json()["data"]
        assert [(t["name"], t["briefing_frequency"], t["order"]) for t in data] == [
            ("Very High", 14, 0),
            ("Low", -1, 1),
        ]
        assert len((await client.get("/api/settings/influence-tiers")).json()["data"]) == 2

    @pytest.mark.asyncio
    async def test_invalid_frequency(self, client):
        resp = await client.put("/api/settings/influence-tiers", json={"tiers": [{"name": "High", "briefing_frequency": 0}]})
        assert resp.status_code == 400
        assert "briefing_frequency" in resp.json()["error"]

    @pytest.mark.asyncio
    async def test_touchpoint_frequency_never_round_trips(self, client):
        resp = await client.put("/api/settings/influence-tiers", json={"tiers": [
            {"name": "Very High", "briefing_frequency": 30, "touchpoint_frequency": 7},
            {"name": "Low", "briefing_frequency": -1, "touchpoint_frequency": -1},
            {"name": "Medium", "briefing_frequency": 90},
        ]})
        data = resp.json()["data"]
        assert [t["touchpoint_frequency"] for t in data] == [7, -1, -1]

    @pytest.mark.asyncio
    async def test_invalid_touchpoint_frequency(self, client, db_session):
        await _add(db_session, *default_tiers())
        resp = await client.put("/api/settings/influence-tiers", json={"tiers": [
            {"name": "High", "briefing_frequency": 30, "touchpoint_frequency": 0},
        ]})
        assert resp.status_code == 400
        assert "touchpoint_frequency" in resp.json()["error"]
        # Nothing replaced
        assert len((await client.get("/api/settings/influence-tiers")).json()["data"]) == 4

    @pytest.mark.asyncio
    async def test_topics(self, client):
        created = await client.post("/api/settings/topics", json={"name": "Payroll"})
        assert created.status_code == 201
        assert (await client.post("/api/settings/topics", json={"name": "payroll"})).status_code == 409

        await client.post("/api/settings/topics", json={"name": "Benefits", "category": "ADDITIONAL"})
        names = [t["name"] for t in (await client.get("/api/settings/topics")).json()["data"]]
        assert names == ["Benefits", "Payroll"]

        topic_id = created.json()["data"]["id"]
        assert (await client.delete(f"/api/settings/topics/{topic_id}")).json()["success"] is True
        assert len((await client.get("/api/settings/topics")).json()["data"]) == 1


class TestGeneralSettingsRoutes:
    SETTINGS = {
        "company_name": " Acme HR ",
        "protected_domain": "AcmeHR.com",
        "logo_url": "https://cdn.acmehr.com/logo.png",
        "industry_name": "HR Technology",
    }

    @pytest.mark.asyncio
    async def test_defaults_created_on_first_read(self, client):
        data = (await client.get("/api/settings/general")).json()["data"]
        assert data["company_name"] == ""
        assert data["protected_domain"] == ""
        assert data["industry_name"] == "HR Technology"
        again = (await client.get("/api/settings/general")).json()["data"]
        assert again["id"] == data["id"]

    @pytest.mark.asyncio
    async def test_update(self, client):
        resp = await client.put("/api/settings/general", json=self.SETTINGS)
        assert resp.status_code == 200
        assert resp.json()["message"] == "Settings updated"
        data = (await client.get("/api/settings/general")).json()["data"]
        assert data["company_name"] == "Acme HR"
        assert data["protected_domain"] == "acmehr.com"
        assert data["logo_url"] == "https://cdn.acmehr.com/logo.png"

    @pytest.mark.asyncio
    async def test_required_fields(self, client):
        resp = await client.put("/api/settings/general", json={**self.SETTINGS, "company_name": "   "})
        assert resp.status_code == 400
        assert resp.json()["error"] == "Company name, protected domain, and industry name are required"
        resp = await client.put("/api/settings/general", json={"company_name": "Acme"})
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_invalid_domain_and_logo(self, client):
        resp = await client.put("/api/settings/general", json={**self.SETTINGS, "protected_domain": "not a domain"})
        assert resp.status_code == 400
        assert resp.json()["error"].startswith("protected_domain:")
        resp = await client.put("/api/settings/general", json={**self.SETTINGS, "logo_url": "logo.png"})
        assert resp.status_code == 400
        assert resp.json()["error"] == "Please enter a valid logo URL"

    @pytest.mark.asyncio
    async def test_social_response_speaks_for_company(self, client):
        await client.put("/api/settings/general", json=self.SETTINGS)
        with patch.object(api_server.text_generator, "social_response", AsyncMock(return_value="Thanks!")) as reply:
            resp = await client.post("/api/analysts/generate-social-response", json={
                "analyst_name": "Jane Doe",
                "post": {"content": "Lovely weather in Boston"},
                "response_type": "reply",
            })
        assert resp.json()["data"]["message"] == "Thanks!"
        assert reply.call_args.kwargs["company"] == "Acme HR"


class TestDashboardRoutes:
    @pytest.mark.asyncio
    async def test_metrics_cache(self, client, db_session):
        await _add(db_session, make_analyst())
        first = (await client.get("/api/dashboard/metrics")).json()
        assert first["cached"] is False
        assert first["data"]["active_analysts"] == 1
        assert (await client.get("/api/dashboard/metrics")).json()["cached"] is True

        resp = await client.post("/api/dashboard/metrics", json={"action": "invalidate"})
        assert resp.json() == {"success": True, "message": "Cache invalidated"}
        assert (await client.get("/api/dashboard/metrics")).json()["cached"] is False

    @pytest.mark.asyncio
    async def test_invalid_action(self, client):
        resp = await client.post("/api/dashboard/metrics", json={"action": "explode"})
        assert resp.status_code == 400
        assert resp.json()["error"] == "Invalid action"

    @pytest.mark.asyncio
    async def test_widgets(self, client, db_session):
        await _add(db_session, make_analyst())
        top = (await client.get("/api/dashboard/top-analysts")).json()["data"]
        assert top[0]["name"] == "Jane Doe"
        assert top[0]["last_contact"] == "Never"
        activity = (await client.get("/api/dashboard/recent-activity")).json()["data"]
        assert activity[0]["type"] == "analyst_updated"

    @pytest.mark.asyncio
    async def test_briefing_density(self, client, db_session):
        analyst = await _add(db_session, make_analyst(influence="VERY_HIGH"))
        when = datetime.now(timezone.utc) - timedelta(days=3)
        await _add(db_session, make_briefing([analyst], scheduled_at=when), make_briefing(title="Prep", scheduled_at=when))
        body = (await client.get("/api/analytics/briefing-density")).json()
        assert body["success"] is True
        assert body["total_briefings"] == 2
        assert body["unique_dates"] == 1
        day = body["data"][0]
        assert day["date"] == when.date().isoformat()
        assert day["count"] == 2
        assert day["max_influence"] == "VERY_HIGH"
        assert set(body["period"]) == {"start", "end"}


# ═══════════════════════════════════════════════
# Calendar connections & sync
# ═══════════════════════════════════════════════

class TestCalendarConnectionRoutes:
    @pytest.mark.asyncio
    async def test_list_only_own_connections(self, client, db_session):
        await _add(db_session, make_connection(), make_connection(user_id=OTHER_USER_ID, email="other@company.com"))
        data = (await client.get("/api/settings/calendar-connections")).json()["data"]
        assert [c["email"] for c in data] == ["owner@company.com"]
        assert "access_token" not in data[0]
        assert data[0]["is_syncing"] is False

    @pytest.mark.asyncio
    async def test_start_returns_auth_url(self, client):
        with patch("api_server.build_authorization_url", return_value="https://accounts.google.com/o/oauth2/auth?x=1") as build:
            resp = await client.post("/api/settings/calendar-connections")
        assert resp.json()["data"]["auth_url"].startswith("https://accounts.google.com/")
        build.assert_called_once_with(TEST_USER_ID)

    @pytest.mark.asyncio
    async def test_other_users_connection_is_hidden(self, client, db_session):
        other = await _add(db_session, make_connection(user_id=OTHER_USER_ID))
        resp = await client.patch(f"/api/settings/calendar-connections/{other.id}", json={"title": "Mine now"})
        assert resp.status_code == 404
        assert resp.json()["error"] == "Calendar connection not found"

    @pytest.mark.asyncio
    async def test_update_and_delete(self, client, db_session):
        connection = await _add(db_session, make_connection())
        await _add(db_session, CalendarSyncProgress(connection_id=connection.id, type="progress", message="x"))

        data = (await client.patch(
            f"/api/settings/calendar-connections/{connection.id}", json={"title": "Work", "is_active": False},
        )).json()["data"]
        assert (data["title"], data["is_active"]) == ("Work", False)

        resp = await client.delete(f"/api/settings/calendar-connections/{connection.id}")
        assert resp.json()["message"] == "Calendar connection removed"
        assert (await client.get("/api/settings/calendar-connections")).json()["data"] == []
        assert (await client.get(f"/api/settings/calendar-connections/{connection.id}/progress")).status_code == 404


class TestOAuthCallback:
    @pytest.mark.asyncio
    async def test_error_from_google(self, client):
        resp = await client.get("/api/auth/google-calendar/callback", params={"error": "access_denied"})
        assert resp.status_code == 302
        assert resp.headers["location"].endswith("/settings?error=access_denied")

    @pytest.mark.asyncio
    async def test_missing_parameters(self, client):
        resp = await client.get("/api/auth/google-calendar/callback", params={"code": "abc"})
        assert resp.headers["location"].endswith("error=missing_parameters")

    @pytest.mark.asyncio
    async def test_invalid_state(self, client):
        resp = await client.get("/api/auth/google-calendar/callback", params={"code": "abc", "state": "%%%"})
        assert resp.headers["location"].endswith("error=invalid_state")

    @pytest.mark.asyncio
    async def test_stores_connection(self, client):
        tokens = TokenBundle(
            access_token="access", refresh_token="refresh",
            expiry=datetime.now(timezone.utc) + timedelta(hours=1),
        )
        gcal = MagicMock()
        gcal.get_userinfo = AsyncMock(return_value={"id": "g-42", "email": "owner@company.com"})
        gcal.get_calendar_summary = AsyncMock(return_value="Work")
        gcal.__aenter__ = AsyncMock(return_value=gcal)
        gcal.__aexit__ = AsyncMock(return_value=False)

        with patch("api_server.exchange_code", AsyncMock(return_value=tokens)), \
             patch("api_server.GoogleCalendarClient", return_value=gcal), \
             patch("api_server.encrypt_token", side_effect=lambda t: f"enc:{t}"):
            resp = await client.get("/api/auth/google-calendar/callback", params={
                "code": "abc", "state": encode_state(TEST_USER_ID),
            })

        assert resp.headers["location"].endswith("/settings?success=calendar_connected")
        data = (await client.get("/api/settings/calendar-connections")).json()["data"]
        assert [(c["email"], c["title"], c["is_active"]) for c in data] == [("owner@company.com", "Work", True)]

    @pytest.mark.asyncio
    async def test_exchange_failure(self, client):
        with patch("api_server.exchange_code", AsyncMock(side_effect=GoogleCalendarError("invalid_grant"))):
            resp = await client.get("/api/auth/google-calendar/callback", params={
                "code": "abc", "state": encode_state(TEST_USER_ID),
            })
        assert resp.headers["location"].endswith("error=connection_failed")


class TestCalendarSyncRoutes:
    @pytest.mark.asyncio
    async def test_start(self, client, db_session):
        connection = await _add(db_session, make_connection())
        with patch("api_server.start_calendar_sync") as start:
            resp = await client.post(
                f"/api/settings/calendar-connections/{connection.id}/sync", json={"time_window": "future"},
            )
        assert resp.status_code == 202
        data = resp.json()["data"]
        assert data["status"] == "started"
        assert data["stream_url"] == f"/api/settings/calendar-connections/{connection.id}/sync"
        options = start.call_args.args[1]
        assert options.time_window == "future"
        assert options.force_sync is False

    @pytest.mark.asyncio
    async def test_start_without_body_syncs_all(self, client, db_session):
        connection = await _add(db_session, make_connection())
        with patch("api_server.start_calendar_sync") as start:
            resp = await client.post(f"/api/settings/calendar-connections/{connection.id}/sync")
        assert resp.status_code == 202
        assert start.call_args.args[1].time_window == "all"

    @pytest.mark.asyncio
    async def test_already_running(self, client, db_session):
        connection = await _add(db_session, make_connection())
        with patch("api_server.start_calendar_sync", side_effect=SyncInProgressError("busy")):
            resp = await client.post(f"/api/settings/calendar-connections/{connection.id}/sync")
        assert resp.status_code == 409
        assert resp.json() == {"success": False, "error": "Calendar sync already in progress"}

    @pytest.mark.asyncio
    async def test_inactive_connection(self, client, db_session):
        connection = await _add(db_session, make_connection(is_active=False))
        resp = await client.post(f"/api/settings/calendar-connections/{connection.id}/sync")
        assert resp.status_code == 400
        assert resp.json()["error"] == "Calendar connection is inactive"

    @pytest.mark.asyncio
    async def test_custom_window_needs_dates(self, client, db_session):
        connection = await _add(db_session, make_connection())
        resp = await client.post(
            f"/api/settings/calendar-connections/{connection.id}/sync", json={"time_window": "custom"},
        )
        assert resp.status_code == 400
        assert resp.json()["error"] == "Custom time window requires start_date and end_date"

    @pytest.mark.asyncio
    async def test_unknown_window(self, client, db_session):
        connection = await _add(db_session, make_connection())
        resp = await client.post(
            f"/api/settings/calendar-connections/{connection.id}/sync", json={"time_window": "yesterday"},
        )
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_status(self, client, db_session):
        connection = await _add(db_session, make_connection())
        data = (await client.get(f"/api/settings/calendar-connections/{connection.id}/sync/status")).json()["data"]
        assert data["connection_id"] == connection.id
        assert data["is_locked"] is False
        assert data["lock"] is None
        assert data["run"] is None

    @pytest.mark.asyncio
    async def test_progress_since_id(self, client, db_session):
        connection = await _add(db_session, make_connection())
        rows = await _add(
            db_session,
            CalendarSyncProgress(connection_id=connection.id, type="progress", message="Starting"),
            CalendarSyncProgress(connection_id=connection.id, type="month_started", month="June 2025"),
            CalendarSyncProgress(connection_id=connection.id, type="complete", message="Done"),
        )
        url = f"/api/settings/calendar-connections/{connection.id}/progress"
        data = (await client.get(url, params={"since_id": rows[0].id})).json()["data"]
        assert [r["type"] for r in data] == ["month_started", "complete"]
        assert data[0]["month"] == "June 2025"
        assert len((await client.get(url, params={"limit": 1})).json()["data"]) == 1

    @pytest.mark.asyncio
    async def test_stream_opened_before_start_sees_every_event(self, client, db_session):
        connection = await _add(db_session, make_connection())
        url = f"/api/settings/calendar-connections/{connection.id}/sync"

        async def fake_sync(connection_id, run, options=None, lock=None):
            await run.emit({"type": "progress", "progress": 0, "message": "Starting calendar sync..."})
            await run.emit({"type": "complete", "summary": {"created_briefings": 1}})
            sync_locks.release(connection_id, lock)

        stream = asyncio.create_task(client.get(url))
        for _ in range(200):
            pending = sync_runs.get(connection.id)
            if pending is not None and pending._subscribers:
                break
            await asyncio.sleep(0.01)
        assert pending.status == "pending"

        with patch("calendar_sync.run_calendar_sync", new=fake_sync):
            assert (await client.post(url)).status_code == 202
            resp = await asyncio.wait_for(stream, timeout=5)

        assert sync_runs.get(connection.id) is pending
        assert pending.status == "complete"
        events = _sse_events(resp.text)
        assert events[0] == {"type": "connected", "key": connection.id}
        assert [e["type"] for e in events[1:]] == ["progress", "complete"]
        assert events[-1]["summary"] == {"created_briefings": 1}

    @pytest.mark.asyncio
    async def test_stream_of_other_users_connection(self, client, db_session):
        connection = await _add(db_session, make_connection(user_id=OTHER_USER_ID))
        resp = await client.get(f"/api/settings/calendar-connections/{connection.id}/sync")
        assert resp.status_code == 404
