"""
Tests for briefings_due.py

Covers tier matching, the last-meeting fallback chain, due evaluation,
ordering / filters / counts and the cached DB computation.
"""

from datetime import timedelta

import pytest

from briefings_due import (
    BriefingInfo,
    BriefingsDueCache,
    MeetingInfo,
    _sort_key,
    compute_due_analysts,
    counts_by_tier,
    evaluate_analyst,
    filter_due,
    find_last_meeting,
    find_next_briefing,
    tier_for_influence,
)
from conftest import NOW, default_tiers, make_analyst, make_briefing, make_tier

ANALYST = make_analyst(id="a-1")


def _briefing(id="b-1", days_ago=10, status="COMPLETED", analyst_ids=(), emails=(), title="Sync", completed=True):
    when = NOW - timedelta(days=days_ago)
    return BriefingInfo(
        id=id,
        title=title,
        scheduled_at=when,
        completed_at=when if completed else None,
        status=status,
        analyst_ids=frozenset(analyst_ids),
        attendee_emails=frozenset(emails),
    )


def _meeting(days_ago=5, attendees=(), analyst_id=None, is_analyst_meeting=False):
    start = NOW - timedelta(days=days_ago)
    return MeetingInfo(
        start_time=start,
        end_time=start + timedelta(hours=1),
        attendees=frozenset(attendees),
        analyst_id=analyst_id,
        is_analyst_meeting=is_analyst_meeting,
    )


# ═══════════════════════════════════════════════
# Tier matching
# ═══════════════════════════════════════════════

class TestTierForInfluence:
    def test_levels(self):
        tiers = default_tiers()
        assert tier_for_influence("VERY_HIGH", tiers).name == "Very High"
        assert tier_for_influence("high", tiers).name == "High"
        assert tier_for_influence("LOW", tiers).name == "Low"

    def test_unknown(self):
        assert tier_for_influence("CRITICAL", default_tiers()) is None
        assert tier_for_influence(None, default_tiers()) is None


# ═══════════════════════════════════════════════
# Last meeting fallback chain
# ═══════════════════════════════════════════════

class TestFindLastMeeting:
    def test_latest_completed_linked_briefing(self):
        briefings = [
            _briefing("old", days_ago=40, analyst_ids={"a-1"}),
            _briefing("new", days_ago=5, analyst_ids={"a-1"}),
            _briefing("other", days_ago=1, analyst_ids={"a-2"}),
        ]
        when, briefing_id = find_last_meeting(ANALYST, briefings, [], NOW)
        assert briefing_id == "new"
        assert when == NOW - timedelta(days=5)

    def test_linked_briefing_any_status(self):
        briefings = [_briefing("b", days_ago=8, status="CANCELLED", analyst_ids={"a-1"}, completed=False)]
        assert find_last_meeting(ANALYST, briefings, [], NOW) == (NOW - timedelta(days=8), "b")

    def test_future_linked_briefing_ignored(self):
        briefings = [_briefing("b", days_ago=-3, status="SCHEDULED", analyst_ids={"a-1"}, completed=False)]
        assert find_last_meeting(ANALYST, briefings, [], NOW) == (None, None)

    def test_attendee_email(self):
        briefings = [_briefing("b", days_ago=12, emails={"jane.doe@gartner.com"})]
        assert find_last_meeting(ANALYST, briefings, [], NOW)[1] == "b"

    def test_completed_by_attendee_email_beats_linked_past(self):
        briefings = [
            _briefing("linked", days_ago=40, status="SCHEDULED", analyst_ids={"a-1"}, completed=False),
            _briefing("by-email", days_ago=5, emails={"jane.doe@gartner.com"}),
        ]
        assert find_last_meeting(ANALYST, briefings, [], NOW) == (NOW - timedelta(days=5), "by-email")

    def test_linked_completed_beats_completed_by_email(self):
        briefings = [
            _briefing("linked", days_ago=20, analyst_ids={"a-1"}),
            _briefing("by-email", days_ago=5, emails={"jane.doe@gartner.com"}),
        ]
        assert find_last_meeting(ANALYST, briefings, [], NOW)[1] == "linked"

    def test_name_in_title(self):
        briefings = [_briefing("b", days_ago=12, title="Catch-up with Jane Doe")]
        assert find_last_meeting(ANALYST, briefings, [], NOW)[1] == "b"

    def test_calendar_meeting_attendee(self):
        meeting = _meeting(days_ago=5, attendees={"jane.doe@gartner.com"})
        when, briefing_id = find_last_meeting(ANALYST, [], [meeting], NOW)
        assert when == meeting.end_time
        assert briefing_id is None

    def test_calendar_meeting_linked(self):
        meeting = _meeting(days_ago=6, analyst_id="a-1", is_analyst_meeting=True)
        assert find_last_meeting(ANALYST, [], [meeting], NOW)[0] == meeting.end_time

    def test_never_met(self):
        assert find_last_meeting(ANALYST, [_briefing(title="Other")], [_meeting()], NOW) == (None, None)


class TestFindNextBriefing:
    def test_linked_upcoming(self):
        upcoming = _briefing("next", days_ago=-7, status="SCHEDULED", analyst_ids={"a-1"}, completed=False)
        assert find_next_briefing(ANALYST, [upcoming], NOW) is upcoming

    def test_cancelled_upcoming_ignored(self):
        upcoming = _briefing("next", days_ago=-7, status="CANCELLED", analyst_ids={"a-1"}, completed=False)
        assert find_next_briefing(ANALYST, [upcoming], NOW) is None

    def test_by_attendee_email(self):
        upcoming = _briefing("next", days_ago=-2, status="RESCHEDULED", emails={"jane.doe@gartner.com"}, completed=False)
        assert find_next_briefing(ANALYST, [upcoming], NOW) is upcoming


# ═══════════════════════════════════════════════
# evaluate_analyst
# ═══════════════════════════════════════════════

class TestEvaluateAnalyst:
    def test_never_met_is_due(self):
        entry = evaluate_analyst(ANALYST, default_tiers(), [], [], NOW)
        assert entry["needs_briefing"] is True
        assert entry["days_since_last_briefing"] is None
        assert entry["overdue_days"] is None
        assert entry["last_briefing"] is None
        assert entry["tier"] == {"name": "High", "briefing_frequency": 60, "normalized": "HIGH"}

    def test_recent_briefing_not_due(self):
        briefings = [_briefing(days_ago=45, analyst_ids={"a-1"})]
        assert evaluate_analyst(ANALYST, default_tiers(), briefings, [], NOW) is None

    def test_overdue(self):
        briefings = [_briefing("b", days_ago=70, analyst_ids={"a-1"})]
        entry = evaluate_analyst(ANALYST, default_tiers(), briefings, [], NOW)
        assert entry["days_since_last_briefing"] == 70
        assert entry["overdue_days"] == 10
        assert entry["last_briefing"]["id"] == "b"

    def test_exactly_at_frequency_is_due(self):
        briefings = [_briefing(days_ago=60, analyst_ids={"a-1"})]
        assert evaluate_analyst(ANALYST, default_tiers(), briefings, [], NOW)["overdue_days"] == 0

    def test_upcoming_briefing_suppresses(self):
        briefings = [
            _briefing(days_ago=200, analyst_ids={"a-1"}),
            _briefing("next", days_ago=-5, status="SCHEDULED", analyst_ids={"a-1"}, completed=False),
        ]
        assert evaluate_analyst(ANALYST, default_tiers(), briefings, [], NOW) is None

    def test_never_tier(self):
        low = make_analyst(id="a-2", influence="LOW")
        assert evaluate_analyst(low, default_tiers(), [], [], NOW) is None

    def test_inactive_or_missing_tier(self):
        assert evaluate_analyst(ANALYST, [make_tier(name="High", briefing_frequency=60, is_active=False)], [], [], NOW) is None
        assert evaluate_analyst(ANALYST, [], [], [], NOW) is None


# ═══════════════════════════════════════════════
# Ordering, filters, counts
# ═══════════════════════════════════════════════

def _entry(name, level, days_since=None, overdue=None, company="Gartner"):
    return {
        "first_name": name,
        "last_name": "Analyst",
        "email": f"{name.lower()}@example.com",
        "company": company,
        "tier": {"normalized": level},
        "needs_briefing": True,
        "days_since_last_briefing": days_since,
        "overdue_days": overdue,
    }


class TestOrderingAndFilters:
    ENTRIES = [
        _entry("Ann", "HIGH", 70, 10),
        _entry("Bob", "VERY_HIGH"),
        _entry("Cid", "MEDIUM", 150, 60, company="Forrester"),
    ]

    def test_never_met_first_then_most_overdue(self):
        ordered = sorted(self.ENTRIES, key=_sort_key, reverse=True)
        assert [e["first_name"] for e in ordered] == ["Bob", "Cid", "Ann"]

    def test_counts(self):
        assert counts_by_tier(self.ENTRIES) == {"VERY_HIGH": 1, "HIGH": 1, "MEDIUM": 1, "LOW": 0}

    def test_tier_filter(self):
        assert [e["first_name"] for e in filter_due(self.ENTRIES, tier="TIER_2")] == ["Ann"]
        assert len(filter_due(self.ENTRIES, tier="ALL")) == 3
        assert len(filter_due(self.ENTRIES, tier="bogus")) == 3

    def test_search(self):
        assert [e["first_name"] for e in filter_due(self.ENTRIES, search="forrester")] == ["Cid"]
        assert [e["first_name"] for e in filter_due(self.ENTRIES, search="bob@")] == ["Bob"]


# ═══════════════════════════════════════════════
# DB computation + cache
# ═══════════════════════════════════════════════

class TestComputeDueAnalysts:
    async def _seed(self, db_session):
        db_session.add_all(default_tiers())
        recent = make_analyst()  # HIGH, met 30 days ago
        vip = make_analyst(first_name="Vera", last_name="Stone", email="vera@idc.com", influence="VERY_HIGH")
        medium = make_analyst(first_name="Mark", last_name="Lee", email="mark@forrester.com", influence="MEDIUM")
        low = make_analyst(first_name="Lou", last_name="Park", email="lou@example.com", influence="LOW")
        archived = make_analyst(first_name="Ari", last_name="Gold", email="ari@example.com", status="ARCHIVED")
        db_session.add_all([recent, vip, medium, low, archived])
        await db_session.commit()

        db_session.add_all([
            make_briefing([recent]),
            make_briefing([medium], scheduled_at=NOW - timedelta(days=120), completed_at=NOW - timedelta(days=120)),
        ])
        await db_session.commit()

    @pytest.mark.asyncio
    async def test_due_list(self, db_session):
        await self._seed(db_session)
        entries = await compute_due_analysts(db_session, NOW)
        assert [e["first_name"] for e in entries] == ["Vera", "Mark"]
        assert entries[1]["overdue_days"] == 30

    @pytest.mark.asyncio
    async def test_completed_briefing_matched_by_email_counts(self, db_session):
        db_session.add_all(default_tiers())
        vip = make_analyst(first_name="Vera", last_name="Stone", email="vera@idc.com", influence="VERY_HIGH")
        db_session.add(vip)
        await db_session.commit()
        db_session.add_all([
            make_briefing([vip], status="SCHEDULED", scheduled_at=NOW - timedelta(days=40), completed_at=None),
            make_briefing(title="IDC catch-up", scheduled_at=NOW - timedelta(days=5),
                          completed_at=NOW - timedelta(days=5), attendee_emails=["Vera@IDC.com"]),
        ])
        await db_session.commit()

        assert await compute_due_analysts(db_session, NOW) == []

    @pytest.mark.asyncio
    async def test_cache(self, db_session):
        await self._seed(db_session)
        cache = BriefingsDueCache(ttl_seconds=300)

        result, cached = await cache.get(db_session, now=NOW)
        assert cached is False
        assert result["counts"]["VERY_HIGH"] == 1
        assert cache.updated_at is not None

        _, cached = await cache.get(db_session, now=NOW)
        assert cached is True

        _, cached = await cache.get(db_session, force=True, now=NOW)
        assert cached is False

        cache.invalidate()
        assert cache.updated_at is None
        _, cached = await cache.get(db_session, now=NOW)
        assert cached is False
