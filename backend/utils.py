"""
Utility Functions

Helpers used across the API and background jobs:
  - as_utc(dt) / iso(dt): Normalise datetimes (SQLite hands back naive values)
  - parse_datetime(value): Accepts ISO strings, dates and datetimes
  - extract_domain(url): Cleans URLs to bare domain
  - email_domain(email): Domain part of an email address
  - format_time_ago(dt): "3 days ago" style relative text
  - add_months(dt, n): Calendar month arithmetic with day clamping
  - TTLCache: One expiring cached value (dashboard metrics, briefings due)
"""

import calendar
import time
import logging
from datetime import date, datetime, timezone
from typing import Optional

logger = logging.getLogger(__name__)


def as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes, convert aware ones to UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def iso(dt: Optional[datetime]) -> Optional[str]:
    """Serialize a DB datetime for JSON responses."""
    if dt is None:
        return None
    return as_utc(dt).isoformat()


def parse_datetime(value) -> Optional[datetime]:
    """Parse an ISO-8601 string / date / datetime into an aware UTC datetime.

    Raises ``ValueError`` for unparseable strings.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    text = str(value).strip()
    # fromisoformat() only learned the trailing "Z" in 3.11
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return as_utc(datetime.fromisoformat(text))


def extract_domain(url: str) -> str:
    """Extract clean domain from URL."""
    url = url.lower().strip()

    # Remove protocol
    for prefix in ['https://', 'http://', 'www.']:
        if url.startswith(prefix):
            url = url[len(prefix):]

    # Remove path, query and port
    url = url.split('/')[0].split('?')[0].split(':')[0]

    return url


def email_domain(email: Optional[str]) -> str:
    if not email or "@" not in email:
        return ""
    return email.rsplit("@", 1)[1].strip().lower()


def add_months(dt: datetime, months: int) -> datetime:
    """Shift *dt* by whole calendar months, clamping the day (Jan 31 + 1 → Feb 28/29)."""
    month_index = dt.month - 1 + months
    year = dt.year + month_index // 12
    month = month_index % 12 + 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


def format_time_ago(dt: Optional[datetime], now: Optional[datetime] = None) -> str:
    """Relative contact text used by the dashboard widgets."""
    if dt is None:
        return "Never"
    now = now or datetime.now(timezone.utc)
    days = (as_utc(now) - as_utc(dt)).days
    if days <= 0:
        return "Today"
    if days == 1:
        return "1 day ago"
    if days < 7:
        return f"{days} days ago"
    if days < 14:
        return "1 week ago"
    if days < 30:
        return f"{days // 7} weeks ago"
    if days < 60:
        return "1 month ago"
    return f"{days // 30} months ago"


class TTLCache:
    """Single cached value that expires ``ttl_seconds`` after it was set."""

    def __init__(self, ttl_seconds: float, clock=time.monotonic):
        self._ttl = ttl_seconds
        self._clock = clock
        self._value = None
        self._set_at: float = 0.0
        self.updated_at: Optional[datetime] = None

    def get(self):
        """Cached value, or None once expired."""
        if self._value is None:
            return None
        if (self._clock() - self._set_at) >= self._ttl:
            self.clear()
            return None
        return self._value

    def set(self, value) -> None:
        self._value = value
        self._set_at = self._clock()
        self.updated_at = datetime.now(timezone.utc)

    def clear(self) -> None:
        self._value = None
        self._set_at = 0.0
        self.updated_at = None
