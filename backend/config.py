"""
Configuration & Constants for the Analyst Relations backend

Everything configurable lives here:
  - API keys and OAuth client credentials
  - Calendar sync windows and lock timeout
  - Publication discovery thresholds and known publisher domains
  - Cache lifetimes for the dashboard endpoints

The database URL is read directly by ``db``.
"""

from datetime import datetime, timezone
from pathlib import Path
import os
from dotenv import load_dotenv

load_dotenv()

# ===========================================
# Paths
# ===========================================
BASE_DIR = Path(__file__).parent

# ===========================================
# API Keys
# ===========================================
def _get_valid_key(key_name: str) -> str:
    """Get API key, returning empty string if it's a placeholder."""
    key = os.getenv(key_name, "")
    # Filter out placeholder values
    if not key or "your" in key.lower() or key.startswith("sk-your"):
        return ""
    return key

OPENAI_API_KEY = _get_valid_key("OPENAI_API_KEY")
TEXT_MODEL = os.getenv("TEXT_MODEL", "gpt-4o-mini")

# Our company, as named in generated social replies
COMPANY_NAME = os.getenv("COMPANY_NAME", "ClearCompany")

# ===========================================
# Supabase Auth
# ===========================================
SUPABASE_URL = os.getenv("SUPABASE_URL", "http://localhost:54321").rstrip("/")
SUPABASE_JWT_SECRET = os.getenv("SUPABASE_JWT_SECRET", "")  # HS256 fallback
JWKS_CACHE_SECONDS = 600

# Shared secret for scheduled jobs calling back into the API
INTERNAL_JOB_SECRET = os.getenv("INTERNAL_JOB_SECRET", "")

# AES-256-GCM key material for stored OAuth tokens
ENCRYPTION_SECRET = os.getenv("ENCRYPTION_SECRET", "")

# ===========================================
# Google Calendar OAuth
# ===========================================
GOOGLE_CLIENT_ID = _get_valid_key("GOOGLE_CLIENT_ID")
GOOGLE_CLIENT_SECRET = _get_valid_key("GOOGLE_CLIENT_SECRET")
APP_URL = os.getenv("APP_URL", "http://localhost:3000").rstrip("/")
GOOGLE_REDIRECT_URI = os.getenv(
    "GOOGLE_REDIRECT_URI",
    "http://localhost:8000/api/auth/google-calendar/callback",
)

# ===========================================
# Calendar Sync
# ===========================================
SYNC_LOCK_TIMEOUT_MINUTES = 30
SYNC_DEFAULT_START = datetime(2024, 1, 1, tzinfo=timezone.utc)
SYNC_LOOKAHEAD_MONTHS = 6
SSE_HEARTBEAT_SECONDS = 15
MATCHED_MEETING_CONFIDENCE = 0.8

# Background loops (hours, 0 disables)
AUTO_SYNC_INTERVAL_HOURS = int(os.getenv("AUTO_SYNC_INTERVAL_HOURS", "24"))
DISCOVERY_SCHEDULE_HOURS = int(os.getenv("DISCOVERY_SCHEDULE_HOURS", "0"))

# ===========================================
# Dashboard Caches (seconds)
# ===========================================
METRICS_CACHE_SECONDS = 300
BRIEFINGS_DUE_CACHE_SECONDS = 300
METRICS_WINDOW_DAYS = 90

# ===========================================
# Publication Discovery
# ===========================================
REQUEST_TIMEOUT = 20  # seconds
DISCOVERY_USER_AGENT = os.getenv(
    "DISCOVERY_USER_AGENT",
    "Mozilla/5.0 (compatible; AnalystRelationsBot/1.0)",
)
DISCOVERY_MIN_IMPACT = 70           # Impact score needed to auto-save
DISCOVERY_MIN_RELEVANCE = 60        # Below this a result is dropped
DISCOVERY_MAX_PAGES_PER_SOURCE = 6
DISCOVERY_MAX_SITEMAP_URLS = 15
DUPLICATE_SIMILARITY_THRESHOLD = 0.8
DUPLICATE_WINDOW_HOURS = 24

# Publisher domains for firms whose analysts don't publish from their email domain
KNOWN_PUBLISHER_DOMAINS: dict[str, list[str]] = {
    "aptitude research": ["aptituderesearch.com"],
    "bersin": ["joshbersin.com", "bersinpartners.com"],
    "josh bersin": ["joshbersin.com", "bersinpartners.com"],
    "larocque inc.": ["larocqueinc.com"],
    "apps run the world": ["appsruntheworld.com"],
    "3sixty insights": ["3sixtyinsights.com"],
    "redthread research": ["redthreadresearch.com"],
    "fosway group": ["fosway.com"],
    "sapient insights": ["sapientinsights.com"],
}
