"""
Google Calendar integration — OAuth consent flow and a thin Calendar API client.

OAuth:
  - ``build_authorization_url`` / ``exchange_code`` use google-auth-oauthlib's
    ``Flow`` (the token exchange is blocking, so it runs in a worker thread).
  - ``refresh_access_token`` hits the token endpoint directly with httpx.

API:
  - ``GoogleCalendarClient`` wraps ``httpx.AsyncClient`` for userinfo, the
    primary calendar summary, and paginated event listing.
"""

import asyncio
import base64
import json
import logging
import os
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx
from google_auth_oauthlib.flow import Flow

import config
from utils import as_utc

logger = logging.getLogger(__name__)

# Google may hand back the scopes in a different order / with openid added
os.environ.setdefault("OAUTHLIB_RELAX_TOKEN_SCOPE", "1")

SCOPES = [
    "https://www.googleapis.com/auth/calendar.readonly",
    "https://www.googleapis.com/auth/userinfo.email",
    "https://www.googleapis.com/auth/userinfo.profile",
    "openid",
]

AUTH_URI = "https://accounts.google.com/o/oauth2/auth"
TOKEN_URI = "https://oauth2.googleapis.com/token"
USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
CALENDAR_API = "https://www.googleapis.com/calendar/v3"

EVENTS_PAGE_SIZE = 2500
MAX_EVENT_PAGES = 40


class GoogleCalendarError(Exception):
    """Google OAuth / Calendar API call failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass
class TokenBundle:
    access_token: str
    refresh_token: Optional[str] = None
    expiry: Optional[datetime] = None  # aware UTC


# ──────────────────────────────────────────────
# OAuth state
# ──────────────────────────────────────────────

def encode_state(user_id: str) -> str:
    payload = json.dumps({"userId": user_id, "timestamp": int(time.time() * 1000)})
    return base64.urlsafe_b64encode(payload.encode()).decode()


def decode_state(state: str) -> dict:
    """Decode the OAuth ``state`` param.  Raises ``ValueError`` if it's garbage."""
    try:
        padded = state + "=" * (-len(state) % 4)
        data = json.loads(base64.urlsafe_b64decode(padded.encode()).decode())
    except (ValueError, UnicodeDecodeError) as e:
        raise ValueError("Invalid OAuth state") from e
    if not isinstance(data, dict) or not data.get("userId"):
        raise ValueError("Invalid OAuth state")
    return data


# ──────────────────────────────────────────────
# OAuth flow
# ──────────────────────────────────────────────

def is_configured() -> bool:
    return bool(config.GOOGLE_CLIENT_ID and config.GOOGLE_CLIENT_SECRET)


def _client_config() -> dict:
    return {
        "web": {
            "client_id": config.GOOGLE_CLIENT_ID,
            "client_secret": config.GOOGLE_CLIENT_SECRET,
            "auth_uri": AUTH_URI,
            "token_uri": TOKEN_URI,
            "redirect_uris": [config.GOOGLE_REDIRECT_URI],
        }
    }


def build_flow(state: Optional[str] = None) -> Flow:
    # No PKCE: the verifier would not survive between the redirect and the callback
    return Flow.from_client_config(
        _client_config(),
        scopes=SCOPES,
        redirect_uri=config.GOOGLE_REDIRECT_URI,
        state=state,
        autogenerate_code_verifier=False,
    )


def build_authorization_url(user_id: str) -> str:
    """Consent-screen URL asking for offline access (so we get a refresh token)."""
    if not is_configured():
        raise GoogleCalendarError("Google Calendar OAuth is not configured", status_code=500)
    flow = build_flow(state=encode_state(user_id))
    url, _state = flow.authorization_url(
        access_type="offline",
        prompt="consent",
        include_granted_scopes="true",
    )
    return url


async def exchange_code(code: str) -> TokenBundle:
    """Trade the callback ``code`` for tokens."""
    flow = build_flow()
    try:
        await asyncio.to_thread(flow.fetch_token, code=code)
    except Exception as e:
        logger.error("OAuth code exchange failed: %s", e, exc_info=True)
        raise GoogleCalendarError("Failed to exchange authorization code") from e

    creds = flow.credentials
    if not creds.token:
        raise GoogleCalendarError("No access token received from Google")
    return TokenBundle(
        access_token=creds.token,
        refresh_token=creds.refresh_token,
        expiry=as_utc(creds.expiry),
    )


async def refresh_access_token(refresh_token: str) -> TokenBundle:
    """Use a stored refresh token to mint a new access token."""
    async with httpx.AsyncClient(timeout=config.REQUEST_TIMEOUT) as client:
        resp = await client.post(
            TOKEN_URI,
            data={
                "client_id": config.GOOGLE_CLIENT_ID,
                "client_secret": config.GOOGLE_CLIENT_SECRET,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            },
        )
    if resp.status_code != 200:
        logger.warning("Token refresh failed: HTTP %s", resp.status_code)
        raise GoogleCalendarError("Failed to refresh Google access token", status_code=resp.status_code)

    data = resp.json()
    expires_in = int(data.get("expires_in") or 3600)
    return TokenBundle(
        access_token=data["access_token"],
        # Google only re-issues a refresh token occasionally; keep the old one otherwise
        refresh_token=data.get("refresh_token") or refresh_token,
        expiry=datetime.now(timezone.utc) + timedelta(seconds=expires_in),
    )


# ──────────────────────────────────────────────
# Calendar API client
# ──────────────────────────────────────────────

class GoogleCalendarClient:
    """Minimal async Calendar v3 client.

    Usage:
        async with GoogleCalendarClient(token) as gcal:
            events = await gcal.list_events(time_min, time_max)
    """

    def __init__(self, access_token: str, timeout: float = config.REQUEST_TIMEOUT):
        self.access_token = access_token
        self.timeout = timeout
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self):
        self._client = httpx.AsyncClient(
            timeout=self.timeout,
            headers={"Authorization": f"Bearer {self.access_token}"},
        )
        await self._client.__aenter__()
        return self

    async def __aexit__(self, *exc):
        if self._client is not None:
            await self._client.__aexit__(*exc)
            self._client = None
        return False

    async def _get(self, url: str, params: Optional[dict] = None) -> dict:
        if self._client is None:
            raise RuntimeError("GoogleCalendarClient used outside 'async with'")
        resp = await self._client.get(url, params=params)
        if resp.status_code == 401:
            raise GoogleCalendarError("Google access token was rejected", status_code=401)
        if resp.status_code != 200:
            raise GoogleCalendarError(
                f"Google Calendar API error (HTTP {resp.status_code})", status_code=resp.status_code
            )
        return resp.json()

    async def get_userinfo(self) -> dict:
        """``{id, email, name, ...}`` of the consenting Google account."""
        return await self._get(USERINFO_URL)

    async def get_calendar_summary(self, calendar_id: str = "primary") -> Optional[str]:
        data = await self._get(f"{CALENDAR_API}/calendars/{calendar_id}")
        return data.get("summary")

    async def list_events(
        self,
        time_min: datetime,
        time_max: datetime,
        calendar_id: str = "primary",
    ) -> list[dict]:
        """All single (expanded) events in the window, ordered by start time."""
        events: list[dict] = []
        page_token: Optional[str] = None
        for _ in range(MAX_EVENT_PAGES):
            params = {
                "timeMin": as_utc(time_min).isoformat(),
                "timeMax": as_utc(time_max).isoformat(),
                "maxResults": EVENTS_PAGE_SIZE,
                "singleEvents": "true",
                "orderBy": "startTime",
            }
            if page_token:
                params["pageToken"] = page_token
            data = await self._get(f"{CALENDAR_API}/calendars/{calendar_id}/events", params=params)
            events.extend(data.get("items") or [])
            page_token = data.get("nextPageToken")
            if not page_token:
                break
        else:
            logger.warning("Stopped paging calendar events after %d pages", MAX_EVENT_PAGES)
        return events
