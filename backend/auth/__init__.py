"""
Auth — FastAPI dependencies backed by Supabase session tokens.

The browser sends its Supabase access token as ``Authorization: Bearer``.
Tokens are verified against the project's JWKS endpoint (RS256 / ES256);
projects still on a shared secret fall back to HS256 via
``SUPABASE_JWT_SECRET``.

Dependencies:
  - ``get_current_user``: the signed-in user, or ``None``
  - ``require_auth``: the signed-in user, else 401
  - ``require_auth_or_internal``: also admits scheduled jobs that send
    ``x-internal-job: <INTERNAL_JOB_SECRET>``
"""

import hmac
import logging
from typing import Callable, Optional

import jwt
from fastapi import Depends, Header, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jwt import PyJWKClient
from pydantic import BaseModel

import config

logger = logging.getLogger(__name__)

SUPABASE_AUDIENCE = "authenticated"
INTERNAL_USER_ID = "internal-job"

bearer_scheme = HTTPBearer(auto_error=False)

_jwks_client: Optional[PyJWKClient] = None


class AuthUser(BaseModel):
    """Caller identity attached to a request."""
    id: str
    email: Optional[str] = None
    role: Optional[str] = None
    is_internal: bool = False


def _jwks() -> PyJWKClient:
    global _jwks_client
    if _jwks_client is None:
        url = f"{config.SUPABASE_URL}/auth/v1/.well-known/jwks.json"
        _jwks_client = PyJWKClient(url, cache_jwk_set=True, lifespan=config.JWKS_CACHE_SECONDS)
    return _jwks_client


def _verify_with_jwks(token: str) -> dict:
    key = _jwks().get_signing_key_from_jwt(token).key
    return jwt.decode(token, key, algorithms=["RS256", "ES256"], audience=SUPABASE_AUDIENCE)


def _verify_with_secret(token: str) -> dict:
    if not config.SUPABASE_JWT_SECRET:
        raise jwt.InvalidTokenError("No HS256 secret configured")
    return jwt.decode(token, config.SUPABASE_JWT_SECRET, algorithms=["HS256"], audience=SUPABASE_AUDIENCE)


_VERIFIERS: tuple[Callable[[str], dict], ...] = (_verify_with_jwks, _verify_with_secret)


def decode_token(token: str) -> Optional[dict]:
    """Claims of a valid Supabase access token, or ``None``."""
    for verify in _VERIFIERS:
        try:
            return verify(token)
        except (jwt.PyJWKClientError, jwt.InvalidTokenError) as e:
            logger.debug("%s rejected token: %s", verify.__name__, e)
    return None


def user_from_claims(claims: dict) -> Optional[AuthUser]:
    subject = claims.get("sub")
    if not subject:
        return None
    return AuthUser(id=subject, email=claims.get("email"), role=claims.get("role"))


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Optional[AuthUser]:
    if credentials is None:
        return None
    claims = decode_token(credentials.credentials)
    return user_from_claims(claims) if claims else None


async def require_auth(user: Optional[AuthUser] = Depends(get_current_user)) -> AuthUser:
    if user is None:
        raise HTTPException(
            status_code=401,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user


def is_internal_job(header_value: Optional[str]) -> bool:
    """Constant-time check of the ``x-internal-job`` header."""
    secret = config.INTERNAL_JOB_SECRET
    if not secret or not header_value:
        return False
    return hmac.compare_digest(header_value.encode(), secret.encode())


async def require_auth_or_internal(
    x_internal_job: Optional[str] = Header(None),
    user: Optional[AuthUser] = Depends(get_current_user),
) -> AuthUser:
    if is_internal_job(x_internal_job):
        return AuthUser(id=INTERNAL_USER_ID, role="service_role", is_internal=True)
    return await require_auth(user)
