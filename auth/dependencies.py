"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Two independent credentials, two authenticators:

  Session (browser):  "session" cookie holding a signed JWT {user_id, iat}.
      resolve_session_user()  -- optional mode: User or ANONYMOUS, never raises.
      require_session_user()  -- required mode: raises LoginRequired, which the
                                 app turns into a redirect to /login?next=...

  Bearer (programs):  "Authorization: Bearer <api token>".
      authenticate_bearer()   -- pure check against a store, raises BearerAuthError.
      require_bearer_user()   -- dependency wrapper around it.

  get_api_user() serves /api/users/me*: bearer when an Authorization header is
  present, otherwise the session cookie (the settings page calls these
  endpoints from the browser; the CSRF guard covers that path).

The resolved user is returned to the handler through Depends() and also
recorded on request.state.user for anything further down the chain. Nothing
is kept between requests; each call re-reads the user row.

Layer rule: no imports from api/, web/, jobs/, ratelimit/ or client/.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta

from fastapi import Request

from auth.errors import (
    INVALID_FORMAT,
    INVALID_TOKEN,
    MISSING_HEADER,
    TOKEN_EXPIRED,
    BearerAuthError,
    LoginRequired,
)
from auth.models import ANONYMOUS, AnonymousUser, User
from auth.store import UserStore, from_iso, utcnow
from auth.tokens import SESSION_COOKIE, decode_session_token
from core.config import get_settings

logger = logging.getLogger("infst.auth")

_BEARER_RE = re.compile(r"^Bearer\s+(\S+)\s*$")


# ---------------------------------------------------------------------------
# Session authenticator
# ---------------------------------------------------------------------------


def _session_user(request: Request) -> User | None:
    token = request.cookies.get(SESSION_COOKIE)
    if not token:
        return None
    payload = decode_session_token(token)
    if payload is None:
        return None
    store: UserStore = request.app.state.user_store
    return store.get_by_id(payload["user_id"])


def resolve_session_user(request: Request) -> User | AnonymousUser:
    """Optional session: the signed-in User, or ANONYMOUS for guests.

    Missing cookie, bad signature, expired token and unknown user id all
    collapse to ANONYMOUS. Store errors are not swallowed.
    """
    user = _session_user(request)
    request.state.user = user or ANONYMOUS
    return request.state.user


def require_session_user(request: Request) -> User:
    """Required session. Raises LoginRequired on any failure.

    Use as a FastAPI dependency:
        @router.get("/settings")
        def page(user: User = Depends(require_session_user)): ...
    """
    user = _session_user(request)
    if user is None:
        # The post-login redirect is a GET, so only a GET can be replayed.
        if request.method != "GET":
            raise LoginRequired("/")
        next_path = request.url.path
        if request.url.query:
            next_path = f"{next_path}?{request.url.query}"
        raise LoginRequired(next_path)
    request.state.user = user
    return user


# ---------------------------------------------------------------------------
# Bearer authenticator
# ---------------------------------------------------------------------------


def token_expired(user: User, now: datetime | None = None, expiry_days: int | None = None) -> bool:
    """True if the user's bearer token is past its age limit (or has no issuance time)."""
    if not user.api_token_created_at:
        return True
    if expiry_days is None:
        expiry_days = get_settings().api_token_expiry_days
    try:
        issued = from_iso(user.api_token_created_at)
    except ValueError:
        return True
    return (now or utcnow()) - issued > timedelta(days=expiry_days)


def authenticate_bearer(
    store: UserStore,
    authorization: str | None,
    now: datetime | None = None,
    expiry_days: int | None = None,
) -> User:
    """Resolve an Authorization header value to a User or raise BearerAuthError.

    A token that still matches but is older than the expiry window is
    rejected as token_expired, so rotation can be forced by policy alone
    without touching the stored value.
    """
    if not authorization:
        raise BearerAuthError(MISSING_HEADER)
    match = _BEARER_RE.match(authorization)
    if match is None:
        raise BearerAuthError(INVALID_FORMAT)
    user = store.get_by_api_token(match.group(1))
    if user is None:
        raise BearerAuthError(INVALID_TOKEN)
    if token_expired(user, now=now, expiry_days=expiry_days):
        raise BearerAuthError(TOKEN_EXPIRED)
    return user


def require_bearer_user(request: Request) -> User:
    store: UserStore = request.app.state.user_store
    user = authenticate_bearer(store, request.headers.get("Authorization"))
    request.state.user = user
    return user


def get_api_user(request: Request) -> User:
    """Bearer token if one is presented, otherwise the browser session.

    Without either, the rejection is the bearer one (missing_header), since
    these are API endpoints.
    """
    if request.headers.get("Authorization"):
        return require_bearer_user(request)
    user = _session_user(request)
    if user is None:
        raise BearerAuthError(MISSING_HEADER)
    request.state.user = user
    return user
