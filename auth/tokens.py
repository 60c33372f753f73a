"""
auth/tokens.py -- Session JWTs, password hashing, and bearer token utilities.

Security design decisions:
  Session tokens: python-jose with HS256. The token carries only user_id and
       iat (plus exp, which jose enforces). It IS the session: nothing is
       stored server-side, so logout is a cookie clear and a stolen cookie
       stays valid until exp. Verification returns None on any failure --
       the dependency layer turns that into a login redirect or a guest.

  Passwords: bcrypt used directly. The _DUMMY_HASH constant enables timing
       equalization in authenticate_user() so response time does not reveal
       whether an email is registered.

  Bearer tokens: secrets.token_hex(32), 256 bits of entropy. Stored verbatim
       because the settings page shows it and the device flow copies it to
       the linked client. Age is policed separately (auth.dependencies).

  Device codes: secrets.token_urlsafe(32). Only the unattended client ever
       sees one.

Layer rule: no imports from api/, web/, jobs/, ratelimit/ or client/. Import
from core/ is allowed.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import bcrypt
from jose import JWTError, jwt

from core.config import get_settings

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import UserStore

logger = logging.getLogger("infst.auth")

_settings = get_settings()

_ALGORITHM = "HS256"

SESSION_COOKIE = "session"

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt only looks at the first 72 bytes; registration rejects longer
    passwords before they get here.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


# Computed once at module load so the first failed login is not measurably
# faster than later ones.
_DUMMY_HASH: str = hash_password("infst_timing_dummy")


# ---------------------------------------------------------------------------
# Session JWT encode / decode
# ---------------------------------------------------------------------------


def create_session_token(user_id: int, now: datetime | None = None) -> str:
    """Sign a session token embedding {user_id, iat}.

    exp is iat + session_max_age_seconds, the same value used for the cookie
    Max-Age, so the browser drops the cookie when the signature stops
    verifying.
    """
    issued = now or datetime.now(timezone.utc)
    payload = {
        "user_id": user_id,
        "iat": int(issued.timestamp()),
        "exp": issued + timedelta(seconds=_settings.session_max_age_seconds),
    }
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def decode_session_token(token: str) -> dict | None:
    """Verify a session token. Returns the payload dict or None on any failure.

    Beyond the signature and exp, the payload must carry an integer user_id
    and a numeric iat; anything else is treated as forged or stale.
    """
    try:
        payload = jwt.decode(token, _settings.secret_key, algorithms=[_ALGORITHM])
    except JWTError:
        return None
    user_id = payload.get("user_id")
    if not isinstance(user_id, int) or isinstance(user_id, bool):
        return None
    if not isinstance(payload.get("iat"), (int, float)):
        return None
    return payload


# ---------------------------------------------------------------------------
# User authentication (constant-time)
# ---------------------------------------------------------------------------


def authenticate_user(store: UserStore, email: str, password: str) -> User | None:
    """Authenticate an email/password login with timing equalization.

    Always runs bcrypt whether or not the user exists:
    - Unknown email: bcrypt runs against _DUMMY_HASH (same cost as real check)
    - Wrong password: bcrypt runs against the real hash

    Returns the User on success, None on any failure.
    """
    user = store.get_by_email(email)
    if user is None:
        verify_password(password, _DUMMY_HASH)
        return None
    if not verify_password(password, user.password_hash):
        return None
    return user


# ---------------------------------------------------------------------------
# Opaque credentials
# ---------------------------------------------------------------------------


def generate_api_token() -> str:
    """Generate a bearer token: 64 hex chars, 256 bits of entropy."""
    return secrets.token_hex(32)


def generate_device_code() -> str:
    return secrets.token_urlsafe(32)


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_session_cookie(response, token: str) -> None:
    """Write the session token as a cookie on the response.

    httponly: no script access.
    secure: HTTPS only (SECURE_COOKIES, on by default).
    samesite="lax": not sent on cross-site POSTs.
    path="/": the whole application.
    max_age: matches the token's exp.
    """
    response.set_cookie(
        SESSION_COOKIE,
        value=token,
        max_age=_settings.session_max_age_seconds,
        path="/",
        secure=_settings.secure_cookies,
        httponly=True,
        samesite="lax",
    )


def clear_session_cookie(response) -> None:
    response.delete_cookie(
        SESSION_COOKIE,
        path="/",
        secure=_settings.secure_cookies,
        httponly=True,
        samesite="lax",
    )
