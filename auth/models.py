"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and services
do the work; these only own the shape.

Timestamps are ISO 8601 UTC strings, exactly as persisted by auth/store.py.

Layer rule: no imports from api/, web/, jobs/, ratelimit/ or client/.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class User:
    """An account: the identity and credential anchor.

    username is stored lowercase and stays None until chosen.

    api_token is the opaque bearer token handed to programmatic clients. It is
    stored verbatim because the settings page and the device flow both have
    to hand the same value back out. Whenever api_token is set,
    api_token_created_at is set too (the store writes both in one statement).
    """

    email: str
    password_hash: str
    id: int | None = None
    username: str | None = None
    api_token: str | None = None
    api_token_created_at: str | None = None
    is_public: bool = True
    created_at: str | None = None

    is_authenticated = True


@dataclass(frozen=True)
class AnonymousUser:
    """Explicit marker returned by the optional session check for guests."""

    is_authenticated = False


ANONYMOUS = AnonymousUser()


@dataclass
class DeviceAuthorization:
    """One device-linking attempt.

    There is deliberately no status field. Pending / approved / expired is
    derived from (api_token is None) and (now vs expires_at) -- see
    auth.device.device_status().
    """

    device_code: str
    user_code: str
    expires_at: str
    user_id: int | None = None
    api_token: str | None = None
    created_at: str | None = None
