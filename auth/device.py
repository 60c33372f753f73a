"""
auth/device.py -- Device authorization flow (OAuth device-grant style).

Three operations, each a plain function over a UserStore:

  request_device_code()  -- unattended client asks for a (device_code, user_code) pair
  confirm_device_code()  -- signed-in human types the user_code into the browser
  poll_device_code()     -- unattended client polls with its device_code

State is never stored as a status column. device_status() derives it from
the record on every read:

  PENDING   api_token is NULL and now < expires_at
  APPROVED  api_token is set and now < expires_at
  EXPIRED   now >= expires_at (whatever the token says)

Confirmation is single-use. The transition to APPROVED is one conditional
UPDATE in the store (UserStore.approve_device_authorization), so two
simultaneous confirmations of the same code cannot both win, and a poll that
races a confirmation sees either the old or the new row, never half of it.

Layer rule: no imports from api/, web/, jobs/, ratelimit/ or client/.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from sqlalchemy.exc import IntegrityError

from auth.models import DeviceAuthorization, User
from auth.store import UserStore, from_iso, to_iso, utcnow
from auth.tokens import generate_api_token, generate_device_code

logger = logging.getLogger("infst.device")

# No 0/O, 1/I: users retype these from a terminal.
USER_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
USER_CODE_LENGTH = 8
_MAX_CODE_ATTEMPTS = 5


class DeviceStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    EXPIRED = "expired"


class ConfirmResult(str, Enum):
    APPROVED = "approved"
    MISSING = "missing"
    INVALID = "invalid"
    EXPIRED = "expired"
    ALREADY_USED = "already_used"


class PollStatus(str, Enum):
    APPROVED = "approved"
    PENDING = "pending"
    INVALID = "invalid_device_code"
    EXPIRED = "expired_token"


@dataclass(frozen=True)
class DeviceCodeGrant:
    device_code: str
    user_code: str
    expires_in: int
    interval: int
    verification_url: str


@dataclass(frozen=True)
class PollResult:
    status: PollStatus
    token: str | None = None


# ---------------------------------------------------------------------------
# User codes
# ---------------------------------------------------------------------------


def generate_user_code() -> str:
    """Return a fresh code like "K7QF-M2XD"."""
    raw = "".join(secrets.choice(USER_CODE_ALPHABET) for _ in range(USER_CODE_LENGTH))
    return f"{raw[:4]}-{raw[4:]}"


def normalize_user_code(value: str) -> str:
    """Canonical stored form of a typed user code.

    Drops everything that is not a letter or digit and upper-cases the rest,
    so "ab12cd34", "AB12-CD34" and " ab12 - cd34 " compare equal. Eight
    characters get their hyphen back; anything else is returned as-is and
    simply will not match.
    """
    cleaned = "".join(ch for ch in value if ch.isalnum()).upper()
    if len(cleaned) == USER_CODE_LENGTH:
        return f"{cleaned[:4]}-{cleaned[4:]}"
    return cleaned


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------


def device_status(record: DeviceAuthorization, now: datetime | None = None) -> DeviceStatus:
    if (now or utcnow()) >= from_iso(record.expires_at):
        return DeviceStatus.EXPIRED
    if record.api_token is not None:
        return DeviceStatus.APPROVED
    return DeviceStatus.PENDING


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


def request_device_code(
    store: UserStore,
    verification_url: str,
    ttl_seconds: int,
    interval: int,
    now: datetime | None = None,
) -> DeviceCodeGrant:
    """Create a pending record and return what the client needs to proceed.

    A collision on either unique code is retried with a fresh pair; after
    _MAX_CODE_ATTEMPTS the IntegrityError propagates.
    """
    now = now or utcnow()
    expires_at = to_iso(now + timedelta(seconds=ttl_seconds))
    attempt = 0
    while True:
        attempt += 1
        record = DeviceAuthorization(
            device_code=generate_device_code(),
            user_code=generate_user_code(),
            expires_at=expires_at,
        )
        try:
            store.create_device_authorization(record, now=now)
            break
        except IntegrityError:
            if attempt >= _MAX_CODE_ATTEMPTS:
                raise
            logger.warning("Device code collision, retrying (attempt %d)", attempt)

    logger.info("Issued device code (user_code=%s, expires_at=%s)", record.user_code, expires_at)
    return DeviceCodeGrant(
        device_code=record.device_code,
        user_code=record.user_code,
        expires_in=ttl_seconds,
        interval=interval,
        verification_url=verification_url,
    )


def confirm_device_code(
    store: UserStore,
    user: User,
    user_code: str | None,
    now: datetime | None = None,
) -> ConfirmResult:
    """Approve a pending record on behalf of a signed-in user.

    Checks, in order: code given -> record exists -> not expired -> not
    already approved. Only then does it make sure the user has a bearer token
    (creating one if they have none) and copy it into the record. No check
    failure mutates anything.
    """
    if not user_code or not user_code.strip():
        return ConfirmResult.MISSING
    code = normalize_user_code(user_code)
    now = now or utcnow()

    record = store.get_device_by_user_code(code)
    if record is None:
        return ConfirmResult.INVALID
    status = device_status(record, now)
    if status is DeviceStatus.EXPIRED:
        return ConfirmResult.EXPIRED
    if status is DeviceStatus.APPROVED:
        return ConfirmResult.ALREADY_USED

    token = user.api_token
    if not token:
        token = store.ensure_api_token(user.id, generate_api_token(), now=now)
        if token is None:
            raise LookupError(f"user {user.id} no longer exists")

    if store.approve_device_authorization(code, user.id, token, now):
        logger.info("Device authorized (user_id=%s, user_code=%s)", user.id, code)
        return ConfirmResult.APPROVED

    # Lost a race between the read above and the conditional write.
    record = store.get_device_by_user_code(code)
    if record is None:
        return ConfirmResult.INVALID
    if device_status(record, now) is DeviceStatus.APPROVED:
        return ConfirmResult.ALREADY_USED
    return ConfirmResult.EXPIRED


def poll_device_code(store: UserStore, device_code: str, now: datetime | None = None) -> PollResult:
    """Report the outcome for a device code.

    Read-only: an approved record stays in place, so a client that polls
    again after success gets the same token back.
    """
    record = store.get_device_by_code(device_code)
    if record is None:
        return PollResult(PollStatus.INVALID)
    status = device_status(record, now)
    if status is DeviceStatus.EXPIRED:
        return PollResult(PollStatus.EXPIRED)
    if status is DeviceStatus.APPROVED:
        return PollResult(PollStatus.APPROVED, token=record.api_token)
    return PollResult(PollStatus.PENDING)
