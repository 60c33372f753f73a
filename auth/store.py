"""
auth/store.py -- Accounts and device authorizations, persisted with SQLAlchemy Core.

Pattern: Repository + Data Mapper. UserStore is the repository; _row_to_user /
_row_to_device are the mappers. Route, dependency and service code never
touches SQL directly.

Concurrency:
  Nothing here caches rows between calls. Every request re-reads what it
  needs, and every write that must not race is a single conditional UPDATE
  whose WHERE clause carries the pre-image it expects:

    ensure_api_token()             -- "... WHERE api_token IS NULL"
    rotate_api_token()             -- "... WHERE api_token = <old value>"
    approve_device_authorization() -- "... WHERE api_token IS NULL AND expires_at > now"

  rowcount tells the caller whether it won. No in-process lock is involved,
  so the guarantees hold across workers sharing one database.

Timestamps:
  Stored as ISO 8601 UTC strings with fixed microsecond precision (to_iso()).
  Fixed width makes lexicographic SQL comparison equal to chronological order,
  which the expiry predicates rely on.

Security:
  Every value reaches SQL as a bound parameter; no statement is string-built.

Layer rule: no imports from api/, web/, jobs/, ratelimit/ or client/.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    func,
    select,
    text,
)
from sqlalchemy.engine import Engine

from auth.models import DeviceAuthorization, User
from core.config import get_settings


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(254), nullable=False, unique=True),
    Column("username", String(20), unique=True),  # lowercase; NULL until chosen
    Column("password_hash", Text, nullable=False),
    Column("api_token", String(64), unique=True),
    Column("api_token_created_at", String(32)),
    Column("is_public", Boolean, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
)

_device_authorizations = Table(
    "device_authorizations",
    _metadata,
    Column("device_code", String(64), primary_key=True),
    Column("user_code", String(9), nullable=False, unique=True),  # XXXX-XXXX, uppercase
    Column("expires_at", String(32), nullable=False, index=True),
    Column("user_id", Integer),  # NULL until confirmed
    Column("api_token", String(64)),  # NULL until confirmed
    Column("created_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers do not block behind a writer.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Time helpers
# ---------------------------------------------------------------------------


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    """Serialize a datetime as a fixed-width UTC ISO string."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str) -> datetime:
    """Parse a stored timestamp. Naive values are taken to be UTC."""
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User and DeviceAuthorization entities.

    Usage:
        store = UserStore()
        uid = store.create_user(User(email="a@b.io", password_hash=hash_password("secret")))
        user = store.get_by_email("a@b.io")
        store.close()
    """

    def __init__(self, db_url: str | None = None) -> None:
        db_url = db_url or get_settings().database_url
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    def ping(self) -> bool:
        """Round-trip a trivial query. Used by the health endpoint."""
        with self.engine.connect() as conn:
            return conn.execute(text("SELECT 1")).scalar() == 1

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def create_user(self, user: User, now: datetime | None = None) -> int:
        """Insert `user` and return the id the database assigned.

        api_token_created_at defaults to the creation time whenever a token is
        supplied without one, keeping the "token implies timestamp" invariant.

        Raises sqlalchemy.exc.IntegrityError if the email, username or token
        already exists. Registration catches that as the signal that a
        concurrent request won the race.
        """
        created = to_iso(now or utcnow())
        token_created = user.api_token_created_at
        if user.api_token and not token_created:
            token_created = created
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    email=user.email,
                    username=user.username,
                    password_hash=user.password_hash,
                    api_token=user.api_token,
                    api_token_created_at=token_created if user.api_token else None,
                    is_public=user.is_public,
                    created_at=created,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by exact email (case-sensitive)."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_username(self, username: str) -> User | None:
        """Look up a user by username. Callers pass the lowercased form."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.username == username)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_api_token(self, api_token: str) -> User | None:
        """Look up the user owning a bearer token. O(1) via the UNIQUE index."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.api_token == api_token)).fetchone()
        return _row_to_user(row) if row is not None else None

    def update_user(self, user_id: int, **fields) -> bool:
        """Update plain profile fields (currently only is_public).

        Token columns are not accepted here; they change only through
        ensure_api_token() and rotate_api_token().

        False means no row has that id.
        """
        unknown = set(fields) - {"is_public"}
        if unknown:
            raise ValueError(f"Unknown user fields: {unknown!r}")
        if not fields:
            return False
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Bearer token mutations (conditional writes)
    # ------------------------------------------------------------------

    def ensure_api_token(self, user_id: int, candidate: str, now: datetime | None = None) -> str | None:
        """Give the user a bearer token if they have none; return the token they end up with.

        The write only lands if api_token is still NULL. If a concurrent request
        already set one, our candidate is discarded and the stored value is
        returned instead, so every caller agrees on a single token.

        Returns None only if the user does not exist.
        """
        with self.engine.connect() as conn:
            conn.execute(
                _users.update()
                .where((_users.c.id == user_id) & (_users.c.api_token.is_(None)))
                .values(api_token=candidate, api_token_created_at=to_iso(now or utcnow()))
            )
            conn.commit()
            token = conn.execute(select(_users.c.api_token).where(_users.c.id == user_id)).scalar()
        return token

    def rotate_api_token(
        self,
        user_id: int,
        expected: str | None,
        new_token: str,
        now: datetime | None = None,
    ) -> bool:
        """Compare-and-swap the user's bearer token.

        Succeeds only if the stored token still equals `expected` (None meaning
        "no token yet"). Returns False when another writer got there first;
        the caller should re-read and report the current value.
        """
        current = _users.c.api_token.is_(None) if expected is None else _users.c.api_token == expected
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update()
                .where((_users.c.id == user_id) & current)
                .values(api_token=new_token, api_token_created_at=to_iso(now or utcnow()))
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Device authorization queries
    # ------------------------------------------------------------------

    def create_device_authorization(self, record: DeviceAuthorization, now: datetime | None = None) -> None:
        """Persist a new pending record.

        Raises sqlalchemy.exc.IntegrityError on a device_code or user_code
        collision; auth.device retries with fresh codes.
        """
        with self.engine.connect() as conn:
            conn.execute(
                _device_authorizations.insert().values(
                    device_code=record.device_code,
                    user_code=record.user_code,
                    expires_at=record.expires_at,
                    user_id=record.user_id,
                    api_token=record.api_token,
                    created_at=to_iso(now or utcnow()),
                )
            )
            conn.commit()

    def get_device_by_code(self, device_code: str) -> DeviceAuthorization | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _device_authorizations.select().where(_device_authorizations.c.device_code == device_code)
            ).fetchone()
        return _row_to_device(row) if row is not None else None

    def get_device_by_user_code(self, user_code: str) -> DeviceAuthorization | None:
        """Look up by the normalized (uppercase, hyphenated) user code."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _device_authorizations.select().where(_device_authorizations.c.user_code == user_code)
            ).fetchone()
        return _row_to_device(row) if row is not None else None

    def approve_device_authorization(self, user_code: str, user_id: int, api_token: str, now: datetime) -> bool:
        """Bind a pending record to a user and grant it a token.

        Single conditional UPDATE: it only matches a row that is still pending
        (no token) and not yet expired. Of two concurrent confirmations exactly
        one sees rowcount == 1.
        """
        dev = _device_authorizations.c
        with self.engine.connect() as conn:
            result = conn.execute(
                _device_authorizations.update()
                .where((dev.user_code == user_code) & (dev.api_token.is_(None)) & (dev.expires_at > to_iso(now)))
                .values(user_id=user_id, api_token=api_token)
            )
            conn.commit()
        return result.rowcount == 1

    def delete_expired_device_authorizations(self, cutoff: datetime) -> int:
        """Delete every record whose expiry is before `cutoff`, confirmed or not."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _device_authorizations.delete().where(_device_authorizations.c.expires_at < to_iso(cutoff))
            )
            conn.commit()
        return result.rowcount

    def count_device_authorizations(self) -> int:
        with self.engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(_device_authorizations)).scalar() or 0

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        username=row.username,
        password_hash=row.password_hash,
        api_token=row.api_token,
        api_token_created_at=row.api_token_created_at,
        is_public=bool(row.is_public),
        created_at=row.created_at,
    )


def _row_to_device(row) -> DeviceAuthorization:
    return DeviceAuthorization(
        device_code=row.device_code,
        user_code=row.user_code,
        expires_at=row.expires_at,
        user_id=row.user_id,
        api_token=row.api_token,
        created_at=row.created_at,
    )
