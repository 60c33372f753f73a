"""
ratelimit/store.py -- Shared fixed-window request counters.

One row per (route, client key). hit() is a single upsert-with-increment,
so the counter is correct no matter how many workers share the database:

    INSERT (key, window_start=now, window_seconds, request_count=1)
    ON CONFLICT (key) DO UPDATE SET
        request_count = 1   if the stored window has elapsed, else request_count + 1
        window_start  = now if the stored window has elapsed, else unchanged
    RETURNING request_count, window_start

A row whose window has elapsed is logically void: the next hit starts a new
window instead of incrementing it. purge_expired() removes such rows; it is
housekeeping only and never needed for correctness.

Supported dialects: SQLite (3.35+, for RETURNING) and PostgreSQL.

Usage:
    counters = RateLimitStore()
    hit = counters.hit("login:203.0.113.7", window_seconds=60)
    if hit.count > 10: ...
    counters.purge_expired()
"""

from __future__ import annotations

import time
from dataclasses import dataclass

from sqlalchemy import Column, Float, Integer, MetaData, String, Table, case, create_engine, event, func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Engine

from core.config import get_settings


_metadata = MetaData()

_counters = Table(
    "rate_limits",
    _metadata,
    Column("key", String(255), primary_key=True),
    Column("window_start", Float, nullable=False),  # epoch seconds
    Column("window_seconds", Integer, nullable=False),
    Column("request_count", Integer, nullable=False),
)


@dataclass(frozen=True)
class RateLimitRecord:
    key: str
    window_start: float
    window_seconds: int
    count: int


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


class RateLimitStore:
    def __init__(self, db_url: str | None = None) -> None:
        db_url = db_url or get_settings().database_url
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    def _insert(self):
        if self.engine.dialect.name == "postgresql":
            return postgresql.insert(_counters)
        return sqlite.insert(_counters)

    def hit(self, key: str, window_seconds: int, now: float | None = None) -> RateLimitRecord:
        """Count one request against `key` and return the counter after the increment."""
        now = time.time() if now is None else now
        stmt = self._insert().values(key=key, window_start=now, window_seconds=window_seconds, request_count=1)
        elapsed = _counters.c.window_start + _counters.c.window_seconds <= now
        stmt = stmt.on_conflict_do_update(
            index_elements=[_counters.c.key],
            set_={
                "request_count": case((elapsed, 1), else_=_counters.c.request_count + 1),
                "window_start": case((elapsed, stmt.excluded.window_start), else_=_counters.c.window_start),
                "window_seconds": stmt.excluded.window_seconds,
            },
        ).returning(_counters.c.request_count, _counters.c.window_start, _counters.c.window_seconds)
        with self.engine.connect() as conn:
            row = conn.execute(stmt).one()
            conn.commit()
        return RateLimitRecord(
            key=key, window_start=row.window_start, window_seconds=row.window_seconds, count=row.request_count
        )

    def get(self, key: str, now: float | None = None) -> RateLimitRecord | None:
        """Return the live counter for `key`, or None if absent or its window has elapsed."""
        now = time.time() if now is None else now
        with self.engine.connect() as conn:
            row = conn.execute(_counters.select().where(_counters.c.key == key)).fetchone()
        if row is None or row.window_start + row.window_seconds <= now:
            return None
        return RateLimitRecord(
            key=row.key, window_start=row.window_start, window_seconds=row.window_seconds, count=row.request_count
        )

    def purge_expired(self, now: float | None = None) -> int:
        """Delete all counters whose window has elapsed. Returns number of rows removed."""
        now = time.time() if now is None else now
        with self.engine.connect() as conn:
            result = conn.execute(
                _counters.delete().where(_counters.c.window_start + _counters.c.window_seconds <= now)
            )
            conn.commit()
        return result.rowcount

    def count(self) -> int:
        with self.engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(_counters)).scalar() or 0

    def close(self) -> None:
        self.engine.dispose()
