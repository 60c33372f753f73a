"""
tests/conftest.py -- Shared test fixtures for infst-web tests.

This module provides:
  - user_store / rate_limit_store: isolated in-memory stores, one pair per test
  - client: TestClient over the assembled app (API + web UI) wired to those stores
  - make_user(): insert a user with a known password directly through the store
  - sign_in(): POST the login form and leave the session cookie in the client jar

Stores live in named shared-memory SQLite databases
(file:<name>?mode=memory&cache=shared&uri=true). TestClient dispatches sync
handlers to worker threads, and a bare :memory: database exists once per
connection, so each thread would otherwise open an empty schema. Names carry
a fresh uuid per test, so rate-limit counters and accounts never leak between
tests.

The client talks to https://testserver so the Secure session cookie is sent
back, and guarded POSTs pass ORIGIN as their same-origin proof.

The DEBUG env var must be set before any project import so get_settings()
generates a throwaway SECRET_KEY instead of refusing to start.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

# DEBUG must be in the environment before the first project import: the
# settings singleton is built at import time and must generate SECRET_KEY.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from asgi import app
from auth.models import User
from auth.store import UserStore, to_iso, utcnow
from auth.tokens import hash_password
from ratelimit.store import RateLimitStore

BASE_URL = "https://testserver"
ORIGIN = {"Origin": BASE_URL}
PASSWORD = "correct-horse-battery"


def _memory_url(prefix: str) -> str:
    return f"sqlite:///file:{prefix}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


def _patch_lifespan(user_store: UserStore, rate_limit_store: RateLimitStore):
    """Build a lifespan that wires the given stores instead of opening real ones.

    Wires the test stores into app.state. The cleanup_task is a long-sleeping
    coroutine so shutdown can cancel a real asyncio.Task.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.user_store = user_store
        app.state.rate_limit_store = rate_limit_store
        app.state.cleanup_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.cleanup_task.cancel()

    return test_lifespan


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------


@pytest.fixture
def user_store() -> Generator[UserStore, None, None]:
    store = UserStore(db_url=_memory_url("test_auth"))
    yield store
    store.close()


@pytest.fixture
def rate_limit_store() -> Generator[RateLimitStore, None, None]:
    store = RateLimitStore(db_url=_memory_url("test_ratelimit"))
    yield store
    store.close()


# ---------------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------------


@pytest.fixture
def client(user_store: UserStore, rate_limit_store: RateLimitStore) -> Generator[TestClient, None, None]:
    """TestClient over the real app with a patched lifespan.

    follow_redirects=False so tests can assert on redirect Location headers,
    which are invisible once the client follows them.
    """
    app.router.lifespan_context = _patch_lifespan(user_store, rate_limit_store)
    with TestClient(app, base_url=BASE_URL, follow_redirects=False) as c:
        yield c


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def make_user(
    store: UserStore,
    email: str = "player@example.com",
    username: Optional[str] = "player",
    password: str = PASSWORD,
    api_token: Optional[str] = None,
    api_token_created_at: Optional[datetime] = None,
) -> User:
    """Create a user directly in the store and return it as persisted."""
    user = User(
        email=email,
        username=username,
        password_hash=hash_password(password),
        api_token=api_token,
        api_token_created_at=to_iso(api_token_created_at or utcnow()) if api_token else None,
    )
    user_id = store.create_user(user)
    created = store.get_by_id(user_id)
    assert created is not None
    return created


def sign_in(client: TestClient, email: str = "player@example.com", password: str = PASSWORD) -> None:
    resp = client.post("/auth/login", data={"email": email, "password": password}, headers=ORIGIN)
    assert resp.status_code == 302, resp.text
