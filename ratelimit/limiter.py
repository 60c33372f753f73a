"""
ratelimit/limiter.py -- Shared rate limiter instance backed by RateLimitStore.

Import `limiter` wherever a route needs throttling and attach it as a
dependency:

    @router.post("/auth/login", dependencies=[Depends(limiter.limit("login"))])

The route name selects the "<count>/<period>" string from Settings
(LOGIN_RATE_LIMIT, REGISTER_RATE_LIMIT, DEVICE_CODE_RATE_LIMIT), parsed with
limits.parse. Each (route, client) pair gets its own fixed window counter
in the shared store, keyed by slowapi's get_remote_address.

Windows are fixed, not sliding: a burst straddling a boundary can get up to
2x the limit through. Accepted.

Failure policy: fail closed. If the counter store raises, the error is logged
and propagated (the generic 500 handler answers), so a flaky store never
turns into unlimited retries.
"""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable
from dataclasses import dataclass

from fastapi import Request
from slowapi.util import get_remote_address
from sqlalchemy.exc import SQLAlchemyError

from core.config import get_settings
from ratelimit.store import RateLimitStore

logger = logging.getLogger("infst.ratelimit")


class RateLimited(Exception):
    """Raised by a limit dependency; answered with 429 and Retry-After."""

    def __init__(self, route: str, retry_after: int) -> None:
        super().__init__(f"rate limit exceeded for {route}")
        self.route = route
        self.retry_after = retry_after


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    count: int
    limit: int
    retry_after: int


def check(
    store: RateLimitStore,
    key: str,
    route: str,
    max_requests: int,
    window_seconds: int,
    now: float | None = None,
) -> RateLimitDecision:
    """Count this request for (key, route) and decide whether it is allowed.

    The counter is written whether or not the request is allowed; nothing
    else is touched.
    """
    now = time.time() if now is None else now
    try:
        record = store.hit(f"{route}:{key}", window_seconds, now=now)
    except SQLAlchemyError:
        logger.exception("Rate limit store unavailable for route %s; rejecting request", route)
        raise
    retry_after = max(1, math.ceil(record.window_start + record.window_seconds - now))
    return RateLimitDecision(
        allowed=record.count <= max_requests,
        count=record.count,
        limit=max_requests,
        retry_after=retry_after,
    )


class Limiter:
    def __init__(self, key_func: Callable[[Request], str]) -> None:
        self.key_func = key_func

    def limit(self, route: str) -> Callable[[Request], None]:
        """Build a FastAPI dependency enforcing the configured limit for `route`."""

        def dependency(request: Request) -> None:
            max_requests, window_seconds = get_settings().rate_limit_for(route)
            key = self.key_func(request)
            decision = check(request.app.state.rate_limit_store, key, route, max_requests, window_seconds)
            if not decision.allowed:
                logger.warning("Rate limit hit: route=%s key=%s count=%d", route, key, decision.count)
                raise RateLimited(route, decision.retry_after)

        return dependency


limiter = Limiter(key_func=get_remote_address)
