"""
jobs/cleanup.py -- Housekeeping for expired device authorizations and counters.

Two triggers share one sweep():
  - maybe_sweep(): called from the device poll endpoint, runs with a small
    probability so the cost is spread over traffic.
  - the scheduled loop in api/main.py and `python main.py cleanup`, which run
    it unconditionally.

Device records are kept for a grace period after expiry so a client polling
just past the deadline gets expired_token instead of invalid_device_code.
Nothing here is required for correctness: expired rows are already treated as
expired (or void, for counters) by every reader.
"""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from auth.store import UserStore, utcnow
from ratelimit.store import RateLimitStore

logger = logging.getLogger("infst.cleanup")


@dataclass(frozen=True)
class SweepResult:
    device_authorizations: int
    rate_limits: int


def sweep_device_authorizations(store: UserStore, grace_seconds: int, now: Optional[datetime] = None) -> int:
    """Delete device records that expired more than `grace_seconds` ago."""
    cutoff = (now or utcnow()) - timedelta(seconds=grace_seconds)
    return store.delete_expired_device_authorizations(cutoff)


def sweep_rate_limits(store: RateLimitStore, now: Optional[float] = None) -> int:
    return store.purge_expired(now=now)


def sweep(
    user_store: UserStore,
    rate_limit_store: Optional[RateLimitStore],
    grace_seconds: int,
    now: Optional[datetime] = None,
) -> SweepResult:
    """Run every cleanup step once and log what was removed."""
    now = now or utcnow()
    devices = sweep_device_authorizations(user_store, grace_seconds, now)
    counters = 0
    if rate_limit_store is not None:
        counters = sweep_rate_limits(rate_limit_store, now.timestamp())
    logger.info("Cleanup removed %d device authorizations, %d rate-limit counters", devices, counters)
    return SweepResult(device_authorizations=devices, rate_limits=counters)


def maybe_sweep(
    user_store: UserStore,
    rate_limit_store: Optional[RateLimitStore],
    grace_seconds: int,
    probability: float,
    rng: Callable[[], float] = random.random,
) -> Optional[SweepResult]:
    """Roll the dice and sweep on a hit. Returns None when the roll misses."""
    if rng() >= probability:
        return None
    started = time.perf_counter()
    result = sweep(user_store, rate_limit_store, grace_seconds)
    logger.debug("Opportunistic cleanup took %.1fms", (time.perf_counter() - started) * 1000)
    return result
