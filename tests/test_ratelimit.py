"""
tests/test_ratelimit.py -- Fixed-window counters and the limiter decision.

Coverage:
  - RateLimitStore.hit(): increments within a window, restarts after it
  - get() / purge_expired(): elapsed windows are void
  - check(): max+1 requests in one window -> exactly one rejection
  - Keys and routes are counted independently
  - Store failure propagates (fail closed)
"""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from ratelimit.limiter import check
from ratelimit.store import RateLimitStore

T0 = 1_800_000_000.0


class TestStore:
    def test_hits_accumulate_in_window(self, rate_limit_store: RateLimitStore) -> None:
        counts = [rate_limit_store.hit("login:1.2.3.4", 60, now=T0 + i).count for i in range(3)]
        assert counts == [1, 2, 3]

    def test_window_start_is_kept_within_window(self, rate_limit_store: RateLimitStore) -> None:
        rate_limit_store.hit("k", 60, now=T0)
        assert rate_limit_store.hit("k", 60, now=T0 + 30).window_start == T0

    def test_new_window_resets_count(self, rate_limit_store: RateLimitStore) -> None:
        for i in range(5):
            rate_limit_store.hit("k", 60, now=T0 + i)
        record = rate_limit_store.hit("k", 60, now=T0 + 60)
        assert record.count == 1
        assert record.window_start == T0 + 60

    def test_get_ignores_elapsed_window(self, rate_limit_store: RateLimitStore) -> None:
        rate_limit_store.hit("k", 60, now=T0)
        assert rate_limit_store.get("k", now=T0 + 59).count == 1
        assert rate_limit_store.get("k", now=T0 + 60) is None
        assert rate_limit_store.get("missing", now=T0) is None

    def test_purge_expired(self, rate_limit_store: RateLimitStore) -> None:
        rate_limit_store.hit("old", 60, now=T0)
        rate_limit_store.hit("fresh", 60, now=T0 + 100)
        assert rate_limit_store.purge_expired(now=T0 + 120) == 1
        assert rate_limit_store.count() == 1
        assert rate_limit_store.get("fresh", now=T0 + 120) is not None


class TestCheck:
    def test_exactly_one_rejection_past_the_limit(self, rate_limit_store: RateLimitStore) -> None:
        decisions = [check(rate_limit_store, "1.2.3.4", "login", 10, 60, now=T0 + i) for i in range(11)]
        assert [d.allowed for d in decisions].count(False) == 1
        assert decisions[-1].allowed is False
        assert decisions[-1].count == 11

    def test_retry_after_counts_down_to_window_end(self, rate_limit_store: RateLimitStore) -> None:
        check(rate_limit_store, "ip", "login", 1, 60, now=T0)
        decision = check(rate_limit_store, "ip", "login", 1, 60, now=T0 + 20.5)
        assert decision.allowed is False
        assert decision.retry_after == 40

    def test_next_window_accepts_again(self, rate_limit_store: RateLimitStore) -> None:
        for i in range(3):
            check(rate_limit_store, "ip", "register", 2, 3600, now=T0 + i)
        assert check(rate_limit_store, "ip", "register", 2, 3600, now=T0 + 3600).allowed is True

    def test_keys_and_routes_are_independent(self, rate_limit_store: RateLimitStore) -> None:
        check(rate_limit_store, "a", "login", 1, 60, now=T0)
        assert check(rate_limit_store, "b", "login", 1, 60, now=T0).allowed is True
        assert check(rate_limit_store, "a", "register", 1, 60, now=T0).allowed is True
        assert check(rate_limit_store, "a", "login", 1, 60, now=T0).allowed is False

    def test_store_failure_is_not_an_allow(self) -> None:
        broken = MagicMock(spec=RateLimitStore)
        broken.hit.side_effect = OperationalError("INSERT", {}, Exception("database is locked"))
        with pytest.raises(OperationalError):
            check(broken, "ip", "login", 10, 60, now=T0)
