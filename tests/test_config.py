"""
tests/test_config.py -- Settings validation.

Settings are built directly with _env_file=None so a developer's .env never
leaks into these tests.
"""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from core.config import Settings

KEY = "k" * 32


class TestSecretKey:
    def test_debug_generates_secret(self) -> None:
        settings = Settings(_env_file=None, debug=True, secret_key="")
        assert len(settings.secret_key) >= 32

    def test_production_requires_secret(self) -> None:
        with pytest.raises(ValidationError, match="SECRET_KEY is required"):
            Settings(_env_file=None, debug=False, secret_key="")

    def test_short_secret_rejected(self) -> None:
        with pytest.raises(ValidationError, match="at least 32"):
            Settings(_env_file=None, debug=False, secret_key="too-short")


class TestRateLimits:
    def test_defaults(self) -> None:
        settings = Settings(_env_file=None, secret_key=KEY)
        assert settings.rate_limit_for("login") == (10, 60)
        assert settings.rate_limit_for("register") == (5, 3600)
        assert settings.rate_limit_for("device_code") == (10, 60)

    def test_override(self) -> None:
        settings = Settings(_env_file=None, secret_key=KEY, login_rate_limit="3/second")
        assert settings.rate_limit_for("login") == (3, 1)

    def test_malformed_value_fails_at_startup(self) -> None:
        with pytest.raises(ValidationError, match="LOGIN_RATE_LIMIT"):
            Settings(_env_file=None, secret_key=KEY, login_rate_limit="lots")

    def test_cleanup_probability_bounds(self) -> None:
        with pytest.raises(ValidationError, match="CLEANUP_PROBABILITY"):
            Settings(_env_file=None, secret_key=KEY, cleanup_probability=1.5)


def test_device_defaults() -> None:
    settings = Settings(_env_file=None, secret_key=KEY)
    assert settings.device_code_ttl_seconds == 600
    assert settings.device_poll_interval_seconds == 5
    assert settings.api_token_expiry_days == 90
