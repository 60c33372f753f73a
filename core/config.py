"""
core/config.py -- Every runtime setting of infst-web, in one pydantic-settings class.

Nothing else in the tree touches os.environ: modules call get_settings() and
read attributes off the result.

How it is wired:
  get_settings() is wrapped in lru_cache, so the environment (plus an
      optional .env file) is read once per process. Attribute names are the
      lowercase env var names: APP_URL -> app_url, LOGIN_RATE_LIMIT ->
      login_rate_limit.

  Two @model_validator(mode="after") hooks run once all fields are filled.
      The first settles SECRET_KEY: invented (with a warning) under DEBUG,
      mandatory otherwise. The second feeds each rate-limit string through
      limits.parse so a typo stops the process at boot, not at the first
      login attempt.

SECRET_KEY signs the HS256 session JWTs. Anything under 32 characters is
refused in every mode.

Layer rule: core/ sits at the bottom. Nothing here imports api/, web/,
auth/, ratelimit/, jobs/ or client/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from limits import parse
from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("infst.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'infst_auth.db'}"


class Settings(BaseSettings):
    """Environment-backed settings for the web service and the cleanup command.

    Every field has a default, so tests can build Settings() without any
    environment at all.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # Empty string is the "not configured" sentinel; the validator below
    # either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    # Public base URL. Used for the device verification link and accepted
    # as a same-origin proof by the CSRF guard.
    app_url: str = "http://localhost:8000"
    database_url: str = _DEFAULT_DB_URL
    allowed_hosts: list[str] = ["*"]

    # ------------------------------------------------------------------
    # Sessions and bearer tokens
    # ------------------------------------------------------------------

    secure_cookies: bool = True
    session_max_age_seconds: int = 7 * 24 * 3600
    api_token_expiry_days: int = 90

    # ------------------------------------------------------------------
    # Device authorization
    # ------------------------------------------------------------------

    device_code_ttl_seconds: int = 600
    device_poll_interval_seconds: int = 5
    device_code_grace_seconds: int = 3600

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    cleanup_probability: float = 0.01
    cleanup_interval_seconds: int = 24 * 3600

    # ------------------------------------------------------------------
    # Rate limiting ("<count>/<period>" strings, see limits.parse)
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    register_rate_limit: str = "5/hour"
    device_code_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # CSRF
    # ------------------------------------------------------------------

    csrf_trusted_origins: list[str] = []

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Settle SECRET_KEY before anything signs a session with it.

        DEBUG=true with no key: generate one and warn. Every session dies
        with the process, which is fine on a laptop.

        Otherwise a missing key stops startup. A key under 32 characters is
        refused either way.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("Using auto-generated SECRET_KEY. Sessions will not persist across restarts.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self

    @model_validator(mode="after")
    def validate_rate_limits(self) -> "Settings":
        """Parse every rate-limit string once so malformed values fail at startup."""
        for name in ("login_rate_limit", "register_rate_limit", "device_code_rate_limit"):
            value = getattr(self, name)
            try:
                parse(value)
            except ValueError as exc:
                raise ValueError(f"{name.upper()} is not a valid rate limit: {value!r}") from exc
        if not 0.0 <= self.cleanup_probability <= 1.0:
            raise ValueError("CLEANUP_PROBABILITY must be between 0 and 1.")
        return self

    def rate_limit_for(self, route: str) -> tuple[int, int]:
        """Return (max_requests, window_seconds) for a rate-limited route name."""
        item = parse(getattr(self, f"{route}_rate_limit"))
        return item.amount, item.get_expiry()


@lru_cache
def get_settings() -> Settings:
    """Build Settings on first call and hand back the same object afterwards.

    Tests that change the environment must call get_settings.cache_clear().
    """
    return Settings()
