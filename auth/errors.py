"""
auth/errors.py -- Exceptions raised by the auth dependencies.

They carry machine-readable detail for the exception handlers registered in
api/main.py, which decide what (little) reaches the client.
"""

from __future__ import annotations

# Bearer rejection reasons. Distinct for the client's benefit (and for logs);
# the human-readable message sent alongside is always the same.
MISSING_HEADER = "missing_header"
INVALID_FORMAT = "invalid_format"
INVALID_TOKEN = "invalid_token"
TOKEN_EXPIRED = "token_expired"


class BearerAuthError(Exception):
    """Raised when a request's Authorization header does not resolve to a usable user."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class LoginRequired(Exception):
    """Raised by the required-session dependency; handled as a redirect to /login."""

    def __init__(self, next_path: str = "/") -> None:
        super().__init__(next_path)
        self.next_path = next_path
