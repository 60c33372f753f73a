"""
auth/validators.py -- Input validation for the login and registration forms.

Each validator returns an error message for the form, or None when the input
is acceptable. Messages name the field but never say anything about whether
an account exists.
"""

from __future__ import annotations

import re

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_USERNAME_RE = re.compile(r"^[a-z0-9_-]{3,20}$")

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 72  # bcrypt ignores anything past 72 bytes
MAX_EMAIL_LENGTH = 254

RESERVED_USERNAMES = frozenset(
    {
        "admin",
        "api",
        "auth",
        "device",
        "help",
        "login",
        "logout",
        "me",
        "register",
        "root",
        "settings",
        "static",
        "support",
        "system",
        "users",
    }
)


def normalize_username(username: str) -> str:
    return username.strip().lower()


def validate_email(email: str | None) -> str | None:
    if not email or not email.strip():
        return "Email is required"
    if len(email) > MAX_EMAIL_LENGTH or not _EMAIL_RE.match(email.strip()):
        return "Invalid email address"
    return None


def validate_password(password: str | None) -> str | None:
    if not password:
        return "Password is required"
    if len(password.encode("utf-8")) > MAX_PASSWORD_LENGTH or len(password) < MIN_PASSWORD_LENGTH:
        return f"Password must be {MIN_PASSWORD_LENGTH}-{MAX_PASSWORD_LENGTH} characters"
    return None


def validate_username(username: str | None) -> str | None:
    if not username or not username.strip():
        return "Username is required"
    if not _USERNAME_RE.match(normalize_username(username)):
        return "Username must be 3-20 characters: lowercase letters, numbers, hyphens, underscores"
    return None


def validate_login_input(email: str | None, password: str | None) -> str | None:
    if not email or not password:
        return "Email and password are required"
    return None


def validate_register_input(email: str | None, password: str | None, username: str | None) -> str | None:
    """Return the first field error, checking email, then username, then password."""
    return validate_email(email) or validate_username(username) or validate_password(password)
