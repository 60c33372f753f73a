"""
auth/csrf.py -- Same-origin proof for browser-reachable state-changing requests.

A POST/PUT/PATCH/DELETE to a guarded path must carry an Origin header (or,
failing that, a Referer) whose scheme://host is either the request's own
origin or one of the trusted origins (APP_URL plus CSRF_TRUSTED_ORIGINS).
Requests with neither header are rejected: every current browser sends
Origin on a cross-origin POST, and non-browser clients of these paths either
send one or use a bearer token.

Requests presenting "Authorization: Bearer ..." are exempt. A browser
navigation or auto-submitted form cannot attach that header, and a script
on another site cannot either without a CORS preflight this app never
grants.

Rejections are a flat 403 with no hint of which check failed; the reason is
only logged.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from urllib.parse import urlparse

from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

logger = logging.getLogger("infst.csrf")

_STATE_CHANGING_METHODS = {"POST", "PUT", "PATCH", "DELETE"}

GUARDED_PATHS: tuple[str, ...] = (
    "/auth/login",
    "/auth/register",
    "/auth/device/confirm",
    "/api/users/me",
)


def normalize_origin(value: str | None) -> str | None:
    """Reduce an Origin/Referer value to "scheme://host[:port]", lowercased."""
    if not value:
        return None
    parsed = urlparse(value.strip())
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return None
    return f"{parsed.scheme.lower()}://{parsed.netloc.lower()}"


def is_guarded(path: str, guarded: Iterable[str] = GUARDED_PATHS) -> bool:
    return any(path == p or path.startswith(p + "/") for p in guarded)


def csrf_failure(request: Request, trusted_origins: Iterable[str] = ()) -> str | None:
    """Return why the request fails the same-origin check, or None if it passes."""
    if request.headers.get("authorization", "").startswith("Bearer "):
        return None

    allowed = {normalize_origin(str(request.base_url))}
    allowed.update(normalize_origin(o) for o in trusted_origins)
    allowed.discard(None)

    origin_header = request.headers.get("origin")
    if origin_header is not None:
        origin = normalize_origin(origin_header)
        if origin is None:
            return "unparseable_origin"
        return None if origin in allowed else "origin_mismatch"

    referer = normalize_origin(request.headers.get("referer"))
    if referer is None:
        return "no_origin"
    return None if referer in allowed else "referer_mismatch"


class CSRFMiddleware(BaseHTTPMiddleware):
    """Reject cross-site state-changing requests to guarded paths."""

    def __init__(
        self,
        app,
        *,
        trusted_origins: Iterable[str] = (),
        guarded_paths: Iterable[str] = GUARDED_PATHS,
    ) -> None:
        super().__init__(app)
        self._trusted = tuple(trusted_origins)
        self._guarded = tuple(guarded_paths)

    async def dispatch(self, request: Request, call_next):
        if request.method.upper() in _STATE_CHANGING_METHODS and is_guarded(request.url.path, self._guarded):
            reason = csrf_failure(request, self._trusted)
            if reason is not None:
                logger.warning(
                    "CSRF rejection (%s) on %s %s from %s",
                    reason,
                    request.method,
                    request.url.path,
                    request.client.host if request.client else "unknown",
                )
                return JSONResponse(status_code=403, content={"error": "forbidden", "message": "Forbidden."})
        return await call_next(request)
