"""
api/main.py -- FastAPI application entry point for infst-web.

Hosts the auth and device-linking service: browser sign-in (web/ layer,
mounted by asgi.py), device authorization for the infst CLI, and the
self-service /api/users/me endpoints.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. log_requests          -- one access-log line per request, rejections included
  3. CSRFMiddleware        -- same-origin proof for guarded state-changing paths

Rate limits are route dependencies (ratelimit.limiter), so they run after the CSRF
check and only on the routes that declare them.

Lifespan handles startup (stores, cleanup task) and shutdown (cancel the
task, dispose engines) symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from urllib.parse import urlencode

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.models import ErrorResponse, HealthResponse
from api.routes.device import router as device_router
from api.routes.users import router as users_router
from auth.csrf import CSRFMiddleware
from auth.errors import BearerAuthError, LoginRequired
from auth.store import UserStore
from core.config import get_settings
from jobs.cleanup import sweep
from ratelimit.limiter import RateLimited
from ratelimit.store import RateLimitStore

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("infst.api")

settings = get_settings()

# ---------------------------------------------------------------------------
# Background cleanup task
# ---------------------------------------------------------------------------


async def _cleanup_loop(app: FastAPI) -> None:
    """Sweep expired device authorizations and rate-limit counters on a fixed period.

    The sweep itself is blocking SQL, so it runs in a worker thread. A failed
    sweep is logged and retried on the next period; CancelledError from
    task.cancel() during shutdown unwinds the loop.
    """
    while True:
        await asyncio.sleep(settings.cleanup_interval_seconds)
        try:
            await asyncio.to_thread(
                sweep,
                app.state.user_store,
                app.state.rate_limit_store,
                settings.device_code_grace_seconds,
            )
        except SQLAlchemyError:
            logger.exception("Scheduled cleanup failed")


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Create the stores before the first request and release them on shutdown.

    The cleanup task references both stores, so it starts last.
    """
    logger.info("infst-web starting up")
    app.state.user_store = UserStore(db_url=settings.database_url)
    app.state.rate_limit_store = RateLimitStore(db_url=settings.database_url)
    logger.info("Stores initialized")
    app.state.cleanup_task = asyncio.create_task(_cleanup_loop(app))

    yield

    app.state.cleanup_task.cancel()
    app.state.rate_limit_store.close()
    app.state.user_store.close()
    logger.info("infst-web shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="infst-web",
    description="Accounts, browser sessions and device linking for the infst CLI.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Each add_middleware() call wraps everything registered before it, so the
# last registration is the outermost layer. Registered innermost-first.
# ---------------------------------------------------------------------------

app.add_middleware(
    CSRFMiddleware,
    trusted_origins=[settings.app_url, *settings.csrf_trusted_origins],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.allowed_hosts)

# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(device_router, tags=["Device Authorization"])
app.include_router(users_router, tags=["Users"])
# Web UI router is mounted by asgi.py, not here.
# api/ and web/ are independent layers -- only the top-level asgi.py imports both.


# ---------------------------------------------------------------------------
# Exception handlers
#
# JSON handlers return the same flat ErrorResponse envelope so clients can
# read `error` without choosing a schema by status code.
# ---------------------------------------------------------------------------


def _error(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=ErrorResponse(error=code, message=message).model_dump())


@app.exception_handler(BearerAuthError)
async def bearer_auth_handler(request: Request, exc: BearerAuthError) -> JSONResponse:
    """401 with the machine-readable reason. The message never says more."""
    logger.info("Bearer auth rejected (%s) on %s %s", exc.reason, request.method, request.url.path)
    response = _error(401, exc.reason, "Authentication required.")
    response.headers["WWW-Authenticate"] = "Bearer"
    return response


@app.exception_handler(RateLimited)
async def rate_limit_handler(request: Request, exc: RateLimited) -> JSONResponse:
    """429 with Retry-After set to the seconds left in the current window."""
    response = _error(429, "rate_limited", "Too many requests.")
    response.headers["Retry-After"] = str(exc.retry_after)
    return response


@app.exception_handler(LoginRequired)
async def login_required_handler(request: Request, exc: LoginRequired) -> RedirectResponse:
    return RedirectResponse(f"/login?{urlencode({'next': exc.next_path})}", status_code=302)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed bodies and params are 400 invalid_request, naming the failing fields."""
    fields = sorted({".".join(str(p) for p in err.get("loc", ())[1:]) or "body" for err in exc.errors()})
    return _error(400, "invalid_request", f"Invalid request: {', '.join(fields)}.")


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return _error(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors, store outages included.

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py so it is reachable regardless of router
# registration. No auth, no rate limit.
# ---------------------------------------------------------------------------


@app.get("/api/health", tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return liveness, version, and whether the database answers."""
    try:
        database = "ok" if request.app.state.user_store.ping() else "error"
    except SQLAlchemyError:
        logger.exception("Health check: database unreachable")
        database = "error"
    return HealthResponse(
        status="healthy" if database == "ok" else "degraded",
        version=VERSION,
        components={"app": "ok", "database": database},
    )
