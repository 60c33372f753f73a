"""
api/routes/device.py -- Programmatic half of the device authorization flow.

Routes:
  POST /auth/device/code   -- issue a (device_code, user_code) pair (rate-limited)
  POST /auth/device/token  -- poll with a device_code

The human half (GET /auth/device, POST /auth/device/confirm) is server-rendered
and lives in web/routes.py.

Poll responses:
  200 {"status": "approved", "token": ...}   -- repeatable until the record is swept
  428 {"status": "pending"}                  -- keep polling at `interval`
  400 {"error": "invalid_device_code"}       -- unknown code
  400 {"error": "expired_token"}             -- past expires_at, approved or not
  400 {"error": "invalid_request"}           -- no device_code in the body

Both endpoints are unauthenticated; neither is CSRF-guarded since a browser
session gives nothing here.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from api.models import DeviceCodeResponse, DeviceTokenRequest, DeviceTokenResponse, ErrorResponse
from auth.device import PollStatus, poll_device_code, request_device_code
from auth.store import UserStore
from core.config import get_settings
from jobs.cleanup import maybe_sweep
from ratelimit.limiter import limiter

logger = logging.getLogger("infst.api")

router = APIRouter()

_POLL_ERRORS = {
    PollStatus.INVALID: "Unknown device code.",
    PollStatus.EXPIRED: "The device code has expired. Request a new one.",
}


@router.post(
    "/auth/device/code",
    response_model=DeviceCodeResponse,
    dependencies=[Depends(limiter.limit("device_code"))],
)
def device_code(request: Request) -> DeviceCodeResponse:
    """Start a device authorization and return the codes the client needs."""
    settings = get_settings()
    store: UserStore = request.app.state.user_store
    grant = request_device_code(
        store,
        verification_url=f"{settings.app_url.rstrip('/')}/auth/device",
        ttl_seconds=settings.device_code_ttl_seconds,
        interval=settings.device_poll_interval_seconds,
    )
    return DeviceCodeResponse.from_grant(grant)


@router.post(
    "/auth/device/token",
    response_model=DeviceTokenResponse,
    responses={400: {"model": ErrorResponse}, 428: {"model": DeviceTokenResponse}},
)
def device_token(request: Request, body: DeviceTokenRequest) -> JSONResponse:
    """Report whether the device code has been confirmed yet."""
    if not body.device_code:
        return JSONResponse(
            status_code=400,
            content=ErrorResponse(error="invalid_request", message="device_code is required.").model_dump(),
        )

    settings = get_settings()
    store: UserStore = request.app.state.user_store
    result = poll_device_code(store, body.device_code)
    try:
        maybe_sweep(
            store,
            getattr(request.app.state, "rate_limit_store", None),
            grace_seconds=settings.device_code_grace_seconds,
            probability=settings.cleanup_probability,
        )
    except SQLAlchemyError:
        # The poll answer above stands; the scheduled sweep will retry.
        logger.exception("Inline cleanup failed during device poll")

    if result.status is PollStatus.APPROVED:
        resp = JSONResponse(content=DeviceTokenResponse(status="approved", token=result.token).model_dump())
        resp.headers["Cache-Control"] = "no-store"
        return resp
    if result.status is PollStatus.PENDING:
        return JSONResponse(
            status_code=428,
            content=DeviceTokenResponse(status="pending").model_dump(exclude_none=True),
        )
    return JSONResponse(
        status_code=400,
        content=ErrorResponse(error=result.status.value, message=_POLL_ERRORS[result.status]).model_dump(),
    )
