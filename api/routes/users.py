"""
api/routes/users.py -- Self-service endpoints for the authenticated user.

Routes:
  GET   /api/users/me                   -- current user's profile
  PATCH /api/users/me                   -- toggle is_public
  POST  /api/users/me/token/regenerate  -- replace the bearer token

Auth: get_api_user. A bearer token when an Authorization header is sent,
otherwise the session cookie (the settings page calls these from the
browser). Session-authenticated writes pass the CSRF guard first.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from api.models import MeResponse, TokenResponse, UserPatch
from auth.dependencies import get_api_user
from auth.models import User
from auth.store import UserStore
from auth.tokens import generate_api_token

logger = logging.getLogger("infst.api")

router = APIRouter()


@router.get("/api/users/me", response_model=MeResponse)
def read_me(current_user: User = Depends(get_api_user)) -> MeResponse:
    return MeResponse.from_user(current_user)


@router.patch("/api/users/me", response_model=MeResponse)
def update_me(request: Request, body: UserPatch, current_user: User = Depends(get_api_user)) -> MeResponse:
    """Update the writable profile fields and return the fresh resource."""
    store: UserStore = request.app.state.user_store
    if not store.update_user(current_user.id, is_public=body.is_public):
        raise HTTPException(status_code=404, detail="User not found.")
    updated = store.get_by_id(current_user.id)
    if updated is None:
        raise HTTPException(status_code=404, detail="User not found.")
    return MeResponse.from_user(updated)


@router.post("/api/users/me/token/regenerate", response_model=TokenResponse)
def regenerate_token(request: Request, current_user: User = Depends(get_api_user)) -> JSONResponse:
    """Replace the caller's bearer token with a fresh one.

    Compare-and-swap on the token read at authentication time. If a concurrent
    regeneration or device confirmation changed it first, this request does
    not overwrite that value; it answers 409 so the caller re-reads.
    """
    store: UserStore = request.app.state.user_store
    new_token = generate_api_token()
    if not store.rotate_api_token(current_user.id, current_user.api_token, new_token):
        logger.warning("Token regeneration lost a race (user_id=%s)", current_user.id)
        raise HTTPException(status_code=409, detail="Token changed concurrently. Reload and try again.")

    updated = store.get_by_id(current_user.id)
    if updated is None or updated.api_token is None:
        raise HTTPException(status_code=404, detail="User not found.")
    logger.info("Bearer token regenerated (user_id=%s)", current_user.id)
    resp = JSONResponse(
        content=TokenResponse(
            api_token=updated.api_token,
            api_token_created_at=updated.api_token_created_at,
        ).model_dump()
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp
