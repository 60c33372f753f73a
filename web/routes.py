"""
web/routes.py -- Jinja2 template routes for the infst-web browser UI.

These routes serve server-rendered HTML. They share app.state with the API
routes (same UserStore and RateLimitStore) but return HTML and redirects
instead of JSON.

Routes:
  GET  /                     -- home; shows the signed-in user or login links
  GET  /login                -- login form (signed-in users go to /)
  GET  /register             -- registration form (signed-in users go to /)
  POST /auth/login           -- handle password login (rate-limited, CSRF-guarded)
  POST /auth/register        -- create account + bearer token (rate-limited, CSRF-guarded)
  POST /auth/logout          -- clear cookie, redirect /login
  GET  /auth/device          -- device confirmation form (session required)
  POST /auth/device/confirm  -- approve a user code (session required, CSRF-guarded)
  GET  /settings             -- bearer token and profile settings (session required)

Forms never say whether an email is registered on login. Registration does
report a taken email or username, since the user needs to pick another.
"""

import logging
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, Depends, Form, Request
from fastapi.responses import HTMLResponse, RedirectResponse
from fastapi.templating import Jinja2Templates
from sqlalchemy.exc import IntegrityError

from auth.dependencies import require_session_user, resolve_session_user
from auth.device import ConfirmResult, confirm_device_code, normalize_user_code
from auth.models import User
from auth.store import UserStore
from auth.tokens import (
    authenticate_user,
    clear_session_cookie,
    create_session_token,
    generate_api_token,
    hash_password,
    set_session_cookie,
)
from auth.validators import (
    RESERVED_USERNAMES,
    normalize_username,
    validate_login_input,
    validate_register_input,
)
from ratelimit.limiter import limiter

logger = logging.getLogger("infst.web")

templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))
router = APIRouter()

_INVALID_CREDENTIALS = "Invalid email or password"

_CONFIRM_ERRORS: dict[ConfirmResult, str] = {
    ConfirmResult.MISSING: "User code is required",
    ConfirmResult.INVALID: "Invalid code",
    ConfirmResult.EXPIRED: "Code expired",
    ConfirmResult.ALREADY_USED: "Code already used",
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _safe_next(next_url: Optional[str]) -> str:
    """Validate a post-login redirect target. Only accept relative paths.

    Rejects absolute URLs and protocol-relative ones ("//evil.example"), and
    backslash variants some browsers treat the same way.
    """
    if next_url and next_url.startswith("/") and not next_url.startswith(("//", "/\\")):
        return next_url
    return "/"


def _signed_in_redirect(user_id: int, target: str = "/") -> RedirectResponse:
    """Start a browser session for `user_id` and redirect to `target`."""
    resp = RedirectResponse(target, status_code=302)
    set_session_cookie(resp, create_session_token(user_id))
    resp.headers["Cache-Control"] = "no-store"
    return resp


def _render_register(request: Request, error: str, email: str, username: str) -> HTMLResponse:
    return templates.TemplateResponse(
        request,
        "register.html",
        {"error_msg": error, "values": {"email": email, "username": username}},
    )


# ---------------------------------------------------------------------------
# Pages
# ---------------------------------------------------------------------------


@router.get("/", response_class=HTMLResponse)
def home(request: Request) -> HTMLResponse:
    user = resolve_session_user(request)
    return templates.TemplateResponse(request, "index.html", {"user": user})


@router.get("/login", response_class=HTMLResponse)
def login_form(request: Request, next: str = "") -> HTMLResponse:
    """Render the login form, carrying ?next= through as a hidden field."""
    if resolve_session_user(request).is_authenticated:
        return RedirectResponse("/", status_code=302)
    return templates.TemplateResponse(
        request,
        "login.html",
        {"error_msg": None, "values": {"email": ""}, "next": _safe_next(next)},
    )


@router.get("/register", response_class=HTMLResponse)
def register_form(request: Request) -> HTMLResponse:
    if resolve_session_user(request).is_authenticated:
        return RedirectResponse("/", status_code=302)
    return templates.TemplateResponse(
        request,
        "register.html",
        {"error_msg": None, "values": {"email": "", "username": ""}},
    )


@router.get("/settings", response_class=HTMLResponse)
def settings_page(request: Request, user: User = Depends(require_session_user)) -> HTMLResponse:
    """Show the bearer token with regenerate and public-profile controls.

    The page's buttons call /api/users/me* with the session cookie.
    """
    resp = templates.TemplateResponse(request, "settings.html", {"user": user})
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Session sign-in / sign-out
# ---------------------------------------------------------------------------


@router.post(
    "/auth/login",
    response_class=HTMLResponse,
    dependencies=[Depends(limiter.limit("login"))],
)
def login_post(
    request: Request,
    email: str = Form(""),
    password: str = Form(""),
    next: str = Form(""),
) -> HTMLResponse:
    """Handle the login form.

    Unknown email and wrong password produce the same message, and
    authenticate_user() spends the same bcrypt time on both.
    """
    email = email.strip()
    error = validate_login_input(email, password)
    user = None
    if error is None:
        store: UserStore = request.app.state.user_store
        user = authenticate_user(store, email, password)
        if user is None:
            logger.info("Failed login from %s", request.client.host if request.client else "unknown")
            error = _INVALID_CREDENTIALS
    if user is None:
        return templates.TemplateResponse(
            request,
            "login.html",
            {"error_msg": error, "values": {"email": email}, "next": _safe_next(next)},
        )

    logger.info("User signed in (user_id=%s)", user.id)
    return _signed_in_redirect(user.id, _safe_next(next))


@router.post(
    "/auth/register",
    response_class=HTMLResponse,
    dependencies=[Depends(limiter.limit("register"))],
)
def register_post(
    request: Request,
    email: str = Form(""),
    password: str = Form(""),
    username: str = Form(""),
) -> HTMLResponse:
    """Create an account with a bearer token and sign it in.

    The existence checks give precise messages in the common case; the
    UNIQUE constraints decide when two registrations race, and the loser is
    told which field collided.
    """
    email = email.strip()
    error = validate_register_input(email, password, username)
    if error is not None:
        return _render_register(request, error, email, username)

    name = normalize_username(username)
    if name in RESERVED_USERNAMES:
        return _render_register(request, "This username is not available", email, username)

    store: UserStore = request.app.state.user_store
    if store.get_by_email(email) is not None:
        return _render_register(request, "This email is already registered", email, username)
    if store.get_by_username(name) is not None:
        return _render_register(request, "Username already taken", email, username)

    new_user = User(
        email=email,
        username=name,
        password_hash=hash_password(password),
        api_token=generate_api_token(),
    )
    try:
        new_user.id = store.create_user(new_user)
    except IntegrityError:
        if store.get_by_email(email) is not None:
            error = "This email is already registered"
        elif store.get_by_username(name) is not None:
            error = "Username already taken"
        else:
            logger.exception("Registration insert failed for username %s", name)
            error = "Failed to create account"
        return _render_register(request, error, email, username)

    logger.info("Account created (user_id=%s, username=%s)", new_user.id, name)
    return _signed_in_redirect(new_user.id, "/")


@router.post("/auth/logout")
def logout(request: Request) -> RedirectResponse:
    """Clear the session cookie and redirect to the login page."""
    resp = RedirectResponse("/login", status_code=302)
    clear_session_cookie(resp)
    return resp


# ---------------------------------------------------------------------------
# Device confirmation (human side)
# ---------------------------------------------------------------------------


@router.get("/auth/device", response_class=HTMLResponse)
def device_form(request: Request, code: str = "", user: User = Depends(require_session_user)) -> HTMLResponse:
    """Render the confirmation form, pre-filled from ?code= when the CLI opened the link."""
    return templates.TemplateResponse(
        request,
        "device.html",
        {"user": user, "user_code": normalize_user_code(code) if code else "", "error_msg": None, "success": False},
    )


@router.post("/auth/device/confirm", response_class=HTMLResponse)
def device_confirm(
    request: Request,
    user_code: str = Form(""),
    user: User = Depends(require_session_user),
) -> HTMLResponse:
    store: UserStore = request.app.state.user_store
    result = confirm_device_code(store, user, user_code)
    if result is not ConfirmResult.APPROVED:
        logger.info("Device confirmation refused (%s, user_id=%s)", result.value, user.id)
    return templates.TemplateResponse(
        request,
        "device.html",
        {
            "user": user,
            "user_code": user_code.strip(),
            "error_msg": _CONFIRM_ERRORS.get(result),
            "success": result is ConfirmResult.APPROVED,
        },
    )
