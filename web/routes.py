"""
web/routes.py -- Sign-in, sign-up, password reset and OAuth pages.

These routes serve server-rendered HTML. They share app.state with the API
routes (same user store, group store, OAuth registry) but return HTML and
redirects instead of JSON. Account pages reached after sign-in (terms, 2FA
enrollment, expired password, profile) live in web/profile.py.

Route registration order matters: GET /users/password/new and
GET /users/password/edit are registered before anything that could capture
"new" or "edit" as a path parameter, and /users/auth/{provider}/callback is
named so url_for() can build the redirect URI.

Routes:
  GET  /                                  -- dashboard (auth required, every gate passed)
  GET  /users/sign_in                     -- sign-in page (tabs: sign in, register)
  POST /users/sign_in                     -- password step, or OTP step when otp_attempt is posted
  POST /users/sign_out                    -- clear cookie and session
  POST /users                             -- registration (when sign-up is enabled)
  GET  /users/password/new                -- "forgot password" form
  POST /users/password                    -- send reset instructions
  GET  /users/password/edit               -- new password form (reset token in query)
  POST /users/password/edit               -- set the new password
  GET  /users/auth/{provider}             -- OAuth redirect to provider
  GET  /users/auth/{provider}/callback    -- OAuth callback handler

Security:
  [C1] Password checks go through authenticate_user() (timing equalization).
  [C2] Return-to targets pass through safe_next().
  [M5] Cache-Control: no-store on every response that issues a session.
  Every POST verifies the CSRF token (auth/csrf.py).
"""

import logging
import re
import secrets
from typing import Optional

from authlib.integrations.starlette_client import OAuthError
from fastapi import APIRouter, Depends, Form, Request
from fastapi.responses import HTMLResponse, RedirectResponse
from sqlalchemy.exc import IntegrityError

from api.limiter import limiter
from auth.csrf import verify_csrf
from auth.dependencies import try_get_current_user
from auth.models import TEMP_EMAIL_PREFIX, User
from auth.oauth import OAuthIdentity, get_enabled_providers, get_oauth_user_info, provider_enabled
from auth.otp import verify_otp_attempt
from auth.store import UserStore
from auth.tokens import (
    BAD_CREDENTIALS,
    BLOCKED,
    LOCKED,
    authenticate_user,
    clear_auth_cookie,
    digest_reset_token,
    generate_reset_token,
    hash_password,
    is_locked,
    password_fingerprint,
    reset_token_expired,
)
from core import mailer, messages
from core.config import get_settings
from web.helpers import (
    OTP_PWD_KEY,
    OTP_REMEMBER_KEY,
    OTP_USER_KEY,
    RETURN_TO_KEY,
    SIGN_IN_PATH,
    clear_pending_two_factor,
    complete_sign_in,
    flash,
    redirect,
    remember_pending_two_factor,
    render,
    render_two_factor_prompt,
    require_user,
    safe_next,
)

logger = logging.getLogger("gatehouse.web")

router = APIRouter()

_settings = get_settings()

_FAILURE_MESSAGES: dict[str, str] = {
    BAD_CREDENTIALS: messages.INVALID_LOGIN,
    BLOCKED: messages.ACCOUNT_BLOCKED,
    LOCKED: messages.ACCOUNT_LOCKED,
}

_USERNAME_RE = re.compile(r"^[A-Za-z0-9_.\-]+$")


# ---------------------------------------------------------------------------
# Form validation helpers
# ---------------------------------------------------------------------------


def password_errors(password: str, confirmation: str) -> list[str]:
    """Validation errors for a newly chosen password, in display order."""
    errors: list[str] = []
    if len(password) < _settings.password_min_length:
        errors.append(messages.PASSWORD_TOO_SHORT.format(minimum=_settings.password_min_length))
    if password != confirmation:
        errors.append(messages.PASSWORD_CONFIRMATION_MISMATCH)
    return errors


def email_valid(email: str) -> bool:
    local, _, domain = email.partition("@")
    return bool(local) and "." in domain and not email.startswith(TEMP_EMAIL_PREFIX)


# ---------------------------------------------------------------------------
# GET / -- dashboard
# ---------------------------------------------------------------------------


@router.get("/", response_class=HTMLResponse)
def dashboard(request: Request) -> HTMLResponse:
    user, redirect_resp = require_user(request)
    if redirect_resp:
        return redirect_resp
    return render(request, "dashboard.html", user=user)


# ---------------------------------------------------------------------------
# Sign-in page
# ---------------------------------------------------------------------------


def _initial_setup_user(user_store: UserStore) -> Optional[User]:
    """The seeded admin, while it is the only account and has no chosen password."""
    if user_store.count_users() != 1:
        return None
    only = user_store.list_users()[0]
    if only.is_admin and only.password_automatically_set:
        return only
    return None


def _render_sign_in(
    request: Request,
    active_tab: str = "login",
    errors: Optional[list[str]] = None,
    form: Optional[dict] = None,
    status_code: int = 200,
) -> HTMLResponse:
    app_settings = request.app.state.user_store.get_app_settings()
    tabs = [{"id": "login", "label": "Sign in"}]
    if app_settings.signup_enabled:
        tabs.append({"id": "register", "label": "Register"})
    if active_tab not in {t["id"] for t in tabs}:
        active_tab = "login"
    return render(
        request,
        "sign_in.html",
        {
            "tabs": tabs,
            "active_tab": active_tab,
            "providers": get_enabled_providers(app_settings),
            "password_authentication_enabled": app_settings.password_authentication_enabled,
            "errors": errors or [],
            "form": form or {},
        },
        status_code=status_code,
    )


@router.get("/users/sign_in", response_class=HTMLResponse)
def sign_in_form(request: Request) -> HTMLResponse:
    """Render the sign-in page, or start first-run password setup."""
    if try_get_current_user(request) is not None:
        flash(request, messages.ALREADY_SIGNED_IN, "alert")
        return redirect("/")

    user_store: UserStore = request.app.state.user_store
    root = _initial_setup_user(user_store)
    if root is not None:
        raw, digest = generate_reset_token()
        user_store.set_reset_password_token(root.id, digest)
        flash(request, messages.INITIAL_PASSWORD)
        logger.info("Initial setup: redirecting to password creation for %r", root.username)
        return redirect(f"/users/password/edit?reset_password_token={raw}")

    next_url = request.query_params.get("next")
    if next_url:
        request.session[RETURN_TO_KEY] = safe_next(next_url)  # [C2]
    return _render_sign_in(request)


@router.post("/users/sign_in", response_class=HTMLResponse, dependencies=[Depends(verify_csrf)])
@limiter.limit(_settings.login_rate_limit)  # [H2] brute-force mitigation
def sign_in(
    request: Request,
    login: str = Form(default=""),
    password: str = Form(default=""),
    otp_attempt: Optional[str] = Form(default=None),
    remember_me: str = Form(default="0"),
):
    """Handle both sign-in steps.

    A post carrying otp_attempt is the second step for the user parked in the
    session by the first. Anything else is the password step.
    """
    if otp_attempt is not None:
        return _otp_step(request, otp_attempt)

    user_store: UserStore = request.app.state.user_store
    if not user_store.get_app_settings().password_authentication_enabled:
        flash(request, messages.PASSWORD_AUTH_DISABLED, "alert")
        return redirect(SIGN_IN_PATH)

    user, failure = authenticate_user(user_store, login, password)  # [C1]
    if user is None:
        logger.info("Sign-in failed for %r: %s", login, failure)
        flash(request, _FAILURE_MESSAGES[failure], "alert")
        return redirect(SIGN_IN_PATH)

    remember = remember_me in ("1", "true", "on")
    if user.two_factor_enabled:
        remember_pending_two_factor(request, user, remember)
        return render_two_factor_prompt(request, remember)
    return complete_sign_in(request, user, remember)


def _otp_step(request: Request, otp_attempt: str):
    user_store: UserStore = request.app.state.user_store
    user_id = request.session.get(OTP_USER_KEY)
    user = user_store.get_by_id(user_id) if user_id else None
    if user is None or request.session.get(OTP_PWD_KEY) != password_fingerprint(user.hashed_password):
        # Nothing pending, or the password changed since the first step.
        clear_pending_two_factor(request)
        return redirect(SIGN_IN_PATH)

    remember = bool(request.session.get(OTP_REMEMBER_KEY))
    if user.is_blocked:
        clear_pending_two_factor(request)
        flash(request, messages.ACCOUNT_BLOCKED, "alert")
        return redirect(SIGN_IN_PATH)
    if is_locked(user):
        clear_pending_two_factor(request)
        flash(request, messages.ACCOUNT_LOCKED, "alert")
        return redirect(SIGN_IN_PATH)

    if verify_otp_attempt(user_store, user, otp_attempt):
        return complete_sign_in(request, user, remember)

    logger.info("Invalid two-factor code for %r", user.username)
    if user_store.record_failed_attempt(user.id, _settings.maximum_failed_attempts):
        clear_pending_two_factor(request)
        flash(request, messages.ACCOUNT_LOCKED, "alert")
        return redirect(SIGN_IN_PATH)
    return render_two_factor_prompt(request, remember, alert=messages.INVALID_OTP)


@router.post("/users/sign_out", dependencies=[Depends(verify_csrf)])
def sign_out(request: Request) -> RedirectResponse:
    """Clear the JWT cookie and the session, then return to the sign-in page."""
    request.session.clear()
    flash(request, messages.SIGNED_OUT)
    resp = redirect(SIGN_IN_PATH)
    clear_auth_cookie(resp)
    return resp


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


@router.post("/users", response_class=HTMLResponse, dependencies=[Depends(verify_csrf)])
def register(
    request: Request,
    name: str = Form(default=""),
    username: str = Form(default=""),
    email: str = Form(default=""),
    password: str = Form(default=""),
    password_confirmation: str = Form(default=""),
):
    user_store: UserStore = request.app.state.user_store
    if not user_store.get_app_settings().signup_enabled:
        flash(request, messages.SIGNUP_DISABLED, "alert")
        return redirect(SIGN_IN_PATH)

    username = username.strip()
    email = email.strip().lower()
    form = {"name": name, "username": username, "email": email}
    errors: list[str] = []
    if not _USERNAME_RE.match(username):
        errors.append("Username can contain only letters, digits, '_', '-' and '.'")
    if not email_valid(email):
        errors.append(messages.EMAIL_INVALID)
    errors.extend(password_errors(password, password_confirmation))
    if errors:
        return _render_sign_in(request, "register", errors, form, status_code=422)

    new_user = User(
        username=username,
        email=email,
        name=name.strip(),
        hashed_password=hash_password(password),
    )
    try:
        user_id = user_store.create_user(new_user)
    except IntegrityError:
        return _render_sign_in(
            request, "register", ["Username or email has already been taken"], form, status_code=422
        )

    logger.info("New account registered: %r", username)
    return complete_sign_in(request, user_store.get_by_id(user_id), notice=messages.SIGNED_UP)


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


@router.get("/users/password/new", response_class=HTMLResponse)
def password_new(request: Request) -> HTMLResponse:
    return render(request, "password_new.html")


@router.post("/users/password", dependencies=[Depends(verify_csrf)])
def password_create(request: Request, email: str = Form(default="")) -> RedirectResponse:
    """Send reset instructions. The response never reveals whether the email exists."""
    user_store: UserStore = request.app.state.user_store
    user = user_store.get_by_email(email) if email.strip() else None
    if user is not None and not user.is_ghost:
        raw, digest = generate_reset_token()
        user_store.set_reset_password_token(user.id, digest)
        mailer.send_reset_password_instructions(user.email, user.username, raw)
    flash(request, messages.PASSWORD_RESET_SENT)
    return redirect(SIGN_IN_PATH)


@router.get("/users/password/edit", response_class=HTMLResponse)
def password_edit(request: Request, reset_password_token: str = "") -> HTMLResponse:
    if not reset_password_token:
        flash(request, messages.RESET_TOKEN_INVALID, "alert")
        return redirect(SIGN_IN_PATH)
    return render(request, "password_edit.html", {"reset_password_token": reset_password_token})


@router.post("/users/password/edit", response_class=HTMLResponse, dependencies=[Depends(verify_csrf)])
def password_update(
    request: Request,
    reset_password_token: str = Form(default=""),
    password: str = Form(default=""),
    password_confirmation: str = Form(default=""),
):
    user_store: UserStore = request.app.state.user_store
    user = user_store.get_by_reset_token(digest_reset_token(reset_password_token)) if reset_password_token else None
    if user is None or user.is_ghost:
        return render(
            request,
            "password_edit.html",
            {"reset_password_token": reset_password_token, "errors": [messages.RESET_TOKEN_INVALID]},
            status_code=422,
        )
    if reset_token_expired(user):
        flash(request, messages.RESET_TOKEN_EXPIRED, "alert")
        return redirect("/users/password/new")

    errors = password_errors(password, password_confirmation)
    if errors:
        return render(
            request,
            "password_edit.html",
            {"reset_password_token": reset_password_token, "errors": errors},
            status_code=422,
        )

    user_store.set_password(user.id, hash_password(password))
    logger.info("Password reset completed for %r", user.username)
    flash(request, messages.PASSWORD_UPDATED_NOT_ACTIVE)
    return redirect(SIGN_IN_PATH)


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------


def _unique_username(user_store: UserStore, identity: OAuthIdentity) -> str:
    base = identity.nickname or (identity.email or "").split("@")[0]
    base = re.sub(r"[^A-Za-z0-9_.\-]", "", base) or "user"
    candidate, n = base, 1
    while user_store.get_by_username(candidate) is not None:
        candidate = f"{base}{n}"
        n += 1
    return candidate


def _resolve_oauth_user(user_store: UserStore, provider: str, identity: OAuthIdentity) -> Optional[User]:
    """Find, link or create the local account for an external identity.

    1. Already linked: (provider, subject) lookup.
    2. Unlinked local account with the same verified email: link it [H1].
    3. oauth_auto_create_users: create one. Without a verified email that is
       still free, the account gets a temporary email and is asked for a real
       one after sign-in.
    """
    user = user_store.get_by_oauth(provider, identity.subject)
    if user is not None:
        return user

    if identity.email and identity.email_verified:
        candidate = user_store.get_by_email(identity.email)
        if candidate is not None and candidate.oauth_subject is None and not candidate.is_ghost:
            user_store.link_oauth(candidate.id, provider, identity.subject)
            logger.info("Linked %s identity to existing account %r", provider, candidate.username)
            return user_store.get_by_id(candidate.id)

    if not _settings.oauth_auto_create_users:
        return None

    username = _unique_username(user_store, identity)
    email = identity.email if identity.email_verified else None
    if email is None or user_store.get_by_email(email) is not None:
        email = f"{TEMP_EMAIL_PREFIX}{username}@gatehouse.localhost"
    new_user = User(
        username=username,
        email=email,
        name=identity.nickname or username,
        hashed_password=hash_password(secrets.token_urlsafe(32)),
        password_automatically_set=True,
        oauth_provider=provider,
        oauth_subject=identity.subject,
    )
    user_id = user_store.create_user(new_user)
    logger.info("Created account %r from %s sign-in", username, provider)
    return user_store.get_by_id(user_id)


@router.get("/users/auth/{provider}")
async def oauth_redirect(request: Request, provider: str):
    """Redirect the browser to the OAuth provider's authorization page.

    The provider name is checked against the enabled list before anything is
    looked up in the registry.
    """
    app_settings = request.app.state.user_store.get_app_settings()
    client = request.app.state.oauth.create_client(provider) if provider_enabled(provider, app_settings) else None
    if client is None:
        flash(request, messages.OAUTH_FAILED, "alert")
        return redirect(SIGN_IN_PATH)
    redirect_uri = str(request.url_for("oauth_callback", provider=provider))
    return await client.authorize_redirect(request, redirect_uri)


@router.get("/users/auth/{provider}/callback", name="oauth_callback")
async def oauth_callback(request: Request, provider: str):
    """Finish an OAuth sign-in.

    Flow:
      1. Exchange the authorization code (authlib checks the session state).
      2. Normalize the identity.
      3. Find, link or create the local account.
      4. Refuse ghost, blocked and locked accounts.
      5. 2FA accounts continue to the OTP step exactly like password sign-in.
    """
    user_store: UserStore = request.app.state.user_store
    app_settings = user_store.get_app_settings()
    client = request.app.state.oauth.create_client(provider) if provider_enabled(provider, app_settings) else None
    if client is None:
        flash(request, messages.OAUTH_FAILED, "alert")
        return redirect(SIGN_IN_PATH)

    try:
        token = await client.authorize_access_token(request)
        identity = await get_oauth_user_info(client, provider, token)
    except (OAuthError, ValueError):
        logger.exception("OAuth sign-in failed for provider %r", provider)
        flash(request, messages.OAUTH_FAILED, "alert")
        return redirect(SIGN_IN_PATH)

    user = _resolve_oauth_user(user_store, provider, identity)
    if user is None or user.is_ghost:
        flash(request, messages.NOT_PROVISIONED, "alert")
        return redirect(SIGN_IN_PATH)
    if user.is_blocked:
        flash(request, messages.ACCOUNT_BLOCKED, "alert")
        return redirect(SIGN_IN_PATH)
    if is_locked(user):
        flash(request, messages.ACCOUNT_LOCKED, "alert")
        return redirect(SIGN_IN_PATH)

    if user.two_factor_enabled:
        remember_pending_two_factor(request, user, False)
        return render_two_factor_prompt(request, False)
    return complete_sign_in(request, user)
