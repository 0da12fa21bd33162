"""
api/routes/v1/auth.py -- JSON sign-in and the admin user API.

Routes:
  POST   /api/v1/auth/login                         -- password (+ OTP) sign-in; sets JWT cookie
  POST   /api/v1/auth/logout                        -- clears cookie; 200
  GET    /api/v1/auth/me                            -- current user info (requires auth)
  GET    /api/v1/auth/providers                     -- list enabled OAuth providers (public)
  POST   /api/v1/auth/users                         -- create user (admin only)
  GET    /api/v1/auth/users                         -- list all users (admin only)
  PATCH  /api/v1/auth/users/{id}                    -- update role/state/password expiry (admin only)
  DELETE /api/v1/auth/users/{id}                    -- delete user (admin only)
  POST   /api/v1/auth/users/{id}/disable_two_factor -- reset a user's 2FA (admin only)

Security:
  [H2] POST /login is rate-limited per IP (Settings.login_rate_limit).
  [C1] Password checks go through authenticate_user(), which spends a bcrypt
       round even for unknown logins.
  [M4] PATCH/DELETE /users/{id} block self-lockout and removing the last admin.
  [M5] Cache-Control: no-store on login responses.
  A wrong OTP counts toward the same lockout as a wrong password.
"""

from __future__ import annotations

import logging
import secrets

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError

from api.limiter import limiter
from api.models import (
    LoginRequest,
    LoginResponse,
    MeResponse,
    OAuthProviderInfo,
    UserCreate,
    UserPatch,
    UserResponse,
)
from auth.dependencies import get_current_user, policy_context, require_admin
from auth.models import User
from auth.oauth import get_enabled_providers
from auth.otp import verify_otp_attempt
from auth.policy import pending_gates
from auth.store import UserStore
from auth.tokens import (
    BAD_CREDENTIALS,
    BLOCKED,
    LOCKED,
    authenticate_user,
    clear_auth_cookie,
    create_access_token,
    hash_password,
    set_auth_cookie,
)
from core import messages
from core.config import get_settings

logger = logging.getLogger("gatehouse.api.auth")

_settings = get_settings()

# Failure code -> (HTTP status, user-facing message)
_FAILURES: dict[str, tuple[int, str]] = {
    BAD_CREDENTIALS: (401, messages.INVALID_LOGIN),
    BLOCKED: (403, messages.ACCOUNT_BLOCKED),
    LOCKED: (423, messages.ACCOUNT_LOCKED),
    "two_factor_required": (401, messages.TWO_FACTOR_REQUIRED),
    "invalid_otp": (401, messages.INVALID_OTP),
    "password_authentication_disabled": (403, messages.PASSWORD_AUTH_DISABLED),
}

# Auth policy:
# - POST   /auth/login, /auth/logout, /auth/providers: public
# - GET    /auth/me:                                   requires auth (get_current_user)
# - everything under /auth/users:                      requires admin (require_admin)
router = APIRouter()


def _failure(code: str) -> JSONResponse:
    status, message = _FAILURES[code]
    resp = JSONResponse(status_code=status, content={"error": {"code": code, "message": message}})
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def _client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/login", response_model=LoginResponse)
@limiter.limit(_settings.login_rate_limit)  # [H2] brute-force mitigation
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with login and password, plus an OTP for 2FA accounts.

    Uses authenticate_user() which includes timing equalization [C1]. Returns
    the same "bad_credentials" error for an unknown login and a wrong password.

    2FA accounts without otp_attempt get 401 two_factor_required so the
    client knows to ask for a code and resubmit everything in one request.
    """
    user_store: UserStore = request.app.state.user_store
    if not user_store.get_app_settings().password_authentication_enabled:
        return _failure("password_authentication_disabled")

    user, failure = authenticate_user(user_store, body.login, body.password)
    if user is None:
        logger.info("API sign-in failed for %r: %s", body.login, failure)
        return _failure(failure)

    if user.two_factor_enabled:
        if not body.otp_attempt:
            return _failure("two_factor_required")
        if not verify_otp_attempt(user_store, user, body.otp_attempt):
            user_store.record_failed_attempt(user.id, _settings.maximum_failed_attempts)
            logger.info("API sign-in for %r rejected: invalid two-factor code", user.username)
            return _failure("invalid_otp")

    user_store.record_sign_in(user.id, _client_ip(request))
    user = user_store.get_by_id(user.id)
    expires_in = _settings.remember_me_expire_seconds if body.remember_me else _settings.token_expire_seconds
    token = create_access_token(user, expires_in)
    gates = pending_gates(policy_context(request, user))
    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            access_token=token,
            token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
            expires_in=expires_in,
            username=user.username,
            role=user.role,
            required_actions=[g.value for g in gates],
        ).model_dump(),
    )
    set_auth_cookie(resp, token, expires_in)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.post("/auth/logout")
async def logout(request: Request) -> JSONResponse:
    """Drop the auth cookie and the signed session."""
    request.session.clear()
    resp = JSONResponse(content={"message": messages.SIGNED_OUT})
    clear_auth_cookie(resp)
    return resp


@router.get("/auth/providers", response_model=list[OAuthProviderInfo])
async def list_providers(request: Request) -> list[OAuthProviderInfo]:
    """Return the OAuth providers that are configured and switched on."""
    app_settings = request.app.state.user_store.get_app_settings()
    return [OAuthProviderInfo(**p) for p in get_enabled_providers(app_settings)]


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=MeResponse)
def me(request: Request, current_user: User = Depends(get_current_user)) -> MeResponse:
    """Return identity information and pending account gates for the caller."""
    gates = pending_gates(policy_context(request, current_user))
    return MeResponse(
        user_id=current_user.id,
        username=current_user.username,
        email=current_user.email,
        role=current_user.role,
        two_factor_enabled=current_user.two_factor_enabled,
        oauth_provider=current_user.oauth_provider,
        required_actions=[g.value for g in gates],
    )


# ---------------------------------------------------------------------------
# User management (admin only)
# ---------------------------------------------------------------------------


def _get_target(user_store: UserStore, user_id: int) -> User:
    target = user_store.get_by_id(user_id)
    if target is None or target.is_ghost:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "User not found."},
        )
    return target


def _guard_last_admin(user_store: UserStore, target: User, current_user: User, action: str) -> None:
    """[M4] Refuse to lock out the caller or the last active admin."""
    if target.id == current_user.id:
        raise HTTPException(
            status_code=400,
            detail={"code": "self_modification", "message": f"You cannot {action} your own account."},
        )
    if target.is_admin and target.is_active and user_store.count_active_admins() <= 1:
        raise HTTPException(
            status_code=400,
            detail={"code": "last_admin", "message": f"Cannot {action} the last active admin account."},
        )


@router.post("/auth/users", response_model=UserResponse, status_code=201)
def create_user(
    request: Request,
    body: UserCreate,
    current_user: User = Depends(require_admin),
) -> UserResponse:
    """Create a user account. Admin only.

    Accounts created without a password get a random one and must set their
    own through a password reset or sign in with OAuth.
    """
    user_store: UserStore = request.app.state.user_store

    new_user = User(
        username=body.username,
        email=body.email,
        name=body.name,
        role=body.role.value,
        hashed_password=hash_password(body.password or secrets.token_urlsafe(32)),
        password_automatically_set=body.password is None,
    )
    try:
        user_id = user_store.create_user(new_user)
    except IntegrityError as exc:
        raise HTTPException(
            status_code=409,
            detail={"code": "conflict", "message": "A user with that username or email already exists."},
        ) from exc

    logger.info("Admin %r created user %r", current_user.username, body.username)
    return _user_to_response(user_store.get_by_id(user_id))


@router.get("/auth/users", response_model=list[UserResponse])
def list_users(
    request: Request,
    current_user: User = Depends(require_admin),
) -> list[UserResponse]:
    """Every human account, ordered by username. Admin only."""
    user_store: UserStore = request.app.state.user_store
    return [_user_to_response(u) for u in user_store.list_users()]


@router.patch("/auth/users/{user_id}", response_model=UserResponse)
def update_user(
    request: Request,
    user_id: int,
    body: UserPatch,
    current_user: User = Depends(require_admin),
) -> UserResponse:
    """Update a user's role, state or password expiry. Admin only."""
    user_store: UserStore = request.app.state.user_store
    target = _get_target(user_store, user_id)

    updates: dict = {}
    if body.role is not None and body.role.value != target.role:
        if body.role.value != "admin":
            _guard_last_admin(user_store, target, current_user, "demote")
        updates["role"] = body.role.value
    if body.state is not None and body.state.value != target.state:
        if body.state.value == "blocked":
            _guard_last_admin(user_store, target, current_user, "block")
        updates["state"] = body.state.value
    if body.password_expires_at is not None:
        updates["password_expires_at"] = body.password_expires_at.isoformat()

    if not updates:
        raise HTTPException(
            status_code=400,
            detail={"code": "no_changes", "message": "No fields to update."},
        )

    user_store.update_user(user_id, **updates)
    logger.info("Admin %r updated user %r: %s", current_user.username, target.username, sorted(updates))
    return _user_to_response(user_store.get_by_id(user_id))


@router.delete("/auth/users/{user_id}", status_code=204)
def delete_user(
    request: Request,
    user_id: int,
    current_user: User = Depends(require_admin),
) -> Response:
    """Delete a user and their group memberships."""
    user_store: UserStore = request.app.state.user_store
    target = _get_target(user_store, user_id)
    _guard_last_admin(user_store, target, current_user, "delete")
    request.app.state.group_store.remove_user(target.id)
    user_store.delete_user(target.id)
    logger.info("Admin %r deleted user %r", current_user.username, target.username)
    return Response(status_code=204)


@router.post("/auth/users/{user_id}/disable_two_factor", response_model=UserResponse)
def disable_two_factor(
    request: Request,
    user_id: int,
    current_user: User = Depends(require_admin),
) -> UserResponse:
    """Turn off 2FA for a user who lost their device and backup codes."""
    user_store: UserStore = request.app.state.user_store
    target = _get_target(user_store, user_id)
    user_store.disable_two_factor(target.id)
    logger.info("Admin %r disabled two-factor for %r", current_user.username, target.username)
    return _user_to_response(user_store.get_by_id(target.id))


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _user_to_response(user: User | None) -> UserResponse:
    if user is None:
        raise HTTPException(
            status_code=500,
            detail={"code": "internal_error", "message": "User not found after write."},
        )
    return UserResponse(
        id=user.id,
        username=user.username,
        email=user.email,
        name=user.name,
        role=user.role,
        state=user.state,
        two_factor_enabled=user.two_factor_enabled,
        password_expires_at=user.password_expires_at,
        sign_in_count=user.sign_in_count,
        last_sign_in_at=user.last_sign_in_at,
        oauth_provider=user.oauth_provider,
        created_at=user.created_at or "",
    )
