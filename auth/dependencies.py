"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Two token sources are checked in priority order:
  1. JWT cookie ("access_token") -- set by the web sign-in flow.
  2. Authorization: Bearer <token> header -- API clients.

Both converge on a User object after the same checks: valid signature and
expiry, the user still exists and is active, and the token's password
fingerprint matches the current password (a password change signs out every
existing session).

try_get_current_user() is the soft variant (returns None on failure).
get_current_user() wraps it and raises HTTP 401 if unauthenticated.
require_admin() wraps get_current_user() and raises HTTP 403 if not admin.

policy_context() assembles the auth/policy.py snapshot for a signed-in user
from the stores on app.state and the Starlette session. It is here rather
than in web/ because the API reports the same gates as required_actions.

Layer rule: no imports from api/ or web/. The group store is reached through
app.state, never imported.
"""

from __future__ import annotations

from datetime import datetime, timezone

from fastapi import HTTPException, Request

from auth.models import User
from auth.policy import PolicyContext, parse_timestamp
from auth.tokens import decode_access_token, token_matches_user

# Session key holding the "Configure it later" deadline (ISO string).
SKIP_TWO_FACTOR_KEY = "skip_two_factor"


def _bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:]
    return None


def try_get_current_user(request: Request) -> User | None:
    """Attempt to authenticate the request via cookie or Bearer header.

    Returns the authenticated User on success, None on any failure.
    Never raises -- callers that need a hard 401 should use get_current_user().
    """
    user_store = request.app.state.user_store

    token: str | None = request.cookies.get("access_token") or _bearer_token(request)
    if not token:
        return None
    payload = decode_access_token(token)
    if payload is None:
        return None
    user = user_store.get_by_id(payload["user_id"])
    if user is None or not user.is_active or user.is_ghost:
        return None
    if not token_matches_user(payload, user):
        return None
    return user


def get_current_user(request: Request) -> User:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(user: User = Depends(get_current_user)): ...
    """
    user = try_get_current_user(request)
    if user is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return user


def require_admin(request: Request) -> User:
    """Require admin role. Raises HTTP 401 if unauthenticated, HTTP 403 if not admin."""
    user = get_current_user(request)
    if not user.is_admin:
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "Admin access required."},
        )
    return user


def _skip_deadline(request: Request) -> datetime | None:
    raw = request.session.get(SKIP_TWO_FACTOR_KEY)
    if not raw:
        return None
    try:
        return parse_timestamp(raw)
    except ValueError:
        return None


def policy_context(request: Request, user: User, now: datetime | None = None) -> PolicyContext:
    """Snapshot of everything auth/policy.py needs to decide the user's gates."""
    user_store = request.app.state.user_store
    group_store = request.app.state.group_store
    term = user_store.latest_term()
    return PolicyContext(
        user=user,
        app_settings=user_store.get_app_settings(),
        now=now or datetime.now(timezone.utc),
        groups=group_store.groups_requiring_two_factor(user.id),
        latest_term_id=term.id if term else None,
        skip_two_factor_until=_skip_deadline(request),
    )
