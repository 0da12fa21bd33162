"""
web/helpers.py -- Shared plumbing for the server-rendered pages.

Everything the two web routers (web/routes.py, web/profile.py) do the same
way lives here:

  templates       -- the Jinja2Templates instance, with csrf_token() exposed
                     as a template global.
  flash()         -- queue a one-shot message in the Starlette session; the
                     next rendered page shows and drops it.
  render()        -- TemplateResponse with flashes, current user and CSRF
                     token filled in.
  safe_next()     -- open-redirect guard for return-to targets [C2].
  require_user()  -- sign-in check plus policy gates for protected pages.
  complete_sign_in() -- the single place a browser session is issued.

Gate redirects:
  A protected page passes the gate it exists to resolve as `allow`. That gate
  and every gate after it in enforcement order are ignored, so the terms page
  is reachable while 2FA is still pending, but the 2FA page is not reachable
  while terms are still pending.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional
from urllib.parse import quote

from fastapi import Request
from fastapi.responses import HTMLResponse, RedirectResponse
from fastapi.templating import Jinja2Templates

from auth.csrf import get_csrf_token, rotate_csrf_token
from auth.dependencies import SKIP_TWO_FACTOR_KEY, policy_context, try_get_current_user
from auth.models import User
from auth.policy import Gate, pending_gate
from auth.tokens import create_access_token, password_fingerprint, set_auth_cookie
from core import messages
from core.config import get_settings

logger = logging.getLogger("gatehouse.web")

templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))
templates.env.globals["csrf_token"] = get_csrf_token

_settings = get_settings()

SIGN_IN_PATH = "/users/sign_in"

# Session keys
_FLASH_KEY = "_flashes"
RETURN_TO_KEY = "user_return_to"
OTP_USER_KEY = "otp_user_id"
OTP_PWD_KEY = "otp_pwd"
OTP_REMEMBER_KEY = "otp_remember_me"

_GATE_ORDER = [Gate.TERMS, Gate.TWO_FACTOR, Gate.PASSWORD_EXPIRED, Gate.EMAIL_REQUIRED]


# ---------------------------------------------------------------------------
# Flash messages
# ---------------------------------------------------------------------------


def flash(request: Request, message: str, category: str = "notice") -> None:
    """Queue a message for the next rendered page. category: notice | alert."""
    queued = list(request.session.get(_FLASH_KEY, []))
    queued.append([category, message])
    request.session[_FLASH_KEY] = queued


def pop_flashes(request: Request) -> list[tuple[str, str]]:
    return [(c, m) for c, m in request.session.pop(_FLASH_KEY, [])]


def render(
    request: Request,
    name: str,
    context: Optional[dict] = None,
    status_code: int = 200,
    user: Optional[User] = None,
) -> HTMLResponse:
    """Render a page. Pending flashes are consumed here."""
    ctx = dict(context or {})
    ctx.setdefault("current_user", user)
    ctx["flashes"] = pop_flashes(request)
    return templates.TemplateResponse(request, name, ctx, status_code=status_code)


# ---------------------------------------------------------------------------
# Redirect helpers
# ---------------------------------------------------------------------------


def safe_next(next_url: Optional[str]) -> str:
    """Validate a post-sign-in redirect target. Only accept relative paths. [C2]

    Rejects absolute URLs and protocol-relative "//host" forms, both of which
    would send the browser off-site.
    """
    if next_url and next_url.startswith("/") and not next_url.startswith("//") and "\\" not in next_url:
        return next_url
    return "/"


def redirect(url: str) -> RedirectResponse:
    return RedirectResponse(url, status_code=302)


def _request_path(request: Request) -> str:
    path = request.url.path
    if request.url.query:
        path += "?" + request.url.query
    return path


def gate_redirect(request: Request, gate: Gate) -> RedirectResponse:
    """Send the user to the page that resolves the given gate."""
    if gate is Gate.TERMS:
        return redirect(f"/-/users/terms?redirect={quote(_request_path(request), safe='/')}")
    if gate is Gate.TWO_FACTOR:
        return redirect("/profile/two_factor_auth")
    if gate is Gate.PASSWORD_EXPIRED:
        return redirect("/profile/password/new")
    flash(request, messages.EMAIL_REQUIRED)
    return redirect("/profile")


def require_user(request: Request, allow: Optional[Gate] = None) -> tuple[Optional[User], Optional[RedirectResponse]]:
    """Check that the request is signed in and has no pending gate.

    Returns (user, None) when the page may render, (None, redirect) otherwise.
    Call at the top of protected route handlers:
        user, redirect = require_user(request)
        if redirect:
            return redirect

    Unauthenticated visitors are sent to the sign-in page. The requested path
    is remembered for after sign-in and a notice is flashed, except for the
    root page, which redirects silently.
    """
    user = try_get_current_user(request)
    if user is None:
        path = _request_path(request)
        if request.url.path != "/":
            request.session[RETURN_TO_KEY] = path
            flash(request, messages.UNAUTHENTICATED, "alert")
        return None, redirect(SIGN_IN_PATH)

    skip = tuple(_GATE_ORDER[_GATE_ORDER.index(allow):]) if allow else ()
    gate = pending_gate(policy_context(request, user), skip=skip)
    if gate is not None:
        return None, gate_redirect(request, gate)
    return user, None


# ---------------------------------------------------------------------------
# Sign-in completion
# ---------------------------------------------------------------------------


def remember_pending_two_factor(request: Request, user: User, remember_me: bool) -> None:
    """Park a password-verified 2FA user in the session until the OTP step."""
    request.session[OTP_USER_KEY] = user.id
    request.session[OTP_PWD_KEY] = password_fingerprint(user.hashed_password)
    request.session[OTP_REMEMBER_KEY] = bool(remember_me)


def clear_pending_two_factor(request: Request) -> None:
    for key in (OTP_USER_KEY, OTP_PWD_KEY, OTP_REMEMBER_KEY):
        request.session.pop(key, None)


def render_two_factor_prompt(
    request: Request, remember_me: bool, alert: Optional[str] = None, status_code: int = 200
) -> HTMLResponse:
    return render(
        request,
        "two_factor.html",
        {"remember_me": "1" if remember_me else "0", "alert": alert},
        status_code=status_code,
    )


def complete_sign_in(
    request: Request, user: User, remember_me: bool = False, notice: str = messages.SIGNED_IN
) -> RedirectResponse:
    """Issue the session for a user who passed every sign-in step.

    Stamps the trackable attributes, rotates the CSRF token, drops any
    half-finished 2FA state and stale skip deadline, then redirects to the
    remembered page. Pending gates are enforced there by require_user().
    """
    user_store = request.app.state.user_store
    ip = request.client.host if request.client else None
    user_store.record_sign_in(user.id, ip)

    clear_pending_two_factor(request)
    request.session.pop(SKIP_TWO_FACTOR_KEY, None)
    rotate_csrf_token(request)
    target = safe_next(request.session.pop(RETURN_TO_KEY, None))

    expire = _settings.remember_me_expire_seconds if remember_me else _settings.token_expire_seconds
    token = create_access_token(user, expire)
    resp = redirect(target)
    set_auth_cookie(resp, token, expire)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    flash(request, notice)
    logger.info("User %r signed in from %s", user.username, ip)
    return resp


def reissue_session(response, user: User) -> None:
    """Refresh the cookie after a password change so the current browser stays signed in.

    Changing the password invalidates every token carrying the old
    fingerprint, including this browser's.
    """
    set_auth_cookie(response, create_access_token(user))
