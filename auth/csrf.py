"""
auth/csrf.py -- Synchronizer-token CSRF protection for web forms.

The token is a random value kept in the signed Starlette session. Templates
render it twice:
  - <input type="hidden" name="authenticity_token"> in every form.
  - <meta name="csrf-token"> in the layout, for scripts that send it back in
    the X-CSRF-Token header.

verify_csrf() is a FastAPI dependency. State-changing web routes declare it
and a missing or wrong token ends the request with HTTP 422 before the
handler body runs. Comparison is constant-time.

The auth cookie is samesite=lax, which already stops most cross-site POSTs;
the token covers same-site attackers and browsers that ignore SameSite.

Layer rule: no imports from api/, web/ or groups/.
"""

from __future__ import annotations

import hmac
import logging
import secrets

from fastapi import Form, HTTPException, Request

from core.config import get_settings

logger = logging.getLogger("gatehouse.auth.csrf")

SESSION_KEY = "_csrf_token"
FORM_FIELD = "authenticity_token"
HEADER_NAME = "X-CSRF-Token"


def get_csrf_token(request: Request) -> str:
    """Return the session's CSRF token, creating one on first use."""
    token = request.session.get(SESSION_KEY)
    if not token:
        token = secrets.token_urlsafe(32)
        request.session[SESSION_KEY] = token
    return token


def rotate_csrf_token(request: Request) -> str:
    """Issue a fresh token. Called when the signed-in identity changes."""
    request.session.pop(SESSION_KEY, None)
    return get_csrf_token(request)


def csrf_token_valid(request: Request, submitted: str | None) -> bool:
    expected = request.session.get(SESSION_KEY)
    if not expected or not submitted:
        return False
    return hmac.compare_digest(expected, submitted)


def verify_csrf(request: Request, authenticity_token: str = Form(default="")) -> None:
    """Dependency: reject the request unless it carries the session's token.

    The form field wins; the X-CSRF-Token header is the fallback for
    requests sent from JavaScript.
    """
    if not get_settings().csrf_protection_enabled:
        return
    submitted = authenticity_token or request.headers.get(HEADER_NAME, "")
    if not csrf_token_valid(request, submitted):
        logger.warning("CSRF token mismatch on %s %s", request.method, request.url.path)
        raise HTTPException(
            status_code=422,
            detail={"code": "invalid_authenticity_token", "message": "Can't verify CSRF token authenticity."},
        )
