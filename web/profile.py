"""
web/profile.py -- Account pages reached after sign-in.

Each page here resolves one policy gate (auth/policy.py) and therefore passes
that gate to require_user(allow=...). The dashboard and every other page
redirect here until the gate is satisfied.

Routes:
  GET  /-/users/terms                      -- current terms (gate: TERMS)
  POST /-/users/terms/{term_id}/accept     -- accept, continue to ?redirect=
  POST /-/users/terms/{term_id}/decline    -- decline, sign out
  GET  /profile/two_factor_auth            -- 2FA enrollment / status (gate: TWO_FACTOR)
  POST /profile/two_factor_auth            -- confirm enrollment with a pin code
  POST /profile/two_factor_auth/skip       -- "Configure it later" inside the grace period
  POST /profile/two_factor_auth/codes      -- regenerate backup codes
  POST /profile/two_factor_auth/disable    -- turn 2FA off
  GET  /profile/password/new               -- expired password form (gate: PASSWORD_EXPIRED)
  POST /profile/password                   -- set the replacement password
  GET  /profile                            -- profile form (gate: EMAIL_REQUIRED)
  POST /profile                            -- update name / email
  GET  /profile/account                    -- account overview
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Form, HTTPException, Request
from fastapi.responses import HTMLResponse, RedirectResponse
from sqlalchemy.exc import IntegrityError

from auth.csrf import verify_csrf
from auth.dependencies import SKIP_TWO_FACTOR_KEY, policy_context
from auth.models import User
from auth.otp import generate_backup_codes, generate_otp_secret, provisioning_uri, qr_code_data_url, validate_and_consume_otp
from auth.policy import Gate, password_expired, reason_message, two_factor_requirement, two_factor_skippable
from auth.store import UserStore
from auth.tokens import clear_auth_cookie, hash_password, verify_password
from core import messages
from web.helpers import SIGN_IN_PATH, flash, redirect, reissue_session, render, require_user, safe_next
from web.routes import email_valid, password_errors

logger = logging.getLogger("gatehouse.web.profile")

router = APIRouter()


# ---------------------------------------------------------------------------
# Terms of service
# ---------------------------------------------------------------------------


@router.get("/-/users/terms", response_class=HTMLResponse)
def terms(request: Request) -> HTMLResponse:
    user, redirect_resp = require_user(request, allow=Gate.TERMS)
    if redirect_resp:
        return redirect_resp
    target = safe_next(request.query_params.get("redirect"))
    term = request.app.state.user_store.latest_term()
    if term is None:
        return redirect(target)
    return render(
        request,
        "terms.html",
        {"term": term, "redirect_to": target, "accepted": user.accepted_term_id == term.id},
        user=user,
    )


def _term_or_404(user_store: UserStore, term_id: int):
    term = user_store.get_term(term_id)
    if term is None:
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": "Terms not found."})
    return term


@router.post("/-/users/terms/{term_id}/accept", dependencies=[Depends(verify_csrf)])
def terms_accept(request: Request, term_id: int, redirect_to: str = Form(default="/")) -> RedirectResponse:
    user, redirect_resp = require_user(request, allow=Gate.TERMS)
    if redirect_resp:
        return redirect_resp
    user_store: UserStore = request.app.state.user_store
    term = _term_or_404(user_store, term_id)
    user_store.record_term_agreement(user.id, term.id, accepted=True)
    logger.info("User %r accepted terms version %d", user.username, term.id)
    flash(request, messages.TERMS_ACCEPTED)
    return redirect(safe_next(redirect_to))  # [C2]


@router.post("/-/users/terms/{term_id}/decline", dependencies=[Depends(verify_csrf)])
def terms_decline(request: Request, term_id: int) -> RedirectResponse:
    user, redirect_resp = require_user(request, allow=Gate.TERMS)
    if redirect_resp:
        return redirect_resp
    user_store: UserStore = request.app.state.user_store
    term = _term_or_404(user_store, term_id)
    user_store.record_term_agreement(user.id, term.id, accepted=False)
    logger.info("User %r declined terms version %d", user.username, term.id)
    request.session.clear()
    flash(request, messages.TERMS_REQUIRED, "alert")
    resp = redirect(SIGN_IN_PATH)
    clear_auth_cookie(resp)
    return resp


# ---------------------------------------------------------------------------
# Two-factor enrollment
# ---------------------------------------------------------------------------


def _render_two_factor(
    request: Request, user: User, error: Optional[str] = None, status_code: int = 200
) -> HTMLResponse:
    """Enrollment page for users without 2FA, status page for users with it.

    The grace period starts the first time a user who is required to enroll
    sees this page. Both the stamp and the page use the same instant, so a
    zero-hour grace period is already over when the page renders.
    """
    user_store: UserStore = request.app.state.user_store
    now = datetime.now(timezone.utc)

    if user.two_factor_enabled:
        return render(
            request,
            "profile_two_factor.html",
            {"enabled": True, "backup_codes_left": user_store.count_backup_codes(user.id), "error": error},
            status_code=status_code,
            user=user,
        )

    if not user.otp_secret:
        user_store.update_user(user.id, otp_secret=generate_otp_secret())
    ctx = policy_context(request, user_store.get_by_id(user.id), now)
    requirement = two_factor_requirement(ctx)
    if requirement.required and ctx.user.otp_grace_period_started_at is None:
        user_store.update_user(user.id, otp_grace_period_started_at=now.isoformat())
        ctx = policy_context(request, user_store.get_by_id(user.id), now)
        requirement = two_factor_requirement(ctx)

    user = ctx.user
    uri = provisioning_uri(user.otp_secret, user.email)
    return render(
        request,
        "profile_two_factor.html",
        {
            "enabled": False,
            "reason": reason_message(requirement) if requirement.required else None,
            "skippable": two_factor_skippable(ctx),
            "qr_data_url": qr_code_data_url(uri),
            "account": user.email,
            "secret": user.otp_secret,
            "error": error,
        },
        status_code=status_code,
        user=user,
    )


@router.get("/profile/two_factor_auth", response_class=HTMLResponse)
def two_factor_auth(request: Request) -> HTMLResponse:
    user, redirect_resp = require_user(request, allow=Gate.TWO_FACTOR)
    if redirect_resp:
        return redirect_resp
    return _render_two_factor(request, user)


@router.post("/profile/two_factor_auth", response_class=HTMLResponse, dependencies=[Depends(verify_csrf)])
def two_factor_enroll(request: Request, pin_code: str = Form(default="")):
    """Confirm enrollment: a correct pin turns 2FA on and shows fresh backup codes."""
    user, redirect_resp = require_user(request, allow=Gate.TWO_FACTOR)
    if redirect_resp:
        return redirect_resp
    if user.two_factor_enabled:
        return redirect("/profile/two_factor_auth")

    user_store: UserStore = request.app.state.user_store
    if not user.otp_secret or not validate_and_consume_otp(user_store, user, pin_code):
        return _render_two_factor(request, user, error=messages.INVALID_PIN, status_code=422)

    user_store.enable_two_factor(user.id)
    codes = generate_backup_codes(user_store, user)
    request.session.pop(SKIP_TWO_FACTOR_KEY, None)
    logger.info("User %r enabled two-factor authentication", user.username)
    flash(request, messages.TWO_FACTOR_ENABLED)
    return render(request, "two_factor_codes.html", {"codes": codes}, user=user)


@router.post("/profile/two_factor_auth/skip", dependencies=[Depends(verify_csrf)])
def two_factor_skip(request: Request) -> RedirectResponse:
    """Postpone enrollment until the grace period ends."""
    user, redirect_resp = require_user(request, allow=Gate.TWO_FACTOR)
    if redirect_resp:
        return redirect_resp
    ctx = policy_context(request, user)
    if not two_factor_skippable(ctx):
        flash(request, messages.TWO_FACTOR_SKIP_DENIED, "alert")
        return redirect("/profile/two_factor_auth")
    request.session[SKIP_TWO_FACTOR_KEY] = two_factor_requirement(ctx).deadline.isoformat()
    return redirect("/")


def _check_current_password(user: User, current_password: str) -> bool:
    # Generated passwords are unknown to their owner; OAuth-only accounts skip the check.
    return user.password_automatically_set or verify_password(current_password, user.hashed_password)


@router.post("/profile/two_factor_auth/codes", response_class=HTMLResponse, dependencies=[Depends(verify_csrf)])
def two_factor_codes(request: Request, current_password: str = Form(default="")):
    user, redirect_resp = require_user(request)
    if redirect_resp:
        return redirect_resp
    if not user.two_factor_enabled:
        return redirect("/profile/two_factor_auth")
    if not _check_current_password(user, current_password):
        return _render_two_factor(request, user, error=messages.CURRENT_PASSWORD_INVALID, status_code=422)
    codes = generate_backup_codes(request.app.state.user_store, user)
    flash(request, messages.BACKUP_CODES_REGENERATED)
    return render(request, "two_factor_codes.html", {"codes": codes}, user=user)


@router.post("/profile/two_factor_auth/disable", dependencies=[Depends(verify_csrf)])
def two_factor_disable(request: Request, current_password: str = Form(default="")):
    user, redirect_resp = require_user(request)
    if redirect_resp:
        return redirect_resp
    if not user.two_factor_enabled:
        return redirect("/profile/account")
    if not _check_current_password(user, current_password):
        return _render_two_factor(request, user, error=messages.CURRENT_PASSWORD_INVALID, status_code=422)
    request.app.state.user_store.disable_two_factor(user.id)
    logger.info("User %r disabled two-factor authentication", user.username)
    flash(request, messages.TWO_FACTOR_DISABLED)
    return redirect("/profile/account")


# ---------------------------------------------------------------------------
# Expired password
# ---------------------------------------------------------------------------


@router.get("/profile/password/new", response_class=HTMLResponse)
def password_expired_form(request: Request) -> HTMLResponse:
    user, redirect_resp = require_user(request, allow=Gate.PASSWORD_EXPIRED)
    if redirect_resp:
        return redirect_resp
    expired = password_expired(policy_context(request, user))
    return render(request, "profile_password_new.html", {"expired": expired, "errors": []}, user=user)


@router.post("/profile/password", response_class=HTMLResponse, dependencies=[Depends(verify_csrf)])
def password_expired_update(
    request: Request,
    current_password: str = Form(default=""),
    password: str = Form(default=""),
    password_confirmation: str = Form(default=""),
):
    user, redirect_resp = require_user(request, allow=Gate.PASSWORD_EXPIRED)
    if redirect_resp:
        return redirect_resp

    errors: list[str] = []
    if not verify_password(current_password, user.hashed_password):
        errors.append(messages.CURRENT_PASSWORD_INVALID)
    errors.extend(password_errors(password, password_confirmation))
    if not errors and verify_password(password, user.hashed_password):
        errors.append(messages.PASSWORD_UNCHANGED)
    if errors:
        expired = password_expired(policy_context(request, user))
        return render(
            request,
            "profile_password_new.html",
            {"expired": expired, "errors": errors},
            status_code=422,
            user=user,
        )

    user_store: UserStore = request.app.state.user_store
    user_store.set_password(user.id, hash_password(password))
    logger.info("User %r replaced their password", user.username)
    flash(request, messages.PASSWORD_CHANGED)
    resp = redirect("/")
    reissue_session(resp, user_store.get_by_id(user.id))
    return resp


# ---------------------------------------------------------------------------
# Profile
# ---------------------------------------------------------------------------


def _render_profile(
    request: Request, user: User, errors: Optional[list[str]] = None, status_code: int = 200
) -> HTMLResponse:
    return render(
        request,
        "profile.html",
        {
            "email": "" if user.has_temp_email else user.email,
            "name": user.name,
            "errors": errors or [],
        },
        status_code=status_code,
        user=user,
    )


@router.get("/profile", response_class=HTMLResponse)
def profile(request: Request) -> HTMLResponse:
    user, redirect_resp = require_user(request, allow=Gate.EMAIL_REQUIRED)
    if redirect_resp:
        return redirect_resp
    return _render_profile(request, user)


@router.post("/profile", response_class=HTMLResponse, dependencies=[Depends(verify_csrf)])
def profile_update(request: Request, name: str = Form(default=""), email: str = Form(default="")):
    user, redirect_resp = require_user(request, allow=Gate.EMAIL_REQUIRED)
    if redirect_resp:
        return redirect_resp

    email = email.strip().lower()
    if not email_valid(email):
        return _render_profile(request, user, [messages.EMAIL_INVALID], status_code=422)

    user_store: UserStore = request.app.state.user_store
    try:
        user_store.update_user(user.id, email=email, name=name.strip() or user.name)
    except IntegrityError:
        return _render_profile(request, user, [messages.EMAIL_TAKEN], status_code=422)
    flash(request, messages.PROFILE_UPDATED)
    return redirect("/profile")


@router.get("/profile/account", response_class=HTMLResponse)
def account(request: Request) -> HTMLResponse:
    user, redirect_resp = require_user(request)
    if redirect_resp:
        return redirect_resp
    user_store: UserStore = request.app.state.user_store
    return render(
        request,
        "profile_account.html",
        {"backup_codes_left": user_store.count_backup_codes(user.id) if user.two_factor_enabled else 0},
        user=user,
    )
