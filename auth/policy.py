"""
auth/policy.py -- Post-sign-in account policies ("gates").

A signed-in user may still be held back from the application until they act:
accept the current terms, enroll in two-factor authentication, replace an
expired password, or supply a real email address. Each of these is a Gate.

Everything here is a pure function over a PolicyContext snapshot. The web
layer builds the context (user, application settings, the groups whose 2FA
requirement applies, the current time, the session's skip deadline), asks
pending_gate() which page to send the user to, and renders that page. The API
layer asks the same question and reports the answer as required_actions.
Nothing in this module reads the database, the clock or the session itself,
which is what keeps the tests for it free of fixtures.

Gate order (first match wins):
  1. TERMS            -- terms are enforced and the latest version is unaccepted.
  2. TWO_FACTOR       -- 2FA is required, not enabled, and not skipped.
  3. PASSWORD_EXPIRED -- password_expires_at is in the past.
  4. EMAIL_REQUIRED   -- the account still has a temporary OAuth email.

Layer rule: imports groups.models for the Group dataclass only. No imports
from api/ or web/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum

from auth.models import AppSettings, User
from core import messages
from groups.models import Group

DEADLINE_FORMAT = "%Y-%m-%d %H:%M:%S UTC"


class Gate(str, Enum):
    TERMS = "terms"
    TWO_FACTOR = "two_factor"
    PASSWORD_EXPIRED = "password_expired"
    EMAIL_REQUIRED = "email_required"


@dataclass
class PolicyContext:
    """Everything the policy functions look at, captured at one instant.

    groups: groups whose two-factor requirement reaches the user (direct or
        ancestor membership), as returned by GroupStore.groups_requiring_two_factor.
    latest_term_id: id of the current terms version, None when none published.
    skip_two_factor_until: deadline stored in the session by "Configure it later".
    """

    user: User
    app_settings: AppSettings
    now: datetime
    groups: list[Group] = field(default_factory=list)
    latest_term_id: int | None = None
    skip_two_factor_until: datetime | None = None


@dataclass
class TwoFactorRequirement:
    required: bool
    source: str | None = None  # "global" | "group" | None
    groups: list[Group] = field(default_factory=list)
    grace_period_hours: int = 0
    started_at: datetime | None = None
    deadline: datetime | None = None
    expired: bool = False


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def parse_timestamp(value: str | None) -> datetime | None:
    """ISO string from the store -> aware datetime. None passes through.

    Values written without an offset are taken as UTC.
    """
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_deadline(deadline: datetime) -> str:
    return deadline.strftime(DEADLINE_FORMAT)


def to_sentence(words: list[str]) -> str:
    """Join words as English prose: "A", "A and B", "A, B, and C"."""
    if not words:
        return ""
    if len(words) == 1:
        return words[0]
    if len(words) == 2:
        return f"{words[0]} and {words[1]}"
    return ", ".join(words[:-1]) + ", and " + words[-1]


# ---------------------------------------------------------------------------
# Two-factor requirement
# ---------------------------------------------------------------------------


def two_factor_requirement(ctx: PolicyContext) -> TwoFactorRequirement:
    """Decide whether, why and until when the user must enroll in 2FA.

    The global setting wins over groups for the reported source. The grace
    period is the shortest one among every setting that applies.
    """
    global_required = ctx.app_settings.require_two_factor_authentication
    requiring = [g for g in ctx.groups if g.require_two_factor_authentication]
    if not global_required and not requiring:
        return TwoFactorRequirement(required=False)

    periods = [g.two_factor_grace_period for g in requiring]
    if global_required:
        periods.append(ctx.app_settings.two_factor_grace_period)
    grace = max(0, min(periods))

    started_at = parse_timestamp(ctx.user.otp_grace_period_started_at)
    deadline = started_at + timedelta(hours=grace) if started_at else None
    return TwoFactorRequirement(
        required=True,
        source="global" if global_required else "group",
        groups=requiring,
        grace_period_hours=grace,
        started_at=started_at,
        deadline=deadline,
        expired=deadline is not None and deadline <= ctx.now,
    )


def reason_message(requirement: TwoFactorRequirement) -> str:
    """The explanation shown above the enrollment form."""
    if requirement.source == "global":
        text = messages.TWO_FACTOR_GLOBAL_REASON
    else:
        names = to_sentence([g.full_name or g.name for g in requirement.groups])
        text = messages.TWO_FACTOR_GROUP_REASON.format(groups=names)
    if requirement.deadline is not None and not requirement.expired:
        text += messages.TWO_FACTOR_DEADLINE.format(deadline=format_deadline(requirement.deadline))
    return text


def two_factor_skippable(ctx: PolicyContext) -> bool:
    """True while the grace period still allows "Configure it later"."""
    requirement = two_factor_requirement(ctx)
    return requirement.required and requirement.deadline is not None and not requirement.expired


# ---------------------------------------------------------------------------
# Individual gates
# ---------------------------------------------------------------------------


def terms_pending(ctx: PolicyContext) -> bool:
    if not ctx.app_settings.enforce_terms or ctx.latest_term_id is None:
        return False
    return ctx.user.accepted_term_id != ctx.latest_term_id


def two_factor_pending(ctx: PolicyContext) -> bool:
    if ctx.user.two_factor_enabled:
        return False
    requirement = two_factor_requirement(ctx)
    if not requirement.required:
        return False
    skip = ctx.skip_two_factor_until
    if skip is not None and skip > ctx.now and not requirement.expired:
        return False
    return True


def password_expired(ctx: PolicyContext) -> bool:
    if not ctx.app_settings.password_authentication_enabled:
        return False
    if ctx.user.password_automatically_set:
        return False
    expires_at = parse_timestamp(ctx.user.password_expires_at)
    return expires_at is not None and expires_at <= ctx.now


def email_required(ctx: PolicyContext) -> bool:
    return ctx.user.has_temp_email


_CHECKS = (
    (Gate.TERMS, terms_pending),
    (Gate.TWO_FACTOR, two_factor_pending),
    (Gate.PASSWORD_EXPIRED, password_expired),
    (Gate.EMAIL_REQUIRED, email_required),
)


def pending_gates(ctx: PolicyContext) -> list[Gate]:
    """Every gate the user has not yet satisfied, in enforcement order."""
    return [gate for gate, check in _CHECKS if check(ctx)]


def pending_gate(ctx: PolicyContext, skip: tuple = ()) -> Gate | None:
    """The first unsatisfied gate, ignoring those in skip.

    A gate's own page passes itself in skip so the user can act on it.
    """
    for gate, check in _CHECKS:
        if gate in skip:
            continue
        if check(ctx):
            return gate
    return None
