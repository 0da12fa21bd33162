"""
Tests for auth/policy.py -- gate decisions over hand-built PolicyContext snapshots.

No fixtures: the policy functions never touch the database, the clock or the
session, so every case is a plain object built inline.
"""

from datetime import datetime, timedelta, timezone

import pytest

from auth.models import AppSettings, User
from auth.policy import (
    Gate,
    PolicyContext,
    format_deadline,
    parse_timestamp,
    pending_gate,
    pending_gates,
    reason_message,
    to_sentence,
    two_factor_requirement,
    two_factor_skippable,
)
from core import messages
from groups.models import Group

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def _user(**kwargs) -> User:
    defaults = dict(id=1, username="alice", email="alice@example.com", hashed_password="x")
    defaults.update(kwargs)
    return User(**defaults)


def _ctx(user=None, settings=None, **kwargs) -> PolicyContext:
    return PolicyContext(user=user or _user(), app_settings=settings or AppSettings(), now=NOW, **kwargs)


def _group(name="Ops", grace=48, required=True, gid=1) -> Group:
    return Group(
        name=name,
        path=name.lower(),
        id=gid,
        full_name=name,
        require_two_factor_authentication=required,
        two_factor_grace_period=grace,
    )


# ---------------------------------------------------------------------------
# to_sentence
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "words, expected",
    [
        ([], ""),
        (["A"], "A"),
        (["A", "B"], "A and B"),
        (["A", "B", "C"], "A, B, and C"),
    ],
)
def test_to_sentence(words, expected):
    assert to_sentence(words) == expected


# ---------------------------------------------------------------------------
# Two-factor requirement
# ---------------------------------------------------------------------------


class TestTwoFactorRequirement:
    def test_not_required_by_default(self):
        assert two_factor_requirement(_ctx()).required is False

    def test_global_requirement(self):
        req = two_factor_requirement(_ctx(settings=AppSettings(require_two_factor_authentication=True)))
        assert req.required
        assert req.source == "global"
        assert req.grace_period_hours == 48
        assert req.deadline is None

    def test_group_requirement(self):
        req = two_factor_requirement(_ctx(groups=[_group()]))
        assert req.required
        assert req.source == "group"
        assert [g.name for g in req.groups] == ["Ops"]

    def test_groups_without_flag_are_ignored(self):
        assert two_factor_requirement(_ctx(groups=[_group(required=False)])).required is False

    def test_shortest_grace_period_wins(self):
        settings = AppSettings(require_two_factor_authentication=True, two_factor_grace_period=72)
        req = two_factor_requirement(_ctx(settings=settings, groups=[_group(grace=24), _group("Dev", 12, gid=2)]))
        assert req.grace_period_hours == 12
        assert req.source == "global"

    def test_deadline_from_grace_start(self):
        started = NOW - timedelta(hours=10)
        user = _user(otp_grace_period_started_at=started.isoformat())
        req = two_factor_requirement(_ctx(user=user, groups=[_group(grace=48)]))
        assert req.deadline == started + timedelta(hours=48)
        assert req.expired is False

    def test_deadline_reached_is_expired(self):
        user = _user(otp_grace_period_started_at=(NOW - timedelta(hours=48)).isoformat())
        assert two_factor_requirement(_ctx(user=user, groups=[_group(grace=48)])).expired is True

    def test_zero_grace_expires_immediately(self):
        user = _user(otp_grace_period_started_at=NOW.isoformat())
        ctx = _ctx(user=user, groups=[_group(grace=0)])
        assert two_factor_requirement(ctx).expired is True
        assert two_factor_skippable(ctx) is False


class TestReasonMessage:
    def test_global_reason(self):
        req = two_factor_requirement(_ctx(settings=AppSettings(require_two_factor_authentication=True)))
        assert reason_message(req) == messages.TWO_FACTOR_GLOBAL_REASON

    def test_group_reason_lists_groups(self):
        req = two_factor_requirement(_ctx(groups=[_group("Ops"), _group("Dev", gid=2)]))
        assert "Ops and Dev" in reason_message(req)

    def test_deadline_appended_while_running(self):
        started = NOW - timedelta(hours=1)
        user = _user(otp_grace_period_started_at=started.isoformat())
        req = two_factor_requirement(_ctx(user=user, groups=[_group(grace=48)]))
        assert reason_message(req).endswith(f"before {format_deadline(started + timedelta(hours=48))}.")

    def test_deadline_format(self):
        assert format_deadline(NOW) == "2024-03-01 12:00:00 UTC"


# ---------------------------------------------------------------------------
# Gates
# ---------------------------------------------------------------------------


class TestGates:
    def test_no_gates(self):
        assert pending_gates(_ctx()) == []
        assert pending_gate(_ctx()) is None

    def test_terms_only_when_enforced(self):
        assert pending_gates(_ctx(latest_term_id=3)) == []
        ctx = _ctx(settings=AppSettings(enforce_terms=True), latest_term_id=3)
        assert pending_gates(ctx) == [Gate.TERMS]

    def test_terms_satisfied_by_latest_version_only(self):
        settings = AppSettings(enforce_terms=True)
        assert pending_gates(_ctx(user=_user(accepted_term_id=3), settings=settings, latest_term_id=3)) == []
        assert pending_gates(_ctx(user=_user(accepted_term_id=2), settings=settings, latest_term_id=3)) == [Gate.TERMS]

    def test_terms_without_published_terms(self):
        assert pending_gates(_ctx(settings=AppSettings(enforce_terms=True))) == []

    def test_two_factor_gate(self):
        ctx = _ctx(groups=[_group()])
        assert pending_gates(ctx) == [Gate.TWO_FACTOR]

    def test_two_factor_enabled_user_passes(self):
        user = _user(otp_secret="S" * 32, otp_required_for_login=True)
        assert pending_gates(_ctx(user=user, groups=[_group()])) == []

    def test_skip_honoured_inside_grace_period(self):
        user = _user(otp_grace_period_started_at=(NOW - timedelta(hours=1)).isoformat())
        ctx = _ctx(user=user, groups=[_group()], skip_two_factor_until=NOW + timedelta(hours=47))
        assert pending_gates(ctx) == []

    def test_skip_ignored_once_grace_period_expired(self):
        user = _user(otp_grace_period_started_at=(NOW - timedelta(hours=50)).isoformat())
        ctx = _ctx(user=user, groups=[_group()], skip_two_factor_until=NOW + timedelta(hours=1))
        assert pending_gates(ctx) == [Gate.TWO_FACTOR]

    def test_password_expired(self):
        user = _user(password_expires_at=(NOW - timedelta(days=1)).isoformat())
        assert pending_gates(_ctx(user=user)) == [Gate.PASSWORD_EXPIRED]

    def test_stored_timestamp_without_offset_is_utc(self):
        user = _user(password_expires_at="2024-02-29T12:00:00")
        assert pending_gates(_ctx(user=user)) == [Gate.PASSWORD_EXPIRED]
        assert parse_timestamp("2024-02-29T12:00:00") == datetime(2024, 2, 29, 12, 0, tzinfo=timezone.utc)

    def test_password_expiring_later(self):
        user = _user(password_expires_at=(NOW + timedelta(days=1)).isoformat())
        assert pending_gates(_ctx(user=user)) == []

    def test_password_expiry_ignored_for_generated_passwords(self):
        user = _user(password_expires_at=(NOW - timedelta(days=1)).isoformat(), password_automatically_set=True)
        assert pending_gates(_ctx(user=user)) == []

    def test_password_expiry_ignored_without_password_sign_in(self):
        user = _user(password_expires_at=(NOW - timedelta(days=1)).isoformat())
        settings = AppSettings(password_authentication_enabled=False)
        assert pending_gates(_ctx(user=user, settings=settings)) == []

    def test_temporary_email(self):
        user = _user(email="temp-email-for-oauth-alice@gatehouse.localhost")
        assert pending_gates(_ctx(user=user)) == [Gate.EMAIL_REQUIRED]

    def test_enforcement_order(self):
        user = _user(
            email="temp-email-for-oauth-alice@gatehouse.localhost",
            password_expires_at=(NOW - timedelta(days=1)).isoformat(),
        )
        ctx = _ctx(user=user, settings=AppSettings(enforce_terms=True), latest_term_id=1, groups=[_group()])
        assert pending_gates(ctx) == [Gate.TERMS, Gate.TWO_FACTOR, Gate.PASSWORD_EXPIRED, Gate.EMAIL_REQUIRED]
        assert pending_gate(ctx) is Gate.TERMS
        assert pending_gate(ctx, skip=(Gate.TERMS,)) is Gate.TWO_FACTOR
        assert pending_gate(ctx, skip=tuple(Gate)) is None
