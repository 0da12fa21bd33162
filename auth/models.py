"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, near-zero logic). Stores and routes
do the work; the few properties here are one-line derivations every layer
would otherwise repeat.

Timestamps are ISO 8601 strings in UTC, the same representation the store
writes, so a dataclass can be round-tripped without conversion.

Layer rule: no imports from api/, web/ or groups/.
"""

from __future__ import annotations

from dataclasses import dataclass

TEMP_EMAIL_PREFIX = "temp-email-for-oauth-"


@dataclass
class User:
    """An account that can (usually) sign in.

    hashed_password is always set. Accounts created by OAuth or by the
    first-run seed get a random password and password_automatically_set=True
    until the owner picks one.

    user_type "ghost" marks the internal account that inherits content from
    deleted users. It exists in the table but can never sign in.

    reset_password_token holds the HMAC digest of the raw token, never the
    token itself.
    """

    username: str
    email: str
    hashed_password: str
    role: str = "user"  # "admin" | "user"
    id: int | None = None
    name: str = ""
    state: str = "active"  # "active" | "blocked"
    user_type: str | None = None  # None | "ghost"
    password_automatically_set: bool = False
    password_expires_at: str | None = None
    reset_password_token: str | None = None
    reset_password_sent_at: str | None = None
    otp_secret: str | None = None
    otp_required_for_login: bool = False
    consumed_timestep: int | None = None
    otp_grace_period_started_at: str | None = None
    accepted_term_id: int | None = None
    sign_in_count: int = 0
    current_sign_in_at: str | None = None
    last_sign_in_at: str | None = None
    current_sign_in_ip: str | None = None
    last_sign_in_ip: str | None = None
    failed_attempts: int = 0
    locked_at: str | None = None
    oauth_provider: str | None = None
    oauth_subject: str | None = None
    created_at: str | None = None

    @property
    def is_active(self) -> bool:
        return self.state == "active"

    @property
    def is_blocked(self) -> bool:
        return self.state == "blocked"

    @property
    def is_ghost(self) -> bool:
        return self.user_type == "ghost"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @property
    def two_factor_enabled(self) -> bool:
        return bool(self.otp_required_for_login and self.otp_secret)

    @property
    def has_temp_email(self) -> bool:
        return self.email.startswith(TEMP_EMAIL_PREFIX)


@dataclass
class Term:
    """One version of the terms of service. The highest id is current."""

    terms: str
    id: int | None = None
    created_at: str | None = None


@dataclass
class AppSettings:
    """Runtime-tunable sign-in policy, one row per installation."""

    signup_enabled: bool = True
    github_oauth_enabled: bool = True
    google_oauth_enabled: bool = True
    require_two_factor_authentication: bool = False
    two_factor_grace_period: int = 48  # hours
    enforce_terms: bool = False
    password_authentication_enabled: bool = True
