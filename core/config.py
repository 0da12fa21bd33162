"""
core/config.py -- Deployment configuration for Gatehouse (pydantic-settings).

Every environment variable the service reads is a field on Settings; the
env var is the upper-cased field name (BCRYPT_ROUNDS, GOOGLE_CLIENT_ID, ...).
A .env file in the working directory is read too. get_settings() builds the
object once and caches it, so tests that need other values set the
environment before the first import or monkeypatch the cached instance.

Runtime policy (require 2FA, grace period, terms, sign-up) is NOT configured
here. It lives in the application settings row so admins can change it
without a restart -- see auth/store.py.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. JWT signing,
       the session cookie and reset-token digests all rely on key entropy.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure.

Layer rule: core/ imports nothing from api/, web/, auth/ or groups/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("gatehouse.config")

_DATA_DIR = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    """Process-wide settings. Every field has a default except in production,
    where SECRET_KEY must be provided.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # "" means unset; validate_secret_key replaces it or refuses to start.
    secret_key: str = ""
    app_url: str = "http://localhost:8000"
    # Comma-separated Host header allow-list for TrustedHostMiddleware.
    allowed_hosts: str = "*"

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    database_url: str = f"sqlite:///{_DATA_DIR / 'gatehouse_auth.db'}"
    groups_database_url: str = f"sqlite:///{_DATA_DIR / 'gatehouse_groups.db'}"

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    token_expire_seconds: int = 3600
    # "Remember me" sessions: two weeks.
    remember_me_expire_seconds: int = 14 * 24 * 3600
    csrf_protection_enabled: bool = True

    # ------------------------------------------------------------------
    # Passwords and lockout
    # ------------------------------------------------------------------

    password_min_length: int = 8
    # bcrypt cost factor. The test suite lowers it through BCRYPT_ROUNDS.
    bcrypt_rounds: int = 12
    reset_password_within_hours: int = 6
    maximum_failed_attempts: int = 10
    unlock_in_minutes: int = 10

    # ------------------------------------------------------------------
    # Two-factor
    # ------------------------------------------------------------------

    otp_issuer: str = "Gatehouse"
    otp_allowed_drift_seconds: int = 30
    otp_backup_code_count: int = 10

    # ------------------------------------------------------------------
    # OAuth providers. A provider with an empty ID or secret is off.
    # ------------------------------------------------------------------

    github_client_id: str = ""
    github_client_secret: str = ""
    google_client_id: str = ""
    google_client_secret: str = ""

    # Generic OIDC (Okta, Azure AD, Keycloak, Authentik, SAML bridges, etc.)
    oidc_client_id: str = ""
    oidc_client_secret: str = ""
    oidc_discovery_url: str = ""
    oidc_display_name: str = "SSO"

    # Create a local account on first OAuth sign-in instead of rejecting
    # identities that were not pre-provisioned by an admin.
    oauth_auto_create_users: bool = False

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # Mail delivery (Mailgun HTTP API). Unset = log the message instead.
    # ------------------------------------------------------------------

    mailgun_api_key: str = ""
    mailgun_domain: str = ""
    mailgun_api_base: str = "https://api.mailgun.net/v3"
    mail_from: str = "Gatehouse <noreply@localhost>"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Generate a throwaway key under DEBUG, otherwise require one [M7].

        Keys shorter than 32 characters are refused either way [M6].
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning(
                    "DEBUG is on and SECRET_KEY is unset; using a random key. "
                    "Sessions and reset links will not survive a restart."
                )
            else:
                raise ValueError(
                    "SECRET_KEY is not set. Provide it in the environment or .env, "
                    "or set DEBUG=true for a throwaway development key."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self

    @property
    def allowed_host_list(self) -> list[str]:
        return [h.strip() for h in self.allowed_hosts.split(",") if h.strip()]


@lru_cache
def get_settings() -> Settings:
    """The cached Settings instance."""
    return Settings()
