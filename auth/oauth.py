"""
auth/oauth.py -- External sign-in providers for the "Sign in with" buttons.

A provider is registered with authlib at import time when its client ID and
secret are both set. Whether its button shows (and whether its callback is
accepted) additionally depends on the admin toggle in the application
settings row; see get_enabled_providers().

Security notes:
  [H1] An email is only trusted for account linking when the provider says it
       is verified. get_oauth_user_info() reports verification explicitly in
       OAuthIdentity.email_verified; the callback never links an existing
       account through an unverified address. An unverified email from GitHub
       could belong to an attacker who added a victim's address without
       confirming it.

  The OAuth state parameter lives in the signed session between the redirect
  and the callback; authlib compares it on authorize_access_token().

Supported providers:
  github -- fixed endpoints, email from the REST API
  google -- OIDC discovery, email from the id_token
  oidc   -- any OIDC issuer with a discovery URL, labelled OIDC_DISPLAY_NAME

Layer rule: no imports from api/, web/ or groups/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from authlib.integrations.starlette_client import OAuth

from auth.models import AppSettings
from core.config import get_settings

logger = logging.getLogger("gatehouse.auth.oauth")


@dataclass
class OAuthIdentity:
    """Provider-neutral view of the person who just authenticated."""

    subject: str
    email: str | None = None
    email_verified: bool = False
    nickname: str | None = None


# ---------------------------------------------------------------------------
# Authlib OAuth registry
# ---------------------------------------------------------------------------

oauth = OAuth()

_cfg = get_settings()

# GitHub publishes no discovery document.
if _cfg.github_client_id and _cfg.github_client_secret:
    oauth.register(
        name="github",
        client_id=_cfg.github_client_id,
        client_secret=_cfg.github_client_secret,
        access_token_url="https://github.com/login/oauth/access_token",  # noqa: S106 -- URL, not a password
        authorize_url="https://github.com/login/oauth/authorize",
        api_base_url="https://api.github.com/",
        client_kwargs={"scope": "read:user user:email"},
    )
    logger.info("GitHub OAuth provider registered")

# Google -- OIDC discovery
if _cfg.google_client_id and _cfg.google_client_secret:
    oauth.register(
        name="google",
        client_id=_cfg.google_client_id,
        client_secret=_cfg.google_client_secret,
        server_metadata_url="https://accounts.google.com/.well-known/openid-configuration",
        client_kwargs={"scope": "openid email profile"},
    )
    logger.info("Google OAuth provider registered")

# Any other OIDC issuer.
if _cfg.oidc_client_id and _cfg.oidc_client_secret and _cfg.oidc_discovery_url:
    oauth.register(
        name="oidc",
        client_id=_cfg.oidc_client_id,
        client_secret=_cfg.oidc_client_secret,
        server_metadata_url=_cfg.oidc_discovery_url,
        client_kwargs={"scope": "openid email profile"},
    )
    logger.info("Generic OIDC provider registered (display name: %s)", _cfg.oidc_display_name)


# ---------------------------------------------------------------------------
# Provider metadata
# ---------------------------------------------------------------------------


def get_enabled_providers(app_settings: AppSettings | None = None) -> list[dict]:
    """Providers whose button the sign-in page shows, as {"name", "label"} dicts.

    GitHub and Google need credentials in the environment and their admin
    toggle on. Without app_settings the toggles are not consulted. The
    generic OIDC provider has no toggle.
    """
    cfg = get_settings()
    providers: list[dict] = []

    github_env_ok = bool(cfg.github_client_id and cfg.github_client_secret)
    github_db_ok = app_settings is None or app_settings.github_oauth_enabled
    if github_env_ok and github_db_ok:
        providers.append({"name": "github", "label": "GitHub"})

    google_env_ok = bool(cfg.google_client_id and cfg.google_client_secret)
    google_db_ok = app_settings is None or app_settings.google_oauth_enabled
    if google_env_ok and google_db_ok:
        providers.append({"name": "google", "label": "Google"})

    if cfg.oidc_client_id and cfg.oidc_client_secret and cfg.oidc_discovery_url:
        providers.append({"name": "oidc", "label": cfg.oidc_display_name})
    return providers


def provider_enabled(provider: str, app_settings: AppSettings | None = None) -> bool:
    return provider in {p["name"] for p in get_enabled_providers(app_settings)}


# ---------------------------------------------------------------------------
# Identity extraction -- provider-specific normalization [H1]
# ---------------------------------------------------------------------------


async def get_oauth_user_info(client, provider: str, token: dict) -> OAuthIdentity:
    """Normalize a provider token response into an OAuthIdentity.

    Raises:
        ValueError: unknown provider, or no stable subject in the response.
    """
    if provider == "github":
        return await _get_github_user_info(client, token)
    elif provider in ("google", "oidc"):
        return _get_oidc_user_info(token, provider)
    else:
        raise ValueError(f"Unknown OAuth provider: {provider!r}")


async def _get_github_user_info(client, token: dict) -> OAuthIdentity:
    """Build an identity from the GitHub REST API.

    The access token carries no email, so two API calls are made:
      1. GET /user -- numeric user ID (stable subject) and login.
      2. GET /user/emails -- the primary verified email, if any.

    [H1] Only an entry with both primary=true AND verified=true is reported as
    a verified email. Without one, the identity carries no email at all.
    """
    resp = await client.get("user", token=token)
    resp.raise_for_status()
    profile = resp.json()
    if "id" not in profile:
        raise ValueError("GitHub OAuth: profile has no id")

    emails_resp = await client.get("user/emails", token=token)
    emails_resp.raise_for_status()

    email: str | None = None
    for entry in emails_resp.json():
        if entry.get("primary") and entry.get("verified"):
            email = entry["email"]
            break

    return OAuthIdentity(
        subject=str(profile["id"]),
        email=email,
        email_verified=email is not None,
        nickname=profile.get("login"),
    )


def _get_oidc_user_info(token: dict, provider: str) -> OAuthIdentity:
    """Build an identity from a Google/OIDC id_token's userinfo claims.

    [H1] Some OIDC providers omit email_verified entirely -- that is treated
    as unverified.
    """
    userinfo = token.get("userinfo")
    if not userinfo:
        raise ValueError(f"{provider} OAuth: no userinfo in token response")
    subject = userinfo.get("sub")
    if not subject:
        raise ValueError(f"{provider} OAuth: missing sub claim in userinfo")
    email = userinfo.get("email") or None
    return OAuthIdentity(
        subject=str(subject),
        email=email,
        email_verified=bool(email) and userinfo.get("email_verified") is True,
        nickname=userinfo.get("preferred_username") or userinfo.get("nickname"),
    )
