"""
auth/otp.py -- TOTP verification and backup codes for two-factor sign-in.

TOTP:
  pyotp with the RFC 6238 defaults every authenticator app expects (SHA-1,
  6 digits, 30-second steps). A code is accepted when it matches a step within
  Settings.otp_allowed_drift_seconds of the server clock AND that step is
  newer than the user's consumed_timestep. The second condition stops a code
  observed over someone's shoulder from being replayed in the same window.

Backup codes:
  Ten 10-character hex codes per generation. They carry 40 bits of entropy and
  are keyed with SECRET_KEY before storage, so -- like reset tokens -- an
  HMAC digest is enough and lookup is a single DELETE by digest. Bcrypt's
  intentional slowness is reserved for low-entropy, user-chosen passwords.

Layer rule: no imports from api/, web/ or groups/.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import io
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import pyotp
import qrcode

from core.config import get_settings

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import UserStore

logger = logging.getLogger("gatehouse.auth.otp")

_settings = get_settings()

# 32 base32 characters = 160-bit secret, the RFC 4226 recommended length.
_SECRET_LENGTH = 32
_BACKUP_CODE_BYTES = 5


# ---------------------------------------------------------------------------
# TOTP
# ---------------------------------------------------------------------------


def generate_otp_secret() -> str:
    return pyotp.random_base32(length=_SECRET_LENGTH)


def current_otp(secret: str, for_time: datetime | None = None) -> str:
    """The code an authenticator app shows right now. Used by tests and the CLI."""
    return pyotp.TOTP(secret).at(for_time or datetime.now(timezone.utc))


def provisioning_uri(secret: str, account: str) -> str:
    """otpauth:// URI encoded into the enrollment QR code."""
    return pyotp.TOTP(secret).provisioning_uri(name=account, issuer_name=_settings.otp_issuer)


def qr_code_data_url(uri: str) -> str:
    """Render a provisioning URI as a PNG data: URL for an <img> tag."""
    buf = io.BytesIO()
    qrcode.make(uri, box_size=8).save(buf, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buf.getvalue()).decode("ascii")


def _normalize(code: str) -> str:
    return "".join(code.split()).lower()


def matching_timestep(secret: str, code: str, now: datetime | None = None) -> int | None:
    """Return the 30-second step the code belongs to, or None if it matches none.

    Steps are tried within the allowed drift either side of now. Comparison is
    constant-time per candidate.
    """
    code = _normalize(code)
    if not code.isdigit():
        return None
    totp = pyotp.TOTP(secret)
    now = now or datetime.now(timezone.utc)
    drift_steps = _settings.otp_allowed_drift_seconds // totp.interval
    for offset in range(-drift_steps, drift_steps + 1):
        at = now + timedelta(seconds=offset * totp.interval)
        if hmac.compare_digest(totp.at(at), code):
            return totp.timecode(at)
    return None


def validate_and_consume_otp(store: UserStore, user: User, code: str, now: datetime | None = None) -> bool:
    """Check a TOTP code and burn its timestep. Replays return False."""
    if not user.otp_secret:
        return False
    step = matching_timestep(user.otp_secret, code, now)
    if step is None:
        return False
    if not store.consume_timestep(user.id, step):
        logger.info("Rejected replayed OTP step for user %r", user.username)
        return False
    return True


# ---------------------------------------------------------------------------
# Backup codes
# ---------------------------------------------------------------------------


def hash_backup_code(code: str) -> str:
    return hmac.new(
        _settings.secret_key.encode(),
        _normalize(code).encode(),
        hashlib.sha256,
    ).hexdigest()


def generate_backup_codes(store: UserStore, user: User) -> list[str]:
    """Replace the user's backup codes and return the new raw codes.

    The raw codes are shown once on the enrollment page and never again.
    """
    codes = [secrets.token_hex(_BACKUP_CODE_BYTES) for _ in range(_settings.otp_backup_code_count)]
    store.replace_backup_codes(user.id, [hash_backup_code(c) for c in codes])
    return codes


def invalidate_backup_code(store: UserStore, user: User, code: str) -> bool:
    """Consume a backup code. True if it existed and was unused."""
    code = _normalize(code)
    if not code:
        return False
    return store.consume_backup_code(user.id, hash_backup_code(code))


def verify_otp_attempt(store: UserStore, user: User, code: str) -> bool:
    """The second sign-in step: a fresh TOTP code, or failing that a backup code."""
    if not code or not user.two_factor_enabled:
        return False
    return validate_and_consume_otp(store, user, code) or invalidate_backup_code(store, user, code)
