"""
auth/tokens.py -- Password hashing, credential checks, JWT sessions and reset tokens.

Security design decisions:
  JWT: python-jose with HS256. Tokens are signed with SECRET_KEY and carry
       user_id, username, role, a password fingerprint and expiry. Verification
       returns None on any failure -- the dependency layer turns that into a 401
       or a redirect to the sign-in page.

  Password fingerprint: the "pwd" claim is HMAC(SECRET_KEY, hashed_password)
       truncated to 16 hex chars. Changing the password changes the bcrypt hash,
       so every session issued before the change stops validating without any
       server-side session table.

  Passwords: bcrypt directly (no passlib wrapper). The _DUMMY_HASH constant
       enables timing equalization in authenticate_user() so response time does
       not reveal whether a login exists [C1].

  Reset tokens: secrets.token_urlsafe(32) is handed to the user once; only
       HMAC-SHA256(SECRET_KEY, raw) is stored, so a database leak does not leak
       usable reset links. Lookup by digest is O(1) via the UNIQUE index.

Layer rule: no imports from api/, web/ or groups/. Import from core/ is
allowed -- core/ is the kernel and has no reverse dependencies.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import bcrypt
from jose import JWTError, jwt

from auth.policy import parse_timestamp
from core.config import get_settings

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import UserStore

logger = logging.getLogger("gatehouse.auth")

# ---------------------------------------------------------------------------
# Config -- read once at module load via the lru_cache singleton [M6]
# ---------------------------------------------------------------------------

_settings = get_settings()

_ALGORITHM = "HS256"

# Failure codes returned by authenticate_user(). The web layer maps them to
# flash messages, the API layer to error codes and HTTP statuses.
BAD_CREDENTIALS = "bad_credentials"
BLOCKED = "blocked"
LOCKED = "locked"

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Passwords longer than 72 bytes are silently truncated by bcrypt. The form
    and API layers cap input at 255 characters.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=_settings.bcrypt_rounds)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed hash or over-long input
        return False


# Timing equalization dummy hash [C1]. Computed once at module load so the
# first sign-in attempt is not measurably slower than subsequent ones.
_DUMMY_HASH: str = hash_password("gatehouse_timing_dummy")


def password_fingerprint(hashed_password: str) -> str:
    """Short keyed digest of the current password hash, embedded in JWTs."""
    return hmac.new(
        _settings.secret_key.encode(),
        hashed_password.encode(),
        hashlib.sha256,
    ).hexdigest()[:16]


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


def create_access_token(user: User, expire_seconds: int = 0) -> str:
    """Encode a signed JWT for a user who completed every sign-in step.

    Args:
        user:           The signed-in user. Must have an id.
        expire_seconds: Session duration in seconds. If 0 (default), uses
                        Settings.token_expire_seconds. "Remember me" sign-ins
                        pass Settings.remember_me_expire_seconds.
    """
    duration = expire_seconds if expire_seconds > 0 else _settings.token_expire_seconds
    expire = datetime.now(timezone.utc) + timedelta(seconds=duration)
    payload = {
        "sub": user.username,
        "user_id": user.id,
        "role": user.role,
        "pwd": password_fingerprint(user.hashed_password),
        "exp": expire,
    }
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def decode_access_token(token: str) -> dict | None:
    """Decode and verify a JWT. Returns the payload dict or None on any failure."""
    try:
        payload = jwt.decode(token, _settings.secret_key, algorithms=[_ALGORITHM])
    except JWTError:
        return None
    if "user_id" not in payload or "pwd" not in payload:
        return None
    return payload


def token_matches_user(payload: dict, user: User) -> bool:
    """True while the password the token was issued for is still current."""
    return hmac.compare_digest(payload.get("pwd", ""), password_fingerprint(user.hashed_password))


# ---------------------------------------------------------------------------
# Lockout
# ---------------------------------------------------------------------------


def lock_expired(user: User, now: datetime | None = None) -> bool:
    """True when the user's lock is older than unlock_in_minutes."""
    if not user.locked_at:
        return False
    now = now or datetime.now(timezone.utc)
    locked_at = parse_timestamp(user.locked_at)
    return locked_at + timedelta(minutes=_settings.unlock_in_minutes) < now


def is_locked(user: User, now: datetime | None = None) -> bool:
    return bool(user.locked_at) and not lock_expired(user, now)


# ---------------------------------------------------------------------------
# User authentication (constant-time) [C1]
# ---------------------------------------------------------------------------


def authenticate_user(store: UserStore, login: str, password: str) -> tuple[User | None, str | None]:
    """Check a username-or-email / password pair.

    Returns:
        (user, None) on success, (None, failure_code) otherwise, where
        failure_code is BAD_CREDENTIALS, BLOCKED or LOCKED.

    Order of checks:
      1. Unknown login -- bcrypt still runs against _DUMMY_HASH [C1].
      2. Ghost account -- never signs in, reported as bad credentials.
      3. Locked account -- refused until the lock expires; an expired lock
         is cleared here.
      4. Wrong password -- counts toward lockout.
      5. Blocked account -- only revealed once the password is proven.

    None of the failure paths touch the trackable sign-in attributes; only
    UserStore.record_sign_in() does, after every step has passed.
    """
    user = store.get_by_login(login)
    if user is None:
        verify_password(password, _DUMMY_HASH)
        return None, BAD_CREDENTIALS
    if user.is_ghost:
        verify_password(password, _DUMMY_HASH)
        return None, BAD_CREDENTIALS
    if user.locked_at:
        if lock_expired(user):
            store.unlock(user.id)
        else:
            return None, LOCKED
    if not verify_password(password, user.hashed_password):
        if store.record_failed_attempt(user.id, _settings.maximum_failed_attempts):
            logger.warning("Account %r locked after %d failed attempts", user.username, _settings.maximum_failed_attempts)
        return None, BAD_CREDENTIALS
    if user.is_blocked:
        return None, BLOCKED
    return store.get_by_id(user.id), None


# ---------------------------------------------------------------------------
# Reset-password tokens
# ---------------------------------------------------------------------------


def digest_reset_token(raw_token: str) -> str:
    """Return HMAC-SHA256(SECRET_KEY, raw_token) as a hex string."""
    return hmac.new(
        _settings.secret_key.encode(),
        raw_token.encode(),
        hashlib.sha256,
    ).hexdigest()


def generate_reset_token() -> tuple[str, str]:
    """Return (raw_token, digest). Store the digest, send the raw token."""
    raw = secrets.token_urlsafe(32)
    return raw, digest_reset_token(raw)


def reset_token_expired(user: User, now: datetime | None = None) -> bool:
    if not user.reset_password_sent_at:
        return True
    now = now or datetime.now(timezone.utc)
    sent_at = parse_timestamp(user.reset_password_sent_at)
    return sent_at + timedelta(hours=_settings.reset_password_within_hours) < now


# ---------------------------------------------------------------------------
# Cookie helper
# ---------------------------------------------------------------------------


def set_auth_cookie(response, token: str, expire_seconds: int = 0) -> None:
    """Write the JWT access token as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": not sent on cross-site POST; form posts additionally
        carry the CSRF token (auth/csrf.py).
    secure: only sent over HTTPS when SECURE_COOKIES=true (set in production).
    max_age: matches the JWT expiry so both expire together.
    """
    duration = expire_seconds if expire_seconds > 0 else _settings.token_expire_seconds
    response.set_cookie(
        "access_token",
        value=token,
        httponly=True,
        samesite="lax",
        secure=_settings.secure_cookies,
        max_age=duration,
    )


def clear_auth_cookie(response) -> None:
    response.delete_cookie("access_token")
