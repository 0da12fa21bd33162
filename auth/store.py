"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper (same as groups/store.py).
UserStore is the repository; _row_to_user / _row_to_term are the mappers.
Route and dependency code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Secrets are stored derived, never raw: bcrypt for passwords, HMAC-SHA256
  for reset-password tokens and backup codes. The raw values exist only in
  the response that hands them to the user.

  UNIQUE(oauth_provider, oauth_subject) is enforced in code rather than SQL
  because SQLite treats two NULL values as distinct in UNIQUE constraints.

Concurrency:
  consume_timestep() and consume_backup_code() are conditional single-statement
  writes. Two requests racing with the same OTP or backup code cannot both
  succeed: only one UPDATE/DELETE reports rowcount == 1.

DB path: gatehouse_auth.db at the project root unless DATABASE_URL says otherwise.

Layer rule: no imports from api/, web/ or groups/.
"""

from __future__ import annotations

import secrets
from dataclasses import fields as dataclass_fields
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    func,
    or_,
    select,
)
from sqlalchemy.engine import Engine

from auth.models import AppSettings, Term, User
from auth.tokens import hash_password
from core.config import get_settings

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("name", String(255), nullable=False, server_default=""),
    Column("hashed_password", Text, nullable=False),
    Column("role", String(30), nullable=False, server_default="user"),
    Column("state", String(30), nullable=False, server_default="active"),
    Column("user_type", String(30)),  # NULL for humans, "ghost" for the internal account
    Column("password_automatically_set", Integer, nullable=False, server_default="0"),
    Column("password_expires_at", String(32)),
    Column("reset_password_token", String(64), unique=True),  # HMAC-SHA256 hex
    Column("reset_password_sent_at", String(32)),
    Column("otp_secret", String(64)),
    Column("otp_required_for_login", Integer, nullable=False, server_default="0"),
    Column("consumed_timestep", Integer),
    Column("otp_grace_period_started_at", String(32)),
    Column("accepted_term_id", Integer),
    Column("sign_in_count", Integer, nullable=False, server_default="0"),
    Column("current_sign_in_at", String(32)),
    Column("last_sign_in_at", String(32)),
    Column("current_sign_in_ip", String(45)),
    Column("last_sign_in_ip", String(45)),
    Column("failed_attempts", Integer, nullable=False, server_default="0"),
    Column("locked_at", String(32)),
    Column("oauth_provider", String(30)),
    Column("oauth_subject", Text),
    Column("created_at", String(32), nullable=False),
)

_backup_codes = Table(
    "otp_backup_codes",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("code_hash", String(64), nullable=False),  # HMAC-SHA256 hex
)

_terms = Table(
    "terms",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("terms", Text, nullable=False),
    Column("created_at", String(32), nullable=False),
)

_term_agreements = Table(
    "term_agreements",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("term_id", Integer, nullable=False),
    Column("accepted", Integer, nullable=False),
    Column("created_at", String(32), nullable=False),
)

# Single-row settings table; id=1 is the only row ever written.
_app_settings = Table(
    "app_settings",
    _metadata,
    Column("id", Integer, primary_key=True),
    Column("signup_enabled", Boolean, nullable=False, default=True),
    Column("github_oauth_enabled", Boolean, nullable=False, default=True),
    Column("google_oauth_enabled", Boolean, nullable=False, default=True),
    Column("require_two_factor_authentication", Boolean, nullable=False, default=False),
    Column("two_factor_grace_period", Integer, nullable=False, default=48),
    Column("enforce_terms", Boolean, nullable=False, default=False),
    Column("password_authentication_enabled", Boolean, nullable=False, default=True),
)

# Columns update_user() may touch. id and created_at are immutable.
_MUTABLE_USER_FIELDS: set[str] = {c.name for c in _users.columns} - {"id", "created_at"}
_BOOL_USER_FIELDS = ("password_automatically_set", "otp_required_for_login")


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for users, backup codes, terms and application settings.

    Usage:
        store = UserStore()
        uid = store.create_user(User(username="root", email="root@example.com",
                                     hashed_password=hash_password("secret"), role="admin"))
        user = store.get_by_login("root")
        store.close()
    """

    _APP_SETTINGS_KEYS: set = {f.name for f in dataclass_fields(AppSettings)}

    def __init__(self, db_url: str | None = None) -> None:
        db_url = db_url or get_settings().database_url
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)
        self._ensure_app_settings()

    def _ensure_app_settings(self) -> None:
        """Seed the single settings row if it does not exist yet. Idempotent."""
        with self.engine.connect() as conn:
            exists = conn.execute(select(_app_settings.c.id).where(_app_settings.c.id == 1)).first()
            if exists is None:
                conn.execute(_app_settings.insert().values(id=1))
                conn.commit()

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def has_users(self) -> bool:
        """Return True if at least one human (non-ghost) user exists."""
        return self.count_users() > 0

    def count_users(self) -> int:
        """Count human accounts. The ghost account is excluded."""
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count()).select_from(_users).where(_users.c.user_type.is_(None))
            ).scalar()
        return result or 0

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the username or email already
        exists. Callers translate that into a 409 or a form error.
        """
        values = {f: getattr(user, f) for f in _MUTABLE_USER_FIELDS}
        for name in _BOOL_USER_FIELDS:
            values[name] = 1 if values[name] else 0
        values["created_at"] = _now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(_users.insert().values(**values))
            conn.commit()
            return result.inserted_primary_key[0]

    def get_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_username(self, username: str) -> User | None:
        """Case-insensitive username lookup."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _users.select().where(func.lower(_users.c.username) == username.strip().lower())
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_email(self, email: str) -> User | None:
        """Case-insensitive email lookup."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _users.select().where(func.lower(_users.c.email) == email.strip().lower())
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_login(self, login: str) -> User | None:
        """Resolve the sign-in form's "Username or email" field."""
        needle = login.strip().lower()
        if not needle:
            return None
        with self.engine.connect() as conn:
            row = conn.execute(
                _users.select().where(
                    or_(func.lower(_users.c.username) == needle, func.lower(_users.c.email) == needle)
                )
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_oauth(self, provider: str, subject: str) -> User | None:
        """Look up a user by (oauth_provider, oauth_subject) pair."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _users.select().where((_users.c.oauth_provider == provider) & (_users.c.oauth_subject == subject))
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def link_oauth(self, user_id: int, provider: str, subject: str) -> None:
        """Associate an OAuth identity with an existing user record."""
        self.update_user(user_id, oauth_provider=provider, oauth_subject=subject)

    def list_users(self) -> list[User]:
        """Return all human users ordered by username. Admin-only operation."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _users.select().where(_users.c.user_type.is_(None)).order_by(_users.c.username)
            ).fetchall()
        return [_row_to_user(r) for r in rows]

    def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable columns on an existing user.

        Unknown column names raise ValueError rather than being ignored.
        Boolean flags are converted to 0/1 for SQLite.

        Returns True if a row was updated, False if user_id was not found.
        """
        unknown = set(fields) - _MUTABLE_USER_FIELDS
        if unknown:
            raise ValueError(f"Unknown user fields: {unknown!r}")
        for name in _BOOL_USER_FIELDS:
            if name in fields:
                fields[name] = 1 if fields[name] else 0
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def count_active_admins(self) -> int:
        """Return the number of active admin users (last-admin guard)."""
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(_users)
                .where((_users.c.role == "admin") & (_users.c.state == "active"))
            ).scalar()
        return result or 0

    def delete_user(self, user_id: int) -> bool:
        """Delete a user together with their backup codes and term agreements."""
        with self.engine.connect() as conn:
            conn.execute(_backup_codes.delete().where(_backup_codes.c.user_id == user_id))
            conn.execute(_term_agreements.delete().where(_term_agreements.c.user_id == user_id))
            result = conn.execute(_users.delete().where(_users.c.id == user_id))
            conn.commit()
        return result.rowcount > 0

    def seed_root_admin(self, email: str = "admin@example.com") -> User | None:
        """Create the first admin on an empty installation. Idempotent.

        The account gets a random password and password_automatically_set, so
        the first visit to the sign-in page walks the operator through
        choosing a real one. Returns the new user, or None if users exist.
        """
        if self.has_users():
            return None
        root = User(
            username="root",
            email=email,
            name="Administrator",
            hashed_password=hash_password(secrets.token_urlsafe(32)),
            role="admin",
            password_automatically_set=True,
        )
        return self.get_by_id(self.create_user(root))

    def ghost(self) -> User:
        """Return the internal ghost account, creating it on first use.

        The ghost password is a throwaway bcrypt hash of random bytes; the
        account is refused by authenticate_user() regardless.
        """
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.user_type == "ghost")).fetchone()
        if row is not None:
            return _row_to_user(row)
        ghost = User(
            username="ghost",
            email="ghost@gatehouse.localhost",
            name="Ghost User",
            hashed_password=hash_password(secrets.token_hex(32)),
            user_type="ghost",
            password_automatically_set=True,
        )
        ghost.id = self.create_user(ghost)
        return self.get_by_id(ghost.id)

    # ------------------------------------------------------------------
    # Trackable / lockable
    # ------------------------------------------------------------------

    def record_sign_in(self, user_id: int, ip: str | None) -> None:
        """Stamp a completed sign-in.

        Shifts current_* to last_*, increments sign_in_count, clears the
        failed-attempt counter and any lock, and invalidates a pending
        reset-password token.
        """
        user = self.get_by_id(user_id)
        if user is None:
            return
        now = _now_iso()
        self.update_user(
            user_id,
            sign_in_count=user.sign_in_count + 1,
            last_sign_in_at=user.current_sign_in_at or now,
            last_sign_in_ip=user.current_sign_in_ip or ip,
            current_sign_in_at=now,
            current_sign_in_ip=ip,
            failed_attempts=0,
            locked_at=None,
            reset_password_token=None,
            reset_password_sent_at=None,
        )

    def record_failed_attempt(self, user_id: int, maximum_attempts: int) -> bool:
        """Increment failed_attempts; lock the account at the threshold.

        Returns True when this attempt locked the account.
        """
        with self.engine.connect() as conn:
            conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(failed_attempts=_users.c.failed_attempts + 1)
            )
            attempts = conn.execute(select(_users.c.failed_attempts).where(_users.c.id == user_id)).scalar()
            locked = attempts is not None and attempts >= maximum_attempts
            if locked:
                conn.execute(
                    _users.update()
                    .where((_users.c.id == user_id) & (_users.c.locked_at.is_(None)))
                    .values(locked_at=_now_iso())
                )
            conn.commit()
        return locked

    def unlock(self, user_id: int) -> None:
        self.update_user(user_id, failed_attempts=0, locked_at=None)

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    def set_reset_password_token(self, user_id: int, token_digest: str) -> None:
        self.update_user(user_id, reset_password_token=token_digest, reset_password_sent_at=_now_iso())

    def get_by_reset_token(self, token_digest: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.reset_password_token == token_digest)).fetchone()
        return _row_to_user(row) if row is not None else None

    def clear_expired_reset_tokens(self, sent_before_iso: str) -> int:
        """Drop reset tokens issued before the cutoff. Returns rows touched."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update()
                .where(
                    _users.c.reset_password_token.is_not(None)
                    & (_users.c.reset_password_sent_at < sent_before_iso)
                )
                .values(reset_password_token=None, reset_password_sent_at=None)
            )
            conn.commit()
        return result.rowcount

    def set_password(self, user_id: int, hashed_password: str) -> None:
        """Store a password the user chose.

        A chosen password is never "automatically set" and never already
        expired. Any pending reset token and lock are cleared with it.
        """
        self.update_user(
            user_id,
            hashed_password=hashed_password,
            password_automatically_set=False,
            password_expires_at=None,
            reset_password_token=None,
            reset_password_sent_at=None,
            failed_attempts=0,
            locked_at=None,
        )

    # ------------------------------------------------------------------
    # Two-factor
    # ------------------------------------------------------------------

    def consume_timestep(self, user_id: int, timestep: int) -> bool:
        """Record an accepted TOTP timestep. False if it was already used.

        The WHERE clause makes the check-and-set atomic: a code replayed in
        the same (or an earlier) 30-second window never matches.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update()
                .where(
                    (_users.c.id == user_id)
                    & (_users.c.consumed_timestep.is_(None) | (_users.c.consumed_timestep < timestep))
                )
                .values(consumed_timestep=timestep)
            )
            conn.commit()
        return result.rowcount == 1

    def enable_two_factor(self, user_id: int) -> None:
        self.update_user(user_id, otp_required_for_login=True)

    def disable_two_factor(self, user_id: int) -> None:
        """Turn 2FA off and forget the secret, backup codes and grace period."""
        self.update_user(
            user_id,
            otp_required_for_login=False,
            otp_secret=None,
            consumed_timestep=None,
            otp_grace_period_started_at=None,
        )
        self.replace_backup_codes(user_id, [])

    def replace_backup_codes(self, user_id: int, code_hashes: list[str]) -> None:
        """Swap the user's whole backup-code set for a new one."""
        with self.engine.connect() as conn:
            conn.execute(_backup_codes.delete().where(_backup_codes.c.user_id == user_id))
            if code_hashes:
                conn.execute(_backup_codes.insert(), [{"user_id": user_id, "code_hash": h} for h in code_hashes])
            conn.commit()

    def count_backup_codes(self, user_id: int) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count()).select_from(_backup_codes).where(_backup_codes.c.user_id == user_id)
            ).scalar()
        return result or 0

    def consume_backup_code(self, user_id: int, code_hash: str) -> bool:
        """Delete one backup code by digest. False if no such unused code exists."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _backup_codes.delete().where(
                    (_backup_codes.c.user_id == user_id) & (_backup_codes.c.code_hash == code_hash)
                )
            )
            conn.commit()
        return result.rowcount == 1

    # ------------------------------------------------------------------
    # Terms
    # ------------------------------------------------------------------

    def create_term(self, terms: str) -> int:
        """Publish a new terms version. It becomes current immediately."""
        with self.engine.connect() as conn:
            result = conn.execute(_terms.insert().values(terms=terms, created_at=_now_iso()))
            conn.commit()
            return result.inserted_primary_key[0]

    def latest_term(self) -> Term | None:
        with self.engine.connect() as conn:
            row = conn.execute(_terms.select().order_by(_terms.c.id.desc()).limit(1)).fetchone()
        return _row_to_term(row) if row is not None else None

    def get_term(self, term_id: int) -> Term | None:
        with self.engine.connect() as conn:
            row = conn.execute(_terms.select().where(_terms.c.id == term_id)).fetchone()
        return _row_to_term(row) if row is not None else None

    def record_term_agreement(self, user_id: int, term_id: int, accepted: bool) -> None:
        """Append an agreement row; accepting also stamps users.accepted_term_id."""
        with self.engine.connect() as conn:
            conn.execute(
                _term_agreements.insert().values(
                    user_id=user_id,
                    term_id=term_id,
                    accepted=1 if accepted else 0,
                    created_at=_now_iso(),
                )
            )
            if accepted:
                conn.execute(_users.update().where(_users.c.id == user_id).values(accepted_term_id=term_id))
            conn.commit()

    # ------------------------------------------------------------------
    # App settings
    # ------------------------------------------------------------------

    def get_app_settings(self) -> AppSettings:
        with self.engine.connect() as conn:
            row = conn.execute(_app_settings.select().where(_app_settings.c.id == 1)).fetchone()
        if row is None:
            # Should never happen; _ensure_app_settings() seeds this row.
            return AppSettings()
        return AppSettings(**{k: getattr(row, k) for k in self._APP_SETTINGS_KEYS})

    def update_app_settings(self, **kwargs) -> AppSettings:
        """Update one or more application settings and return the new values.

        Only AppSettings field names are accepted. Unknown keys raise
        ValueError rather than silently ignoring them.
        """
        unknown = set(kwargs.keys()) - self._APP_SETTINGS_KEYS
        if unknown:
            raise ValueError(f"Unknown app_settings keys: {unknown!r}")
        if kwargs:
            with self.engine.connect() as conn:
                conn.execute(_app_settings.update().where(_app_settings.c.id == 1).values(**kwargs))
                conn.commit()
        return self.get_app_settings()

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        username=row.username,
        email=row.email,
        name=row.name or "",
        hashed_password=row.hashed_password,
        role=row.role,
        state=row.state,
        user_type=row.user_type,
        password_automatically_set=bool(row.password_automatically_set),
        password_expires_at=row.password_expires_at,
        reset_password_token=row.reset_password_token,
        reset_password_sent_at=row.reset_password_sent_at,
        otp_secret=row.otp_secret,
        otp_required_for_login=bool(row.otp_required_for_login),
        consumed_timestep=row.consumed_timestep,
        otp_grace_period_started_at=row.otp_grace_period_started_at,
        accepted_term_id=row.accepted_term_id,
        sign_in_count=row.sign_in_count or 0,
        current_sign_in_at=row.current_sign_in_at,
        last_sign_in_at=row.last_sign_in_at,
        current_sign_in_ip=row.current_sign_in_ip,
        last_sign_in_ip=row.last_sign_in_ip,
        failed_attempts=row.failed_attempts or 0,
        locked_at=row.locked_at,
        oauth_provider=row.oauth_provider,
        oauth_subject=row.oauth_subject,
        created_at=row.created_at,
    )


def _row_to_term(row) -> Term:
    return Term(id=row.id, terms=row.terms, created_at=row.created_at)
