"""
API request and response models for Gatehouse REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py and
groups/models.py, which own the internal domain representation. Route handlers
map between the two.

Separation of concerns: domain dataclasses = domain truth; api/ models = API contract.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from groups.models import ACCESS_LEVELS

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class RoleEnum(str, Enum):
    admin = "admin"
    user = "user"


class StateEnum(str, Enum):
    active = "active"
    blocked = "blocked"


# ---------------------------------------------------------------------------
# Sign-in
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login.

    login accepts a username or an email. otp_attempt is either a current TOTP
    code or an unused backup code; it is required only for 2FA users.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    login: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=255)
    otp_attempt: Optional[str] = Field(default=None, max_length=32)
    remember_me: bool = False


class LoginResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str
    expires_in: int
    username: str
    role: str
    # Pending account gates, e.g. ["terms", "two_factor"]. The API never
    # blocks on them; clients decide how to surface them.
    required_actions: list[str] = Field(default_factory=list)


class MeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: int
    username: str
    email: str
    role: str
    two_factor_enabled: bool
    oauth_provider: Optional[str] = None
    required_actions: list[str] = Field(default_factory=list)


class OAuthProviderInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    label: str


# ---------------------------------------------------------------------------
# User management
# ---------------------------------------------------------------------------


class UserCreate(BaseModel):
    """Request body for POST /api/v1/auth/users.

    Without a password the account gets a random one and
    password_automatically_set, so its owner signs in through OAuth or a
    password reset.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=1, max_length=255, pattern=r"^[A-Za-z0-9_.\-]+$")
    email: str = Field(min_length=3, max_length=255)
    name: str = Field(default="", max_length=255)
    password: Optional[str] = Field(default=None, min_length=8, max_length=255)
    role: RoleEnum = RoleEnum.user

    @field_validator("email")
    @classmethod
    def email_has_at(cls, value: str) -> str:
        if "@" not in value:
            raise ValueError("email must contain @")
        return value.lower()


class UserPatch(BaseModel):
    """Request body for PATCH /api/v1/auth/users/{id}. Omitted fields are unchanged."""

    role: Optional[RoleEnum] = None
    state: Optional[StateEnum] = None
    password_expires_at: Optional[datetime] = None

    @field_validator("password_expires_at")
    @classmethod
    def expiry_in_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        """Store UTC. A timestamp without an offset is read as UTC."""
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class UserResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    username: str
    email: str
    name: str
    role: str
    state: str
    two_factor_enabled: bool
    password_expires_at: Optional[str]
    sign_in_count: int
    last_sign_in_at: Optional[str]
    oauth_provider: Optional[str]
    created_at: str


# ---------------------------------------------------------------------------
# Application settings and terms
# ---------------------------------------------------------------------------


class AppSettingsResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    signup_enabled: bool
    github_oauth_enabled: bool
    google_oauth_enabled: bool
    require_two_factor_authentication: bool
    two_factor_grace_period: int
    enforce_terms: bool
    password_authentication_enabled: bool


class AppSettingsPatch(BaseModel):
    signup_enabled: Optional[bool] = None
    github_oauth_enabled: Optional[bool] = None
    google_oauth_enabled: Optional[bool] = None
    require_two_factor_authentication: Optional[bool] = None
    two_factor_grace_period: Optional[int] = Field(default=None, ge=0, le=24 * 365)
    enforce_terms: Optional[bool] = None
    password_authentication_enabled: Optional[bool] = None


class TermsCreate(BaseModel):
    terms: str = Field(min_length=1, max_length=100_000)


class TermsResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    terms: str
    created_at: str


# ---------------------------------------------------------------------------
# Groups
# ---------------------------------------------------------------------------


class GroupCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=255)
    path: str = Field(min_length=1, max_length=255, pattern=r"^[a-z0-9_.\-]+$")
    parent_id: Optional[int] = None
    require_two_factor_authentication: bool = False
    two_factor_grace_period: int = Field(default=48, ge=0, le=24 * 365)


class GroupPatch(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    require_two_factor_authentication: Optional[bool] = None
    two_factor_grace_period: Optional[int] = Field(default=None, ge=0, le=24 * 365)


class GroupResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    path: str
    full_name: str
    parent_id: Optional[int]
    require_two_factor_authentication: bool
    two_factor_grace_period: int


class GroupMemberAdd(BaseModel):
    user_id: int
    access_level: str = "developer"

    @field_validator("access_level")
    @classmethod
    def known_level(cls, value: str) -> str:
        if value not in ACCESS_LEVELS:
            raise ValueError(f"access_level must be one of {sorted(ACCESS_LEVELS)}")
        return value


class GroupMemberResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: int
    access_level: int


# ---------------------------------------------------------------------------
# Envelopes
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
