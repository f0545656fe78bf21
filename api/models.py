"""
API request and response models for StaffGate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Input-format rules (lengths, character sets, password composition) live here
and only here. By the time a value reaches auth/ it is well-formed.
"""

import re
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.models import IdentityStatus, IdentityView

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

USERNAME_PATTERN = r"^[a-zA-Z0-9_-]+$"
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"
PHONE_PATTERN = r"^(\d{2,3}-\d{3,4}-\d{4})?$"

# Letters, digits and at least one of @$!%*#?&, nothing else. Checked in a
# validator because pydantic-core's regex engine has no lookaheads.
_PASSWORD_ALLOWED = re.compile(r"^[A-Za-z\d@$!%*#?&]+$")
_PASSWORD_SPECIALS = set("@$!%*#?&")
PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 72


def check_password_strength(value: str) -> str:
    """Raise ValueError unless value is an acceptable new password.

    Shared by the request models and the admin CLI. Whitespace is never
    trimmed from passwords.
    """
    if not PASSWORD_MIN_LENGTH <= len(value) <= PASSWORD_MAX_LENGTH:
        raise ValueError(f"Password must be {PASSWORD_MIN_LENGTH} to {PASSWORD_MAX_LENGTH} characters.")
    if not _PASSWORD_ALLOWED.match(value):
        raise ValueError("Password may only contain letters, digits and @$!%*#?&.")
    if not any(c.isalpha() for c in value):
        raise ValueError("Password must contain a letter.")
    if not any(c.isdigit() for c in value):
        raise ValueError("Password must contain a digit.")
    if not any(c in _PASSWORD_SPECIALS for c in value):
        raise ValueError("Password must contain one of @$!%*#?&.")
    return value


def _strip(value):
    return value.strip() if isinstance(value, str) else value


def _blank_to_none(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    username: str = Field(min_length=1, max_length=50)
    password: str = Field(min_length=1, max_length=100)

    @field_validator("username", mode="before")
    @classmethod
    def strip_username(cls, value):
        return _strip(value)


class UserCreate(BaseModel):
    """Request body for POST /api/v1/auth/register and POST /api/v1/users."""

    username: str = Field(min_length=3, max_length=50, pattern=USERNAME_PATTERN)
    password: str = Field(min_length=PASSWORD_MIN_LENGTH, max_length=PASSWORD_MAX_LENGTH)
    email: str = Field(max_length=100, pattern=EMAIL_PATTERN)
    employee_id: Optional[str] = Field(default=None, max_length=20)
    name: str = Field(min_length=2, max_length=50)
    department: Optional[str] = Field(default=None, max_length=50)
    position: Optional[str] = Field(default=None, max_length=50)
    phone: Optional[str] = Field(default=None, pattern=PHONE_PATTERN)

    @field_validator("password")
    @classmethod
    def password_strength(cls, value: str) -> str:
        return check_password_strength(value)

    @field_validator("username", "email", "name", "department", "position", "phone", mode="before")
    @classmethod
    def strip_text(cls, value):
        return _strip(value)

    @field_validator("employee_id", mode="before")
    @classmethod
    def blank_employee_id(cls, value: Optional[str]) -> Optional[str]:
        """An empty employee ID means "none"; it must not collide on the UNIQUE index."""
        return _blank_to_none(value)


class UserUpdate(BaseModel):
    """Request body for PUT /api/v1/users/{id}. Omitted fields are left unchanged."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: Optional[str] = Field(default=None, max_length=100, pattern=EMAIL_PATTERN)
    employee_id: Optional[str] = Field(default=None, max_length=20)
    name: Optional[str] = Field(default=None, min_length=2, max_length=50)
    department: Optional[str] = Field(default=None, max_length=50)
    position: Optional[str] = Field(default=None, max_length=50)
    phone: Optional[str] = Field(default=None, pattern=PHONE_PATTERN)

    @field_validator("employee_id", mode="before")
    @classmethod
    def blank_employee_id(cls, value: Optional[str]) -> Optional[str]:
        return _blank_to_none(value)


class PasswordChange(BaseModel):
    """Request body for PUT /api/v1/users/{id}/password."""

    current_password: str = Field(min_length=1, max_length=100)
    new_password: str = Field(min_length=PASSWORD_MIN_LENGTH, max_length=PASSWORD_MAX_LENGTH)
    confirm_password: str = Field(min_length=1, max_length=100)

    @field_validator("new_password")
    @classmethod
    def password_strength(cls, value: str) -> str:
        return check_password_strength(value)


class StatusUpdate(BaseModel):
    """Request body for PUT /api/v1/users/{id}/status."""

    status: IdentityStatus


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    """Sanitized identity. Never carries the password hash or lockout counters."""

    model_config = ConfigDict(frozen=True)

    id: int
    username: str
    email: str
    employee_id: Optional[str]
    name: str
    department: Optional[str]
    position: Optional[str]
    phone: Optional[str]
    status: IdentityStatus
    last_login_at: Optional[datetime]
    created_at: Optional[datetime]
    updated_at: Optional[datetime]
    role_names: list[str]

    @classmethod
    def from_view(cls, view: IdentityView) -> "UserResponse":
        return cls(
            id=view.id,
            username=view.username,
            email=view.email,
            employee_id=view.employee_id,
            name=view.name,
            department=view.department,
            position=view.position,
            phone=view.phone,
            status=view.status,
            last_login_at=view.last_login_at,
            created_at=view.created_at,
            updated_at=view.updated_at,
            role_names=sorted(view.role_names),
        )


class LoginResponse(BaseModel):
    """Response for a successful POST /api/v1/auth/login."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "Bearer"
    expires_in: int
    user: UserResponse


class MeResponse(BaseModel):
    """Response for GET /api/v1/auth/me: what the bearer token says about its holder."""

    model_config = ConfigDict(frozen=True)

    username: str
    authorities: list[str]


class AvailabilityResponse(BaseModel):
    """Response for GET /api/v1/users/check/*."""

    model_config = ConfigDict(frozen=True)

    available: bool


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class ErrorDetail(BaseModel):
    """Machine-readable error code plus human message."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Uniform error envelope: {"error": {...}}."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str]
