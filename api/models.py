"""
API request and response models for AuthGate REST endpoints.

These Pydantic v2 models define the HTTP transport contract. They are
intentionally separate from the dataclasses in auth/models.py, which own the
internal domain representation. Route handlers map between the two.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from auth.models import TokenPair, User
from auth.tokens import PASSWORD_MAX_BYTES

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    email: EmailStr
    password: str = Field(min_length=1, max_length=64)


class RefreshRequest(BaseModel):
    """Request body for POST /api/v1/auth/refresh and /api/v1/auth/logout."""

    model_config = ConfigDict(str_strip_whitespace=True)

    refresh_token: str = Field(min_length=1, max_length=256)


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/users/register.

    Passwords are taken verbatim (no whitespace stripping). The 64-character
    cap alone does not bound the UTF-8 size, so the validator also enforces
    bcrypt's byte limit.
    """

    email: EmailStr
    password: str = Field(min_length=3, max_length=64)
    first_name: str = Field(default="", max_length=100)
    last_name: str = Field(default="", max_length=100)

    @field_validator("password")
    @classmethod
    def password_fits_bcrypt(cls, v: str) -> str:
        if len(v.encode("utf-8")) > PASSWORD_MAX_BYTES:
            raise ValueError(f"password must be at most {PASSWORD_MAX_BYTES} bytes when UTF-8 encoded")
        return v


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class TokenPairResponse(BaseModel):
    """Response for login and refresh."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int

    @classmethod
    def from_pair(cls, pair: TokenPair) -> "TokenPairResponse":
        return cls(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            expires_in=pair.expires_in,
        )


class MeResponse(BaseModel):
    """Identity carried by the caller's access token."""

    model_config = ConfigDict(frozen=True)

    user_id: int
    role: str
    expires_at: str


class UserResponse(BaseModel):
    """Public view of a user record. Never includes the password hash."""

    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    role: str
    first_name: str
    last_name: str
    created_at: str

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            role=user.role.value,
            first_name=user.first_name,
            last_name=user.last_name,
            created_at=user.created_at.isoformat() if user.created_at else "",
        )


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
    components: dict[str, str]
