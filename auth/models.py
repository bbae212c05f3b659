"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and services do
the work; these types only carry shape.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class Role(str, Enum):
    """Closed set of roles. The store converts every row through Role(...)."""

    standard = "standard"
    admin = "admin"


@dataclass
class User:
    """A registered identity.

    email is the login key and is stored lower-cased. password_hash is the
    bcrypt output and is never compared in plaintext.
    """

    email: str
    password_hash: str
    role: Role = Role.standard
    first_name: str = ""
    last_name: str = ""
    id: int | None = None
    created_at: datetime | None = None


@dataclass
class RefreshToken:
    """Server-side record of an issued refresh token.

    token_digest is HMAC-SHA256(SECRET_KEY, raw_token); the raw value only
    ever exists in the client's hands. role is a snapshot taken at issue time
    so renewal does not need to read the users table.
    """

    token_digest: str
    user_id: int
    role: Role
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class AccessClaims:
    """Verified content of an access token."""

    user_id: int
    role: Role
    expires_at: datetime


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int  # access token lifetime in seconds
