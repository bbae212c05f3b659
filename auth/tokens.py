"""
auth/tokens.py -- JWT codec, refresh-token generation, and password hashing.

Security design decisions:
  Access tokens: python-jose with HS256. Tokens carry sub, user_id, role, iat,
       exp and type="access". Verification raises ExpiredTokenError or
       InvalidTokenError -- the gate maps both to 401 with different codes so
       clients know when to call /auth/refresh.

  Refresh tokens: secrets.token_urlsafe(32) gives 256 bits of entropy and no
       embedded user data. The store keeps HMAC-SHA256(SECRET_KEY, token) so a
       leaked table cannot be replayed, while lookup stays O(1) by digest.

  Passwords: bcrypt via the bcrypt package directly. The _DUMMY_HASH constant
       enables timing equalization in AuthenticationService so response time
       does not reveal whether an email is registered.

  SECRET_KEY: passed into TokenCodec by the application lifespan. Nothing in
       this module reads configuration on its own.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
import time
from datetime import datetime, timedelta, timezone

import bcrypt
from jose import ExpiredSignatureError, JWTError, jwt

from auth.errors import ExpiredTokenError, InvalidTokenError, PasswordTooLong, SigningError
from auth.models import AccessClaims, Role

logger = logging.getLogger("authgate.tokens")

_ALGORITHM = "HS256"
_ACCESS_TYPE = "access"

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


# bcrypt rejects (bcrypt>=5) or silently truncates (older releases) input
# beyond this many bytes.
PASSWORD_MAX_BYTES = 72


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Raises PasswordTooLong if the UTF-8 encoding exceeds PASSWORD_MAX_BYTES.
    The API layer rejects such passwords with 422 before they get here.
    """
    encoded = plain.encode("utf-8")
    if len(encoded) > PASSWORD_MAX_BYTES:
        raise PasswordTooLong(PASSWORD_MAX_BYTES)
    return bcrypt.hashpw(encoded, bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    A presented password longer than bcrypt accepts can never match a stored
    hash. A corrupt stored hash makes bcrypt raise ValueError; both are a
    failed comparison, not a server fault.
    """
    encoded = plain.encode("utf-8")
    if len(encoded) > PASSWORD_MAX_BYTES:
        logger.debug("Presented password exceeds %d bytes; rejected without comparison", PASSWORD_MAX_BYTES)
        return False
    try:
        return bcrypt.checkpw(encoded, hashed.encode("utf-8"))
    except ValueError:
        logger.warning("Stored password hash is not a valid bcrypt hash")
        return False


# Computed once at module load so the first login attempt is not measurably
# slower than later ones. Compared against when the email is unknown.
_DUMMY_HASH: str = hash_password("authgate_timing_dummy")


def burn_password_check(plain: str) -> None:
    """Run a bcrypt comparison whose result is discarded (timing equalization)."""
    verify_password(plain, _DUMMY_HASH)


# ---------------------------------------------------------------------------
# Token codec
# ---------------------------------------------------------------------------


class TokenCodec:
    """Creates and verifies access tokens; generates and digests refresh tokens.

    Holds only immutable configuration, so one instance is shared by every
    request.

    Usage:
        codec = TokenCodec(secret_key, access_ttl=timedelta(minutes=15), refresh_ttl=timedelta(days=30))
        token = codec.issue_access_token(42, Role.standard)
        claims = codec.verify_access_token(token)
    """

    def __init__(self, secret_key: str, access_ttl: timedelta, refresh_ttl: timedelta) -> None:
        self._secret_key = secret_key
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl

    # ------------------------------------------------------------------
    # Access tokens
    # ------------------------------------------------------------------

    def issue_access_token(self, user_id: int, role: Role, ttl: timedelta | None = None) -> str:
        """Encode a signed JWT for user_id/role expiring at now + ttl.

        ttl=None uses the configured access TTL. A zero ttl is honoured and
        yields a token that verify_access_token() already treats as expired.

        Raises SigningError if the signer fails. Inputs are trusted here --
        they come from the store, not from the client.
        """
        lifetime = self.access_ttl if ttl is None else ttl
        issued = int(time.time())
        payload = {
            "sub": str(user_id),
            "user_id": user_id,
            "role": Role(role).value,
            "type": _ACCESS_TYPE,
            "iat": issued,
            "exp": issued + int(lifetime.total_seconds()),
        }
        try:
            return jwt.encode(payload, self._secret_key, algorithm=_ALGORITHM)
        except (JWTError, TypeError, ValueError) as exc:
            logger.error("Access token signing failed -- check SECRET_KEY configuration")
            raise SigningError("Could not sign access token.") from exc

    def verify_access_token(self, token: str) -> AccessClaims:
        """Verify signature and expiry; return the claims.

        Raises ExpiredTokenError when the signature is valid but exp is at or
        before now, and InvalidTokenError for everything else (bad signature,
        malformed token, missing claims, wrong token type, unknown role).
        """
        try:
            payload = jwt.decode(token, self._secret_key, algorithms=[_ALGORITHM])
        except ExpiredSignatureError as exc:
            raise ExpiredTokenError() from exc
        except JWTError as exc:
            raise InvalidTokenError() from exc

        if payload.get("type") != _ACCESS_TYPE:
            raise InvalidTokenError()
        exp = payload.get("exp")
        user_id = payload.get("user_id")
        if not isinstance(exp, int) or not isinstance(user_id, int) or isinstance(user_id, bool):
            raise InvalidTokenError()
        # jose only rejects exp strictly in the past; a token expiring this
        # second is already unusable.
        if exp <= time.time():
            raise ExpiredTokenError()
        try:
            role = Role(payload.get("role"))
        except ValueError as exc:
            raise InvalidTokenError() from exc

        return AccessClaims(
            user_id=user_id,
            role=role,
            expires_at=datetime.fromtimestamp(exp, tz=timezone.utc),
        )

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    @staticmethod
    def issue_refresh_token() -> str:
        """Return a new opaque refresh token (256 bits from the OS CSPRNG)."""
        return secrets.token_urlsafe(32)

    def digest_refresh_token(self, token: str) -> str:
        """Return HMAC-SHA256(SECRET_KEY, token) as hex -- the storage key."""
        return hmac.new(self._secret_key.encode(), token.encode(), hashlib.sha256).hexdigest()

    def refresh_expiry(self, now: datetime) -> datetime:
        return now + self.refresh_ttl
