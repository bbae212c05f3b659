"""
auth/service.py -- Credential lifecycle services: login, refresh, logout, accounts.

Each service holds only its injected collaborators (CredentialStore,
TokenCodec), so a single instance is shared by all concurrent requests.
Services raise the typed errors from auth/errors.py unchanged; nothing here
retries or decides HTTP status codes.

Ordering rule for token issuance: the refresh-token record is persisted
before the pair is returned. If persistence fails the caller gets
StorageError and no tokens -- an unpersisted refresh token could never be
redeemed.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from auth.errors import EmailTaken, InvalidCredentials, TokenNotFound, UserNotFound
from auth.models import RefreshToken, Role, TokenPair, User
from auth.store import CredentialStore
from auth.tokens import TokenCodec, burn_password_check, hash_password, verify_password

logger = logging.getLogger("authgate.service")


def _mint_pair(codec: TokenCodec, user_id: int, role: Role) -> tuple[TokenPair, RefreshToken]:
    """Issue an access/refresh pair plus the store record for the refresh half."""
    now = datetime.now(timezone.utc)
    access = codec.issue_access_token(user_id, role)
    refresh = codec.issue_refresh_token()
    record = RefreshToken(
        token_digest=codec.digest_refresh_token(refresh),
        user_id=user_id,
        role=role,
        issued_at=now,
        expires_at=codec.refresh_expiry(now),
    )
    pair = TokenPair(
        access_token=access,
        refresh_token=refresh,
        expires_in=int(codec.access_ttl.total_seconds()),
    )
    return pair, record


class AuthenticationService:
    """Password login."""

    def __init__(self, store: CredentialStore, codec: TokenCodec) -> None:
        self._store = store
        self._codec = codec

    def authenticate(self, email: str, password: str) -> TokenPair:
        """Verify email/password and return a fresh token pair.

        Unknown email and wrong password both raise InvalidCredentials with the
        same message, and both cost exactly one bcrypt comparison, so neither
        the response body nor its timing reveals whether the email exists.

        Raises:
            InvalidCredentials: unknown email or wrong password.
            StorageError:       the lookup or the refresh-token insert failed.
            SigningError:       the access token could not be signed.
        """
        user = self._store.get_user_by_email(email)
        if user is None:
            burn_password_check(password)
            logger.debug("Login rejected: no such user")
            raise InvalidCredentials()
        if not verify_password(password, user.password_hash):
            logger.info("Login rejected: wrong password", extra={"user_id": user.id})
            raise InvalidCredentials()

        pair, record = _mint_pair(self._codec, user.id, user.role)
        self._store.put_refresh_token(record)
        logger.info("Login succeeded", extra={"user_id": user.id})
        return pair


class RefreshService:
    """Refresh-token rotation."""

    def __init__(self, store: CredentialStore, codec: TokenCodec) -> None:
        self._store = store
        self._codec = codec

    def refresh(self, refresh_token: str) -> TokenPair:
        """Exchange a refresh token for a new pair, consuming the old token.

        The role in the new access token comes from the snapshot stored with
        the refresh token, not from the users table.

        Raises:
            TokenNotFound: never issued, already rotated, revoked, expired, or
                           consumed by a concurrent refresh/logout.
            StorageError:  the store failed.
        """
        digest = self._codec.digest_refresh_token(refresh_token)
        record = self._store.get_refresh_token(digest)
        if record is None:
            raise TokenNotFound()
        if record.expires_at <= datetime.now(timezone.utc):
            self._store.delete_refresh_token(digest)
            logger.info("Refresh rejected: token expired", extra={"user_id": record.user_id})
            raise TokenNotFound()

        pair, new_record = _mint_pair(self._codec, record.user_id, record.role)
        if not self._store.replace_refresh_token(digest, new_record):
            logger.warning("Refresh rejected: token consumed concurrently", extra={"user_id": record.user_id})
            raise TokenNotFound()
        logger.info("Refresh token rotated", extra={"user_id": record.user_id})
        return pair


class RevocationService:
    """Logout."""

    def __init__(self, store: CredentialStore, codec: TokenCodec) -> None:
        self._store = store
        self._codec = codec

    def logout(self, refresh_token: str) -> None:
        """Revoke a refresh token.

        Access tokens already issued stay valid until they expire. Logging out
        twice raises TokenNotFound the second time.
        """
        digest = self._codec.digest_refresh_token(refresh_token)
        record = self._store.get_refresh_token(digest)
        if record is None:
            raise TokenNotFound()
        if not self._store.delete_refresh_token(digest):
            raise TokenNotFound()
        logger.info("Refresh token revoked", extra={"user_id": record.user_id})


class AccountService:
    """Registration, role elevation, and the startup admin bootstrap."""

    def __init__(self, store: CredentialStore) -> None:
        self._store = store

    def register(self, email: str, password: str, first_name: str = "", last_name: str = "") -> User:
        """Create a standard user. Raises EmailTaken if the email is registered."""
        user = User(
            email=email,
            password_hash=hash_password(password),
            role=Role.standard,
            first_name=first_name,
            last_name=last_name,
        )
        user_id = self._store.create_user(user)
        logger.info("User registered", extra={"user_id": user_id})
        created = self._store.get_user_by_id(user_id)
        if created is None:
            raise UserNotFound(user_id)
        return created

    def elevate_role(self, target_user_id: int) -> User:
        """Grant admin to target_user_id and return the updated user.

        Authorization of the caller is the gate's job (require_admin).
        Elevating an existing admin is a no-op that still succeeds.

        Raises:
            UserNotFound: target_user_id does not exist.
            StorageError: the store failed.
        """
        if not self._store.set_admin_role(target_user_id):
            raise UserNotFound(target_user_id)
        user = self._store.get_user_by_id(target_user_id)
        if user is None:
            raise UserNotFound(target_user_id)
        logger.info("Role elevated to admin", extra={"user_id": target_user_id})
        return user

    def ensure_admin(self, email: str, password: str) -> bool:
        """Make sure at least one admin exists, using the bootstrap credentials.

        If no admin exists: an existing account with this email is elevated,
        otherwise a new admin account is created. Returns True if anything
        was changed.
        """
        if self._store.has_admin():
            return False
        existing = self._store.get_user_by_email(email)
        if existing is None:
            try:
                user_id = self._store.create_user(
                    User(email=email, password_hash=hash_password(password), role=Role.admin)
                )
                logger.info("Bootstrap admin created", extra={"user_id": user_id})
                return True
            except EmailTaken:
                # Another instance registered the address between our lookup
                # and insert; fall through to elevation.
                existing = self._store.get_user_by_email(email)
                if existing is None:
                    raise
        self._store.set_admin_role(existing.id)
        logger.info("Bootstrap admin elevated", extra={"user_id": existing.id})
        return True
