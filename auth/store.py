"""
auth/store.py -- SQLAlchemy Core persistence layer for users and refresh tokens.

Pattern: Repository + Data Mapper.
CredentialStore is the repository; _row_to_user / _row_to_refresh_token are
the mappers. Service and dependency code never touches SQL directly.

Atomicity:
  Every public method runs in its own connection. Writes use engine.begin(),
  so a method is one transaction. replace_refresh_token() is the rotation
  primitive: a conditional DELETE of the old digest followed by the INSERT of
  the new record in the same transaction. When the DELETE matches nothing a
  concurrent refresh or logout already consumed the token and the method
  returns False without inserting -- two live successors can never exist.

Errors:
  Not-found is signalled by None / False. Driver and SQL failures are wrapped
  as StorageError (email uniqueness violations as EmailTaken) so callers never
  import sqlalchemy to handle them.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Roles are validated twice: a CHECK constraint on write and Role(...) on read.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import (
    CheckConstraint,
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    func,
    select,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.errors import EmailTaken, StorageError
from auth.models import RefreshToken, Role, User

logger = logging.getLogger("authgate.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_ROLE_CHECK = "role IN ('standard', 'admin')"

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(320), nullable=False, unique=True),
    Column("password_hash", Text, nullable=False),
    Column("role", String(16), nullable=False, server_default=Role.standard.value),
    Column("first_name", String(100), nullable=False, server_default=""),
    Column("last_name", String(100), nullable=False, server_default=""),
    Column("created_at", String(32), nullable=False),
    CheckConstraint(_ROLE_CHECK, name="ck_users_role"),
)

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("token_digest", String(64), primary_key=True),  # HMAC-SHA256 hex
    # Plain reference, no FK: the user row may be removed independently.
    Column("user_id", Integer, nullable=False, index=True),
    Column("role", String(16), nullable=False),  # snapshot at issue time
    Column("issued_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False, index=True),
    CheckConstraint(_ROLE_CHECK, name="ck_refresh_tokens_role"),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers do not block behind a rotation.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _to_iso(dt: datetime) -> str:
    # Fixed-width UTC timestamps so string comparison in SQL orders correctly.
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _now_iso() -> str:
    return _to_iso(datetime.now(timezone.utc))


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class CredentialStore:
    """Repository for User and RefreshToken records.

    Usage:
        store = CredentialStore("sqlite:///authgate.db")
        uid = store.create_user(User(email="a@x.com", password_hash=hash_password("pw123")))
        store.set_admin_role(uid)
        store.close()
    """

    def __init__(self, db_url: str, timeout: float = 5.0) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
            # Busy timeout: a writer waiting on a concurrent rotation blocks at
            # most this long before the call fails with StorageError.
            connect_args["timeout"] = timeout
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        with self._guard("create_schema"):
            _metadata.create_all(self.engine)

    @contextmanager
    def _guard(self, operation: str) -> Iterator[None]:
        """Translate SQLAlchemy failures into the auth error taxonomy."""
        try:
            yield
        except SQLAlchemyError as exc:
            logger.error("Store operation %s failed: %s", operation, exc.__class__.__name__)
            raise StorageError(f"Credential store failed during {operation}.") from exc

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError:
            return False
        return True

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises EmailTaken if the email already exists, including when a
        concurrent registration wins the race for the same address.
        """
        values = {
            "email": user.email.lower(),
            "password_hash": user.password_hash,
            "role": Role(user.role).value,
            "first_name": user.first_name,
            "last_name": user.last_name,
            "created_at": _now_iso(),
        }
        try:
            with self.engine.begin() as conn:
                result = conn.execute(_users.insert().values(**values))
        except IntegrityError as exc:
            raise EmailTaken() from exc
        except SQLAlchemyError as exc:
            logger.error("Store operation create_user failed: %s", exc.__class__.__name__)
            raise StorageError("Credential store failed during create_user.") from exc
        return result.inserted_primary_key[0]

    def get_user_by_email(self, email: str) -> User | None:
        """Look up a user by email (case-insensitive). Returns None if not found."""
        with self._guard("get_user_by_email"), self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email.lower())).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_user_by_id(self, user_id: int) -> User | None:
        """Look up a user by primary key. Returns None if not found."""
        with self._guard("get_user_by_id"), self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def set_admin_role(self, user_id: int) -> bool:
        """Grant the admin role. Returns False if user_id does not exist.

        A single UPDATE, so concurrent elevations of the same user are
        idempotent and never observe a half-written row.
        """
        with self._guard("set_admin_role"), self.engine.begin() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(role=Role.admin.value))
        return result.rowcount > 0

    def is_admin(self, user_id: int) -> bool:
        """Return True if user_id exists and currently holds the admin role."""
        with self._guard("is_admin"), self.engine.connect() as conn:
            role = conn.execute(select(_users.c.role).where(_users.c.id == user_id)).scalar()
        return role == Role.admin.value

    def has_admin(self) -> bool:
        """Return True if at least one admin exists. Used by the startup bootstrap."""
        with self._guard("has_admin"), self.engine.connect() as conn:
            count = conn.execute(
                select(func.count()).select_from(_users).where(_users.c.role == Role.admin.value)
            ).scalar()
        return (count or 0) > 0

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    def put_refresh_token(self, record: RefreshToken) -> None:
        """Insert a newly issued refresh token record."""
        with self._guard("put_refresh_token"), self.engine.begin() as conn:
            conn.execute(_refresh_tokens.insert().values(**_refresh_token_values(record)))

    def get_refresh_token(self, token_digest: str) -> RefreshToken | None:
        """Look up a refresh token by digest. Returns None if not found."""
        with self._guard("get_refresh_token"), self.engine.connect() as conn:
            row = conn.execute(
                _refresh_tokens.select().where(_refresh_tokens.c.token_digest == token_digest)
            ).fetchone()
        return _row_to_refresh_token(row) if row is not None else None

    def replace_refresh_token(self, old_digest: str, new_record: RefreshToken) -> bool:
        """Atomically consume old_digest and store new_record.

        Returns False (and stores nothing) if old_digest was no longer present
        when the transaction ran -- the caller lost a rotation race.
        """
        with self._guard("replace_refresh_token"), self.engine.begin() as conn:
            deleted = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.token_digest == old_digest))
            if deleted.rowcount == 0:
                return False
            conn.execute(_refresh_tokens.insert().values(**_refresh_token_values(new_record)))
        return True

    def delete_refresh_token(self, token_digest: str) -> bool:
        """Delete a refresh token. Returns True if deleted, False if not found."""
        with self._guard("delete_refresh_token"), self.engine.begin() as conn:
            result = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.token_digest == token_digest))
        return result.rowcount > 0

    def purge_expired_refresh_tokens(self, now: datetime) -> int:
        """Delete every refresh token whose expiry is at or before now. Returns rows removed."""
        with self._guard("purge_expired_refresh_tokens"), self.engine.begin() as conn:
            result = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.expires_at <= _to_iso(now)))
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _parse_role(value: str) -> Role:
    try:
        return Role(value)
    except ValueError as exc:
        raise StorageError(f"Unknown role {value!r} in credential store.") from exc


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        password_hash=row.password_hash,
        role=_parse_role(row.role),
        first_name=row.first_name,
        last_name=row.last_name,
        created_at=datetime.fromisoformat(row.created_at),
    )


def _row_to_refresh_token(row) -> RefreshToken:
    return RefreshToken(
        token_digest=row.token_digest,
        user_id=row.user_id,
        role=_parse_role(row.role),
        issued_at=datetime.fromisoformat(row.issued_at),
        expires_at=datetime.fromisoformat(row.expires_at),
    )


def _refresh_token_values(record: RefreshToken) -> dict:
    return {
        "token_digest": record.token_digest,
        "user_id": record.user_id,
        "role": Role(record.role).value,
        "issued_at": _to_iso(record.issued_at),
        "expires_at": _to_iso(record.expires_at),
    }
