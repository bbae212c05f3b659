"""
auth/errors.py -- Typed failures of the credential lifecycle.

Services raise these unchanged; only the transport layer (api/main.py) maps
them to HTTP status codes and response bodies. Nothing in auth/ formats a
user-facing message beyond the exception text itself.

Hierarchy:
  AuthError
    InvalidCredentials        wrong email or password (indistinguishable)
    UserNotFound              role elevation target does not exist
    EmailTaken                registration with an existing email
    PasswordTooLong           password exceeds bcrypt's 72-byte input limit
    TokenNotFound             refresh token never issued, rotated, revoked or expired
    NotAdmin                  caller lacks a live admin role
    TokenError
      InvalidTokenError       bad signature, malformed or incomplete claims
      ExpiredTokenError       valid signature, expiry elapsed
    SigningError              signing fault -- configuration problem, alert operators
    StorageError              the credential store failed
      OperationTimeout        a store call exceeded its bound; outcome unknown

Layer rule: stdlib only.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for every failure raised by the auth package."""


class InvalidCredentials(AuthError):
    def __init__(self, message: str = "Invalid email or password.") -> None:
        super().__init__(message)


class UserNotFound(AuthError):
    def __init__(self, user_id: int | None = None) -> None:
        self.user_id = user_id
        super().__init__("User not found.")


class EmailTaken(AuthError):
    def __init__(self, message: str = "A user with that email already exists.") -> None:
        super().__init__(message)


class PasswordTooLong(AuthError):
    def __init__(self, limit: int) -> None:
        self.limit = limit
        super().__init__(f"Password must be at most {limit} bytes when UTF-8 encoded.")


class TokenNotFound(AuthError):
    def __init__(self, message: str = "Refresh token not found.") -> None:
        super().__init__(message)


class NotAdmin(AuthError):
    def __init__(self, message: str = "Admin access required.") -> None:
        super().__init__(message)


class TokenError(AuthError):
    """An access token was rejected."""


class InvalidTokenError(TokenError):
    def __init__(self, message: str = "Invalid access token.") -> None:
        super().__init__(message)


class ExpiredTokenError(TokenError):
    def __init__(self, message: str = "Access token expired. Please refresh.") -> None:
        super().__init__(message)


class SigningError(AuthError):
    """The token signer failed. Indicates a bad secret, not bad input."""


class StorageError(AuthError):
    """The credential store could not complete an operation."""


class OperationTimeout(StorageError):
    def __init__(self, operation: str, timeout: float) -> None:
        self.operation = operation
        self.timeout = timeout
        super().__init__(
            f"{operation} did not finish within {timeout:g}s; its outcome is unknown. "
            "Retry the whole operation or log in again."
        )
