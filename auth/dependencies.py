"""
auth/dependencies.py -- FastAPI Depends() helpers implementing the authorization gate.

Two stages, both synchronous and non-retrying:

  get_current_claims()  Authenticate. Extracts "Authorization: Bearer <token>"
                        and verifies signature and expiry. Raises
                        InvalidTokenError / ExpiredTokenError -> 401 before
                        the route handler runs.

  require_admin()       Authorize. Runs get_current_claims(), then requires
                        role == admin in the claims AND a live admin row in the
                        CredentialStore. Raises NotAdmin -> 403.

The live re-check closes the window where an access token minted as admin
outlives a role change in the store. Access tokens are otherwise never looked
up in storage.

The dependencies raise typed auth errors rather than HTTPException; the
AuthError handler in api/main.py owns the status mapping.

Layer rule: may import from fastapi (Request) because this module is part of
the FastAPI dependency injection system. No imports from api/ or core/.
"""

from __future__ import annotations

import logging

from fastapi import Request

from auth.errors import InvalidTokenError, NotAdmin
from auth.models import AccessClaims, Role
from auth.store import CredentialStore
from auth.tokens import TokenCodec

logger = logging.getLogger("authgate.gate")

_BEARER_PREFIX = "bearer "


def _bearer_token(request: Request) -> str | None:
    header = request.headers.get("Authorization", "")
    if header[: len(_BEARER_PREFIX)].lower() != _BEARER_PREFIX:
        return None
    token = header[len(_BEARER_PREFIX) :].strip()
    return token or None


def get_current_claims(request: Request) -> AccessClaims:
    """Require a valid bearer access token.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(claims: AccessClaims = Depends(get_current_claims)): ...
    """
    token = _bearer_token(request)
    if token is None:
        raise InvalidTokenError("Authentication required.")
    codec: TokenCodec = request.app.state.codec
    return codec.verify_access_token(token)


def require_admin(request: Request) -> AccessClaims:
    """Require a valid bearer token whose user is an admin right now.

    Use as a FastAPI dependency:
        @router.patch("/admin-only")
        def route(claims: AccessClaims = Depends(require_admin)): ...
    """
    claims = get_current_claims(request)
    if claims.role is not Role.admin:
        raise NotAdmin()
    store: CredentialStore = request.app.state.store
    if not store.is_admin(claims.user_id):
        logger.warning("Admin claim rejected by live role check", extra={"user_id": claims.user_id})
        raise NotAdmin()
    return claims
