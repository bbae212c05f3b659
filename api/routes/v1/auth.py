"""
api/routes/v1/auth.py -- Token lifecycle REST endpoints.

Routes:
  POST /api/v1/auth/login    -- email/password -> access + refresh token
  POST /api/v1/auth/refresh  -- refresh token -> new pair (old token consumed)
  POST /api/v1/auth/logout   -- revoke a refresh token; 204
  GET  /api/v1/auth/me       -- claims of the caller's access token (requires auth)

Security:
  Login and refresh are rate-limited per client IP (LOGIN_RATE_LIMIT).
  Unknown email and wrong password produce the same 401 body; the service
  equalizes their timing.
  Cache-Control: no-store on every response that carries tokens.
  Access tokens stay valid until expiry after logout; refresh tokens stop
  working immediately.

Service calls are blocking and run through run_bounded() so a stuck store
surfaces as OperationTimeout instead of hanging the request.
"""

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse

from api.concurrency import run_bounded
from api.limiter import credential_rate_limit, limiter
from api.models import LoginRequest, MeResponse, RefreshRequest, TokenPairResponse
from auth.dependencies import get_current_claims
from auth.models import AccessClaims, TokenPair
from auth.service import AuthenticationService, RefreshService, RevocationService

# Auth policy:
# - POST /api/v1/auth/login:    public -- login endpoint must be unauthenticated
# - POST /api/v1/auth/refresh:  public -- the refresh token is the credential
# - POST /api/v1/auth/logout:   public -- the refresh token is the credential
# - GET  /api/v1/auth/me:       requires auth (get_current_claims)
router = APIRouter()


def _timeout(request: Request) -> float:
    return request.app.state.settings.store_timeout_seconds


def _token_response(pair: TokenPair) -> JSONResponse:
    resp = JSONResponse(status_code=200, content=TokenPairResponse.from_pair(pair).model_dump())
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/login", response_model=TokenPairResponse)
@limiter.limit(credential_rate_limit)
async def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; return an access/refresh token pair."""
    service: AuthenticationService = request.app.state.authentication
    pair = await run_bounded(service.authenticate, body.email, body.password, timeout=_timeout(request))
    return _token_response(pair)


@router.post("/auth/refresh", response_model=TokenPairResponse)
@limiter.limit(credential_rate_limit)
async def refresh(request: Request, body: RefreshRequest) -> JSONResponse:
    """Rotate a refresh token. The presented token is unusable afterwards."""
    service: RefreshService = request.app.state.refresh
    pair = await run_bounded(service.refresh, body.refresh_token, timeout=_timeout(request))
    return _token_response(pair)


@router.post("/auth/logout", status_code=204)
async def logout(request: Request, body: RefreshRequest) -> Response:
    """Revoke a refresh token."""
    service: RevocationService = request.app.state.revocation
    await run_bounded(service.logout, body.refresh_token, timeout=_timeout(request))
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=MeResponse)
def me(claims: AccessClaims = Depends(get_current_claims)) -> MeResponse:
    """Return the identity carried by the caller's access token."""
    return MeResponse(
        user_id=claims.user_id,
        role=claims.role.value,
        expires_at=claims.expires_at.isoformat(),
    )
