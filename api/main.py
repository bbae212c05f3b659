"""
api/main.py -- FastAPI application entry point for AuthGate.

Run with:  uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- rate-limit bookkeeping for api.limiter

Lifespan builds the credential store, token codec and services, bootstraps
the admin account, and starts the expired-token purge task. Shutdown cancels
the task and disposes the engine.

Error mapping: services raise typed errors from auth/errors.py. The AuthError
handler below is the only place that turns them into HTTP status codes.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.users import router as users_router
from auth import errors
from auth.service import AccountService, AuthenticationService, RefreshService, RevocationService
from auth.store import CredentialStore
from auth.tokens import TokenCodec
from core.config import Settings, get_settings
from core.logging_config import configure_logging

__version__ = "0.1.0"

logger = logging.getLogger("authgate.api")

# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def install_services(app: FastAPI, settings: Settings, store: CredentialStore) -> None:
    """Attach settings, store, codec and services to app.state.

    Shared by the real lifespan and the test lifespan so both wire the same
    object graph.
    """
    codec = TokenCodec(
        settings.secret_key,
        access_ttl=timedelta(seconds=settings.access_token_expire_seconds),
        refresh_ttl=timedelta(seconds=settings.refresh_token_expire_seconds),
    )
    app.state.settings = settings
    app.state.store = store
    app.state.codec = codec
    app.state.authentication = AuthenticationService(store, codec)
    app.state.refresh = RefreshService(store, codec)
    app.state.revocation = RevocationService(store, codec)
    app.state.accounts = AccountService(store)


def bootstrap_admin(accounts: AccountService, settings: Settings) -> None:
    """Create or elevate the configured admin if the store has none.

    A failure here is logged and the service keeps running: every other
    route works without an admin.
    """
    if not settings.bootstrap_admin_configured:
        return
    try:
        if accounts.ensure_admin(settings.admin_email, settings.admin_password):
            logger.info("Bootstrap admin ensured")
    except errors.AuthError:
        logger.exception("Failed to ensure bootstrap admin")


# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Delete expired refresh tokens every PURGE_INTERVAL_SECONDS.

    Expired tokens are already rejected by RefreshService; this only keeps
    the table from growing. CancelledError from task.cancel() during shutdown
    propagates out of asyncio.sleep and unwinds the coroutine.
    """
    interval = app.state.settings.purge_interval_seconds
    while True:
        await asyncio.sleep(interval)
        try:
            removed = await asyncio.to_thread(
                app.state.store.purge_expired_refresh_tokens, datetime.now(timezone.utc)
            )
        except errors.StorageError:
            logger.warning("Refresh token purge failed; retrying next interval")
            continue
        if removed:
            logger.info("Purged %d expired refresh tokens", removed)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. Settings and logging first -- everything after logs.
      2. Store next -- creates tables; the services depend on it.
      3. Admin bootstrap -- needs the services.
      4. Purge task last -- references app.state.store.
    """
    settings = get_settings()
    configure_logging(settings.env)
    logger.info("AuthGate API starting up (env=%s)", settings.env)

    store = CredentialStore(settings.database_url, timeout=settings.store_timeout_seconds)
    install_services(app, settings, store)
    bootstrap_admin(app.state.accounts, settings)
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    store.close()
    logger.info("AuthGate API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="AuthGate API",
    description="Password login, rotating refresh tokens, and admin-gated role management.",
    version=__version__,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# add_middleware() wraps the existing stack, so the LAST registration is the
# outermost layer. Register innermost first: SlowAPI -> CORS -> TrustedHost.
# ---------------------------------------------------------------------------

_settings = get_settings()

app.add_middleware(SlowAPIMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_methods=["GET", "POST", "PATCH"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Request logging middleware
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    client = request.client.host if request.client else "unknown"
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        client,
        extra={
            "method": request.method,
            "path": request.url.path,
            "status_code": response.status_code,
            "duration_ms": round(ms, 1),
            "client": client,
        },
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(users_router, prefix="/api/v1", tags=["Users"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly.
# ---------------------------------------------------------------------------

# Most specific class first; the first isinstance match wins.
_AUTH_ERROR_STATUS: list[tuple[type[errors.AuthError], int, str]] = [
    (errors.InvalidCredentials, 401, "bad_credentials"),
    (errors.ExpiredTokenError, 401, "token_expired"),
    (errors.InvalidTokenError, 401, "invalid_token"),
    (errors.NotAdmin, 403, "forbidden"),
    (errors.UserNotFound, 404, "user_not_found"),
    (errors.TokenNotFound, 404, "token_not_found"),
    (errors.EmailTaken, 409, "email_taken"),
    (errors.PasswordTooLong, 422, "password_too_long"),
    (errors.OperationTimeout, 500, "storage_timeout"),
    (errors.StorageError, 500, "storage_error"),
    (errors.SigningError, 500, "signing_error"),
]


def _error_response(status_code: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )


@app.exception_handler(errors.AuthError)
async def auth_error_handler(request: Request, exc: errors.AuthError) -> JSONResponse:
    """Map a typed auth failure to its HTTP status and error code."""
    status_code, code = 500, "internal_error"
    for exc_type, mapped_status, mapped_code in _AUTH_ERROR_STATUS:
        if isinstance(exc, exc_type):
            status_code, code = mapped_status, mapped_code
            break

    if isinstance(exc, errors.SigningError):
        # Configuration fault: fail this request, alert operators, keep serving.
        logger.error("Signing failure on %s %s -- check SECRET_KEY", request.method, request.url.path)
    elif isinstance(exc, errors.StorageError):
        logger.error("Storage failure on %s %s: %s", request.method, request.url.path, exc)

    response = _error_response(status_code, code, str(exc))
    response.headers["Cache-Control"] = "no-store"
    if status_code == 401:
        if isinstance(exc, errors.ExpiredTokenError):
            response.headers["WWW-Authenticate"] = 'Bearer error="invalid_token", error_description="token expired"'
        elif isinstance(exc, errors.TokenError):
            response.headers["WWW-Authenticate"] = 'Bearer error="invalid_token"'
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error_response(429, "rate_limited", "Too many requests.", str(exc))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or params fail validation."""
    return _error_response(422, "validation_error", "Request validation failed.", str(exc.errors()))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions."""
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return _error_response(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error_response(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py so it is always reachable regardless of router
# registration state. No rate limit -- load balancer probes must not be
# throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
async def health(request: Request) -> HealthResponse:
    """Return liveness, version, and database reachability."""
    store: CredentialStore = request.app.state.store
    db_ok = await asyncio.to_thread(store.ping)
    return HealthResponse(
        version=__version__,
        components={"app": "ok", "database": "ok" if db_ok else "error"},
    )
