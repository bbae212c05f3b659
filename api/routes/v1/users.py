"""
api/routes/v1/users.py -- Account endpoints.

Routes:
  POST  /api/v1/users/register         -- create a standard user (public)
  PATCH /api/v1/users/{user_id}/role   -- elevate a user to admin (admin only)

Elevation goes through require_admin, which checks both the role claim and
the live admin row in the store.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from api.concurrency import run_bounded
from api.models import RegisterRequest, UserResponse
from auth.dependencies import require_admin
from auth.models import AccessClaims
from auth.service import AccountService

router = APIRouter()


@router.post("/users/register", response_model=UserResponse, status_code=201)
async def register(request: Request, body: RegisterRequest) -> UserResponse:
    """Create a standard account. 409 if the email is already registered."""
    service: AccountService = request.app.state.accounts
    user = await run_bounded(
        service.register,
        body.email,
        body.password,
        body.first_name,
        body.last_name,
        timeout=request.app.state.settings.store_timeout_seconds,
    )
    return UserResponse.from_user(user)


@router.patch("/users/{user_id}/role", response_model=UserResponse)
async def elevate_role(
    request: Request,
    user_id: int,
    caller: AccessClaims = Depends(require_admin),
) -> UserResponse:
    """Grant the admin role to user_id. Admin only."""
    service: AccountService = request.app.state.accounts
    user = await run_bounded(
        service.elevate_role,
        user_id,
        timeout=request.app.state.settings.store_timeout_seconds,
    )
    return UserResponse.from_user(user)
