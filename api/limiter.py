"""
api/limiter.py -- Shared slowapi rate limiter instance.

Imported by api/main.py (to mount as middleware) and api/routes/v1/auth.py
(to apply per-route limits with @limiter.limit()).

A single shared instance means all routes share the same in-memory counter
store. Per-module instances would each keep an isolated counter and limits
would never trigger.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")


def credential_rate_limit() -> str:
    """Limit string for the credential-exchange routes (login, refresh)."""
    return get_settings().login_rate_limit
