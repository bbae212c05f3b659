"""
tests/conftest.py -- Shared fixtures for AuthGate unit and integration tests.

This module provides:
  - store / codec / services: isolated CredentialStore on a SQLite file in
    tmp_path plus the services built on top of it
  - make_user(): helper that registers a user directly in a store
  - api_client: TestClient over the real FastAPI app with a patched lifespan
    that wires an isolated store into app.state

Design: a SQLite *file* per test (not :memory:) because TestClient and the
concurrency tests run store calls on worker threads. SQLAlchemy gives each
thread its own connection, and a plain :memory: database is per-connection,
so every thread would see a blank schema.

DEBUG and LOGIN_RATE_LIMIT must be set before any api/core import so
get_settings() auto-generates SECRET_KEY and the rate limiter does not trip
during the test run.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

# CRITICAL: set before any core/api import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("LOGIN_RATE_LIMIT", "10000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app, install_services
from auth.models import Role, User
from auth.service import AccountService, AuthenticationService, RefreshService, RevocationService
from auth.store import CredentialStore
from auth.tokens import TokenCodec, hash_password
from core.config import get_settings

TEST_SECRET = "test-secret-key-that-is-long-enough-0123456789"


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def _sqlite_url(directory: Path) -> str:
    return f"sqlite:///{directory / 'authgate_test.db'}"


def make_user(store: CredentialStore, email: str, password: str, role: Role = Role.standard) -> int:
    """Insert a user directly through the store and return its id."""
    return store.create_user(User(email=email, password_hash=hash_password(password), role=role))


@dataclass
class Services:
    authentication: AuthenticationService
    refresh: RefreshService
    revocation: RevocationService
    accounts: AccountService


# ---------------------------------------------------------------------------
# Unit fixtures -- one fresh database per test
# ---------------------------------------------------------------------------


@pytest.fixture
def store(tmp_path: Path) -> Generator[CredentialStore, None, None]:
    s = CredentialStore(_sqlite_url(tmp_path))
    yield s
    s.close()


@pytest.fixture
def codec() -> TokenCodec:
    return TokenCodec(TEST_SECRET, access_ttl=timedelta(minutes=15), refresh_ttl=timedelta(days=30))


@pytest.fixture
def services(store: CredentialStore, codec: TokenCodec) -> Services:
    return Services(
        authentication=AuthenticationService(store, codec),
        refresh=RefreshService(store, codec),
        revocation=RevocationService(store, codec),
        accounts=AccountService(store),
    )


# ---------------------------------------------------------------------------
# Integration fixture -- one TestClient per test module for speed
# ---------------------------------------------------------------------------


def _patch_lifespan(store: CredentialStore):
    """Return an async context manager that replaces the real lifespan.

    Wires the pre-created test store into app.state via the same
    install_services() the production lifespan uses. The purge_task is a
    long-sleeping coroutine so shutdown can cancel a real asyncio.Task.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        install_services(app, get_settings(), store)
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@dataclass
class ApiHarness:
    client: TestClient
    store: CredentialStore
    admin_id: int
    admin_email: str = "admin@example.com"
    admin_password: str = "adminpass123"


@pytest.fixture(scope="module")
def api_client(tmp_path_factory: pytest.TempPathFactory) -> Generator[ApiHarness, None, None]:
    """Yield an ApiHarness for API integration tests.

    The admin user is created before the client starts. base_url uses
    localhost so TrustedHostMiddleware accepts the requests.
    """
    store = CredentialStore(_sqlite_url(tmp_path_factory.mktemp("api")))
    admin_id = make_user(store, "admin@example.com", "adminpass123", role=Role.admin)

    app.router.lifespan_context = _patch_lifespan(store)

    with TestClient(app, base_url="http://localhost", raise_server_exceptions=True) as client:
        yield ApiHarness(client=client, store=store, admin_id=admin_id)

    store.close()


def login(client: TestClient, email: str, password: str) -> dict:
    """POST /auth/login and return the token pair JSON (asserts 200)."""
    resp = client.post("/api/v1/auth/login", json={"email": email, "password": password})
    assert resp.status_code == 200, resp.text
    return resp.json()


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}
