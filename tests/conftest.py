"""
tests/conftest.py -- Shared test fixtures for the Warden auth core and API.

This module provides:
  - per-test component fixtures (clock, tokens, user_store, guard, revocations,
    policies, authz, service), each test on its own shared-memory database
  - api_client: TestClient over the real app with a patched lifespan

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool, and the request-path
checks run in worker threads. Plain :memory: DBs are per-connection and would
present a blank schema to each worker thread. The named URI format
(file:name?mode=memory&cache=shared&uri=true) shares one in-memory instance
across all connections in the same process.

The DEBUG env var must be set before any auth/core import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Generator
from contextlib import asynccontextmanager

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")
# The per-IP login limit is exercised by slowapi itself; keep it out of the
# way of tests that log in repeatedly from the same TestClient address.
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app, close_auth_service
from api.routes.v1.access import admin_access_rules
from auth.attempts import BruteForceGuard, LoginAttemptStore
from auth.authorization import AuthorizationEngine
from auth.login_log import LoginLogStore
from auth.policy_store import PolicyStore
from auth.revocation import RevocationStore
from auth.service import AuthService
from auth.store import UserStore
from auth.tokens import TokenManager
from core.config import get_settings
from tests.helpers import TEST_SECRET, FakeClock, make_user, memory_url


# ---------------------------------------------------------------------------
# Component fixtures -- one fresh database per test
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def db_url() -> str:
    return memory_url("warden")


@pytest.fixture
def tokens() -> TokenManager:
    return TokenManager(secret_key=TEST_SECRET)


@pytest.fixture
def user_store(db_url: str) -> Generator[UserStore, None, None]:
    store = UserStore(db_url=db_url)
    yield store
    store.close()


@pytest.fixture
def guard(db_url: str, clock: FakeClock) -> Generator[BruteForceGuard, None, None]:
    guard = BruteForceGuard(LoginAttemptStore(db_url=db_url), clock=clock)
    yield guard
    guard.close()


@pytest.fixture
def revocations(db_url: str, tokens: TokenManager, clock: FakeClock) -> Generator[RevocationStore, None, None]:
    store = RevocationStore(tokens, db_url=db_url, clock=clock)
    yield store
    store.close()


@pytest.fixture
def policies(db_url: str) -> Generator[PolicyStore, None, None]:
    store = PolicyStore(db_url=db_url)
    yield store
    store.close()


@pytest.fixture
def authz(policies: PolicyStore) -> AuthorizationEngine:
    return AuthorizationEngine(policies)


@pytest.fixture
def login_log(db_url: str) -> Generator[LoginLogStore, None, None]:
    store = LoginLogStore(db_url=db_url)
    yield store
    store.close()


@pytest.fixture
def service(
    user_store: UserStore,
    guard: BruteForceGuard,
    tokens: TokenManager,
    revocations: RevocationStore,
    authz: AuthorizationEngine,
    login_log: LoginLogStore,
) -> AuthService:
    return AuthService(user_store, guard, tokens, revocations, authz, login_log)


# ---------------------------------------------------------------------------
# API fixture -- one TestClient per test module for speed
# ---------------------------------------------------------------------------

ADMIN_ROLE = 1


def _build_test_service() -> AuthService:
    url = memory_url("test_api")
    tokens = TokenManager.from_settings(get_settings())
    return AuthService(
        users=UserStore(url),
        guard=BruteForceGuard(LoginAttemptStore(url)),
        tokens=tokens,
        revocations=RevocationStore(tokens, url),
        authorizer=AuthorizationEngine(PolicyStore(url)),
        login_log=LoginLogStore(url),
    )


def _patch_lifespan(service: AuthService):
    """Return an async context manager that replaces the real lifespan.

    Wires the pre-built test service into app.state so TestClient routes see
    an isolated in-memory database rather than warden.db. The maintenance
    task is a long-sleeping coroutine (a real asyncio.Task is required so
    shutdown can cancel it).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.settings = get_settings()
        app.state.auth_service = service
        app.state.maintenance_tasks = [asyncio.create_task(asyncio.sleep(99999))]
        yield
        for task in app.state.maintenance_tasks:
            task.cancel()
        await asyncio.gather(*app.state.maintenance_tasks, return_exceptions=True)

    return test_lifespan


@pytest.fixture(scope="module")
def api_client() -> Generator[tuple[TestClient, AuthService, str, int], None, None]:
    """Yield (client, service, admin_token, admin_id) for API integration tests.

    The admin user ("admin" / "adminpass123") holds role 1, which carries a
    RESTful rule for every access-control route. A second user ("viewer" / "viewerpass1") exists with no roles.
    """
    service = _build_test_service()
    admin_id = make_user(service.users, "admin", "adminpass123", role_id=ADMIN_ROLE)
    make_user(service.users, "viewer", "viewerpass1", role_id=None)
    service.authorizer.sync_user_roles(admin_id, [ADMIN_ROLE])
    service.authorizer.sync_role_restful_permissions(ADMIN_ROLE, admin_access_rules())
    token = service.tokens.issue_token_pair(admin_id, "admin", ADMIN_ROLE).access_token

    limiter.reset()
    app.router.lifespan_context = _patch_lifespan(service)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, service, token, admin_id

    close_auth_service(service)


@pytest.fixture
def fresh_client() -> Generator[tuple[TestClient, AuthService], None, None]:
    """Yield (client, service) over an empty database, for first-run setup tests.

    Function-scoped and independent of api_client: the app state it replaces
    is put back afterwards.
    """
    service = _build_test_service()
    previous = app.router.lifespan_context

    limiter.reset()
    app.router.lifespan_context = _patch_lifespan(service)
    try:
        with TestClient(app, raise_server_exceptions=True) as client:
            yield client, service
    finally:
        app.router.lifespan_context = previous
        close_auth_service(service)
