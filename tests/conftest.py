"""
tests/conftest.py -- Shared test fixtures for suiteauth.

This module provides:
  - hasher: bcrypt at the minimum cost so the suite stays fast
  - users: in-memory UserRepository seeded with one user per role
  - store: RefreshTokenStore parametrized over both backends
  - tokens / sessions: JWTService and AuthSessionManager wired to `store`
  - api_client: TestClient whose lifespan is patched to use test collaborators

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

The DEBUG env var must be set before any auth module import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import timedelta

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app
from auth.memory_store import MemoryRefreshTokenStore
from auth.models import Role, User
from auth.passwords import MIN_COST, BcryptPasswordHasher
from auth.sessions import AuthSessionManager
from auth.store import SqlRefreshTokenStore
from auth.tokens import JWTService
from auth.users import InMemoryUserRepository

TEST_SECRET = "test-secret-key-that-is-at-least-32-characters"
PASSWORD = "correct-horse-battery"

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def memory_db_url(name: str) -> str:
    """Named shared-memory SQLite URL, unique per call site."""
    return f"sqlite:///file:{name}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


def make_users(hasher: BcryptPasswordHasher) -> InMemoryUserRepository:
    """One user per role, all with PASSWORD."""
    password_hash = hasher.hash_password(PASSWORD)
    return InMemoryUserRepository(
        [
            User(id="u-admin", username="alice", password_hash=password_hash, role=Role.ADMIN),
            User(id="u-manager", username="bob", password_hash=password_hash, role=Role.MANAGER),
            User(id="u-tester", username="carol", password_hash=password_hash, role=Role.TESTER),
        ]
    )


# ---------------------------------------------------------------------------
# Unit fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def secret() -> str:
    return TEST_SECRET


@pytest.fixture(scope="session")
def hasher() -> BcryptPasswordHasher:
    return BcryptPasswordHasher(cost=MIN_COST)


@pytest.fixture
def users(hasher: BcryptPasswordHasher) -> InMemoryUserRepository:
    return make_users(hasher)


@pytest.fixture
def db_url(request) -> str:
    return memory_db_url(request.node.name.split("[")[0])


@pytest.fixture(params=["memory", "sql"])
def store(request) -> Generator:
    """Yield each RefreshTokenStore backend in turn; contract tests run against both."""
    if request.param == "memory":
        s = MemoryRefreshTokenStore()
    else:
        s = SqlRefreshTokenStore(db_url=memory_db_url("refresh_tokens"))
    yield s
    s.close()


@pytest.fixture
def tokens(store) -> JWTService:
    return JWTService(TEST_SECRET, timedelta(minutes=15), timedelta(hours=24), store=store)


@pytest.fixture
def stateless_tokens() -> JWTService:
    return JWTService(TEST_SECRET, timedelta(minutes=15), timedelta(hours=24))


@pytest.fixture
def sessions(users, hasher, tokens) -> AuthSessionManager:
    return AuthSessionManager(users, hasher, tokens)


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------


def _patch_lifespan(sessions: AuthSessionManager):
    """Return an async context manager that replaces the real lifespan.

    Wires pre-built test collaborators into app.state so routes never touch
    the on-disk database or a USERS_FILE. No sweep task is started.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.refresh_store = sessions.store
        app.state.users = sessions.users
        app.state.sessions = sessions
        app.state.sweep_task = None
        yield

    return test_lifespan


@pytest.fixture(scope="module")
def api_client() -> Generator[tuple[TestClient, AuthSessionManager], None, None]:
    """Yield (client, sessions) for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan, so
    tests hit real middleware and route handlers backed by an in-memory
    refresh store and the seeded users from make_users().
    """
    hasher = BcryptPasswordHasher(cost=MIN_COST)
    store = MemoryRefreshTokenStore()
    sessions = AuthSessionManager(
        make_users(hasher),
        hasher,
        JWTService(TEST_SECRET, timedelta(minutes=15), timedelta(hours=24), store=store),
    )
    app.router.lifespan_context = _patch_lifespan(sessions)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, sessions


@pytest.fixture(autouse=True)
def _reset_rate_limits() -> None:
    """Login is rate limited per client IP; every test starts with a clean counter."""
    limiter.reset()
