"""
tests/conftest.py -- Shared test fixtures for StaffGate.

This module provides:
  - FrozenClock: a controllable clock for lockout-window tests
  - store / users / auth_service: unit-level services over in-memory SQLite
  - make_user(): registration helper with a known-good password
  - api_client: TestClient with an admin bearer token for API integration tests

Design: the API fixture uses a named shared-memory SQLite URI (not plain
:memory:) because TestClient runs sync route handlers in a thread pool.
Plain :memory: DBs are per-connection and would present a blank schema to
each worker thread.

DEBUG and BCRYPT_ROUNDS must be set before any api/ import so get_settings()
auto-generates JWT_SECRET instead of raising, and hashing stays fast.
"""

from __future__ import annotations

import os
import secrets
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: set before any core/api import so get_settings() sees them.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app, build_services
from auth.lockout import LockoutPolicy
from auth.models import Permission, Registration, ResourceType, Role
from auth.passwords import PasswordHasher
from auth.rbac import USER_READ, USER_WRITE
from auth.service import AuthService
from auth.store import IdentityStore
from auth.tokens import TokenService
from auth.users import UserService
from core.config import get_settings

PASSWORD = "S3cure!pass"


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


# ---------------------------------------------------------------------------
# Unit-level fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def hasher() -> PasswordHasher:
    return PasswordHasher(rounds=4)


@pytest.fixture(scope="session")
def signing_key() -> bytes:
    return secrets.token_bytes(64)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def tokens(signing_key: bytes) -> TokenService:
    return TokenService(signing_key)


@pytest.fixture
def lockout() -> LockoutPolicy:
    return LockoutPolicy()


@pytest.fixture
def store() -> Generator[IdentityStore, None, None]:
    s = IdentityStore("sqlite:///:memory:")
    yield s
    s.close()


@pytest.fixture
def users(store: IdentityStore, hasher: PasswordHasher, lockout: LockoutPolicy) -> UserService:
    return UserService(store, hasher, lockout)


@pytest.fixture
def auth_service(
    store: IdentityStore,
    hasher: PasswordHasher,
    tokens: TokenService,
    lockout: LockoutPolicy,
    users: UserService,
    clock: FrozenClock,
) -> AuthService:
    return AuthService(store, hasher, tokens, lockout, users, clock=clock)


def make_user(users: UserService, username: str = "kim", **overrides):
    """Register a user with PASSWORD and unique-by-username email."""
    fields = {
        "username": username,
        "password": PASSWORD,
        "email": f"{username}@corp.example",
        "name": username.title(),
    }
    fields.update(overrides)
    return users.create_user(Registration(**fields))


def seed_admin_role(store: IdentityStore) -> Role:
    """Create USER_READ/USER_WRITE permissions and an ADMIN role holding both."""
    read = store.create_permission(Permission(name=USER_READ, resource_type=ResourceType.USER))
    write = store.create_permission(Permission(name=USER_WRITE, resource_type=ResourceType.USER))
    return store.create_role(Role(name="ADMIN", permission_ids=frozenset({read.id, write.id})))


# ---------------------------------------------------------------------------
# API integration fixture
# ---------------------------------------------------------------------------


def _patch_lifespan(store: IdentityStore):
    """Return a lifespan that wires services around a pre-created test store."""

    @asynccontextmanager
    async def test_lifespan(app):
        build_services(app, get_settings(), store)
        yield

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(request) -> Generator[tuple[TestClient, str, int], None, None]:
    """Yield (client, admin_token, admin_id) for API integration tests.

    Each test module gets its own shared-memory database, named after the
    module, so state never leaks between modules. Rate limiting is disabled
    because lockout tests deliberately fire many logins.
    """
    db_name = request.module.__name__.replace(".", "_")
    store = IdentityStore(f"sqlite:///file:{db_name}?mode=memory&cache=shared&uri=true")
    app.router.lifespan_context = _patch_lifespan(store)
    limiter.enabled = False

    with TestClient(app, raise_server_exceptions=True) as client:
        role = seed_admin_role(store)
        admin = make_user(app.state.user_service, "testadmin")
        store.assign_role(admin.id, role.id)
        token = app.state.tokens.issue_access("testadmin", [USER_READ, USER_WRITE])
        yield client, token, admin.id

    limiter.enabled = True
    store.close()
