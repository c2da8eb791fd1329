"""
tests/conftest.py -- Shared test fixtures for the HR auth service.

This module provides:
  - _make_test_stores(): creates isolated in-memory DBs for users/sessions + audit
  - _patch_lifespan(): wires test stores into app.state, bypassing real startup
  - user_store / audit_store: function-scoped stores for unit tests
  - api_stores / api_client: module-scoped TestClient with a seeded admin
  - bootstrap_client: module-scoped TestClient over an empty database
  - make_user / login: helpers that create accounts and log them in

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

The DEBUG env var must be set before any auth module import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
BCRYPT_ROUNDS=4 keeps password hashing fast.

Cookies: login responses set the access_token cookie on the TestClient, and
the cookie is tried before a Bearer header. The login helper clears the jar so
tests authenticate explicitly with headers.
"""

from __future__ import annotations

import asyncio
import itertools
import os
import uuid
from collections.abc import Callable, Generator
from contextlib import asynccontextmanager

# CRITICAL: Set env before any auth/core import so get_settings() picks it up.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app
from audit.store import AuditStore
from auth.models import User
from auth.sessions import start_session
from auth.store import UserStore
from auth.tokens import hash_password

DEFAULT_PASSWORD = "Str0ngPassw0rd"
ADMIN_EMAIL = "admin@example.com"

_email_counter = itertools.count(1)


class CapturingNotifier:
    """Reset notifier that keeps (user, raw_token) pairs for assertions."""

    def __init__(self) -> None:
        self.sent: list[tuple[User, str]] = []

    def send_password_reset(self, user: User, raw_token: str) -> None:
        self.sent.append((user, raw_token))

    def last_token_for(self, email: str) -> str | None:
        for user, token in reversed(self.sent):
            if user.email == email:
                return token
        return None


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def _make_test_stores(db_suffix: str) -> tuple[UserStore, AuditStore]:
    """Create isolated named shared-memory SQLite stores for test isolation.

    Both stores point at the same database, as they do in production.

    Args:
        db_suffix: Unique string appended to the DB name so test modules
                   don't share state.
    """
    url = f"sqlite:///file:test_hr_auth_{db_suffix}?mode=memory&cache=shared&uri=true"
    return UserStore(db_url=url), AuditStore(db_url=url)


def _patch_lifespan(user_store: UserStore, audit_store: AuditStore, notifier: CapturingNotifier):
    """Return an async context manager that replaces the real lifespan.

    The cleanup_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.user_store = user_store
        app.state.audit_store = audit_store
        app.state.reset_notifier = notifier
        app.state.cleanup_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.cleanup_task.cancel()

    return test_lifespan


def create_test_user(
    store: UserStore,
    email: str | None = None,
    role: str = "employee",
    password: str = DEFAULT_PASSWORD,
    **fields,
) -> User:
    """Insert a user and return the stored record."""
    email = email or f"user{next(_email_counter)}@example.com"
    uid = store.create_user(
        User(
            email=email,
            full_name=fields.pop("full_name", email.split("@")[0].title()),
            role=role,
            password_hash=hash_password(password),
            **fields,
        )
    )
    return store.get_by_id(uid)


# ---------------------------------------------------------------------------
# Rate limiter -- one shared in-memory counter for the whole process
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_rate_limits() -> None:
    limiter.reset()


# ---------------------------------------------------------------------------
# Function-scoped stores for unit tests
# ---------------------------------------------------------------------------


@pytest.fixture
def stores() -> Generator[tuple[UserStore, AuditStore], None, None]:
    user_store, audit_store = _make_test_stores(f"unit_{uuid.uuid4().hex}")
    yield user_store, audit_store
    user_store.close()
    audit_store.close()


@pytest.fixture
def user_store(stores: tuple[UserStore, AuditStore]) -> UserStore:
    return stores[0]


@pytest.fixture
def audit_store(stores: tuple[UserStore, AuditStore]) -> AuditStore:
    return stores[1]


# ---------------------------------------------------------------------------
# Module-scoped fixtures -- one TestClient per test module for speed
# ---------------------------------------------------------------------------


@pytest.fixture(scope="module")
def api_stores(request) -> Generator[tuple[UserStore, AuditStore, CapturingNotifier], None, None]:
    """Yield (user_store, audit_store, notifier) shared by api_client in this module."""
    suffix = request.module.__name__.rsplit(".", 1)[-1]
    user_store, audit_store = _make_test_stores(suffix)
    yield user_store, audit_store, CapturingNotifier()
    user_store.close()
    audit_store.close()


@pytest.fixture(scope="module")
def api_client(api_stores) -> Generator[tuple[TestClient, str, int], None, None]:
    """Yield (client, token, user_id) for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so
    tests hit real route handlers but use isolated in-memory stores.
    The admin user is created before the client starts and a session is
    opened for it directly; token is that session's access JWT.
    """
    user_store, audit_store, notifier = api_stores
    admin = create_test_user(user_store, email=ADMIN_EMAIL, role="admin", full_name="Test Admin")
    tokens = start_session(user_store, admin, "127.0.0.1", "pytest")

    app.router.lifespan_context = _patch_lifespan(user_store, audit_store, notifier)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, tokens.access_token, admin.id


@pytest.fixture(scope="module")
def bootstrap_client(api_stores) -> Generator[TestClient, None, None]:
    """Yield a TestClient over an empty users table (first-run state)."""
    user_store, audit_store, notifier = api_stores
    app.router.lifespan_context = _patch_lifespan(user_store, audit_store, notifier)
    with TestClient(app, raise_server_exceptions=True) as client:
        yield client


# ---------------------------------------------------------------------------
# Helpers bound to the module's API stores
# ---------------------------------------------------------------------------


@pytest.fixture
def make_user(api_stores) -> Callable[..., User]:
    """Return a factory: make_user(email=None, role="employee", password=DEFAULT_PASSWORD)."""
    user_store = api_stores[0]

    def _make(email: str | None = None, role: str = "employee", password: str = DEFAULT_PASSWORD, **fields) -> User:
        return create_test_user(user_store, email=email, role=role, password=password, **fields)

    return _make


@pytest.fixture
def login(api_client) -> Callable[..., dict]:
    """Return a helper: login(email, password) -> token response JSON (asserts 200)."""
    client, _, _ = api_client

    def _login(email: str, password: str = DEFAULT_PASSWORD, headers: dict | None = None) -> dict:
        resp = client.post("/api/v1/auth/login", json={"email": email, "password": password}, headers=headers)
        client.cookies.clear()
        assert resp.status_code == 200, resp.text
        return resp.json()

    return _login


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def auth_headers() -> Callable[[str], dict[str, str]]:
    return bearer
