"""
tests/conftest.py -- Shared test fixtures for Everglass integration tests.

This module provides:
  - make_stores(): isolated in-memory DBs for users, sessions, and the CRM
  - seed_org(): a small franchise/center/client tree plus one account per role
  - _patch_lifespan(): wires test stores into app.state, bypassing real startup
  - api_client: TestClient plus the seeded ids, for HTTP integration tests
  - login(): helper that starts a fresh cookie session for a seeded account

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

Environment variables must be set before any api/auth/core import because
get_settings() is cached on first call: NODE_ENV=test avoids the production
secret check, BCRYPT_SALT_ROUNDS=4 keeps hashing fast, and the login rate
limit is raised so the suite never trips it.
"""

from __future__ import annotations

import asyncio
import os
import time
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

# CRITICAL: set before any project import so get_settings() sees them.
os.environ.setdefault("NODE_ENV", "test")
os.environ.setdefault("SESSION_SECRET", "test-session-secret")
os.environ.setdefault("BCRYPT_SALT_ROUNDS", "4")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.models import User
from auth.passwords import SessionCookieSigner, hash_password
from auth.service import AuthService
from auth.sessions import SessionStore
from auth.store import UserStore
from core.config import AuthSecurityConfig, SESSION_COOKIE_NAME, get_settings
from core.db import now_iso
from crm.models import Center, Client, Franchise
from crm.store import CRMStore

PASSWORD = "Passw0rd"
TEST_ROUNDS = 4


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


@dataclass
class Seed:
    """Ids of the seeded organization and accounts, keyed by short name."""

    franchises: dict[str, int] = field(default_factory=dict)
    centers: dict[str, int] = field(default_factory=dict)
    clients: dict[str, int] = field(default_factory=dict)
    users: dict[str, int] = field(default_factory=dict)


@dataclass
class Stores:
    users: UserStore
    sessions: SessionStore
    crm: CRMStore

    def close(self) -> None:
        self.users.close()
        self.sessions.close()
        self.crm.close()


def make_stores(db_suffix: str, timeout_seconds: int = 45 * 60) -> Stores:
    """Create isolated named shared-memory SQLite stores.

    Args:
        db_suffix: Unique string appended to the DB name so test modules
                   don't share state (e.g. 'api', 'lockout').
    """
    url = f"sqlite:///file:test_everglass_{db_suffix}?mode=memory&cache=shared&uri=true"
    return Stores(
        users=UserStore(db_url=url),
        sessions=SessionStore(db_url=url, timeout_seconds=timeout_seconds),
        crm=CRMStore(db_url=url),
    )


def make_user(username: str, role: str, level: str, **overrides) -> User:
    """Build an active account with PASSWORD that has already been personalized."""
    values = dict(
        username=username,
        email=f"{username}@everglass.test",
        first_name=username.split("_")[0].capitalize(),
        last_name="Test",
        role=role,
        level=level,
        hashed_password=hash_password(PASSWORD, rounds=TEST_ROUNDS),
        must_change_password=False,
        password_changed_at=now_iso(),
    )
    values.update(overrides)
    return User(**values)


def seed_org(stores: Stores) -> Seed:
    """Populate two franchises, three centers, four clients, and one account per role.

    Tree:
      Nord  -> Lille (2 clients), Arras (1 client)
      Sud   -> Nice  (1 client)

    Accounts (all with PASSWORD):
      admin          admin / site
      director_nord  director / franchise Nord
      manager_lille  manager / center Lille
      sales_lille    sales / center Lille
      tech_nice      technician / center Nice
      newbie_lille   sales / center Lille, must change password (first login)
    """
    crm = stores.crm
    seed = Seed()
    seed.franchises["nord"] = crm.create_franchise(Franchise(name="Nord"))
    seed.franchises["sud"] = crm.create_franchise(Franchise(name="Sud"))
    seed.centers["lille"] = crm.create_center(Center(name="Lille", franchise_id=seed.franchises["nord"], city="Lille"))
    seed.centers["arras"] = crm.create_center(Center(name="Arras", franchise_id=seed.franchises["nord"], city="Arras"))
    seed.centers["nice"] = crm.create_center(Center(name="Nice", franchise_id=seed.franchises["sud"], city="Nice"))

    seed.clients["ana"] = crm.create_client(Client(center_id=seed.centers["lille"], first_name="Ana", last_name="Roy"))
    seed.clients["bruno"] = crm.create_client(
        Client(center_id=seed.centers["lille"], first_name="Bruno", last_name="Petit", company="Petit SARL")
    )
    seed.clients["chloe"] = crm.create_client(
        Client(center_id=seed.centers["arras"], first_name="Chloe", last_name="Lemaire")
    )
    seed.clients["david"] = crm.create_client(
        Client(center_id=seed.centers["nice"], first_name="David", last_name="Garnier", email="d.garnier@example.com")
    )

    users = stores.users
    seed.users["admin"] = users.create_user(make_user("admin", "admin", "site"))
    seed.users["director_nord"] = users.create_user(
        make_user("director_nord", "director", "franchise", franchise_id=seed.franchises["nord"])
    )
    seed.users["manager_lille"] = users.create_user(
        make_user(
            "manager_lille", "manager", "center", center_id=seed.centers["lille"], franchise_id=seed.franchises["nord"]
        )
    )
    seed.users["sales_lille"] = users.create_user(
        make_user("sales_lille", "sales", "center", center_id=seed.centers["lille"])
    )
    seed.users["tech_nice"] = users.create_user(
        make_user("tech_nice", "technician", "center", center_id=seed.centers["nice"])
    )
    seed.users["newbie_lille"] = users.create_user(
        make_user(
            "newbie_lille",
            "sales",
            "center",
            center_id=seed.centers["lille"],
            must_change_password=True,
            password_changed_at=None,
        )
    )
    return seed


def _patch_lifespan(stores: Stores, config: AuthSecurityConfig):
    """Return an async context manager that replaces the real lifespan.

    Wires pre-created test stores into app.state so TestClient routes see
    isolated test DBs rather than the configured database.

    The sweep_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        settings = get_settings()
        app.state.settings = settings
        app.state.started_at = time.time()
        app.state.cookie_signer = SessionCookieSigner(settings.session_secret)
        app.state.users = stores.users
        app.state.sessions = stores.sessions
        app.state.crm = stores.crm
        app.state.auth = AuthService(stores.users, stores.sessions, config)
        app.state.sweep_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.sweep_task.cancel()

    return test_lifespan


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def auth_config() -> AuthSecurityConfig:
    """Production policy with a cheap bcrypt cost."""
    return AuthSecurityConfig(bcrypt_salt_rounds=TEST_ROUNDS)


@pytest.fixture
def service_env(auth_config) -> Generator[tuple[AuthService, Stores, Seed], None, None]:
    """Yield (service, stores, seed) on a fresh database per test."""
    stores = make_stores(f"svc_{uuid.uuid4().hex}")
    seed = seed_org(stores)
    yield AuthService(stores.users, stores.sessions, auth_config), stores, seed
    stores.close()


@pytest.fixture(scope="module")
def api_client(request) -> Generator[tuple[TestClient, Seed, Stores], None, None]:
    """Yield (client, seed, stores) for API integration tests.

    One TestClient per test module. The client starts without a session;
    tests authenticate with login(client, "<seeded username>").
    """
    stores = make_stores(f"api_{request.module.__name__.rsplit('.', 1)[-1]}")
    seed = seed_org(stores)
    app.router.lifespan_context = _patch_lifespan(stores, AuthSecurityConfig(bcrypt_salt_rounds=TEST_ROUNDS))

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, seed, stores

    stores.close()


def login(client: TestClient, username: str, password: str = PASSWORD):
    """Drop any current cookie and log in; returns the login response."""
    client.cookies.clear()
    return client.post("/auth/login", json={"username": username, "password": password})


def session_cookie(client: TestClient) -> str | None:
    return client.cookies.get(SESSION_COOKIE_NAME)
