"""
tests/conftest.py -- Shared test fixtures for Gatehouse integration tests.

This module provides:
  - _make_test_stores(): creates isolated in-memory DBs for users + groups
  - _patch_lifespan(): wires test stores into app.state, bypassing real startup
  - stores / client / browser: a fresh app per test for web flow tests
  - api_client: TestClient with an admin JWT for API integration tests
  - Browser: follows redirects and posts forms with the page's CSRF token

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

DEBUG, BCRYPT_ROUNDS and LOGIN_RATE_LIMIT must be set before any gatehouse
import: get_settings() is cached on first use and the rate limit string is
baked into the route decorators at import time.
"""

from __future__ import annotations

import asyncio
import os
import re
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from unittest.mock import MagicMock

# CRITICAL: Set these before any auth/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from asgi import app
from auth.models import User
from auth.store import UserStore
from auth.tokens import create_access_token, hash_password
from groups.store import GroupStore

PASSWORD = "password123"

_CSRF_META_RE = re.compile(r'<meta name="csrf-token" content="([^"]+)"')


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def _make_test_stores(db_suffix: str) -> tuple[UserStore, GroupStore]:
    """Create isolated named shared-memory SQLite stores for test isolation.

    Args:
        db_suffix: Unique string appended to the DB name so tests don't share
                   state (e.g. 'api', or a uuid per test).
    """
    auth_url = f"sqlite:///file:test_auth_{db_suffix}?mode=memory&cache=shared&uri=true"
    groups_url = f"sqlite:///file:test_groups_{db_suffix}?mode=memory&cache=shared&uri=true"
    return UserStore(db_url=auth_url), GroupStore(db_url=groups_url)


def _patch_lifespan(user_store: UserStore, group_store: GroupStore):
    """Return an async context manager that replaces the real lifespan.

    Wires pre-created test stores into app.state so TestClient routes see
    isolated test DBs rather than the production databases. The OAuth
    registry is a MagicMock; OAuth tests configure it per test.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.user_store = user_store
        app.state.group_store = group_store
        app.state.oauth = MagicMock()
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


def make_user(user_store: UserStore, username: str, password: str = PASSWORD, **fields) -> User:
    """Create a user and return it as stored."""
    fields.setdefault("email", f"{username}@example.com")
    user_id = user_store.create_user(User(username=username, hashed_password=hash_password(password), **fields))
    return user_store.get_by_id(user_id)


# ---------------------------------------------------------------------------
# Browser helper
# ---------------------------------------------------------------------------


class Browser:
    """Drives the web UI the way a user's browser does.

    Redirects are followed and the final path is kept in `path`. Every HTML
    page updates `csrf`, which post() sends back as authenticity_token, so a
    test has to visit a page before it can submit a form.
    """

    def __init__(self, client: TestClient) -> None:
        self.client = client
        self.response = None
        self.path = None
        self.csrf = None

    def _settle(self, resp):
        while resp.status_code in (301, 302, 303, 307, 308):
            resp = self.client.get(resp.headers["location"])
        self.response = resp
        self.path = resp.url.path
        match = _CSRF_META_RE.search(resp.text)
        if match:
            self.csrf = match.group(1)
        return resp

    def visit(self, path: str, **kwargs):
        return self._settle(self.client.get(path, **kwargs))

    def post(self, path: str, data: dict | None = None):
        form = dict(data or {})
        if self.csrf is not None:
            form.setdefault("authenticity_token", self.csrf)
        return self._settle(self.client.post(path, data=form))

    def sign_in(self, login: str, password: str = PASSWORD, **extra):
        self.visit("/users/sign_in")
        return self.post("/users/sign_in", {"login": login, "password": password, **extra})

    def sign_out(self):
        return self.post("/users/sign_out")

    @property
    def text(self) -> str:
        return self.response.text


# ---------------------------------------------------------------------------
# Function-scoped fixtures -- a fresh database for every web flow test
# ---------------------------------------------------------------------------


@pytest.fixture
def stores() -> Generator[tuple[UserStore, GroupStore], None, None]:
    user_store, group_store = _make_test_stores(uuid.uuid4().hex)
    yield user_store, group_store
    user_store.close()
    group_store.close()


@pytest.fixture
def client(stores) -> Generator[TestClient, None, None]:
    """TestClient with follow_redirects=False so tests can assert on Location."""
    user_store, group_store = stores
    limiter.reset()
    app.router.lifespan_context = _patch_lifespan(user_store, group_store)
    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as c:
        yield c


@pytest.fixture
def browser(client) -> Browser:
    return Browser(client)


@pytest.fixture
def user_store(stores) -> UserStore:
    return stores[0]


@pytest.fixture
def group_store(stores) -> GroupStore:
    return stores[1]


# ---------------------------------------------------------------------------
# Module-scoped API fixture -- one TestClient per test module for speed
# ---------------------------------------------------------------------------


@pytest.fixture(scope="module")
def api_client() -> Generator[tuple[TestClient, str, int], None, None]:
    """Yield (client, token, user_id) for API integration tests.

    The admin user is created before the client starts and its JWT is used
    in Authorization headers.
    """
    user_store, group_store = _make_test_stores(f"api_{uuid.uuid4().hex}")
    admin = make_user(user_store, "testadmin", "testpass123", role="admin")
    token = create_access_token(admin, 3600)

    limiter.reset()
    app.router.lifespan_context = _patch_lifespan(user_store, group_store)

    with TestClient(app, raise_server_exceptions=True) as c:
        yield c, token, admin.id

    user_store.close()
    group_store.close()
