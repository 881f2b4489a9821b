"""
tests/conftest.py -- Shared fixtures for CryptIoMT unit and integration tests.

This module provides:
  - store: fresh in-memory CMDBStore per test
  - admin / analyst / viewer: principals for the cmdb/ domain functions
  - org_id / make_device: an organization and a device factory on `store`
  - _make_test_stores() / _patch_lifespan(): isolated stores wired into app.state
  - api_client: TestClient with an admin JWT for API integration tests
  - _reset_rate_limits: autouse; empties the shared limiter before each test

Named shared-memory SQLite URIs (not plain :memory:) are used for the API
stores because TestClient runs sync route handlers in a thread pool. Plain
:memory: DBs are per-connection and would present a blank schema to each
worker thread.

DEBUG must be set before any core/auth import so get_settings() generates a
SECRET_KEY instead of refusing to start.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from unittest.mock import MagicMock

os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("JOBS_ENABLED", "false")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app
from auth.models import User
from auth.store import UserStore
from auth.tokens import create_access_token, hash_password
from cmdb.models import Device, Organization
from cmdb.store import CMDBStore

# ---------------------------------------------------------------------------
# Domain-level fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> Generator[CMDBStore, None, None]:
    s = CMDBStore("sqlite:///:memory:")
    yield s
    s.close()


@pytest.fixture
def admin() -> User:
    return User(username="admin@example.org", role="admin", id=1)


@pytest.fixture
def analyst() -> User:
    return User(username="analyst@example.org", role="analyst", id=2)


@pytest.fixture
def viewer() -> User:
    return User(username="viewer@example.org", role="viewer", id=3)


@pytest.fixture
def org_id(store: CMDBStore) -> int:
    return store.create_organization(Organization(name="St. Example Hospital", contact_email="it@example.org"))


@pytest.fixture
def make_device(store: CMDBStore, org_id: int):
    """Return a factory that inserts a device and returns it with its id set."""

    def _make(**fields) -> Device:
        fields.setdefault("organization_id", org_id)
        fields.setdefault("manufacturer", "Acme Medical")
        fields.setdefault("model", "Scanner 9000")
        fields.setdefault("name", "CT-01")
        device = Device(**fields)
        device.id = store.create_device(device)
        return store.get_device(device.id)

    return _make


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_rate_limits() -> None:
    """Clear slowapi counters so per-route limits never leak between tests."""
    limiter.reset()


def _make_test_stores(db_suffix: str) -> tuple[UserStore, CMDBStore]:
    """Create isolated named shared-memory SQLite stores.

    Args:
        db_suffix: Unique string appended to the DB name so test modules
                   never share state.
    """
    auth_url = f"sqlite:///file:test_auth_{db_suffix}?mode=memory&cache=shared&uri=true"
    cmdb_url = f"sqlite:///file:test_cmdb_{db_suffix}?mode=memory&cache=shared&uri=true"
    return UserStore(db_url=auth_url), CMDBStore(db_url=cmdb_url)


def _patch_lifespan(user_store: UserStore, cmdb: CMDBStore, dispatcher):
    """Return an async context manager that replaces the real lifespan.

    Wires the test stores into app.state and starts no scheduled jobs. The
    dispatcher is a MagicMock so report sends never leave the test.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.user_store = user_store
        app.state.cmdb = cmdb
        app.state.report_dispatcher = dispatcher
        app.state.setup_required = False
        app.state.job_tasks = [asyncio.create_task(asyncio.sleep(99999))]
        yield
        for task in app.state.job_tasks:
            task.cancel()

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(request) -> Generator[tuple[TestClient, str, int], None, None]:
    """Yield (client, token, user_id) for API integration tests.

    The admin user is "testadmin@example.org" / "testpass12345". The client
    talks to "localhost" so TrustedHostMiddleware accepts it. The cmdb store,
    user store and dispatcher mock are reachable as client.app.state.*.
    """
    suffix = request.module.__name__.replace(".", "_")
    user_store, cmdb = _make_test_stores(suffix)

    uid = user_store.create_user(
        User(
            username="testadmin@example.org",
            hashed_password=hash_password("testpass12345"),
            role="admin",
        )
    )
    token = create_access_token(user_id=uid, username="testadmin@example.org", role="admin", expire_seconds=3600)

    app.router.lifespan_context = _patch_lifespan(user_store, cmdb, MagicMock())

    with TestClient(app, base_url="http://localhost", raise_server_exceptions=True) as client:
        yield client, token, uid

    user_store.close()
    cmdb.close()
