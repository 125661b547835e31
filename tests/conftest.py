"""
tests/conftest.py -- Shared test fixtures for the ICMS auth tests.

This module provides:
  - clock / notifier: a FakeClock and a RecordingNotifier (tests/helpers.py)
  - engine / manager: a fresh AuthManager over an isolated in-memory DB
  - _patch_lifespan(): wires a test engine and manager into app.state
  - api_client: TestClient with a logged-in user for API integration tests

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync route handlers in a thread pool, and some unit
tests call the manager from several threads. Plain :memory: DBs are
per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process. Each
fixture call gets its own name so tests never see each other's rows.

The DEBUG env var must be set before any auth/core import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.engine import Engine

from api.limiter import limiter
from api.main import app
from auth.schema import make_engine
from auth.service import AuthManager
from core.config import Settings
from tests.helpers import TEST_PASSWORD, FakeClock, RecordingNotifier, create_user

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def memory_url(prefix: str) -> str:
    return f"sqlite:///file:{prefix}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


def make_settings(**overrides) -> Settings:
    # Cost 4 keeps bcrypt fast; the algorithm under test is the same.
    return Settings(debug=True, bcrypt_rounds=4, **overrides)


# ---------------------------------------------------------------------------
# Unit fixtures -- one fresh database per test
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def engine() -> Generator[Engine, None, None]:
    eng = make_engine(memory_url("test_auth"))
    yield eng
    eng.dispose()


@pytest.fixture
def manager(engine, clock, notifier) -> AuthManager:
    return AuthManager.from_settings(engine, make_settings(), notifier=notifier, clock=clock)


# ---------------------------------------------------------------------------
# API fixtures -- one TestClient per test module for speed
# ---------------------------------------------------------------------------


def _patch_lifespan(engine: Engine, manager: AuthManager):
    """Return an async context manager that replaces the real lifespan.

    Wires the pre-built engine and manager into app.state so TestClient
    routes see an isolated test DB rather than the configured database.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.engine = engine
        app.state.auth_manager = manager
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture(scope="module")
def api_client() -> Generator[tuple[TestClient, str, int], None, None]:
    """Yield (client, token, user_id) for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so
    tests hit real route handlers against an isolated in-memory database.
    The user logs in through the manager before the client starts, so the
    access token is bound to a real session row.

    The slowapi edge limiter is switched off; the brute-force limiter in
    the auth core stays on and is what the tests exercise.
    """
    engine = make_engine(memory_url("test_api"))
    manager = AuthManager.from_settings(engine, make_settings(), notifier=RecordingNotifier())

    uid = create_user(manager, "apiuser@example.com")
    token = manager.login("apiuser@example.com", TEST_PASSWORD, "127.0.0.1", "pytest").access_token

    limiter.enabled = False
    app.router.lifespan_context = _patch_lifespan(engine, manager)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, token, uid

    limiter.enabled = True
    engine.dispose()
