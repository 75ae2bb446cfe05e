"""
tests/conftest.py -- Shared test fixtures for Warden unit and integration tests.

This module provides:
  - _make_services(): builds a full Services container on an isolated DB
  - _patch_lifespan(): wires test services into app.state, bypassing real startup
  - services / make_user / ctx_for: unit-test fixtures (fresh DB per test)
  - api_client: TestClient plus its Services for HTTP integration tests

Design: unit tests use plain "sqlite:///:memory:" because everything runs in
the test thread. The API fixture uses a named shared-memory SQLite URI
(file:name?mode=memory&cache=shared&uri=true) because TestClient runs route
handlers in a thread pool and every worker thread must see the same schema.

The DEBUG env var must be set before any core/auth import so Settings()
generates an ephemeral ES512 key pair instead of refusing to start.
"""

from __future__ import annotations

import os
from collections.abc import Callable, Generator
from contextlib import asynccontextmanager

# CRITICAL: Set DEBUG before any core/auth import so get_settings() can
# generate signing keys in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import update

from api.limiter import limiter
from api.main import app
from api.services import build_services
from auth.models import User
from core.config import Settings
from core.context import RequestContext
from core.db import member
from core.services import Services

# sha512_crypt minimum; the passlib default makes every test crawl.
TEST_ROUNDS = 1000

ADMIN_USER = "testadmin"
ADMIN_PASS = "testpass123!"


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def _make_settings(db_url: str = "sqlite:///:memory:", **overrides) -> Settings:
    values = {"database_url": db_url, "debug": True, "pw_hash_rounds": TEST_ROUNDS}
    values.update(overrides)
    return Settings(**values)


def _make_services(db_suffix: str = "", **overrides) -> Services:
    """Services on a private DB; a suffix selects a named shared-memory DB."""
    if db_suffix:
        url = f"sqlite:///file:test_warden_{db_suffix}?mode=memory&cache=shared&uri=true"
    else:
        url = "sqlite:///:memory:"
    return build_services(_make_settings(url, **overrides))


def _create_user(services: Services, username: str, password: str, sysadmin: bool = False) -> User:
    user = services.users.create(None, username, f"{username}@example.org", full_name=username.title())
    services.users.set_password(None, user, password)
    if sysadmin:
        with services.db.engine.begin() as conn:
            conn.execute(update(member).where(member.c.ident == user.username).values(sysadmin=True))
    return services.users.fetch(user.username)


def _patch_lifespan(services: Services):
    """Return an async context manager that replaces the real lifespan.

    Workers are not started; IPtrk and the revocation cache run their
    operations in the calling thread when stopped.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.services = services
        yield

    return test_lifespan


# ---------------------------------------------------------------------------
# Unit fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def services() -> Generator[Services, None, None]:
    svc = _make_services()
    yield svc
    svc.db.close()


@pytest.fixture
def make_user(services: Services) -> Callable[..., User]:
    """Factory: make_user("alice", sysadmin=False, password="...") -> User."""

    def factory(username: str, sysadmin: bool = False, password: str = "Correct-Horse-42") -> User:
        return _create_user(services, username, password, sysadmin)

    return factory


@pytest.fixture
def ctx_for(services: Services) -> Callable[..., RequestContext]:
    """Factory for request contexts, optionally logged in (and elevated)."""

    def factory(user: User | None = None, elevated: bool = False, ip: str = "127.0.0.1", user_agent: str = "") -> RequestContext:
        ctx = RequestContext(services, client_ip=ip, user_agent=user_agent)
        if user is not None:
            user.is_sysadmin = elevated and user.can_be_sysadmin
            ctx.become(user)
        return ctx

    return factory


# ---------------------------------------------------------------------------
# API fixture -- one TestClient per test module
# ---------------------------------------------------------------------------


@pytest.fixture(scope="module")
def api_client(request) -> Generator[tuple[TestClient, Services], None, None]:
    """Yield (client, services) with a sysadmin testadmin/testpass123! created.

    The TestClient uses the real FastAPI app with a patched lifespan so tests
    hit real middleware and routes against an isolated in-memory database.
    """
    suffix = request.module.__name__.rsplit(".", 1)[-1]
    services = _make_services(suffix)
    _create_user(services, ADMIN_USER, ADMIN_PASS, sysadmin=True)

    app.router.lifespan_context = _patch_lifespan(services)
    limiter.reset()

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, services

    services.db.close()
