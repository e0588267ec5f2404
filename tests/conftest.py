"""
tests/conftest.py -- Shared test fixtures for Gatehouse.

This module provides:
  - store / clock / gateway / audit: fresh collaborators per test
  - api: module-scoped TestClient harness over the real FastAPI app with a
         patched lifespan that wires test collaborators into app.state

Design: Named shared-memory SQLite URIs (not plain :memory:) are used because
TestClient runs sync route handlers in a thread pool. Plain :memory: DBs are
per-connection and would present a blank schema to each worker thread.

DEBUG and SMS_GATEWAY must be set before any api/ import so get_settings()
auto-generates SECRET_KEY and accepts the console gateway.
"""

from __future__ import annotations

import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

# CRITICAL: Set DEBUG before any api/auth import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("SMS_GATEWAY", "console")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app, configure_state
from auth.models import Role, StaffAccount
from auth.store import CredentialStore
from core.config import Settings
from tests.support import (
    DEFAULT_PASSWORD,
    FakeClock,
    RecordingAuditSink,
    RecordingGateway,
    make_settings,
    make_staff,
    memory_db_url,
)

# ---------------------------------------------------------------------------
# Unit-test fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> Generator[CredentialStore, None, None]:
    s = CredentialStore(memory_db_url("unit"))
    yield s
    s.close()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def gateway() -> RecordingGateway:
    return RecordingGateway()


@pytest.fixture
def audit() -> RecordingAuditSink:
    return RecordingAuditSink()


# ---------------------------------------------------------------------------
# API harness -- one TestClient per test module for speed
# ---------------------------------------------------------------------------


@dataclass
class ApiHarness:
    client: TestClient
    store: CredentialStore
    gateway: RecordingGateway
    audit: RecordingAuditSink
    clock: FakeClock
    admin: StaffAccount
    manager: StaffAccount
    tokens: dict[str, str] = field(default_factory=dict)

    def bearer(self, token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {token}"}

    def login_staff(self, email: str, password: str = DEFAULT_PASSWORD, totp_code: str | None = None):
        body = {"email": email, "password": password}
        if totp_code is not None:
            body["totp_code"] = totp_code
        resp = self.client.post("/api/v1/auth/login", json=body)
        # Tests authenticate with explicit bearer headers, never the cookie jar.
        self.client.cookies.clear()
        return resp


def _patch_lifespan(settings: Settings, store, gateway, audit, clock):
    """Return an async context manager that replaces the real lifespan."""

    @asynccontextmanager
    async def test_lifespan(app):
        configure_state(app, settings, store, gateway, audit, clock=clock)
        yield

    return test_lifespan


@pytest.fixture(scope="module")
def api() -> Generator[ApiHarness, None, None]:
    """Yield an ApiHarness wired to isolated collaborators.

    An ADMIN and a MANAGER account exist before the client starts; their
    tokens are minted by logging in through the real endpoint. Rate limiting
    is switched off so per-IP counters do not leak between tests.
    """
    store = CredentialStore(memory_db_url("api"))
    admin = make_staff(store, "admin@example.com", Role.ADMIN)
    manager = make_staff(store, "manager@example.com", Role.MANAGER)
    gateway = RecordingGateway()
    audit = RecordingAuditSink()
    clock = FakeClock()

    app.router.lifespan_context = _patch_lifespan(make_settings(), store, gateway, audit, clock)
    limiter.enabled = False

    with TestClient(app, raise_server_exceptions=True) as client:
        harness = ApiHarness(
            client=client, store=store, gateway=gateway, audit=audit, clock=clock, admin=admin, manager=manager
        )
        harness.tokens["admin"] = harness.login_staff(admin.email).json()["access_token"]
        harness.tokens["manager"] = harness.login_staff(manager.email).json()["access_token"]
        yield harness

    limiter.enabled = True
    store.close()
