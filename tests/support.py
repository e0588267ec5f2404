"""
tests/support.py -- Deterministic collaborators and builders shared by the tests.

Kept out of conftest.py so test modules can import them directly.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone

from auth.errors import DeliveryFailed
from auth.models import AuditEvent, AuditKind, Role, StaffAccount
from auth.store import CredentialStore
from auth.tokens import hash_password
from core.config import Settings

TEST_SECRET = "test-secret-key-" + "x" * 32
DEFAULT_PASSWORD = "correct horse battery"


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime.now(timezone.utc).replace(microsecond=0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class RecordingGateway:
    """NotificationGateway that remembers what it sent and can be told to fail."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []
        self.fail = False

    def send(self, phone: str, code: str) -> None:
        if self.fail:
            raise DeliveryFailed()
        self.sent.append((phone, code))

    def last_code(self, phone: str) -> str:
        return [c for p, c in self.sent if p == phone][-1]


class RecordingAuditSink:
    def __init__(self) -> None:
        self.events: list[AuditEvent] = []

    def record(self, event: AuditEvent) -> None:
        self.events.append(event)

    def kinds(self) -> list[AuditKind]:
        return [e.kind for e in self.events]


def make_settings(**overrides) -> Settings:
    values = {"debug": True, "secret_key": TEST_SECRET, "sms_gateway": "console"}
    values.update(overrides)
    return Settings(**values)


def make_staff(
    store: CredentialStore,
    email: str | None = None,
    role: Role = Role.MANAGER,
    password: str = DEFAULT_PASSWORD,
) -> StaffAccount:
    email = email or f"staff-{uuid.uuid4().hex[:8]}@example.com"
    staff_id = store.create_staff(StaffAccount(email=email, role=role, password_hash=hash_password(password)))
    return store.get_staff(staff_id)


def memory_db_url(prefix: str) -> str:
    """Named shared-memory SQLite URI, visible to every thread of the process."""
    return f"sqlite:///file:{prefix}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"
