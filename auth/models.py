"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, almost no logic). Stores and
services do the work; these classes only own domain shape and the few
invariants that can be checked locally (TOTPEnrollment.__post_init__).

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class Role(str, Enum):
    """Staff roles. Closed set -- add a member to introduce a new role."""

    ADMIN = "ADMIN"
    MANAGER = "MANAGER"


class SubjectKind(str, Enum):
    STAFF = "staff"
    CLIENT = "client"


@dataclass(frozen=True)
class TOTPEnrollment:
    """Second-factor state attached to a staff account.

    States:
      NotEnrolled  secret=None, pending_secret=None, enabled=False
      Pending      secret=None, pending_secret=<key>, enabled=False
      Enrolled     secret=<key>, pending_secret=None, enabled=True

    Frozen so a transition always produces a new value that the store
    persists as a whole; nothing mutates enrollment in place.
    """

    secret: str | None = None
    pending_secret: str | None = None
    enabled: bool = False

    def __post_init__(self) -> None:
        if self.secret is not None and not self.enabled:
            raise ValueError("TOTP secret may only be set while enabled")
        if self.enabled and self.secret is None:
            raise ValueError("enabled TOTP enrollment requires a secret")

    @property
    def is_pending(self) -> bool:
        return self.pending_secret is not None and not self.enabled

    def with_pending(self, pending_secret: str) -> TOTPEnrollment:
        return TOTPEnrollment(pending_secret=pending_secret)

    def promoted(self) -> TOTPEnrollment:
        if self.pending_secret is None:
            raise ValueError("no pending secret to promote")
        return TOTPEnrollment(secret=self.pending_secret, enabled=True)

    def cleared(self) -> TOTPEnrollment:
        return TOTPEnrollment()


@dataclass
class StaffAccount:
    """Back-office user. email is the login identity; id is an opaque string."""

    email: str
    role: Role
    name: str = ""
    id: str | None = None
    password_hash: str | None = None
    totp: TOTPEnrollment = field(default_factory=TOTPEnrollment)
    is_active: bool = True
    created_at: str | None = None
    last_login: str | None = None
    # Highest TOTP time step already used to sign in; older steps are replays.
    totp_last_step: int | None = None


@dataclass
class ClientIdentity:
    """Public end user identified by phone. Profile fields are optional."""

    phone: str
    id: str | None = None
    verified: bool = False
    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None
    profile_type: str | None = None
    created_at: str | None = None
    last_login: str | None = None

    @property
    def needs_registration(self) -> bool:
        return not self.verified or not self.first_name or not self.last_name


@dataclass(frozen=True)
class VerificationCode:
    """A phone OTP. Never mutated: consumed or superseded, then gone."""

    phone: str
    code: str
    created_at: datetime
    expires_at: datetime
    attempts: int = 0


@dataclass(frozen=True)
class SessionClaims:
    """Verified contents of a session token."""

    subject_id: str
    subject_kind: SubjectKind
    issued_at: datetime
    expires_at: datetime
    role: Role | None = None


class AuditKind(str, Enum):
    LOGIN = "LOGIN"
    LOGIN_FAILED = "LOGIN_FAILED"
    TWO_FACTOR_ENABLED = "TWO_FACTOR_ENABLED"
    TWO_FACTOR_DISABLED = "TWO_FACTOR_DISABLED"
    TWO_FACTOR_FAILED = "TWO_FACTOR_FAILED"
    CODE_ISSUED = "CODE_ISSUED"
    CODE_REJECTED = "CODE_REJECTED"
    CLIENT_CREATED = "CLIENT_CREATED"
    STAFF_UPDATED = "STAFF_UPDATED"
    STAFF_DELETED = "STAFF_DELETED"


@dataclass(frozen=True)
class AuditEvent:
    kind: AuditKind
    subject_id: str | None
    timestamp: datetime
    detail: str = ""
