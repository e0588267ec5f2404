"""
auth/enrollment.py -- TOTP second-factor enrollment for staff accounts.

State machine (persisted as auth.models.TOTPEnrollment):

  NotEnrolled --start--> Pending --confirm(valid)--> Enrolled --disable--> NotEnrolled
                  ^         |                                          (re-enrollable)
                  +--start--+  (a new start replaces the pending secret)

Only confirm_enrollment() can reach Enrolled, and only after the submitted
code verifies against the pending secret. A pending secret never
authorizes a login.

A code signs in once: consume_login_code() records the time step it matched
and later codes must belong to a newer step.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone

from auth.audit import AuditSink, emit
from auth.errors import AlreadyEnabled, InvalidCode, NoPendingEnrollment, NotEnabled, NotFound
from auth.models import AuditKind, StaffAccount
from auth.store import CredentialStore
from auth.totp import TOTPValidator, generate_secret

logger = logging.getLogger("gatehouse.enrollment")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class EnrollmentStart:
    secret: str
    provisioning_uri: str


class TOTPEnrollmentService:
    def __init__(
        self,
        store: CredentialStore,
        validator: TOTPValidator,
        audit: AuditSink | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._validator = validator
        self._audit = audit
        self._clock = clock

    def _load(self, staff_id: str) -> StaffAccount:
        staff = self._store.get_staff(staff_id)
        if staff is None:
            raise NotFound("Staff account not found.")
        return staff

    def start_enrollment(self, staff_id: str) -> EnrollmentStart:
        """Generate a secret and stage it as pending. Grants no trust yet."""
        staff = self._load(staff_id)
        if staff.totp.enabled:
            raise AlreadyEnabled()
        secret = generate_secret()
        self._store.update_totp_enrollment(staff_id, staff.totp.with_pending(secret))
        logger.info("TOTP enrollment started for staff %s", staff_id)
        return EnrollmentStart(secret=secret, provisioning_uri=self._validator.provisioning_uri(secret, staff.email))

    def confirm_enrollment(self, staff_id: str, submitted_code: str) -> bool:
        """Promote the pending secret once the user proves possession of it.

        On a wrong code the pending secret is kept so the user can retry.
        """
        staff = self._load(staff_id)
        if not staff.totp.is_pending:
            raise NoPendingEnrollment()
        now = self._clock()
        if not self._validator.verify(staff.totp.pending_secret, submitted_code, now):
            emit(self._audit, AuditKind.TWO_FACTOR_FAILED, staff_id, detail="enrollment confirmation", timestamp=now)
            raise InvalidCode()
        self._store.update_totp_enrollment(staff_id, staff.totp.promoted())
        emit(self._audit, AuditKind.TWO_FACTOR_ENABLED, staff_id, timestamp=now)
        logger.info("TOTP enabled for staff %s", staff_id)
        return True

    def disable(self, staff_id: str) -> bool:
        """Clear the active secret. The caller must be authenticated as staff_id.

        Returns the new enabled flag (always False).
        """
        staff = self._load(staff_id)
        if not staff.totp.enabled:
            raise NotEnabled()
        self._store.update_totp_enrollment(staff_id, staff.totp.cleared())
        emit(self._audit, AuditKind.TWO_FACTOR_DISABLED, staff_id, timestamp=self._clock())
        logger.info("TOTP disabled for staff %s", staff_id)
        return False

    def validate_login(self, staff_id: str, submitted_code: str) -> None:
        """Check a sign-in code against the active secret. Read-only."""
        staff = self._load(staff_id)
        self.check_code(staff, submitted_code)

    def check_code(self, staff: StaffAccount, submitted_code: str) -> int:
        """validate_login() for an already loaded account. Returns the matched step.

        A step that already signed this account in is rejected like a wrong code.
        """
        if not staff.totp.enabled:
            raise NotEnabled()
        now = self._clock()
        step = self._validator.match_step(staff.totp.secret, submitted_code, now)
        if step is None or (staff.totp_last_step is not None and step <= staff.totp_last_step):
            emit(self._audit, AuditKind.TWO_FACTOR_FAILED, staff.id, detail="login", timestamp=now)
            raise InvalidCode()
        return step

    def consume_login_code(self, staff: StaffAccount, submitted_code: str) -> None:
        """check_code(), then mark the step used so the code cannot sign in again."""
        step = self.check_code(staff, submitted_code)
        if not self._store.claim_totp_step(staff.id, step):
            emit(self._audit, AuditKind.TWO_FACTOR_FAILED, staff.id, detail="replayed code", timestamp=self._clock())
            raise InvalidCode()
