"""
auth/verification.py -- Single-use, time-boxed phone verification codes.

Lifecycle of a code for one phone:

  NoActiveCode --issue()--> CodeIssued --validate() ok--> Consumed
                                 |--time passes------> Expired     (issue again)
                                 |--max_attempts wrong-> Exhausted  (issue again)
                                 |--issue() again----> Superseded

Atomicity lives in the store: replace_code() swaps the phone's code inside one
transaction and consume_code() is a single conditional DELETE ... RETURNING.
This module only decides what a failed consume means.
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from auth.audit import AuditSink, emit
from auth.errors import CodeNotFound, CodeRejected, DeliveryFailed, ExpiredCode, InvalidCode, TooManyAttempts
from auth.models import AuditKind, VerificationCode
from auth.notify import NotificationGateway, mask_phone
from auth.store import CredentialStore

logger = logging.getLogger("gatehouse.verification")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_code(length: int) -> str:
    """Return `length` decimal digits drawn from the OS CSPRNG."""
    return "".join(str(secrets.randbelow(10)) for _ in range(length))


class VerificationCodeService:
    def __init__(
        self,
        store: CredentialStore,
        gateway: NotificationGateway,
        code_length: int = 4,
        ttl_seconds: int = 300,
        max_attempts: int = 5,
        audit: AuditSink | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._code_length = code_length
        self._ttl = timedelta(seconds=ttl_seconds)
        self._max_attempts = max_attempts
        self._audit = audit
        self._clock = clock

    def issue(self, phone: str) -> str:
        """Replace any code for phone with a fresh one and deliver it.

        If delivery fails the new code is discarded again, so the phone is
        left with no usable code and the caller can simply retry. A fresh code
        also starts with a fresh attempt counter.
        """
        now = self._clock()
        code = generate_code(self._code_length)
        self._store.replace_code(VerificationCode(phone=phone, code=code, created_at=now, expires_at=now + self._ttl))
        try:
            self._gateway.send(phone, code)
        except DeliveryFailed:
            self._store.discard_code(phone, code)
            logger.warning("Discarded code for %s after delivery failure", mask_phone(phone))
            raise
        emit(self._audit, AuditKind.CODE_ISSUED, None, detail=f"phone={mask_phone(phone)}", timestamp=now)
        return code

    def validate(self, phone: str, submitted_code: str) -> VerificationCode:
        """Consume the active code for phone if it matches and has not expired.

        Raises CodeNotFound, ExpiredCode, InvalidCode or TooManyAttempts. On
        success the code no longer exists; a second validate() with the same
        code raises CodeNotFound. Each wrong guess counts against the code and
        the max_attempts-th one deletes it.
        """
        now = self._clock()
        consumed = self._store.consume_code(phone, submitted_code, now)
        if consumed is not None:
            return consumed

        existing = self._store.get_code(phone)
        if existing is None:
            error: CodeRejected = CodeNotFound()
        elif now > existing.expires_at:
            # Lazy purge: expiry is enforced by the timestamp either way.
            self._store.discard_code(phone, existing.code)
            error = ExpiredCode()
        elif self._store.record_failed_attempt(phone, existing.code, self._max_attempts) == 0:
            error = TooManyAttempts()
        else:
            error = InvalidCode()
        logger.info("Code rejected for %s: %s", mask_phone(phone), error.code)
        emit(
            self._audit,
            AuditKind.CODE_REJECTED,
            None,
            detail=f"phone={mask_phone(phone)} reason={error.code}",
            timestamp=now,
        )
        raise error
