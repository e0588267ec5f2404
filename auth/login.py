"""
auth/login.py -- Sign-in flows that end in a session token.

StaffLogin:  email + password (timing-equalized bcrypt) -> TOTP check when the
             account has 2FA enabled -> staff token carrying the role.
PhoneLogin:  phone -> code issued and delivered; phone + code -> code consumed
             -> client resolved or created -> client token (no role).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.exc import IntegrityError

from auth.audit import AuditSink, emit
from auth.enrollment import TOTPEnrollmentService
from auth.errors import BadCredentials, InvalidCode, TwoFactorRequired
from auth.models import AuditKind, ClientIdentity, StaffAccount, SubjectKind
from auth.store import CredentialStore
from auth.tokens import SessionTokenIssuer, authenticate_staff
from auth.verification import VerificationCodeService

logger = logging.getLogger("gatehouse.login")


@dataclass(frozen=True)
class StaffSession:
    token: str
    expires_in: int
    staff: StaffAccount


@dataclass(frozen=True)
class ClientSession:
    token: str
    expires_in: int
    client: ClientIdentity
    created: bool


class StaffLogin:
    def __init__(
        self,
        store: CredentialStore,
        enrollment: TOTPEnrollmentService,
        issuer: SessionTokenIssuer,
        token_ttl_seconds: int,
        audit: AuditSink | None = None,
    ) -> None:
        self._store = store
        self._enrollment = enrollment
        self._issuer = issuer
        self._ttl = token_ttl_seconds
        self._audit = audit

    def login(self, email: str, password: str, totp_code: str | None = None) -> StaffSession:
        """Authenticate a staff member and mint a session token.

        Raises BadCredentials for a wrong email, password or TOTP code and
        TwoFactorRequired when 2FA is enabled but no code was supplied.
        """
        staff = authenticate_staff(self._store, email, password)
        if staff is None:
            emit(self._audit, AuditKind.LOGIN_FAILED, None, detail=f"email={email}")
            raise BadCredentials()

        if staff.totp.enabled:
            if not totp_code:
                raise TwoFactorRequired()
            try:
                self._enrollment.consume_login_code(staff, totp_code)
            except InvalidCode:
                emit(self._audit, AuditKind.LOGIN_FAILED, staff.id, detail="two-factor code rejected")
                raise BadCredentials() from None

        self._store.touch_staff_login(staff.id)
        emit(self._audit, AuditKind.LOGIN, staff.id, detail=f"role={staff.role.value}")
        token = self._issuer.issue(staff.id, role=staff.role, ttl_seconds=self._ttl, subject_kind=SubjectKind.STAFF)
        return StaffSession(token=token, expires_in=self._ttl, staff=staff)


class PhoneLogin:
    def __init__(
        self,
        store: CredentialStore,
        codes: VerificationCodeService,
        issuer: SessionTokenIssuer,
        token_ttl_seconds: int,
        audit: AuditSink | None = None,
    ) -> None:
        self._store = store
        self._codes = codes
        self._issuer = issuer
        self._ttl = token_ttl_seconds
        self._audit = audit

    def request_code(self, phone: str) -> str:
        return self._codes.issue(phone)

    def sign_in(self, phone: str, code: str) -> ClientSession:
        """Consume the phone's code, then resolve or create the client."""
        self._codes.validate(phone, code)

        created = False
        client = self._store.find_client_by_phone(phone)
        if client is None:
            try:
                client = self._store.create_client(phone)
                created = True
            except IntegrityError:
                # A concurrent sign-in for the same phone created it first.
                client = self._store.find_client_by_phone(phone)
                if client is None:
                    raise
        if created:
            emit(self._audit, AuditKind.CLIENT_CREATED, client.id)
            logger.info("Created client %s on first verified sign-in", client.id)

        self._store.touch_client_login(client.id)
        emit(self._audit, AuditKind.LOGIN, client.id, detail="phone")
        token = self._issuer.issue(client.id, ttl_seconds=self._ttl, subject_kind=SubjectKind.CLIENT)
        return ClientSession(token=token, expires_in=self._ttl, client=client, created=created)
