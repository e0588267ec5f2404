"""Unit tests for auth/login.py -- staff and phone sign-in flows.

Covers:
- StaffLogin: bad password / unknown email -> BadCredentials
- StaffLogin: 2FA account without code -> TwoFactorRequired, wrong code -> BadCredentials
- StaffLogin: success issues a staff token carrying the role
- StaffLogin: a TOTP code signs in once, a newer step works again
- PhoneLogin: first sign-in creates a verified client, later ones reuse it
- PhoneLogin: rejected codes propagate and create nothing
"""

from __future__ import annotations

import pyotp
import pytest

from auth.enrollment import TOTPEnrollmentService
from auth.errors import BadCredentials, CodeRejected, TwoFactorRequired
from auth.gate import AccessGate
from auth.login import PhoneLogin, StaffLogin
from auth.models import AuditKind, Role, SubjectKind
from auth.tokens import SessionTokenIssuer, SigningKey
from auth.totp import TOTPValidator
from auth.verification import VerificationCodeService
from tests.support import DEFAULT_PASSWORD, TEST_SECRET, make_staff

PHONE = "79990000000"


@pytest.fixture
def issuer(clock):
    return SessionTokenIssuer(SigningKey(TEST_SECRET), clock=clock)


@pytest.fixture
def enrollment(store, audit, clock):
    return TOTPEnrollmentService(store, TOTPValidator(), audit=audit, clock=clock)


@pytest.fixture
def staff_login(store, enrollment, issuer, audit):
    return StaffLogin(store, enrollment, issuer, token_ttl_seconds=3600, audit=audit)


@pytest.fixture
def phone_login(store, gateway, issuer, audit, clock):
    codes = VerificationCodeService(store, gateway, audit=audit, clock=clock)
    return PhoneLogin(store, codes, issuer, token_ttl_seconds=86400, audit=audit)


def _enable_2fa(enrollment, staff_id, clock) -> str:
    secret = enrollment.start_enrollment(staff_id).secret
    enrollment.confirm_enrollment(staff_id, pyotp.TOTP(secret).at(clock.now))
    return secret


class TestStaffLogin:
    def test_success_without_2fa(self, store, staff_login, issuer, audit):
        staff = make_staff(store, "boss@example.com", Role.ADMIN)
        session = staff_login.login("boss@example.com", DEFAULT_PASSWORD)
        claims = AccessGate(issuer).authorize(session.token, required_role=Role.ADMIN)
        assert claims.subject_id == staff.id
        assert claims.subject_kind is SubjectKind.STAFF
        assert session.expires_in == 3600
        assert store.get_staff(staff.id).last_login
        assert audit.kinds()[-1] is AuditKind.LOGIN

    def test_wrong_password(self, store, staff_login, audit):
        make_staff(store, "boss@example.com")
        with pytest.raises(BadCredentials):
            staff_login.login("boss@example.com", "nope")
        assert audit.kinds()[-1] is AuditKind.LOGIN_FAILED

    def test_unknown_email(self, staff_login):
        with pytest.raises(BadCredentials):
            staff_login.login("ghost@example.com", DEFAULT_PASSWORD)

    def test_2fa_requires_code(self, store, staff_login, enrollment, clock):
        staff = make_staff(store, "boss@example.com")
        _enable_2fa(enrollment, staff.id, clock)
        with pytest.raises(TwoFactorRequired):
            staff_login.login("boss@example.com", DEFAULT_PASSWORD)

    def test_2fa_wrong_code_is_bad_credentials(self, store, staff_login, enrollment, clock):
        staff = make_staff(store, "boss@example.com")
        secret = _enable_2fa(enrollment, staff.id, clock)
        valid = {pyotp.TOTP(secret).at(clock.now, counter_offset=o) for o in (-1, 0, 1)}
        wrong = next(c for c in ("000000", "111111", "222222") if c not in valid)
        with pytest.raises(BadCredentials):
            staff_login.login("boss@example.com", DEFAULT_PASSWORD, wrong)

    def test_2fa_right_code(self, store, staff_login, enrollment, clock):
        staff = make_staff(store, "boss@example.com", Role.MANAGER)
        secret = _enable_2fa(enrollment, staff.id, clock)
        session = staff_login.login("boss@example.com", DEFAULT_PASSWORD, pyotp.TOTP(secret).at(clock.now))
        assert session.staff.id == staff.id

    def test_2fa_code_signs_in_once(self, store, staff_login, enrollment, clock):
        staff = make_staff(store, "boss@example.com")
        secret = _enable_2fa(enrollment, staff.id, clock)
        code = pyotp.TOTP(secret).at(clock.now)
        staff_login.login("boss@example.com", DEFAULT_PASSWORD, code)

        clock.advance(30)  # still inside the skew window
        with pytest.raises(BadCredentials):
            staff_login.login("boss@example.com", DEFAULT_PASSWORD, code)

        fresh = pyotp.TOTP(secret).at(clock.now)
        assert staff_login.login("boss@example.com", DEFAULT_PASSWORD, fresh).staff.id == staff.id

    def test_pending_enrollment_does_not_require_code(self, store, staff_login, enrollment):
        staff = make_staff(store, "boss@example.com")
        enrollment.start_enrollment(staff.id)
        assert staff_login.login("boss@example.com", DEFAULT_PASSWORD).staff.id == staff.id


class TestPhoneLogin:
    def test_first_sign_in_creates_client(self, store, phone_login, gateway, issuer, audit):
        phone_login.request_code(PHONE)
        session = phone_login.sign_in(PHONE, gateway.last_code(PHONE))
        assert session.created
        assert session.client.verified
        assert session.client.needs_registration
        claims = AccessGate(issuer).authorize(session.token, subject_kind=SubjectKind.CLIENT)
        assert claims.subject_id == session.client.id
        assert claims.role is None
        assert AuditKind.CLIENT_CREATED in audit.kinds()

    def test_second_sign_in_reuses_client(self, phone_login, gateway):
        phone_login.request_code(PHONE)
        first = phone_login.sign_in(PHONE, gateway.last_code(PHONE))
        phone_login.request_code(PHONE)
        second = phone_login.sign_in(PHONE, gateway.last_code(PHONE))
        assert not second.created
        assert second.client.id == first.client.id

    def test_rejected_code_creates_nothing(self, store, phone_login):
        phone_login.request_code(PHONE)
        with pytest.raises(CodeRejected):
            phone_login.sign_in(PHONE, "not-the-code")
        assert store.find_client_by_phone(PHONE) is None

    def test_code_cannot_be_replayed(self, phone_login, gateway):
        phone_login.request_code(PHONE)
        code = gateway.last_code(PHONE)
        phone_login.sign_in(PHONE, code)
        with pytest.raises(CodeRejected):
            phone_login.sign_in(PHONE, code)
