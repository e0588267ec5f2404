"""
tests/test_api_staff_auth.py -- Integration tests for /api/v1/auth/* (staff).

Runs through the real ASGI stack with the module-scoped `api` harness.
Accounts that change state (2FA) are created per test so the shared admin and
manager accounts stay pristine.

Coverage:
  - password login: success, cookie + no-store, bad credentials envelope
  - /me via bearer header and via cookie; missing / expired token -> 401
  - role gate: MANAGER on ADMIN-only routes -> 403, client token -> 403
  - staff creation and listing (ADMIN only), duplicate email -> 409
  - staff updates and deletion: demotion and deactivation revoke live tokens,
    admins cannot demote, deactivate or delete themselves
  - full two-factor lifecycle: setup, confirm, validate, login with code, replay, disable
"""

from __future__ import annotations

import pyotp

from api.main import app
from auth.models import AuditKind, Role, SubjectKind
from tests.support import DEFAULT_PASSWORD, make_staff


def _wrong_totp(secret: str, now) -> str:
    valid = {pyotp.TOTP(secret).at(now, counter_offset=o) for o in (-1, 0, 1)}
    return next(c for c in ("000000", "111111", "222222") if c not in valid)


class TestPasswordLogin:
    def test_login_success(self, api):
        resp = api.client.post("/api/v1/auth/login", json={"email": "admin@example.com", "password": DEFAULT_PASSWORD})
        assert resp.status_code == 200
        data = resp.json()
        assert data["token_type"] == "bearer"
        assert data["role"] == "ADMIN"
        assert data["staff_id"] == api.admin.id
        assert data["expires_in"] == 3600
        assert resp.headers["cache-control"] == "no-store"
        assert "access_token=" in resp.headers["set-cookie"]
        assert "httponly" in resp.headers["set-cookie"].lower()
        api.client.cookies.clear()

    def test_login_email_case_insensitive(self, api):
        assert api.login_staff("ADMIN@example.com").status_code == 200

    def test_wrong_password(self, api):
        resp = api.login_staff("admin@example.com", password="wrong-password")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "bad_credentials"
        assert resp.headers["www-authenticate"] == "Bearer"
        assert resp.headers["cache-control"] == "no-store"

    def test_unknown_email_same_response(self, api):
        unknown = api.login_staff("nobody@example.com")
        wrong = api.login_staff("admin@example.com", password="wrong-password")
        assert unknown.status_code == wrong.status_code == 401
        assert unknown.json() == wrong.json()

    def test_logout_clears_cookie(self, api):
        resp = api.client.post("/api/v1/auth/logout")
        assert resp.status_code == 200
        assert 'access_token=""' in resp.headers["set-cookie"] or "Max-Age=0" in resp.headers["set-cookie"]


class TestCurrentStaff:
    def test_me_with_bearer(self, api):
        resp = api.client.get("/api/v1/auth/me", headers=api.bearer(api.tokens["manager"]))
        assert resp.status_code == 200
        data = resp.json()
        assert data["email"] == "manager@example.com"
        assert data["role"] == "MANAGER"
        assert data["two_factor_enabled"] is False

    def test_me_with_cookie(self, api):
        api.client.post("/api/v1/auth/login", json={"email": "manager@example.com", "password": DEFAULT_PASSWORD})
        try:
            resp = api.client.get("/api/v1/auth/me")
        finally:
            api.client.cookies.clear()
        assert resp.status_code == 200
        assert resp.json()["id"] == api.manager.id

    def test_me_without_token(self, api):
        resp = api.client.get("/api/v1/auth/me")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_me_with_garbage_token(self, api):
        resp = api.client.get("/api/v1/auth/me", headers=api.bearer("not.a.token"))
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_expired_token(self, api):
        token = app.state.issuer.issue(api.manager.id, role=Role.MANAGER, ttl_seconds=60)
        api.clock.advance(61)
        resp = api.client.get("/api/v1/auth/me", headers=api.bearer(token))
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_client_token_forbidden(self, api):
        token = app.state.issuer.issue("someclient", subject_kind=SubjectKind.CLIENT)
        resp = api.client.get("/api/v1/auth/me", headers=api.bearer(token))
        assert resp.status_code == 403


class TestStaffManagement:
    def test_manager_cannot_list_staff(self, api):
        resp = api.client.get("/api/v1/auth/users", headers=api.bearer(api.tokens["manager"]))
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"

    def test_admin_lists_staff(self, api):
        resp = api.client.get("/api/v1/auth/users", headers=api.bearer(api.tokens["admin"]))
        assert resp.status_code == 200
        emails = {s["email"] for s in resp.json()}
        assert {"admin@example.com", "manager@example.com"} <= emails

    def test_admin_creates_staff(self, api):
        body = {"email": "New.Hire@Example.com", "name": "New Hire", "password": "long enough pw", "role": "MANAGER"}
        resp = api.client.post("/api/v1/auth/users", json=body, headers=api.bearer(api.tokens["admin"]))
        assert resp.status_code == 201
        assert resp.json()["email"] == "new.hire@example.com"
        assert api.login_staff("new.hire@example.com", password="long enough pw").status_code == 200

        dup = api.client.post("/api/v1/auth/users", json=body, headers=api.bearer(api.tokens["admin"]))
        assert dup.status_code == 409
        assert dup.json()["error"]["code"] == "conflict"

    def test_manager_cannot_create_staff(self, api):
        body = {"email": "x@example.com", "password": "long enough pw"}
        resp = api.client.post("/api/v1/auth/users", json=body, headers=api.bearer(api.tokens["manager"]))
        assert resp.status_code == 403

    def test_short_password_rejected(self, api):
        body = {"email": "y@example.com", "password": "short"}
        resp = api.client.post("/api/v1/auth/users", json=body, headers=api.bearer(api.tokens["admin"]))
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"


class TestStaffUpdates:
    def _fresh(self, api, role=Role.MANAGER):
        staff = make_staff(api.store, role=role)
        token = api.login_staff(staff.email).json()["access_token"]
        return staff, api.bearer(token)

    def _patch(self, api, staff_id: str, body: dict, token_name: str = "admin"):
        return api.client.patch(
            f"/api/v1/auth/users/{staff_id}", json=body, headers=api.bearer(api.tokens[token_name])
        )

    def test_admin_gets_one_account(self, api):
        resp = api.client.get(f"/api/v1/auth/users/{api.manager.id}", headers=api.bearer(api.tokens["admin"]))
        assert resp.status_code == 200
        assert resp.json()["email"] == "manager@example.com"

    def test_unknown_account_is_404(self, api):
        resp = self._patch(api, "no-such-id", {"is_active": False})
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_found"

    def test_manager_cannot_update(self, api):
        staff, _ = self._fresh(api)
        resp = self._patch(api, staff.id, {"role": "ADMIN"}, token_name="manager")
        assert resp.status_code == 403

    def test_demoted_admin_loses_admin_access_at_once(self, api):
        staff, headers = self._fresh(api, Role.ADMIN)
        assert api.client.get("/api/v1/auth/users", headers=headers).status_code == 200

        resp = self._patch(api, staff.id, {"role": "MANAGER"})
        assert resp.status_code == 200
        assert resp.json()["role"] == "MANAGER"

        # The old token still says ADMIN and is refused outright.
        assert api.client.get("/api/v1/auth/users", headers=headers).status_code == 401
        assert api.client.get("/api/v1/auth/me", headers=headers).status_code == 401

        fresh = api.bearer(api.login_staff(staff.email).json()["access_token"])
        assert api.client.get("/api/v1/auth/me", headers=fresh).json()["role"] == "MANAGER"
        assert api.client.get("/api/v1/auth/users", headers=fresh).status_code == 403

    def test_deactivate_and_reactivate(self, api):
        staff, headers = self._fresh(api)
        resp = self._patch(api, staff.id, {"is_active": False})
        assert resp.status_code == 200
        assert resp.json()["is_active"] is False
        assert api.client.get("/api/v1/auth/me", headers=headers).status_code == 401
        assert api.login_staff(staff.email).json()["error"]["code"] == "bad_credentials"

        assert self._patch(api, staff.id, {"is_active": True}).status_code == 200
        assert api.login_staff(staff.email).status_code == 200

    def test_update_is_audited(self, api):
        staff, _ = self._fresh(api)
        self._patch(api, staff.id, {"name": "Night Shift"})
        event = api.audit.events[-1]
        assert event.kind is AuditKind.STAFF_UPDATED
        assert event.subject_id == staff.id
        assert f"by={api.admin.id}" in event.detail

    def test_admin_cannot_demote_or_deactivate_self(self, api):
        for body in ({"role": "MANAGER"}, {"is_active": False}):
            resp = self._patch(api, api.admin.id, body)
            assert resp.status_code == 400
            assert resp.json()["error"]["code"] == "self_modification"
        assert api.store.get_staff(api.admin.id).role is Role.ADMIN

    def test_delete_account(self, api):
        staff, headers = self._fresh(api)
        resp = api.client.delete(f"/api/v1/auth/users/{staff.id}", headers=api.bearer(api.tokens["admin"]))
        assert resp.status_code == 200
        assert api.client.get("/api/v1/auth/me", headers=headers).status_code == 401
        missing = api.client.get(f"/api/v1/auth/users/{staff.id}", headers=api.bearer(api.tokens["admin"]))
        assert missing.status_code == 404

    def test_admin_cannot_delete_self(self, api):
        resp = api.client.delete(f"/api/v1/auth/users/{api.admin.id}", headers=api.bearer(api.tokens["admin"]))
        assert resp.status_code == 400
        assert api.store.get_staff(api.admin.id) is not None


class TestTwoFactorLifecycle:
    def _fresh_staff(self, api):
        staff = make_staff(api.store)
        token = api.login_staff(staff.email).json()["access_token"]
        return staff, api.bearer(token)

    def test_full_lifecycle(self, api):
        staff, headers = self._fresh_staff(api)

        setup = api.client.post("/api/v1/auth/two-factor/setup", headers=headers)
        assert setup.status_code == 200
        assert setup.headers["cache-control"] == "no-store"
        secret = setup.json()["secret"]
        assert setup.json()["two_factor_enabled"] is False
        assert setup.json()["provisioning_uri"].startswith("otpauth://totp/")

        status = api.client.get("/api/v1/auth/two-factor", headers=headers).json()
        assert status == {"two_factor_enabled": False, "pending": True}

        # A pending secret does not gate login yet.
        assert api.login_staff(staff.email).status_code == 200

        wrong = api.client.post(
            "/api/v1/auth/two-factor/confirm", json={"code": _wrong_totp(secret, api.clock.now)}, headers=headers
        )
        assert wrong.status_code == 400
        assert wrong.json()["error"]["code"] == "code_rejected"

        code = pyotp.TOTP(secret).at(api.clock.now)
        confirm = api.client.post("/api/v1/auth/two-factor/confirm", json={"code": code}, headers=headers)
        assert confirm.status_code == 200
        assert confirm.json()["two_factor_enabled"] is True

        missing = api.login_staff(staff.email)
        assert missing.status_code == 401
        assert missing.json()["error"]["code"] == "two_factor_required"

        bad = api.login_staff(staff.email, totp_code=_wrong_totp(secret, api.clock.now))
        assert bad.status_code == 401
        assert bad.json()["error"]["code"] == "bad_credentials"

        # The pre-login check does not use the code up; the login does.
        code = pyotp.TOTP(secret).at(api.clock.now)
        validated = api.client.post("/api/v1/auth/two-factor/validate", json={"email": staff.email, "code": code})
        assert validated.status_code == 200

        good = api.login_staff(staff.email, totp_code=code)
        assert good.status_code == 200
        replayed = api.login_staff(staff.email, totp_code=code)
        assert replayed.status_code == 401
        assert replayed.json()["error"]["code"] == "bad_credentials"

        disabled = api.client.post("/api/v1/auth/two-factor/disable", headers=headers)
        assert disabled.status_code == 200
        assert disabled.json()["two_factor_enabled"] is False
        assert api.login_staff(staff.email).status_code == 200

        again = api.client.post("/api/v1/auth/two-factor/disable", headers=headers)
        assert again.status_code == 409
        assert again.json()["error"]["code"] == "not_enabled"

    def test_confirm_without_setup(self, api):
        _, headers = self._fresh_staff(api)
        resp = api.client.post("/api/v1/auth/two-factor/confirm", json={"code": "123456"}, headers=headers)
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "no_pending_enrollment"

    def test_setup_twice_after_enable(self, api):
        staff, headers = self._fresh_staff(api)
        secret = api.client.post("/api/v1/auth/two-factor/setup", headers=headers).json()["secret"]
        api.client.post(
            "/api/v1/auth/two-factor/confirm", json={"code": pyotp.TOTP(secret).at(api.clock.now)}, headers=headers
        )
        resp = api.client.post("/api/v1/auth/two-factor/setup", headers=headers)
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "already_enabled"

    def test_validate_hides_account_state(self, api):
        unknown = api.client.post(
            "/api/v1/auth/two-factor/validate", json={"email": "ghost@example.com", "code": "123456"}
        )
        not_enrolled = api.client.post(
            "/api/v1/auth/two-factor/validate", json={"email": "manager@example.com", "code": "123456"}
        )
        assert unknown.status_code == not_enrolled.status_code == 400
        assert unknown.json() == not_enrolled.json()
        assert unknown.json()["error"]["code"] == "code_rejected"

    def test_two_factor_requires_auth(self, api):
        assert api.client.post("/api/v1/auth/two-factor/setup").status_code == 401
        assert api.client.get("/api/v1/auth/two-factor").status_code == 401
