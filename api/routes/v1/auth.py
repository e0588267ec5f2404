"""
api/routes/v1/auth.py -- Staff authentication, two-factor and staff management.

Routes:
  POST /api/v1/auth/login                 -- email + password (+ TOTP); sets JWT cookie
  POST /api/v1/auth/logout                -- clears cookie; 200
  GET  /api/v1/auth/me                    -- current staff member (requires auth)
  GET  /api/v1/auth/two-factor            -- 2FA status (requires auth)
  POST /api/v1/auth/two-factor/setup      -- start enrollment (requires auth)
  POST /api/v1/auth/two-factor/confirm    -- prove possession, enable 2FA (requires auth)
  POST /api/v1/auth/two-factor/disable    -- disable own 2FA (requires auth)
  POST /api/v1/auth/two-factor/validate   -- pre-login TOTP check by email (public, rate-limited)
  POST /api/v1/auth/users                 -- create staff account (ADMIN only)
  GET  /api/v1/auth/users                 -- list staff accounts (ADMIN only)
  GET  /api/v1/auth/users/{id}            -- one staff account (ADMIN only)
  PATCH /api/v1/auth/users/{id}           -- change name, role or active flag (ADMIN only)
  DELETE /api/v1/auth/users/{id}          -- delete a staff account (ADMIN only)

Security:
  [H2] POST /login and /two-factor/validate are rate-limited per IP.
  [C1] StaffLogin uses authenticate_staff() for timing equalization.
  [M5] Cache-Control: no-store on login responses.
  2FA routes act on the token's own subject only -- there is no staff_id
  parameter, so one staff member cannot change another's enrollment.
  Admins cannot demote, deactivate or delete their own account.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError

from api.errors import error_response
from api.limiter import limiter, login_limit
from api.models import (
    LoginRequest,
    LoginResponse,
    MessageResponse,
    StaffCreate,
    StaffResponse,
    StaffUpdate,
    TwoFactorCode,
    TwoFactorSetupResponse,
    TwoFactorStatus,
    TwoFactorValidateRequest,
)
from auth.audit import emit
from auth.dependencies import get_current_staff, require_admin
from auth.enrollment import TOTPEnrollmentService
from auth.errors import InvalidCode, NotEnabled, NotFound, SelfModification, Unauthenticated
from auth.login import StaffLogin
from auth.models import AuditKind, StaffAccount
from auth.store import CredentialStore
from auth.tokens import hash_password, set_auth_cookie

router = APIRouter()


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(login_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email, password and (when enabled) a TOTP code; set JWT cookie.

    Wrong email, wrong password and wrong TOTP code share one response
    ("bad_credentials"). A missing code for a 2FA account returns
    "two_factor_required" so the UI knows to prompt for it.
    """
    staff_login: StaffLogin = request.app.state.staff_login
    try:
        session = staff_login.login(body.email, body.password, body.totp_code)
    except Unauthenticated as exc:
        return error_response(exc, headers={"Cache-Control": "no-store"})  # [M5]

    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            access_token=session.token,
            token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
            expires_in=session.expires_in,
            staff_id=session.staff.id,
            email=session.staff.email,
            role=session.staff.role,
        ).model_dump(mode="json"),
    )
    set_auth_cookie(resp, session.token, session.expires_in, secure=request.app.state.settings.secure_cookies)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.post("/auth/logout", response_model=MessageResponse)
async def logout() -> JSONResponse:
    """Clear the JWT cookie.

    The token itself stays valid until it expires; there is no server-side
    revocation.
    """
    resp = JSONResponse(content={"message": "Logged out."})
    resp.delete_cookie("access_token")
    return resp


@limiter.limit(login_limit)  # [H2]
@router.post("/auth/two-factor/validate", response_model=MessageResponse)
def validate_two_factor(request: Request, body: TwoFactorValidateRequest) -> MessageResponse:
    """Check a TOTP code for an account before submitting the full login.

    Unknown email and "2FA not enabled" are reported as a rejected code so the
    endpoint cannot be used to discover accounts or their 2FA state.
    """
    store: CredentialStore = request.app.state.store
    enrollment: TOTPEnrollmentService = request.app.state.enrollment
    staff = store.find_staff_by_identity(body.email)
    if staff is None or not staff.is_active:
        raise InvalidCode()
    try:
        enrollment.check_code(staff, body.code)
    except NotEnabled:
        raise InvalidCode() from None
    return MessageResponse(message="Code accepted.")


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=StaffResponse)
async def me(current_staff: StaffAccount = Depends(get_current_staff)) -> StaffResponse:
    """Return identity information for the currently authenticated staff member."""
    return StaffResponse.from_staff(current_staff)


@router.get("/auth/two-factor", response_model=TwoFactorStatus)
async def two_factor_status(current_staff: StaffAccount = Depends(get_current_staff)) -> TwoFactorStatus:
    return TwoFactorStatus(two_factor_enabled=current_staff.totp.enabled, pending=current_staff.totp.is_pending)


@router.post("/auth/two-factor/setup", response_model=TwoFactorSetupResponse)
def two_factor_setup(
    request: Request,
    current_staff: StaffAccount = Depends(get_current_staff),
) -> JSONResponse:
    """Generate a pending TOTP secret. 2FA stays off until /confirm succeeds."""
    enrollment: TOTPEnrollmentService = request.app.state.enrollment
    started = enrollment.start_enrollment(current_staff.id)
    resp = JSONResponse(
        content=TwoFactorSetupResponse(secret=started.secret, provisioning_uri=started.provisioning_uri).model_dump()
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/auth/two-factor/confirm", response_model=TwoFactorStatus)
def two_factor_confirm(
    request: Request,
    body: TwoFactorCode,
    current_staff: StaffAccount = Depends(get_current_staff),
) -> TwoFactorStatus:
    enrollment: TOTPEnrollmentService = request.app.state.enrollment
    enabled = enrollment.confirm_enrollment(current_staff.id, body.code)
    return TwoFactorStatus(two_factor_enabled=enabled)


@router.post("/auth/two-factor/disable", response_model=TwoFactorStatus)
def two_factor_disable(
    request: Request,
    current_staff: StaffAccount = Depends(get_current_staff),
) -> TwoFactorStatus:
    enrollment: TOTPEnrollmentService = request.app.state.enrollment
    enabled = enrollment.disable(current_staff.id)
    return TwoFactorStatus(two_factor_enabled=enabled)


# ---------------------------------------------------------------------------
# Staff management (ADMIN only)
# ---------------------------------------------------------------------------


@router.post("/auth/users", response_model=StaffResponse, status_code=201)
def create_staff(
    request: Request,
    body: StaffCreate,
    current_staff: StaffAccount = Depends(require_admin),
) -> StaffResponse:
    """Create a staff account. New accounts start without 2FA."""
    store: CredentialStore = request.app.state.store
    new_staff = StaffAccount(
        email=body.email.lower(),
        name=body.name,
        role=body.role,
        password_hash=hash_password(body.password),
    )
    try:
        staff_id = store.create_staff(new_staff)
    except IntegrityError as exc:
        raise HTTPException(
            status_code=409,
            detail={"code": "conflict", "message": "A staff account with that email already exists."},
        ) from exc

    created = store.get_staff(staff_id)
    if created is None:
        raise HTTPException(
            status_code=500,
            detail={"code": "internal_error", "message": "Staff account not found after write."},
        )
    return StaffResponse.from_staff(created)


@router.get("/auth/users", response_model=list[StaffResponse])
def list_staff(
    request: Request,
    current_staff: StaffAccount = Depends(require_admin),
) -> list[StaffResponse]:
    store: CredentialStore = request.app.state.store
    return [StaffResponse.from_staff(s) for s in store.list_staff()]


def _load_target(store: CredentialStore, staff_id: str) -> StaffAccount:
    staff = store.get_staff(staff_id)
    if staff is None:
        raise NotFound("Staff account not found.")
    return staff


@router.get("/auth/users/{staff_id}", response_model=StaffResponse)
def get_staff(
    request: Request,
    staff_id: str,
    current_staff: StaffAccount = Depends(require_admin),
) -> StaffResponse:
    return StaffResponse.from_staff(_load_target(request.app.state.store, staff_id))


@router.patch("/auth/users/{staff_id}", response_model=StaffResponse)
def update_staff(
    request: Request,
    staff_id: str,
    body: StaffUpdate,
    current_staff: StaffAccount = Depends(require_admin),
) -> StaffResponse:
    """Rename, re-role, deactivate or reactivate a staff account.

    The change applies to the account's live sessions at once: their tokens
    still carry the old role, so get_current_staff() refuses them.
    An admin cannot demote or deactivate their own account.
    """
    store: CredentialStore = request.app.state.store
    target = _load_target(store, staff_id)
    if target.id == current_staff.id and (
        (body.role is not None and body.role is not target.role) or body.is_active is False
    ):
        raise SelfModification()

    if store.update_staff(target.id, role=body.role, is_active=body.is_active, name=body.name):
        emit(
            request.app.state.audit,
            AuditKind.STAFF_UPDATED,
            target.id,
            detail=f"by={current_staff.id} role={body.role.value if body.role else '-'} active={body.is_active}",
        )
    return StaffResponse.from_staff(_load_target(store, target.id))


@router.delete("/auth/users/{staff_id}", response_model=MessageResponse)
def delete_staff(
    request: Request,
    staff_id: str,
    current_staff: StaffAccount = Depends(require_admin),
) -> MessageResponse:
    """Remove a staff account. Its unexpired tokens stop working immediately."""
    store: CredentialStore = request.app.state.store
    target = _load_target(store, staff_id)
    if target.id == current_staff.id:
        raise SelfModification()
    store.delete_staff(target.id)
    emit(request.app.state.audit, AuditKind.STAFF_DELETED, target.id, detail=f"by={current_staff.id}")
    return MessageResponse(message="Staff account deleted.")
