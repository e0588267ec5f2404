"""
auth/dependencies.py -- FastAPI Depends() helpers built on AccessGate.

Token sources are checked in priority order:
  1. "access_token" cookie -- set by the staff web login.
  2. Authorization: Bearer <token> header -- API clients and the public site.

Every helper delegates the decision to app.state.gate and raises the gate's
Unauthenticated / Forbidden errors unchanged; api/errors.py turns them into
401 / 403 responses.

get_current_staff()  -- any active staff member whose token role is still current.
require_role(role)   -- dependency factory; staff member holding `role`.
require_admin        -- require_role(Role.ADMIN).
get_current_client() -- a public client token.

Layer rule: auth/dependencies.py may import from fastapi (Request) because it
is part of the FastAPI dependency injection system; nothing else in auth/ does.
"""

from __future__ import annotations

from fastapi import Request

from auth.errors import Unauthenticated
from auth.gate import AccessGate
from auth.models import ClientIdentity, Role, StaffAccount, SubjectKind


def extract_token(request: Request) -> str | None:
    token: str | None = request.cookies.get("access_token")
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:].strip()
    return token or None


def _load_staff(request: Request, required_role: Role | None) -> StaffAccount:
    gate: AccessGate = request.app.state.gate
    claims = gate.authorize(extract_token(request), required_role=required_role, subject_kind=SubjectKind.STAFF)
    staff = request.app.state.store.get_staff(claims.subject_id)
    # Deleted, deactivated or re-roled accounts lose access even with an unexpired token.
    if staff is None or not staff.is_active or claims.role is not staff.role:
        raise Unauthenticated()
    return staff


def get_current_staff(request: Request) -> StaffAccount:
    """Require a staff session.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(staff: StaffAccount = Depends(get_current_staff)): ...
    """
    return _load_staff(request, None)


def require_role(role: Role):
    """Return a dependency that admits only staff whose token carries `role`."""

    def dependency(request: Request) -> StaffAccount:
        return _load_staff(request, role)

    dependency.__name__ = f"require_{role.value.lower()}"
    return dependency


require_admin = require_role(Role.ADMIN)


def get_current_client(request: Request) -> ClientIdentity:
    """Require a public client session."""
    gate: AccessGate = request.app.state.gate
    claims = gate.authorize(extract_token(request), subject_kind=SubjectKind.CLIENT)
    client = request.app.state.store.get_client(claims.subject_id)
    if client is None:
        raise Unauthenticated()
    return client
