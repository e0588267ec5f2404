"""
auth/tokens.py -- Session tokens, password hashing and staff password login.

Security design decisions:
  JWT: python-jose with HS256. Tokens carry sub (subject id), kind
       ("staff" | "client"), optional role, iat and exp. The signing key is a
       SigningKey value built once from Settings at startup and injected into
       SessionTokenIssuer -- nothing in here reads ambient config, so a key
       swap is a configuration change only.

       verify() distinguishes Malformed / SignatureInvalid / TokenExpired for
       logging. AccessGate collapses all three into Unauthenticated before
       anything reaches a client.

       Expiry is checked against the issuer's injected clock rather than by
       jose, so tests can move time without sleeping.

  Passwords: bcrypt directly (no passlib wrapper). The _DUMMY_HASH constant
       enables timing equalization in authenticate_staff() so response time
       does not reveal whether an email exists [C1].

  Revocation: none. Expiry is the only invalidation mechanism; staff tokens
       default to one hour (Settings.staff_token_expire_seconds).

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import bcrypt
from jose import JWTError, jwt

from auth.errors import Malformed, SignatureInvalid, TokenExpired
from auth.models import Role, SessionClaims, SubjectKind

if TYPE_CHECKING:
    from auth.models import StaffAccount
    from auth.store import CredentialStore
    from core.config import Settings

logger = logging.getLogger("gatehouse.auth")

_ALGORITHM = "HS256"

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Passwords longer than 72 bytes are truncated by bcrypt. The API layer caps
    password fields at 128 characters.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash: treat as a mismatch.
        return False


# Timing equalization dummy hash [C1]. Computed once at module load so the
# first login attempt is not measurably slower than subsequent ones.
_DUMMY_HASH: str = hash_password("gatehouse_timing_dummy")


def authenticate_staff(store: CredentialStore, email: str, password: str) -> StaffAccount | None:
    """Check email + password with timing equalization.

    Always runs bcrypt whether or not the account exists:
    - Unknown email: bcrypt runs against _DUMMY_HASH (same cost as real check)
    - Wrong password: bcrypt runs against the real hash (same cost)

    Returns the StaffAccount on success, None on any failure. The second
    factor is the caller's job (auth.login.StaffLogin).
    """
    staff = store.find_staff_by_identity(email)
    if staff is None or staff.password_hash is None:
        # Equalize timing -- do NOT return early before running bcrypt [C1]
        verify_password(password, _DUMMY_HASH)
        return None
    if not verify_password(password, staff.password_hash):
        return None
    if not staff.is_active:
        return None
    return staff


# ---------------------------------------------------------------------------
# Session tokens
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SigningKey:
    """Process-wide token signing key. Loaded once; never mutated."""

    secret: str = field(repr=False)
    algorithm: str = _ALGORITHM

    @classmethod
    def from_settings(cls, settings: Settings) -> SigningKey:
        return cls(secret=settings.secret_key)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionTokenIssuer:
    """Mint and verify signed, stateless session tokens."""

    def __init__(
        self,
        key: SigningKey,
        default_ttl_seconds: int = 3600,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._key = key
        self._default_ttl = default_ttl_seconds
        self._clock = clock

    def issue(
        self,
        subject_id: str,
        role: Role | None = None,
        ttl_seconds: int | None = None,
        subject_kind: SubjectKind = SubjectKind.STAFF,
    ) -> str:
        """Return a signed token for subject_id valid for ttl_seconds."""
        ttl = ttl_seconds if ttl_seconds is not None else self._default_ttl
        issued_at = self._clock().replace(microsecond=0)
        expires_at = issued_at + timedelta(seconds=ttl)
        payload = {
            "sub": subject_id,
            "kind": subject_kind.value,
            "iat": int(issued_at.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        if role is not None:
            payload["role"] = role.value
        return jwt.encode(payload, self._key.secret, algorithm=self._key.algorithm)

    def verify(self, token: str) -> SessionClaims:
        """Return the verified claims or raise Malformed / SignatureInvalid / TokenExpired."""
        if not token or not isinstance(token, str):
            raise Malformed()
        try:
            jwt.get_unverified_claims(token)
        except JWTError as exc:
            raise Malformed() from exc
        try:
            payload = jwt.decode(
                token,
                self._key.secret,
                algorithms=[self._key.algorithm],
                options={"verify_exp": False},
            )
        except JWTError as exc:
            raise SignatureInvalid() from exc

        claims = _claims_from_payload(payload)
        if self._clock() > claims.expires_at:
            raise TokenExpired()
        return claims


def _claims_from_payload(payload: dict) -> SessionClaims:
    try:
        subject_id = payload["sub"]
        kind = SubjectKind(payload["kind"])
        issued_at = datetime.fromtimestamp(int(payload["iat"]), timezone.utc)
        expires_at = datetime.fromtimestamp(int(payload["exp"]), timezone.utc)
        role = Role(payload["role"]) if payload.get("role") is not None else None
    except (KeyError, TypeError, ValueError) as exc:
        raise Malformed() from exc
    if not isinstance(subject_id, str) or not subject_id:
        raise Malformed()
    return SessionClaims(
        subject_id=subject_id,
        subject_kind=kind,
        issued_at=issued_at,
        expires_at=expires_at,
        role=role,
    )


# ---------------------------------------------------------------------------
# Cookie helper
# ---------------------------------------------------------------------------


def set_auth_cookie(response, token: str, expire_seconds: int, secure: bool = False) -> None:
    """Write the session token as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": not sent on cross-site POST -- CSRF mitigation.
    secure: only sent over HTTPS when SECURE_COOKIES=true (set in production).
    max_age: matches the token expiry so both expire together.
    """
    response.set_cookie(
        "access_token",
        value=token,
        httponly=True,
        samesite="lax",
        secure=secure,
        max_age=expire_seconds,
    )
