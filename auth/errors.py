"""
auth/errors.py -- Exception hierarchy for the authentication core.

Every failure the core can produce is an AuthError subclass with a stable
machine-readable `code`. The precise class is kept for logging; the HTTP
boundary (api/errors.py) collapses related kinds into one user-facing outcome:

  CodeRejected  -- InvalidCode, ExpiredCode, TooManyAttempts, CodeNotFound. One generic
                   "code rejected" response so callers cannot tell which
                   check failed.
  TokenError    -- Malformed, SignatureInvalid, TokenExpired. Never leaves the
                   core: AccessGate re-raises them as Unauthenticated.

Layer rule: no imports from api/. Pure Python, no third-party dependencies.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for all authentication core failures."""

    code: str = "auth_error"
    message: str = "Authentication error."

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.message)


# ---------------------------------------------------------------------------
# Lookup
# ---------------------------------------------------------------------------


class NotFound(AuthError):
    code = "not_found"
    message = "Record not found."


# ---------------------------------------------------------------------------
# One-time codes (phone OTP and TOTP)
# ---------------------------------------------------------------------------


class CodeRejected(AuthError):
    """Common base for every reason a submitted code is refused."""

    code = "code_rejected"
    message = "The code is invalid or has expired."


class InvalidCode(CodeRejected):
    code = "invalid_code"
    message = "The submitted code does not match."


class ExpiredCode(CodeRejected):
    code = "expired_code"
    message = "The code has expired."


class TooManyAttempts(CodeRejected):
    """The wrong guess that used up the code's last attempt. The code is gone."""

    code = "too_many_attempts"
    message = "Too many wrong attempts; request a new code."


class CodeNotFound(CodeRejected, NotFound):
    """No active verification code exists for the phone."""

    code = "code_not_found"
    message = "No active code for this phone."


# ---------------------------------------------------------------------------
# TOTP enrollment state
# ---------------------------------------------------------------------------


class EnrollmentStateError(AuthError):
    code = "enrollment_state"


class AlreadyEnabled(EnrollmentStateError):
    code = "already_enabled"
    message = "Two-factor authentication is already enabled."


class NotEnabled(EnrollmentStateError):
    code = "not_enabled"
    message = "Two-factor authentication is not enabled."


class NoPendingEnrollment(EnrollmentStateError):
    code = "no_pending_enrollment"
    message = "No two-factor enrollment is in progress."


# ---------------------------------------------------------------------------
# Session tokens
# ---------------------------------------------------------------------------


class TokenError(AuthError):
    code = "token_error"


class Malformed(TokenError):
    code = "malformed"
    message = "Token is malformed."


class SignatureInvalid(TokenError):
    code = "signature_invalid"
    message = "Token signature is invalid."


class TokenExpired(TokenError):
    code = "expired"
    message = "Token has expired."


# ---------------------------------------------------------------------------
# Access decisions
# ---------------------------------------------------------------------------


class Unauthenticated(AuthError):
    code = "unauthorized"
    message = "Authentication required."


class BadCredentials(Unauthenticated):
    """Wrong email, password or second-factor code. One message for all three."""

    code = "bad_credentials"
    message = "Invalid email, password or two-factor code."


class TwoFactorRequired(Unauthenticated):
    code = "two_factor_required"
    message = "A two-factor code is required for this account."


class Forbidden(AuthError):
    code = "forbidden"
    message = "Insufficient permissions."


class SelfModification(AuthError):
    """An admin tried to demote, deactivate or delete their own account."""

    code = "self_modification"
    message = "You cannot demote, deactivate or delete your own account."


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------


class DeliveryFailed(AuthError):
    code = "delivery_failed"
    message = "The code could not be delivered."


class StoreUnavailable(AuthError):
    code = "store_unavailable"
    message = "The credential store is unavailable."
