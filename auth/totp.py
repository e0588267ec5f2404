"""
auth/totp.py -- RFC 6238 time-based one-time passwords.

pyotp computes the per-step codes and provisioning URIs. Verification is
done here rather than with TOTP.verify() because pyotp returns on the first
matching window step; we compare against every candidate in the window with
hmac.compare_digest and only then decide, so response time does not depend
on which step (if any) matched.

Skew tolerance is explicit configuration (valid_window steps on each side of
the current one), never a library default.
"""

from __future__ import annotations

import hmac
import re
from datetime import datetime

import pyotp

_WHITESPACE = re.compile(r"\s+")


def generate_secret() -> str:
    """Return a fresh base32 secret (160 bits)."""
    return pyotp.random_base32(length=32)


def normalize_code(code: str) -> str:
    return _WHITESPACE.sub("", code or "")


class TOTPValidator:
    """Pure TOTP verification with configured step, digits and skew window."""

    def __init__(self, step_seconds: int = 30, digits: int = 6, valid_window: int = 1, issuer: str = "Gatehouse"):
        if valid_window < 0:
            raise ValueError("valid_window must be >= 0")
        self.step_seconds = step_seconds
        self.digits = digits
        self.valid_window = valid_window
        self.issuer = issuer

    def _totp(self, secret: str) -> pyotp.TOTP:
        return pyotp.TOTP(secret, digits=self.digits, interval=self.step_seconds, issuer=self.issuer)

    def code_at(self, secret: str, when: datetime, step_offset: int = 0) -> str:
        """Return the code for the step containing `when`, shifted by step_offset."""
        return self._totp(secret).at(when, counter_offset=step_offset)

    def provisioning_uri(self, secret: str, account_name: str) -> str:
        """otpauth:// URI for authenticator apps (rendered as a QR code by the client)."""
        return self._totp(secret).provisioning_uri(name=account_name, issuer_name=self.issuer)

    def match_step(self, secret: str, submitted_code: str, now: datetime) -> int | None:
        """Return the time step (counter) submitted_code belongs to, or None.

        Only steps within the window around now are considered. If two steps
        in the window share a code, the latest one is reported.
        """
        candidate = normalize_code(submitted_code)
        if len(candidate) != self.digits or not (candidate.isascii() and candidate.isdigit()):
            return None
        totp = self._totp(secret)
        current = totp.timecode(now)
        matched: int | None = None
        for offset in range(-self.valid_window, self.valid_window + 1):
            expected = totp.at(now, counter_offset=offset)
            if hmac.compare_digest(expected.encode(), candidate.encode()):
                matched = current + offset
        return matched

    def verify(self, secret: str, submitted_code: str, now: datetime) -> bool:
        """Return True if submitted_code matches any step within the window around now."""
        return self.match_step(secret, submitted_code, now) is not None
