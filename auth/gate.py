"""
auth/gate.py -- Per-request access decisions on session tokens.

AccessGate.authorize() is the single checkpoint between a presented bearer
token and a route's policy. Every token failure (malformed, bad signature,
expired) becomes Unauthenticated so a client cannot tell which check failed;
the precise reason is logged at DEBUG. A verified token with the wrong or no
role, or the wrong kind of subject, is Forbidden.

The gate holds only the issuer reference and no per-request state, so one
instance is shared by all requests.
"""

from __future__ import annotations

import logging

from auth.errors import Forbidden, TokenError, Unauthenticated
from auth.models import Role, SessionClaims, SubjectKind
from auth.tokens import SessionTokenIssuer

logger = logging.getLogger("gatehouse.gate")


class AccessGate:
    def __init__(self, issuer: SessionTokenIssuer) -> None:
        self._issuer = issuer

    def authorize(
        self,
        token: str | None,
        required_role: Role | None = None,
        subject_kind: SubjectKind | None = None,
    ) -> SessionClaims:
        """Return the token's claims if it satisfies the policy.

        Raises Unauthenticated for a missing or unverifiable token and
        Forbidden for a valid token that lacks the required role or kind.
        """
        if not token:
            raise Unauthenticated()
        try:
            claims = self._issuer.verify(token)
        except TokenError as exc:
            logger.debug("Token rejected: %s", exc.code)
            raise Unauthenticated() from None
        if subject_kind is not None and claims.subject_kind is not subject_kind:
            raise Forbidden()
        if required_role is not None and claims.role is not required_role:
            raise Forbidden()
        return claims
