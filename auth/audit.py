"""
auth/audit.py -- Security event sinks.

An AuditSink receives AuditEvent records (login, 2FA changes, rejected codes).
Recording is fire-and-forget: emit() never lets a sink failure reach the
security operation that produced the event. Failures are logged locally.

Sinks:
  LoggingAuditSink -- writes one structured line per event to the
                      "gatehouse.audit" logger.
  StoreAuditSink   -- persists events through CredentialStore.record_audit_event().
  CompositeAuditSink -- fans out to several sinks.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Protocol

from auth.models import AuditEvent, AuditKind

if TYPE_CHECKING:
    from auth.store import CredentialStore

logger = logging.getLogger("gatehouse.audit")


class AuditSink(Protocol):
    def record(self, event: AuditEvent) -> None: ...


class LoggingAuditSink:
    def record(self, event: AuditEvent) -> None:
        logger.info(
            "audit kind=%s subject=%s at=%s detail=%s",
            event.kind.value,
            event.subject_id or "-",
            event.timestamp.isoformat(),
            event.detail,
        )


class StoreAuditSink:
    def __init__(self, store: CredentialStore) -> None:
        self._store = store

    def record(self, event: AuditEvent) -> None:
        self._store.record_audit_event(event)


class CompositeAuditSink:
    """Fan an event out to several sinks; one failing sink does not starve the rest."""

    def __init__(self, *sinks: AuditSink) -> None:
        self._sinks = sinks

    def record(self, event: AuditEvent) -> None:
        for sink in self._sinks:
            try:
                sink.record(event)
            except Exception:
                logger.exception("Audit sink %s failed to record %s", type(sink).__name__, event.kind.value)


def emit(
    sink: AuditSink | None,
    kind: AuditKind,
    subject_id: str | None,
    detail: str = "",
    timestamp: datetime | None = None,
) -> None:
    """Build an AuditEvent and hand it to sink, swallowing sink failures."""
    if sink is None:
        return
    event = AuditEvent(
        kind=kind,
        subject_id=subject_id,
        timestamp=timestamp or datetime.now(timezone.utc),
        detail=detail,
    )
    try:
        sink.record(event)
    except Exception:
        logger.exception("Audit sink failed to record %s for %s", kind.value, subject_id)
