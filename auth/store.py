"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper.
CredentialStore is the repository; the _row_to_* functions are the mappers.
Services and routes never touch SQL directly.

Concurrency:
  The database is the only shared mutable resource. These operations need more
  than a plain read or write:

  replace_code()  -- delete + insert for the phone inside one transaction
                     (engine.begin()). verification_codes.phone is the primary
                     key, so at most one code per phone can exist at any time.
  consume_code()  -- a single conditional DELETE ... RETURNING. The match on
                     phone, code and expiry and the removal of the row are one
                     statement, so two concurrent validations of the same code
                     can never both receive the row back.
  record_failed_attempt() -- increments the attempt counter and, once it
                     reaches the limit, deletes the row in the same
                     transaction, so no code survives more wrong guesses
                     than allowed.
  claim_totp_step() -- conditional UPDATE that only moves totp_last_step
                     forward, so one TOTP step signs in at most once.

Errors:
  OperationalError / InterfaceError (database locked, unreachable, closed)
  surface as auth.errors.StoreUnavailable. IntegrityError is left alone --
  callers treat it as "a concurrent request already created the record".

Security:
  All queries use bound parameters. No f-strings in SQL.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import functools
import logging
import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, Float, Integer, MetaData, String, Table, Text, create_engine, event, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import InterfaceError, OperationalError

from auth.errors import StoreUnavailable
from auth.models import AuditEvent, ClientIdentity, Role, StaffAccount, TOTPEnrollment, VerificationCode
from core.config import get_settings

logger = logging.getLogger("gatehouse.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_staff = Table(
    "staff",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("name", String(255), nullable=False, server_default=""),
    Column("role", String(30), nullable=False, server_default=Role.MANAGER.value),
    Column("password_hash", Text),
    Column("totp_secret", Text),  # set only while totp_enabled = 1
    Column("totp_pending_secret", Text),  # enrollment window only
    Column("totp_enabled", Integer, nullable=False, server_default="0"),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
    Column("last_login", String(32)),
    Column("totp_last_step", Integer),  # last TOTP counter used to sign in
)

_clients = Table(
    "clients",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("phone", String(32), nullable=False, unique=True),
    Column("verified", Integer, nullable=False, server_default="0"),
    Column("first_name", String(255)),
    Column("last_name", String(255)),
    Column("email", String(255)),
    Column("profile_type", String(64)),
    Column("created_at", String(32), nullable=False),
    Column("last_login", String(32)),
)

# Timestamps are epoch seconds (REAL) so expiry is a numeric comparison in SQL.
_codes = Table(
    "verification_codes",
    _metadata,
    Column("phone", String(32), primary_key=True),
    Column("code", String(8), nullable=False),
    Column("created_at", Float, nullable=False),
    Column("expires_at", Float, nullable=False),
    Column("attempts", Integer, nullable=False, server_default="0"),
)

_audit_log = Table(
    "audit_log",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("kind", String(32), nullable=False),
    Column("subject_id", String(32)),
    Column("timestamp", String(32), nullable=False),
    Column("detail", Text, nullable=False, server_default=""),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers are not blocked during writes.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _new_id() -> str:
    return uuid.uuid4().hex


def _translate_db_errors(method):
    """Re-raise connectivity failures as StoreUnavailable, unchanged otherwise."""

    @functools.wraps(method)
    def wrapper(*args, **kwargs):
        try:
            return method(*args, **kwargs)
        except (OperationalError, InterfaceError) as exc:
            logger.error("Credential store call %s failed: %s", method.__name__, exc)
            raise StoreUnavailable() from exc

    return wrapper


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class CredentialStore:
    """Repository for staff accounts, clients, verification codes and audit events.

    Usage:
        store = CredentialStore()
        staff_id = store.create_staff(StaffAccount(email="a@b.c", role=Role.ADMIN, password_hash=h))
        staff = store.find_staff_by_identity("a@b.c")
        store.close()
    """

    def __init__(self, db_url: str | None = None) -> None:
        db_url = db_url or get_settings().database_url
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def ping(self) -> bool:
        """Return True if a trivial query succeeds. Used by the health endpoint."""
        try:
            with self.engine.connect() as conn:
                conn.execute(select(1)).scalar()
        except (OperationalError, InterfaceError):
            return False
        return True

    # ------------------------------------------------------------------
    # Staff
    # ------------------------------------------------------------------

    @_translate_db_errors
    def create_staff(self, staff: StaffAccount) -> str:
        """Insert a staff account and return its id.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        """
        staff_id = staff.id or _new_id()
        with self.engine.begin() as conn:
            conn.execute(
                _staff.insert().values(
                    id=staff_id,
                    email=staff.email,
                    name=staff.name,
                    role=staff.role.value,
                    password_hash=staff.password_hash,
                    totp_secret=staff.totp.secret,
                    totp_pending_secret=staff.totp.pending_secret,
                    totp_enabled=1 if staff.totp.enabled else 0,
                    is_active=1 if staff.is_active else 0,
                    created_at=_now_iso(),
                )
            )
        return staff_id

    @_translate_db_errors
    def has_staff(self) -> bool:
        with self.engine.connect() as conn:
            count = conn.execute(select(func.count()).select_from(_staff)).scalar()
        return (count or 0) > 0

    @_translate_db_errors
    def get_staff(self, staff_id: str) -> StaffAccount | None:
        """Look up a staff account by primary key. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_staff.select().where(_staff.c.id == staff_id)).fetchone()
        return _row_to_staff(row) if row is not None else None

    @_translate_db_errors
    def find_staff_by_identity(self, identity: str) -> StaffAccount | None:
        """Look up a staff account by id or (case-insensitive) email."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _staff.select().where((_staff.c.id == identity) | (func.lower(_staff.c.email) == identity.lower()))
            ).fetchone()
        return _row_to_staff(row) if row is not None else None

    @_translate_db_errors
    def list_staff(self) -> list[StaffAccount]:
        with self.engine.connect() as conn:
            rows = conn.execute(_staff.select().order_by(_staff.c.email)).fetchall()
        return [_row_to_staff(r) for r in rows]

    @_translate_db_errors
    def update_staff(
        self,
        staff_id: str,
        role: Role | None = None,
        is_active: bool | None = None,
        name: str | None = None,
    ) -> bool:
        """Change role, active flag and/or name. None leaves a field as it is.

        Returns False if staff_id is unknown or nothing was requested.
        """
        values: dict = {}
        if role is not None:
            values["role"] = role.value
        if is_active is not None:
            values["is_active"] = 1 if is_active else 0
        if name is not None:
            values["name"] = name
        if not values:
            return False
        with self.engine.begin() as conn:
            result = conn.execute(_staff.update().where(_staff.c.id == staff_id).values(**values))
        return result.rowcount > 0

    @_translate_db_errors
    def delete_staff(self, staff_id: str) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(_staff.delete().where(_staff.c.id == staff_id))
        return result.rowcount > 0

    @_translate_db_errors
    def update_totp_enrollment(self, staff_id: str, enrollment: TOTPEnrollment) -> bool:
        """Persist the whole enrollment value. Returns False if staff_id is unknown.

        Any change of enrollment also forgets the last used TOTP step, since it
        belonged to the previous secret.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _staff.update()
                .where(_staff.c.id == staff_id)
                .values(
                    totp_secret=enrollment.secret,
                    totp_pending_secret=enrollment.pending_secret,
                    totp_enabled=1 if enrollment.enabled else 0,
                    totp_last_step=None,
                )
            )
        return result.rowcount > 0

    @_translate_db_errors
    def claim_totp_step(self, staff_id: str, step: int) -> bool:
        """Record step as used. False if this or a later step was already used."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _staff.update()
                .where(
                    (_staff.c.id == staff_id)
                    & (_staff.c.totp_last_step.is_(None) | (_staff.c.totp_last_step < step))
                )
                .values(totp_last_step=step)
            )
        return result.rowcount > 0

    @_translate_db_errors
    def touch_staff_login(self, staff_id: str) -> None:
        with self.engine.begin() as conn:
            conn.execute(_staff.update().where(_staff.c.id == staff_id).values(last_login=_now_iso()))

    # ------------------------------------------------------------------
    # Clients
    # ------------------------------------------------------------------

    @_translate_db_errors
    def find_client_by_phone(self, phone: str) -> ClientIdentity | None:
        with self.engine.connect() as conn:
            row = conn.execute(_clients.select().where(_clients.c.phone == phone)).fetchone()
        return _row_to_client(row) if row is not None else None

    @_translate_db_errors
    def get_client(self, client_id: str) -> ClientIdentity | None:
        with self.engine.connect() as conn:
            row = conn.execute(_clients.select().where(_clients.c.id == client_id)).fetchone()
        return _row_to_client(row) if row is not None else None

    @_translate_db_errors
    def create_client(self, phone: str) -> ClientIdentity:
        """Insert a verified client for phone and return it.

        Only called after the phone has been proven by a consumed code, so the
        record is created with verified=True. Raises IntegrityError if a
        concurrent request created the same phone first.
        """
        client_id = _new_id()
        created_at = _now_iso()
        with self.engine.begin() as conn:
            conn.execute(_clients.insert().values(id=client_id, phone=phone, verified=1, created_at=created_at))
        return ClientIdentity(phone=phone, id=client_id, verified=True, created_at=created_at)

    @_translate_db_errors
    def update_client_profile(self, client_id: str, **fields) -> bool:
        """Update profile fields. Accepted: first_name, last_name, email, profile_type."""
        unknown = set(fields) - {"first_name", "last_name", "email", "profile_type"}
        if unknown:
            raise ValueError(f"Unknown client fields: {unknown!r}")
        if not fields:
            return False
        with self.engine.begin() as conn:
            result = conn.execute(_clients.update().where(_clients.c.id == client_id).values(**fields))
        return result.rowcount > 0

    @_translate_db_errors
    def touch_client_login(self, client_id: str) -> None:
        with self.engine.begin() as conn:
            conn.execute(_clients.update().where(_clients.c.id == client_id).values(last_login=_now_iso()))

    # ------------------------------------------------------------------
    # Verification codes
    # ------------------------------------------------------------------

    @_translate_db_errors
    def replace_code(self, code: VerificationCode) -> None:
        """Make code the only code for its phone (delete + insert, one transaction)."""
        with self.engine.begin() as conn:
            conn.execute(_codes.delete().where(_codes.c.phone == code.phone))
            conn.execute(
                _codes.insert().values(
                    phone=code.phone,
                    code=code.code,
                    created_at=code.created_at.timestamp(),
                    expires_at=code.expires_at.timestamp(),
                )
            )

    @_translate_db_errors
    def consume_code(self, phone: str, code: str, now: datetime) -> VerificationCode | None:
        """Atomically delete and return the matching, unexpired code.

        Returns None when nothing matched; the row (if any) is left untouched
        so the caller can classify the failure with get_code().
        """
        with self.engine.begin() as conn:
            row = conn.execute(
                _codes.delete()
                .where((_codes.c.phone == phone) & (_codes.c.code == code) & (_codes.c.expires_at >= now.timestamp()))
                .returning(_codes.c.phone, _codes.c.code, _codes.c.created_at, _codes.c.expires_at, _codes.c.attempts)
            ).fetchone()
        return _row_to_code(row) if row is not None else None

    @_translate_db_errors
    def record_failed_attempt(self, phone: str, code: str, max_attempts: int) -> int | None:
        """Count one wrong guess against the stored code for phone.

        Only the row still holding `code` is charged, so a code issued after
        the guess started keeps a clean counter. Returns the attempts left:
        0 means the limit was reached and the row is gone. None means the code
        was no longer stored.
        """
        matches = (_codes.c.phone == phone) & (_codes.c.code == code)
        with self.engine.begin() as conn:
            attempts = conn.execute(
                _codes.update().where(matches).values(attempts=_codes.c.attempts + 1).returning(_codes.c.attempts)
            ).scalar()
            if attempts is None:
                return None
            if attempts >= max_attempts:
                conn.execute(_codes.delete().where(matches))
                return 0
        return max_attempts - attempts

    @_translate_db_errors
    def get_code(self, phone: str) -> VerificationCode | None:
        with self.engine.connect() as conn:
            row = conn.execute(_codes.select().where(_codes.c.phone == phone)).fetchone()
        return _row_to_code(row) if row is not None else None

    @_translate_db_errors
    def discard_code(self, phone: str, code: str) -> bool:
        """Delete the code for phone only if it is still this exact code.

        Conditional so that a newer code issued concurrently is never removed.
        """
        with self.engine.begin() as conn:
            result = conn.execute(_codes.delete().where((_codes.c.phone == phone) & (_codes.c.code == code)))
        return result.rowcount > 0

    @_translate_db_errors
    def purge_expired_codes(self, now: datetime | None = None) -> int:
        """Delete every expired code. Returns the number of rows removed."""
        cutoff = (now or datetime.now(timezone.utc)).timestamp()
        with self.engine.begin() as conn:
            result = conn.execute(_codes.delete().where(_codes.c.expires_at < cutoff))
        return result.rowcount

    # ------------------------------------------------------------------
    # Audit log
    # ------------------------------------------------------------------

    @_translate_db_errors
    def record_audit_event(self, audit_event: AuditEvent) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                _audit_log.insert().values(
                    kind=audit_event.kind.value,
                    subject_id=audit_event.subject_id,
                    timestamp=audit_event.timestamp.isoformat(),
                    detail=audit_event.detail,
                )
            )

    @_translate_db_errors
    def list_audit_events(self, subject_id: str | None = None, limit: int = 100) -> list[dict]:
        """Return recent audit rows, newest first."""
        query = _audit_log.select().order_by(_audit_log.c.id.desc()).limit(limit)
        if subject_id is not None:
            query = query.where(_audit_log.c.subject_id == subject_id)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [dict(r._mapping) for r in rows]

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_staff(row) -> StaffAccount:
    return StaffAccount(
        id=row.id,
        email=row.email,
        name=row.name,
        role=Role(row.role),
        password_hash=row.password_hash,
        totp=TOTPEnrollment(
            secret=row.totp_secret,
            pending_secret=row.totp_pending_secret,
            enabled=bool(row.totp_enabled),
        ),
        is_active=bool(row.is_active),
        created_at=row.created_at,
        last_login=row.last_login,
        totp_last_step=row.totp_last_step,
    )


def _row_to_client(row) -> ClientIdentity:
    return ClientIdentity(
        id=row.id,
        phone=row.phone,
        verified=bool(row.verified),
        first_name=row.first_name,
        last_name=row.last_name,
        email=row.email,
        profile_type=row.profile_type,
        created_at=row.created_at,
        last_login=row.last_login,
    )


def _row_to_code(row) -> VerificationCode:
    return VerificationCode(
        phone=row.phone,
        code=row.code,
        created_at=datetime.fromtimestamp(row.created_at, timezone.utc),
        expires_at=datetime.fromtimestamp(row.expires_at, timezone.utc),
        attempts=row.attempts,
    )
