"""
api/main.py -- FastAPI application entry point for Gatehouse.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. access_log            -- one log line per request
  2. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter
  3. CORSMiddleware        -- adds CORS headers for allowed browser origins
  4. TrustedHostMiddleware -- rejects requests with unexpected Host headers

Lifespan builds the long-lived objects once and hangs them on app.state:
settings, the credential store, the SMS gateway, the audit sink and the auth
services. Request handlers only read them; nothing on app.state is mutated
after startup.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from slowapi.middleware import SlowAPIMiddleware

from api.errors import install_error_handlers
from api.limiter import limiter
from api.models import HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.public_auth import router as public_auth_router
from auth.audit import AuditSink, CompositeAuditSink, LoggingAuditSink, StoreAuditSink
from auth.enrollment import TOTPEnrollmentService
from auth.gate import AccessGate
from auth.login import PhoneLogin, StaffLogin
from auth.notify import NotificationGateway, build_gateway
from auth.store import CredentialStore
from auth.tokens import SessionTokenIssuer, SigningKey
from auth.totp import TOTPValidator
from auth.verification import VerificationCodeService
from core.config import Settings, get_settings

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("gatehouse.api")

# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def configure_state(
    app: FastAPI,
    settings: Settings,
    store: CredentialStore,
    gateway: NotificationGateway,
    audit: AuditSink,
    clock=None,
) -> None:
    """Build the auth services from their collaborators and publish them on app.state.

    clock, when given, replaces the wall clock in every time-dependent service
    (tests use it to move time without sleeping).
    """
    clock_kwargs = {"clock": clock} if clock is not None else {}

    issuer = SessionTokenIssuer(
        SigningKey.from_settings(settings),
        default_ttl_seconds=settings.staff_token_expire_seconds,
        **clock_kwargs,
    )
    validator = TOTPValidator(
        step_seconds=settings.totp_step_seconds,
        digits=settings.totp_digits,
        valid_window=settings.totp_valid_window,
        issuer=settings.totp_issuer,
    )
    enrollment = TOTPEnrollmentService(store, validator, audit=audit, **clock_kwargs)
    codes = VerificationCodeService(
        store,
        gateway,
        code_length=settings.code_length,
        ttl_seconds=settings.code_ttl_seconds,
        max_attempts=settings.code_max_attempts,
        audit=audit,
        **clock_kwargs,
    )

    app.state.settings = settings
    app.state.store = store
    app.state.gateway = gateway
    app.state.audit = audit
    app.state.issuer = issuer
    app.state.gate = AccessGate(issuer)
    app.state.enrollment = enrollment
    app.state.codes = codes
    app.state.staff_login = StaffLogin(
        store, enrollment, issuer, token_ttl_seconds=settings.staff_token_expire_seconds, audit=audit
    )
    app.state.phone_login = PhoneLogin(
        store, codes, issuer, token_ttl_seconds=settings.client_token_expire_seconds, audit=audit
    )


# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown. Settings are read exactly once here.
    """
    logger.info("Gatehouse API starting up")
    settings = get_settings()
    store = CredentialStore(settings.database_url)
    gateway = build_gateway(settings)
    audit = CompositeAuditSink(LoggingAuditSink(), StoreAuditSink(store))
    configure_state(app, settings, store, gateway, audit)
    if not store.has_staff():
        logger.warning("No staff accounts exist -- create one with: python main.py create-staff")
    logger.info("Auth initialized (sms_gateway=%s, totp_window=%d)", settings.sms_gateway, settings.totp_valid_window)

    yield

    close = getattr(gateway, "close", None)
    if close is not None:
        close()
    store.close()
    logger.info("Gatehouse API shutdown complete")


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------

_settings = get_settings()

app = FastAPI(
    title="Gatehouse API",
    description="Staff and client authentication: passwords, TOTP second factor, phone codes, session tokens.",
    version=VERSION,
    lifespan=lifespan,
    docs_url="/docs" if _settings.debug else None,
    redoc_url=None,
)

# Starlette makes the last middleware added the outermost one.
app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)
app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)
app.add_middleware(SlowAPIMiddleware)
app.state.limiter = limiter


@app.middleware("http")
async def access_log(request: Request, call_next):
    """One line per request. Bodies and tokens are never logged."""
    started = time.perf_counter()
    response = await call_next(request)
    logger.info(
        "%s %s -> %d in %.1fms (%s)",
        request.method,
        request.url.path,
        response.status_code,
        (time.perf_counter() - started) * 1000,
        request.client.host if request.client else "unknown",
    )
    return response


app.include_router(auth_router, prefix="/api/v1", tags=["Staff Auth"])
app.include_router(public_auth_router, prefix="/api/v1", tags=["Client Auth"])
install_error_handlers(app)


# Health lives on the app itself, outside any router and without a rate
# limit, so load balancer health checks always reach it.
@app.get("/api/v1/health", tags=["Health"])
async def health(request: Request) -> HealthResponse:
    """Return API liveness, version and database status."""
    store: CredentialStore = request.app.state.store
    database = "ok" if store.ping() else "error"
    status = "healthy" if database == "ok" else "degraded"
    return HealthResponse(status=status, version=VERSION, components={"app": "ok", "database": database})
