"""
api/routes/v1/public_auth.py -- Phone-number sign-in for public clients.

Routes:
  POST /api/v1/public/auth/sms       -- issue + deliver a verification code (rate-limited)
  POST /api/v1/public/auth/login     -- phone + code -> client token (rate-limited)
  GET  /api/v1/public/auth/me        -- current client profile (client token)
  POST /api/v1/public/auth/register  -- complete profile after first sign-in (client token)
  POST /api/v1/public/auth/update-profile -- same handler, for later edits (client token)

Every rejected code (wrong, expired, out of attempts, none issued, already
used) returns the same 400 code_rejected body.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from api.limiter import limiter, login_limit, sms_limit
from api.models import ClientRegister, ClientResponse, PhoneLoginRequest, PhoneLoginResponse, SmsRequest, SmsResponse
from auth.dependencies import get_current_client
from auth.login import PhoneLogin
from auth.models import ClientIdentity
from auth.store import CredentialStore

router = APIRouter()

_DEFAULT_PROFILE_TYPE = "retail"


@limiter.limit(sms_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/public/auth/sms", response_model=SmsResponse)
def request_sms_code(request: Request, body: SmsRequest) -> SmsResponse:
    """Send a fresh code to the phone, replacing any earlier one.

    With DEBUG=true and the console gateway the code is echoed back so the
    flow can be exercised without an SMS provider.
    """
    phone_login: PhoneLogin = request.app.state.phone_login
    code = phone_login.request_code(body.phone)
    settings = request.app.state.settings
    if settings.debug and settings.sms_gateway == "console":
        return SmsResponse(message="Code sent (development mode).", code=code)
    return SmsResponse()


@limiter.limit(login_limit)
@router.post("/public/auth/login", response_model=PhoneLoginResponse)
def phone_login(request: Request, body: PhoneLoginRequest) -> PhoneLoginResponse:
    """Consume the code and return a client token.

    First sign-in for an unknown phone creates the client. needs_registration
    tells the site to collect the name before checkout.
    """
    flow: PhoneLogin = request.app.state.phone_login
    session = flow.sign_in(body.phone, body.code)
    return PhoneLoginResponse(
        access_token=session.token,
        expires_in=session.expires_in,
        client=ClientResponse.from_client(session.client),
        needs_registration=session.client.needs_registration,
    )


@router.get("/public/auth/me", response_model=ClientResponse)
async def client_me(client: ClientIdentity = Depends(get_current_client)) -> ClientResponse:
    return ClientResponse.from_client(client)


@router.post("/public/auth/register", response_model=ClientResponse)
@router.post("/public/auth/update-profile", response_model=ClientResponse)
def register(
    request: Request,
    body: ClientRegister,
    client: ClientIdentity = Depends(get_current_client),
) -> ClientResponse:
    """Fill in or update the profile of the signed-in client.

    The body replaces the stored name and email on every call, so the same
    handler serves the first registration and later profile edits.
    """
    store: CredentialStore = request.app.state.store
    store.update_client_profile(
        client.id,
        first_name=body.first_name,
        last_name=body.last_name,
        email=body.email,
        profile_type=client.profile_type or _DEFAULT_PROFILE_TYPE,
    )
    return ClientResponse.from_client(store.get_client(client.id))
