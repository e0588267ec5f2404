"""
API request and response models for Gatehouse REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.models import ClientIdentity, Role, StaffAccount
from auth.notify import normalize_phone

# ---------------------------------------------------------------------------
# Shared
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)


class MessageResponse(BaseModel):
    message: str


class _PhoneBody(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    phone: str = Field(min_length=10, max_length=32)

    @field_validator("phone")
    @classmethod
    def digits_only(cls, value: str) -> str:
        """Store and look up phones as bare digits so '+7 999 ...' and '7999...' match."""
        return normalize_phone(value)


# ---------------------------------------------------------------------------
# Staff auth
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=255)
    password: str = Field(min_length=1, max_length=128)
    totp_code: Optional[str] = Field(default=None, max_length=16)


class LoginResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    staff_id: str
    email: str
    role: Role


class StaffResponse(BaseModel):
    id: str
    email: str
    name: str
    role: Role
    is_active: bool
    two_factor_enabled: bool
    created_at: str = ""
    last_login: Optional[str] = None

    @classmethod
    def from_staff(cls, staff: StaffAccount) -> "StaffResponse":
        return cls(
            id=staff.id,
            email=staff.email,
            name=staff.name,
            role=staff.role,
            is_active=staff.is_active,
            two_factor_enabled=staff.totp.enabled,
            created_at=staff.created_at or "",
            last_login=staff.last_login,
        )


class StaffCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=255, pattern=r"^[^@\s]+@[^@\s]+$")
    name: str = Field(default="", max_length=255)
    password: str = Field(min_length=8, max_length=128)
    role: Role = Role.MANAGER


class StaffUpdate(BaseModel):
    """PATCH body. Omitted fields stay as they are."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: Optional[str] = Field(default=None, max_length=255)
    role: Optional[Role] = None
    is_active: Optional[bool] = None


# ---------------------------------------------------------------------------
# Two-factor
# ---------------------------------------------------------------------------


class TwoFactorStatus(BaseModel):
    two_factor_enabled: bool
    pending: bool = False


class TwoFactorSetupResponse(BaseModel):
    """Secret for manual entry plus the otpauth:// URI the UI renders as a QR code."""

    two_factor_enabled: bool = False
    secret: str
    provisioning_uri: str


class TwoFactorCode(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    code: str = Field(min_length=6, max_length=16)


class TwoFactorValidateRequest(TwoFactorCode):
    email: str = Field(min_length=3, max_length=255)


# ---------------------------------------------------------------------------
# Public client auth
# ---------------------------------------------------------------------------


class SmsRequest(_PhoneBody):
    pass


class SmsResponse(BaseModel):
    success: bool = True
    message: str = "Code sent."
    # Only populated in debug mode with the console gateway.
    code: Optional[str] = None


class PhoneLoginRequest(_PhoneBody):
    code: str = Field(min_length=4, max_length=8, pattern=r"^\d+$")


class ClientResponse(BaseModel):
    id: str
    phone: str
    verified: bool
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    profile_type: Optional[str] = None

    @classmethod
    def from_client(cls, client: ClientIdentity) -> "ClientResponse":
        return cls(
            id=client.id,
            phone=client.phone,
            verified=client.verified,
            first_name=client.first_name,
            last_name=client.last_name,
            email=client.email,
            profile_type=client.profile_type,
        )


class PhoneLoginResponse(BaseModel):
    success: bool = True
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    client: ClientResponse
    needs_registration: bool


class ClientRegister(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    first_name: str = Field(min_length=1, max_length=255)
    last_name: str = Field(min_length=1, max_length=255)
    email: Optional[str] = Field(default=None, max_length=255, pattern=r"^[^@\s]+@[^@\s]+$")
