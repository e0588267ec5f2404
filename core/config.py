"""
core/config.py -- Gatehouse settings, read once from the environment.

Every tunable of the auth core lives on Settings: signing key, token lifetimes,
phone-code length, TTL and attempt limit, TOTP step / digits / skew window,
the SMS gateway and the HTTP boundary (rate limits, hosts, CORS). Nothing else
in the tree reads os.environ.

get_settings() is an lru_cache singleton. Services do not call it themselves;
api/main.py reads it during startup and passes plain values (a SigningKey,
ttl_seconds, valid_window) into constructors.

Environment variable names are the upper-cased field names (CODE_TTL_SECONDS,
TOTP_VALID_WINDOW, SMS_GATEWAY, ...). A .env file in the working directory is
honoured.

Startup refusals:
  [M6] SECRET_KEY shorter than 32 characters.
  [M7] No SECRET_KEY outside DEBUG. Tokens must keep verifying across
       restarts, so a generated per-process key is a development convenience.
  SMS_GATEWAY=console outside DEBUG (it writes codes to the log), and
  SMS_GATEWAY=smsaero without credentials.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("gatehouse.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'gatehouse.db'}"


class Settings(BaseSettings):
    """Environment-backed configuration. Every field has a development default."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # "" means unset; validate_secret_key replaces it or refuses to start.
    secret_key: str = ""
    database_url: str = _DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # Session tokens
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    # Staff sessions are short: expiry is the only invalidation mechanism.
    staff_token_expire_seconds: int = Field(default=3600, gt=0)
    client_token_expire_seconds: int = Field(default=30 * 24 * 3600, gt=0)

    # ------------------------------------------------------------------
    # Phone verification codes
    # ------------------------------------------------------------------

    code_length: int = Field(default=4, ge=4, le=8)
    code_ttl_seconds: int = Field(default=300, gt=0)
    # Wrong guesses a code survives; the last one deletes it.
    code_max_attempts: int = Field(default=5, ge=1, le=20)

    # ------------------------------------------------------------------
    # TOTP second factor
    # ------------------------------------------------------------------

    totp_issuer: str = "Gatehouse"
    totp_step_seconds: int = Field(default=30, gt=0)
    totp_digits: int = Field(default=6, ge=6, le=8)
    # Number of adjacent time steps accepted on each side of the current one.
    totp_valid_window: int = Field(default=1, ge=0, le=3)

    # ------------------------------------------------------------------
    # SMS delivery
    # ------------------------------------------------------------------

    sms_gateway: Literal["console", "smsaero"] = "console"
    smsaero_email: str = ""
    smsaero_api_key: str = ""
    smsaero_sign: str = "SMS Aero"

    # ------------------------------------------------------------------
    # HTTP boundary
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    sms_rate_limit: str = "5/minute"
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost", "testserver"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Generate a throwaway key in DEBUG, otherwise require one [M6, M7]."""
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("SECRET_KEY not set; generated a temporary key. Tokens die with this process.")
            else:
                raise ValueError("SECRET_KEY is required unless DEBUG=true.")
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self

    @model_validator(mode="after")
    def validate_sms_gateway(self) -> "Settings":
        """The console gateway writes codes to the log; never allow it in production."""
        if self.sms_gateway == "console" and not self.debug:
            raise ValueError("SMS_GATEWAY=console is only allowed with DEBUG=true.")
        if self.sms_gateway == "smsaero" and not (self.smsaero_email and self.smsaero_api_key):
            raise ValueError("SMSAERO_EMAIL and SMSAERO_API_KEY are required when SMS_GATEWAY=smsaero.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Process-wide Settings. Tests that change the environment call get_settings.cache_clear()."""
    return Settings()
