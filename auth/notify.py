"""
auth/notify.py -- Notification gateways that deliver phone verification codes.

Contract: send(phone, code) returns None on success and raises DeliveryFailed
on any failure. The verification service treats DeliveryFailed as a hard
failure of issuance and discards the code it just stored.

  SmsAeroGateway -- SMS Aero HTTP API v2 (basic auth, GET /v2/sms/send).
  ConsoleGateway -- logs the code instead of sending it. Settings only allow it
                    with DEBUG=true.
"""

from __future__ import annotations

import logging
import re
from typing import Protocol

import requests

from auth.errors import DeliveryFailed
from core.config import Settings

logger = logging.getLogger("gatehouse.notify")

SMSAERO_SEND_URL = "https://gate.smsaero.ru/v2/sms/send"

_NON_DIGITS = re.compile(r"\D")


class NotificationGateway(Protocol):
    def send(self, phone: str, code: str) -> None: ...


def normalize_phone(phone: str) -> str:
    """Strip everything but digits. Raises ValueError if fewer than 10 remain."""
    digits = _NON_DIGITS.sub("", phone or "")
    if len(digits) < 10:
        raise ValueError("phone number must contain at least 10 digits")
    return digits


def mask_phone(phone: str) -> str:
    """Hide the middle of a phone number for logs and audit detail: 7999***0000."""
    digits = _NON_DIGITS.sub("", phone or "")
    if len(digits) < 8:
        return "***"
    return f"{digits[:4]}***{digits[-4:]}"


class ConsoleGateway:
    def send(self, phone: str, code: str) -> None:
        logger.warning("[DEV MODE] SMS to %s: your code is %s", phone, code)


class SmsAeroGateway:
    """Deliver codes through SMS Aero.

    A requests.Session is held per gateway for connection pooling.
    max_redirects=3 replaces the requests default of 30 -- this is one known
    API, so a long redirect chain can only mean something is wrong.
    """

    def __init__(self, email: str, api_key: str, sign: str = "SMS Aero", timeout: float = 10.0) -> None:
        self._auth = (email, api_key)
        self._sign = sign
        self._timeout = timeout
        self._session = requests.Session()
        self._session.max_redirects = 3

    def send(self, phone: str, code: str) -> None:
        try:
            number = normalize_phone(phone)
        except ValueError as exc:
            raise DeliveryFailed(f"Invalid phone number: {exc}") from exc
        params = {"number": number, "text": f"Your code: {code}", "sign": self._sign}
        try:
            resp = self._session.get(
                SMSAERO_SEND_URL,
                params=params,
                auth=self._auth,
                headers={"Accept": "application/json"},
                timeout=self._timeout,
            )
            resp.raise_for_status()
            payload = resp.json()
        except (requests.RequestException, ValueError) as exc:
            logger.warning("SMS delivery to %s failed: %s", mask_phone(number), exc)
            raise DeliveryFailed() from exc
        if not isinstance(payload, dict) or not payload.get("success"):
            logger.warning("SMS gateway rejected message to %s: %s", mask_phone(number), payload)
            raise DeliveryFailed()
        logger.info("SMS code delivered to %s", mask_phone(number))

    def close(self) -> None:
        self._session.close()


def build_gateway(settings: Settings) -> NotificationGateway:
    """Return the gateway selected by SMS_GATEWAY."""
    if settings.sms_gateway == "smsaero":
        return SmsAeroGateway(settings.smsaero_email, settings.smsaero_api_key, settings.smsaero_sign)
    return ConsoleGateway()
