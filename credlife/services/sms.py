from __future__ import annotations

import base64
import logging
import re
from typing import Optional
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from credlife.config import settings
from credlife.schemas.errors import DeliveryError

LOGGER = logging.getLogger(__name__)

E164_PATTERN = re.compile(r"^\+[1-9]\d{1,14}$")


def normalize_e164(phone_number: str, default_country_code: Optional[str] = None) -> str:
    raw = phone_number.strip()
    digits = re.sub(r"\D", "", raw)
    if not digits:
        raise ValueError("Phone number is missing")
    if len(digits) == 10 and not raw.startswith("+"):
        country = re.sub(r"\D", "", default_country_code or settings.default_country_code)
        if not country:
            raise ValueError("Default country code is not configured")
        digits = f"{country}{digits}"
    candidate = f"+{digits}"
    if not E164_PATTERN.match(candidate):
        raise ValueError(
            "Please enter a valid phone number in E.164 format (e.g. +1234567890)"
        )
    return candidate


def mask_phone(phone_number: Optional[str]) -> Optional[str]:
    if not phone_number:
        return None
    return f"***{phone_number[-4:]}" if len(phone_number) > 4 else "****"


class SmsSender:
    def __init__(
        self,
        account_sid: str = settings.twilio_account_sid,
        auth_token: str = settings.twilio_auth_token,
        from_phone: str = settings.twilio_phone_number,
        timeout: int = settings.delivery_timeout_seconds,
    ) -> None:
        self._account_sid = account_sid
        self._auth_token = auth_token
        self._from_phone = from_phone
        self._timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self._account_sid and self._auth_token and self._from_phone)

    def send(self, to: str, body: str) -> None:
        if not self.configured:
            raise DeliveryError("SMS delivery is not configured", provider="twilio")

        to_number = normalize_e164(to)
        from_number = normalize_e164(self._from_phone)
        LOGGER.info("Sending SMS to=%s from=%s", mask_phone(to_number), from_number)
        endpoint = (
            "https://api.twilio.com/2010-04-01/Accounts/"
            f"{self._account_sid}/Messages.json"
        )
        payload = urlencode({"To": to_number, "From": from_number, "Body": body}).encode(
            "utf-8"
        )
        token = base64.b64encode(
            f"{self._account_sid}:{self._auth_token}".encode("utf-8")
        ).decode("ascii")
        request = Request(
            endpoint,
            data=payload,
            headers={
                "Authorization": f"Basic {token}",
                "Content-Type": "application/x-www-form-urlencoded",
            },
            method="POST",
        )
        try:
            with urlopen(request, timeout=self._timeout) as response:
                response.read()
        except HTTPError as exc:
            error_body = exc.read().decode("utf-8", errors="replace")
            LOGGER.error(
                "Twilio API error to=%s status=%s response=%s",
                mask_phone(to_number),
                exc.code,
                error_body,
            )
            raise DeliveryError("Failed to send SMS", provider="twilio") from exc
        except (URLError, TimeoutError) as exc:
            LOGGER.error("Twilio API unreachable: %s", exc)
            raise DeliveryError("Failed to reach Twilio API", provider="twilio") from exc


def build_otp_body(code: str, ttl_minutes: int, app_name: str = settings.app_name) -> str:
    minutes = max(1, ttl_minutes)
    return f"Your {app_name} verification code is: {code}. Valid for {minutes} minutes."


sms_sender = SmsSender()
