from __future__ import annotations

import json
import logging
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from credlife.config import settings
from credlife.schemas.errors import DeliveryError

LOGGER = logging.getLogger(__name__)

SENDGRID_SEND_ENDPOINT = "https://api.sendgrid.com/v3/mail/send"


class EmailSender:
    def __init__(
        self,
        api_key: str = settings.sendgrid_api_key,
        from_email: str = settings.sendgrid_from_email,
        from_name: str = settings.sendgrid_from_name,
        timeout: int = settings.delivery_timeout_seconds,
    ) -> None:
        self._api_key = api_key
        self._from_email = from_email
        self._from_name = from_name
        self._timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self._api_key and self._from_email)

    def send(self, to: str, subject: str, body: str) -> None:
        if not self.configured:
            raise DeliveryError("Email delivery is not configured", provider="sendgrid")

        payload = json.dumps(
            {
                "personalizations": [{"to": [{"email": to}]}],
                "from": {"email": self._from_email, "name": self._from_name},
                "subject": subject,
                "content": [{"type": "text/plain", "value": body}],
            }
        ).encode("utf-8")
        request = Request(
            SENDGRID_SEND_ENDPOINT,
            data=payload,
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
            method="POST",
        )
        try:
            with urlopen(request, timeout=self._timeout) as response:
                response.read()
        except HTTPError as exc:
            error_body = exc.read().decode("utf-8", errors="replace")
            LOGGER.error("SendGrid API error status=%s: %s", exc.code, error_body)
            raise DeliveryError("Failed to send email", provider="sendgrid") from exc
        except (URLError, TimeoutError) as exc:
            LOGGER.error("SendGrid API unreachable: %s", exc)
            raise DeliveryError("Failed to reach SendGrid API", provider="sendgrid") from exc


def build_link(path: str, token: str, app_url: str = settings.app_url) -> str:
    return f"{app_url.rstrip('/')}/{path.strip('/')}/{token}"


def build_reset_body(link: str, ttl_minutes: int, app_name: str = settings.app_name) -> str:
    return (
        f"You asked to reset your {app_name} password.\n\n"
        f"Open the link below to choose a new one:\n{link}\n\n"
        f"The link expires in {ttl_minutes} minutes.\n\n"
        "If you did not request this, you can ignore this email."
    )


def build_verification_body(
    link: str, ttl_hours: int, app_name: str = settings.app_name
) -> str:
    return (
        f"Welcome to {app_name}!\n\n"
        f"Please verify your email address by opening the link below:\n{link}\n\n"
        f"The link expires in {ttl_hours} hours.\n\n"
        "If you didn't create an account, you can safely ignore this email."
    )


email_sender = EmailSender()
