from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from credlife.config import settings
from credlife.schemas.credentials import Purpose
from credlife.schemas.errors import DeliveryError
from credlife.services.audit import AuditLog, audit_log
from credlife.services.credentials import CredentialManager, credential_manager
from credlife.services.email import (
    EmailSender,
    build_link,
    build_verification_body,
    email_sender,
)
from credlife.services.users import UserRecord, UserStore, user_store

LOGGER = logging.getLogger(__name__)

VERIFY_PATH = "auth/verify-email"


@dataclass(frozen=True)
class VerificationResult:
    already_verified: bool = False


class EmailVerificationFlow:
    def __init__(
        self,
        manager: CredentialManager,
        users: UserStore,
        audit: AuditLog,
        mailer: EmailSender,
    ) -> None:
        self._manager = manager
        self._users = users
        self._audit = audit
        self._mailer = mailer

    def send_verification(
        self,
        email: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> VerificationResult:
        user = self._users.find_by_email(email)
        if user is None:
            LOGGER.info("Verification requested for an unknown address")
            return VerificationResult()
        return self.send_for_user(user, ip_address, user_agent)

    def send_for_user(
        self,
        user: UserRecord,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> VerificationResult:
        if user.email_verified:
            return VerificationResult(already_verified=True)

        issued = self._manager.issue(user.id, Purpose.EMAIL_VERIFY)
        self._audit.record(
            user.id,
            "email_verification_sent",
            {"ip_address": ip_address, "user_agent": user_agent},
        )
        ttl_hours = int(self._manager.ttl_for(Purpose.EMAIL_VERIFY).total_seconds() // 3600)
        link = build_link(VERIFY_PATH, issued.secret)
        try:
            self._mailer.send(
                user.email,
                f"Verify your {settings.app_name} email address",
                build_verification_body(link, ttl_hours),
            )
        except DeliveryError as exc:
            LOGGER.error("Verification email failed user=%s: %s", user.id, exc)
        return VerificationResult()

    def verify_email(self, token: str) -> int:
        credential = self._manager.redeem(Purpose.EMAIL_VERIFY, token)
        if self._users.mark_email_verified(credential.identity_id):
            self._audit.record(credential.identity_id, "email_verified")
        return credential.identity_id


email_verification_flow = EmailVerificationFlow(
    credential_manager, user_store, audit_log, email_sender
)
