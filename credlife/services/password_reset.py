from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from credlife.config import settings
from credlife.schemas.credentials import Purpose
from credlife.schemas.errors import (
    AlreadyUsed,
    DeliveryError,
    IncorrectPassword,
    InvalidOrExpired,
    PersistenceError,
)
from credlife.services.audit import AuditLog, audit_log
from credlife.services.credentials import CredentialManager, credential_manager
from credlife.services.email import (
    EmailSender,
    build_link,
    build_reset_body,
    email_sender,
)
from credlife.services.sessions import SessionStore, session_store
from credlife.services.users import UserStore, user_store

LOGGER = logging.getLogger(__name__)

RESET_PATH = "auth/reset-password"


@dataclass(frozen=True)
class ResetTokenStatus:
    valid: bool
    used: bool = False
    expires_at: Optional[datetime] = None


class PasswordResetFlow:
    def __init__(
        self,
        manager: CredentialManager,
        users: UserStore,
        sessions: SessionStore,
        audit: AuditLog,
        mailer: EmailSender,
    ) -> None:
        self._manager = manager
        self._users = users
        self._sessions = sessions
        self._audit = audit
        self._mailer = mailer

    def request_reset(
        self,
        email: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        """Silent for unknown addresses; callers always answer the same way."""
        user = self._users.find_by_email(email)
        if user is None:
            LOGGER.info("Password reset requested for an unknown address")
            return

        issued = self._manager.issue(user.id, Purpose.PASSWORD_RESET)
        self._audit.record(
            user.id,
            "password_reset_requested",
            {"ip_address": ip_address, "user_agent": user_agent},
        )
        ttl_minutes = int(self._manager.ttl_for(Purpose.PASSWORD_RESET).total_seconds() // 60)
        link = build_link(RESET_PATH, issued.secret)
        try:
            self._mailer.send(
                user.email,
                f"Reset your {settings.app_name} password",
                build_reset_body(link, ttl_minutes),
            )
        except DeliveryError as exc:
            LOGGER.error("Password reset email failed user=%s: %s", user.id, exc)

    def check_token(self, token: str) -> ResetTokenStatus:
        try:
            credential = self._manager.validate(Purpose.PASSWORD_RESET, token)
        except AlreadyUsed:
            return ResetTokenStatus(valid=False, used=True)
        except InvalidOrExpired:
            return ResetTokenStatus(valid=False)
        return ResetTokenStatus(valid=True, expires_at=credential.expires_at)

    def reset_password(
        self,
        token: str,
        new_password: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> int:
        # Consume before touching the password so a replayed link cannot
        # change it a second time.
        credential = self._manager.redeem(Purpose.PASSWORD_RESET, token)
        try:
            self._users.set_password(credential.identity_id, new_password)
        except PersistenceError:
            LOGGER.error(
                "Reset link redeemed but password not updated user=%s",
                credential.identity_id,
            )
            raise
        revoked = self._sessions.revoke_all(credential.identity_id)
        self._audit.record(
            credential.identity_id,
            "password_reset_used",
            {
                "ip_address": ip_address,
                "user_agent": user_agent,
                "sessions_revoked": revoked,
            },
        )
        return credential.identity_id

    def change_password(
        self,
        user_id: int,
        current_password: str,
        new_password: str,
        keep_session: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> int:
        """Re-authenticates, updates the password and signs out other sessions."""
        if not current_password or not self._users.change_password(
            user_id, current_password, new_password
        ):
            LOGGER.warning("Password change refused user=%s", user_id)
            raise IncorrectPassword("Current password is incorrect")
        revoked = self._sessions.revoke_all(user_id, keep_token=keep_session)
        self._audit.record(
            user_id,
            "password_changed",
            {
                "ip_address": ip_address,
                "user_agent": user_agent,
                "sessions_revoked": revoked,
            },
        )
        return revoked


password_reset_flow = PasswordResetFlow(
    credential_manager, user_store, session_store, audit_log, email_sender
)
