"""Two-factor enrollment, login challenges and recovery codes.

TOTP enrollment is a two-step commit: setup issues a short-lived enrollment
credential carrying the pending secret, and verification only consumes it
once the authenticator proves it holds that secret.
"""
from __future__ import annotations

import hmac
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

import pyotp
from sqlalchemy import or_, select, update
from sqlalchemy.orm import sessionmaker

from credlife.config import settings
from credlife.database import SessionLocal, session_scope
from credlife.models.two_factor import TwoFactorConfigEntry
from credlife.schemas.credentials import Purpose
from credlife.schemas.errors import (
    CredentialError,
    DeliveryError,
    IncorrectPassword,
    InvalidOrExpired,
)
from credlife.services.audit import TWO_FA_ACTIONS, AuditEvent, AuditLog, audit_log
from credlife.services.codes import normalize_otp
from credlife.services.credentials import CredentialManager, credential_manager
from credlife.services.sms import SmsSender, build_otp_body, mask_phone, normalize_e164, sms_sender
from credlife.services.users import UserStore, user_store

LOGGER = logging.getLogger(__name__)

MAX_AUDIT_PAGE = 50


class TwoFactorStateError(CredentialError):
    pass


@dataclass(frozen=True)
class TwoFactorStatus:
    is_enabled: bool
    method: Optional[str] = None
    phone_number: Optional[str] = None


@dataclass(frozen=True)
class TotpSetup:
    enrollment_token: str
    secret: str
    otpauth_url: str
    expires_at: datetime


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TwoFactorConfigStore:
    def __init__(
        self,
        session_factory: sessionmaker | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._session_factory = session_factory or SessionLocal
        self._clock = clock

    def _get(self, session, user_id: int) -> Optional[TwoFactorConfigEntry]:
        return session.execute(
            select(TwoFactorConfigEntry).where(TwoFactorConfigEntry.user_id == user_id)
        ).scalar_one_or_none()

    def load(self, user_id: int) -> Optional[dict]:
        with session_scope(self._session_factory) as session:
            entry = self._get(session, user_id)
            if entry is None:
                return None
            return {
                "is_enabled": bool(entry.is_enabled),
                "method": entry.method,
                "totp_secret": entry.totp_secret,
                "phone_number": entry.phone_number,
            }

    def enable(
        self,
        user_id: int,
        method: str,
        totp_secret: Optional[str] = None,
        phone_number: Optional[str] = None,
        totp_step: Optional[int] = None,
    ) -> None:
        now = self._clock()
        with session_scope(self._session_factory) as session:
            entry = self._get(session, user_id)
            if entry is None:
                entry = TwoFactorConfigEntry(user_id=user_id)
                session.add(entry)
            entry.is_enabled = True
            entry.method = method
            entry.totp_secret = totp_secret
            entry.phone_number = phone_number
            entry.phone_verified_at = now if phone_number else None
            entry.last_totp_step = totp_step
            entry.updated_at = now

    def disable(self, user_id: int) -> None:
        with session_scope(self._session_factory) as session:
            entry = self._get(session, user_id)
            if entry is None:
                return
            entry.is_enabled = False
            entry.totp_secret = None
            entry.phone_number = None
            entry.phone_verified_at = None
            entry.last_totp_step = None
            entry.updated_at = self._clock()

    def claim_totp_step(self, user_id: int, step: int) -> bool:
        """Conditional update; a time step is accepted at most once per user."""
        with session_scope(self._session_factory) as session:
            result = session.execute(
                update(TwoFactorConfigEntry)
                .where(
                    TwoFactorConfigEntry.user_id == user_id,
                    or_(
                        TwoFactorConfigEntry.last_totp_step.is_(None),
                        TwoFactorConfigEntry.last_totp_step < step,
                    ),
                )
                .values(last_totp_step=step, updated_at=self._clock())
            )
            return result.rowcount > 0


class TwoFactorService:
    def __init__(
        self,
        manager: CredentialManager,
        configs: TwoFactorConfigStore,
        users: UserStore,
        audit: AuditLog,
        sms: SmsSender,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._manager = manager
        self._configs = configs
        self._users = users
        self._audit = audit
        self._sms = sms
        self._clock = clock

    def status(self, user_id: int) -> TwoFactorStatus:
        config = self._configs.load(user_id)
        if config is None:
            return TwoFactorStatus(is_enabled=False)
        return TwoFactorStatus(
            is_enabled=config["is_enabled"],
            method=config["method"],
            phone_number=mask_phone(config["phone_number"]),
        )

    def _require_disabled(self, user_id: int) -> None:
        if self.status(user_id).is_enabled:
            raise TwoFactorStateError("2FA is already enabled")

    def _require_enabled(self, user_id: int) -> dict:
        config = self._configs.load(user_id)
        if not config or not config["is_enabled"]:
            raise TwoFactorStateError("2FA is not enabled")
        return config

    def _reauthenticate(self, user_id: int, password: str) -> None:
        if not password or not self._users.check_password(user_id, password):
            LOGGER.warning("Re-authentication failed user=%s", user_id)
            raise IncorrectPassword()

    def _match_totp_step(self, secret: str, code: str) -> Optional[int]:
        """Returns the time step the code belongs to, or None."""
        code = normalize_otp(code)
        if not secret or not (code.isascii() and code.isdigit()):
            return None
        totp = pyotp.TOTP(secret)
        now = int(self._clock().timestamp())
        window = settings.totp_valid_window
        for offset in range(-window, window + 1):
            if hmac.compare_digest(code, totp.at(now, offset)):
                return now // totp.interval + offset
        return None

    def setup_totp(self, user_id: int, email: str) -> TotpSetup:
        self._require_disabled(user_id)
        secret = pyotp.random_base32()
        otpauth_url = pyotp.TOTP(secret).provisioning_uri(
            name=email, issuer_name=settings.app_name
        )
        issued = self._manager.issue(
            user_id, Purpose.TOTP_ENROLL, {"totp_secret": secret}
        )
        return TotpSetup(
            enrollment_token=issued.secret,
            secret=secret,
            otpauth_url=otpauth_url,
            expires_at=issued.credential.expires_at,
        )

    def verify_totp(
        self,
        user_id: int,
        enrollment_token: str,
        code: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> list[str]:
        self._require_disabled(user_id)
        credential = self._manager.validate(
            Purpose.TOTP_ENROLL, enrollment_token, identity_id=user_id
        )
        secret = credential.metadata.get("totp_secret")
        step = self._match_totp_step(secret, code)
        if step is None:
            self._manager.record_failure(user_id, Purpose.TOTP_ENROLL, "bad_totp")
            raise InvalidOrExpired("Invalid or expired code. Please try again.")
        self._manager.consume(credential.id)
        self._configs.enable(user_id, "totp", totp_secret=secret, totp_step=step)
        return self._finish_enrollment(user_id, "totp", ip_address, user_agent)

    def enroll_sms(self, user_id: int, phone_number: str) -> str:
        phone = normalize_e164(phone_number)
        self._require_disabled(user_id)
        if not self._sms.configured:
            raise DeliveryError(
                "SMS verification is not configured. Please use the authenticator app instead.",
                provider="twilio",
            )
        issued = self._manager.issue(
            user_id, Purpose.SMS_ENROLL, {"phone_number": phone}
        )
        self._send_code(user_id, Purpose.SMS_ENROLL, phone, issued.secret)
        return phone

    def verify_sms(
        self,
        user_id: int,
        code: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> list[str]:
        self._require_disabled(user_id)
        credential = self._manager.redeem(
            Purpose.SMS_ENROLL, normalize_otp(code), identity_id=user_id
        )
        self._configs.enable(
            user_id, "sms", phone_number=credential.metadata.get("phone_number")
        )
        return self._finish_enrollment(user_id, "sms", ip_address, user_agent)

    def _send_code(self, user_id: int, purpose: Purpose, phone: str, code: str) -> None:
        ttl_minutes = int(self._manager.ttl_for(purpose).total_seconds() // 60)
        try:
            self._sms.send(phone, build_otp_body(code, ttl_minutes))
        except DeliveryError:
            # An undelivered code must not stay redeemable.
            self._manager.revoke_all(user_id, purpose)
            raise

    def _finish_enrollment(
        self,
        user_id: int,
        method: str,
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> list[str]:
        recovery_codes = self._manager.issue_recovery_codes(user_id)
        self._audit.record(
            user_id,
            "2fa_enrolled",
            {"method": method, "ip_address": ip_address, "user_agent": user_agent},
        )
        return recovery_codes

    def regenerate_recovery_codes(
        self,
        user_id: int,
        password: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> list[str]:
        self._reauthenticate(user_id, password)
        self._require_enabled(user_id)
        recovery_codes = self._manager.issue_recovery_codes(user_id)
        self._audit.record(
            user_id,
            "2fa_recovery_codes_regenerated",
            {"ip_address": ip_address, "user_agent": user_agent},
        )
        return recovery_codes

    def disable(
        self,
        user_id: int,
        password: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        self._reauthenticate(user_id, password)
        self._require_enabled(user_id)
        self._configs.disable(user_id)
        for purpose in (
            Purpose.RECOVERY_CODE,
            Purpose.SMS_ENROLL,
            Purpose.SMS_LOGIN,
            Purpose.TOTP_ENROLL,
        ):
            self._manager.revoke_all(user_id, purpose)
        self._audit.record(
            user_id, "2fa_disabled", {"ip_address": ip_address, "user_agent": user_agent}
        )

    def audit_events(self, user_id: int, limit: int = 20, offset: int = 0) -> list[AuditEvent]:
        return self._audit.list_events(
            user_id,
            actions=TWO_FA_ACTIONS,
            limit=max(1, min(limit, MAX_AUDIT_PAGE)),
            offset=max(offset, 0),
        )

    def start_login_challenge(self, user_id: int) -> Optional[str]:
        """Returns the second-factor method, or None when 2FA is off."""
        config = self._configs.load(user_id)
        if not config or not config["is_enabled"]:
            return None
        if config["method"] == "sms":
            phone = config["phone_number"]
            issued = self._manager.issue(user_id, Purpose.SMS_LOGIN, {"phone_number": phone})
            self._send_code(user_id, Purpose.SMS_LOGIN, phone, issued.secret)
        return config["method"]

    def complete_login_challenge(
        self,
        user_id: int,
        code: Optional[str] = None,
        recovery_code: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        config = self._require_enabled(user_id)
        if recovery_code:
            self._manager.redeem(Purpose.RECOVERY_CODE, recovery_code, identity_id=user_id)
            self._audit.record(
                user_id,
                "2fa_recovery_code_used",
                {"ip_address": ip_address, "user_agent": user_agent},
            )
            return
        if not code:
            raise InvalidOrExpired("A verification code is required")
        if config["method"] == "sms":
            self._manager.redeem(Purpose.SMS_LOGIN, normalize_otp(code), identity_id=user_id)
            return
        self._manager.check_verify_rate(user_id, Purpose.TOTP_LOGIN)
        step = self._match_totp_step(config["totp_secret"] or "", code)
        if step is None:
            self._manager.record_failure(user_id, Purpose.TOTP_LOGIN, "bad_totp")
            raise InvalidOrExpired("Invalid or expired code. Please try again.")
        if not self._configs.claim_totp_step(user_id, step):
            LOGGER.warning("Replayed authenticator code user=%s step=%s", user_id, step)
            self._manager.record_failure(user_id, Purpose.TOTP_LOGIN, "replayed_totp")
            raise InvalidOrExpired("Invalid or expired code. Please try again.")


two_factor_service = TwoFactorService(
    credential_manager,
    TwoFactorConfigStore(),
    user_store,
    audit_log,
    sms_sender,
)
