"""Issue, validate and consume single-use credentials.

Plaintext secrets leave this module exactly once, as the return value of an
issue call, and are never stored or logged.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Mapping, Optional

from credlife.config import Settings, settings
from credlife.schemas.credentials import AttemptKind, Credential, IssuedSecret, Purpose
from credlife.schemas.errors import (
    AlreadyUsed,
    CredentialExpired,
    CredentialNotFound,
    PersistenceError,
)
from credlife.services import codes
from credlife.services.hashing import hash_recovery_code, hash_secret, verify_recovery_code
from credlife.services.rate_limit import RateLimiter
from credlife.services.store import ConflictError, CredentialStore, NotFound, credential_store

LOGGER = logging.getLogger(__name__)

Clock = Callable[[], datetime]

ISSUE_RETRIES = 3


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def default_ttls(config: Settings = settings) -> dict[Purpose, timedelta]:
    sms_ttl = timedelta(minutes=config.sms_otp_ttl_minutes)
    return {
        Purpose.PASSWORD_RESET: timedelta(minutes=config.password_reset_ttl_minutes),
        Purpose.EMAIL_VERIFY: timedelta(hours=config.email_verify_ttl_hours),
        Purpose.SMS_ENROLL: sms_ttl,
        Purpose.SMS_LOGIN: sms_ttl,
        Purpose.TOTP_ENROLL: timedelta(minutes=config.totp_enroll_ttl_minutes),
    }


class CredentialManager:
    def __init__(
        self,
        store: CredentialStore,
        rate_limiter: Optional[RateLimiter] = None,
        clock: Clock = _utcnow,
        ttls: Optional[Mapping[Purpose, timedelta]] = None,
        otp_length: int = settings.otp_length,
        recovery_code_count: int = settings.recovery_code_count,
        recovery_code_length: int = settings.recovery_code_length,
        recovery_code_rounds: Optional[int] = None,
    ) -> None:
        self._store = store
        self._clock = clock
        self._rate_limiter = rate_limiter or RateLimiter(
            store, clock=clock, enabled=settings.rate_limit_enabled
        )
        self._ttls = dict(default_ttls() if ttls is None else ttls)
        self._otp_length = otp_length
        self._recovery_code_count = recovery_code_count
        self._recovery_code_length = recovery_code_length
        self._recovery_code_rounds = recovery_code_rounds

    def ttl_for(self, purpose: Purpose) -> timedelta:
        return self._ttls[purpose]

    def _generate(self, purpose: Purpose) -> str:
        if purpose.uses_token:
            return codes.generate_link_token()
        return codes.generate_otp(self._otp_length)

    def _digest(self, secret: str, purpose: Purpose, identity_id: Optional[int]) -> str:
        return hash_secret(
            secret, purpose.value, identity_id if purpose.binds_identity else None
        )

    def issue(
        self,
        identity_id: int,
        purpose: Purpose,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> IssuedSecret:
        if not purpose.issuable:
            raise ValueError(f"{purpose.value} credentials are not issued one at a time")
        self._rate_limiter.check(identity_id, purpose, AttemptKind.ISSUE)

        now = self._clock()
        self._store.supersede(identity_id, purpose, now)
        expires_at = now + self.ttl_for(purpose)
        for _ in range(ISSUE_RETRIES):
            secret = self._generate(purpose)
            try:
                credential = self._store.insert(
                    identity_id,
                    purpose,
                    self._digest(secret, purpose, identity_id),
                    created_at=now,
                    expires_at=expires_at,
                    metadata=dict(metadata or {}),
                )
            except ConflictError:
                LOGGER.warning(
                    "Secret collision identity=%s purpose=%s, regenerating",
                    identity_id,
                    purpose.value,
                )
                continue
            break
        else:
            raise PersistenceError("Could not store a unique credential")

        self._store.insert_attempt(identity_id, purpose, AttemptKind.ISSUE, True, now)
        LOGGER.info(
            "Issued credential id=%s identity=%s purpose=%s expires_at=%s",
            credential.id,
            identity_id,
            purpose.value,
            expires_at.isoformat(),
        )
        return IssuedSecret(secret=secret, credential=credential)

    def issue_recovery_codes(
        self, identity_id: int, count: Optional[int] = None
    ) -> list[str]:
        if count is None:
            count = self._recovery_code_count
        if count < 1:
            raise ValueError("At least one recovery code must be issued")
        now = self._clock()
        # A fresh batch retires every outstanding code of the old one.
        self._store.supersede(identity_id, Purpose.RECOVERY_CODE, now)

        plaintexts = codes.generate_recovery_codes(count, self._recovery_code_length)
        for code in plaintexts:
            self._store.insert(
                identity_id,
                Purpose.RECOVERY_CODE,
                hash_recovery_code(code, identity_id, rounds=self._recovery_code_rounds),
                created_at=now,
                expires_at=None,
            )
        self._store.insert_attempt(
            identity_id, Purpose.RECOVERY_CODE, AttemptKind.ISSUE, True, now
        )
        LOGGER.info(
            "Issued %s recovery codes identity=%s", len(plaintexts), identity_id
        )
        return plaintexts

    def revoke_all(self, identity_id: int, purpose: Purpose) -> int:
        return self._store.supersede(identity_id, purpose, self._clock())

    def check_verify_rate(self, identity_id: int, purpose: Purpose) -> None:
        self._rate_limiter.check(identity_id, purpose, AttemptKind.VERIFY)

    def record_failure(
        self, identity_id: Optional[int], purpose: Purpose, reason: str
    ) -> None:
        LOGGER.warning(
            "Credential rejected identity=%s purpose=%s reason=%s",
            identity_id,
            purpose.value,
            reason,
        )
        if identity_id is not None:
            self._store.insert_attempt(
                identity_id, purpose, AttemptKind.VERIFY, False, self._clock()
            )

    def _check_state(self, credential: Credential, identity_id: Optional[int]) -> Credential:
        owner = credential.identity_id if identity_id is None else identity_id
        if credential.used_at is not None:
            self.record_failure(owner, credential.purpose, "used")
            raise AlreadyUsed()
        if credential.expires_at is not None and self._clock() >= credential.expires_at:
            self.record_failure(owner, credential.purpose, "expired")
            raise CredentialExpired()
        return credential

    def validate(
        self,
        purpose: Purpose,
        presented_secret: str,
        identity_id: Optional[int] = None,
    ) -> Credential:
        """Check a presented secret without consuming it."""
        if identity_id is not None:
            self.check_verify_rate(identity_id, purpose)
        if purpose is Purpose.RECOVERY_CODE:
            return self._validate_recovery_code(presented_secret, identity_id)

        secret = (presented_secret or "").strip()
        if not secret:
            self.record_failure(identity_id, purpose, "malformed")
            raise CredentialNotFound()
        if purpose.binds_identity and identity_id is None:
            raise ValueError(f"{purpose.value} validation requires an identity")

        try:
            credential = self._store.find_by_hash(
                purpose, self._digest(secret, purpose, identity_id)
            )
        except NotFound as exc:
            self.record_failure(identity_id, purpose, "not_found")
            raise CredentialNotFound() from exc
        if identity_id is not None and credential.identity_id != identity_id:
            self.record_failure(identity_id, purpose, "identity_mismatch")
            raise CredentialNotFound()
        return self._check_state(credential, identity_id)

    def _validate_recovery_code(
        self, presented_secret: str, identity_id: Optional[int]
    ) -> Credential:
        if identity_id is None:
            raise ValueError("recovery_code validation requires an identity")
        code = codes.normalize_recovery_code(presented_secret or "")
        if not code:
            self.record_failure(identity_id, Purpose.RECOVERY_CODE, "malformed")
            raise CredentialNotFound()
        for credential, stored_hash in self._store.find_for_identity(
            identity_id, Purpose.RECOVERY_CODE
        ):
            if verify_recovery_code(code, identity_id, stored_hash):
                return self._check_state(credential, identity_id)
        self.record_failure(identity_id, Purpose.RECOVERY_CODE, "not_found")
        raise CredentialNotFound()

    def consume(self, credential_id: int) -> Credential:
        try:
            credential = self._store.get(credential_id)
        except NotFound as exc:
            raise CredentialNotFound() from exc
        now = self._clock()
        if not self._store.mark_used(credential_id, now):
            current = self._store.get(credential_id)
            if current.used_at is not None:
                self.record_failure(current.identity_id, current.purpose, "used")
                raise AlreadyUsed()
            self.record_failure(current.identity_id, current.purpose, "expired")
            raise CredentialExpired()
        self._store.insert_attempt(
            credential.identity_id, credential.purpose, AttemptKind.VERIFY, True, now
        )
        LOGGER.info(
            "Consumed credential id=%s identity=%s purpose=%s",
            credential.id,
            credential.identity_id,
            credential.purpose.value,
        )
        return self._store.get(credential_id)

    def redeem(
        self,
        purpose: Purpose,
        presented_secret: str,
        identity_id: Optional[int] = None,
    ) -> Credential:
        credential = self.validate(purpose, presented_secret, identity_id)
        return self.consume(credential.id)


credential_manager = CredentialManager(credential_store)
