from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class Purpose(str, Enum):
    PASSWORD_RESET = "password_reset"
    EMAIL_VERIFY = "email_verify"
    SMS_ENROLL = "sms_enroll"
    SMS_LOGIN = "sms_login"
    TOTP_ENROLL = "totp_enroll"
    RECOVERY_CODE = "recovery_code"
    # Attempt log only: TOTP login codes are derived from the shared secret.
    TOTP_LOGIN = "totp_login"

    @property
    def uses_token(self) -> bool:
        return self in TOKEN_PURPOSES

    @property
    def binds_identity(self) -> bool:
        """Link purposes are looked up before the identity is known."""
        return self not in LINK_PURPOSES

    @property
    def issuable(self) -> bool:
        return self not in (Purpose.RECOVERY_CODE, Purpose.TOTP_LOGIN)


LINK_PURPOSES = frozenset({Purpose.PASSWORD_RESET, Purpose.EMAIL_VERIFY})
TOKEN_PURPOSES = LINK_PURPOSES | {Purpose.TOTP_ENROLL}


class AttemptKind(str, Enum):
    ISSUE = "issue"
    VERIFY = "verify"


@dataclass(frozen=True)
class Credential:
    id: int
    identity_id: int
    purpose: Purpose
    created_at: datetime
    expires_at: Optional[datetime]
    used_at: Optional[datetime]
    metadata: dict[str, Any] = field(default_factory=dict)

    def is_consumable(self, now: datetime) -> bool:
        if self.used_at is not None:
            return False
        return self.expires_at is None or now < self.expires_at


@dataclass(frozen=True)
class IssuedSecret:
    """Plaintext handed back to the caller for out-of-band delivery only."""

    secret: str = field(repr=False)
    credential: Credential
