from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator


class TwoFactorStatusResponse(BaseModel):
    is_enabled: bool
    method: Optional[str] = None
    phone_number: Optional[str] = None


class TotpSetupResponse(BaseModel):
    enrollment_token: str
    secret: str
    otpauth_url: str
    expires_at: datetime


class TotpVerifyRequest(BaseModel):
    enrollment_token: str = Field(min_length=1, max_length=512)
    code: str = Field(min_length=6, max_length=8)

    @field_validator("code")
    @classmethod
    def normalize_code(cls, value: str) -> str:
        digits = "".join(value.split())
        if not digits.isdigit():
            raise ValueError("Code must be numeric")
        return digits


class SmsEnrollRequest(BaseModel):
    phone_number: str = Field(min_length=7, max_length=20)


class SmsEnrollResponse(BaseModel):
    message: str
    phone_number: str


class SmsVerifyRequest(BaseModel):
    code: str = Field(min_length=4, max_length=10)

    @field_validator("code")
    @classmethod
    def normalize_code(cls, value: str) -> str:
        digits = "".join(value.split())
        if not digits.isdigit():
            raise ValueError("Code must be numeric")
        return digits


class RecoveryCodesResponse(BaseModel):
    message: str
    recovery_codes: list[str]


class PasswordConfirmRequest(BaseModel):
    password: str = Field(min_length=1, max_length=256)


class AuditEventResponse(BaseModel):
    id: int
    action: str
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class AuditEventsResponse(BaseModel):
    events: list[AuditEventResponse]
    limit: int
    offset: int
