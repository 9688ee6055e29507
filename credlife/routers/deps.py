import logging
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status

from credlife.schemas.errors import (
    AlreadyUsed,
    CredentialError,
    DeliveryError,
    IncorrectPassword,
    InvalidOrExpired,
    PersistenceError,
    RateLimitExceeded,
)
from credlife.services.audit import AuditLog, audit_log
from credlife.services.email_verification import (
    EmailVerificationFlow,
    email_verification_flow,
)
from credlife.services.password_reset import PasswordResetFlow, password_reset_flow
from credlife.services.sessions import SessionStore, session_store
from credlife.services.tokens import AccessTokenData, TokenError, decode_access_token
from credlife.services.two_factor import (
    TwoFactorService,
    TwoFactorStateError,
    two_factor_service,
)
from credlife.services.users import UserStore, user_store

LOGGER = logging.getLogger(__name__)


def get_session_store() -> SessionStore:
    return session_store


def get_user_store() -> UserStore:
    return user_store


def get_audit_log() -> AuditLog:
    return audit_log


def get_password_reset_flow() -> PasswordResetFlow:
    return password_reset_flow


def get_email_verification_flow() -> EmailVerificationFlow:
    return email_verification_flow


def get_two_factor_service() -> TwoFactorService:
    return two_factor_service


def client_meta(request: Request) -> tuple[Optional[str], Optional[str]]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        ip_address = forwarded.split(",")[0].strip()
    else:
        ip_address = request.client.host if request.client else None
    return ip_address, request.headers.get("user-agent")


def _bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing Authorization header",
        )
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid Authorization header",
        )
    return token


def get_current_session(
    authorization: str | None = Header(default=None),
    sessions: SessionStore = Depends(get_session_store),
) -> AccessTokenData:
    token = _bearer_token(authorization)
    try:
        access_data = decode_access_token(token)
    except TokenError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
        ) from exc
    user_id = sessions.get_user_id(access_data.session_id)
    if user_id is None or user_id != access_data.user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid session token",
        )
    return access_data


def get_current_user_id(access_data: AccessTokenData = Depends(get_current_session)) -> int:
    return access_data.user_id


def credential_http_error(
    exc: Exception,
    invalid_detail: str = "Invalid or expired code. Please try again.",
    used_detail: Optional[str] = None,
) -> HTTPException:
    """Map a credential failure to the response a client may see.

    ``used_detail`` is given only by flows where telling a replay apart is
    safe; elsewhere an already-used secret reads as invalid.
    """
    if isinstance(exc, RateLimitExceeded):
        return HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many attempts. Please try again later.",
            headers={"Retry-After": str(exc.retry_after)},
        )
    if isinstance(exc, AlreadyUsed):
        if used_detail:
            return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=used_detail)
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=invalid_detail)
    if isinstance(exc, InvalidOrExpired):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=invalid_detail)
    if isinstance(exc, IncorrectPassword):
        return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc))
    if isinstance(exc, TwoFactorStateError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if isinstance(exc, DeliveryError):
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))
    if isinstance(exc, PersistenceError):
        LOGGER.error("Credential store failure: %s", exc)
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service temporarily unavailable",
        )
    if isinstance(exc, CredentialError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="Internal server error",
    )
