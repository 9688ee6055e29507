from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from credlife.routers.deps import (
    client_meta,
    credential_http_error,
    get_current_user_id,
    get_two_factor_service,
    get_user_store,
)
from credlife.schemas.auth import MessageResponse
from credlife.schemas.errors import CredentialError, DeliveryError
from credlife.schemas.two_factor import (
    AuditEventResponse,
    AuditEventsResponse,
    PasswordConfirmRequest,
    RecoveryCodesResponse,
    SmsEnrollRequest,
    SmsEnrollResponse,
    SmsVerifyRequest,
    TotpSetupResponse,
    TotpVerifyRequest,
    TwoFactorStatusResponse,
)
from credlife.services.sms import mask_phone
from credlife.services.two_factor import MAX_AUDIT_PAGE, TwoFactorService
from credlife.services.users import UserStore

router = APIRouter(prefix="/2fa", tags=["2fa"])

SAVE_CODES_MESSAGE = "Two-factor authentication enabled. Save your recovery codes somewhere safe."


@router.get("/status", response_model=TwoFactorStatusResponse)
def get_status(
    user_id: int = Depends(get_current_user_id),
    two_factor: TwoFactorService = Depends(get_two_factor_service),
) -> TwoFactorStatusResponse:
    result = two_factor.status(user_id)
    return TwoFactorStatusResponse(
        is_enabled=result.is_enabled,
        method=result.method,
        phone_number=result.phone_number,
    )


@router.post("/totp/setup", response_model=TotpSetupResponse)
def setup_totp(
    user_id: int = Depends(get_current_user_id),
    users: UserStore = Depends(get_user_store),
    two_factor: TwoFactorService = Depends(get_two_factor_service),
) -> TotpSetupResponse:
    user = users.get_user(user_id)
    if user is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    try:
        setup = two_factor.setup_totp(user_id, user.email)
    except CredentialError as exc:
        raise credential_http_error(exc) from exc
    return TotpSetupResponse(
        enrollment_token=setup.enrollment_token,
        secret=setup.secret,
        otpauth_url=setup.otpauth_url,
        expires_at=setup.expires_at,
    )


@router.post("/totp/verify", response_model=RecoveryCodesResponse)
def verify_totp(
    payload: TotpVerifyRequest,
    request: Request,
    user_id: int = Depends(get_current_user_id),
    two_factor: TwoFactorService = Depends(get_two_factor_service),
) -> RecoveryCodesResponse:
    ip_address, user_agent = client_meta(request)
    try:
        recovery_codes = two_factor.verify_totp(
            user_id, payload.enrollment_token, payload.code, ip_address, user_agent
        )
    except CredentialError as exc:
        raise credential_http_error(
            exc, used_detail="This setup session was already completed"
        ) from exc
    return RecoveryCodesResponse(message=SAVE_CODES_MESSAGE, recovery_codes=recovery_codes)


@router.post("/sms/enroll", response_model=SmsEnrollResponse)
def enroll_sms(
    payload: SmsEnrollRequest,
    user_id: int = Depends(get_current_user_id),
    two_factor: TwoFactorService = Depends(get_two_factor_service),
) -> SmsEnrollResponse:
    try:
        phone = two_factor.enroll_sms(user_id, payload.phone_number)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc
    except (CredentialError, DeliveryError) as exc:
        raise credential_http_error(exc) from exc
    return SmsEnrollResponse(message="Verification code sent", phone_number=mask_phone(phone))


@router.post("/sms/verify", response_model=RecoveryCodesResponse)
def verify_sms(
    payload: SmsVerifyRequest,
    request: Request,
    user_id: int = Depends(get_current_user_id),
    two_factor: TwoFactorService = Depends(get_two_factor_service),
) -> RecoveryCodesResponse:
    ip_address, user_agent = client_meta(request)
    try:
        recovery_codes = two_factor.verify_sms(user_id, payload.code, ip_address, user_agent)
    except CredentialError as exc:
        raise credential_http_error(exc, used_detail="This code has already been used") from exc
    return RecoveryCodesResponse(message=SAVE_CODES_MESSAGE, recovery_codes=recovery_codes)


@router.post("/recovery-codes/regenerate", response_model=RecoveryCodesResponse)
def regenerate_recovery_codes(
    payload: PasswordConfirmRequest,
    request: Request,
    user_id: int = Depends(get_current_user_id),
    two_factor: TwoFactorService = Depends(get_two_factor_service),
) -> RecoveryCodesResponse:
    ip_address, user_agent = client_meta(request)
    try:
        recovery_codes = two_factor.regenerate_recovery_codes(
            user_id, payload.password, ip_address, user_agent
        )
    except CredentialError as exc:
        raise credential_http_error(exc) from exc
    return RecoveryCodesResponse(
        message="New recovery codes generated. Previous codes no longer work.",
        recovery_codes=recovery_codes,
    )


@router.post("/disable", response_model=MessageResponse)
def disable(
    payload: PasswordConfirmRequest,
    request: Request,
    user_id: int = Depends(get_current_user_id),
    two_factor: TwoFactorService = Depends(get_two_factor_service),
) -> MessageResponse:
    ip_address, user_agent = client_meta(request)
    try:
        two_factor.disable(user_id, payload.password, ip_address, user_agent)
    except CredentialError as exc:
        raise credential_http_error(exc) from exc
    return MessageResponse(message="Two-factor authentication disabled")


@router.get("/audit", response_model=AuditEventsResponse)
def audit(
    limit: int = Query(default=20, ge=1),
    offset: int = Query(default=0, ge=0),
    user_id: int = Depends(get_current_user_id),
    two_factor: TwoFactorService = Depends(get_two_factor_service),
) -> AuditEventsResponse:
    limit = min(limit, MAX_AUDIT_PAGE)
    events = two_factor.audit_events(user_id, limit=limit, offset=offset)
    return AuditEventsResponse(
        events=[
            AuditEventResponse(
                id=event.id,
                action=event.action,
                details=event.details,
                created_at=event.created_at,
            )
            for event in events
        ],
        limit=limit,
        offset=offset,
    )
