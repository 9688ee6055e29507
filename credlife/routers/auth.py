import logging
from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, Request, status

from credlife.config import settings
from credlife.routers.deps import (
    client_meta,
    credential_http_error,
    get_audit_log,
    get_current_session,
    get_current_user_id,
    get_email_verification_flow,
    get_password_reset_flow,
    get_session_store,
    get_two_factor_service,
    get_user_store,
)
from credlife.schemas.auth import (
    ChangePasswordRequest,
    EmailRequest,
    LoginRequest,
    LoginResponse,
    LoginTwoFactorRequest,
    MessageResponse,
    RegisterRequest,
    ResetPasswordRequest,
    ResetTokenResponse,
    RevokeSessionsResponse,
    SessionResponse,
    SessionsResponse,
    TokenRequest,
    TokenResponse,
    UserResponse,
)
from credlife.schemas.errors import CredentialError, DeliveryError, PersistenceError, RateLimitExceeded
from credlife.services.audit import AuditLog
from credlife.services.email_verification import EmailVerificationFlow
from credlife.services.password_reset import PasswordResetFlow
from credlife.services.sessions import SessionStore
from credlife.services.tokens import (
    AccessTokenData,
    TokenError,
    create_access_token,
    create_mfa_token,
    decode_mfa_token,
)
from credlife.services.two_factor import TwoFactorService
from credlife.services.users import UserStore

LOGGER = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])

RESET_REQUESTED_MESSAGE = (
    "If an account exists with that email, a password reset link has been sent."
)
VERIFICATION_SENT_MESSAGE = (
    "If an account exists with that email, a verification link has been sent."
)


def _issue_tokens(sessions: SessionStore, user_id: int, request: Request) -> TokenResponse:
    ip_address, user_agent = client_meta(request)
    session_id = sessions.create_session(user_id, ip_address, user_agent)
    try:
        access_token = create_access_token(user_id, session_id)
    except TokenError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(exc),
        ) from exc
    return TokenResponse(
        access_token=access_token,
        token_type="bearer",
        expires_in_seconds=settings.access_token_expire_minutes * 60,
    )


@router.post("/register", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
def register(
    payload: RegisterRequest,
    request: Request,
    users: UserStore = Depends(get_user_store),
    verification: EmailVerificationFlow = Depends(get_email_verification_flow),
) -> UserResponse:
    try:
        user = users.create_user(payload.email, payload.password, payload.full_name)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc
    ip_address, user_agent = client_meta(request)
    try:
        verification.send_for_user(user, ip_address, user_agent)
    except CredentialError as exc:
        LOGGER.warning("Verification email not sent on signup user=%s: %s", user.id, exc)
    return UserResponse(**asdict(user))


@router.get("/me", response_model=UserResponse)
def me(
    user_id: int = Depends(get_current_user_id),
    users: UserStore = Depends(get_user_store),
) -> UserResponse:
    user = users.get_user(user_id)
    if user is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return UserResponse(**asdict(user))


@router.post("/login", response_model=LoginResponse, response_model_exclude_none=True)
def login(
    payload: LoginRequest,
    request: Request,
    users: UserStore = Depends(get_user_store),
    sessions: SessionStore = Depends(get_session_store),
    two_factor: TwoFactorService = Depends(get_two_factor_service),
) -> LoginResponse:
    user = users.authenticate(payload.email, payload.password)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password",
        )
    try:
        method = two_factor.start_login_challenge(user.id)
    except (CredentialError, DeliveryError) as exc:
        raise credential_http_error(exc) from exc
    if method is not None:
        try:
            mfa_token = create_mfa_token(user.id, method)
        except TokenError as exc:
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail=str(exc),
            ) from exc
        return LoginResponse(requires_2fa=True, method=method, mfa_token=mfa_token)
    tokens = _issue_tokens(sessions, user.id, request)
    return LoginResponse(requires_2fa=False, **tokens.model_dump())


@router.post("/login/2fa", response_model=TokenResponse)
def login_two_factor(
    payload: LoginTwoFactorRequest,
    request: Request,
    sessions: SessionStore = Depends(get_session_store),
    two_factor: TwoFactorService = Depends(get_two_factor_service),
) -> TokenResponse:
    try:
        challenge = decode_mfa_token(payload.mfa_token)
    except TokenError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
        ) from exc
    if not payload.code and not payload.recovery_code:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="A verification code or recovery code is required",
        )
    ip_address, user_agent = client_meta(request)
    try:
        two_factor.complete_login_challenge(
            challenge.user_id,
            code=payload.code,
            recovery_code=payload.recovery_code,
            ip_address=ip_address,
            user_agent=user_agent,
        )
    except CredentialError as exc:
        raise credential_http_error(exc) from exc
    return _issue_tokens(sessions, challenge.user_id, request)


@router.post("/logout", response_model=MessageResponse)
def logout(
    access_data: AccessTokenData = Depends(get_current_session),
    sessions: SessionStore = Depends(get_session_store),
) -> MessageResponse:
    revoked = sessions.revoke_session(access_data.session_id)
    if not revoked:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid session token",
        )
    return MessageResponse(message="Logged out")


@router.post("/sessions/revoke-all", response_model=RevokeSessionsResponse)
def revoke_other_sessions(
    access_data: AccessTokenData = Depends(get_current_session),
    sessions: SessionStore = Depends(get_session_store),
) -> RevokeSessionsResponse:
    revoked = sessions.revoke_all(access_data.user_id, keep_token=access_data.session_id)
    return RevokeSessionsResponse(message="Other sessions signed out", revoked=revoked)


@router.get("/sessions", response_model=SessionsResponse)
def list_sessions(
    access_data: AccessTokenData = Depends(get_current_session),
    sessions: SessionStore = Depends(get_session_store),
) -> SessionsResponse:
    records = sessions.list_sessions(access_data.user_id, current_token=access_data.session_id)
    return SessionsResponse(sessions=[SessionResponse(**asdict(record)) for record in records])


@router.delete("/sessions/{session_id}", response_model=MessageResponse)
def revoke_session(
    session_id: int,
    access_data: AccessTokenData = Depends(get_current_session),
    sessions: SessionStore = Depends(get_session_store),
    audit: AuditLog = Depends(get_audit_log),
) -> MessageResponse:
    if not sessions.revoke_by_id(access_data.user_id, session_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
    try:
        audit.record(access_data.user_id, "session_revoked", {"session_id": session_id})
    except PersistenceError as exc:
        raise credential_http_error(exc) from exc
    return MessageResponse(message="Session revoked")


@router.post("/change-password", response_model=RevokeSessionsResponse)
def change_password(
    payload: ChangePasswordRequest,
    request: Request,
    access_data: AccessTokenData = Depends(get_current_session),
    flow: PasswordResetFlow = Depends(get_password_reset_flow),
) -> RevokeSessionsResponse:
    ip_address, user_agent = client_meta(request)
    try:
        revoked = flow.change_password(
            access_data.user_id,
            payload.current_password,
            payload.new_password,
            keep_session=access_data.session_id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
    except CredentialError as exc:
        raise credential_http_error(exc) from exc
    return RevokeSessionsResponse(message="Password changed successfully.", revoked=revoked)


@router.post("/forgot-password", response_model=MessageResponse)
def forgot_password(
    payload: EmailRequest,
    request: Request,
    flow: PasswordResetFlow = Depends(get_password_reset_flow),
) -> MessageResponse:
    ip_address, user_agent = client_meta(request)
    try:
        flow.request_reset(payload.email, ip_address, user_agent)
    except RateLimitExceeded as exc:
        # Same answer as success: a 429 here would confirm the account exists.
        LOGGER.warning("Password reset throttled retry_after=%s", exc.retry_after)
    except PersistenceError as exc:
        raise credential_http_error(exc) from exc
    return MessageResponse(message=RESET_REQUESTED_MESSAGE)


@router.post("/validate-reset-token", response_model=ResetTokenResponse)
def validate_reset_token(
    payload: TokenRequest,
    flow: PasswordResetFlow = Depends(get_password_reset_flow),
) -> ResetTokenResponse:
    try:
        result = flow.check_token(payload.token)
    except CredentialError as exc:
        raise credential_http_error(exc) from exc
    return ResetTokenResponse(valid=result.valid, used=result.used, expires_at=result.expires_at)


@router.post("/reset-password", response_model=MessageResponse)
def reset_password(
    payload: ResetPasswordRequest,
    request: Request,
    flow: PasswordResetFlow = Depends(get_password_reset_flow),
) -> MessageResponse:
    ip_address, user_agent = client_meta(request)
    try:
        flow.reset_password(payload.token, payload.new_password, ip_address, user_agent)
    except CredentialError as exc:
        raise credential_http_error(
            exc,
            invalid_detail="Invalid or expired reset link",
            used_detail="This reset link has already been used",
        ) from exc
    return MessageResponse(message="Password has been reset. Please sign in again.")


@router.post("/send-verification", response_model=MessageResponse)
def send_verification(
    payload: EmailRequest,
    request: Request,
    flow: EmailVerificationFlow = Depends(get_email_verification_flow),
) -> MessageResponse:
    ip_address, user_agent = client_meta(request)
    try:
        flow.send_verification(payload.email, ip_address, user_agent)
    except RateLimitExceeded as exc:
        # Unknown addresses are never throttled, so a 429 would confirm the account.
        LOGGER.warning("Verification resend throttled retry_after=%s", exc.retry_after)
    except CredentialError as exc:
        raise credential_http_error(exc) from exc
    return MessageResponse(message=VERIFICATION_SENT_MESSAGE)


@router.post("/verify-email", response_model=MessageResponse)
def verify_email(
    payload: TokenRequest,
    flow: EmailVerificationFlow = Depends(get_email_verification_flow),
) -> MessageResponse:
    try:
        flow.verify_email(payload.token)
    except CredentialError as exc:
        raise credential_http_error(
            exc,
            invalid_detail="Invalid or expired verification link",
            used_detail="This verification link has already been used",
        ) from exc
    return MessageResponse(message="Email verified")
