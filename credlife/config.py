import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv(override=True)


def _env_bool(name: str, default: bool = False) -> bool:
    raw_value = os.getenv(name)
    if raw_value is None:
        return default
    return raw_value.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw_value = os.getenv(name)
    if raw_value is None or not raw_value.strip():
        return default
    return int(raw_value)


@dataclass(frozen=True)
class Settings:
    app_name: str = os.getenv("APP_NAME", "Archject")
    app_url: str = os.getenv("APP_URL", os.getenv("SITE_URL", "http://localhost:5173"))
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()
    cors_origins: str = os.getenv("CORS_ORIGINS", "http://localhost:5173")

    jwt_secret: str = os.getenv("JWT_SECRET", "")
    jwt_algorithm: str = os.getenv("ALGORITHM", "HS256")
    access_token_expire_minutes: int = _env_int("ACCESS_TOKEN_EXPIRE_MINUTES", 15)
    mfa_token_expire_minutes: int = _env_int("MFA_TOKEN_EXPIRE_MINUTES", 5)
    session_ttl_seconds: int = _env_int("SESSION_TTL_SECONDS", 86400)

    credential_hash_key: str = os.getenv("CREDENTIAL_HASH_KEY", "")
    otp_length: int = _env_int("OTP_LENGTH", 6)
    recovery_code_count: int = _env_int("RECOVERY_CODE_COUNT", 10)
    recovery_code_length: int = _env_int("RECOVERY_CODE_LENGTH", 10)
    recovery_code_bcrypt_rounds: int = _env_int("RECOVERY_CODE_BCRYPT_ROUNDS", 12)
    password_bcrypt_rounds: int = _env_int("PASSWORD_BCRYPT_ROUNDS", 12)
    totp_valid_window: int = _env_int("TOTP_VALID_WINDOW", 1)

    password_reset_ttl_minutes: int = _env_int("PASSWORD_RESET_TTL_MINUTES", 60)
    email_verify_ttl_hours: int = _env_int("EMAIL_VERIFY_TTL_HOURS", 24)
    sms_otp_ttl_minutes: int = _env_int("SMS_OTP_TTL_MINUTES", 10)
    totp_enroll_ttl_minutes: int = _env_int("TOTP_ENROLL_TTL_MINUTES", 15)

    rate_limit_enabled: bool = _env_bool("RATE_LIMIT_ENABLED", True)
    sms_send_max: int = _env_int("SMS_SEND_MAX", 5)
    sms_send_window_minutes: int = _env_int("SMS_SEND_WINDOW_MINUTES", 60)
    totp_setup_max: int = _env_int("TOTP_SETUP_MAX", 5)
    totp_setup_window_minutes: int = _env_int("TOTP_SETUP_WINDOW_MINUTES", 60)
    password_reset_max: int = _env_int("PASSWORD_RESET_MAX", 5)
    password_reset_window_minutes: int = _env_int("PASSWORD_RESET_WINDOW_MINUTES", 60)
    email_verify_max: int = _env_int("EMAIL_VERIFY_MAX", 3)
    email_verify_window_minutes: int = _env_int("EMAIL_VERIFY_WINDOW_MINUTES", 1440)
    email_verify_cooldown_minutes: int = _env_int("EMAIL_VERIFY_COOLDOWN_MINUTES", 15)
    otp_verify_max: int = _env_int("OTP_VERIFY_MAX", 10)
    otp_verify_window_minutes: int = _env_int("OTP_VERIFY_WINDOW_MINUTES", 60)

    delivery_timeout_seconds: int = _env_int("DELIVERY_TIMEOUT_SECONDS", 10)
    sendgrid_api_key: str = os.getenv("SENDGRID_API_KEY", "")
    sendgrid_from_email: str = os.getenv("SENDGRID_FROM_EMAIL", "noreply@archject.com")
    sendgrid_from_name: str = os.getenv("SENDGRID_FROM_NAME", "Archject")
    twilio_account_sid: str = os.getenv("TWILIO_ACCOUNT_SID", "")
    twilio_auth_token: str = os.getenv("TWILIO_AUTH_TOKEN", "")
    twilio_phone_number: str = os.getenv(
        "TWILIO_PHONE_NUMBER", os.getenv("PHONE_NUMBER", "")
    )
    default_country_code: str = os.getenv("DEFAULT_COUNTRY_CODE", "+1")


settings = Settings()
