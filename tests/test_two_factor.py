import pyotp
import pytest

from credlife.schemas.credentials import Purpose
from credlife.schemas.errors import (
    AlreadyUsed,
    DeliveryError,
    IncorrectPassword,
    InvalidOrExpired,
    RateLimitExceeded,
)
from credlife.services.two_factor import TwoFactorStateError

from conftest import STRONG_PASSWORD


def _totp_code(secret, clock):
    return pyotp.TOTP(secret).at(int(clock().timestamp()))


def _wrong_code(secret, clock):
    now = int(clock().timestamp())
    window = {pyotp.TOTP(secret).at(now + offset) for offset in (-30, 0, 30)}
    return next(code for code in ("000000", "111111", "222222", "333333") if code not in window)


def _enable_totp(two_factor, user, clock):
    setup = two_factor.setup_totp(user.id, user.email)
    codes = two_factor.verify_totp(
        user.id, setup.enrollment_token, _totp_code(setup.secret, clock)
    )
    return setup, codes


def test_totp_enrollment(two_factor, audit, user, clock):
    setup = two_factor.setup_totp(user.id, user.email)
    assert setup.otpauth_url.startswith("otpauth://totp/")
    assert "ada%40example.com" in setup.otpauth_url
    assert not two_factor.status(user.id).is_enabled

    clock.advance(seconds=20)
    codes = two_factor.verify_totp(
        user.id, setup.enrollment_token, _totp_code(setup.secret, clock)
    )
    assert len(codes) == 10

    status = two_factor.status(user.id)
    assert status.is_enabled
    assert status.method == "totp"
    assert [event.action for event in two_factor.audit_events(user.id)] == ["2fa_enrolled"]


def test_totp_wrong_code_keeps_enrollment_pending(two_factor, user, clock):
    setup = two_factor.setup_totp(user.id, user.email)
    good = _totp_code(setup.secret, clock)
    bad = _wrong_code(setup.secret, clock)

    with pytest.raises(InvalidOrExpired):
        two_factor.verify_totp(user.id, setup.enrollment_token, bad)
    assert not two_factor.status(user.id).is_enabled

    two_factor.verify_totp(user.id, setup.enrollment_token, good)
    assert two_factor.status(user.id).is_enabled


def test_totp_enrollment_token_expires(two_factor, user, clock):
    setup = two_factor.setup_totp(user.id, user.email)
    clock.advance(minutes=16)
    with pytest.raises(InvalidOrExpired):
        two_factor.verify_totp(
            user.id, setup.enrollment_token, _totp_code(setup.secret, clock)
        )


def test_enrollment_token_belongs_to_its_user(two_factor, users, user, clock):
    other = users.create_user("grace@example.com", STRONG_PASSWORD)
    setup = two_factor.setup_totp(user.id, user.email)
    with pytest.raises(InvalidOrExpired):
        two_factor.verify_totp(
            other.id, setup.enrollment_token, _totp_code(setup.secret, clock)
        )


def test_setup_refused_when_enabled(two_factor, user, clock):
    _enable_totp(two_factor, user, clock)
    with pytest.raises(TwoFactorStateError):
        two_factor.setup_totp(user.id, user.email)
    with pytest.raises(TwoFactorStateError):
        two_factor.enroll_sms(user.id, "+15550001111")


def test_sms_enrollment(two_factor, sms, user):
    phone = two_factor.enroll_sms(user.id, "+1 (555) 000-1111")
    assert phone == "+15550001111"
    assert sms.sent[-1]["to"] == "+15550001111"

    codes = two_factor.verify_sms(user.id, sms.last_code())
    assert len(codes) == 10
    status = two_factor.status(user.id)
    assert status.method == "sms"
    assert status.phone_number == "***1111"


def test_sms_code_cannot_be_replayed(two_factor, sms, user):
    two_factor.enroll_sms(user.id, "+15550001111")
    code = sms.last_code()
    two_factor.verify_sms(user.id, code)
    two_factor.disable(user.id, STRONG_PASSWORD)
    with pytest.raises(AlreadyUsed):
        two_factor.verify_sms(user.id, code)


def test_sms_enrollment_requires_configured_sender(two_factor, sms, user):
    sms.enabled = False
    with pytest.raises(DeliveryError):
        two_factor.enroll_sms(user.id, "+15550001111")


def test_undelivered_sms_code_is_revoked(two_factor, manager, sms, user):
    sms.fail = True
    with pytest.raises(DeliveryError):
        two_factor.enroll_sms(user.id, "+15550001111")
    assert manager.revoke_all(user.id, Purpose.SMS_ENROLL) == 0


def test_invalid_phone_number(two_factor, user):
    with pytest.raises(ValueError):
        two_factor.enroll_sms(user.id, "not a phone")


def test_sixth_sms_enrollment_is_rate_limited(two_factor, user):
    for _ in range(5):
        two_factor.enroll_sms(user.id, "+15550001111")
    with pytest.raises(RateLimitExceeded):
        two_factor.enroll_sms(user.id, "+15550001111")


def test_regenerate_requires_password(two_factor, user, clock):
    _, first = _enable_totp(two_factor, user, clock)
    with pytest.raises(IncorrectPassword):
        two_factor.regenerate_recovery_codes(user.id, "wrong-password")

    clock.advance(seconds=1)
    second = two_factor.regenerate_recovery_codes(user.id, STRONG_PASSWORD)
    assert not set(first) & set(second)
    with pytest.raises(InvalidOrExpired):
        two_factor.complete_login_challenge(user.id, recovery_code=first[0])
    two_factor.complete_login_challenge(user.id, recovery_code=second[0])


def test_regenerate_requires_enabled_2fa(two_factor, user):
    with pytest.raises(TwoFactorStateError):
        two_factor.regenerate_recovery_codes(user.id, STRONG_PASSWORD)


def test_disable(two_factor, user, clock):
    _, codes = _enable_totp(two_factor, user, clock)
    with pytest.raises(IncorrectPassword):
        two_factor.disable(user.id, "nope")

    clock.advance(seconds=1)
    two_factor.disable(user.id, STRONG_PASSWORD)
    assert not two_factor.status(user.id).is_enabled
    with pytest.raises(TwoFactorStateError):
        two_factor.complete_login_challenge(user.id, recovery_code=codes[0])
    actions = [event.action for event in two_factor.audit_events(user.id)]
    assert actions[0] == "2fa_disabled"


def test_totp_login_challenge(two_factor, user, clock):
    setup, _ = _enable_totp(two_factor, user, clock)
    assert two_factor.start_login_challenge(user.id) == "totp"

    clock.advance(minutes=5)
    two_factor.complete_login_challenge(user.id, code=_totp_code(setup.secret, clock))

    bad = _wrong_code(setup.secret, clock)
    with pytest.raises(InvalidOrExpired):
        two_factor.complete_login_challenge(user.id, code=bad)


def test_totp_login_code_is_single_use(two_factor, user, clock):
    setup, _ = _enable_totp(two_factor, user, clock)
    clock.advance(seconds=60)
    code = _totp_code(setup.secret, clock)
    two_factor.complete_login_challenge(user.id, code=code)
    with pytest.raises(InvalidOrExpired):
        two_factor.complete_login_challenge(user.id, code=code)

    clock.advance(seconds=30)
    two_factor.complete_login_challenge(user.id, code=_totp_code(setup.secret, clock))


def test_older_totp_step_is_refused_after_newer_one(two_factor, user, clock):
    setup, _ = _enable_totp(two_factor, user, clock)
    clock.advance(seconds=90)
    earlier = _totp_code(setup.secret, clock)
    clock.advance(seconds=30)
    two_factor.complete_login_challenge(user.id, code=_totp_code(setup.secret, clock))
    with pytest.raises(InvalidOrExpired):
        two_factor.complete_login_challenge(user.id, code=earlier)


def test_enrollment_code_cannot_complete_a_login(two_factor, user, clock):
    setup, _ = _enable_totp(two_factor, user, clock)
    with pytest.raises(InvalidOrExpired):
        two_factor.complete_login_challenge(user.id, code=_totp_code(setup.secret, clock))


def test_totp_login_failures_are_rate_limited(two_factor, user, clock):
    setup, _ = _enable_totp(two_factor, user, clock)
    good = _totp_code(setup.secret, clock)
    bad = _wrong_code(setup.secret, clock)
    for _ in range(10):
        with pytest.raises(InvalidOrExpired):
            two_factor.complete_login_challenge(user.id, code=bad)
    with pytest.raises(RateLimitExceeded):
        two_factor.complete_login_challenge(user.id, code=good)


def test_sms_login_challenge(two_factor, sms, user):
    two_factor.enroll_sms(user.id, "+15550001111")
    two_factor.verify_sms(user.id, sms.last_code())

    assert two_factor.start_login_challenge(user.id) == "sms"
    code = sms.last_code()
    two_factor.complete_login_challenge(user.id, code=code)
    with pytest.raises(AlreadyUsed):
        two_factor.complete_login_challenge(user.id, code=code)


def test_login_challenge_without_2fa(two_factor, user):
    assert two_factor.start_login_challenge(user.id) is None


def test_recovery_code_login_is_audited(two_factor, user, clock):
    _, codes = _enable_totp(two_factor, user, clock)
    two_factor.complete_login_challenge(user.id, recovery_code=codes[0])
    with pytest.raises(AlreadyUsed):
        two_factor.complete_login_challenge(user.id, recovery_code=codes[0])
    actions = [event.action for event in two_factor.audit_events(user.id)]
    assert "2fa_recovery_code_used" in actions


def test_audit_page_is_capped(two_factor, audit, user):
    for _ in range(60):
        audit.record(user.id, "2fa_recovery_code_used")
    audit.record(user.id, "password_reset_requested")
    assert len(two_factor.audit_events(user.id, limit=500)) == 50
    assert len(two_factor.audit_events(user.id, limit=20, offset=50)) == 10
