from datetime import timedelta

import pytest

from credlife.schemas.credentials import AttemptKind, Purpose
from credlife.schemas.errors import InvalidOrExpired, RateLimitExceeded
from credlife.services.rate_limit import RateLimiter, RateLimitRule


def test_sixth_sms_within_the_hour_is_refused(manager, clock):
    for _ in range(5):
        manager.issue(1, Purpose.SMS_ENROLL, {"phone_number": "+15550001111"})
        clock.advance(minutes=5)

    with pytest.raises(RateLimitExceeded) as excinfo:
        manager.issue(1, Purpose.SMS_ENROLL, {"phone_number": "+15550001111"})

    # The first send was 25 minutes ago, so the window frees up in 35.
    assert excinfo.value.retry_after == 35 * 60
    assert excinfo.value.purpose == "sms_enroll"
    assert excinfo.value.kind == "issue"


def test_limit_recovers_once_the_window_passes(manager, clock):
    for _ in range(5):
        manager.issue(1, Purpose.SMS_ENROLL)
    with pytest.raises(RateLimitExceeded):
        manager.issue(1, Purpose.SMS_ENROLL)

    clock.advance(minutes=60, seconds=1)
    issued = manager.issue(1, Purpose.SMS_ENROLL)
    assert issued.credential.identity_id == 1


def test_limits_are_per_identity(manager):
    for _ in range(5):
        manager.issue(1, Purpose.SMS_ENROLL)
    manager.issue(2, Purpose.SMS_ENROLL)


def test_email_verification_limit_is_three_per_day(manager, clock):
    for _ in range(3):
        manager.issue(1, Purpose.EMAIL_VERIFY)
        clock.advance(hours=1)
    with pytest.raises(RateLimitExceeded) as excinfo:
        manager.issue(1, Purpose.EMAIL_VERIFY)
    assert excinfo.value.retry_after == 21 * 3600


def test_verify_limit_counts_only_failures(manager):
    manager.issue(1, Purpose.SMS_ENROLL)
    for _ in range(10):
        with pytest.raises(InvalidOrExpired):
            manager.validate(Purpose.SMS_ENROLL, "000000x", identity_id=1)
    with pytest.raises(RateLimitExceeded) as excinfo:
        manager.validate(Purpose.SMS_ENROLL, "000000x", identity_id=1)
    assert excinfo.value.kind == "verify"


def test_disabled_limiter_never_refuses(store, clock):
    limiter = RateLimiter(store, clock=clock, enabled=False)
    for _ in range(20):
        store.insert_attempt(1, Purpose.SMS_ENROLL, AttemptKind.ISSUE, True, clock())
    limiter.check(1, Purpose.SMS_ENROLL, AttemptKind.ISSUE)


def test_custom_rule_and_minimum_retry_after(store, clock):
    limiter = RateLimiter(
        store,
        rules={(Purpose.PASSWORD_RESET, AttemptKind.ISSUE): RateLimitRule(1, timedelta(seconds=10))},
        clock=clock,
    )
    store.insert_attempt(1, Purpose.PASSWORD_RESET, AttemptKind.ISSUE, True, clock())
    clock.advance(seconds=9, milliseconds=900)
    with pytest.raises(RateLimitExceeded) as excinfo:
        limiter.check(1, Purpose.PASSWORD_RESET, AttemptKind.ISSUE)
    assert excinfo.value.retry_after == 1


def test_unlisted_purpose_has_no_limit(store, clock):
    limiter = RateLimiter(store, rules={}, clock=clock)
    for _ in range(50):
        store.insert_attempt(1, Purpose.SMS_LOGIN, AttemptKind.ISSUE, True, clock())
    limiter.check(1, Purpose.SMS_LOGIN, AttemptKind.ISSUE)


def test_every_rule_for_a_key_is_enforced(store, clock):
    limiter = RateLimiter(
        store,
        rules={
            (Purpose.EMAIL_VERIFY, AttemptKind.ISSUE): (
                RateLimitRule(2, timedelta(hours=1)),
                RateLimitRule(1, timedelta(minutes=5)),
            )
        },
        clock=clock,
    )
    store.insert_attempt(1, Purpose.EMAIL_VERIFY, AttemptKind.ISSUE, True, clock())
    clock.advance(minutes=1)
    with pytest.raises(RateLimitExceeded) as excinfo:
        limiter.check(1, Purpose.EMAIL_VERIFY, AttemptKind.ISSUE)
    assert excinfo.value.retry_after == 4 * 60

    clock.advance(minutes=5)
    limiter.check(1, Purpose.EMAIL_VERIFY, AttemptKind.ISSUE)
    store.insert_attempt(1, Purpose.EMAIL_VERIFY, AttemptKind.ISSUE, True, clock())
    clock.advance(minutes=10)
    with pytest.raises(RateLimitExceeded) as excinfo:
        limiter.check(1, Purpose.EMAIL_VERIFY, AttemptKind.ISSUE)
    assert excinfo.value.retry_after == 44 * 60
