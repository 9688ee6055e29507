import pytest

from credlife.database import build_engine, build_session_factory
from credlife.schemas.errors import (
    AlreadyUsed,
    IncorrectPassword,
    InvalidOrExpired,
    PersistenceError,
    RateLimitExceeded,
)
from credlife.services.users import UserStore

from conftest import STRONG_PASSWORD

NEW_PASSWORD = "Brand-New-Secret-77"


def test_reset_unknown_email_is_silent(password_reset, mailer, user):
    password_reset.request_reset("nobody@example.com")
    assert mailer.sent == []


def test_reset_scenario(password_reset, users, sessions, audit, mailer, user, clock):
    session_token = sessions.create_session(user.id)
    password_reset.request_reset("ADA@example.com", ip_address="10.0.0.1")
    assert mailer.sent[-1]["to"] == "ada@example.com"
    token = mailer.last_token()
    assert "/auth/reset-password/" in mailer.sent[-1]["body"]

    clock.advance(minutes=10)
    status = password_reset.check_token(token)
    assert status.valid
    assert status.expires_at is not None

    assert password_reset.reset_password(token, NEW_PASSWORD) == user.id
    assert users.authenticate("ada@example.com", NEW_PASSWORD) is not None
    assert users.authenticate("ada@example.com", STRONG_PASSWORD) is None
    assert sessions.get_user_id(session_token) is None

    with pytest.raises(AlreadyUsed):
        password_reset.reset_password(token, "Another-Secret-99")
    assert password_reset.check_token(token).used

    actions = [event.action for event in audit.list_events(user.id)]
    assert "password_reset_requested" in actions
    assert "password_reset_used" in actions


def test_reset_link_expires_after_an_hour(password_reset, mailer, user, clock):
    password_reset.request_reset(user.email)
    token = mailer.last_token()
    clock.advance(minutes=61)
    assert not password_reset.check_token(token).valid
    with pytest.raises(InvalidOrExpired):
        password_reset.reset_password(token, NEW_PASSWORD)


def test_only_the_latest_reset_link_works(password_reset, mailer, user, clock):
    password_reset.request_reset(user.email)
    first = mailer.last_token()
    clock.advance(minutes=1)
    password_reset.request_reset(user.email)
    second = mailer.last_token()

    assert not password_reset.check_token(first).valid
    assert password_reset.check_token(second).valid


def test_reset_delivery_failure_is_not_raised(password_reset, mailer, user):
    mailer.fail = True
    password_reset.request_reset(user.email)
    assert mailer.sent == []


def test_reset_rate_limit_propagates(password_reset, user):
    for _ in range(5):
        password_reset.request_reset(user.email)
    with pytest.raises(RateLimitExceeded):
        password_reset.request_reset(user.email)


def test_reset_reports_a_failed_password_write(password_reset, users, mailer, user, monkeypatch):
    password_reset.request_reset(user.email)
    token = mailer.last_token()

    def broken(user_id, password):
        raise PersistenceError("Failed to update password")

    monkeypatch.setattr(users, "set_password", broken)
    with pytest.raises(PersistenceError):
        password_reset.reset_password(token, NEW_PASSWORD)


def test_password_writes_raise_persistence_errors(users, tmp_path, clock):
    with pytest.raises(PersistenceError):
        users.set_password(999, NEW_PASSWORD)

    engine = build_engine(f"sqlite:///{tmp_path / 'empty.db'}")
    try:
        broken = UserStore(build_session_factory(engine), clock=clock, password_rounds=4)
        with pytest.raises(PersistenceError):
            broken.set_password(1, NEW_PASSWORD)
        with pytest.raises(PersistenceError):
            broken.change_password(1, STRONG_PASSWORD, NEW_PASSWORD)
    finally:
        engine.dispose()


def test_change_password_keeps_the_current_session(password_reset, users, sessions, audit, user):
    current = sessions.create_session(user.id)
    other = sessions.create_session(user.id)

    with pytest.raises(IncorrectPassword):
        password_reset.change_password(user.id, "Wrong-Password-1", NEW_PASSWORD, keep_session=current)
    assert sessions.get_user_id(other) == user.id

    revoked = password_reset.change_password(
        user.id, STRONG_PASSWORD, NEW_PASSWORD, keep_session=current, ip_address="10.0.0.1"
    )
    assert revoked == 1
    assert sessions.get_user_id(current) == user.id
    assert sessions.get_user_id(other) is None
    assert users.authenticate(user.email, NEW_PASSWORD) is not None
    events = audit.list_events(user.id)
    assert [event.action for event in events] == ["password_changed"]
    assert events[0].details == {"ip_address": "10.0.0.1", "sessions_revoked": 1}


def test_email_verification(email_verification, users, audit, mailer, user, clock):
    result = email_verification.send_verification(user.email)
    assert not result.already_verified
    token = mailer.last_token()

    clock.advance(hours=23)
    assert email_verification.verify_email(token) == user.id
    assert users.get_user(user.id).email_verified
    assert [event.action for event in audit.list_events(user.id, actions=["email_verified"])] == [
        "email_verified"
    ]

    with pytest.raises(AlreadyUsed):
        email_verification.verify_email(token)
    assert email_verification.send_verification(user.email).already_verified


def test_verification_link_expires_after_a_day(email_verification, mailer, user, clock):
    email_verification.send_verification(user.email)
    token = mailer.last_token()
    clock.advance(hours=24)
    with pytest.raises(InvalidOrExpired):
        email_verification.verify_email(token)


def test_verification_is_limited_to_three_a_day(email_verification, user, clock):
    for _ in range(3):
        email_verification.send_verification(user.email)
        clock.advance(minutes=16)
    with pytest.raises(RateLimitExceeded) as excinfo:
        email_verification.send_verification(user.email)
    assert excinfo.value.retry_after == 24 * 3600 - 48 * 60


def test_verification_resend_has_a_cooldown(email_verification, mailer, user, clock):
    email_verification.send_verification(user.email)
    clock.advance(minutes=10)
    with pytest.raises(RateLimitExceeded) as excinfo:
        email_verification.send_verification(user.email)
    assert excinfo.value.retry_after == 5 * 60

    clock.advance(minutes=5, seconds=1)
    email_verification.send_verification(user.email)
    assert len(mailer.sent) == 2


def test_verification_for_unknown_email(email_verification, mailer):
    result = email_verification.send_verification("ghost@example.com")
    assert not result.already_verified
    assert mailer.sent == []
